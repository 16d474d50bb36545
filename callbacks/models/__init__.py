"""Data models for the callback desk."""

from .request import CLOSED_STATUSES, CallbackRequest, RequestPage, RequestStatus
from .session import CollectedInfo, ConversationSession, Stage

__all__ = [
    "CLOSED_STATUSES",
    "CallbackRequest",
    "CollectedInfo",
    "ConversationSession",
    "RequestPage",
    "RequestStatus",
    "Stage",
]
