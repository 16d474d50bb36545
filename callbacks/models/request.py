"""Pydantic model for a callback request record."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from callbacks.channels.base import MessageRef


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CONTACTED = "contacted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


CLOSED_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


class CallbackRequest(BaseModel):
    """A customer's request to be called back, tracked through its lifecycle.

    ``channel_message_id`` / ``channel_chat_id`` identify the operator
    channel message that mirrors this record. They are written once, on the
    first notification, and read back for every later in-place edit.
    """

    model_config = {"extra": "ignore", "coerce_numbers_to_str": True}

    id: str
    name: str
    phone: str
    service_type: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING

    # Assignment
    assigned_to: Optional[str] = None
    assigned_user_id: Optional[int] = None

    # Collected by the operator dialogue
    address: Optional[str] = None
    detailed_service_type: Optional[str] = None
    problem_description: Optional[str] = None

    # Operator channel message mirroring this record
    channel_message_id: Optional[int] = None
    channel_chat_id: Optional[int] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    @property
    def has_collected_info(self) -> bool:
        return bool(self.address and self.detailed_service_type)

    @property
    def message_ref(self) -> MessageRef | None:
        if self.channel_message_id is None or self.channel_chat_id is None:
            return None
        return MessageRef(chat_id=self.channel_chat_id, message_id=self.channel_message_id)

    @property
    def display_service(self) -> str | None:
        return self.detailed_service_type or self.service_type


class RequestPage(BaseModel):
    """One page of a list query."""

    records: list[CallbackRequest]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return -(-self.total // self.page_size)
