"""Pydantic model tracking an operator's dialogue with the bot."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from callbacks.channels.base import MessageRef


class Stage(str, Enum):
    COLLECTING_ADDRESS = "collecting_address"
    COLLECTING_SERVICE_TYPE = "collecting_service_type"
    COLLECTING_PROBLEM = "collecting_problem"
    SCHEDULING = "scheduling"


COLLECTION_STAGES = frozenset({
    Stage.COLLECTING_ADDRESS,
    Stage.COLLECTING_SERVICE_TYPE,
    Stage.COLLECTING_PROBLEM,
})


class CollectedInfo(BaseModel):
    """Fields gathered from the operator so far."""

    address: Optional[str] = None
    detailed_service_type: Optional[str] = None
    problem_description: Optional[str] = None


class ConversationSession(BaseModel):
    """Mutable dialogue state for one operator.

    Held in memory only. A restart drops in-flight dialogues; the operator
    can pick a request up again from ``/pending``.
    """

    operator_id: int
    operator_name: str = ""
    stage: Stage
    record_id: str
    collected: CollectedInfo = Field(default_factory=CollectedInfo)

    # Information card edited in place while collecting
    anchor: Optional[MessageRef] = None

    @property
    def is_collecting(self) -> bool:
        return self.stage in COLLECTION_STAGES
