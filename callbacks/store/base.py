"""Abstract base class for the callback request store.

Defines the CRUD/list/stats interface the pipeline consumes. Any backend
(Supabase PostgREST, in-memory for tests) implements this ABC.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from callbacks.models.request import CallbackRequest, RequestPage, RequestStatus


class StoreError(Exception):
    """The store rejected or failed a request."""


class RequestNotFound(StoreError):
    """No record with the given id exists."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Callback request {record_id} not found")
        self.record_id = record_id


SORTABLE_FIELDS = frozenset({"created_at", "updated_at", "completed_at", "name", "status"})


class RequestStore(ABC):
    """Abstract callback request backend.

    Subclasses must implement create/get/list/update/delete and the
    per-status aggregate.
    """

    @abstractmethod
    async def create(self, fields: dict[str, Any]) -> CallbackRequest:
        """Insert a new record.

        Args:
            fields: At least ``name`` and ``phone``; ``service_type`` is
                optional. The store assigns ``id``, ``status=pending`` and
                ``created_at``.

        Returns:
            The stored record.
        """

    @abstractmethod
    async def get(self, record_id: str) -> CallbackRequest | None:
        """Return the record, or None if it does not exist."""

    @abstractmethod
    async def list(
        self,
        page: int = 1,
        page_size: int = 50,
        status: Optional[RequestStatus] = None,
        sort_field: str = "created_at",
        sort_direction: str = "desc",
    ) -> RequestPage:
        """Return one page of records, optionally filtered by status.

        Args:
            page: 1-based page number.
            page_size: Records per page.
            status: Only records with this status.
            sort_field: One of ``SORTABLE_FIELDS``.
            sort_direction: ``"asc"`` or ``"desc"``.
        """

    @abstractmethod
    async def update(self, record_id: str, fields: dict[str, Any]) -> CallbackRequest:
        """Merge ``fields`` into the record and stamp ``updated_at``.

        The caller stamps ``completed_at`` when moving to completed.

        Raises:
            RequestNotFound: no such record.
        """

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Delete the record. Returns True if something was deleted."""

    @abstractmethod
    async def aggregate_by_status(self, since: datetime) -> dict[str, int]:
        """Count records created at or after ``since``, per status.

        Returns:
            Dict with a key per ``RequestStatus`` value plus ``"total"``.
        """

    async def ping(self) -> bool:
        """Cheap connectivity check."""
        return True

    async def aclose(self) -> None:
        """Release connections."""


def empty_stats() -> dict[str, int]:
    stats = {status.value: 0 for status in RequestStatus}
    stats["total"] = 0
    return stats


def check_sort(sort_field: str, sort_direction: str) -> None:
    if sort_field not in SORTABLE_FIELDS:
        raise ValueError(f"Cannot sort by {sort_field!r}")
    if sort_direction not in ("asc", "desc"):
        raise ValueError(f"Sort direction must be 'asc' or 'desc', got {sort_direction!r}")
