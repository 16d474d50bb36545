"""In-process RequestStore, used by tests and local runs without Supabase."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from callbacks.models.request import CallbackRequest, RequestPage, RequestStatus

from .base import RequestNotFound, RequestStore, check_sort, empty_stats


class InMemoryRequestStore(RequestStore):
    """RequestStore keeping records in a dict keyed by id."""

    def __init__(self) -> None:
        self._records: dict[str, CallbackRequest] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create(self, fields: dict[str, Any]) -> CallbackRequest:
        data = dict(fields)
        data.setdefault("id", str(uuid.uuid4()))
        data.setdefault("status", RequestStatus.PENDING)
        data.setdefault("created_at", self._now())
        record = CallbackRequest.model_validate(data)
        self._records[record.id] = record
        return record.model_copy()

    async def get(self, record_id: str) -> CallbackRequest | None:
        record = self._records.get(record_id)
        return record.model_copy() if record else None

    async def list(
        self,
        page: int = 1,
        page_size: int = 50,
        status: Optional[RequestStatus] = None,
        sort_field: str = "created_at",
        sort_direction: str = "desc",
    ) -> RequestPage:
        check_sort(sort_field, sort_direction)
        records = [
            r for r in self._records.values() if status is None or r.status == status
        ]
        present = [r for r in records if getattr(r, sort_field) is not None]
        missing = [r for r in records if getattr(r, sort_field) is None]
        present.sort(key=lambda r: getattr(r, sort_field), reverse=sort_direction == "desc")
        ordered = present + missing

        start = (page - 1) * page_size
        return RequestPage(
            records=[r.model_copy() for r in ordered[start:start + page_size]],
            total=len(records),
            page=page,
            page_size=page_size,
        )

    async def update(self, record_id: str, fields: dict[str, Any]) -> CallbackRequest:
        record = self._records.get(record_id)
        if record is None:
            raise RequestNotFound(record_id)
        data = record.model_dump()
        data.update(fields)
        data["updated_at"] = self._now()
        updated = CallbackRequest.model_validate(data)
        self._records[record_id] = updated
        return updated.model_copy()

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def aggregate_by_status(self, since: datetime) -> dict[str, int]:
        stats = empty_stats()
        for record in self._records.values():
            if record.created_at is None or record.created_at < since:
                continue
            stats[record.status.value] += 1
            stats["total"] += 1
        return stats
