"""Supabase request store over the PostgREST HTTP API.

All calls go to ``{SUPABASE_URL}/rest/v1/{table}`` with the service-role
key. PostgREST error bodies are surfaced as ``StoreError`` with the
server's message; an update or lookup matching no rows is reported as
``RequestNotFound`` / ``None``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from callbacks.models.request import CallbackRequest, RequestPage, RequestStatus

from .base import RequestNotFound, RequestStore, StoreError, check_sort, empty_stats

log = logging.getLogger("callbacks.store.postgrest")


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, RequestStatus):
        return value.value
    return value


def _encode(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: _iso(value) for key, value in fields.items()}


class PostgrestRequestStore(RequestStore):
    """RequestStore backed by Supabase PostgREST."""

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        table: str = "callback_requests",
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        if not supabase_url or not service_role_key:
            raise ValueError("Supabase URL and service role key are required.")
        self._table = table
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = f"{supabase_url.rstrip('/')}/rest/v1/{table}"
        self._headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
            "User-Agent": "callback-desk/0.1.0",
        }

    # ── Helpers ──────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method,
                self._base_url,
                params=params,
                json=json,
                headers={**self._headers, **(headers or {})},
            )
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as exc:
            try:
                message = exc.response.json().get("message", exc.response.text)
            except ValueError:
                message = exc.response.text
            raise StoreError(f"Database error: {message}") from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"Database unreachable: {exc}") from exc

    @staticmethod
    def _parse_total(content_range: str | None, fallback: int) -> int:
        """Extract the total from a ``Content-Range: 0-49/123`` header."""
        if not content_range or "/" not in content_range:
            return fallback
        total = content_range.rsplit("/", 1)[1]
        return int(total) if total.isdigit() else fallback

    # ── RequestStore interface ───────────────────────────────────

    async def create(self, fields: dict[str, Any]) -> CallbackRequest:
        row = {
            "id": str(uuid.uuid4()),
            "status": RequestStatus.PENDING.value,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "updated_at": None,
            "completed_at": None,
            "completed_by": None,
            **_encode(fields),
        }
        resp = await self._request(
            "POST", json=[row], headers={"Prefer": "return=representation"},
        )
        rows = resp.json()
        log.info("Callback request created: %s", rows[0]["id"])
        return CallbackRequest.model_validate(rows[0])

    async def get(self, record_id: str) -> CallbackRequest | None:
        resp = await self._request("GET", params={"id": f"eq.{record_id}", "select": "*"})
        rows = resp.json()
        if not rows:
            return None
        return CallbackRequest.model_validate(rows[0])

    async def list(
        self,
        page: int = 1,
        page_size: int = 50,
        status: Optional[RequestStatus] = None,
        sort_field: str = "created_at",
        sort_direction: str = "desc",
    ) -> RequestPage:
        check_sort(sort_field, sort_direction)
        params = {"select": "*", "order": f"{sort_field}.{sort_direction}"}
        if status is not None:
            params["status"] = f"eq.{RequestStatus(status).value}"
        start = (page - 1) * page_size
        resp = await self._request(
            "GET",
            params=params,
            headers={
                "Prefer": "count=exact",
                "Range-Unit": "items",
                "Range": f"{start}-{start + page_size - 1}",
            },
        )
        rows = resp.json()
        return RequestPage(
            records=[CallbackRequest.model_validate(r) for r in rows],
            total=self._parse_total(resp.headers.get("content-range"), len(rows)),
            page=page,
            page_size=page_size,
        )

    async def update(self, record_id: str, fields: dict[str, Any]) -> CallbackRequest:
        updates = {**_encode(fields), "updated_at": datetime.now(timezone.utc).isoformat()}
        resp = await self._request(
            "PATCH",
            params={"id": f"eq.{record_id}"},
            json=updates,
            headers={"Prefer": "return=representation"},
        )
        rows = resp.json()
        if not rows:
            raise RequestNotFound(record_id)
        log.info("Callback request %s updated: %s", record_id, sorted(fields))
        return CallbackRequest.model_validate(rows[0])

    async def delete(self, record_id: str) -> bool:
        resp = await self._request(
            "DELETE",
            params={"id": f"eq.{record_id}"},
            headers={"Prefer": "return=representation"},
        )
        deleted = bool(resp.json())
        if deleted:
            log.info("Callback request deleted: %s", record_id)
        return deleted

    async def aggregate_by_status(self, since: datetime) -> dict[str, int]:
        resp = await self._request(
            "GET", params={"select": "status", "created_at": f"gte.{_iso(since)}"},
        )
        stats = empty_stats()
        for row in resp.json():
            status = row.get("status")
            if status in stats:
                stats[status] += 1
            stats["total"] += 1
        return stats

    async def ping(self) -> bool:
        try:
            await self._request("GET", params={"select": "id", "limit": "1"})
        except StoreError as exc:
            log.error("Supabase connection failed: %s", exc)
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
