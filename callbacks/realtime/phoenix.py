"""Supabase Realtime change feed over the Phoenix channels WebSocket protocol.

Connection:  wss://<project>.supabase.co/realtime/v1/websocket?apikey=<key>&vsn=1.0.0

Frames are JSON objects ``{topic, event, payload, ref}``:

  Client → Server:
    phx_join   topic "realtime:<name>", payload.config.postgres_changes
    phx_leave  leave a topic
    heartbeat  topic "phoenix", every ``heartbeat_interval`` seconds

  Server → Client:
    phx_reply          answer to a join (status "ok" → SUBSCRIBED,
                       otherwise CHANNEL_ERROR with the reason)
    postgres_changes   payload.data = {type, record, old_record, ...}
    system             payload.status "error" → CHANNEL_ERROR
    phx_error          channel crashed server side → CHANNEL_ERROR
    phx_close          channel closed → CLOSED

One WebSocket carries every subscription; it is opened on the first
``subscribe`` and closed when the last subscription leaves.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Optional

import aiohttp

from .feed import (
    ChangeFeed,
    ChangeHandlers,
    FeedError,
    StatusCallback,
    Subscription,
    SubscriptionStatus,
)

log = logging.getLogger("callbacks.realtime.phoenix")


class SupabaseRealtimeFeed(ChangeFeed):
    """ChangeFeed backed by Supabase Realtime ``postgres_changes``."""

    def __init__(
        self,
        supabase_url: str,
        api_key: str,
        schema: str = "public",
        heartbeat_interval: float = 30.0,
        connect_timeout: float = 20.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if not supabase_url or not api_key:
            raise ValueError("Supabase URL and API key are required for realtime.")
        base = supabase_url.rstrip("/")
        base = base.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        self._url = f"{base}/realtime/v1/websocket"
        self._api_key = api_key
        self._schema = schema
        self._heartbeat_interval = heartbeat_interval
        self._connect_timeout = connect_timeout

        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

        self._subs: dict[str, Subscription] = {}
        self._join_refs: dict[str, str] = {}
        self._refs = itertools.count(1)
        self._connect_lock = asyncio.Lock()

    # ── Connection ───────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def _ensure_connected(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            try:
                self._ws = await asyncio.wait_for(
                    self._session.ws_connect(
                        self._url, params={"apikey": self._api_key, "vsn": "1.0.0"},
                    ),
                    self._connect_timeout,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise FeedError(f"Realtime connection failed: {e}") from e

            log.info("Realtime socket connected")
            self._reader_task = asyncio.create_task(self._reader(), name="realtime-reader")
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat(), name="realtime-heartbeat",
            )

    async def _close_connection(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not current:
                task.cancel()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not current:
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._ws = None
        self._reader_task = None
        self._heartbeat_task = None
        self._join_refs.clear()
        log.info("Realtime socket closed")

    async def _send(self, topic: str, event: str, payload: dict, ref: str | None = None) -> str:
        if not self.connected:
            raise FeedError("Realtime socket is not connected")
        ref = ref or str(next(self._refs))
        frame = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        try:
            await self._ws.send_str(json.dumps(frame))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise FeedError(f"Realtime send failed: {e}") from e
        return ref

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._send("phoenix", "heartbeat", {})
            except FeedError as e:
                log.warning("Realtime heartbeat failed: %s", e)
                return

    async def _reader(self) -> None:
        error: Optional[str] = None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except ValueError:
                        log.warning("Ignoring malformed realtime frame")
                        continue
                    await self.handle_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = str(self._ws.exception() or "socket error")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Realtime reader crashed")
            error = str(e)

        # Socket is gone: every subscription on it is gone too
        dropped = list(self._subs.values())
        self._subs.clear()
        self._join_refs.clear()
        for sub in dropped:
            sub.active = False
        status = SubscriptionStatus.CHANNEL_ERROR if error else SubscriptionStatus.CLOSED
        log.warning("Realtime socket dropped (%s), %d subscription(s) lost", error or "closed", len(dropped))
        for sub in dropped:
            await self._notify(sub, status, error)

    # ── Frames ───────────────────────────────────────────────────

    async def _notify(
        self, sub: Subscription, status: SubscriptionStatus, error: Optional[str] = None,
    ) -> None:
        try:
            await sub.on_status(status, error)
        except Exception:
            log.exception("Status callback for %s failed", sub.topic)

    async def handle_frame(self, frame: dict[str, Any]) -> None:
        """Route one decoded server frame."""
        topic = frame.get("topic", "")
        event = frame.get("event", "")
        payload = frame.get("payload") or {}

        if event == "phx_reply":
            ref = str(frame.get("ref"))
            joined_topic = self._join_refs.pop(ref, None)
            sub = self._subs.get(joined_topic) if joined_topic else None
            if sub is None:
                return
            if payload.get("status") == "ok":
                await self._notify(sub, SubscriptionStatus.SUBSCRIBED)
            else:
                response = payload.get("response") or {}
                reason = response.get("reason") or json.dumps(response) or "join rejected"
                await self._notify(sub, SubscriptionStatus.CHANNEL_ERROR, reason)
            return

        sub = self._subs.get(topic)
        if sub is None:
            return

        if event == "postgres_changes":
            await self._dispatch_change(sub, payload.get("data") or {})
        elif event == "system":
            if payload.get("status") == "error":
                await self._notify(
                    sub, SubscriptionStatus.CHANNEL_ERROR, payload.get("message") or "system error",
                )
        elif event == "phx_error":
            await self._notify(sub, SubscriptionStatus.CHANNEL_ERROR, "channel error")
        elif event == "phx_close":
            self._subs.pop(topic, None)
            sub.active = False
            await self._notify(sub, SubscriptionStatus.CLOSED)

    async def _dispatch_change(self, sub: Subscription, data: dict[str, Any]) -> None:
        change = data.get("type") or data.get("eventType")
        record = data.get("record") or {}
        old_record = data.get("old_record") or {}
        handlers = sub.handlers
        if change == "INSERT" and handlers.on_insert:
            await handlers.on_insert(record)
        elif change == "UPDATE" and handlers.on_update:
            await handlers.on_update(record, old_record)
        elif change == "DELETE" and handlers.on_delete:
            await handlers.on_delete(old_record)

    # ── ChangeFeed interface ─────────────────────────────────────

    async def subscribe(
        self,
        table: str,
        handlers: ChangeHandlers,
        on_status: StatusCallback,
        topic: str | None = None,
    ) -> Subscription:
        await self._ensure_connected()
        full_topic = f"realtime:{topic or table}"
        sub = Subscription(topic=full_topic, table=table, handlers=handlers, on_status=on_status)
        self._subs[full_topic] = sub
        payload = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {"event": "*", "schema": self._schema, "table": table},
                ],
            },
            "access_token": self._api_key,
        }
        ref = str(next(self._refs))
        self._join_refs[ref] = full_topic
        try:
            await self._send(full_topic, "phx_join", payload, ref=ref)
        except FeedError:
            self._subs.pop(full_topic, None)
            self._join_refs.pop(ref, None)
            raise
        log.info("Joining %s", full_topic)
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        if self._subs.get(subscription.topic) is subscription:
            del self._subs[subscription.topic]
        if self.connected:
            try:
                await self._send(subscription.topic, "phx_leave", {})
            except FeedError as e:
                log.debug("Leave for %s not sent: %s", subscription.topic, e)
        if not self._subs:
            await self._close_connection()

    async def close(self) -> None:
        for sub in list(self._subs.values()):
            sub.active = False
        self._subs.clear()
        await self._close_connection()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
