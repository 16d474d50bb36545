"""Notification dispatcher — mirrors each callback request as one channel message.

The first notification for a record posts a "new request" card to the
operator channel and writes the returned message identity through to both
an in-memory cache and the record itself. Every later status change edits
that same message. The store is authoritative; the cache only saves a
round trip.

Nothing in here raises into the caller's mutation path: delivery failures
degrade (edit → send new → log) and alerts are best effort.
"""

from __future__ import annotations

import logging
from typing import Optional
from zoneinfo import ZoneInfo

from callbacks import messages
from callbacks.channels.base import ChannelError, Keyboard, MessageRef, NotificationChannel
from callbacks.locks import KeyedLock
from callbacks.models.request import CallbackRequest
from callbacks.store.base import RequestStore, StoreError

log = logging.getLogger("callbacks.notifications")


def redact_pii(value: str) -> str:
    """Mask PII for logging — show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


class MessageIdentityCache:
    """record id → channel message. Pure cache in front of the store."""

    def __init__(self) -> None:
        self._refs: dict[str, MessageRef] = {}

    def get(self, record_id: str) -> MessageRef | None:
        return self._refs.get(record_id)

    def set(self, record_id: str, ref: MessageRef) -> None:
        self._refs[record_id] = ref

    def forget(self, record_id: str) -> None:
        self._refs.pop(record_id, None)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._refs

    def __len__(self) -> int:
        return len(self._refs)


class NotificationDispatcher:
    def __init__(
        self,
        channel: NotificationChannel,
        store: RequestStore,
        tz: ZoneInfo | None = None,
        cache: MessageIdentityCache | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._channel = channel
        self._store = store
        self._tz = tz or ZoneInfo("UTC")
        self._cache = cache or MessageIdentityCache()
        self._locks = locks or KeyedLock()

    @property
    def cache(self) -> MessageIdentityCache:
        return self._cache

    # ── Identity ─────────────────────────────────────────────────

    async def resolve_message(self, record_id: str) -> MessageRef | None:
        """Cached identity, else the one persisted on the record."""
        ref = self._cache.get(record_id)
        if ref is not None:
            return ref
        try:
            record = await self._store.get(record_id)
        except StoreError as e:
            log.warning("Could not look up message for request %s: %s", record_id, e)
            return None
        if record is None or record.message_ref is None:
            return None
        self._cache.set(record_id, record.message_ref)
        return record.message_ref

    async def _remember(self, record_id: str, ref: MessageRef) -> None:
        self._cache.set(record_id, ref)
        try:
            await self._store.update(record_id, {
                "channel_message_id": ref.message_id,
                "channel_chat_id": ref.chat_id,
            })
        except StoreError as e:
            # The cache still holds it; a restart would lose the identity
            log.error("Failed to persist message identity for %s: %s", record_id, e)

    def forget(self, record_id: str) -> None:
        self._cache.forget(record_id)

    # ── Operator channel ─────────────────────────────────────────

    async def notify_created(self, record: CallbackRequest) -> Optional[MessageRef]:
        """Post the "new request" card once per record."""
        async with self._locks.hold(record.id):
            existing = record.message_ref or await self.resolve_message(record.id)
            if existing is not None:
                log.info("Request %s already announced, skipping", record.id)
                return existing

            log.info(
                "Announcing request %s: %s / %s",
                record.id, record.name, redact_pii(record.phone),
            )
            try:
                ref = await self._channel.send_to_operator_channel(
                    messages.new_request(record, self._tz),
                    messages.new_request_actions(record.id),
                )
            except ChannelError as e:
                log.error("Failed to announce request %s: %s", record.id, e)
                return None

            await self._remember(record.id, ref)
            return ref

    async def notify_status_changed(
        self,
        record: CallbackRequest,
        status_text: str,
        actions: Keyboard = (),
    ) -> Optional[MessageRef]:
        """Edit the record's card in place; send a fresh one if that fails."""
        text = messages.status_update(record, status_text, self._tz)
        async with self._locks.hold(record.id):
            ref = self._cache.get(record.id) or record.message_ref
            if ref is None:
                ref = await self.resolve_message(record.id)

            if ref is not None:
                try:
                    await self._channel.edit_message(ref, text, actions)
                    self._cache.set(record.id, ref)
                    log.info("Group message updated for request %s", record.id)
                    return ref
                except ChannelError as e:
                    log.warning(
                        "Edit failed for request %s (%s), sending a new message", record.id, e,
                    )
            else:
                log.warning("No group message for request %s, sending a new one", record.id)

            try:
                new_ref = await self._channel.send_to_operator_channel(text, actions)
            except ChannelError as e:
                log.error("Status update for request %s lost: %s", record.id, e)
                return None
            await self._remember(record.id, new_ref)
            return new_ref

    async def notify_error(self, message: str) -> None:
        """Best-effort system alert to the operator channel."""
        try:
            await self._channel.send_to_operator_channel(messages.system_error(message))
        except Exception as e:
            log.error("Failed to deliver system alert %r: %s", message, e)

    # ── Direct messages ──────────────────────────────────────────

    async def send_direct(
        self, operator_id: int, text: str, actions: Keyboard | None = None,
    ) -> Optional[MessageRef]:
        try:
            return await self._channel.send_direct(operator_id, text, actions)
        except ChannelError as e:
            log.error("Failed to send direct message to %s: %s", operator_id, e)
            return None

    async def edit_or_send(
        self,
        operator_id: int,
        ref: MessageRef | None,
        text: str,
        actions: Keyboard | None = None,
    ) -> Optional[MessageRef]:
        """Edit ``ref`` if given, otherwise (or if that fails) send a new DM."""
        if ref is not None:
            try:
                await self._channel.edit_message(ref, text, actions)
                return ref
            except ChannelError as e:
                log.info("Edit failed, sending new message: %s", e)
        return await self.send_direct(operator_id, text, actions)
