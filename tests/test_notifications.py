"""Tests for NotificationDispatcher — one channel message per request."""

import asyncio
from unittest.mock import AsyncMock

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from callbacks.channels.base import MessageRef
from callbacks.notifications import MessageIdentityCache, NotificationDispatcher, redact_pii
from callbacks.store.base import StoreError
from conftest import GROUP_CHAT_ID, OPERATOR_ID, action_ids


@pytest.fixture
def dispatcher(channel, store):
    return NotificationDispatcher(channel, store)


class TestRedactPii:
    def test_masks_middle(self):
        assert redact_pii("+79991234567") == "+79***67"

    def test_short_values_fully_masked(self):
        assert redact_pii("12345") == "***"
        assert redact_pii("") == "***"


class TestNotifyCreated:
    @pytest.mark.asyncio
    async def test_posts_card_with_contacted_and_cancel(self, dispatcher, channel, store, record):
        ref = await dispatcher.notify_created(record)

        assert ref == MessageRef(GROUP_CHAT_ID, 1)
        [message] = channel.channel_messages()
        assert "New callback request" in message["text"]
        assert "Ivan Petrov" in message["text"]
        assert action_ids(message["actions"]) == ["contacted_R1", "cancel_R1"]

    @pytest.mark.asyncio
    async def test_identity_written_through_to_store(self, dispatcher, store, record):
        ref = await dispatcher.notify_created(record)

        stored = await store.get("R1")
        assert stored.channel_message_id == ref.message_id
        assert stored.channel_chat_id == GROUP_CHAT_ID
        assert dispatcher.cache.get("R1") == ref

    @pytest.mark.asyncio
    async def test_replayed_insert_sends_nothing(self, dispatcher, channel, record):
        first = await dispatcher.notify_created(record)
        second = await dispatcher.notify_created(record)
        assert first == second
        assert len(channel.channel_messages()) == 1

    @pytest.mark.asyncio
    async def test_identity_recovered_from_store_after_restart(self, channel, store, record):
        await NotificationDispatcher(channel, store).notify_created(record)

        fresh = NotificationDispatcher(channel, store)
        await fresh.notify_created(record)
        assert len(channel.channel_messages()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_inserts_send_once(self, dispatcher, channel, record):
        await asyncio.gather(
            dispatcher.notify_created(record), dispatcher.notify_created(record),
        )
        assert len(channel.channel_messages()) == 1

    @pytest.mark.asyncio
    async def test_delivery_failure_returns_none(self, dispatcher, channel, record):
        channel.fail_sends = True
        assert await dispatcher.notify_created(record) is None
        assert dispatcher.cache.get("R1") is None

    @pytest.mark.asyncio
    async def test_store_failure_keeps_cached_identity(self, channel, record):
        store = AsyncMock()
        store.get.return_value = None
        store.update.side_effect = StoreError("timeout")
        dispatcher = NotificationDispatcher(channel, store)

        ref = await dispatcher.notify_created(record)
        assert ref is not None
        assert dispatcher.cache.get("R1") == ref


class TestNotifyStatusChanged:
    @pytest.mark.asyncio
    async def test_edits_the_same_message(self, dispatcher, channel, store, record):
        ref = await dispatcher.notify_created(record)
        record = await store.update("R1", {"status": "contacted"})

        edited = await dispatcher.notify_status_changed(record, "Contacted by Ann", [])
        assert edited == ref
        assert len(channel.channel_messages()) == 1
        [edit] = channel.edits
        assert edit["ref"] == ref
        assert "Contacted by Ann" in edit["text"]
        assert "📞 Contacted" in edit["text"]
        assert edit["actions"] == []

    @pytest.mark.asyncio
    async def test_cache_miss_falls_back_to_store(self, channel, store, record):
        ref = await NotificationDispatcher(channel, store).notify_created(record)

        other = NotificationDispatcher(channel, store)
        stale = await store.get("R1")
        stale = stale.model_copy(update={"channel_message_id": None, "channel_chat_id": None})
        assert await other.notify_status_changed(stale, "update") == ref
        assert len(channel.channel_messages()) == 1

    @pytest.mark.asyncio
    async def test_deleted_message_is_replaced(self, dispatcher, channel, store, record):
        ref = await dispatcher.notify_created(record)
        channel.delete(ref)

        new_ref = await dispatcher.notify_status_changed(record, "Cancelled", [])
        assert new_ref != ref
        assert len(channel.channel_messages()) == 2
        assert (await store.get("R1")).channel_message_id == new_ref.message_id
        assert dispatcher.cache.get("R1") == new_ref

    @pytest.mark.asyncio
    async def test_unknown_identity_sends_new_message(self, dispatcher, channel, record):
        ref = await dispatcher.notify_status_changed(record, "Cancelled", [])
        assert ref is not None
        assert len(channel.channel_messages()) == 1

    @pytest.mark.asyncio
    async def test_never_raises(self, dispatcher, channel, record):
        channel.fail_sends = True
        assert await dispatcher.notify_status_changed(record, "x") is None


class TestDirectAndAlerts:
    @pytest.mark.asyncio
    async def test_notify_error_swallows_failures(self, dispatcher, channel):
        channel.fail_sends = True
        await dispatcher.notify_error("boom")

    @pytest.mark.asyncio
    async def test_notify_error_posts_to_operator_channel(self, dispatcher, channel):
        await dispatcher.notify_error("database <down>")
        [message] = channel.channel_messages()
        assert "System error" in message["text"]
        assert "database &lt;down&gt;" in message["text"]

    @pytest.mark.asyncio
    async def test_send_direct_returns_none_on_failure(self, dispatcher, channel):
        channel.fail_sends = True
        assert await dispatcher.send_direct(OPERATOR_ID, "hi") is None

    @pytest.mark.asyncio
    async def test_edit_or_send_edits_when_possible(self, dispatcher, channel):
        ref = await dispatcher.send_direct(OPERATOR_ID, "one")
        assert await dispatcher.edit_or_send(OPERATOR_ID, ref, "two") == ref
        assert channel.messages[ref]["text"] == "two"

    @pytest.mark.asyncio
    async def test_edit_or_send_sends_when_message_gone(self, dispatcher, channel):
        ref = await dispatcher.send_direct(OPERATOR_ID, "one")
        channel.delete(ref)
        new_ref = await dispatcher.edit_or_send(OPERATOR_ID, ref, "two")
        assert new_ref != ref
        assert channel.last_direct()["text"] == "two"


class TestMessageIdentityCache:
    def test_set_get_forget(self):
        cache = MessageIdentityCache()
        ref = MessageRef(1, 2)
        cache.set("R1", ref)
        assert "R1" in cache
        assert cache.get("R1") == ref
        cache.forget("R1")
        cache.forget("R1")
        assert cache.get("R1") is None
        assert len(cache) == 0
