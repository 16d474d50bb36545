"""Tests for ConversationEngine — info collection, scheduling, commands."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from callbacks.conversation import parse_appointment
from callbacks.models.session import Stage
from conftest import OPERATOR_ID, OPERATOR_NAME, START, action_ids

UTC = ZoneInfo("UTC")


class TestParseAppointment:
    def test_valid_input(self):
        when = parse_appointment("25.12.2030 14:30", UTC, START)
        assert when == datetime(2030, 12, 25, 14, 30, tzinfo=UTC)

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_appointment("  25.12.2030   14:30 ", UTC, START) is not None

    def test_timezone_applied(self):
        moscow = ZoneInfo("Europe/Moscow")
        when = parse_appointment("25.12.2030 14:30", moscow, START)
        assert when.astimezone(timezone.utc).hour == 11

    @pytest.mark.parametrize("text", [
        "31.02.2030 10:00",
        "32.01.2030 10:00",
        "25.12.2030 24:00",
        "25.12.2030 14:60",
    ])
    def test_impossible_dates_rejected(self, text):
        assert parse_appointment(text, UTC, START) is None

    @pytest.mark.parametrize("text", [
        "2030-12-25 14:30",
        "25.12.30 14:30",
        "25/12/2030 14:30",
        "tomorrow",
        "",
    ])
    def test_bad_format_rejected(self, text):
        assert parse_appointment(text, UTC, START) is None

    def test_past_and_present_rejected(self):
        assert parse_appointment("01.01.2030 09:00", UTC, START) is None
        assert parse_appointment("31.12.2029 23:59", UTC, START) is None
        assert parse_appointment("01.01.2030 09:01", UTC, START) is not None


async def _assign(store, record):
    return await store.update(record.id, {
        "status": "contacted", "assigned_to": OPERATOR_NAME, "assigned_user_id": OPERATOR_ID,
    })


class TestInfoCollection:
    @pytest.mark.asyncio
    async def test_three_steps_save_and_offer_scheduling(self, services, channel, store, record):
        record = await _assign(store, record)
        engine = services.engine
        session = await engine.start_info_collection(OPERATOR_ID, OPERATOR_NAME, record)
        card = session.anchor
        assert session.stage is Stage.COLLECTING_ADDRESS
        assert "Send the client's address" in channel.messages[card]["text"]

        await channel.say("10 Lenina St, apt 5")
        assert engine.get_session(OPERATOR_ID).stage is Stage.COLLECTING_SERVICE_TYPE
        assert "Address saved" in channel.messages[card]["text"]

        await channel.say("Compressor replacement")
        assert engine.get_session(OPERATOR_ID).stage is Stage.COLLECTING_PROBLEM
        assert "Service type saved" in channel.messages[card]["text"]

        await channel.say("Not cooling")
        assert engine.get_session(OPERATOR_ID) is None

        saved = await store.get("R1")
        assert saved.address == "10 Lenina St, apt 5"
        assert saved.detailed_service_type == "Compressor replacement"
        assert saved.problem_description == "Not cooling"

        final = channel.last_direct()
        assert "Information collected and saved" in final["text"]
        assert action_ids(final["actions"]) == ["schedule_R1"]

    @pytest.mark.asyncio
    async def test_dash_skips_problem_description(self, services, channel, store, record):
        record = await _assign(store, record)
        await services.engine.start_info_collection(OPERATOR_ID, OPERATOR_NAME, record)
        await channel.say("Address")
        await channel.say("Service")
        await channel.say("-")
        assert (await store.get("R1")).problem_description is None

    @pytest.mark.asyncio
    async def test_card_resent_when_edit_target_is_gone(self, services, channel, store, record):
        record = await _assign(store, record)
        session = await services.engine.start_info_collection(OPERATOR_ID, OPERATOR_NAME, record)
        channel.delete(session.anchor)

        await channel.say("Address")
        new_anchor = services.engine.get_session(OPERATOR_ID).anchor
        assert new_anchor != session.anchor
        assert "Address saved" in channel.messages[new_anchor]["text"]

    @pytest.mark.asyncio
    async def test_store_failure_keeps_final_stage(self, services, channel, store, record, monkeypatch):
        from callbacks.store.base import StoreError

        record = await _assign(store, record)
        await services.engine.start_info_collection(OPERATOR_ID, OPERATOR_NAME, record)
        await channel.say("Address")
        await channel.say("Service")

        async def broken_update(record_id, fields):
            raise StoreError("timeout")

        monkeypatch.setattr(store, "update", broken_update)
        await channel.say("Leaking")
        assert services.engine.get_session(OPERATOR_ID).stage is Stage.COLLECTING_PROBLEM
        assert "Could not save" in channel.last_direct()["text"]


class TestScheduling:
    async def _ready(self, services, store, record):
        record = await store.update(record.id, {
            "status": "in_progress",
            "assigned_user_id": OPERATOR_ID,
            "address": "10 Lenina St",
            "detailed_service_type": "Compressor replacement",
        })
        await services.engine.start_scheduling(OPERATOR_ID, OPERATOR_NAME, record)
        return record

    @pytest.mark.asyncio
    async def test_prompt_lists_format(self, services, channel, store, record):
        await self._ready(services, store, record)
        assert "DD.MM.YYYY HH:MM" in channel.last_direct()["text"]
        assert services.engine.get_session(OPERATOR_ID).stage is Stage.SCHEDULING

    @pytest.mark.asyncio
    async def test_bad_input_stays_in_stage(self, services, channel, store, record):
        await self._ready(services, store, record)
        for text in ("next week", "31.02.2030 10:00", "01.01.2029 10:00"):
            await channel.say(text)
            assert "Wrong date format" in channel.last_direct()["text"]
            assert services.engine.get_session(OPERATOR_ID).stage is Stage.SCHEDULING
        assert services.reminders.scheduled_for(OPERATOR_ID) == []

    @pytest.mark.asyncio
    async def test_valid_input_arms_reminder_and_confirms(self, services, channel, store, record):
        await services.dispatcher.notify_created(record)
        await self._ready(services, store, record)

        await channel.say("25.12.2030 14:30")
        assert services.engine.get_session(OPERATOR_ID) is None

        [reminder] = services.reminders.scheduled_for(OPERATOR_ID)
        assert reminder.appointment_at == datetime(2030, 12, 25, 14, 30, tzinfo=UTC)
        assert reminder.fire_at == datetime(2030, 12, 25, 13, 45, tzinfo=UTC)

        confirmation = channel.last_direct()
        assert "Visit scheduled" in confirmation["text"]
        assert action_ids(confirmation["actions"]) == ["complete_R1"]

        [card] = channel.channel_messages()
        assert "Visit scheduled for 25.12.2030 14:30" in channel.messages[card["ref"]]["text"]
        assert channel.messages[card["ref"]]["actions"] == []

    @pytest.mark.asyncio
    async def test_visit_too_close_for_reminder(self, services, channel, store, record):
        await self._ready(services, store, record)
        await channel.say((START + timedelta(minutes=30)).strftime("%d.%m.%Y %H:%M"))
        assert "too close for a reminder" in channel.last_direct()["text"]
        assert services.reminders.scheduled_for(OPERATOR_ID) == []

    @pytest.mark.asyncio
    async def test_closed_request_ends_session(self, services, channel, store, record):
        await self._ready(services, store, record)
        await store.update("R1", {"status": "cancelled"})
        await channel.say("25.12.2030 14:30")
        assert "already closed" in channel.last_direct()["text"]
        assert services.engine.get_session(OPERATOR_ID) is None


class TestCancelCommand:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("answers", [[], ["Address"], ["Address", "Service"]])
    async def test_cancel_in_every_collection_stage(self, services, channel, store, record, answers):
        record = await _assign(store, record)
        await services.engine.start_info_collection(OPERATOR_ID, OPERATOR_NAME, record)
        for answer in answers:
            await channel.say(answer)

        await channel.say("/cancel")
        assert services.engine.get_session(OPERATOR_ID) is None
        assert "collection cancelled" in channel.last_direct()["text"]

        await channel.say("some free text")
        assert services.engine.get_session(OPERATOR_ID) is None
        assert (await store.get("R1")).address is None

    @pytest.mark.asyncio
    async def test_cancel_while_scheduling(self, services, channel, store, record):
        await services.engine.start_scheduling(OPERATOR_ID, OPERATOR_NAME, record)
        await channel.say("/cancel@callback_bot")
        assert services.engine.get_session(OPERATOR_ID) is None
        assert "Scheduling cancelled" in channel.last_direct()["text"]

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, services, channel):
        await channel.say("/cancel")
        assert "Nothing to cancel" in channel.last_direct()["text"]


class TestCommands:
    @pytest.mark.asyncio
    async def test_start_and_help(self, services, channel):
        await channel.say("/start")
        assert "Welcome, Ann" in channel.last_direct()["text"]
        await channel.say("/help")
        assert "/pending" in channel.last_direct()["text"]

    @pytest.mark.asyncio
    async def test_status_reports_listener_state(self, services, channel):
        await channel.say("/status")
        text = channel.last_direct()["text"]
        assert "IDLE" in text
        assert "degraded" in text

    @pytest.mark.asyncio
    async def test_unknown_text_gets_hint(self, services, channel):
        await channel.say("hello?")
        assert "Use /help" in channel.last_direct()["text"]
        assert services.engine.get_session(OPERATOR_ID) is None

    @pytest.mark.asyncio
    async def test_schedule_lists_visits_with_complete_buttons(self, services, channel, store, record):
        await store.update("R1", {"status": "in_progress", "address": "10 Lenina St"})
        services.reminders.arm(OPERATOR_ID, "R1", START + timedelta(hours=5), "Ivan Petrov")

        await channel.say("/schedule")
        message = channel.last_direct()
        assert "Your scheduled visits" in message["text"]
        assert "In 5 h." in message["text"]
        assert action_ids(message["actions"]) == ["complete_R1"]

    @pytest.mark.asyncio
    async def test_schedule_empty(self, services, channel):
        await channel.say("/schedule")
        assert "no scheduled visits" in channel.last_direct()["text"]

    @pytest.mark.asyncio
    async def test_pending_lists_ready_clients(self, services, channel, store, record):
        await store.update("R1", {
            "status": "contacted",
            "assigned_user_id": OPERATOR_ID,
            "address": "10 Lenina St",
            "detailed_service_type": "Compressor replacement",
        })
        await store.create({"id": "R2", "name": "No info", "phone": "+7000000000",
                            "status": "contacted", "assigned_user_id": OPERATOR_ID})
        await store.create({"id": "R3", "name": "Someone else", "phone": "+7000000001",
                            "status": "contacted", "assigned_user_id": 7,
                            "address": "x", "detailed_service_type": "y"})

        await channel.say("/pending")
        message = channel.last_direct()
        assert action_ids(message["actions"]) == ["schedule_pending_R1"]

    @pytest.mark.asyncio
    async def test_pending_skips_already_scheduled(self, services, channel, store, record):
        await store.update("R1", {
            "status": "in_progress",
            "assigned_user_id": OPERATOR_ID,
            "address": "10 Lenina St",
            "detailed_service_type": "Compressor replacement",
        })
        services.reminders.arm(OPERATOR_ID, "R1", START + timedelta(hours=5))
        await channel.say("/pending")
        assert "no clients ready" in channel.last_direct()["text"]
