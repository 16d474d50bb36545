"""Per-operator dialogue driver — collects visit details and schedules visits.

Each operator has at most one ConversationSession. Two flows:

  info collection   COLLECTING_ADDRESS → COLLECTING_SERVICE_TYPE →
                    COLLECTING_PROBLEM → fields saved, detail message with a
                    "schedule" button sent, session ends
  scheduling        SCHEDULING (entered from the schedule button) accepts one
                    "DD.MM.YYYY HH:MM" reply; on success a reminder is armed,
                    a confirmation with a "complete" button is sent, the group
                    card is updated and the session ends

``/cancel`` is checked before anything else in every stage. While
collecting, every step edits the same information card; if that message is
gone a new one is sent and becomes the card.

Text from operators without a session is treated as a bot command
(/start, /help, /status, /schedule, /pending).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from callbacks import messages
from callbacks.channels.base import InboundText, MessageRef
from callbacks.models.request import CallbackRequest, RequestStatus
from callbacks.models.session import CollectedInfo, ConversationSession, Stage
from callbacks.notifications import NotificationDispatcher
from callbacks.reminders import ReminderScheduler
from callbacks.store.base import RequestStore, StoreError
from callbacks.timers import TaskScheduler

log = logging.getLogger("callbacks.conversation")

_APPOINTMENT_RE = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})\s+(\d{2}):(\d{2})$")

SKIP_MARKER = "-"
PENDING_SCAN_LIMIT = 100


def parse_appointment(text: str, tz: ZoneInfo, now: datetime) -> datetime | None:
    """Parse ``DD.MM.YYYY HH:MM`` in ``tz``.

    Returns the aware datetime, or None if the text does not match, names
    an impossible calendar date, or is not strictly after ``now``.
    """
    match = _APPOINTMENT_RE.match(text.strip())
    if not match:
        return None
    day, month, year, hour, minute = (int(g) for g in match.groups())
    try:
        when = datetime(year, month, day, hour, minute, tzinfo=tz)
    except ValueError:
        return None
    if when <= now:
        return None
    return when


def _command(text: str) -> str:
    """'/Cancel@my_bot' → '/cancel'."""
    return text.split("@", 1)[0].strip().lower()


def _record_ids(entries: list[tuple[CallbackRequest, datetime]]) -> frozenset[str]:
    return frozenset(record.id for record, _ in entries)


class ConversationSessionStore:
    """operator id → active session."""

    def __init__(self) -> None:
        self._sessions: dict[int, ConversationSession] = {}

    def get(self, operator_id: int) -> ConversationSession | None:
        return self._sessions.get(operator_id)

    def put(self, session: ConversationSession) -> ConversationSession | None:
        previous = self._sessions.get(session.operator_id)
        self._sessions[session.operator_id] = session
        return previous

    def pop(self, operator_id: int) -> ConversationSession | None:
        return self._sessions.pop(operator_id, None)

    def for_record(self, record_id: str) -> list[ConversationSession]:
        return [s for s in self._sessions.values() if s.record_id == record_id]

    def __contains__(self, operator_id: int) -> bool:
        return operator_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class ConversationEngine:
    """Drives every operator's dialogue.

    Typical lifecycle::

        engine = ConversationEngine(store, dispatcher, reminders, clock)
        channel.on_inbound_text(engine.handle_text)

        # the action router starts sessions
        await engine.start_info_collection(op_id, "Ann", record)
        await engine.start_scheduling(op_id, "Ann", record)
    """

    def __init__(
        self,
        store: RequestStore,
        dispatcher: NotificationDispatcher,
        reminders: ReminderScheduler,
        clock: TaskScheduler,
        sessions: ConversationSessionStore | None = None,
        tz: ZoneInfo | None = None,
        status_provider: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._reminders = reminders
        self._clock = clock
        self._sessions = sessions if sessions is not None else ConversationSessionStore()
        self._tz = tz or ZoneInfo("UTC")
        self._status_provider = status_provider

        # Last /schedule list per operator and the request ids it shows
        self._schedule_views: dict[int, tuple[MessageRef, frozenset[str]]] = {}

    @property
    def sessions(self) -> ConversationSessionStore:
        return self._sessions

    # ── Session entry points ─────────────────────────────────────

    async def start_info_collection(
        self, operator_id: int, operator_name: str, record: CallbackRequest,
    ) -> ConversationSession:
        session = ConversationSession(
            operator_id=operator_id,
            operator_name=operator_name,
            stage=Stage.COLLECTING_ADDRESS,
            record_id=record.id,
        )
        self._replace_session(session)
        session.anchor = await self._dispatcher.send_direct(
            operator_id,
            messages.info_card(record, session.collected, messages.PROMPT_ADDRESS),
        )
        log.info("Info collection started: op=%s request=%s", operator_id, record.id)
        return session

    async def start_scheduling(
        self, operator_id: int, operator_name: str, record: CallbackRequest,
    ) -> ConversationSession:
        session = ConversationSession(
            operator_id=operator_id,
            operator_name=operator_name,
            stage=Stage.SCHEDULING,
            record_id=record.id,
        )
        self._replace_session(session)
        await self._dispatcher.send_direct(operator_id, messages.scheduling_prompt(record))
        log.info("Scheduling started: op=%s request=%s", operator_id, record.id)
        return session

    def _replace_session(self, session: ConversationSession) -> None:
        previous = self._sessions.put(session)
        if previous is not None:
            log.info(
                "Operator %s abandoned %s for request %s",
                session.operator_id, previous.stage.value, previous.record_id,
            )

    async def end_sessions_for_record(self, record_id: str, reason: str) -> int:
        """Drop every dialogue about a request that was just closed."""
        ended = self._sessions.for_record(record_id)
        for session in ended:
            self._sessions.pop(session.operator_id)
            await self._dispatcher.send_direct(session.operator_id, reason)
        return len(ended)

    # ── Inbound text ─────────────────────────────────────────────

    async def handle_text(self, message: InboundText) -> None:
        text = message.text.strip()
        operator_id = message.operator_id
        session = self._sessions.get(operator_id)

        if _command(text) == "/cancel":
            await self._cancel(operator_id, session)
            return

        if session is None:
            await self._handle_command(message, text)
        elif session.is_collecting:
            await self._handle_collection(session, text)
        else:
            await self._handle_scheduling(session, text)

    async def _cancel(self, operator_id: int, session: ConversationSession | None) -> None:
        if session is None:
            await self._dispatcher.send_direct(operator_id, "ℹ️ Nothing to cancel.")
            return
        self._sessions.pop(operator_id)
        if session.is_collecting:
            text = "❌ Information collection cancelled"
        else:
            text = "❌ Scheduling cancelled"
        log.info("Operator %s cancelled %s", operator_id, session.stage.value)
        await self._dispatcher.send_direct(operator_id, text)

    async def _load_record(self, session: ConversationSession) -> CallbackRequest | None:
        """Fetch the session's request; tell the operator if that fails."""
        try:
            record = await self._store.get(session.record_id)
        except StoreError as e:
            log.error("Loading request %s failed: %s", session.record_id, e)
            await self._dispatcher.send_direct(
                session.operator_id, "❌ Could not load the request. Please try again.",
            )
            return None
        if record is None:
            self._sessions.pop(session.operator_id)
            await self._dispatcher.send_direct(session.operator_id, "❌ Request not found")
        return record

    # ── Info collection ──────────────────────────────────────────

    async def _handle_collection(self, session: ConversationSession, text: str) -> None:
        if not text:
            await self._dispatcher.send_direct(session.operator_id, "✏️ Please send a text reply.")
            return

        record = await self._load_record(session)
        if record is None:
            return

        if session.stage is Stage.COLLECTING_ADDRESS:
            session.collected.address = text
            session.stage = Stage.COLLECTING_SERVICE_TYPE
            await self._update_card(session, record, messages.PROMPT_SERVICE_TYPE)
        elif session.stage is Stage.COLLECTING_SERVICE_TYPE:
            session.collected.detailed_service_type = text
            session.stage = Stage.COLLECTING_PROBLEM
            await self._update_card(session, record, messages.PROMPT_PROBLEM)
        else:
            await self._finish_collection(session, record, text)

    async def _update_card(
        self, session: ConversationSession, record: CallbackRequest, prompt: str,
    ) -> None:
        text = messages.info_card(record, session.collected, prompt)
        session.anchor = await self._dispatcher.edit_or_send(
            session.operator_id, session.anchor, text,
        )

    async def _finish_collection(
        self, session: ConversationSession, record: CallbackRequest, text: str,
    ) -> None:
        problem = None if text == SKIP_MARKER else text
        collected = CollectedInfo(
            address=session.collected.address,
            detailed_service_type=session.collected.detailed_service_type,
            problem_description=problem,
        )
        try:
            record = await self._store.update(record.id, collected.model_dump())
        except StoreError as e:
            log.error("Saving collected info for %s failed: %s", record.id, e)
            await self._dispatcher.send_direct(
                session.operator_id,
                "❌ Could not save the information. Send the problem description again.",
            )
            return

        self._sessions.pop(session.operator_id)
        session.collected = collected
        log.info("Additional info saved for request %s", record.id)
        await self._dispatcher.send_direct(
            session.operator_id,
            messages.info_collected(record, collected),
            messages.schedule_actions(record.id),
        )

    # ── Scheduling ───────────────────────────────────────────────

    async def _handle_scheduling(self, session: ConversationSession, text: str) -> None:
        when = parse_appointment(text, self._tz, self._clock.now())
        if when is None:
            await self._dispatcher.send_direct(session.operator_id, messages.wrong_date_format())
            return

        record = await self._load_record(session)
        if record is None:
            return
        if record.is_closed:
            self._sessions.pop(session.operator_id)
            await self._dispatcher.send_direct(
                session.operator_id, "❌ This request is already closed.",
            )
            return

        reminder = self._reminders.arm(
            session.operator_id,
            record.id,
            when,
            client_name=record.name,
            service_type=record.display_service,
        )
        confirmation = messages.visit_scheduled(
            record, when, self._tz, self._reminders.lead_minutes,
        )
        if reminder is None:
            confirmation += "\n\n⚠️ The visit is too close for a reminder."

        self._sessions.pop(session.operator_id)
        await self._dispatcher.send_direct(
            session.operator_id, confirmation, messages.complete_actions(record.id),
        )
        await self._dispatcher.notify_status_changed(
            record,
            f"📅 Visit scheduled for {messages.format_local(when, self._tz)} "
            f"({session.operator_name})",
            [],
        )
        log.info("Visit for request %s scheduled by %s", record.id, session.operator_id)

    # ── Commands ─────────────────────────────────────────────────

    async def _handle_command(self, message: InboundText, text: str) -> None:
        command = _command(text)
        operator_id = message.operator_id
        if command == "/start":
            await self._dispatcher.send_direct(operator_id, messages.welcome(message.operator_name))
        elif command == "/help":
            await self._dispatcher.send_direct(operator_id, messages.HELP)
        elif command == "/status":
            state = self._status_provider() if self._status_provider else "unknown"
            await self._dispatcher.send_direct(
                operator_id, messages.system_status(state, self._clock.now(), self._tz),
            )
        elif command == "/schedule":
            await self._send_schedule(operator_id)
        elif command == "/pending":
            await self._send_pending(operator_id)
        else:
            await self._dispatcher.send_direct(operator_id, messages.UNKNOWN_MESSAGE)

    async def _schedule_entries(self, operator_id: int) -> list[tuple[CallbackRequest, datetime]]:
        entries = []
        for reminder in self._reminders.scheduled_for(operator_id):
            record = await self._store.get(reminder.record_id)
            if record is None or record.is_closed:
                continue
            entries.append((record, reminder.appointment_at))
        return entries

    async def _send_schedule(self, operator_id: int) -> None:
        try:
            entries = await self._schedule_entries(operator_id)
        except StoreError as e:
            log.error("Loading schedule for %s failed: %s", operator_id, e)
            await self._dispatcher.send_direct(operator_id, "❌ Could not load your schedule.")
            return
        text, keyboard = messages.schedule_list(entries, self._clock.now(), self._tz)
        ref = await self._dispatcher.send_direct(operator_id, text, keyboard or None)
        if ref is not None and entries:
            self._schedule_views[operator_id] = (ref, _record_ids(entries))

    async def refresh_views_for_record(self, record_id: str) -> None:
        """Re-render every /schedule list that shows ``record_id``."""
        operators = [
            operator_id for operator_id, (_, record_ids) in self._schedule_views.items()
            if record_id in record_ids
        ]
        for operator_id in operators:
            await self.refresh_schedule_view(operator_id)

    async def refresh_schedule_view(self, operator_id: int) -> None:
        """Re-render the operator's last /schedule list in place."""
        view = self._schedule_views.get(operator_id)
        if view is None:
            return
        ref = view[0]
        try:
            entries = await self._schedule_entries(operator_id)
        except StoreError as e:
            log.warning("Schedule refresh for %s skipped: %s", operator_id, e)
            return
        text, keyboard = messages.schedule_list(entries, self._clock.now(), self._tz)
        refreshed = await self._dispatcher.edit_or_send(operator_id, ref, text, keyboard)
        if refreshed is None or not entries:
            self._schedule_views.pop(operator_id, None)
        else:
            self._schedule_views[operator_id] = (refreshed, _record_ids(entries))

    async def _send_pending(self, operator_id: int) -> None:
        try:
            page = await self._store.list(page=1, page_size=PENDING_SCAN_LIMIT)
        except StoreError as e:
            log.error("Loading pending clients for %s failed: %s", operator_id, e)
            await self._dispatcher.send_direct(operator_id, "❌ Could not load pending clients.")
            return
        ready = [
            record for record in page.records
            if record.assigned_user_id == operator_id
            and record.status in (RequestStatus.CONTACTED, RequestStatus.IN_PROGRESS)
            and record.has_collected_info
            and not self._reminders.is_scheduled(operator_id, record.id)
        ]
        text, keyboard = messages.pending_list(ready, self._tz)
        await self._dispatcher.send_direct(operator_id, text, keyboard or None)

    def get_session(self, operator_id: int) -> Optional[ConversationSession]:
        return self._sessions.get(operator_id)
