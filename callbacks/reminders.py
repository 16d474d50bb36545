"""Visit reminders — one deferred direct message per (request, operator).

A reminder fires ``lead`` (45 minutes by default) before the visit. When it
fires the request is re-read: if it was completed or cancelled meanwhile
the reminder is dropped silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from callbacks import messages
from callbacks.notifications import NotificationDispatcher
from callbacks.store.base import RequestStore, StoreError
from callbacks.timers import ScheduledTask, TaskScheduler

log = logging.getLogger("callbacks.reminders")

DEFAULT_LEAD = timedelta(minutes=45)

ReminderKey = tuple[str, int]


@dataclass
class ScheduledReminder:
    record_id: str
    operator_id: int
    appointment_at: datetime
    fire_at: datetime
    client_name: str
    service_type: Optional[str]
    task: ScheduledTask

    @property
    def key(self) -> ReminderKey:
        return (self.record_id, self.operator_id)


class ReminderStore:
    """(record id, operator id) → armed reminder."""

    def __init__(self) -> None:
        self._items: dict[ReminderKey, ScheduledReminder] = {}

    def get(self, key: ReminderKey) -> ScheduledReminder | None:
        return self._items.get(key)

    def put(self, reminder: ScheduledReminder) -> ScheduledReminder | None:
        previous = self._items.get(reminder.key)
        self._items[reminder.key] = reminder
        return previous

    def pop(self, key: ReminderKey) -> ScheduledReminder | None:
        return self._items.pop(key, None)

    def for_record(self, record_id: str) -> list[ScheduledReminder]:
        return [r for (rid, _), r in self._items.items() if rid == record_id]

    def for_operator(self, operator_id: int) -> list[ScheduledReminder]:
        return [r for (_, oid), r in self._items.items() if oid == operator_id]

    def all(self) -> list[ScheduledReminder]:
        return list(self._items.values())

    def __contains__(self, key: ReminderKey) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class ReminderScheduler:
    def __init__(
        self,
        scheduler: TaskScheduler,
        store: RequestStore,
        dispatcher: NotificationDispatcher,
        reminders: ReminderStore | None = None,
        lead: timedelta = DEFAULT_LEAD,
        tz: ZoneInfo | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._store = store
        self._dispatcher = dispatcher
        self._reminders = reminders if reminders is not None else ReminderStore()
        self._lead = lead
        self._tz = tz or ZoneInfo("UTC")

    @property
    def lead_minutes(self) -> int:
        return int(self._lead.total_seconds() // 60)

    def arm(
        self,
        operator_id: int,
        record_id: str,
        when: datetime,
        client_name: str = "",
        service_type: Optional[str] = None,
    ) -> ScheduledReminder | None:
        """Arm a reminder for a visit at ``when``.

        Returns the reminder, or None when the fire time has already passed.
        Any earlier reminder for the same (record, operator) is replaced.
        """
        fire_at = when - self._lead
        if fire_at <= self._scheduler.now():
            log.info(
                "Reminder time for request %s is in the past, skipping", record_id,
            )
            return None

        key = (record_id, operator_id)
        task = self._scheduler.call_at(
            fire_at, lambda: self._fire(key), name=f"reminder-{record_id}-{operator_id}",
        )
        reminder = ScheduledReminder(
            record_id=record_id,
            operator_id=operator_id,
            appointment_at=when,
            fire_at=fire_at,
            client_name=client_name,
            service_type=service_type,
            task=task,
        )
        previous = self._reminders.put(reminder)
        if previous is not None:
            previous.task.cancel()
            log.info("Replaced reminder for request %s", record_id)
        log.info("Reminder for request %s scheduled at %s", record_id, fire_at.isoformat())
        return reminder

    def cancel(self, operator_id: int, record_id: str) -> bool:
        """Cancel a reminder. Returns True if one was armed."""
        reminder = self._reminders.pop((record_id, operator_id))
        if reminder is None:
            return False
        reminder.task.cancel()
        log.info("Reminder for request %s cancelled", record_id)
        return True

    def cancel_for_record(self, record_id: str) -> int:
        """Cancel every operator's reminder for a request."""
        reminders = self._reminders.for_record(record_id)
        for reminder in reminders:
            self.cancel(reminder.operator_id, record_id)
        return len(reminders)

    def get(self, operator_id: int, record_id: str) -> ScheduledReminder | None:
        return self._reminders.get((record_id, operator_id))

    def scheduled_for(self, operator_id: int) -> list[ScheduledReminder]:
        return sorted(self._reminders.for_operator(operator_id), key=lambda r: r.appointment_at)

    def is_scheduled(self, operator_id: int, record_id: str) -> bool:
        return (record_id, operator_id) in self._reminders

    def shutdown(self) -> None:
        for reminder in self._reminders.all():
            reminder.task.cancel()
            self._reminders.pop(reminder.key)

    async def _fire(self, key: ReminderKey) -> None:
        reminder = self._reminders.get(key)
        if reminder is None or not reminder.task.fired:
            return
        self._reminders.pop(key)

        try:
            record = await self._store.get(reminder.record_id)
        except StoreError as e:
            # Cannot confirm it is still open; a spurious reminder beats a missed visit
            log.warning("Status check for reminder %s failed: %s", reminder.record_id, e)
            record = None
        else:
            if record is None or record.is_closed:
                log.info("Reminder for request %s suppressed", reminder.record_id)
                return

        text = messages.reminder(
            reminder.record_id,
            record.name if record else reminder.client_name,
            (record.display_service if record else None) or reminder.service_type,
            reminder.appointment_at,
            self._tz,
            self.lead_minutes,
        )
        await self._dispatcher.send_direct(reminder.operator_id, text)
        log.info("Reminder sent for request %s", reminder.record_id)
