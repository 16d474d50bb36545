"""Reconnecting change listener — keeps one table subscription alive.

State machine:

    IDLE → SUBSCRIBING → SUBSCRIBED → {ERROR | TIMED_OUT | CLOSED}
                                              │
                                   backoff, then SUBSCRIBING
                                              │
                        retry budget exhausted → FAILED (manual reconnect only)

Every failure is classified before it is retried. Critical failures
(database unreachable, permission problems) alert the operators right away;
transient ones alert only once they repeat. Receiving data is the real
health signal, so the attempt counter resets on every processed event as
well as on SUBSCRIBED.

A periodic health check covers the silent failure mode where the socket
stays up but events stop arriving: if nothing was seen for a while, a
throwaway probe subscription is opened and a failed probe forces a
reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from callbacks.timers import ScheduledTask, TaskScheduler

from .feed import (
    ChangeFeed,
    ChangeHandlers,
    FeedError,
    Subscription,
    SubscriptionStatus,
)

log = logging.getLogger("callbacks.realtime.listener")

MAX_ATTEMPTS = 5
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 30000

DATABASE_UNREACHABLE = "unable to connect to the project database"
PERMISSION_MARKERS = ("permission", "unauthorized", "forbidden")

AlertCallback = Callable[[str], Awaitable[None]]


class ListenerState(str, Enum):
    IDLE = "IDLE"
    SUBSCRIBING = "SUBSCRIBING"
    SUBSCRIBED = "SUBSCRIBED"
    ERROR = "ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


_FAILURE_STATES = {
    SubscriptionStatus.CHANNEL_ERROR: ListenerState.ERROR,
    SubscriptionStatus.TIMED_OUT: ListenerState.TIMED_OUT,
    SubscriptionStatus.CLOSED: ListenerState.CLOSED,
}


class Severity(str, Enum):
    CRITICAL = "critical"
    RECOVERABLE = "recoverable"


@dataclass(frozen=True)
class FailureClassification:
    severity: Severity
    notify: bool


def backoff_delay(
    attempt: int, base_ms: int = BASE_DELAY_MS, max_ms: int = MAX_DELAY_MS,
) -> float:
    """Delay before retry number ``attempt`` (0-based), in seconds."""
    return min(base_ms * (2 ** max(0, attempt)), max_ms) / 1000


def classify_failure(
    status: SubscriptionStatus, message: Optional[str], attempt: int,
) -> FailureClassification:
    """Decide how bad a failure is and whether operators hear about it.

    ``attempt`` is the number of retries already made in the current run
    of failures.
    """
    if status is SubscriptionStatus.CLOSED:
        return FailureClassification(Severity.RECOVERABLE, notify=False)

    text = (message or "").lower()
    if DATABASE_UNREACHABLE in text:
        return FailureClassification(Severity.CRITICAL, notify=True)
    if any(marker in text for marker in PERMISSION_MARKERS):
        return FailureClassification(Severity.CRITICAL, notify=True)

    if status is SubscriptionStatus.TIMED_OUT:
        return FailureClassification(Severity.RECOVERABLE, notify=attempt >= 1)
    return FailureClassification(Severity.RECOVERABLE, notify=attempt >= 2)


class ReconnectingChangeListener:
    """Owns the subscription to one table and the policy for keeping it."""

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        handlers: ChangeHandlers,
        scheduler: TaskScheduler,
        on_alert: AlertCallback | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay_ms: int = BASE_DELAY_MS,
        max_delay_ms: int = MAX_DELAY_MS,
        subscribe_timeout: float = 15.0,
        health_interval: float = 300.0,
        stale_after: float = 900.0,
        probe_timeout: float = 10.0,
    ) -> None:
        self._feed = feed
        self._table = table
        self._handlers = handlers
        self._scheduler = scheduler
        self._on_alert = on_alert
        self._max_attempts = max_attempts
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._subscribe_timeout = subscribe_timeout
        self._health_interval = health_interval
        self._stale_after = stale_after
        self._probe_timeout = probe_timeout

        self.state = ListenerState.IDLE
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.last_event_at: Optional[datetime] = None
        self.subscribed_at: Optional[datetime] = None

        self._subscription: Subscription | None = None
        self._initializing = False
        self._closing = False
        # Bumped whenever a subscription is abandoned; stale callbacks compare against it
        self._generation = 0

        self._retry_task: ScheduledTask | None = None
        self._timeout_task: ScheduledTask | None = None
        self._health_task: ScheduledTask | None = None
        self._event_tasks: set[asyncio.Task] = set()

        self._wrapped = ChangeHandlers(
            on_insert=self._wrap(handlers.on_insert),
            on_update=self._wrap(handlers.on_update),
            on_delete=self._wrap(handlers.on_delete),
        )

    # ── Public API ───────────────────────────────────────────────

    async def initialize(self) -> Subscription | None:
        """Open the subscription. Returns None if one is already being opened."""
        if self._initializing:
            log.warning("Realtime initialization already in progress, skipping")
            return None
        self._initializing = True
        try:
            return await self._subscribe()
        finally:
            self._initializing = False

    async def reconnect(self) -> Subscription | None:
        """Manual reconnect: restores the full retry budget."""
        log.info("Manual realtime reconnect requested")
        self._cancel(self._retry_task)
        self.attempts = 0
        self.last_error = None
        self._closing = False
        return await self.initialize()

    async def disconnect(self) -> None:
        """Stop listening. Pending timers are cancelled before the handle goes."""
        self._closing = True
        self._cancel(self._retry_task)
        self._cancel(self._timeout_task)
        self._cancel(self._health_task)
        self._generation += 1
        await self._release()
        await self.drain()
        self.state = ListenerState.IDLE
        log.info("Realtime listener disconnected")

    async def probe(self) -> bool:
        """Run the capability probe against the feed."""
        return await self._feed.probe(self._table, self._probe_timeout)

    async def drain(self) -> None:
        """Wait for every in-flight change event to finish."""
        while self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "table": self._table,
            "attempts": self.attempts,
            "max_attempts": self._max_attempts,
            "last_error": self.last_error,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            "subscribed_at": self.subscribed_at.isoformat() if self.subscribed_at else None,
            "retry_pending": bool(self._retry_task and self._retry_task.active),
        }

    # ── Subscription lifecycle ───────────────────────────────────

    async def _subscribe(self) -> Subscription | None:
        self._cancel(self._retry_task)
        self._cancel(self._health_task)
        self._generation += 1
        await self._release()

        generation = self._generation
        self.state = ListenerState.SUBSCRIBING
        log.info(
            "Subscribing to %s (attempt %d/%d)", self._table, self.attempts, self._max_attempts,
        )

        async def on_status(status: SubscriptionStatus, error: Optional[str]) -> None:
            await self._on_status(generation, status, error)

        async def on_timeout() -> None:
            if generation == self._generation and self.state is ListenerState.SUBSCRIBING:
                await self._handle_failure(
                    SubscriptionStatus.TIMED_OUT,
                    f"no confirmation within {self._subscribe_timeout:g}s",
                )

        self._timeout_task = self._scheduler.call_later(
            self._subscribe_timeout, on_timeout, name="realtime-subscribe-timeout",
        )
        try:
            subscription = await asyncio.wait_for(
                self._feed.subscribe(self._table, self._wrapped, on_status),
                self._subscribe_timeout,
            )
        except FeedError as e:
            if generation == self._generation:
                await self._handle_failure(SubscriptionStatus.CHANNEL_ERROR, str(e))
            return None
        except asyncio.TimeoutError:
            log.warning("Realtime subscribe call did not return within %gs", self._subscribe_timeout)
            if generation == self._generation and self.state is ListenerState.SUBSCRIBING:
                await self._handle_failure(
                    SubscriptionStatus.TIMED_OUT,
                    f"subscribe call did not return within {self._subscribe_timeout:g}s",
                )
            return None

        if generation != self._generation:
            # Failed (or was disconnected) while the join was in flight
            await self._feed.unsubscribe(subscription)
            return None
        self._subscription = subscription
        return subscription

    async def _release(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await self._feed.unsubscribe(subscription)
        except Exception as e:
            log.warning("Releasing realtime subscription failed: %s", e)

    async def _on_status(
        self, generation: int, status: SubscriptionStatus, error: Optional[str],
    ) -> None:
        if generation != self._generation or self._closing:
            return
        if status is SubscriptionStatus.SUBSCRIBED:
            self._cancel(self._timeout_task)
            self.state = ListenerState.SUBSCRIBED
            self.attempts = 0
            self.last_error = None
            self.subscribed_at = self._scheduler.now()
            self._arm_health_check()
            log.info("Realtime subscription to %s active", self._table)
            return
        await self._handle_failure(status, error)

    async def _handle_failure(self, status: SubscriptionStatus, error: Optional[str]) -> None:
        if self._closing:
            return
        self._generation += 1
        self._cancel(self._timeout_task)
        self._cancel(self._health_task)

        self.state = _FAILURE_STATES[status]
        self.last_error = error or status.value
        classification = classify_failure(status, error, self.attempts)
        log.warning(
            "Realtime %s (%s) on attempt %d: %s",
            status.value, classification.severity.value, self.attempts, self.last_error,
        )
        await self._release()

        if classification.notify:
            await self._alert(
                f"Realtime connection problem ({status.value}): {self.last_error}. "
                f"Attempt {self.attempts + 1} of {self._max_attempts}."
            )

        if self.attempts >= self._max_attempts:
            self.state = ListenerState.FAILED
            log.error(
                "Realtime retry budget exhausted after %d attempts, waiting for manual reconnect",
                self.attempts,
            )
            await self._alert(
                f"Realtime notifications stopped after {self.attempts} failed reconnect "
                "attempts. Manual reconnect required."
            )
            return

        delay = backoff_delay(self.attempts, self._base_delay_ms, self._max_delay_ms)
        self.attempts += 1
        self._cancel(self._retry_task)
        self._retry_task = self._scheduler.call_later(delay, self._retry, name="realtime-retry")
        log.info("Realtime retry %d scheduled in %.1fs", self.attempts, delay)

    async def _retry(self) -> None:
        if self._closing or self.state is ListenerState.FAILED:
            return
        if self._initializing:
            # An abandoned subscribe call is still running; come back once it has returned
            log.info("Realtime retry deferred, previous subscribe call still in flight")
            self._retry_task = self._scheduler.call_later(
                backoff_delay(0, self._base_delay_ms, self._max_delay_ms),
                self._retry,
                name="realtime-retry",
            )
            return
        await self.initialize()

    # ── Health check ─────────────────────────────────────────────

    def _arm_health_check(self) -> None:
        self._cancel(self._health_task)
        self._health_task = self._scheduler.call_later(
            self._health_interval, self._health_check, name="realtime-health",
        )

    async def _health_check(self) -> None:
        if self._closing or self.state is not ListenerState.SUBSCRIBED:
            return
        last_seen = self.last_event_at or self.subscribed_at
        quiet = (self._scheduler.now() - last_seen).total_seconds() if last_seen else 0.0
        if quiet <= self._stale_after:
            self._arm_health_check()
            return

        log.info("No realtime events for %.0fs, probing", quiet)
        if await self.probe():
            log.info("Realtime probe succeeded, subscription considered healthy")
            self._arm_health_check()
            return
        log.warning("Realtime probe failed, forcing reconnect")
        await self.initialize()

    # ── Events ───────────────────────────────────────────────────

    def _wrap(self, handler: Optional[Callable[..., Awaitable[None]]]):
        if handler is None:
            return None

        async def on_event(*rows: dict) -> None:
            task = asyncio.create_task(self._process(handler, rows))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

        return on_event

    async def _process(self, handler: Callable[..., Awaitable[None]], rows: tuple) -> None:
        self.last_event_at = self._scheduler.now()
        try:
            await handler(*rows)
        except Exception:
            log.exception("Realtime event handler failed")
            return
        self.attempts = 0

    # ── Helpers ──────────────────────────────────────────────────

    async def _alert(self, text: str) -> None:
        if self._on_alert is None:
            return
        try:
            await self._on_alert(text)
        except Exception as e:
            log.error("Realtime alert could not be delivered: %s", e)

    @staticmethod
    def _cancel(task: ScheduledTask | None) -> None:
        if task is not None:
            task.cancel()
