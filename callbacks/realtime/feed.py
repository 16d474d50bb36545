"""ChangeFeed ABC — database change events pushed over a subscription.

A feed delivers insert/update/delete events for one table to a set of
async handlers and reports the subscription's health through a status
callback:

  SUBSCRIBED     the server confirmed the subscription
  CHANNEL_ERROR  the server or transport reported an error (with text)
  TIMED_OUT      the server did not answer in time
  CLOSED         the subscription or connection went away

The reconnection policy lives in ``ReconnectingChangeListener``; feeds only
report what happened.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger("callbacks.realtime.feed")

Row = dict[str, Any]


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class FeedError(Exception):
    """The feed could not open or maintain a subscription."""


StatusCallback = Callable[[SubscriptionStatus, Optional[str]], Awaitable[None]]


@dataclass
class ChangeHandlers:
    """Async callbacks for one table's events. Any may be omitted."""

    on_insert: Optional[Callable[[Row], Awaitable[None]]] = None
    on_update: Optional[Callable[[Row, Row], Awaitable[None]]] = None
    on_delete: Optional[Callable[[Row], Awaitable[None]]] = None


_probe_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``subscribe``."""

    topic: str
    table: str
    handlers: ChangeHandlers
    on_status: StatusCallback
    active: bool = True


class ChangeFeed(ABC):
    """Abstract change feed."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        handlers: ChangeHandlers,
        on_status: StatusCallback,
        topic: str | None = None,
    ) -> Subscription:
        """Open a subscription. Confirmation arrives through ``on_status``.

        Raises:
            FeedError: the transport could not be reached at all.
        """

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Leave the subscription. Safe to call on an inactive handle."""

    async def probe(self, table: str, timeout: float = 10.0) -> bool:
        """Open a throwaway subscription and wait for confirmation."""
        confirmed = asyncio.Event()
        failed: list[str] = []

        async def _on_status(status: SubscriptionStatus, error: Optional[str]) -> None:
            if status is SubscriptionStatus.SUBSCRIBED:
                confirmed.set()
            elif status is SubscriptionStatus.CHANNEL_ERROR:
                failed.append(error or "channel error")
                confirmed.set()

        topic = f"probe-{next(_probe_ids)}"
        try:
            subscription = await self.subscribe(table, ChangeHandlers(), _on_status, topic=topic)
        except FeedError as e:
            log.warning("Realtime probe could not subscribe: %s", e)
            return False
        try:
            await asyncio.wait_for(confirmed.wait(), timeout)
        except asyncio.TimeoutError:
            log.warning("Realtime probe timed out")
            return False
        finally:
            await self.unsubscribe(subscription)
        if failed:
            log.warning("Realtime probe failed: %s", failed[0])
            return False
        return True

    async def close(self) -> None:
        """Drop every subscription and the underlying connection."""
