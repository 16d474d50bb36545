"""FastAPI application — service wiring plus a small operations surface.

Endpoints:

  GET  /health                   Liveness + realtime listener state
  GET  /api/realtime/status      Listener snapshot
  POST /api/realtime/reconnect   Manual reconnect, restores the retry budget (admin)
  POST /api/realtime/test        Capability probe against the change feed (admin)

The interesting work happens outside HTTP:

  1. A row is inserted into ``callback_requests``
  2. The realtime listener receives the change event
  3. The dispatcher posts a card with [contacted, cancel] to the workers group
  4. Button presses come back through Telegram polling into the ActionRouter
  5. Free text in direct messages drives the ConversationEngine
"""

from __future__ import annotations

# Load .env into os.environ before settings are read
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional
from zoneinfo import ZoneInfo

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from callbacks.actions import ActionRouter
from callbacks.auth import require_admin_token
from callbacks.channels.base import ChannelError, NotificationChannel
from callbacks.channels.telegram import TelegramChannel
from callbacks.config import Settings, settings
from callbacks.conversation import ConversationEngine
from callbacks.events import RequestEventHandler
from callbacks.notifications import NotificationDispatcher
from callbacks.realtime.feed import ChangeFeed
from callbacks.realtime.listener import ReconnectingChangeListener
from callbacks.realtime.phoenix import SupabaseRealtimeFeed
from callbacks.reminders import ReminderScheduler
from callbacks.store.base import RequestStore
from callbacks.store.postgrest import PostgrestRequestStore
from callbacks.timers import AsyncioTaskScheduler, TaskScheduler

log = logging.getLogger("callbacks.app")

_START_TIME = time.time()


@dataclass
class Services:
    """Every long-lived component, wired together."""

    config: Settings
    tz: ZoneInfo
    scheduler: TaskScheduler
    store: RequestStore
    channel: NotificationChannel
    feed: ChangeFeed
    dispatcher: NotificationDispatcher
    reminders: ReminderScheduler
    engine: ConversationEngine
    router: ActionRouter
    events: RequestEventHandler
    listener: ReconnectingChangeListener


def build_services(
    config: Settings,
    *,
    store: RequestStore | None = None,
    channel: NotificationChannel | None = None,
    feed: ChangeFeed | None = None,
    scheduler: TaskScheduler | None = None,
) -> Services:
    """Construct and connect the components. Collaborators may be injected."""
    tz = ZoneInfo(config.timezone)
    scheduler = scheduler or AsyncioTaskScheduler()
    store = store or PostgrestRequestStore(
        config.supabase_url, config.supabase_service_role_key, table=config.supabase_table,
    )
    channel = channel or TelegramChannel(
        config.telegram_bot_token,
        workers_group_id=config.telegram_workers_group_id,
        workers_topic_id=config.telegram_workers_topic_id,
        poll_timeout=config.telegram_poll_timeout,
    )
    feed = feed or SupabaseRealtimeFeed(
        config.supabase_url,
        config.supabase_service_role_key,
        heartbeat_interval=config.realtime_heartbeat_interval,
    )

    # Router and dispatcher keep separate lock tables: the router calls the
    # dispatcher while holding the record's lock
    dispatcher = NotificationDispatcher(channel, store, tz=tz)
    reminders = ReminderScheduler(
        scheduler, store, dispatcher,
        lead=timedelta(minutes=config.reminder_lead_minutes), tz=tz,
    )
    engine = ConversationEngine(
        store, dispatcher, reminders, scheduler, tz=tz,
        status_provider=lambda: listener.state.value,
    )
    router = ActionRouter(channel, store, dispatcher, engine, reminders, scheduler)
    events = RequestEventHandler(dispatcher, reminders, engine)
    listener = ReconnectingChangeListener(
        feed,
        config.supabase_table,
        events.handlers,
        scheduler,
        on_alert=dispatcher.notify_error,
        max_attempts=config.realtime_max_attempts,
        base_delay_ms=config.realtime_base_delay_ms,
        max_delay_ms=config.realtime_max_delay_ms,
        subscribe_timeout=config.realtime_subscribe_timeout,
        health_interval=config.realtime_health_interval,
        stale_after=config.realtime_stale_after,
        probe_timeout=config.realtime_probe_timeout,
    )

    channel.on_inbound_action(router.handle)
    channel.on_inbound_text(engine.handle_text)

    return Services(
        config=config,
        tz=tz,
        scheduler=scheduler,
        store=store,
        channel=channel,
        feed=feed,
        dispatcher=dispatcher,
        reminders=reminders,
        engine=engine,
        router=router,
        events=events,
        listener=listener,
    )


async def startup(services: Services) -> None:
    """Check collaborators, start the bot, then start listening."""
    if not await services.store.ping():
        raise RuntimeError("Request store is unreachable, check SUPABASE_URL and the service key.")
    log.info("Request store reachable")

    try:
        await services.channel.start()
        log.info("Notification channel started")
    except ChannelError as e:
        log.warning("Notification channel failed to start, notifications disabled: %s", e)

    if await services.listener.initialize() is None:
        log.warning("Realtime not subscribed yet, automatic reconnection will continue")


async def shutdown(services: Services) -> None:
    """Tear down in dependency order: timers before the things they use."""
    log.info("Shutting down")
    await services.listener.disconnect()
    services.reminders.shutdown()
    await services.scheduler.aclose()
    await services.feed.close()
    await services.channel.close()
    await services.store.aclose()
    log.info("Shutdown complete")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Without ``services`` the components are built from environment settings
    when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = services
        if svc is None:
            for warning in settings.validate_startup():
                log.warning(warning)
            svc = build_services(settings)
        app.state.services = svc
        await startup(svc)
        try:
            yield
        finally:
            await shutdown(svc)

    app = FastAPI(
        title="Callback Desk",
        description="Realtime callback request notifications and operator workflow",
        version="0.1.0",
        lifespan=lifespan,
    )

    def _listener() -> ReconnectingChangeListener:
        svc: Services | None = getattr(app.state, "services", None)
        if svc is None:
            raise HTTPException(status_code=503, detail="Services not started")
        return svc.listener

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — event loop responsive, listener state."""
        uptime = round(time.time() - _START_TIME, 1)
        svc: Services | None = getattr(app.state, "services", None)
        realtime = svc.listener.state.value if svc else "NOT_INITIALIZED"
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "realtime": realtime,
            "timestamp": _timestamp(),
        })

    # ── Realtime operations ────────────────────────────────────

    @app.get("/api/realtime/status")
    async def realtime_status() -> JSONResponse:
        return JSONResponse({
            "success": True,
            "data": _listener().status(),
            "timestamp": _timestamp(),
        })

    @app.post("/api/realtime/reconnect", dependencies=[Depends(require_admin_token)])
    async def realtime_reconnect() -> JSONResponse:
        listener = _listener()
        log.info("Manual reconnect requested via API")
        subscription = await listener.reconnect()
        return JSONResponse({
            "success": True,
            "message": "Reconnection initiated",
            "result": "subscribing" if subscription is not None else "failed",
            "data": listener.status(),
            "timestamp": _timestamp(),
        })

    @app.post("/api/realtime/test", dependencies=[Depends(require_admin_token)])
    async def realtime_test() -> JSONResponse:
        listener = _listener()
        log.info("Realtime probe requested via API")
        healthy = await listener.probe()
        return JSONResponse({
            "success": True,
            "healthy": healthy,
            "status": listener.state.value,
            "timestamp": _timestamp(),
        })

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


def main() -> None:
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "callbacks.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
