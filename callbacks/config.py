"""Application configuration via environment variables."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic_settings import BaseSettings

log = logging.getLogger("callbacks.config")


class Settings(BaseSettings):
    # Supabase (PostgREST + Realtime)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_table: str = "callback_requests"

    # Telegram
    telegram_bot_token: str = ""
    telegram_workers_group_id: Optional[int] = None
    telegram_workers_topic_id: Optional[int] = None
    telegram_poll_timeout: int = 30

    # Display / scheduling
    timezone: str = "Europe/Moscow"
    reminder_lead_minutes: int = 45

    # Realtime listener
    realtime_max_attempts: int = 5
    realtime_base_delay_ms: int = 1000
    realtime_max_delay_ms: int = 30000
    realtime_subscribe_timeout: float = 15.0
    realtime_heartbeat_interval: float = 30.0
    realtime_health_interval: float = 300.0
    realtime_stale_after: float = 900.0
    realtime_probe_timeout: float = 10.0

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"your-service-role-key", "123456:ABC...", "https://xxx.supabase.co"}

        if not self.supabase_url or self.supabase_url in _placeholders:
            raise ValueError(
                "SUPABASE_URL is missing or still a placeholder. "
                "Set it in .env to reach the request store."
            )
        if not self.supabase_service_role_key or self.supabase_service_role_key in _placeholders:
            raise ValueError(
                "SUPABASE_SERVICE_ROLE_KEY is missing or still a placeholder."
            )
        if not self.telegram_bot_token or self.telegram_bot_token in _placeholders:
            raise ValueError("TELEGRAM_BOT_TOKEN is required.")

        if self.telegram_workers_group_id is None:
            warnings.append(
                "TELEGRAM_WORKERS_GROUP_ID not set. New requests will not reach operators."
            )

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Realtime admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Realtime admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if self.reminder_lead_minutes <= 0:
            warnings.append("REMINDER_LEAD_MINUTES <= 0, reminders fire at the visit time.")

        return warnings


settings = Settings()
