"""Tests for Settings defaults and startup validation."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from callbacks.config import Settings


def _settings(**overrides):
    values = dict(
        supabase_url="https://project.supabase.co",
        supabase_service_role_key="service-key",
        telegram_bot_token="123:abc",
        telegram_workers_group_id=-100,
        admin_api_key="secret",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestDefaults:
    def test_listener_defaults(self, monkeypatch):
        for name in ("REALTIME_MAX_ATTEMPTS", "REALTIME_SUBSCRIBE_TIMEOUT", "REMINDER_LEAD_MINUTES"):
            monkeypatch.delenv(name, raising=False)
        config = Settings(_env_file=None)
        assert config.realtime_max_attempts == 5
        assert config.realtime_base_delay_ms == 1000
        assert config.realtime_max_delay_ms == 30000
        assert config.realtime_subscribe_timeout == 15.0
        assert config.reminder_lead_minutes == 45
        assert config.supabase_table == "callback_requests"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_WORKERS_GROUP_ID", "-100555")
        monkeypatch.setenv("REALTIME_MAX_ATTEMPTS", "3")
        config = Settings(_env_file=None)
        assert config.telegram_workers_group_id == -100555
        assert config.realtime_max_attempts == 3


class TestValidateStartup:
    def test_complete_configuration_has_no_warnings(self):
        assert _settings().validate_startup() == []

    @pytest.mark.parametrize("field, value", [
        ("supabase_url", ""),
        ("supabase_url", "https://xxx.supabase.co"),
        ("supabase_service_role_key", ""),
        ("supabase_service_role_key", "your-service-role-key"),
        ("telegram_bot_token", ""),
    ])
    def test_missing_credentials_raise(self, field, value):
        with pytest.raises(ValueError):
            _settings(**{field: value}).validate_startup()

    def test_missing_group_warns(self):
        warnings = _settings(telegram_workers_group_id=None).validate_startup()
        assert any("TELEGRAM_WORKERS_GROUP_ID" in w for w in warnings)

    def test_missing_admin_key_warns(self):
        locked = _settings(admin_api_key="").validate_startup()
        assert any("locked" in w for w in locked)
        open_ = _settings(admin_api_key="", debug=True).validate_startup()
        assert any("open" in w for w in open_)
