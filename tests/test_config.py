import importlib.util
import sys
from datetime import time
from pathlib import Path

import pytest
from pydantic import ValidationError

from sessiongate.config import (
    Settings,
    StoreSettings,
    get_settings,
    reset_settings_cache,
)

SECRETS = {
    "jwt_access_secret": "a" * 40,
    "jwt_refresh_secret": "b" * 40,
}


def test_defaults():
    settings = Settings(**SECRETS)

    assert settings.cutoff_time == time(0, 0)
    assert settings.session_timezone == "UTC"
    assert settings.access_token_ttl_minutes == 15
    assert settings.rotate_refresh_tokens is False
    assert settings.cookie_secure is True


def test_cutoff_parsing():
    settings = Settings(session_cutoff=" 23:30 ", **SECRETS)

    assert settings.cutoff_time == time(23, 30)


@pytest.mark.parametrize("value", ["24:00", "7:00", "12:60", "noon", ""])
def test_invalid_cutoff_rejected(value):
    with pytest.raises(ValidationError):
        Settings(session_cutoff=value, **SECRETS)


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        Settings(session_timezone="Mars/Olympus_Mons", **SECRETS)


def test_timezone_resolves():
    settings = Settings(session_timezone="Europe/Berlin", **SECRETS)

    assert settings.tz.key == "Europe/Berlin"


def test_secrets_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)


def test_test_mode_generates_distinct_secrets():
    settings = Settings(test_mode=True)

    assert settings.jwt_access_secret
    assert settings.jwt_refresh_secret
    assert settings.jwt_access_secret != settings.jwt_refresh_secret


def test_shared_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_access_secret="same" * 10, jwt_refresh_secret="same" * 10)


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("SESSION_CUTOFF", "04:15")
    monkeypatch.setenv("SESSION_TIMEZONE", "America/New_York")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
    reset_settings_cache()

    settings = get_settings()

    assert settings.cutoff_time == time(4, 15)
    assert settings.tz.key == "America/New_York"
    assert settings.rotate_refresh_tokens is True
    assert settings.jwt_access_secret.startswith("test-access-secret")
    reset_settings_cache()


class TestStoreSettings:
    @pytest.fixture
    def production_env(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)
        monkeypatch.setenv("REDIS_URL", "redis://cron-host:6379/3")
        monkeypatch.setenv("SWEEP_BATCH_SIZE", "250")
        reset_settings_cache()
        yield
        reset_settings_cache()

    def test_loads_without_signing_secrets(self, production_env):
        store = StoreSettings.from_env()

        assert store.redis_url == "redis://cron-host:6379/3"
        assert store.sweep_batch_size == 250
        assert store.store_timeout_seconds == 2.0

    def test_full_settings_still_demand_secrets(self, production_env):
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_sweep_script_runs_without_secrets(self, production_env, monkeypatch):
        path = Path(__file__).resolve().parent.parent / "scripts" / "sweep_sessions.py"
        spec = importlib.util.spec_from_file_location("sweep_sessions", path)
        script = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(script)
        calls = []

        async def fake_sweep(redis_url, batch_size, timeout):
            calls.append((redis_url, batch_size, timeout))
            return {"scanned": 3, "removed": 1, "failed": 0}

        monkeypatch.setattr(script, "run_sweep", fake_sweep)
        monkeypatch.setattr(sys, "argv", ["sweep_sessions.py"])

        assert script.main() == 0
        assert calls == [("redis://cron-host:6379/3", 250, 2.0)]
