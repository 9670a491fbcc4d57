"""Tests for environment settings, runtime wiring and log hygiene."""

import pytest
from pydantic import ValidationError

from latchkey.config import Settings, get_settings, reset_settings_cache
from latchkey.logging import (
    _redact_secrets,
    client_fingerprint,
    get_correlation_id,
    set_correlation_id,
)
from latchkey.service.errors import ConfigMissingError
from latchkey.service.roles import Role
from latchkey.service.runtime import Runtime, _mask_url_password, get_runtime
from latchkey.storage.memory import MemoryCache

STRONG_SECRET = "s" * 20 + "-strong-signing-secret"


class TestSettings:
    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("STAFF_PIN", "9999")
        monkeypatch.setenv("VERIFY_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.staff_pin == "9999"
        assert settings.verify_max_attempts == 3
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_blank_values_become_none(self, monkeypatch):
        monkeypatch.setenv("UPLOAD_PIN", "   ")
        settings = Settings.from_env()
        assert settings.upload_pin is None
        assert settings.redis_url is None
        with pytest.raises(ConfigMissingError) as exc_info:
            settings.role_secret(Role.UPLOAD)
        assert exc_info.value.detail == {"setting": "UPLOAD_PIN"}

    def test_settings_are_frozen(self, settings):
        with pytest.raises(ValidationError):
            settings.staff_pin = "0000"

    def test_default_expiry_cannot_exceed_maximum(self):
        with pytest.raises(ValidationError):
            Settings(share_default_expiry_days=40, share_max_expiry_days=30)

    def test_vote_ttl_bounds_are_ordered(self):
        with pytest.raises(ValidationError):
            Settings(vote_code_min_ttl_minutes=60, vote_code_max_ttl_minutes=30)

    @pytest.mark.parametrize("secret", [None, "short-secret", "changeme"])
    def test_unusable_signing_secret(self, secret):
        with pytest.raises(ConfigMissingError):
            Settings(auth_secret=secret).signing_secret()

    def test_usable_signing_secret(self):
        assert Settings(auth_secret=STRONG_SECRET).signing_secret() == STRONG_SECRET

    def test_session_ttl_per_role(self, settings):
        assert settings.session_ttl_seconds(Role.ADMIN) == 3600
        assert settings.session_ttl_seconds(Role.STAFF) == 86400
        assert settings.session_ttl_seconds(Role.UPLOAD) == 43200

    def test_security_warnings(self):
        settings = Settings(
            auth_secret="short",
            admin_password="admin",
            staff_pin="123456",
            cron_secret="tiny",
        )
        warnings = settings.security_warnings()
        assert any("AUTH_SECRET must be at least" in warning for warning in warnings)
        assert any("ADMIN_PASSWORD uses a common value" in warning for warning in warnings)
        assert any("STAFF_PIN uses a common value" in warning for warning in warnings)
        assert any("CRON_SECRET" in warning for warning in warnings)

    def test_configured_settings_have_no_warnings(self, settings):
        assert settings.security_warnings() == []

    def test_settings_are_cached_until_reset(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("STAFF_PIN", "1111")
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().staff_pin == "1111"


class TestRuntime:
    def test_test_mode_falls_back_to_memory(self):
        runtime = get_runtime()
        assert isinstance(runtime.cache, MemoryCache)
        assert runtime.auth.cache is runtime.cache
        assert runtime.shares.cache is runtime.cache

    def test_missing_redis_outside_test_mode_is_fatal(self):
        with pytest.raises(RuntimeError):
            Runtime(Settings(redis_url=None, test_mode=False))

    def test_dev_fallback_flag_allows_memory(self):
        runtime = Runtime(Settings(redis_url=None, allow_redis_fallback_dev=True))
        assert isinstance(runtime.cache, MemoryCache)

    def test_injected_cache_is_used(self, cache, settings):
        runtime = Runtime(settings, cache=cache)
        assert runtime.cache is cache

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None


class TestLogging:
    def test_secret_values_are_redacted(self):
        event = _redact_secrets(
            None,
            "info",
            {
                "event": "x",
                "admin_password": "correct-horse-battery",
                "pin": "1234",
                "step_up_token": "",
                "role": "staff",
                "pin_required": True,
            },
        )
        assert event["admin_password"] == "co***"
        assert event["pin"] == "***"
        assert event["step_up_token"] == ""
        assert event["role"] == "staff"
        assert event["pin_required"] is True

    def test_client_fingerprint_truncates(self):
        assert client_fingerprint("203.0.113.77") == "203.0.113.0/24"
        assert client_fingerprint("2001:db8:abcd:12::1") == "2001:db8:abcd::/48"
        assert client_fingerprint("203.0.113.77", "Mozilla/5.0 (X11)") == "203.0.113.0/24 Mozilla/5.0"
        assert client_fingerprint(None) is None

    def test_correlation_id(self):
        assert set_correlation_id("req-123") == "req-123"
        assert get_correlation_id() == "req-123"
        generated = set_correlation_id()
        assert generated and generated != "req-123"
