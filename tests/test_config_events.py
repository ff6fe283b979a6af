import pytest
from pydantic import ValidationError as PydanticValidationError

from sportauth.config import Settings, get_settings, parse_duration, reset_settings_cache
from sportauth.logging import _redact_pii
from sportauth.service.events import ACCOUNT_REGISTERED, EventBus, event


@pytest.mark.parametrize(
    "raw,seconds",
    [("7d", 604800), ("12h", 43200), ("30m", 1800), ("45s", 45), ("3600", 3600), (900, 900)],
)
def test_parse_duration(raw, seconds):
    assert parse_duration(raw) == seconds


@pytest.mark.parametrize("raw", ["soon", "0", -5, True, "7w"])
def test_parse_duration_rejects(raw):
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL", "15m")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    reset_settings_cache()
    try:
        settings = get_settings()
        assert settings.access_token_ttl_seconds == 900
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert get_settings() is settings
    finally:
        reset_settings_cache()


def test_token_secrets_must_differ():
    with pytest.raises(PydanticValidationError):
        Settings(jwt_access_secret="same-secret" * 4, jwt_refresh_secret="same-secret" * 4)


def test_missing_secrets_are_generated_per_process():
    settings = Settings(jwt_access_secret=None, jwt_refresh_secret=None)
    assert settings.jwt_access_secret and settings.jwt_refresh_secret
    assert settings.jwt_access_secret != settings.jwt_refresh_secret


def test_mfa_key_falls_back_to_refresh_secret():
    settings = Settings(
        jwt_access_secret="a" * 40, jwt_refresh_secret="r" * 40, mfa_encryption_key=None
    )
    assert settings.mfa_key_material == "mfa:" + "r" * 40


class TestEventBus:
    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(evt):
            raise RuntimeError("boom")

        bus.subscribe(ACCOUNT_REGISTERED, broken)
        bus.subscribe(ACCOUNT_REGISTERED, seen.append)
        bus.subscribe("*", lambda evt: seen.append(evt.event_type))

        delivered = bus.publish([event(ACCOUNT_REGISTERED, "acct-1", {"email": "a@example.com"})])
        assert delivered == 2
        assert seen[0].aggregate_id == "acct-1"
        assert seen[1] == ACCOUNT_REGISTERED

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ACCOUNT_REGISTERED, seen.append)
        bus.unsubscribe(ACCOUNT_REGISTERED, seen.append)
        assert bus.publish([event(ACCOUNT_REGISTERED, "acct-1")]) == 0
        assert seen == []


def test_log_redaction_masks_credentials():
    redacted = _redact_pii(
        None,
        "info",
        {"event": "x", "email": "runner@example.com", "token_hint": "...abcdefgh", "count": 3},
    )
    assert redacted["email"] == "ru***om"
    assert redacted["token_hint"] == "...abcdefgh"
    assert redacted["count"] == 3


def test_log_redaction_reaches_nested_values():
    redacted = _redact_pii(
        None,
        "warning",
        {
            "event": "x",
            "details": {
                "email": "runner@example.com",
                "items": [{"token": "abcdefgh"}, {"count": 2}],
                "reason": "invalid_password",
            },
            "secrets": ["supersecret"],
        },
    )
    details = redacted["details"]
    assert details["email"] == "ru***om"
    assert details["items"] == [{"token": "ab***gh"}, {"count": 2}]
    assert details["reason"] == "invalid_password"
    assert redacted["secrets"] == ["su***et"]
