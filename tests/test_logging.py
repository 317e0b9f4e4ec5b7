import structlog

from warden.logging import _redact_secrets, configure_logging, token_fingerprint


def test_redaction_masks_secret_keys_but_keeps_fingerprint():
    event = _redact_secrets(
        None,
        "info",
        {"token": "abcdefgh", "password": "hunter22", "token_fingerprint": "0123456789ab"},
    )
    assert event["token"] == "ab***gh"
    assert event["password"] == "hu***22"
    assert event["token_fingerprint"] == "0123456789ab"


def test_token_fingerprint_is_short_and_stable():
    assert token_fingerprint("abc") == token_fingerprint("abc")
    assert len(token_fingerprint("abc")) == 12
    assert token_fingerprint("") is None


def test_log_format_selects_renderer():
    try:
        configure_logging(fmt="console")
        assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)
        configure_logging(fmt="json")
        assert isinstance(
            structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer
        )
    finally:
        configure_logging()
