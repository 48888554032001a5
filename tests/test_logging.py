from fixerauth.logging import (
    _redact_pii,
    get_correlation_id,
    mask_secret,
    sanitize_error_message,
    set_correlation_id,
)


def test_redact_pii_masks_credential_fields():
    event = _redact_pii(
        None,
        "info",
        {"event": "login", "password": "secret123", "email": "tech@homefixer.test", "user_id": 42},
    )

    assert event["password"] == "se***23"
    assert event["email"].startswith("te***")
    assert event["user_id"] == 42


def test_sanitize_error_message():
    cleaned = sanitize_error_message("connection to db failed: password=hunter2 at /srv/fixerauth/state")

    assert "hunter2" not in cleaned
    assert "/srv/fixerauth" not in cleaned
    assert sanitize_error_message("") == "An error occurred"


def test_mask_secret():
    assert mask_secret("HF_0123456789abcdef_1700000000000") == "HF_0***0000"
    assert mask_secret("short") == "***"
    assert mask_secret(None) is None


def test_correlation_id_roundtrip():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated and generated != "req-1"
