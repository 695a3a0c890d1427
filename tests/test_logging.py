from authgate.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
    username_digest,
)


def test_credentials_and_phone_numbers_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login",
            "password": "hunter2hunter2",
            "phone": "+15551234567",
            "code": "042",
            "user_id": "u1",
        },
    )

    assert event["password"] == "hu***r2"
    assert event["phone"] == "+1***67"
    assert event["code"] == "***"
    assert event["user_id"] == "u1"


def test_status_and_error_codes_are_kept():
    event = _redact_pii(None, "info", {"status_code": 401, "error_code": "unauthorized"})
    assert event == {"status_code": 401, "error_code": "unauthorized"}


def test_username_digest_is_stable_and_case_folded():
    assert username_digest("Alice") == username_digest("alice")
    assert len(username_digest("alice")) == 16
    assert "alice" not in username_digest("alice")


def test_connection_strings_are_scrubbed():
    cleaned = sanitize_error_message("Error connecting to redis://:pw@cache:6379/0")
    assert "pw@cache" not in cleaned
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_round_trip():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated and generated != "req-1"
