from keyward.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
)


def test_redacts_credentials_and_contacts():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "alice@example.com",
            "refresh_token": "abcdefgh",
            "code": "1234",
            "user_id": "5f0c6c1e",
            "attempts": 3,
        },
    )
    assert event["event"] == "login_failed"
    assert event["email"] == "al***om"
    assert event["refresh_token"] == "ab***gh"
    assert event["code"] == "***"
    assert event["user_id"] == "5f0c6c1e"
    assert event["attempts"] == 3


def test_correlation_id_is_attached():
    token = correlation_id_var.set(None)
    try:
        assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}
        cid = set_correlation_id()
        assert get_correlation_id() == cid
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
        assert set_correlation_id("fixed") == "fixed"
    finally:
        correlation_id_var.reset(token)


def test_error_and_status_codes_are_not_redacted():
    event = _redact_pii(
        None,
        "warning",
        {
            "event": "login_code_reissue_failed",
            "error_code": "channel_not_verified",
            "status_code": 403,
            "email_code": "123456",
        },
    )
    assert event["error_code"] == "channel_not_verified"
    assert event["status_code"] == 403
    assert event["email_code"] == "12***56"
