from unittest.mock import MagicMock, patch

from app.shared.core.logging import audit_log, pii_redactor, setup_logging


def test_pii_redactor_nested():
    """Gateway secrets and callback tokens never reach log sinks."""
    event_dict = {
        "payment_id": "p1",
        "email": "budi@example.com",
        "headers": {
            "x-callback-token": "secret_123",
            "content-type": "application/json",
        },
        "list": [
            {"xendit_secret_key": "xnd_production"},
            "safe_item",
        ],
        "va_number": "8808123456",
    }

    redacted = pii_redactor(None, None, event_dict)

    assert redacted["payment_id"] == "p1"
    assert redacted["email"] == "[EMAIL_REDACTED]"
    assert redacted["headers"]["x-callback-token"] == "[REDACTED]"
    assert redacted["headers"]["content-type"] == "application/json"
    assert redacted["list"][0]["xendit_secret_key"] == "[REDACTED]"
    assert redacted["list"][1] == "safe_item"
    assert redacted["va_number"] == "[REDACTED]"


def test_pii_redactor_regex():
    event_dict = {"event": "Invoice emailed to siti@example.co.id"}

    redacted = pii_redactor(None, None, event_dict)

    assert "siti@example.co.id" not in redacted["event"]
    assert "[EMAIL_REDACTED]" in redacted["event"]


def test_audit_log_schema():
    with patch("structlog.get_logger") as mock_get_logger:
        mock_audit_logger = MagicMock()
        mock_get_logger.return_value = mock_audit_logger

        audit_log("voucher_usage_reversed", "u1", "h1", {"payment_id": "p1"})

        mock_get_logger.assert_called_with("audit")
        mock_audit_logger.info.assert_called_with(
            "voucher_usage_reversed",
            user_id="u1",
            household_id="h1",
            metadata={"payment_id": "p1"},
        )


def test_audit_log_without_actor():
    with patch("structlog.get_logger") as mock_get_logger:
        mock_audit_logger = MagicMock()
        mock_get_logger.return_value = mock_audit_logger

        audit_log("security_event", None, None)

        mock_audit_logger.info.assert_called_with(
            "security_event", user_id=None, household_id=None, metadata={}
        )


def test_setup_logging_no_crash():
    """Logging setup runs for both debug and JSON modes."""
    with patch("app.shared.core.logging.get_settings") as mock_settings:
        mock_settings.return_value.DEBUG = True
        setup_logging()

        mock_settings.return_value.DEBUG = False
        setup_logging()
