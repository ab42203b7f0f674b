"""
Unit tests for app/logging formatting helpers.
"""

from app.core.logging import filter_sensitive_data
from app.logging import mask_identifier, scrub
from app.logging.formatters import format_message
from app.logging.log_levels import LogLevel


class TestMasking:

    def test_mask_phone(self):
        assert mask_identifier("+15555550123") == "****0123"

    def test_mask_email(self):
        assert mask_identifier("jane.doe@school.edu") == "ja****@school.edu"

    def test_mask_short_email(self):
        assert mask_identifier("jo@school.edu") == "****@school.edu"

    def test_mask_empty(self):
        assert mask_identifier("") == "****"


class TestScrubbing:
    """Secrets never reach a log line."""

    def test_scrub_sensitive_keys(self):
        context = scrub({"user_id": 1, "password": "x", "refresh_token": "y", "Code": "123456"})

        assert context == {"user_id": 1, "password": "[FILTERED]", "refresh_token": "[FILTERED]", "Code": "[FILTERED]"}

    def test_format_message(self):
        line = format_message(LogLevel.SECURITY, "Account locked", {"user_id": 7, "otp": "123456"})

        assert "[SECURITY]" in line
        assert "user_id=7" in line
        assert "123456" not in line

    def test_sentry_event_filtering(self):
        event = {
            "request": {
                "data": {"email": "a@school.edu", "password": "P@ssw0rd1", "partial_token": "abc"},
                "headers": {"authorization": "Bearer abc", "user-agent": "pytest"},
            }
        }

        filtered = filter_sensitive_data(event)

        assert filtered["request"]["data"]["password"] == "[FILTERED]"
        assert filtered["request"]["data"]["partial_token"] == "[FILTERED]"
        assert filtered["request"]["data"]["email"] == "a@school.edu"
        assert filtered["request"]["headers"]["authorization"] == "[FILTERED]"
        assert filtered["request"]["headers"]["user-agent"] == "pytest"
