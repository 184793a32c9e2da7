"""Tests for the calendar error hierarchy and error-message helpers."""

from __future__ import annotations

import httpx
import pytest

from calimport.errors import (
    CalendarAuthError,
    CalendarError,
    CalendarNotFoundError,
    CalendarTokenRefreshError,
    CalendarTransportError,
    redact_credential_values,
    sanitize_error_message,
    upstream_error_message,
)
from conftest import mock_response

pytestmark = pytest.mark.unit

_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"


# ============================================================================
# Error Hierarchy
# ============================================================================


class TestErrorHierarchy:
    def test_calendar_error_is_runtime_error(self):
        assert isinstance(CalendarError("boom"), RuntimeError)

    def test_token_refresh_error_is_auth_error(self):
        err = CalendarTokenRefreshError("expired")
        assert isinstance(err, CalendarAuthError)
        assert isinstance(err, CalendarError)

    def test_not_found_carries_calendar_id(self):
        err = CalendarNotFoundError("team@example.com", "Not Found")
        assert err.calendar_id == "team@example.com"
        assert err.message == "Not Found"
        assert "team@example.com" in str(err)

    def test_transport_error_str_includes_status_and_message(self):
        err = CalendarTransportError(status_code=500, message="Backend Error")
        assert err.status_code == 500
        assert "500" in str(err)
        assert "Backend Error" in str(err)

    def test_transport_error_without_status(self):
        err = CalendarTransportError(status_code=None, message="Request timed out")
        assert err.status_code is None
        assert str(err) == "Google Calendar request failed: Request timed out"


# ============================================================================
# Redaction and sanitizing
# ============================================================================


class TestRedaction:
    def test_redacts_key_value_pairs(self):
        redacted = redact_credential_values("refresh_token=abc123 other=ok")
        assert "abc123" not in redacted
        assert "refresh_token=[REDACTED]" in redacted
        assert "other=ok" in redacted

    def test_redacts_json_style_values(self):
        redacted = redact_credential_values('{"access_token": "ya29.secret"}')
        assert "ya29.secret" not in redacted

    def test_redacts_bearer_header(self):
        redacted = redact_credential_values("Authorization: Bearer ya29.secret")
        assert redacted == "Authorization: Bearer [REDACTED]"

    def test_sanitize_collapses_whitespace(self):
        assert sanitize_error_message("a   b\n\nc") == "a b c"

    def test_sanitize_truncates_to_200_chars(self):
        assert len(sanitize_error_message("x" * 500)) == 200


# ============================================================================
# Upstream error extraction
# ============================================================================


class TestUpstreamErrorMessage:
    def test_google_error_object(self):
        response = mock_response(
            status_code=403,
            url=_URL,
            json_body={"error": {"code": 403, "message": "Rate Limit Exceeded"}},
        )
        assert upstream_error_message(response) == "Rate Limit Exceeded"

    def test_oauth_error_with_description(self):
        response = mock_response(
            status_code=400,
            url=_URL,
            json_body={"error": "invalid_grant", "error_description": "Token has been revoked."},
        )
        assert upstream_error_message(response) == "invalid_grant: Token has been revoked."

    def test_oauth_error_without_description(self):
        response = mock_response(status_code=400, url=_URL, json_body={"error": "invalid_grant"})
        assert upstream_error_message(response) == "invalid_grant"

    def test_json_without_error_returns_none(self):
        response = mock_response(status_code=500, url=_URL, json_body={"detail": "nope"})
        assert upstream_error_message(response) is None

    def test_plain_text_body(self):
        response = mock_response(status_code=502, url=_URL, text="Bad   Gateway")
        assert upstream_error_message(response) == "Bad Gateway"

    def test_empty_body_returns_none(self):
        response = httpx.Response(status_code=500, request=httpx.Request("GET", _URL))
        assert upstream_error_message(response) is None
