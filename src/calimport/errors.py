"""Error hierarchy for calendar auth, fetch, and write helpers.

Read paths never let these escape: ``TokenCache`` turns a failed refresh into
``""`` and ``CalendarSource.fetch`` turns every failure into a
``FetchResult.error`` string. Write paths (create/update/get) raise them.
"""

from __future__ import annotations

import re

import httpx


class CalendarError(RuntimeError):
    """Base error raised by calendar auth/request helpers."""


class CalendarAuthError(CalendarError):
    """Raised when no usable credential exists for an account label."""


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when the refresh-token exchange fails."""


class CalendarNotFoundError(CalendarError):
    """Raised when a calendar (or event) does not exist or is not public."""

    def __init__(self, calendar_id: str, message: str = "") -> None:
        self.calendar_id = calendar_id
        self.message = message
        super().__init__(f"Calendar not found: {calendar_id}")


class CalendarTransportError(CalendarError):
    """Raised when a Google Calendar API request fails for any other reason."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Google Calendar request failed: {message}")
        else:
            super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[^\s,;]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact, collapse whitespace, and truncate to 200 chars."""
    return " ".join(redact_credential_values(message).split())[:200]


def upstream_error_message(response: httpx.Response) -> str | None:
    """Extract the API's own error message from a failed response, if it sent one."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error_payload}: {description}")
            return sanitize_error_message(error_payload)
        return None

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return None
