"""Per-account OAuth access-token cache with single-flight refresh.

``TokenCache.get_access_token(label)`` returns ``""`` whenever the caller is not
authenticated for ``label``: no stored credential, an expired credential that
has no refresh token, or a failed refresh. A failed refresh does not poison the
cache; the next call tries again.

Concurrent callers that find the same label expired share one in-flight
refresh task instead of each posting to the refresh endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from calimport.errors import (
    CalendarAuthError,
    CalendarError,
    CalendarTokenRefreshError,
    sanitize_error_message,
    upstream_error_message,
)
from calimport.models import DEFAULT_ACCOUNT_LABEL, Credential
from calimport.storage import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN_SECONDS = 3600

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


class TokenCache:
    """Owns one cached credential per account label."""

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        *,
        refresh_url: str = DEFAULT_REFRESH_URL,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._http_client = http_client
        self._refresh_url = refresh_url
        self._clock = clock or _utcnow
        self._credentials: dict[str, Credential] = {}
        self._inflight: dict[str, asyncio.Task[Credential]] = {}

    async def get_access_token(
        self,
        account_label: str = DEFAULT_ACCOUNT_LABEL,
        *,
        force_refresh: bool = False,
    ) -> str:
        credential = await self._lookup(account_label)
        if credential is None:
            return ""

        if not force_refresh and not credential.is_expired(self._clock()):
            return credential.access_token

        if not credential.refresh_token:
            logger.warning(
                "Credential for account %s is expired and has no refresh token", account_label
            )
            return ""

        try:
            refreshed = await self._refresh_single_flight(credential)
        except CalendarError as exc:
            logger.warning(
                "Access token refresh failed for account %s: %s",
                account_label,
                sanitize_error_message(str(exc)),
            )
            return ""
        return refreshed.access_token

    async def _lookup(self, account_label: str) -> Credential | None:
        cached = self._credentials.get(account_label)
        if cached is not None:
            return cached
        try:
            stored = await self._store.load(account_label)
        except CalendarAuthError as exc:
            logger.warning("Could not load credential for account %s: %s", account_label, exc)
            return None
        if stored is not None:
            self._credentials[account_label] = stored
        return stored

    async def _refresh_single_flight(self, credential: Credential) -> Credential:
        label = credential.account_label
        task = self._inflight.get(label)
        if task is None:
            task = asyncio.ensure_future(self._refresh(credential))
            self._inflight[label] = task
            task.add_done_callback(lambda done, label=label: self._forget_inflight(label, done))
        # Shielded so one cancelled waiter does not cancel the refresh shared by the others.
        return await asyncio.shield(task)

    def _forget_inflight(self, label: str, task: asyncio.Task[Credential]) -> None:
        if self._inflight.get(label) is task:
            del self._inflight[label]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter was cancelled.
            task.exception()

    async def _refresh(self, credential: Credential) -> Credential:
        label = credential.account_label
        logger.info("Refreshing access token for account %s", label)
        try:
            response = await self._http_client.post(
                self._refresh_url,
                json={
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(f"Token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = upstream_error_message(response) or "no error payload"
            raise CalendarTokenRefreshError(
                f"Token refresh failed ({response.status_code}): {message}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError("Token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Token response is missing a non-empty access_token"
            )

        refreshed = credential.model_copy(
            update={
                "access_token": access_token.strip(),
                "expires_in_seconds": _coerce_expires_in_seconds(payload.get("expires_in")),
                "issued_at": self._clock(),
            }
        )
        try:
            await self._store.save(refreshed)
        except (OSError, CalendarError) as exc:
            logger.warning(
                "Refreshed token for account %s could not be persisted: %s", label, exc
            )
        self._credentials[label] = refreshed
        logger.info("Refreshed access token for account %s", label)
        return refreshed
