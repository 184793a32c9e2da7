"""Credential storage collaborators used by :class:`~calimport.tokens.TokenCache`.

Two implementations are provided:

- ``InMemoryCredentialStore``: process-local dict, used by tests and embedders
  that persist credentials themselves.
- ``JsonFileCredentialStore``: a JSON object keyed by account label, written
  atomically (temp file + rename) so a crash mid-write never truncates it.

Token values are never logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from calimport.errors import CalendarAuthError
from calimport.models import Credential

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialStore(Protocol):
    """Persistence for one credential per account label."""

    async def load(self, account_label: str) -> Credential | None: ...

    async def save(self, credential: Credential) -> None: ...


class InMemoryCredentialStore:
    def __init__(self, credentials: list[Credential] | None = None) -> None:
        self._credentials: dict[str, Credential] = {
            credential.account_label: credential for credential in credentials or []
        }

    async def load(self, account_label: str) -> Credential | None:
        return self._credentials.get(account_label)

    async def save(self, credential: Credential) -> None:
        self._credentials[credential.account_label] = credential

    def __repr__(self) -> str:
        return f"InMemoryCredentialStore(labels={sorted(self._credentials)})"


class JsonFileCredentialStore:
    """Credentials persisted as ``{"<label>": {...credential fields...}}``."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self, account_label: str) -> Credential | None:
        payload = await asyncio.to_thread(self._read_all)
        entry = payload.get(account_label)
        if entry is None:
            return None
        if not isinstance(entry, dict):
            raise CalendarAuthError(
                f"Stored credential for {account_label!r} must be a JSON object"
            )
        try:
            return Credential.model_validate({**entry, "account_label": account_label})
        except ValidationError as exc:
            raise CalendarAuthError(
                f"Stored credential for {account_label!r} is invalid: {exc.error_count()} error(s)"
            ) from exc

    async def save(self, credential: Credential) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._write_entry, credential)
        logger.debug("Persisted credential for account %s", credential.account_label)

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise CalendarAuthError(
                f"Credential file {self._path} could not be read: {exc}"
            ) from exc
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CalendarAuthError(
                f"Credential file {self._path} must be valid JSON: {exc.msg}"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarAuthError(f"Credential file {self._path} must contain a JSON object")
        return payload

    def _write_entry(self, credential: Credential) -> None:
        payload = self._read_all()
        payload[credential.account_label] = credential.model_dump(
            mode="json", exclude={"account_label"}
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".credentials-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def __repr__(self) -> str:
        return f"JsonFileCredentialStore(path={str(self._path)!r})"
