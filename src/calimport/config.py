"""Configuration loading and validation.

Reads a calimport TOML file, parses all sections, and returns a validated
``ImportConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from calimport.dates import local_timezone
from calimport.models import DEFAULT_ACCOUNT_LABEL, SourceSpec, TemplateNode
from calimport.sources import DEFAULT_REQUEST_TIMEOUT_SECONDS
from calimport.tokens import DEFAULT_REFRESH_URL

DEFAULT_CONFIG_PATH = Path("~/.config/calimport/calimport.toml")
DEFAULT_CREDENTIALS_PATH = Path("~/.config/calimport/credentials.json")

# Matches ${VAR_NAME} references (alphanumeric and underscore names).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: Path | None = None


@dataclass
class ImportConfig:
    """Everything an import run needs from the [import] and [auth] sections."""

    sources: list[SourceSpec] = field(default_factory=list)
    include_link: bool = False
    skip_free: bool = False
    template: TemplateNode = field(default_factory=TemplateNode)
    filter_pattern: str | None = None
    add_todo_prefix: bool = False
    timezone: str | None = None
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    refresh_url: str = DEFAULT_REFRESH_URL
    credentials_path: Path = DEFAULT_CREDENTIALS_PATH
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def tz(self) -> tzinfo:
        """The viewer's zone: the configured IANA zone, else the system zone."""
        if self.timezone is None:
            return local_timezone()
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _require_bool(section: dict[str, Any], key: str, prefix: str) -> bool:
    value = section.get(key, False)
    if not isinstance(value, bool):
        raise ConfigError(f"{prefix}.{key} must be a boolean")
    return value


def _parse_source(entry: Any, index: int) -> SourceSpec:
    if isinstance(entry, str):
        calendar_id, account = entry, DEFAULT_ACCOUNT_LABEL
    elif isinstance(entry, dict):
        unknown = sorted(set(entry) - {"calendar_id", "account"})
        if unknown:
            raise ConfigError(
                f"import.calendars[{index}] has unknown key(s): {', '.join(unknown)}"
            )
        calendar_id = entry.get("calendar_id")
        account = entry.get("account", DEFAULT_ACCOUNT_LABEL)
        if not isinstance(account, str) or not account.strip():
            raise ConfigError(f"import.calendars[{index}].account must be a non-empty string")
    else:
        raise ConfigError(f"import.calendars[{index}] must be a string or a table")

    if not isinstance(calendar_id, str) or not calendar_id.strip():
        raise ConfigError(f"import.calendars[{index}] needs a non-empty calendar_id")
    return SourceSpec(calendar_id=calendar_id.strip(), account_label=account.strip())


def _parse_template(import_section: dict[str, Any]) -> TemplateNode:
    fmt = import_section.get("format")
    tree = import_section.get("template")
    if fmt is not None and tree is not None:
        raise ConfigError("import.format and [import.template] are mutually exclusive")

    if fmt is not None:
        if not isinstance(fmt, str):
            raise ConfigError("import.format must be a string")
        return TemplateNode(text=fmt.strip())

    if tree is None:
        return TemplateNode()
    if not isinstance(tree, dict):
        raise ConfigError("[import.template] must be a table")
    try:
        return TemplateNode.model_validate(tree)
    except ValidationError as exc:
        raise ConfigError(f"Invalid [import.template]: {exc.errors()[0]['msg']}") from exc


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = data.get("logging", {})
    if not isinstance(section, dict):
        raise ConfigError("[logging] must be a table")

    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"logging.format must be one of {', '.join(_LOG_FORMATS)}, got {fmt!r}")
    log_file_raw = section.get("log_file") or None
    return LoggingConfig(
        level=level,
        format=fmt,
        log_file=Path(log_file_raw).expanduser() if log_file_raw else None,
    )


def parse_config(data: dict[str, Any]) -> ImportConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    import_section = data.get("import", {})
    if not isinstance(import_section, dict):
        raise ConfigError("[import] must be a table")

    calendars = import_section.get("calendars", [])
    if not isinstance(calendars, list):
        raise ConfigError("import.calendars must be an array")
    sources = [_parse_source(entry, index) for index, entry in enumerate(calendars)]

    filter_pattern = import_section.get("filter") or None
    if filter_pattern is not None:
        if not isinstance(filter_pattern, str):
            raise ConfigError("import.filter must be a string")
        try:
            re.compile(filter_pattern)
        except re.error as exc:
            raise ConfigError(f"import.filter is not a valid regular expression: {exc}") from exc

    timezone = import_section.get("timezone") or None
    if timezone is not None:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"import.timezone must be a valid IANA timezone: {timezone}") from exc

    timeout = import_section.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise ConfigError("import.request_timeout_seconds must be a positive number")

    auth_section = data.get("auth", {})
    if not isinstance(auth_section, dict):
        raise ConfigError("[auth] must be a table")
    refresh_url = auth_section.get("refresh_url", DEFAULT_REFRESH_URL)
    if not isinstance(refresh_url, str) or not refresh_url.startswith(("http://", "https://")):
        raise ConfigError("auth.refresh_url must be an http(s) URL")
    credentials_path = Path(
        auth_section.get("credentials_path", str(DEFAULT_CREDENTIALS_PATH))
    ).expanduser()

    return ImportConfig(
        sources=sources,
        include_link=_require_bool(import_section, "include_event_link", "import"),
        skip_free=_require_bool(import_section, "skip_free", "import"),
        template=_parse_template(import_section),
        filter_pattern=filter_pattern,
        add_todo_prefix=_require_bool(import_section, "add_todo_prefix", "import"),
        timezone=timezone,
        request_timeout_seconds=float(timeout),
        refresh_url=refresh_url,
        credentials_path=credentials_path,
        logging=_parse_logging(data),
    )


def load_config(path: Path) -> ImportConfig:
    """Load and validate a calimport TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid fields.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
