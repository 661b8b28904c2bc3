"""Configuration loading and validation.

Reads ``verve.toml``, resolves ``${VAR}`` environment references, and returns
a validated ``VerveConfig`` dataclass. A missing file yields the defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from verve_calendar.remote import (
    DEFAULT_CALENDAR_ID,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_TIMEZONE,
)

CONFIG_FILE_NAME = "verve.toml"
DEFAULT_DATA_DIR = Path("~/.local/share/verve-calendar")

# Matches ${VAR_NAME} with alphanumeric + underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CalendarSettings:
    """Storage and Google Calendar settings from the [calendar] section."""

    data_dir: Path = DEFAULT_DATA_DIR
    calendar_id: str = DEFAULT_CALENDAR_ID
    timezone: str = DEFAULT_TIMEZONE
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_SECONDS


@dataclass
class VerveConfig:
    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in strings, dicts and lists.

    Raises ConfigError listing every variable that is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    # int, float, bool pass through unchanged.
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


def _parse_calendar(section: Any) -> CalendarSettings:
    if not isinstance(section, dict):
        raise ConfigError("[calendar] must be a table")

    data_dir_raw = section.get("data_dir", str(DEFAULT_DATA_DIR))
    if not isinstance(data_dir_raw, str) or not data_dir_raw.strip():
        raise ConfigError("calendar.data_dir must be a non-empty string")

    calendar_id = section.get("calendar_id", DEFAULT_CALENDAR_ID)
    if not isinstance(calendar_id, str) or not calendar_id.strip():
        raise ConfigError("calendar.calendar_id must be a non-empty string")

    timezone = section.get("timezone", DEFAULT_TIMEZONE)
    if not isinstance(timezone, str) or not timezone.strip():
        raise ConfigError("calendar.timezone must be a non-empty string")
    try:
        ZoneInfo(timezone.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid calendar.timezone: {timezone!r}") from exc

    timeout_raw = section.get("request_timeout_s", DEFAULT_REQUEST_TIMEOUT_SECONDS)
    if isinstance(timeout_raw, bool):
        raise ConfigError("calendar.request_timeout_s must be a number")
    try:
        timeout = float(timeout_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError("calendar.request_timeout_s must be a number") from exc
    if timeout <= 0:
        raise ConfigError("calendar.request_timeout_s must be positive")

    return CalendarSettings(
        data_dir=Path(data_dir_raw.strip()).expanduser(),
        calendar_id=calendar_id.strip(),
        timezone=timezone.strip(),
        request_timeout_s=timeout,
    )


def _parse_logging(section: Any) -> LoggingConfig:
    if not isinstance(section, dict):
        raise ConfigError("[logging] must be a table")

    log_level = str(section.get("level", "INFO")).upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"Invalid logging.level: {log_level!r}")

    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")

    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("logging.log_root must be a string when set")

    return LoggingConfig(level=log_level, format=log_format, log_root=log_root or None)


def load_config(path: Path | None = None) -> VerveConfig:
    """Load and validate configuration from *path*.

    *path* may be a ``verve.toml`` file or a directory containing one. When it
    is None, ``./verve.toml`` is used if present.

    Raises
    ------
    ConfigError
        If the file contains invalid TOML or invalid values, or an explicit
        *path* does not exist.
    """
    if path is None:
        toml_path = Path(CONFIG_FILE_NAME)
        if not toml_path.exists():
            return VerveConfig()
    else:
        toml_path = path / CONFIG_FILE_NAME if path.is_dir() else path
        if not toml_path.exists():
            raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    return VerveConfig(
        calendar=_parse_calendar(data.get("calendar", {})),
        logging=_parse_logging(data.get("logging", {})),
        source=toml_path,
    )
