"""ORA configuration loading and validation.

Reads ``ora.toml`` (when present), resolves ``${VAR}`` references against the
environment, overlays the secret-bearing environment variables, and returns a
validated :class:`OraConfig` dataclass.

Every calendar default consumed by the grid builder, the conflict probe, the
token lifecycle and the sync orchestrator lives in :class:`CalendarDefaults`.
Call sites read these values instead of repeating literals.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "ora.toml"


class ConfigError(Exception):
    """Raised when ORA configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class CalendarDefaults:
    """Calendar tunables from the ``[calendar]`` section.

    Durations are stored as plain numbers so the TOML shape stays flat; use
    the ``timedelta`` properties at call sites.
    """

    slot_minutes: int = 30
    default_event_minutes: int = 60
    min_probe_minutes: int = 15
    sync_horizon_days: int = 14
    publish_horizon_days: int = 7
    sweep_page_size: int = 250
    sweep_concurrency: int = 1
    auto_sync_cooldown_hours: float = 6
    token_safety_margin_seconds: int = 60
    default_token_ttl_seconds: int = 3600
    state_max_age_seconds: int = 600
    consent_timeout_seconds: float = 300
    consent_fallback_delay_seconds: float = 1.5
    presence_stale_hours: float = 36
    timezone: str = "UTC"

    @property
    def default_event_duration(self) -> timedelta:
        return timedelta(minutes=self.default_event_minutes)

    @property
    def min_probe_span(self) -> timedelta:
        return timedelta(minutes=self.min_probe_minutes)

    @property
    def auto_sync_cooldown(self) -> timedelta:
        return timedelta(hours=self.auto_sync_cooldown_hours)

    @property
    def token_safety_margin(self) -> timedelta:
        return timedelta(seconds=self.token_safety_margin_seconds)

    @property
    def state_max_age(self) -> timedelta:
        return timedelta(seconds=self.state_max_age_seconds)

    @property
    def presence_stale_after(self) -> timedelta:
        return timedelta(hours=self.presence_stale_hours)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


DEFAULTS = CalendarDefaults()


@dataclass
class LoggingConfig:
    """Logging configuration from the ``[logging]`` section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class GoogleOAuthConfig:
    """Google OAuth client registration used for token exchanges."""

    client_id: str | None = None
    client_secret: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class OraConfig:
    """Parsed and validated ORA configuration."""

    calendar: CalendarDefaults = field(default_factory=CalendarDefaults)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    google: GoogleOAuthConfig = field(default_factory=GoogleOAuthConfig)
    state_secret: str | None = None
    cron_secret: str | None = None
    app_base_url: str | None = None
    database_url: str | None = None
    host: str = "127.0.0.1"
    port: int = 8300


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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


def parse_calendar_defaults(raw: Mapping[str, Any] | None) -> CalendarDefaults:
    """Build :class:`CalendarDefaults` from a ``[calendar]`` table.

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    if raw is None:
        return CalendarDefaults()
    if not isinstance(raw, Mapping):
        raise ConfigError("[calendar] must be a table")

    known = {f.name: f for f in fields(CalendarDefaults)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"Unknown [calendar] key(s): {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "timezone":
            if not isinstance(value, str) or not value.strip():
                raise ConfigError("calendar.timezone must be a non-empty string")
            try:
                ZoneInfo(value.strip())
            except ZoneInfoNotFoundError as exc:
                raise ConfigError(f"calendar.timezone is not a known zone: {value!r}") from exc
            values[key] = value.strip()
            continue
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ConfigError(f"calendar.{key} must be a number, got {value!r}")
        if value <= 0:
            raise ConfigError(f"calendar.{key} must be positive, got {value!r}")
        values[key] = int(value) if known[key].type in ("int", int) else float(value)

    if values.get("slot_minutes", DEFAULTS.slot_minutes) > 1440:
        raise ConfigError("calendar.slot_minutes must not exceed 1440")
    return CalendarDefaults(**values)


def _env(environ: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> OraConfig:
    """Load ORA configuration from *path* and the environment.

    Parameters
    ----------
    path:
        Path to an ``ora.toml`` file.  When ``None`` the file is optional and
        only looked up in the current directory.
    environ:
        Environment mapping; defaults to ``os.environ``.

    Returns
    -------
    OraConfig
        Fully parsed configuration.

    Raises
    ------
    ConfigError
        If an explicitly given file is missing, contains invalid TOML, or
        holds invalid values.
    """
    env = os.environ if environ is None else environ

    data: dict[str, Any] = {}
    toml_path = path if path is not None else Path(DEFAULT_CONFIG_FILENAME)
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
        data = resolve_env_vars(data)
    elif path is not None:
        raise ConfigError(f"Config file not found: {toml_path}")

    calendar = parse_calendar_defaults(data.get("calendar"))

    logging_section = data.get("logging", {})
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_file=logging_section.get("log_file"),
    )

    server_section = data.get("server", {})
    port_raw = server_section.get("port", 8300)
    if isinstance(port_raw, bool) or not isinstance(port_raw, int):
        raise ConfigError(f"server.port must be an integer, got {port_raw!r}")

    google_section = data.get("google", {})
    google = GoogleOAuthConfig(
        client_id=google_section.get("client_id") or _env(env, "GOOGLE_OAUTH_CLIENT_ID"),
        client_secret=google_section.get("client_secret")
        or _env(env, "GOOGLE_OAUTH_CLIENT_SECRET"),
    )

    return OraConfig(
        calendar=calendar,
        logging=logging_config,
        google=google,
        state_secret=_env(env, "CALENDAR_OAUTH_STATE_SECRET"),
        cron_secret=_env(env, "CALENDAR_SYNC_CRON_SECRET", "CRON_SECRET"),
        app_base_url=_env(env, "APP_BASE_URL"),
        database_url=server_section.get("database_url") or _env(env, "ORA_DATABASE_URL"),
        host=str(server_section.get("host", "127.0.0.1")),
        port=port_raw,
    )
