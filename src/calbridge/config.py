"""Configuration loading and validation.

Reads an optional ``calbridge.toml``, resolves ``${VAR_NAME}`` references
against the environment, and returns a validated :class:`AppConfig`.  Every
section is optional; missing values fall back to environment variables and
then to built-in defaults.

Example::

    [logging]
    level = "INFO"
    format = "json"

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"

    [resolver]
    match_threshold = 0.5
    candidate_threshold = 0.2
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "calbridge.toml"
CONFIG_PATH_ENV = "CALBRIDGE_CONFIG"

# Matches ${VAR_NAME} references with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleOAuthConfig:
    """OAuth client settings; per-connection overrides live in the connection config."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    token_url: str = "https://oauth2.googleapis.com/token"
    authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    scope: str = "https://www.googleapis.com/auth/calendar"


@dataclass
class CalendarConfig:
    """Calendar client behaviour from the [calendar] section."""

    managed_calendar_name: str = "Managed Calendar"
    managed_calendar_description: str = "Events scheduled by your assistant."
    managed_calendar_timezone: str = "UTC"
    request_timeout_s: float = 30.0
    refresh_skew_s: int = 60
    default_window_days: int = 7
    default_max_results: int = 20
    default_duration_minutes: int = 60


@dataclass
class ResolverConfig:
    """Event resolver thresholds from the [resolver] section.

    The thresholds and weights were tuned empirically; keep them here rather
    than at the call sites.
    """

    match_threshold: float = 0.5
    candidate_threshold: float = 0.2
    max_candidates: int = 3
    default_window_days: int = 30
    search_results_per_calendar: int = 25
    exhaustive_results_per_calendar: int = 100
    jaccard_weight: float = 0.5
    coverage_weight: float = 0.5
    token_match_score: float = 0.95
    partial_score_cap: float = 0.9


@dataclass
class IngestionConfig:
    """Webhook dedup settings from the [ingestion] section."""

    processed_id_capacity: int = 200
    reservation_max_attempts: int = 5


@dataclass
class TelegramConfig:
    api_base_url: str = "https://api.telegram.org"
    webhook_url: str | None = None


@dataclass
class WhatsAppConfig:
    graph_base_url: str = "https://graph.facebook.com"
    graph_api_version: str = "v20.0"
    verify_token: str | None = None


@dataclass
class ChatConfig:
    """Where inbound channel messages are forwarded for a reply."""

    endpoint_url: str = "http://localhost:3000/api/chat"
    timeout_s: float = 120.0


@dataclass
class AppConfig:
    """Parsed and validated application configuration."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    google: GoogleOAuthConfig = field(default_factory=GoogleOAuthConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    db_name: str = "calbridge"


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


def _build_section[T](cls: type[T], raw: Any, section: str) -> T:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"[{section}] must be a table")
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{section}]: {', '.join(unknown)}")
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ConfigError(f"Invalid [{section}] section: {exc}") from exc


def _apply_env_fallbacks(config: AppConfig) -> None:
    google = config.google
    google.client_id = google.client_id or os.environ.get("GOOGLE_CLIENT_ID") or None
    google.client_secret = google.client_secret or os.environ.get("GOOGLE_CLIENT_SECRET") or None
    google.redirect_uri = google.redirect_uri or os.environ.get("GOOGLE_REDIRECT_URI") or None
    config.whatsapp.verify_token = (
        config.whatsapp.verify_token or os.environ.get("WHATSAPP_WEBHOOK_VERIFY_TOKEN") or None
    )
    config.telegram.webhook_url = (
        config.telegram.webhook_url or os.environ.get("TELEGRAM_WEBHOOK_URL") or None
    )
    chat_url = os.environ.get("CALBRIDGE_CHAT_URL")
    if chat_url:
        config.chat.endpoint_url = chat_url


def validate_config(config: AppConfig) -> None:
    """Check cross-field invariants; raises :class:`ConfigError`."""
    if config.logging.format not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"logging.format must be one of {sorted(_VALID_LOG_FORMATS)}, "
            f"got {config.logging.format!r}"
        )
    resolver = config.resolver
    if not 0.0 <= resolver.candidate_threshold <= resolver.match_threshold <= 1.0:
        raise ConfigError(
            "resolver thresholds must satisfy 0 <= candidate_threshold <= match_threshold <= 1"
        )
    if resolver.max_candidates < 1:
        raise ConfigError("resolver.max_candidates must be at least 1")
    if config.ingestion.processed_id_capacity < 1:
        raise ConfigError("ingestion.processed_id_capacity must be at least 1")
    if config.ingestion.reservation_max_attempts < 1:
        raise ConfigError("ingestion.reservation_max_attempts must be at least 1")
    if config.calendar.request_timeout_s <= 0:
        raise ConfigError("calendar.request_timeout_s must be positive")


def load_config(path: Path | str | None = None) -> AppConfig:
    """Load configuration from *path* (or ``$CALBRIDGE_CONFIG`` / ``./calbridge.toml``).

    A missing default file is not an error; an explicitly requested file that
    does not exist is.
    """
    explicit = path is not None or CONFIG_PATH_ENV in os.environ
    config_path = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_FILENAME)

    raw: dict[str, Any] = {}
    if config_path.is_file():
        try:
            with config_path.open("rb") as fh:
                raw = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        raw = resolve_env_vars(raw)
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    db_name = raw.pop("db_name", "calbridge")
    if not isinstance(db_name, str) or not db_name.strip():
        raise ConfigError("db_name must be a non-empty string")

    sections = {
        "logging": LoggingConfig,
        "google": GoogleOAuthConfig,
        "calendar": CalendarConfig,
        "resolver": ResolverConfig,
        "ingestion": IngestionConfig,
        "telegram": TelegramConfig,
        "whatsapp": WhatsAppConfig,
        "chat": ChatConfig,
    }
    unknown_sections = sorted(set(raw) - set(sections))
    if unknown_sections:
        raise ConfigError(f"Unknown config section(s): {', '.join(unknown_sections)}")

    config = AppConfig(
        **{name: _build_section(cls, raw.get(name), name) for name, cls in sections.items()},
        db_name=db_name.strip(),
    )
    _apply_env_fallbacks(config)
    validate_config(config)
    return config
