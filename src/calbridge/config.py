"""Bridge configuration loading and validation.

Reads an optional ``calbridge.toml`` file, overlays the deployment environment
variables, and returns a validated ``BridgeConfig`` dataclass. Every setting
has a default so a bare environment of PORT, GOOGLE_* and ALCHEMY_* is enough
to start the server; missing secrets are reported but not fatal.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CALENDAR_ID = "primary"
DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_TRACKING_FILE = "/tmp/er_events.json"
DEFAULT_REGISTRY_REFRESH_URL = "https://core-production.alchemy.cloud/core/api/v2/refresh-token"
DEFAULT_REGISTRY_UPDATE_URL = "https://core-production.alchemy.cloud/core/api/v2/update-record"
DEFAULT_REGISTRY_TENANT = "productcaseelnlims4uat"
DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_MARKER_LABEL = "Record ID"
DEFAULT_PRIVATE_METADATA_KEY = "alchemyRecordId"
DEFAULT_SEARCH_WINDOW_MINUTES = 5
DEFAULT_START_FIELD = "StartUse"
DEFAULT_END_FIELD = "EndUse"
VALID_MAPPING_BACKENDS = ("json", "sqlite")

# Pattern matching ${VAR_NAME}, same syntax as the TOML placeholders.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when bridge configuration is missing, malformed, or invalid."""


@dataclass
class ServerConfig:
    """HTTP server settings from [server]."""

    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "production"


@dataclass
class GoogleConfig:
    """Google Calendar settings from [google]."""

    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    default_calendar_id: str = DEFAULT_CALENDAR_ID
    default_timezone: str = DEFAULT_TIMEZONE
    webhook_address: str | None = None


@dataclass
class RegistryFieldConfig:
    """Registry field names; these must match the registry-side script."""

    start_field: str = DEFAULT_START_FIELD
    end_field: str = DEFAULT_END_FIELD
    status_field: str = "EventStatus"


@dataclass
class RegistryStatusConfig:
    """Status values written back to the registry."""

    pushed: str = "Pushed to Calendar"
    cancelled: str = "Removed from Calendar"


@dataclass
class RegistryConfig:
    """Registry (Alchemy) settings from [registry]."""

    refresh_url: str = DEFAULT_REGISTRY_REFRESH_URL
    update_url: str = DEFAULT_REGISTRY_UPDATE_URL
    tenant_name: str = DEFAULT_REGISTRY_TENANT
    refresh_token: str | None = None
    source_timezone: str = "UTC"
    mark_pushed: bool = True
    fields: RegistryFieldConfig = field(default_factory=RegistryFieldConfig)
    statuses: RegistryStatusConfig = field(default_factory=RegistryStatusConfig)


@dataclass
class MappingConfig:
    """Mapping store and matching settings from [mapping]."""

    backend: str = "json"
    path: Path = Path(DEFAULT_TRACKING_FILE)
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    reload_before_read: bool = False
    marker_label: str = DEFAULT_MARKER_LABEL
    private_metadata_key: str = DEFAULT_PRIVATE_METADATA_KEY
    identifier_fields: tuple[str, ...] = ()
    search_window_minutes: int = DEFAULT_SEARCH_WINDOW_MINUTES


@dataclass
class LoggingConfig:
    """Logging configuration from [logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class BridgeConfig:
    """Fully parsed bridge configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def missing_credentials(self) -> list[str]:
        """Return the environment names of required secrets that are unset."""
        required = (
            ("ALCHEMY_REFRESH_TOKEN", self.registry.refresh_token),
            ("GOOGLE_CLIENT_ID", self.google.client_id),
            ("GOOGLE_CLIENT_SECRET", self.google.client_secret),
            ("GOOGLE_REFRESH_TOKEN", self.google.refresh_token),
        )
        return [name for name, value in required if not value]

    @property
    def is_valid(self) -> bool:
        return not self.missing_credentials()


def resolve_env_vars(value: Any, env: Mapping[str, str] | None = None) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    environ = os.environ if env is None else env
    if isinstance(value, dict):
        return {k: resolve_env_vars(v, environ) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item, environ) for item in value]

    if isinstance(value, str):
        return _resolve_string(value, environ)

    return value


def _resolve_string(s: str, env: Mapping[str, str]) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = env.get(var_name)
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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _pick(env: Mapping[str, str], name: str, section: dict[str, Any], key: str, default: Any) -> Any:
    """Environment first, then the TOML section, then the default."""
    env_value = env.get(name)
    if env_value is not None and env_value != "":
        return env_value
    if key in section:
        return section[key]
    return default


def _as_bool(value: Any, *, name: str) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_int(value: Any, *, name: str, minimum: int | None = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _ensure_timezone(value: str, *, name: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"{name} is not a known IANA timezone: {value!r}") from exc
    return value


def _read_toml(path: Path, env: Mapping[str, str]) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return resolve_env_vars(data, env)


def load_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> BridgeConfig:
    """Build a ``BridgeConfig`` from an optional TOML file and the environment.

    Parameters
    ----------
    path:
        Optional ``calbridge.toml``. When ``None`` only the environment and the
        defaults are used.
    env:
        Environment mapping, ``os.environ`` by default.

    Raises
    ------
    ConfigError
        If the file is missing or malformed, or a value fails validation.
    """
    environ = os.environ if env is None else env
    data = _read_toml(path, environ) if path is not None else {}

    server_section = _section(data, "server")
    server = ServerConfig(
        host=str(server_section.get("host", "0.0.0.0")),
        port=_as_int(_pick(environ, "PORT", server_section, "port", 3000), name="server.port", minimum=1),
        environment=str(_pick(environ, "NODE_ENV", server_section, "environment", "production")),
    )

    google_section = _section(data, "google")
    google = GoogleConfig(
        client_id=_pick(environ, "GOOGLE_CLIENT_ID", google_section, "client_id", None),
        client_secret=_pick(environ, "GOOGLE_CLIENT_SECRET", google_section, "client_secret", None),
        refresh_token=_pick(environ, "GOOGLE_REFRESH_TOKEN", google_section, "refresh_token", None),
        default_calendar_id=str(
            _pick(
                environ,
                "GOOGLE_DEFAULT_CALENDAR_ID",
                google_section,
                "default_calendar_id",
                DEFAULT_CALENDAR_ID,
            )
        ),
        default_timezone=_ensure_timezone(
            str(
                _pick(
                    environ,
                    "GOOGLE_DEFAULT_TIMEZONE",
                    google_section,
                    "default_timezone",
                    DEFAULT_TIMEZONE,
                )
            ),
            name="google.default_timezone",
        ),
        webhook_address=_pick(environ, "WEBHOOK_URL", google_section, "webhook_address", None),
    )

    registry_section = _section(data, "registry")
    fields_section = _section(registry_section, "fields")
    statuses_section = _section(registry_section, "statuses")
    registry = RegistryConfig(
        refresh_url=str(
            _pick(
                environ,
                "ALCHEMY_REFRESH_URL",
                registry_section,
                "refresh_url",
                DEFAULT_REGISTRY_REFRESH_URL,
            )
        ),
        update_url=str(
            _pick(
                environ,
                "ALCHEMY_UPDATE_URL",
                registry_section,
                "update_url",
                DEFAULT_REGISTRY_UPDATE_URL,
            )
        ),
        tenant_name=str(
            _pick(
                environ,
                "ALCHEMY_TENANT_NAME",
                registry_section,
                "tenant_name",
                DEFAULT_REGISTRY_TENANT,
            )
        ),
        refresh_token=_pick(environ, "ALCHEMY_REFRESH_TOKEN", registry_section, "refresh_token", None),
        source_timezone=_ensure_timezone(
            str(registry_section.get("source_timezone", "UTC")),
            name="registry.source_timezone",
        ),
        mark_pushed=_as_bool(registry_section.get("mark_pushed", True), name="registry.mark_pushed"),
        fields=RegistryFieldConfig(
            start_field=str(
                _pick(environ, "ALCHEMY_START_FIELD", fields_section, "start", DEFAULT_START_FIELD)
            ),
            end_field=str(_pick(environ, "ALCHEMY_END_FIELD", fields_section, "end", DEFAULT_END_FIELD)),
            status_field=str(
                _pick(environ, "ALCHEMY_STATUS_FIELD", fields_section, "status", "EventStatus")
            ),
        ),
        statuses=RegistryStatusConfig(
            pushed=str(
                _pick(
                    environ,
                    "ALCHEMY_STATUS_PUSHED",
                    statuses_section,
                    "pushed",
                    "Pushed to Calendar",
                )
            ),
            cancelled=str(
                _pick(
                    environ,
                    "ALCHEMY_STATUS_CANCELLED",
                    statuses_section,
                    "cancelled",
                    "Removed from Calendar",
                )
            ),
        ),
    )

    mapping_section = _section(data, "mapping")
    backend = str(
        _pick(environ, "CALBRIDGE_MAPPING_BACKEND", mapping_section, "backend", "json")
    ).lower()
    if backend not in VALID_MAPPING_BACKENDS:
        raise ConfigError(
            f"mapping.backend must be one of {', '.join(VALID_MAPPING_BACKENDS)}, got {backend!r}"
        )
    ttl_raw = _pick(
        environ,
        "CALBRIDGE_CACHE_TTL_SECONDS",
        mapping_section,
        "cache_ttl_seconds",
        DEFAULT_CACHE_TTL_SECONDS,
    )
    try:
        cache_ttl_seconds = float(ttl_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"mapping.cache_ttl_seconds must be a number, got {ttl_raw!r}") from exc
    if cache_ttl_seconds < 0:
        raise ConfigError("mapping.cache_ttl_seconds must be >= 0")

    identifier_fields = mapping_section.get("identifier_fields", [])
    if not isinstance(identifier_fields, list) or not all(
        isinstance(item, str) for item in identifier_fields
    ):
        raise ConfigError("mapping.identifier_fields must be a list of strings")

    mapping = MappingConfig(
        backend=backend,
        path=Path(_pick(environ, "EVENT_TRACKING_FILE", mapping_section, "path", DEFAULT_TRACKING_FILE)),
        cache_ttl_seconds=cache_ttl_seconds,
        reload_before_read=_as_bool(
            mapping_section.get("reload_before_read", False),
            name="mapping.reload_before_read",
        ),
        marker_label=str(mapping_section.get("marker_label", DEFAULT_MARKER_LABEL)),
        private_metadata_key=str(
            mapping_section.get("private_metadata_key", DEFAULT_PRIVATE_METADATA_KEY)
        ),
        identifier_fields=tuple(identifier_fields),
        search_window_minutes=_as_int(
            mapping_section.get("search_window_minutes", DEFAULT_SEARCH_WINDOW_MINUTES),
            name="mapping.search_window_minutes",
            minimum=0,
        ),
    )

    logging_section = _section(data, "logging")
    log_level = str(_pick(environ, "LOG_LEVEL", logging_section, "level", "INFO")).upper()
    log_format = str(_pick(environ, "LOG_FORMAT", logging_section, "format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    log_file = logging_section.get("log_file")

    return BridgeConfig(
        server=server,
        google=google,
        registry=registry,
        mapping=mapping,
        logging=LoggingConfig(level=log_level, format=log_format, log_file=log_file),
    )
