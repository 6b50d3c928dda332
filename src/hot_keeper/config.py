"""Configuration management for hot-keeper using pydantic-settings.

Supports hierarchical configuration from:
1. Command-line overrides (highest priority)
2. Environment variables
3. JSON config file (``--config`` or ``hot-keeper.json`` in the working directory)
4. Default values (lowest priority)

Environment variables use the format: HOT_KEEPER_<FIELD>
Example: HOT_KEEPER_PORT=4000, HOT_KEEPER_CERTS__CERT=./certs/cert.pem
"""

import ipaddress
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from hot_keeper.core.app_loader import EntryPoint
from hot_keeper.core.errors import ConfigInvalid
from hot_keeper.core.path_filter import PathFilter

APP_NAME = "hot-keeper"
DEFAULT_CONFIG_FILE = "hot-keeper.json"
DEFAULT_PORT = 3000
DEFAULT_EXCLUDE_WATCH = ["node_modules", ".git", ".venv", "__pycache__"]


class JsonConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source for loading from JSON file."""

    def __init__(self, settings_cls: type[BaseSettings], json_file: Path):
        super().__init__(settings_cls)
        self.json_file = json_file

    def get_field_value(
        self, field: Any, field_name: str
    ) -> tuple[Any, str, bool]:
        """Get field value - required by base class but not used in v2."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load configuration from JSON file."""
        if self.json_file.exists():
            raw = json.loads(self.json_file.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(f"{self.json_file} must contain a JSON object")
            return _normalize_keys(_strip_comment_fields(raw))
        return {}


class CertsConfig(BaseModel):
    """TLS certificate and key paths (required when ``secure`` is set)."""

    cert: str | None = None
    key: str | None = None


# Module-level variable read by settings_customise_sources
_json_config_file: Path | None = None


def _strip_comment_fields(data: Any) -> Any:
    """Recursively strip keys starting with _ or $ from dict.

    Args:
        data: Dictionary to clean (or any other type, which is returned as-is)

    Returns:
        Dictionary with comment fields removed, or original value if not a dict
    """
    if not isinstance(data, dict):
        return data
    return {
        k: _strip_comment_fields(v) if isinstance(v, dict) else v
        for k, v in data.items()
        if not k.startswith('_') and not k.startswith('$')
    }


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _normalize_keys(data: Any) -> Any:
    """Recursively convert camelCase keys (``excludeWatch``) to snake_case."""
    if not isinstance(data, dict):
        return data
    return {
        _CAMEL_BOUNDARY.sub(r"_\1", k).lower(): _normalize_keys(v)
        for k, v in data.items()
    }


class Settings(BaseSettings):
    """Root configuration model.

    Loads configuration from (in priority order):
    1. Keyword arguments (command-line overrides)
    2. Environment variables with HOT_KEEPER_ prefix
    3. JSON config file (if provided)
    4. Default values
    """

    secure: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    watch: list[str] = Field(default_factory=lambda: ["./"])
    exclude_watch: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_WATCH))
    certs: CertsConfig = Field(default_factory=CertsConfig)

    restart_timeout: float = Field(default=15.0, gt=0)
    cleanup_timeout: float = Field(default=5.0, gt=0)
    startup_timeout: float = Field(default=15.0, gt=0)
    debounce_ms: int = Field(default=0, ge=0)
    watcher_check_interval: float = Field(default=1.0, gt=0)

    lifespan: Literal["auto", "on", "off"] = "auto"
    interface: Literal["auto", "asgi3", "asgi2", "wsgi"] = "auto"
    access_log: bool = False
    log_level: str = "INFO"
    log_file: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="HOT_KEEPER_",
        env_nested_delimiter="__",
    )

    @field_validator('watch')
    @classmethod
    def watch_must_not_be_empty(cls, v: list[str]) -> list[str]:
        """At least one watch path is required."""
        if not v or not any(p.strip() for p in v):
            raise ValueError('watch must list at least one path')
        return v

    @field_validator('host')
    @classmethod
    def host_must_not_be_empty(cls, v: str) -> str:
        """Validate that host is not empty or whitespace-only."""
        if not v or not v.strip():
            raise ValueError('host must be a non-empty string')
        return v

    @model_validator(mode="after")
    def secure_requires_certs(self) -> "Settings":
        """HTTPS needs both a certificate and a key path."""
        if self.secure and (not self.certs.cert or not self.certs.key):
            raise ValueError("HTTPS requires both cert and key files")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to add JSON config file support.

        Priority order (highest to lowest):
        1. Init kwargs (command-line overrides)
        2. Environment variables
        3. JSON config file (if _json_config_file module variable is set)
        4. Default values
        """
        if _json_config_file is not None:
            json_source = JsonConfigSettingsSource(settings_cls, json_file=_json_config_file)
            return (init_settings, env_settings, json_source)
        return (init_settings, env_settings)

    def resolve(self, entry: str | EntryPoint, cwd: Path | None = None) -> "RuntimeConfig":
        """Freeze these settings into absolute paths for one orchestrator run.

        Raises:
            ConfigInvalid: If the entry file is missing or would not be hot-reloaded.
        """
        cwd = Path(cwd) if cwd is not None else Path.cwd()
        entry_point = entry if isinstance(entry, EntryPoint) else EntryPoint.parse(entry, cwd)

        if not entry_point.path.is_file():
            raise ConfigInvalid(f"Entry file not found: {entry_point.path}")

        exclude = list(self.exclude_watch)
        if self.log_file:
            # Every log line would otherwise be a change to a watched file
            exclude.append(self.log_file)
        path_filter = PathFilter(self.watch, exclude, cwd=cwd)
        if not path_filter.matches(entry_point.path):
            raise ConfigInvalid(
                f"Entry file {entry_point.path} is not under a watched path "
                f"({', '.join(self.watch)}) or is excluded; it would never be reloaded"
            )

        if not _is_loopback(self.host):
            logger.warning(
                "Security: binding to non-localhost address {} exposes the server to network access",
                self.host,
            )

        cert_path = key_path = None
        if self.secure:
            cert_path = Path(os.path.abspath(cwd / self.certs.cert))
            key_path = Path(os.path.abspath(cwd / self.certs.key))

        return RuntimeConfig(
            entry=entry_point,
            cwd=cwd,
            host=self.host,
            port=self.port,
            secure=self.secure,
            cert_path=cert_path,
            key_path=key_path,
            watch_paths=tuple(self.watch),
            exclude_paths=tuple(exclude),
            path_filter=path_filter,
            restart_timeout=self.restart_timeout,
            cleanup_timeout=self.cleanup_timeout,
            startup_timeout=self.startup_timeout,
            debounce_ms=self.debounce_ms,
            watcher_check_interval=self.watcher_check_interval,
            lifespan=self.lifespan,
            interface=self.interface,
            access_log=self.access_log,
        )

    def to_file_dict(self) -> dict[str, Any]:
        """Render as the camelCase JSON accepted in ``hot-keeper.json``."""
        data = {
            "secure": self.secure,
            "host": self.host,
            "port": self.port,
            "watch": list(self.watch),
            "excludeWatch": list(self.exclude_watch),
            "restartTimeout": self.restart_timeout,
            "cleanupTimeout": self.cleanup_timeout,
            "startupTimeout": self.startup_timeout,
            "debounceMs": self.debounce_ms,
        }
        if self.log_file:
            data["logFile"] = self.log_file
        if self.certs.cert or self.certs.key:
            data["certs"] = self.certs.model_dump(exclude_none=True)
        return data


@dataclass(frozen=True)
class RuntimeConfig:
    """Immutable configuration for one orchestrator instance."""

    entry: EntryPoint
    cwd: Path
    host: str
    port: int
    secure: bool
    cert_path: Path | None
    key_path: Path | None
    watch_paths: tuple[str, ...]
    exclude_paths: tuple[str, ...]
    path_filter: PathFilter
    restart_timeout: float = 15.0
    cleanup_timeout: float = 5.0
    startup_timeout: float = 15.0
    debounce_ms: int = 0
    watcher_check_interval: float = 1.0
    lifespan: str = "auto"
    interface: str = "auto"
    access_log: bool = False


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for error in e.errors():
        loc = " -> ".join(str(x) for x in error["loc"]) or "config"
        parts.append(f"{loc}: {error['msg']}")
    return "; ".join(parts)


def _build(config_file: Path | None, overrides: dict[str, Any]) -> Settings:
    global _json_config_file
    _json_config_file = config_file
    try:
        return Settings(**overrides)
    finally:
        _json_config_file = None  # Reset after use


def load_settings(
    config_path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
    cwd: Path | None = None,
) -> Settings:
    """Load settings from the config file, environment and overrides.

    Args:
        config_path: Explicit JSON config file. A missing file only warns;
            an unreadable or invalid one raises.
        overrides: Values from the command line; ``None`` values are ignored.
        cwd: Directory searched for ``hot-keeper.json`` when no explicit
            path is given.

    Returns:
        Validated Settings.

    Raises:
        ConfigInvalid: If the merged configuration is invalid.
    """
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    config_file: Path | None = None
    explicit = config_path is not None
    if explicit:
        config_file = Path(config_path)
        if not config_file.is_absolute():
            config_file = cwd / config_file
        if not config_file.exists():
            logger.warning("Config file not found: {}, using defaults and CLI options", config_file)
            config_file = None
    elif (cwd / DEFAULT_CONFIG_FILE).exists():
        config_file = cwd / DEFAULT_CONFIG_FILE

    try:
        return _build(config_file, overrides)
    except ValidationError as e:
        # Both the file and the final merge feed into validation; only fall back
        # when a default file is at fault and the rest is valid on its own.
        if config_file is not None and not explicit:
            try:
                fallback = _build(None, overrides)
            except ValidationError:
                raise ConfigInvalid(_format_validation_error(e)) from e
            logger.warning("Error loading default config file: {}, using defaults and CLI options", e)
            return fallback
        raise ConfigInvalid(_format_validation_error(e)) from e
    except (json.JSONDecodeError, OSError, ValueError) as e:
        if config_file is not None and not explicit:
            logger.warning("Error loading default config file: {}, using defaults and CLI options", e)
            return _build(None, overrides)
        raise ConfigInvalid(f"Error loading config file {config_file}: {e}") from e


def atomic_write_config(config_path: Path, data: dict) -> None:
    """Atomically write config to prevent mid-write reads.

    Writes to a temp file then renames, which is atomic on most filesystems.

    Args:
        config_path: Target config file path
        data: Config data to write
    """
    config_path = Path(config_path)
    temp_path = config_path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    temp_path.replace(config_path)
