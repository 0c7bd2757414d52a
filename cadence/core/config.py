"""
Cadence Configuration — loads and merges settings from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (CADENCE_*)
3. Live settings file (<state>/settings.json, also written by the dashboard)
4. Defaults (hardcoded)

Settings are re-read on every scheduler tick and every queued invocation,
so edits to settings.json take effect without a restart.

settings.json is shared with the dashboard, which reads and writes camelCase
keys (`heartbeat.excludeWindows`, `security.disallowedTools`). Every layer is
normalised to camelCase before merging; the models accept either spelling.

Environment variable mapping:
    CADENCE_SECURITY_LEVEL → security.level
    CADENCE_ASSISTANT_EXECUTABLE → assistant.executable
    CADENCE_TIMEZONE → timezone
    CADENCE_HEARTBEAT_INTERVAL → heartbeat.interval
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from cadence.core.errors import ConfigError, StorageError
from cadence.core.paths import CadencePaths
from cadence.core.types import SecurityLevel

logger = logging.getLogger(__name__)

MIN_HEARTBEAT_INTERVAL = 1       # minutes
MAX_HEARTBEAT_INTERVAL = 1440    # one day
MAX_TICK_SECONDS = 60            # a tick must not span more than one minute

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SettingsModel(BaseModel):
    """settings.json keys are camelCase (shared with the dashboard); snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExcludeWindowConfig(SettingsModel):
    """A recurring local time range during which triggers are deferred."""

    days: list[int] = Field(default_factory=list)   # 0 = Sunday; empty = every day
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, value: str) -> str:
        value = value.strip()
        if not _HHMM.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        return sorted({d for d in value if 0 <= d <= 6})


class HeartbeatConfig(SettingsModel):
    """Periodic heartbeat invocation, independent of jobs."""

    enabled: bool = False
    interval: int = 15   # minutes
    prompt: str = ""
    exclude_windows: list[ExcludeWindowConfig] = Field(default_factory=list)

    @field_validator("interval", mode="before")
    @classmethod
    def _clamp_interval(cls, value: Any) -> int:
        try:
            minutes = round(float(value))
        except (TypeError, ValueError):
            return 15
        return max(MIN_HEARTBEAT_INTERVAL, min(MAX_HEARTBEAT_INTERVAL, minutes))

    @field_validator("exclude_windows", mode="before")
    @classmethod
    def _drop_invalid_windows(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        kept = []
        for entry in value:
            try:
                kept.append(ExcludeWindowConfig.model_validate(entry))
            except ValueError as e:
                logger.warning(f"Ignoring invalid exclusion window {entry!r}: {e}")
        return kept


class SecurityConfig(SettingsModel):
    """Security policy handed to the assistant process."""

    level: SecurityLevel = SecurityLevel.MODERATE
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)

    @field_validator("level", mode="before")
    @classmethod
    def _fallback_level(cls, value: Any) -> Any:
        valid = {level.value for level in SecurityLevel}
        if isinstance(value, SecurityLevel) or (isinstance(value, str) and value in valid):
            return value
        logger.warning(f"Unknown security level {value!r}, using 'moderate'")
        return SecurityLevel.MODERATE

    @field_validator("allowed_tools", "disallowed_tools", mode="before")
    @classmethod
    def _tool_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if str(v).strip()]


class AssistantConfig(SettingsModel):
    """How the external assistant process is started."""

    executable: str = "claude"
    model: str = ""
    output_format: str = "text"
    # Passed only when a fresh session is created. May be a path to a
    # .md/.txt/.prompt file.
    system_prompt: str = ""


class SchedulerConfig(SettingsModel):
    """Scheduler loop configuration."""

    tick_seconds: int = 60

    @field_validator("tick_seconds", mode="before")
    @classmethod
    def _clamp_tick(cls, value: Any) -> int:
        try:
            seconds = round(float(value))
        except (TypeError, ValueError):
            return MAX_TICK_SECONDS
        return max(1, min(MAX_TICK_SECONDS, seconds))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class CadenceConfig(SettingsModel):
    """Root configuration for Cadence."""

    timezone: str = ""                 # IANA name; wins over the fixed offset
    timezone_offset_minutes: int = 0
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        value = value.strip()
        if value:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"unknown timezone {value!r}") from e
        return value

    @staticmethod
    def load(
        settings_path: Path | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> CadenceConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > settings.json > defaults
        """
        merged: dict[str, Any] = {}

        # Layer 1: settings.json
        path = settings_path or CadencePaths.for_project().settings_file
        if path.exists():
            _deep_merge(merged, _camel_keys(_load_json(path)))

        # Layer 2: Environment variables
        _deep_merge(merged, _camel_keys(_load_from_env()))

        # Layer 3: Explicit overrides
        if overrides:
            _deep_merge(merged, _camel_keys(overrides))

        _substitute_env_vars(merged)

        try:
            return CadenceConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def offset_minutes(self, at: datetime | None = None) -> int:
        """UTC offset in minutes to apply when reading local calendar fields."""
        if not self.timezone:
            return self.timezone_offset_minutes
        at = at or datetime.now(timezone.utc)
        offset = at.astimezone(ZoneInfo(self.timezone)).utcoffset()
        return int(offset.total_seconds() // 60) if offset else 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Settings file writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def init_settings(path: Path) -> bool:
    """Write default settings if the file does not exist. Returns True if written."""
    if path.exists():
        return False
    _write_json(path, CadenceConfig().model_dump(mode="json", by_alias=True))
    logger.info(f"Default settings written to {path}")
    return True


def update_settings(path: Path, patch: dict[str, Any]) -> CadenceConfig:
    """
    Deep-merge a patch into settings.json and return the validated result.

    Keys may be given in either case; the file is written with the camelCase
    keys the dashboard reads. The patch is validated before anything is
    written, so a bad patch leaves the file untouched.
    """
    data = _camel_keys(_load_json(path)) if path.exists() else {}
    _deep_merge(data, _camel_keys(patch))
    try:
        config = CadenceConfig(**data)
    except Exception as e:
        raise ConfigError(f"Invalid settings patch: {e}") from e
    _write_json(path, data)
    return config


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _load_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as e:
        raise ConfigError(f"Failed to load settings from {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Settings in {path} must be a JSON object")
    return data


def _write_json(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        raise StorageError(f"Failed to write settings to {path}: {e}") from e


def _load_from_env() -> dict[str, Any]:
    """Load configuration from CADENCE_* environment variables."""
    result: dict[str, Any] = {}

    env_mapping = {
        "CADENCE_TIMEZONE": (None, "timezone"),
        "CADENCE_TIMEZONE_OFFSET_MINUTES": (None, "timezone_offset_minutes"),
        "CADENCE_SECURITY_LEVEL": ("security", "level"),
        "CADENCE_ASSISTANT_EXECUTABLE": ("assistant", "executable"),
        "CADENCE_ASSISTANT_MODEL": ("assistant", "model"),
        "CADENCE_HEARTBEAT_ENABLED": ("heartbeat", "enabled"),
        "CADENCE_HEARTBEAT_INTERVAL": ("heartbeat", "interval"),
        "CADENCE_TICK_SECONDS": ("scheduler", "tick_seconds"),
    }

    for env_var, (section, key) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        if section is None:
            result[key] = _convert_value(value)
        else:
            result.setdefault(section, {})[key] = _convert_value(value)

    return result


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    lowered = value.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    return value


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    if isinstance(data, dict):
        for key, value in data.items():
            data[key] = _substitute_env_vars(value)
        return data
    if isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    if isinstance(data, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), data)
    return data


def _camel_keys(data: Any) -> Any:
    """Rewrite snake_case keys to camelCase so layers written either way merge."""
    if isinstance(data, dict):
        return {
            (to_camel(key) if isinstance(key, str) and "_" in key else key): _camel_keys(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_camel_keys(item) for item in data]
    return data
