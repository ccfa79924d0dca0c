"""
Configuration management for the LyreBirdAudio version manager.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/lyrebird/updater.yml or --config path)
3. Environment variables (LYREBIRD_UPDATER_* prefix, __ for nesting)
4. Explicit overrides passed by the command line (highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from lyrebird_updater.service.unit_file import GENERATOR_ENVIRONMENT_DEFAULTS

DEFAULT_CONFIG_PATH = Path("/etc/lyrebird/updater.yml")
DEFAULT_ENV_PREFIX = "LYREBIRD_UPDATER_"

# =============================================================================
# Repository Configuration
# =============================================================================


class RepositoryConfig(BaseModel):
    """Version-control workspace settings.

    Attributes:
        path: Path of the LyreBirdAudio checkout.
        remote: Name of the remote to fetch from.
        expected_remote: owner/name the remote URL should contain.
        fetch_timeout_seconds: Timeout of a single fetch attempt.
        fetch_retries: Number of fetch attempts before giving up.
        fetch_backoff_seconds: Fixed delay between fetch attempts.
        command_timeout_seconds: Timeout for local git commands.
        executable_scripts: Suite scripts that must keep their execute bit.
    """

    path: str = Field(
        default=".",
        description="Path of the LyreBirdAudio checkout",
    )
    remote: str = Field(
        default="origin",
        description="Remote to fetch tags and branches from",
    )
    expected_remote: str = Field(
        default="tomtom215/LyreBirdAudio",
        description="owner/name expected in the remote URL (warning only)",
    )
    fetch_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout of a single fetch attempt",
    )
    fetch_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of fetch attempts",
    )
    fetch_backoff_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Fixed delay between fetch attempts",
    )
    command_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for local git commands",
    )
    executable_scripts: list[str] = Field(
        default_factory=lambda: [
            "install_mediamtx.sh",
            "usb-audio-mapper.sh",
            "mediamtx-stream-manager.sh",
            "lyrebird-updater.sh",
        ],
        description="Scripts whose execute bit is restored after a switch",
    )


# =============================================================================
# Lock Configuration
# =============================================================================


class LockConfig(BaseModel):
    """Update lock settings.

    Attributes:
        path: Lock directory path.
        timeout_seconds: How long a waiter polls before giving up.
        poll_interval_seconds: Delay between acquisition attempts.
        program_name: Name expected in a live holder's command line.
        stale_grace_seconds: Age after which a lock without PID is reclaimed.
    """

    path: str = Field(
        default="/run/lyrebird-updater.lock",
        description="Lock directory (created atomically)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Maximum wait for the lock",
    )
    poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Poll interval while waiting for the lock",
    )
    program_name: str = Field(
        default="lyrebird-updater",
        description="Program name a live holder's command line must contain",
    )
    stale_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Age after which a lock directory without PID is stale",
    )


# =============================================================================
# Service Configuration
# =============================================================================


class ServiceConfig(BaseModel):
    """Background stream service settings.

    Attributes:
        name: systemd unit name.
        unit_path: Installed service definition.
        cron_path: Companion monitoring schedule file.
        backup_dir: Directory for timestamped backups.
        generator: Workspace-relative script that regenerates the unit.
        generator_args: Arguments passed to the generator.
        generator_timeout_seconds: Timeout for the generator run.
        stop_timeout_seconds: Wait for graceful stop before escalating.
        kill_timeout_seconds: Wait after forced termination.
        start_timeout_seconds: Wait for the service to become active.
        poll_interval_seconds: Poll interval for state changes.
        environment_defaults: Assignments the generator emits by itself.
    """

    name: str = Field(
        default="mediamtx-audio",
        description="systemd unit name",
    )
    unit_path: str = Field(
        default="/etc/systemd/system/mediamtx-audio.service",
        description="Installed service definition",
    )
    cron_path: str = Field(
        default="/etc/cron.d/mediamtx-monitor",
        description="Companion monitoring schedule file",
    )
    backup_dir: str = Field(
        default="/var/backups/lyrebird-updater",
        description="Directory for service definition backups",
    )
    generator: str = Field(
        default="mediamtx-stream-manager.sh",
        description="Workspace-relative script that regenerates the unit",
    )
    generator_args: list[str] = Field(
        default_factory=lambda: ["install"],
        description="Arguments passed to the generator",
    )
    generator_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for the generator run",
    )
    stop_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Graceful stop wait before forced termination",
    )
    kill_timeout_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Wait after forced termination",
    )
    start_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Wait for the service to become active",
    )
    poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Poll interval for service state changes",
    )
    environment_defaults: dict[str, str] = Field(
        default_factory=lambda: dict(GENERATOR_ENVIRONMENT_DEFAULTS),
        description="Environment assignments the generator emits by itself",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Strip a trailing .service suffix."""
        v = v.strip()
        if not v:
            raise ValueError("Service name must not be empty")
        return v.removesuffix(".service")


# =============================================================================
# Self-update and State Configuration
# =============================================================================


class SelfUpdateConfig(BaseModel):
    """Self-replacement settings.

    Attributes:
        artifact: Workspace-relative path of the updater package.
        validation_timeout_seconds: Timeout of the start-up check.
    """

    artifact: str = Field(
        default="src/lyrebird_updater",
        description="Workspace-relative path of the updater package",
    )
    validation_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the new updater start-up check",
    )


class StateConfig(BaseModel):
    """Durable state settings.

    Attributes:
        marker_path: Path of the crash-recovery marker.
    """

    marker_path: str = Field(
        default="/var/lib/lyrebird-updater/update-in-progress.json",
        description="Crash-recovery marker file",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of text.
        log_to_stdout: Log to stdout instead of stderr.
        debug_mode: Force debug level.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit one JSON object per log line",
    )
    log_to_stdout: bool = Field(
        default=False,
        description="Log to stdout instead of stderr",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        repository: Workspace and fetch settings.
        lock: Update lock settings.
        service: Background service settings.
        self_update: Self-replacement settings.
        state: Durable state settings.
        logging: Logging configuration.
    """

    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    self_update: SelfUpdateConfig = Field(default_factory=SelfUpdateConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary with configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or str).
    """
    if value.lower() in ("true", "yes", "1", "on"):
        return True
    if value.lower() in ("false", "no", "0", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [item.strip() for item in value.split(",") if item.strip()]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Example: LYREBIRD_UPDATER_SERVICE__NAME=mediamtx-audio

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary applied last (command-line options).

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"repository": {"path": "/opt/LyreBirdAudio"}})
        >>> print(config.service.name)
        'mediamtx-audio'
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
