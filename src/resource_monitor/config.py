"""
Configuration management for the resource monitor.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/resource-monitor/config.yml or --config path)
3. Environment variables (RESOURCE_MONITOR_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/resource-monitor/config.yml")
DEFAULT_ENV_PREFIX = "RESOURCE_MONITOR_"

# Default MQTT port when the broker URI does not carry one
DEFAULT_MQTT_PORT = 1883


def _validate_level(v: str) -> str:
    """Validate and normalize a log level name."""
    valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
    v_lower = v.lower()
    if v_lower not in valid_levels:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
        )
    if v_lower == "warn":
        return "warning"
    return v_lower


def parse_listen_address(listen: str) -> tuple[str, int]:
    """
    Split a "host:port" listen address.

    Args:
        listen: Listen address (e.g., "0.0.0.0:8080" or ":8080").

    Returns:
        Tuple of (host, port). An empty host means all interfaces.

    Raises:
        ValueError: If the address has no valid port.
    """
    host, sep, port_str = listen.rpartition(":")
    if not sep:
        raise ValueError(f"Listen address must be host:port, got {listen!r}")
    try:
        port = int(port_str)
    except ValueError as e:
        raise ValueError(f"Invalid port in listen address: {listen!r}") from e
    if not 0 <= port <= 65535:
        raise ValueError(f"Port out of range in listen address: {listen!r}")
    return host or "0.0.0.0", port


def parse_broker_uri(uri: str) -> tuple[str, int]:
    """
    Extract host and port from an MQTT broker URI.

    Accepts "tcp://host:port", "mqtt://host:port" or a bare "host:port".

    Args:
        uri: Broker URI.

    Returns:
        Tuple of (hostname, port).

    Raises:
        ValueError: If the URI has no hostname or an unsupported scheme.
    """
    if "://" not in uri:
        uri = f"tcp://{uri}"
    parts = urlsplit(uri)
    if parts.scheme not in ("tcp", "mqtt"):
        raise ValueError(f"Unsupported broker scheme: {parts.scheme!r}")
    if not parts.hostname:
        raise ValueError(f"Broker URI has no hostname: {uri!r}")
    return parts.hostname, parts.port or DEFAULT_MQTT_PORT


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """HTTP server settings.

    Attributes:
        listen: Listen address and port (e.g., "0.0.0.0:8080").
        log_level: Initial application log level.
    """

    listen: str = Field(
        default="0.0.0.0:8080",
        description="Listen address and port for the HTTP API",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )

    @field_validator("listen")
    @classmethod
    def validate_listen(cls, v: str) -> str:
        """Validate the listen address."""
        parse_listen_address(v)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _validate_level(v)

    @property
    def host(self) -> str:
        """Host part of the listen address."""
        return parse_listen_address(self.listen)[0]

    @property
    def port(self) -> int:
        """Port part of the listen address."""
        return parse_listen_address(self.listen)[1]


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON records instead of plain text.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON log records instead of plain text",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _validate_level(v)


# =============================================================================
# Store Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """Document store (MongoDB) configuration.

    Attributes:
        uri: MongoDB connection URI.
        database: Database name.
        collection: Collection holding measurement documents.
        timeout_seconds: Timeout budget applied to every store operation.
    """

    uri: str = Field(
        default="mongodb://mongodb:27017",
        description="MongoDB connection URI",
    )
    database: str = Field(
        default="go-database",
        description="Database name",
    )
    collection: str = Field(
        default="resource-mon",
        description="Collection holding measurement documents",
    )
    timeout_seconds: float = Field(
        default=10.0,
        description="Timeout budget for every store operation in seconds",
        gt=0,
        le=300,
    )


# =============================================================================
# Message Bus Configuration
# =============================================================================


class BusConfig(BaseModel):
    """MQTT message bus configuration.

    Attributes:
        broker_uri: Broker URI (tcp://host:port).
        topic: Topic carrying externally published measurements.
        client_id: MQTT client identifier.
        qos: Subscription quality of service.
        keepalive_seconds: MQTT keepalive interval.
    """

    broker_uri: str = Field(
        default="tcp://mqtt-broker:1883",
        description="MQTT broker URI",
    )
    topic: str = Field(
        default="my-topic",
        description="Topic carrying externally published measurements",
    )
    client_id: str = Field(
        default="resource-monitor",
        description="MQTT client identifier",
    )
    qos: int = Field(
        default=0,
        description="Subscription quality of service (0, 1 or 2)",
        ge=0,
        le=2,
    )
    keepalive_seconds: int = Field(
        default=60,
        description="MQTT keepalive interval in seconds",
        ge=1,
    )

    @field_validator("broker_uri")
    @classmethod
    def validate_broker_uri(cls, v: str) -> str:
        """Validate the broker URI."""
        parse_broker_uri(v)
        return v

    @field_validator("topic")
    @classmethod
    def validate_topic(cls, v: str) -> str:
        """Reject empty topics."""
        if not v.strip():
            raise ValueError("topic must not be empty")
        return v


# =============================================================================
# Sampler Configuration
# =============================================================================


class SamplerConfig(BaseModel):
    """Host sampler configuration.

    Attributes:
        interval_seconds: Period between sampler ticks.
        cpu_interval_seconds: Window over which CPU utilization is measured.
    """

    interval_seconds: float = Field(
        default=10.0,
        description="Period between sampler ticks in seconds",
        gt=0,
    )
    cpu_interval_seconds: float = Field(
        default=1.0,
        description="Window over which CPU utilization is measured",
        ge=0,
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        server: HTTP server settings.
        logging: Logging configuration.
        store: Document store configuration.
        bus: Message bus configuration.
        sampler: Host sampler configuration.
    """

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="HTTP server settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Document store configuration",
    )
    bus: BusConfig = Field(
        default_factory=BusConfig,
        description="Message bus configuration",
    )
    sampler: SamplerConfig = Field(
        default_factory=SamplerConfig,
        description="Host sampler configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _merge_layers(*layers: dict[str, Any]) -> dict[str, Any]:
    """
    Merge configuration layers, later layers winning key by key.

    Sections (nested mappings) are merged recursively; any other value
    replaces what earlier layers set. The result shares no mappings with the
    inputs.

    Args:
        layers: Layers in increasing precedence.

    Returns:
        The merged configuration dictionary.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if isinstance(value, dict):
                earlier = merged.get(key)
                base = earlier if isinstance(earlier, dict) else {}
                merged[key] = _merge_layers(base, value)
            else:
                merged[key] = value
    return merged


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Read the YAML config file.

    An empty file is an empty layer.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the document is not a mapping of sections.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    document = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValueError(
            f"Configuration file {config_path} must contain a mapping, "
            f"not {type(document).__name__}"
        )
    return document


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: RESOURCE_MONITOR_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: RESOURCE_MONITOR_STORE__URI=mongodb://localhost:27017

    Values are kept as strings. The config models coerce them to the field
    type, so "1" becomes an int for bus.qos but stays "12345" for
    bus.client_id, and "yes"/"off" become booleans.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        parts = config_key.split("__")

        current = result
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="resource-monitor",
        description="Host CPU/RAM resource monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--listen",
        type=str,
        help="Override HTTP listen address (host:port)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.listen:
        result["server"] = {"listen": parsed.listen}

    if parsed.log_level:
        result.setdefault("server", {})["log_level"] = parsed.log_level
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("server", {})["log_level"] = "debug"
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Configuration is loaded from multiple sources in order:
    1. Built-in defaults (from AppConfig model)
    2. YAML config file (if specified or default exists)
    3. Environment variables (RESOURCE_MONITOR_* prefix)
    4. Command-line arguments

    Later sources override earlier ones.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValueError: If the config file is not a mapping of sections.
        pydantic.ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> print(config.server.listen)
        '0.0.0.0:8080'
    """
    cli_config = _parse_cli_args(cli_args)
    cli_path = cli_config.pop("_config_path", None)

    if config_path is None:
        if cli_path is not None:
            config_path = cli_path
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH

    yaml_config = _load_yaml_config(Path(config_path)) if config_path is not None else {}

    return AppConfig(
        **_merge_layers(yaml_config, _load_env_config(env_prefix), cli_config)
    )
