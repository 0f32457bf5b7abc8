"""
Game Relay Configuration Management

Loads and validates configuration from YAML or environment variables.
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import Dict, Optional
from pathlib import Path

from .events import DEFAULT_EVENT_QUEUE_SIZE
from .packet import BUFFER_SIZE
from .port_pool import FIRST_PROXY_PORT, LAST_PROXY_PORT


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    max_size_mb: int = 10
    backup_count: int = 3


@dataclass
class RelayConfig:
    """Main relay configuration."""
    listen_ip: str = "0.0.0.0"
    listen_port: int = 40000  # Lobby port where new players are admitted

    # Public address players reach the relay on, for display only
    proxy_ip: Optional[str] = None

    first_proxy_port: int = FIRST_PROXY_PORT
    last_proxy_port: int = LAST_PROXY_PORT

    buffer_size: int = BUFFER_SIZE
    event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE

    # Idle players are removed after this long; 0 disables reaping
    player_timeout_s: int = 0
    maintenance_interval_s: int = 5

    debug: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """Raise ValueError for inconsistent settings."""
        if not 0 < self.first_proxy_port <= self.last_proxy_port <= 65535:
            raise ValueError(
                f"Invalid proxy port range {self.first_proxy_port}-{self.last_proxy_port}"
            )
        if not 0 < self.listen_port <= 65535:
            raise ValueError(f"Invalid listen port {self.listen_port}")
        if self.first_proxy_port <= self.listen_port <= self.last_proxy_port:
            raise ValueError(
                f"Listen port {self.listen_port} overlaps the proxy port range"
            )
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        if self.maintenance_interval_s <= 0:
            raise ValueError("maintenance_interval_s must be positive")


def load_config(config_path: Optional[str] = None) -> RelayConfig:
    """
    Load relay configuration from file or environment.

    Priority:
        1. Environment variables (GAMERELAY_*)
        2. Config file (explicit path, $GAMERELAY_CONFIG, /etc/gamerelay/gamerelay.yaml)
        3. Default values

    Args:
        config_path: Optional path to config file

    Returns:
        RelayConfig instance
    """
    config = RelayConfig()

    config_paths = [
        config_path,
        os.environ.get("GAMERELAY_CONFIG"),
        "/etc/gamerelay/gamerelay.yaml",
        str(Path.home() / ".config/gamerelay/gamerelay.yaml"),
    ]

    for path in config_paths:
        if path and os.path.exists(path):
            with open(path, "r") as f:
                data = yaml.safe_load(f)
                if data:
                    _apply_config_data(config, data)
            break

    _apply_env_overrides(config)
    config.validate()

    return config


def _apply_config_data(config: RelayConfig, data: Dict) -> None:
    """Apply configuration data from dict to config object."""
    for key in ("listen_ip", "proxy_ip"):
        if key in data:
            setattr(config, key, data[key])

    for key in ("listen_port", "first_proxy_port", "last_proxy_port", "buffer_size",
                "event_queue_size", "player_timeout_s", "maintenance_interval_s"):
        if key in data:
            setattr(config, key, int(data[key]))

    if "debug" in data:
        config.debug = bool(data["debug"])

    if "logging" in data:
        log = data["logging"] or {}
        config.logging.level = log.get("level", config.logging.level)
        config.logging.file = log.get("file", config.logging.file)
        config.logging.max_size_mb = log.get("max_size_mb", config.logging.max_size_mb)
        config.logging.backup_count = log.get("backup_count", config.logging.backup_count)


def _apply_env_overrides(config: RelayConfig) -> None:
    """Apply environment variable overrides."""
    if os.environ.get("GAMERELAY_LISTEN_IP"):
        config.listen_ip = os.environ["GAMERELAY_LISTEN_IP"]
    if os.environ.get("GAMERELAY_LISTEN_PORT"):
        config.listen_port = int(os.environ["GAMERELAY_LISTEN_PORT"])
    if os.environ.get("GAMERELAY_PROXY_IP"):
        config.proxy_ip = os.environ["GAMERELAY_PROXY_IP"]
    if os.environ.get("GAMERELAY_FIRST_PROXY_PORT"):
        config.first_proxy_port = int(os.environ["GAMERELAY_FIRST_PROXY_PORT"])
    if os.environ.get("GAMERELAY_LAST_PROXY_PORT"):
        config.last_proxy_port = int(os.environ["GAMERELAY_LAST_PROXY_PORT"])
    if os.environ.get("GAMERELAY_PLAYER_TIMEOUT"):
        config.player_timeout_s = int(os.environ["GAMERELAY_PLAYER_TIMEOUT"])
    if os.environ.get("GAMERELAY_DEBUG"):
        config.debug = os.environ["GAMERELAY_DEBUG"].lower() == "true"
    if os.environ.get("GAMERELAY_LOG_LEVEL"):
        config.logging.level = os.environ["GAMERELAY_LOG_LEVEL"].upper()
    if os.environ.get("GAMERELAY_LOG_FILE"):
        config.logging.file = os.environ["GAMERELAY_LOG_FILE"]
