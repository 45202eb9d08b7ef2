"""
Configuration loader for Desk Relay.
Supports YAML config files with sensible defaults.
"""

import copy
import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
import yaml


logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_CONFIG = {
    "server": {
        "port": 8080,
        "host": "0.0.0.0",
    },
    "stream": {
        "enabled": True,
        "fps": 30,
    },
    "capture": {
        "quality": 30,
        "scale": 1.0,
        "monitor": 1,
        "use_turbojpeg": True,
    },
    "security": {
        "max_attempts": 5,
        "lockout_seconds": 300,
        "session_ttl_hours": 24,
        "sweep_interval_minutes": 60,
    },
    "performance": {
        "max_message_bytes": 10 * 1024 * 1024,
        "ping_interval": 20,
    },
    "logging": {
        "level": "INFO",
    },
}


def get_config_paths() -> list[Path]:
    """Get list of possible config file locations (in priority order)."""
    paths = []
    
    # 1. Current directory
    paths.append(Path.cwd() / "config.yaml")
    
    # 2. XDG config directory
    xdg_config = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg_config:
        paths.append(Path(xdg_config) / "desk-relay" / "config.yaml")
    
    # 3. ~/.config/desk-relay/
    paths.append(Path.home() / ".config" / "desk-relay" / "config.yaml")
    
    # 4. ~/.desk-relay.yaml
    paths.append(Path.home() / ".desk-relay.yaml")
    
    return paths


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    
    return result


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from file.
    
    Args:
        config_path: Explicit config file path. If None, searches default locations.
    
    Returns:
        Configuration dictionary with defaults filled in.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    
    if config_path:
        paths = [config_path]
    else:
        paths = get_config_paths()
    
    # First readable file wins
    for path in paths:
        if path.exists():
            try:
                with open(path, "r") as f:
                    file_config = yaml.safe_load(f) or {}
                config = deep_merge(config, file_config)
                logger.debug("Loaded config from %s", path)
                break
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load config from %s: %s", path, e)
    
    return config


def get_local_ip() -> str:
    """
    Get the local network IP address.
    
    Prefers 192.168.x.x, then 10.x.x.x, then any other non-loopback IPv4.
    
    Returns:
        Local IP address string (e.g., "192.168.1.100")
    """
    candidates = []
    try:
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    candidates.append(addr.address)
    except OSError as e:
        logger.debug("Interface lookup failed: %s", e)
    
    for prefix in ("192.168.", "10."):
        for ip in candidates:
            if ip.startswith(prefix):
                return ip
    
    if candidates:
        return candidates[0]
    
    # Final fallback
    return "127.0.0.1"


class Config:
    """Configuration wrapper with easy access to settings."""
    
    def __init__(self, config_path: Optional[Path] = None):
        self._config = load_config(config_path)
        
        # Resolve "auto" host
        if self._config["server"]["host"] == "auto":
            self._config["server"]["host"] = get_local_ip()
    
    @property
    def host(self) -> str:
        return self._config["server"]["host"]
    
    @property
    def port(self) -> int:
        return self._config["server"]["port"]
    
    @property
    def ws_port(self) -> int:
        """Broker WebSocket port (always HTTP port + 1)."""
        return self.port + 1
    
    @property
    def stream_enabled(self) -> bool:
        return self._config["stream"]["enabled"]
    
    @property
    def fps(self) -> int:
        return self._config["stream"]["fps"]
    
    @property
    def frame_interval(self) -> float:
        """Get frame interval in seconds based on FPS."""
        return 1.0 / max(1, self.fps)
    
    @property
    def quality(self) -> int:
        return self._config["capture"]["quality"]
    
    @property
    def scale(self) -> float:
        return self._config["capture"]["scale"]
    
    @property
    def monitor(self) -> int:
        return self._config["capture"]["monitor"]
    
    @property
    def use_turbojpeg(self) -> bool:
        return self._config["capture"]["use_turbojpeg"]
    
    @property
    def max_attempts(self) -> int:
        return self._config["security"]["max_attempts"]
    
    @property
    def lockout_seconds(self) -> float:
        return self._config["security"]["lockout_seconds"]
    
    @property
    def session_ttl(self) -> float:
        """Session lifetime in seconds."""
        return self._config["security"]["session_ttl_hours"] * 3600
    
    @property
    def sweep_interval(self) -> float:
        """Session sweep interval in seconds."""
        return self._config["security"]["sweep_interval_minutes"] * 60
    
    @property
    def max_message_bytes(self) -> int:
        return self._config["performance"]["max_message_bytes"]
    
    @property
    def ping_interval(self) -> Optional[float]:
        return self._config["performance"]["ping_interval"] or None
    
    @property
    def log_level(self) -> str:
        return str(self._config["logging"]["level"]).upper()
    
    def set(self, section: str, key: str, value: Any) -> None:
        """Override a single setting (used for CLI flags)."""
        self._config.setdefault(section, {})[key] = value
    
    def to_dict(self) -> Dict[str, Any]:
        """Return config as dictionary."""
        return copy.deepcopy(self._config)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = Config(config_path)
    return _config
