"""Configuration management for duel-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (DUEL_RTC_RELAY_URL, DUEL_RTC_ICE_SERVERS, DUEL_RTC_DISPLAY_NAME)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- duel-rtc.toml in current working directory
- ~/.duel-rtc/config.toml

Environment selection via DUEL_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example duel-rtc.toml::

    [environments.development]
    relay_url = "ws://localhost:8765"
    ice_servers = ["stun:stun.l.google.com:19302"]
    display_name = "Yugi"
"""

import os
import tomllib
from pathlib import Path
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
from loguru import logger

# Default relay and STUN servers
DEFAULT_RELAY_URL = "ws://localhost:8765"
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]
DEFAULT_DISPLAY_NAME = "Duelist"
DEFAULT_MAX_DESCRIPTION_FAILURES = 2

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for duel-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.relay_url: str = DEFAULT_RELAY_URL
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.display_name: str = DEFAULT_DISPLAY_NAME
        self.max_description_failures: int = DEFAULT_MAX_DESCRIPTION_FAILURES
        self.environment: str = "production"
        self.config_file: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from DUEL_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("DUEL_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid DUEL_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _home_config_path(self) -> Path:
        return Path.home() / ".duel-rtc" / "config.toml"

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. duel-rtc.toml in current working directory
        2. ~/.duel-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "duel-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = self._home_config_path()
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Keys under ``[default]`` apply to every environment; keys under
        ``[environments.<name>]`` override them for the active environment.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.config_file = config_file
        self._apply_section(self._config_data.get("default", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}"
            )
            return
        self._apply_section(env_config)

    def _apply_section(self, section: dict) -> None:
        if "relay_url" in section:
            self.relay_url = section["relay_url"]
            logger.debug(f"Loaded relay_url from config: {self.relay_url}")

        if "ice_servers" in section:
            servers = section["ice_servers"]
            if isinstance(servers, list) and all(isinstance(s, str) for s in servers):
                self.ice_servers = servers
            else:
                logger.warning(f"Ignoring invalid ice_servers entry: {servers!r}")

        if "display_name" in section:
            self.display_name = section["display_name"]

        if "max_description_failures" in section:
            value = section["max_description_failures"]
            if isinstance(value, int) and value > 0:
                self.max_description_failures = value
            else:
                logger.warning(f"Ignoring invalid max_description_failures: {value!r}")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        relay_override = os.getenv("DUEL_RTC_RELAY_URL")
        if relay_override:
            self.relay_url = relay_override
            logger.info(f"Overriding relay_url from env: {self.relay_url}")

        ice_override = os.getenv("DUEL_RTC_ICE_SERVERS")
        if ice_override is not None:
            self.ice_servers = [s.strip() for s in ice_override.split(",") if s.strip()]
            logger.info(f"Overriding ice_servers from env: {self.ice_servers}")

        name_override = os.getenv("DUEL_RTC_DISPLAY_NAME")
        if name_override:
            self.display_name = name_override

    def get_rtc_configuration(self) -> RTCConfiguration:
        """Build the aiortc configuration from the configured ICE servers.

        Returns:
            RTCConfiguration with one RTCIceServer per configured URL.
        """
        return RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.ice_servers]
        )

    def as_dict(self) -> dict:
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            "relay_url": self.relay_url,
            "ice_servers": list(self.ice_servers),
            "display_name": self.display_name,
            "max_description_failures": self.max_description_failures,
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
