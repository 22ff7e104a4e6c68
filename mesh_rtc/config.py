"""Configuration management for mesh-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESH_RTC_SIGNALING_WS, MESH_RTC_OFFER_DELAY,
   MESH_RTC_ICE_RESTART_MAX_ATTEMPTS)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- mesh-rtc.toml in current working directory
- ~/.mesh-rtc/config.toml

Environment selection via MESH_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.development]
    signaling_websocket = "ws://localhost:8080"

    [ice]
    servers = [
        { urls = ["stun:stun.l.google.com:19302"] },
        { urls = ["turn:turn.example.org:3478"], username = "u", credential = "p" },
    ]

    [session]
    offer_delay = 1.0
    ice_restart_max_attempts = 3
    ice_restart_backoff = 1.0
    ice_restart_backoff_max = 30.0
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger


@dataclass
class IceServerConfig:
    """Configuration for a single STUN/TURN server.

    Attributes:
        urls: One or more ``stun:`` / ``turn:`` URLs.
        username: TURN username, if any.
        credential: TURN credential, if any.
    """

    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate server configuration after initialization."""
        if isinstance(self.urls, str):
            self.urls = [self.urls]
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    @classmethod
    def from_dict(cls, data: dict) -> "IceServerConfig":
        return cls(
            urls=data.get("urls", []),
            username=data.get("username"),
            credential=data.get("credential"),
        )

    def to_dict(self) -> dict:
        data = {"urls": list(self.urls)}
        if self.username is not None:
            data["username"] = self.username
        if self.credential is not None:
            data["credential"] = self.credential
        return data


@dataclass
class SessionPolicy:
    """Per-session negotiation and recovery policy.

    Attributes:
        offer_delay: Seconds to wait before offering to a newly joined peer.
        ice_restart_max_attempts: Restarts attempted before a failed session
            is abandoned. Zero disables ICE restart.
        ice_restart_backoff: Delay before the first restart, in seconds.
            Doubles with each further attempt.
        ice_restart_backoff_max: Upper bound on the restart delay.
    """

    offer_delay: float = 1.0
    ice_restart_max_attempts: int = 3
    ice_restart_backoff: float = 1.0
    ice_restart_backoff_max: float = 30.0

    def __post_init__(self):
        if self.offer_delay < 0:
            raise ValueError("offer_delay cannot be negative")
        if self.ice_restart_max_attempts < 0:
            raise ValueError("ice_restart_max_attempts cannot be negative")
        if self.ice_restart_backoff < 0 or self.ice_restart_backoff_max < 0:
            raise ValueError("ICE restart backoff cannot be negative")

    def restart_delay(self, attempt: int) -> float:
        """Delay before restart number ``attempt`` (0-based)."""
        return min(self.ice_restart_backoff * (2**attempt), self.ice_restart_backoff_max)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionPolicy":
        """Create SessionPolicy from TOML [session] dictionary.

        Unknown keys are ignored with a warning.
        """
        known = {"offer_delay", "ice_restart_max_attempts", "ice_restart_backoff", "ice_restart_backoff_max"}
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown [session] setting: {key}")
        return cls(**{k: v for k, v in data.items() if k in known})


# Default production signaling server URL
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

DEFAULT_ICE_SERVERS = [
    IceServerConfig(urls=["stun:stun.l.google.com:19302"]),
    IceServerConfig(urls=["stun:stun1.l.google.com:19302"]),
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for mesh-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.environment: str = "production"
        self.ice_servers: List[IceServerConfig] = list(DEFAULT_ICE_SERVERS)
        self.session: SessionPolicy = SessionPolicy()
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
        """Get the current environment from MESH_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESH_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESH_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. mesh-rtc.toml in current working directory
        2. ~/.mesh-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "mesh-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".mesh-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

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

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )
        elif not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )

        servers = self._config_data.get("ice", {}).get("servers")
        if servers is not None:
            ice_servers = []
            for entry in servers:
                try:
                    ice_servers.append(IceServerConfig.from_dict(entry))
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping invalid ICE server entry {entry}: {e}")
            self.ice_servers = ice_servers

        session_data = self._config_data.get("session")
        if session_data:
            try:
                self.session = SessionPolicy.from_dict(session_data)
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid [session] settings in {config_file}: {e}")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("MESH_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        delay_override = os.getenv("MESH_RTC_OFFER_DELAY")
        if delay_override:
            try:
                self.session.offer_delay = max(0.0, float(delay_override))
                logger.info(f"Overriding offer_delay from env: {self.session.offer_delay}")
            except ValueError:
                logger.warning(f"Ignoring invalid MESH_RTC_OFFER_DELAY: {delay_override}")

        attempts_override = os.getenv("MESH_RTC_ICE_RESTART_MAX_ATTEMPTS")
        if attempts_override:
            try:
                self.session.ice_restart_max_attempts = max(0, int(attempts_override))
                logger.info(
                    f"Overriding ice_restart_max_attempts from env: "
                    f"{self.session.ice_restart_max_attempts}"
                )
            except ValueError:
                logger.warning(
                    f"Ignoring invalid MESH_RTC_ICE_RESTART_MAX_ATTEMPTS: {attempts_override}"
                )

    def get_websocket_url(self, port: int = 8080) -> str:
        """Get the WebSocket signaling server URL.

        Args:
            port: Port number to use if not specified in URL (default: 8080).

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if ":" not in url.split("//")[-1]:
            url = f"{url}:{port}"
        return url

    def to_dict(self) -> dict:
        """Resolved configuration as a plain dictionary."""
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            "signaling_websocket": self.signaling_websocket,
            "ice_servers": [server.to_dict() for server in self.ice_servers],
            "session": {
                "offer_delay": self.session.offer_delay,
                "ice_restart_max_attempts": self.session.ice_restart_max_attempts,
                "ice_restart_backoff": self.session.ice_restart_backoff,
                "ice_restart_backoff_max": self.session.ice_restart_backoff_max,
            },
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
