"""Configuration loading for netcurfew.

Loads settings from a TOML config file; UNIFI_* environment variables and
CLI options override it.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli

from netcurfew.controller.unifi import UnifiConfig
from netcurfew.notifiers.slack import SlackConfig

logger = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "UNIFI_HOST": "host",
    "UNIFI_PORT": "port",
    "UNIFI_USERNAME": "username",
    "UNIFI_PASSWORD": "password",
    "UNIFI_SITE": "site",
}


def get_config_search_paths() -> list[Path]:
    """Get list of paths to search for config file."""
    return [
        Path("netcurfew.toml"),  # Current directory
        Path.home() / ".config" / "netcurfew" / "netcurfew.toml",
        Path("/etc/netcurfew/netcurfew.toml"),
    ]


def find_config_file() -> Optional[Path]:
    """Find the first existing config file."""
    for path in get_config_search_paths():
        if path.exists():
            return path
    return None


@dataclass
class Config:
    """Loaded configuration with all sections."""

    # Database
    db_path: Path = field(default_factory=lambda: Path.home() / ".local" / "share" / "netcurfew" / "netcurfew.db")

    # Controller
    controller: UnifiConfig = field(default_factory=UnifiConfig)

    # Engine
    tick_interval: float = 60.0
    max_attempts: int = 2
    backoff_base: float = 1.0

    # Slack
    slack_enabled: bool = False
    slack_webhook_url: Optional[str] = None
    slack_notify_activity: bool = False
    slack_dedup_window: float = 3600.0

    def slack_config(self) -> Optional[SlackConfig]:
        """Slack settings, or None when notifications are off."""
        if not self.slack_enabled or not self.slack_webhook_url:
            return None
        return SlackConfig(
            webhook_url=self.slack_webhook_url,
            notify_activity=self.slack_notify_activity,
            dedup_window=self.slack_dedup_window,
        )


def apply_env_overrides(config: Config, environ: Optional[dict[str, str]] = None) -> Config:
    """Override controller settings from UNIFI_* environment variables."""
    environ = os.environ if environ is None else environ
    for var, attr in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        if attr == "port":
            try:
                config.controller.port = int(value)
            except ValueError:
                logger.warning(f"Ignoring {var}={value!r}: not a port number")
            continue
        setattr(config.controller, attr, value)
    return config


def load_config(config_path: Optional[Path] = None, environ: Optional[dict[str, str]] = None) -> Config:
    """Load configuration from TOML file.

    Args:
        config_path: Explicit path to config file, or None to search
        environ: Environment to read UNIFI_* overrides from (default os.environ)

    Returns:
        Config object with loaded values
    """
    config = Config()

    # Find config file
    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        logger.debug("No config file found, using defaults")
        return apply_env_overrides(config, environ)

    logger.info(f"Loading config from {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config file: {e}")
        return apply_env_overrides(config, environ)

    # Database section
    if "database" in data:
        db = data["database"]
        if "path" in db:
            config.db_path = Path(db["path"]).expanduser()

    # Controller section
    if "controller" in data:
        ctrl = data["controller"]
        for key in ("host", "username", "password", "site"):
            if key in ctrl:
                setattr(config.controller, key, ctrl[key])
        if "port" in ctrl:
            config.controller.port = int(ctrl["port"])
        if "verify_ssl" in ctrl:
            config.controller.verify_ssl = bool(ctrl["verify_ssl"])
        if "unifi_os" in ctrl:
            config.controller.unifi_os = bool(ctrl["unifi_os"])
        if "timeout" in ctrl:
            config.controller.timeout = float(ctrl["timeout"])

    # Engine section
    if "engine" in data:
        engine = data["engine"]
        if "tick_interval" in engine:
            config.tick_interval = float(engine["tick_interval"])
        if "max_attempts" in engine:
            config.max_attempts = int(engine["max_attempts"])
        if "backoff_base" in engine:
            config.backoff_base = float(engine["backoff_base"])

    # Slack section
    if "slack" in data:
        slack = data["slack"]
        if "enabled" in slack:
            config.slack_enabled = slack["enabled"]
        if "webhook_url" in slack:
            config.slack_webhook_url = slack["webhook_url"]
        if "notify_activity" in slack:
            config.slack_notify_activity = slack["notify_activity"]
        if "dedup_window" in slack:
            config.slack_dedup_window = float(slack["dedup_window"])

    return apply_env_overrides(config, environ)


def merge_cli_options(config: Config, **cli_options: Any) -> Config:
    """Merge CLI options into config (CLI takes precedence).

    Args:
        config: Base config from file
        **cli_options: CLI option overrides (None values are ignored)

    Returns:
        Config with CLI overrides applied
    """
    if cli_options.get("db"):
        config.db_path = Path(cli_options["db"]).expanduser()
    if cli_options.get("tick_interval") is not None:
        config.tick_interval = float(cli_options["tick_interval"])
    return config
