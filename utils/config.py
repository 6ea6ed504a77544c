"""
Configuration utilities for the agent daemon
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional

from agentd.models import SpawnOptions
from agentd.terminal_agent import AgentSettings, default_shell

logger = logging.getLogger("agentd.config")

CONFIG_DIR = Path.home() / ".agentd"
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULT_CONFIG = {
    "max_concurrent_agents": 5,
    "shell": None,  # falls back to $SHELL
    "cli_command": "claude",
    "observer_model": "claude-3-5-haiku-20241022",
    "terminal_cols": 120,
    "terminal_rows": 30,
    "buffer_limit": 50000,
    "poll_interval": 2.0,
    "ready_check_interval": 1.0,
    "startup_timeout": 30.0,
    "idle_poll_threshold": 15,
    "default_timeout": 300.0,
    "auto_approve": True,
    "stream_output": True,
    "cleanup_interval": 300.0,
    "cleanup_max_age": 3600.0,
    "heartbeat_interval": 30.0,
    "log_level": "INFO",
}

INT_KEYS = {"max_concurrent_agents", "terminal_cols", "terminal_rows", "buffer_limit", "idle_poll_threshold"}
FLOAT_KEYS = {
    "poll_interval", "ready_check_interval", "startup_timeout", "default_timeout",
    "cleanup_interval", "cleanup_max_age", "heartbeat_interval",
}
BOOL_KEYS = {"auto_approve", "stream_output"}


def get_config_path() -> Path:
    """Config file location, overridable with AGENTD_CONFIG"""
    override = os.getenv("AGENTD_CONFIG")
    return Path(override) if override else CONFIG_FILE


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from file, merged over the defaults"""
    config_path = Path(config_file) if config_file else get_config_path()

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                config = json.load(f)
            if not isinstance(config, dict):
                raise ValueError("top-level value must be an object")

            merged_config = DEFAULT_CONFIG.copy()
            merged_config.update(config)
            return merged_config

        except (json.JSONDecodeError, ValueError, IOError) as e:
            logger.warning(f"Could not load config file {config_path}: {e}")
            return DEFAULT_CONFIG.copy()

    return DEFAULT_CONFIG.copy()


def save_config(config: Dict[str, Any], config_file: Optional[str] = None) -> bool:
    """Save configuration to file"""
    try:
        config_path = Path(config_file) if config_file else get_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            json.dump(config, f, indent=2)

        logger.info(f"Saved config to {config_path}")
        return True

    except IOError as e:
        logger.error(f"Could not save config file {config_file}: {e}")
        return False


def get_env_config() -> Dict[str, Any]:
    """Get configuration from AGENTD_* environment variables"""
    env_config = {}

    for config_key in DEFAULT_CONFIG:
        value = os.getenv(f"AGENTD_{config_key.upper()}")
        if value is None:
            continue

        if config_key in INT_KEYS:
            try:
                env_config[config_key] = int(value)
            except ValueError:
                logger.warning(f"Ignoring non-integer AGENTD_{config_key.upper()}={value!r}")
        elif config_key in FLOAT_KEYS:
            try:
                env_config[config_key] = float(value)
            except ValueError:
                logger.warning(f"Ignoring non-numeric AGENTD_{config_key.upper()}={value!r}")
        elif config_key in BOOL_KEYS:
            env_config[config_key] = value.lower() in ("true", "1", "yes", "on")
        else:
            env_config[config_key] = value

    return env_config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple configuration dictionaries"""
    merged = {}

    for config in configs:
        if config:
            merged.update(config)

    return merged


def get_effective_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Defaults, then the config file, then the environment"""
    return merge_configs(load_config(config_file), get_env_config())


def agent_settings_from_config(config: Dict[str, Any]) -> AgentSettings:
    return AgentSettings(
        shell=config.get("shell") or default_shell(),
        cli_command=config["cli_command"],
        terminal_cols=config["terminal_cols"],
        terminal_rows=config["terminal_rows"],
        buffer_limit=config["buffer_limit"],
        poll_interval=config["poll_interval"],
        ready_check_interval=config["ready_check_interval"],
        startup_timeout=config["startup_timeout"],
        idle_poll_threshold=config["idle_poll_threshold"],
    )


def spawn_options_from_config(config: Dict[str, Any]) -> SpawnOptions:
    return SpawnOptions(
        auto_approve=config["auto_approve"],
        timeout=config["default_timeout"],
        stream_output=config["stream_output"],
    )
