"""
Tests for configuration and logging utilities
"""

import json
import logging
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.config import (
    DEFAULT_CONFIG,
    agent_settings_from_config,
    get_effective_config,
    get_env_config,
    load_config,
    merge_configs,
    save_config,
    spawn_options_from_config,
)
from utils.logging import setup_logging


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep AGENTD_* variables from the developer's shell out of the tests"""
    import os
    for key in list(os.environ):
        if key.startswith("AGENTD_"):
            monkeypatch.delenv(key)


def test_load_missing_file_returns_defaults(tmp_path):
    assert load_config(str(tmp_path / "missing.json")) == DEFAULT_CONFIG


def test_load_merges_over_defaults(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"max_concurrent_agents": 2, "cli_command": "aider"}))

    config = load_config(str(config_file))

    assert config["max_concurrent_agents"] == 2
    assert config["cli_command"] == "aider"
    assert config["poll_interval"] == DEFAULT_CONFIG["poll_interval"]


@pytest.mark.parametrize("content", ["{broken", "[1, 2, 3]"])
def test_load_invalid_file_returns_defaults(tmp_path, content):
    config_file = tmp_path / "config.json"
    config_file.write_text(content)

    assert load_config(str(config_file)) == DEFAULT_CONFIG


def test_save_then_load(tmp_path):
    config_file = tmp_path / "nested" / "config.json"

    assert save_config({"log_level": "DEBUG"}, str(config_file)) is True
    assert load_config(str(config_file))["log_level"] == "DEBUG"


def test_config_path_from_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "custom.json"
    config_file.write_text(json.dumps({"terminal_cols": 200}))
    monkeypatch.setenv("AGENTD_CONFIG", str(config_file))

    assert load_config()["terminal_cols"] == 200


def test_env_values_are_coerced(monkeypatch):
    monkeypatch.setenv("AGENTD_MAX_CONCURRENT_AGENTS", "3")
    monkeypatch.setenv("AGENTD_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("AGENTD_AUTO_APPROVE", "false")
    monkeypatch.setenv("AGENTD_OBSERVER_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("AGENTD_TERMINAL_ROWS", "lots")

    env = get_env_config()

    assert env == {
        "max_concurrent_agents": 3,
        "poll_interval": 0.5,
        "auto_approve": False,
        "observer_model": "gpt-4o-mini",
    }


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"max_concurrent_agents": 2}))
    monkeypatch.setenv("AGENTD_MAX_CONCURRENT_AGENTS", "8")

    assert get_effective_config(str(config_file))["max_concurrent_agents"] == 8


def test_merge_configs_later_wins():
    assert merge_configs({"a": 1, "b": 2}, None, {"b": 3}) == {"a": 1, "b": 3}


def test_agent_settings_from_config(monkeypatch):
    monkeypatch.setenv("SHELL", "/bin/zsh")
    config = dict(DEFAULT_CONFIG, terminal_cols=100, idle_poll_threshold=4)

    settings = agent_settings_from_config(config)

    assert settings.shell == "/bin/zsh"
    assert settings.cli_command == "claude"
    assert settings.terminal_cols == 100
    assert settings.idle_poll_threshold == 4
    assert settings.poll_interval == 2.0


def test_spawn_options_from_config():
    config = dict(DEFAULT_CONFIG, default_timeout=60.0, auto_approve=False)

    options = spawn_options_from_config(config)

    assert options.timeout == 60.0
    assert options.auto_approve is False
    assert options.stream_output is True


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "agentd.log"

    logger = setup_logging("DEBUG", log_file=str(log_file), console_output=False)
    logging.getLogger("agentd.test").info("hello from test")
    for handler in logger.handlers:
        handler.flush()

    assert logger.level == logging.DEBUG
    assert "hello from test" in log_file.read_text()

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_setup_logging_unknown_level_falls_back_to_info():
    logger = setup_logging("LOUD", console_output=False)

    assert logger.level == logging.INFO
    assert any(isinstance(handler, logging.NullHandler) for handler in logger.handlers)

    logger.handlers.clear()
