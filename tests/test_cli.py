"""
Tests for the agentd command line interface
"""

import asyncio
import io
import json
import pytest
from unittest.mock import MagicMock

import click
from click.testing import CliRunner
from rich.console import Console

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import importlib
main_cli_module = importlib.import_module("cli.main_cli")
from agentd.agent_pool import AgentPool
from agentd.events import StatusEvent
from agentd.models import AgentStatus
from cli.main_cli import main_cli
from tests.fakes import FakePtySpawner, ScriptedClassifier, fast_settings, obs


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_concurrent_agents": 2, "log_level": "WARNING"}))
    return str(path)


def fake_pool_builder(after):
    def build(config, model=None):
        return AgentPool(
            max_concurrent_agents=config["max_concurrent_agents"],
            classifier=ScriptedClassifier(after=after),
            pty_spawner=FakePtySpawner(responses={"claude\r": "> "}),
            settings=fast_settings(),
        )
    return build


@pytest.mark.asyncio
async def test_approval_prompt_task_is_tracked(monkeypatch):
    monkeypatch.setattr(main_cli_module.click, "confirm", lambda *args, **kwargs: False)
    pool = MagicMock()
    prompts = set()
    event = StatusEvent("a1", AgentStatus.NEEDS_APPROVAL, "Allow edit?")

    task = main_cli_module._prompt_for_approval(pool, event, Console(file=io.StringIO()), prompts)

    assert task in prompts
    await task
    await asyncio.sleep(0)
    pool.approve.assert_called_once_with("a1", False)
    assert prompts == set()


@pytest.mark.asyncio
async def test_failed_approval_prompt_is_reported(monkeypatch):
    def broken_confirm(*args, **kwargs):
        raise click.Abort()

    monkeypatch.setattr(main_cli_module.click, "confirm", broken_confirm)
    output = io.StringIO()
    prompts = set()
    event = StatusEvent("a1", AgentStatus.NEEDS_APPROVAL, "Allow edit?")

    task = main_cli_module._prompt_for_approval(MagicMock(), event, Console(file=output), prompts)
    await asyncio.gather(task, return_exceptions=True)
    await asyncio.sleep(0)

    assert prompts == set()
    assert "Approval prompt failed" in output.getvalue()


def test_other_statuses_do_not_prompt():
    prompts = set()
    event = StatusEvent("a1", AgentStatus.RUNNING, "Working...")

    assert main_cli_module._prompt_for_approval(MagicMock(), event, Console(file=io.StringIO()), prompts) is None
    assert prompts == set()


def test_help_lists_commands(cli_runner):
    result = cli_runner.invoke(main_cli, ["--help"])

    assert result.exit_code == 0
    for command in ("run", "serve", "config", "init-config"):
        assert command in result.output


def test_config_shows_effective_values(cli_runner, config_file):
    result = cli_runner.invoke(main_cli, ["--config-file", config_file, "config"])

    assert result.exit_code == 0
    assert "max_concurrent_agents" in result.output
    assert "observer_model" in result.output


def test_init_config_writes_defaults(cli_runner, tmp_path):
    target = tmp_path / "agentd.json"

    result = cli_runner.invoke(main_cli, ["init-config", str(target)])

    assert result.exit_code == 0
    assert json.loads(target.read_text())["cli_command"] == "claude"


def test_init_config_refuses_to_overwrite(cli_runner, config_file):
    result = cli_runner.invoke(main_cli, ["init-config", config_file])

    assert result.exit_code == 1
    assert json.loads(Path(config_file).read_text())["max_concurrent_agents"] == 2


def test_run_rejects_missing_working_directory(cli_runner, config_file, tmp_path):
    result = cli_runner.invoke(main_cli, [
        "--config-file", config_file, "run", "list files", "--working-dir", str(tmp_path / "nope"),
    ])

    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_run_completed_session(cli_runner, config_file, tmp_path, monkeypatch):
    monkeypatch.setattr(main_cli_module, "build_pool", fake_pool_builder(
        obs("completed", "report_complete", summary="Listed 2 files"),
    ))

    result = cli_runner.invoke(main_cli, [
        "--config-file", config_file, "run", "list files", "--working-dir", str(tmp_path),
    ])

    assert result.exit_code == 0
    assert "completed" in result.output
    assert "Listed 2 files" in result.output


def test_run_failed_session_exits_nonzero(cli_runner, config_file, tmp_path, monkeypatch):
    monkeypatch.setattr(main_cli_module, "build_pool", fake_pool_builder(
        obs("error", "report_error", error="Build failed"),
    ))

    result = cli_runner.invoke(main_cli, [
        "--config-file", config_file, "run", "build it", "-w", str(tmp_path), "--quiet",
    ])

    assert result.exit_code == 1
    assert "Build failed" in result.output
