"""
Command line interface for the agent daemon
"""

import asyncio
import json
import os
import sys
import uuid
from typing import Any, Dict, Optional, Set

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentd.agent_pool import AgentPool
from agentd.events import CompletionEvent, LogEvent, StatusEvent
from agentd.models import AgentResult, AgentStatus, LogType
from agentd.observer import LLMStateClassifier
from agentd.stdio_server import StdioAgentServer
from utils.config import (
    DEFAULT_CONFIG,
    agent_settings_from_config,
    get_config_path,
    get_effective_config,
    save_config,
    spawn_options_from_config,
)
from utils.logging import setup_logging, get_default_log_file

STATUS_STYLES = {
    AgentStatus.PENDING: "dim",
    AgentStatus.INITIALIZING: "yellow",
    AgentStatus.RUNNING: "blue",
    AgentStatus.NEEDS_APPROVAL: "magenta",
    AgentStatus.COMPLETED: "green",
    AgentStatus.FAILED: "red",
    AgentStatus.CANCELLED: "yellow",
}


def build_pool(config: Dict[str, Any], model: Optional[str] = None) -> AgentPool:
    """Compose a pool from the effective configuration"""
    return AgentPool(
        max_concurrent_agents=config["max_concurrent_agents"],
        classifier=LLMStateClassifier(model=model or config["observer_model"]),
        settings=agent_settings_from_config(config),
    )


@click.group()
@click.version_option(version="0.1.0")
@click.option('--config-file', '-c', default=None, help='Configuration file (default: ~/.agentd/config.json)')
@click.pass_context
def main_cli(ctx, config_file):
    """agentd - supervise interactive coding CLIs through pseudo-terminals"""
    ctx.ensure_object(dict)
    ctx.obj['config'] = get_effective_config(config_file)


@main_cli.command()
@click.argument('goal')
@click.option('--working-dir', '-w', default=None, help='Working directory for the agent')
@click.option('--timeout', '-t', type=float, default=None, help='Overall timeout in seconds')
@click.option('--no-auto-approve', is_flag=True, help='Ask before approving permission prompts')
@click.option('--quiet', '-q', is_flag=True, help='Do not echo terminal output')
@click.option('--model', '-m', default=None, help='Observer model (LiteLLM name)')
@click.option('--log-file', default=None, help='Also write logs to this file')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def run(ctx, goal, working_dir, timeout, no_auto_approve, quiet, model, log_file, verbose):
    """Run a single supervised session for GOAL and exit"""
    console = Console()
    config = ctx.obj['config']

    if working_dir:
        working_dir = os.path.abspath(working_dir)
        if not os.path.isdir(working_dir):
            console.print(f"[red]Error: Working directory does not exist: {working_dir}[/red]")
            sys.exit(1)
    else:
        working_dir = os.getcwd()

    setup_logging("DEBUG" if verbose else config["log_level"],
                  log_file=log_file, console_output=verbose, stream=sys.stderr)

    options = spawn_options_from_config(config)
    if timeout is not None:
        options.timeout = timeout
    if no_auto_approve:
        options.auto_approve = False
    options.stream_output = not quiet

    console.print(Panel.fit(
        f"🎯 Goal: {goal}\n"
        f"Working Directory: {working_dir}\n"
        f"CLI: {config['cli_command']}\n"
        f"Observer: {model or config['observer_model']}\n"
        f"Timeout: {options.timeout:g}s  Auto-approve: {'ON' if options.auto_approve else 'OFF'}",
        title="agentd"
    ))

    try:
        result = asyncio.run(_run_single_agent(config, goal, working_dir, options, model, console))
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 Interrupted[/yellow]")
        sys.exit(130)

    _print_result(console, result)
    sys.exit(0 if result.status == AgentStatus.COMPLETED else 1)


async def _run_single_agent(config, goal, working_dir, options, model, console) -> AgentResult:
    pool = build_pool(config, model)
    agent_id = f"cli-{uuid.uuid4().hex[:8]}"
    done: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_log(event: LogEvent):
        if event.log.type == LogType.STDOUT:
            console.out(event.log.content, end="", highlight=False)
        elif event.log.type == LogType.STDERR:
            console.print(f"[red]{event.log.content}[/red]")

    def on_status(event: StatusEvent):
        style = STATUS_STYLES.get(event.status, "white")
        step = f" - {event.step}" if event.step else ""
        console.print(f"[{style}]📊 {event.status.value}{step}[/{style}]")

    def on_complete(event: CompletionEvent):
        if not done.done():
            done.set_result(event.result)

    pool.events.log.subscribe(on_log)
    pool.events.status.subscribe(on_status)
    pool.events.complete.subscribe(on_complete)

    if not options.auto_approve:
        console.print("[magenta]Approval prompts will be shown here; answer with y/n[/magenta]")
        prompts: Set[asyncio.Task] = set()
        pool.events.status.subscribe(lambda event: _prompt_for_approval(pool, event, console, prompts))

    spawned = pool.spawn(agent_id, "terminal", goal, working_dir, options)
    if not spawned.accepted:
        raise click.ClickException(spawned.error)

    try:
        return await done
    finally:
        await pool.shutdown()


def _prompt_for_approval(pool: AgentPool, event: StatusEvent, console: Console,
                         prompts: Set[asyncio.Task]) -> Optional[asyncio.Task]:
    if event.status != AgentStatus.NEEDS_APPROVAL:
        return None

    async def ask():
        answer = await asyncio.to_thread(click.confirm, f"Approve: {event.step or 'action'}?", default=True)
        pool.approve(event.agent_id, answer)

    task = asyncio.ensure_future(ask())
    prompts.add(task)
    task.add_done_callback(prompts.discard)
    task.add_done_callback(lambda t: _report_prompt_error(t, console))
    return task


def _report_prompt_error(task: asyncio.Task, console: Console):
    if not task.cancelled() and task.exception() is not None:
        console.print(f"[red]Approval prompt failed: {task.exception()}[/red]")


def _print_result(console: Console, result: AgentResult):
    table = Table(title="Session Result")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    style = STATUS_STYLES.get(result.status, "white")
    table.add_row("Agent", result.agent_id)
    table.add_row("Status", f"[{style}]{result.status.value}[/{style}]")
    table.add_row("Duration", f"{result.execution_time:.1f}s")
    if result.error:
        table.add_row("Error", f"[red]{result.error}[/red]")
    console.print(table)

    if result.result:
        console.print(Panel(result.result, title="Result"))


@main_cli.command()
@click.option('--max-agents', type=int, default=None, help='Maximum concurrent agents')
@click.option('--all-logs', is_flag=True, help='Forward terminal output, not only status logs')
@click.option('--log-file', default=None, help='Log file (default: logs/agentd_<timestamp>.log)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def serve(ctx, max_agents, all_logs, log_file, verbose):
    """Serve JSON-line controller commands on stdin/stdout"""
    config = dict(ctx.obj['config'])
    if max_agents is not None:
        config["max_concurrent_agents"] = max_agents

    # stdout carries protocol messages only
    setup_logging("DEBUG" if verbose else config["log_level"],
                  log_file=log_file or get_default_log_file(), stream=sys.stderr)

    async def _serve():
        server = StdioAgentServer(
            pool=build_pool(config),
            default_options=spawn_options_from_config(config),
            forward_all_logs=all_logs,
            cleanup_interval=config["cleanup_interval"],
            cleanup_max_age=config["cleanup_max_age"],
            heartbeat_interval=config["heartbeat_interval"],
        )
        await server.start()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass


@main_cli.command(name='config')
@click.pass_context
def show_config(ctx):
    """Show the effective configuration"""
    console = Console()
    table = Table(title=f"Configuration ({get_config_path()})")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_column("Default", style="dim")

    for key, value in ctx.obj['config'].items():
        table.add_row(key, json.dumps(value), json.dumps(DEFAULT_CONFIG.get(key)))
    console.print(table)


@main_cli.command(name='init-config')
@click.argument('path', required=False)
@click.option('--force', is_flag=True, help='Overwrite an existing file')
def init_config(path, force):
    """Write a configuration file with the default values"""
    console = Console()
    target = path or str(get_config_path())

    if os.path.exists(target) and not force:
        console.print(f"[yellow]{target} already exists (use --force to overwrite)[/yellow]")
        sys.exit(1)

    if save_config(DEFAULT_CONFIG, target):
        console.print(f"[green]✅ Configuration saved to {target}[/green]")
    else:
        console.print(f"[red]❌ Could not write {target}[/red]")
        sys.exit(1)


def main():
    """Entry point for the agentd console script"""
    main_cli()


if __name__ == '__main__':
    main()
