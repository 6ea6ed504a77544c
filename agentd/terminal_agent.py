"""
Terminal Agent - drives an interactive coding CLI through a PTY

The agent launches a shell, starts the CLI inside it, waits until the CLI
is ready, types the goal and then keeps polling the observer until the
task completes, fails, times out or is stopped.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .models import (
    AgentError,
    AgentResult,
    AgentStatus,
    AgentType,
    LogEntry,
    LogType,
    Observation,
    ObserverAction,
    TerminalState,
)
from .observer import QUICK_CHECK_TAIL, LLMStateClassifier, StateClassifier, quick_check, strip_ansi
from .pty_process import PtyHandle, PtySpawner, spawn_pty

logger = logging.getLogger(__name__)


class AgentStopped(AgentError):
    """Raised inside the control loop once stop() has been requested"""


class AgentTimeout(AgentError):
    """Raised when the global deadline of an agent has passed"""


def default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


@dataclass
class AgentSettings:
    """Tunables shared by every agent in a pool (seconds unless noted)"""
    shell: str = field(default_factory=default_shell)
    cli_command: str = "claude"
    terminal_cols: int = 120
    terminal_rows: int = 30
    buffer_limit: int = 50000  # characters
    shell_settle_delay: float = 0.5
    ready_check_interval: float = 1.0
    startup_timeout: float = 30.0
    submit_delay: float = 0.5
    poll_interval: float = 2.0
    approval_delay: float = 0.5
    idle_poll_threshold: int = 15  # polls
    close_delay: float = 0.5
    log_tail_lines: int = 100
    result_tail_lines: int = 50


class TerminalAgent:
    """Controls one interactive CLI session through a pseudo-terminal"""

    def __init__(self,
                 agent_id: str,
                 goal: str,
                 working_directory: Optional[str] = None,
                 auto_approve: bool = True,
                 timeout: float = 300.0,
                 stream_output: bool = True,
                 on_log: Optional[Callable[[LogEntry], None]] = None,
                 on_status_change: Optional[Callable[[AgentStatus, Optional[str]], None]] = None,
                 classifier: Optional[StateClassifier] = None,
                 pty_spawner: Optional[PtySpawner] = None,
                 settings: Optional[AgentSettings] = None):

        self.agent_id = agent_id
        self.goal = goal
        self.working_directory = working_directory or os.getcwd()
        self.auto_approve = auto_approve
        self.timeout = timeout
        self.stream_output = stream_output
        self.on_log = on_log
        self.on_status_change = on_status_change
        self.classifier = classifier or LLMStateClassifier()
        self.pty_spawner = pty_spawner or spawn_pty
        self.settings = settings or AgentSettings()

        # Terminal session
        self._session: Optional[PtyHandle] = None
        self._buffer = ""
        self._received = 0  # total characters ever received, never trimmed

        # State
        self._status = AgentStatus.PENDING
        self._start_time = 0.0
        self._started = False
        self._running = False
        self._stopped = False
        self._goal_submitted = False

        # Approval handling
        self._approval_mark = -1
        self._awaiting_approval = False
        self._approval_decision: Optional[bool] = None

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def goal_submitted(self) -> bool:
        return self._goal_submitted

    @property
    def awaiting_approval(self) -> bool:
        return self._awaiting_approval

    @property
    def elapsed(self) -> float:
        if not self._started:
            return 0.0
        return time.monotonic() - self._start_time

    async def start(self) -> AgentResult:
        """Launch the CLI, submit the goal and supervise it until it finishes"""
        if self._started:
            raise AgentError(f"Agent {self.agent_id} is already running")

        self._started = True
        self._start_time = time.monotonic()

        if self._stopped:
            return self._create_result(AgentStatus.CANCELLED, error="Agent was stopped")

        self._running = True
        cli = self.settings.cli_command
        self._update_status(AgentStatus.INITIALIZING, f"Starting {cli}...")

        try:
            await self._start_terminal()
            await self._wait_for_ready()
            await self._submit_goal()
            result = await self._monitor_until_complete()
        except AgentStopped:
            result = self._create_result(AgentStatus.CANCELLED, error="Agent was stopped")
        except Exception as e:
            if self._stopped:
                result = self._create_result(AgentStatus.CANCELLED, error="Agent was stopped")
            else:
                error_msg = str(e) or e.__class__.__name__
                self._log(LogType.STDERR, f"Agent failed: {error_msg}")
                result = self._create_result(AgentStatus.FAILED, error=error_msg)
        finally:
            self._cleanup()

        if result.status == AgentStatus.COMPLETED:
            self._update_status(AgentStatus.COMPLETED, "Task completed")
        elif result.status == AgentStatus.FAILED:
            self._update_status(AgentStatus.FAILED, f"Error: {result.error}")

        return result

    def stop(self) -> None:
        """Request the agent to stop; the control loop notices on its next tick"""
        if self._stopped or self._status.is_terminal:
            return
        self._stopped = True
        self._log(LogType.STATUS, "Agent stopped by user")
        self._update_status(AgentStatus.CANCELLED, "Stopped by user")
        self._cleanup()

    def resolve_approval(self, approved: bool) -> bool:
        """Deliver an external approval decision; False if none is pending"""
        if not self._awaiting_approval or not self._running:
            return False
        self._approval_decision = approved
        return True

    def resize(self, cols: int, rows: int) -> None:
        if self._session is not None:
            self._session.resize(cols, rows)

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def _start_terminal(self):
        """Spawn the shell in a PTY and launch the CLI inside it"""
        self._log(LogType.STATUS, "Launching terminal...")

        session = await self.pty_spawner(
            self.settings.shell,
            cwd=self.working_directory,
            cols=self.settings.terminal_cols,
            rows=self.settings.terminal_rows,
            on_data=self._on_data,
        )
        if not self._running:
            # stopped while the shell was spawning
            try:
                session.close()
            except Exception as e:
                logger.debug(f"[{self.agent_id}] Failed to close late PTY: {e}")
            raise AgentStopped()
        self._session = session

        await asyncio.sleep(self.settings.shell_settle_delay)
        self._check_running()

        self._log(LogType.STATUS, f"Starting {self.settings.cli_command}...")
        self._write(f"{self.settings.cli_command}\r")

    async def _wait_for_ready(self):
        """Poll the observer until the CLI shows its input prompt"""
        cli = self.settings.cli_command
        self._update_status(AgentStatus.INITIALIZING, f"Waiting for {cli} to start...")
        started = time.monotonic()

        while True:
            await asyncio.sleep(self.settings.ready_check_interval)
            self._check_running()
            self._check_deadline()

            observation = await self._observe()
            self._check_running()

            if observation.state == TerminalState.READY:
                self._log(LogType.STATUS, f"{cli} is ready")
                return

            if observation.state == TerminalState.ERROR:
                raise AgentError(f"{cli} failed to start: {observation.error or 'Unknown error'}")

            waited = time.monotonic() - started
            if waited >= self.settings.startup_timeout:
                raise AgentTimeout(f"Timeout waiting for {cli} to start")

            self._update_status(AgentStatus.INITIALIZING, f"Waiting for {cli}... ({int(waited)}s)")

    async def _submit_goal(self):
        """Type the goal, let it settle, then press Enter separately"""
        self._update_status(AgentStatus.RUNNING, "Submitting goal...")
        self._log(LogType.STATUS, f"Submitting goal: {self.goal}")

        # a newline inside the goal would submit it early
        self._write(self.goal.replace("\r", " ").replace("\n", " "))
        await asyncio.sleep(self.settings.submit_delay)
        self._check_running()
        self._write("\r")

        self._goal_submitted = True
        self._update_status(AgentStatus.RUNNING, "Goal submitted, agent is working...")

    async def _monitor_until_complete(self) -> AgentResult:
        """Observe-act loop that runs until a terminal result is reached"""
        idle_polls = 0
        last_received = self._received

        while True:
            await asyncio.sleep(self.settings.poll_interval)
            self._check_running()
            self._check_deadline()

            if self._awaiting_approval:
                if await self._apply_approval_decision():
                    idle_polls = 0
                    last_received = self._received
                continue

            observation = await self._observe()
            self._check_running()
            self._check_deadline()

            action = observation.action
            if action == ObserverAction.WAIT:
                self._update_status(
                    AgentStatus.RUNNING,
                    observation.summary or f"Working... ({int(self.elapsed)}s)",
                )

            elif action == ObserverAction.SEND_APPROVAL:
                await self._handle_approval_request(observation)
                if self._awaiting_approval:
                    continue

            elif action == ObserverAction.SEND_REJECTION:
                self._log(LogType.STATUS, "Rejecting action...")
                self._write("n\r")
                await asyncio.sleep(self.settings.approval_delay)

            elif action == ObserverAction.REPORT_COMPLETE:
                self._log(LogType.STATUS, "Agent completed the task")
                return self._create_result(AgentStatus.COMPLETED, summary=observation.summary)

            elif action == ObserverAction.REPORT_ERROR:
                self._log(LogType.STATUS, f"Agent encountered an error: {observation.error}")
                return self._create_result(AgentStatus.FAILED, error=observation.error or "Unknown error")

            # Some CLIs fall silent instead of announcing completion
            if self._received == last_received:
                idle_polls += 1
                if self._goal_submitted and idle_polls > self.settings.idle_poll_threshold:
                    final_check = await self._observe()
                    self._check_running()
                    if final_check.state in (TerminalState.READY, TerminalState.COMPLETED):
                        self._log(LogType.STATUS, "No activity detected, assuming complete")
                        return self._create_result(AgentStatus.COMPLETED, summary=final_check.summary)
                    idle_polls = 0
            else:
                idle_polls = 0
                last_received = self._received

    async def _handle_approval_request(self, observation: Observation):
        if not self._is_new_prompt():
            # the answered prompt is still on screen
            self._update_status(AgentStatus.RUNNING, "Waiting for approval to take effect...")
            return

        if not self.auto_approve:
            self._awaiting_approval = True
            self._approval_decision = None
            self._update_status(AgentStatus.NEEDS_APPROVAL, observation.summary or "Agent needs approval")
            self._log(LogType.NOTE, "Waiting for external approval")
            return

        self._log(LogType.STATUS, "Auto-approving action...")
        self._write("y\r")
        await asyncio.sleep(self.settings.approval_delay)
        self._approval_mark = self._received

    def _is_new_prompt(self) -> bool:
        """Whether an approval prompt has appeared since the last answer.

        Output that arrives after an answer (the echoed key, a spinner
        redraw) leaves the old prompt inside the heuristic window. Only a
        prompt found in the new output, or enough new output to push the old
        prompt out of that window, counts as a new request.
        """
        if self._approval_mark < 0:
            return True
        new_chars = self._received - self._approval_mark
        if new_chars <= 0:
            return False
        if new_chars > QUICK_CHECK_TAIL:
            return True
        return quick_check(self._buffer[-new_chars:]) == TerminalState.NEEDS_APPROVAL

    async def _apply_approval_decision(self) -> bool:
        """Send a pending external decision; returns True once one was sent"""
        if self._approval_decision is None:
            return False

        approved = self._approval_decision
        self._approval_decision = None
        self._awaiting_approval = False

        if approved:
            self._log(LogType.STATUS, "Action approved")
            self._write("y\r")
        else:
            self._log(LogType.STATUS, "Action rejected")
            self._write("n\r")
        await asyncio.sleep(self.settings.approval_delay)
        self._approval_mark = self._received
        self._update_status(AgentStatus.RUNNING, "Resuming after approval decision")
        return True

    async def _observe(self) -> Observation:
        return await self.classifier.observe(self._buffer, self.goal, self._goal_submitted)

    def _check_running(self):
        if not self._running:
            raise AgentStopped()

    def _check_deadline(self):
        if self.elapsed >= self.timeout:
            self._log(LogType.STATUS, "Agent timed out")
            raise AgentTimeout(f"Timeout: agent exceeded {self.timeout:g}s")

    # ------------------------------------------------------------------
    # Terminal I/O
    # ------------------------------------------------------------------

    def _on_data(self, data: str):
        self._buffer += data
        if len(self._buffer) > self.settings.buffer_limit:
            self._buffer = self._buffer[-self.settings.buffer_limit:]
        self._received += len(data)

        if self.stream_output:
            self._log(LogType.STDOUT, data)

    def _write(self, text: str):
        if self._session is None:
            logger.debug(f"[{self.agent_id}] Dropped write, terminal is closed: {text!r}")
            return
        try:
            self._session.write(text)
        except Exception as e:
            logger.warning(f"[{self.agent_id}] PTY write failed: {e}")

    def _cleanup(self):
        """Exit the shell and close the PTY; never raises"""
        self._running = False
        session, self._session = self._session, None
        if session is None:
            return

        try:
            session.write("exit\r")
        except Exception as e:
            logger.debug(f"[{self.agent_id}] Failed to send exit: {e}")

        def _close():
            try:
                session.close()
            except Exception as e:
                logger.debug(f"[{self.agent_id}] Failed to close PTY: {e}")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _close()
            return
        loop.call_later(self.settings.close_delay, _close)

    # ------------------------------------------------------------------
    # Results and notifications
    # ------------------------------------------------------------------

    def _create_result(self,
                       status: AgentStatus,
                       error: Optional[str] = None,
                       summary: Optional[str] = None) -> AgentResult:
        clean = strip_ansi(self._buffer)
        return AgentResult(
            agent_id=self.agent_id,
            agent_type=AgentType.TERMINAL,
            goal=self.goal,
            status=status,
            result=summary or self._extract_result(clean),
            error=error,
            execution_time=self.elapsed,
            logs=clean.split("\n")[-self.settings.log_tail_lines:] if clean else [],
        )

    def _extract_result(self, clean_buffer: str) -> Optional[str]:
        """Last meaningful lines of output; the observer summary is usually better"""
        lines = [line for line in clean_buffer.split("\n") if line.strip()]
        if not lines:
            return None
        return "\n".join(lines[-self.settings.result_tail_lines:])

    def _update_status(self, status: AgentStatus, step: Optional[str] = None):
        if self._status.is_terminal:
            return
        self._status = status
        if self.on_status_change:
            try:
                self.on_status_change(status, step)
            except Exception:
                logger.exception(f"[{self.agent_id}] Status callback failed")

    def _log(self, log_type: LogType, content: str):
        if log_type != LogType.STDOUT:
            logger.info(f"[{self.agent_id}] {content}")
        if self.on_log:
            try:
                self.on_log(LogEntry(type=log_type, content=content))
            except Exception:
                logger.exception(f"[{self.agent_id}] Log callback failed")
