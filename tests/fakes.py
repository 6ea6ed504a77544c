"""
Test doubles for the PTY primitive and the observer
"""

import asyncio
import json
import time
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Sequence, Union

from agentd.models import Observation, ObserverAction, TerminalState
from agentd.observer import StateClassifier
from agentd.terminal_agent import AgentSettings


def obs(state: str, action: str = "wait", confidence: float = 0.8,
        summary: Optional[str] = None, error: Optional[str] = None) -> Observation:
    return Observation(
        state=TerminalState(state),
        confidence=confidence,
        action=ObserverAction(action),
        summary=summary,
        error=error,
    )


def fast_settings(**overrides) -> AgentSettings:
    """Settings with millisecond-scale delays for tests"""
    values = dict(
        shell="/bin/sh",
        shell_settle_delay=0.0,
        ready_check_interval=0.01,
        startup_timeout=1.0,
        submit_delay=0.01,
        poll_interval=0.01,
        approval_delay=0.01,
        idle_poll_threshold=2,
        close_delay=0.0,
    )
    values.update(overrides)
    return AgentSettings(**values)


def llm_response(content: str) -> SimpleNamespace:
    """Object shaped like a LiteLLM completion response"""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def llm_json(**fields) -> SimpleNamespace:
    return llm_response(json.dumps(fields))


class FakePty:
    """In-memory PTY handle that records writes and replays canned output"""

    def __init__(self, on_data: Callable[[str], None], responses: Dict[str, str]):
        self.on_data = on_data
        self.responses = responses
        self.writes: List[str] = []
        self.closed = False
        self.size = None

    def emit(self, text: str):
        self.on_data(text)

    def write(self, text: str):
        if self.closed:
            raise OSError("PTY is closed")
        self.writes.append(text)
        reply = self.responses.get(text)
        if reply is not None:
            self.emit(reply)

    def resize(self, cols: int, rows: int):
        self.size = (cols, rows)

    def close(self):
        self.closed = True


class FakePtySpawner:
    """Drop-in replacement for spawn_pty"""

    def __init__(self, responses: Optional[Dict[str, str]] = None, initial_output: str = ""):
        self.responses = responses or {}
        self.initial_output = initial_output
        self.instances: List[FakePty] = []
        self.calls: List[dict] = []

    async def __call__(self, shell, cwd=None, cols=120, rows=30, on_data=None):
        self.calls.append({"shell": shell, "cwd": cwd, "cols": cols, "rows": rows})
        pty = FakePty(on_data, self.responses)
        self.instances.append(pty)
        if self.initial_output:
            pty.emit(self.initial_output)
        return pty

    @property
    def last(self) -> FakePty:
        return self.instances[-1]


class ScriptedClassifier(StateClassifier):
    """Returns canned observations; one script before goal submission, one after.

    A script is either a single observation repeated forever or a list that
    is consumed in order, repeating its last entry once exhausted.
    """

    def __init__(self,
                 before: Union[Observation, Sequence[Observation]] = None,
                 after: Union[Observation, Sequence[Observation]] = None):
        self.before = self._as_list(before or obs("ready"))
        self.after = self._as_list(after or obs("working"))
        self.calls: List[tuple] = []

    @staticmethod
    def _as_list(script) -> List[Observation]:
        return list(script) if isinstance(script, (list, tuple)) else [script]

    async def observe(self, buffer: str, goal: str, goal_submitted: bool) -> Observation:
        self.calls.append((buffer, goal, goal_submitted))
        script = self.after if goal_submitted else self.before
        if len(script) > 1:
            return script.pop(0)
        return script[0]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005):
    """Poll `predicate` until it is true or fail the test after `timeout`"""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)
