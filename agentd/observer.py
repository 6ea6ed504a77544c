"""
Terminal Observer - classifies raw terminal output into an Observation

A cheap regex pass catches obvious approval prompts; everything else goes to
a fast LLM through LiteLLM.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import litellm

from .models import (
    InvalidObservationError,
    Observation,
    ObserverAction,
    TerminalState,
)

logger = logging.getLogger(__name__)

DEFAULT_OBSERVER_MODEL = "claude-3-5-haiku-20241022"

QUICK_CHECK_TAIL = 500
LLM_BUFFER_TAIL = 3000

_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
# two-char escapes and nF sequences such as charset selection (\x1b(B) and keypad modes (\x1b=, \x1b>)
_ESC_RE = re.compile(r"\x1b[ -/]*[0-~]")
_CTRL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

APPROVAL_PATTERNS = [
    re.compile(r"\(y/n\)", re.IGNORECASE),
    re.compile(r"\[y/n\]", re.IGNORECASE),
    re.compile(r"allow.*\?", re.IGNORECASE),
    re.compile(r"permission", re.IGNORECASE),
]

SYSTEM_PROMPT = """You are observing a terminal running an interactive AI coding CLI. Your job is to analyze the terminal output and determine the current state.

Analyze the terminal buffer and respond with ONLY a JSON object (no markdown, no explanation):

{
  "state": "initializing" | "ready" | "working" | "needs_approval" | "completed" | "error",
  "confidence": 0.0-1.0,
  "action": "wait" | "send_approval" | "send_rejection" | "report_complete" | "report_error",
  "summary": "brief description of what's happening",
  "error": "error message if state is error, otherwise null"
}

STATE DEFINITIONS:
- "initializing": the CLI is starting up, loading, showing a welcome message
- "ready": the CLI shows an input prompt and waits for the user to type (look for ">" or "❯" at the end)
- "working": the CLI is actively processing - thinking indicators, file operations, code being written, tool calls
- "needs_approval": the CLI asks for permission ("Allow", "(y/n)", "[y/n]", "permission", "approve", "Do you want to", "Would you like", command confirmations)
- "completed": the CLI finished the task and returned to the idle prompt
- "error": something went wrong - crash, timeout, error messages

ACTION RULES:
- "wait": keep monitoring, don't intervene
- "send_approval": send "y" to approve (only when state is needs_approval)
- "send_rejection": send "n" to reject (rarely used)
- "report_complete": the task is done, report results back
- "report_error": something failed, report the error

IMPORTANT PATTERNS:
- A prompt character (>, ❯) at the END of output with no activity means "ready" or "completed"
- If the goal has NOT been submitted yet and there is a prompt, the state is "ready"
- If the goal HAS been submitted and the CLI is back at an idle prompt, the state is "completed"
- "Thinking...", "Reading...", "Writing...", "Running..." mean "working"

Remember: output ONLY the JSON object, nothing else."""

CompletionFn = Callable[..., Awaitable[Any]]


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and stray control characters"""
    text = _OSC_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    text = _ESC_RE.sub("", text)
    return _CTRL_RE.sub("", text)


def clean_tail(buffer: str, size: int) -> str:
    """Last `size` characters of the buffer after stripping escape codes"""
    # escape sequences shrink on stripping, so over-read before slicing
    return strip_ansi(buffer[-size * 2:])[-size:]


def quick_check(buffer: str) -> Optional[TerminalState]:
    """Heuristic pass that needs no LLM call; returns an obvious state or None"""
    tail = clean_tail(buffer, QUICK_CHECK_TAIL)
    for pattern in APPROVAL_PATTERNS:
        if pattern.search(tail):
            return TerminalState.NEEDS_APPROVAL
    return None


def safe_default(summary: str, confidence: float = 0.3, error: Optional[str] = None) -> Observation:
    """Low-confidence observation that keeps the agent waiting"""
    return Observation(
        state=TerminalState.WORKING,
        confidence=confidence,
        action=ObserverAction.WAIT,
        summary=summary,
        error=error,
    )


def parse_observation(content: Optional[str]) -> Observation:
    """Parse observer text into an Observation.

    Raises InvalidObservationError when the text is not JSON or does not
    match the observation schema.
    """
    if not content or not content.strip():
        raise InvalidObservationError("Empty observer response")

    text = content.strip()
    if text.startswith("```"):
        text = re.sub(r"```(?:json)?\n?", "", text).replace("```", "").strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidObservationError(f"Observer response is not JSON: {e}") from e

    return Observation.from_dict(data)


class StateClassifier(ABC):
    """Strategy that maps a terminal buffer to an Observation"""

    @abstractmethod
    async def observe(self, buffer: str, goal: str, goal_submitted: bool) -> Observation:
        """Classify the buffer. Must not raise for classifier-side failures."""
        pass


class LLMStateClassifier(StateClassifier):
    """Heuristics first, then a fast LLM call through LiteLLM.

    The classifier holds no per-session state, so one instance can serve
    every agent in a pool. The counters and `last_observation` exist for
    diagnostics only.
    """

    def __init__(self,
                 model: str = DEFAULT_OBSERVER_MODEL,
                 completion_fn: Optional[CompletionFn] = None,
                 max_tokens: int = 256,
                 buffer_tail: int = LLM_BUFFER_TAIL):
        self.model = model
        self.completion_fn = completion_fn or litellm.acompletion
        self.max_tokens = max_tokens
        self.buffer_tail = buffer_tail

        self.call_count = 0
        self.llm_call_count = 0
        self.last_observation: Optional[Observation] = None

    async def observe(self, buffer: str, goal: str, goal_submitted: bool) -> Observation:
        self.call_count += 1

        if quick_check(buffer) == TerminalState.NEEDS_APPROVAL:
            observation = Observation(
                state=TerminalState.NEEDS_APPROVAL,
                confidence=0.9,
                action=ObserverAction.SEND_APPROVAL,
                summary="Detected approval prompt (heuristic)",
            )
        else:
            observation = await self._classify(buffer, goal, goal_submitted)

        self.last_observation = observation
        logger.debug(
            f"Observation #{self.call_count}: state={observation.state.value} "
            f"action={observation.action.value} confidence={observation.confidence:.2f}"
        )
        return observation

    def build_prompt(self, buffer: str, goal: str, goal_submitted: bool) -> str:
        submitted = "YES" if goal_submitted else "NO (still waiting to send)"
        return f"""CONTEXT:
- User's goal: "{goal}"
- Goal has been submitted to the CLI: {submitted}

TERMINAL BUFFER (last {self.buffer_tail} characters):
```
{clean_tail(buffer, self.buffer_tail)}
```

Analyze the terminal state and respond with JSON only."""

    async def _classify(self, buffer: str, goal: str, goal_submitted: bool) -> Observation:
        self.llm_call_count += 1
        try:
            response = await self.completion_fn(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_prompt(buffer, goal, goal_submitted)},
                ],
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
            content = response.choices[0].message.content
        except Exception as e:
            logger.warning(f"Observer LLM call failed: {e}")
            return safe_default(f"Observer error: {e}", confidence=0.1, error=str(e))

        try:
            return parse_observation(content)
        except InvalidObservationError as e:
            logger.warning(f"Unusable observer response ({e}): {content!r}")
            return safe_default("Unable to parse observer response, continuing to wait")
