"""
Core data model shared by the pool, the terminal agent and the observer
"""

from enum import Enum
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
import time


class AgentError(Exception):
    """Base error for the supervisor daemon"""


class InvalidObservationError(AgentError):
    """Raised when an observer response does not match the observation schema"""


class CommandError(AgentError):
    """Raised when an inbound command is malformed"""


class AgentType(Enum):
    """Supported agent types"""
    TERMINAL = "terminal"
    CODING = "coding"  # alias of TERMINAL kept for older controllers


class AgentStatus(Enum):
    """Lifecycle status of a managed agent"""
    PENDING = "pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    NEEDS_APPROVAL = "needs_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in _ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


_ACTIVE_STATUSES = frozenset({
    AgentStatus.PENDING,
    AgentStatus.INITIALIZING,
    AgentStatus.RUNNING,
    AgentStatus.NEEDS_APPROVAL,
})


class TerminalState(Enum):
    """What the observer thinks the CLI is doing"""
    INITIALIZING = "initializing"
    READY = "ready"
    WORKING = "working"
    NEEDS_APPROVAL = "needs_approval"
    COMPLETED = "completed"
    ERROR = "error"


class ObserverAction(Enum):
    """Action the observer recommends"""
    WAIT = "wait"
    SEND_APPROVAL = "send_approval"
    SEND_REJECTION = "send_rejection"
    REPORT_COMPLETE = "report_complete"
    REPORT_ERROR = "report_error"


class LogType(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    STATUS = "status"
    NOTE = "note"


@dataclass(frozen=True)
class Observation:
    """Structured read of the terminal produced on every poll"""
    state: TerminalState
    confidence: float
    action: ObserverAction
    summary: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Observation":
        """Build an observation from parsed observer JSON, validating the schema"""
        if not isinstance(data, dict):
            raise InvalidObservationError(f"Expected a JSON object, got {type(data).__name__}")

        try:
            state = TerminalState(data.get("state"))
            action = ObserverAction(data.get("action"))
        except ValueError as e:
            raise InvalidObservationError(str(e)) from e

        confidence = data.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise InvalidObservationError(f"Invalid confidence: {confidence!r}")
        if not 0.0 <= confidence <= 1.0:
            raise InvalidObservationError(f"Confidence out of range: {confidence}")

        summary = data.get("summary")
        error = data.get("error")
        return cls(
            state=state,
            confidence=float(confidence),
            action=action,
            summary=str(summary) if summary else None,
            error=str(error) if error else None,
        )


@dataclass(frozen=True)
class LogEntry:
    """Single log line emitted by an agent"""
    type: LogType
    content: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class SpawnOptions:
    """Per-agent options supplied with a spawn request"""
    auto_approve: bool = True
    timeout: float = 300.0  # seconds
    stream_output: bool = True


@dataclass(frozen=True)
class SpawnResult:
    """Admission decision returned by AgentPool.spawn"""
    accepted: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class AgentResult:
    """Terminal result of a supervised run, produced exactly once"""
    agent_id: str
    agent_type: AgentType
    goal: str
    status: AgentStatus
    result: Optional[str] = None
    error: Optional[str] = None
    execution_time: float = 0.0
    logs: List[str] = field(default_factory=list)

    @property
    def execution_time_ms(self) -> int:
        return int(self.execution_time * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "agentType": self.agent_type.value,
            "goal": self.goal,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "executionTimeMs": self.execution_time_ms,
            "logs": list(self.logs),
        }


@dataclass
class ManagedAgent:
    """Registry entry for one supervised session"""
    agent_id: str
    agent_type: AgentType
    goal: str
    agent: Any  # TerminalAgent
    status: AgentStatus = AgentStatus.PENDING
    started_at: float = field(default_factory=time.time)
    current_step: Optional[str] = None
    result: Optional[AgentResult] = None

    def running_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.started_at
