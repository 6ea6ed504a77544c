"""
Typed event channels published by the agent pool
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, TypeVar
import time

from .models import AgentResult, AgentStatus, LogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LogEvent:
    agent_id: str
    log: LogEntry


@dataclass(frozen=True)
class StatusEvent:
    agent_id: str
    status: AgentStatus
    step: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CompletionEvent:
    agent_id: str
    result: AgentResult
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class KillEvent:
    agent_id: str
    timestamp: float = field(default_factory=time.time)


class EventChannel(Generic[T]):
    """A list of subscribers for one kind of event.

    Subscribers are called synchronously in subscription order. An exception
    raised by a subscriber is logged and does not reach the publisher or the
    remaining subscribers.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it"""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[T], None]) -> bool:
        try:
            self._subscribers.remove(callback)
            return True
        except ValueError:
            return False

    def publish(self, event: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber of '{self.name}' channel failed")

    def __len__(self) -> int:
        return len(self._subscribers)


class PoolEvents:
    """Every channel the pool publishes to"""

    def __init__(self):
        self.log: EventChannel[LogEvent] = EventChannel("log")
        self.status: EventChannel[StatusEvent] = EventChannel("status")
        self.complete: EventChannel[CompletionEvent] = EventChannel("complete")
        self.killed: EventChannel[KillEvent] = EventChannel("killed")
