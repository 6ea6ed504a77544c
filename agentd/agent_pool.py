"""
Agent Pool - concurrency-capped registry of running terminal agents
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set, Union

from .events import CompletionEvent, KillEvent, LogEvent, PoolEvents, StatusEvent
from .models import (
    AgentResult,
    AgentStatus,
    AgentType,
    LogEntry,
    ManagedAgent,
    SpawnOptions,
    SpawnResult,
)
from .observer import LLMStateClassifier, StateClassifier
from .pty_process import PtySpawner
from .terminal_agent import AgentSettings, TerminalAgent

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = (AgentType.TERMINAL, AgentType.CODING)


class AgentPool:
    """Tracks every agent spawned on this daemon.

    `spawn` is a synchronous admission decision: it never queues. Accepted
    agents run as background tasks and report back through `events`.
    """

    def __init__(self,
                 max_concurrent_agents: int = 5,
                 classifier: Optional[StateClassifier] = None,
                 pty_spawner: Optional[PtySpawner] = None,
                 settings: Optional[AgentSettings] = None):
        self.max_concurrent_agents = max_concurrent_agents
        self.classifier = classifier or LLMStateClassifier()
        self.pty_spawner = pty_spawner
        self.settings = settings or AgentSettings()
        self.events = PoolEvents()

        self.agents: Dict[str, ManagedAgent] = {}
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self,
              agent_id: str,
              agent_type: Union[AgentType, str],
              goal: str,
              working_directory: Optional[str] = None,
              options: Optional[SpawnOptions] = None) -> SpawnResult:
        """Register and start a new agent, or reject it without side effects"""
        if not isinstance(agent_id, str) or not agent_id:
            return SpawnResult(False, f"Invalid agent id: {agent_id!r}")
        if not isinstance(goal, str) or not goal.strip():
            return SpawnResult(False, f"Invalid goal: {goal!r}")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return SpawnResult(False, "Agent pool requires a running event loop")

        if agent_id in self.agents:
            return SpawnResult(False, f"Agent {agent_id} already exists")

        try:
            agent_type = AgentType(agent_type)
        except ValueError:
            return SpawnResult(False, f"Unsupported agent type: {agent_type}")
        if agent_type not in SUPPORTED_TYPES:
            return SpawnResult(False, f"Unsupported agent type: {agent_type.value}")

        if self.get_active_count() >= self.max_concurrent_agents:
            return SpawnResult(False, f"Max concurrent agents ({self.max_concurrent_agents}) reached")

        options = options or SpawnOptions()
        try:
            agent = TerminalAgent(
                agent_id=agent_id,
                goal=goal,
                working_directory=working_directory,
                auto_approve=options.auto_approve,
                timeout=options.timeout,
                stream_output=options.stream_output,
                on_log=lambda log: self._handle_log(agent_id, log),
                on_status_change=lambda status, step=None: self._handle_status_change(agent_id, status, step),
                classifier=self.classifier,
                pty_spawner=self.pty_spawner,
                settings=self.settings,
            )
        except Exception as e:
            logger.error(f"Failed to create agent {agent_id}: {e}")
            return SpawnResult(False, str(e))

        managed = ManagedAgent(
            agent_id=agent_id,
            agent_type=agent_type,
            goal=goal,
            agent=agent,
        )
        self.agents[agent_id] = managed

        task = loop.create_task(self._run_agent(managed))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(f"Spawned agent {agent_id} ({agent_type.value}): \"{goal[:50]}\"")
        return SpawnResult(True)

    async def _run_agent(self, managed: ManagedAgent):
        """Run one agent to completion and publish its result exactly once"""
        try:
            result = await managed.agent.start()
        except asyncio.CancelledError:
            result = self._fallback_result(managed, AgentStatus.CANCELLED, "Agent task was cancelled")
            self._complete(managed, result)
            raise
        except Exception as e:
            logger.error(f"Agent {managed.agent_id} crashed: {e}")
            result = self._fallback_result(managed, AgentStatus.FAILED, str(e) or e.__class__.__name__)

        self._complete(managed, result)

    def _complete(self, managed: ManagedAgent, result: AgentResult):
        if managed.result is not None:
            return
        managed.result = result
        if not managed.status.is_terminal:
            managed.status = result.status

        logger.info(f"Agent {managed.agent_id} finished with status: {managed.status.value}")
        self.events.complete.publish(CompletionEvent(managed.agent_id, result))

    @staticmethod
    def _fallback_result(managed: ManagedAgent, status: AgentStatus, error: str) -> AgentResult:
        return AgentResult(
            agent_id=managed.agent_id,
            agent_type=AgentType.TERMINAL,
            goal=managed.goal,
            status=status,
            error=error,
            execution_time=managed.running_for(),
        )

    def kill(self, agent_id: str) -> bool:
        """Cancel a running agent; False if unknown or already finished"""
        managed = self.agents.get(agent_id)
        if managed is None:
            logger.warning(f"Cannot kill agent {agent_id}: not found")
            return False
        if managed.status.is_terminal:
            logger.info(f"Agent {agent_id} already finished ({managed.status.value})")
            return False

        try:
            managed.agent.stop()
        except Exception as e:
            logger.warning(f"Error while stopping agent {agent_id}: {e}")

        # stop() normally reports CANCELLED through the status callback
        if managed.status != AgentStatus.CANCELLED:
            managed.status = AgentStatus.CANCELLED
            managed.current_step = "Stopped by user"
            self.events.status.publish(StatusEvent(agent_id, AgentStatus.CANCELLED, "Stopped by user"))

        logger.info(f"Killed agent {agent_id}")
        self.events.killed.publish(KillEvent(agent_id))
        return True

    def approve(self, agent_id: str, approved: bool = True) -> bool:
        """Answer an agent that is waiting for an external approval"""
        managed = self.agents.get(agent_id)
        if managed is None or managed.status.is_terminal:
            return False
        return managed.agent.resolve_approval(approved)

    def get_agent(self, agent_id: str) -> Optional[ManagedAgent]:
        return self.agents.get(agent_id)

    def get_agent_ids(self) -> List[str]:
        return list(self.agents.keys())

    def get_active_count(self) -> int:
        return sum(1 for managed in self.agents.values() if managed.status.is_active)

    def get_total_count(self) -> int:
        return len(self.agents)

    def get_summary(self) -> List[Dict[str, Any]]:
        now = time.time()
        return [
            {
                "id": managed.agent_id,
                "type": managed.agent_type.value,
                "status": managed.status.value,
                "goal": managed.goal,
                "step": managed.current_step,
                "running_for": managed.running_for(now),
            }
            for managed in self.agents.values()
        ]

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Forget finished agents older than `max_age` seconds"""
        now = time.time()
        expired = [
            agent_id for agent_id, managed in self.agents.items()
            if managed.status.is_terminal and managed.running_for(now) > max_age
        ]
        for agent_id in expired:
            del self.agents[agent_id]

        if expired:
            logger.info(f"Cleaned up {len(expired)} old agents")
        return len(expired)

    async def shutdown(self, grace: float = 2.0):
        """Stop every active agent and clear the registry (best effort)"""
        logger.info(f"Shutting down {len(self.agents)} agents...")

        for agent_id, managed in list(self.agents.items()):
            if not managed.status.is_active:
                continue
            try:
                managed.agent.stop()
            except Exception as e:
                logger.warning(f"Error while stopping agent {agent_id}: {e}")

        self.agents.clear()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        logger.info("Shutdown complete")

    def _handle_log(self, agent_id: str, log: LogEntry):
        self.events.log.publish(LogEvent(agent_id, log))

    def _handle_status_change(self, agent_id: str, status: AgentStatus, step: Optional[str] = None):
        managed = self.agents.get(agent_id)
        if managed is not None:
            if managed.status.is_terminal:
                return
            managed.status = status
            managed.current_step = step
        self.events.status.publish(StatusEvent(agent_id, status, step))
