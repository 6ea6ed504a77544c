"""
Wire protocol - translates controller commands into pool calls and pool
events into outbound payloads

Inbound and outbound messages are plain JSON objects with camelCase keys.
Durations on the wire are milliseconds; everything inside the pool uses
seconds.
"""

import logging
import time
from typing import Any, Dict, Optional

from .agent_pool import AgentPool
from .events import CompletionEvent, LogEvent, StatusEvent
from .models import CommandError, LogType, SpawnOptions

logger = logging.getLogger(__name__)

# logs forwarded to the controller when full streaming is off
SIGNIFICANT_LOG_TYPES = (LogType.STATUS, LogType.STDERR)


def now_ms() -> int:
    return int(time.time() * 1000)


def _require(command: Dict[str, Any], key: str) -> str:
    """Return a required string field or raise CommandError"""
    value = command.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise CommandError(f"Missing required field '{key}' in {command.get('type')} command")
    if not isinstance(value, str):
        raise CommandError(f"Field '{key}' must be a string, got {type(value).__name__}")
    return value


def parse_spawn_options(raw: Optional[Dict[str, Any]], defaults: Optional[SpawnOptions] = None) -> SpawnOptions:
    """Convert the wire `options` object into SpawnOptions"""
    defaults = defaults or SpawnOptions()
    raw = raw or {}
    if not isinstance(raw, dict):
        raise CommandError("'options' must be an object")

    timeout_ms = raw.get("timeout")
    if timeout_ms is not None:
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float)) or timeout_ms <= 0:
            raise CommandError(f"Invalid timeout: {timeout_ms!r}")
        timeout = timeout_ms / 1000.0
    else:
        timeout = defaults.timeout

    return SpawnOptions(
        auto_approve=bool(raw.get("autoApprove", defaults.auto_approve)),
        timeout=timeout,
        stream_output=bool(raw.get("streamOutput", defaults.stream_output)),
    )


class CommandDispatcher:
    """Routes inbound controller commands to an AgentPool"""

    def __init__(self, pool: AgentPool, default_options: Optional[SpawnOptions] = None):
        self.pool = pool
        self.default_options = default_options or SpawnOptions()

    def handle(self, command: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Process one command and return the immediate reply, if any"""
        if not isinstance(command, dict):
            raise CommandError("Command must be a JSON object")

        command_type = command.get("type")
        logger.info(f"Received command: {command_type}")

        if command_type == "spawn_agent":
            return self._handle_spawn(command)
        elif command_type == "kill_agent":
            return self._handle_kill(command)
        elif command_type == "approve_agent":
            return self._handle_approve(command)
        elif command_type == "ping":
            return {"type": "pong"}
        elif command_type == "status":
            return self.heartbeat()
        else:
            raise CommandError(f"Unknown command type: {command_type}")

    def _handle_spawn(self, command: Dict[str, Any]) -> Dict[str, Any]:
        agent_id = _require(command, "agentId")
        try:
            goal = _require(command, "goal")
            working_directory = command.get("workingDirectory")
            if working_directory is not None and not isinstance(working_directory, str):
                raise CommandError("Field 'workingDirectory' must be a string")
            options = parse_spawn_options(command.get("options"), self.default_options)
        except CommandError as e:
            return agent_ack(agent_id, False, str(e))

        result = self.pool.spawn(
            agent_id=agent_id,
            agent_type=command.get("agentType", "terminal"),
            goal=goal,
            working_directory=working_directory,
            options=options,
        )
        if not result.accepted:
            logger.error(f"Failed to start agent {agent_id}: {result.error}")
        return agent_ack(agent_id, result.accepted, result.error)

    def _handle_kill(self, command: Dict[str, Any]) -> Dict[str, Any]:
        agent_id = _require(command, "agentId")
        killed = self.pool.kill(agent_id)
        if not killed:
            logger.warning(f"Agent {agent_id} not found or already finished")
        return {"type": "kill_ack", "agentId": agent_id, "killed": killed}

    def _handle_approve(self, command: Dict[str, Any]) -> Dict[str, Any]:
        agent_id = _require(command, "agentId")
        approved = bool(command.get("approved", True))
        delivered = self.pool.approve(agent_id, approved)
        return {"type": "approve_ack", "agentId": agent_id, "approved": approved, "delivered": delivered}

    def heartbeat(self) -> Dict[str, Any]:
        return {
            "type": "heartbeat",
            "activeAgents": self.pool.get_active_count(),
            "agentIds": self.pool.get_agent_ids(),
            "timestamp": now_ms(),
        }


def agent_ack(agent_id: str, started: bool, error: Optional[str] = None) -> Dict[str, Any]:
    message = {"type": "agent_ack", "agentId": agent_id, "status": "started" if started else "error"}
    if error:
        message["error"] = error
    return message


def log_payload(event: LogEvent) -> Dict[str, Any]:
    return {
        "type": "log",
        "agentId": event.agent_id,
        "log": {
            "type": event.log.type.value,
            "content": event.log.content,
            "timestamp": int(event.log.timestamp * 1000),
        },
    }


def status_payload(event: StatusEvent) -> Dict[str, Any]:
    message = {
        "type": "status",
        "agentId": event.agent_id,
        "status": event.status.value,
        "timestamp": int(event.timestamp * 1000),
    }
    if event.step:
        message["currentStep"] = event.step
    return message


def completion_payload(event: CompletionEvent) -> Dict[str, Any]:
    result = event.result
    message = {
        "type": "complete",
        "agentId": event.agent_id,
        "status": result.status.value,
        "executionTimeMs": result.execution_time_ms,
        "timestamp": int(event.timestamp * 1000),
    }
    if result.result is not None:
        message["result"] = result.result
    if result.error is not None:
        message["error"] = result.error
    return message
