"""
Stdio server - runs an AgentPool driven by JSON-line commands on stdin

Each line on stdin is one controller command. Replies and pool events are
written to stdout as one JSON object per line. This is the composition root
used by `agentd serve`.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, TextIO

from .agent_pool import AgentPool
from .commands import (
    SIGNIFICANT_LOG_TYPES,
    CommandDispatcher,
    completion_payload,
    log_payload,
    status_payload,
)
from .events import CompletionEvent, LogEvent, StatusEvent
from .models import CommandError, SpawnOptions

logger = logging.getLogger(__name__)


class StdioAgentServer:
    """Serves an AgentPool over stdin/stdout"""

    def __init__(self,
                 pool: AgentPool,
                 default_options: Optional[SpawnOptions] = None,
                 forward_all_logs: bool = False,
                 cleanup_interval: float = 300.0,
                 cleanup_max_age: float = 3600.0,
                 heartbeat_interval: float = 30.0,
                 output: Optional[TextIO] = None):
        self.pool = pool
        self.dispatcher = CommandDispatcher(pool, default_options)
        self.forward_all_logs = forward_all_logs
        self.cleanup_interval = cleanup_interval
        self.cleanup_max_age = cleanup_max_age
        self.heartbeat_interval = heartbeat_interval
        self.output = output or sys.stdout

        self._running = False
        self._background: List[asyncio.Task] = []

        pool.events.log.subscribe(self._on_log)
        pool.events.status.subscribe(self._on_status)
        pool.events.complete.subscribe(self._on_complete)

    async def start(self) -> None:
        """Serve until stdin closes, then shut the pool down"""
        self._running = True
        logger.info("Starting agentd stdio server")

        self._background = [
            asyncio.create_task(self._periodic(self.cleanup_interval, self._run_cleanup), name='cleanup'),
            asyncio.create_task(self._periodic(self.heartbeat_interval, self._send_heartbeat), name='heartbeat'),
        ]
        self._send_heartbeat()

        try:
            await self._read_loop()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []

        await self.pool.shutdown()
        logger.info("Server shutdown")

    async def _read_loop(self) -> None:
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        loop = asyncio.get_running_loop()
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        while self._running:
            line = await reader.readline()
            if not line:
                break
            self.handle_bytes(line)

    def handle_bytes(self, data: bytes) -> None:
        # invalid bytes decode to U+FFFD
        self.handle_line(data.decode('utf-8', errors='replace'))

    def handle_line(self, line: str) -> None:
        """Parse and dispatch one command line, writing any reply"""
        line = line.strip()
        if not line:
            return

        try:
            command = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON: {e}")
            self.send({"type": "error", "error": f"Parse error: {e}"})
            return

        try:
            reply = self.dispatcher.handle(command)
        except CommandError as e:
            logger.error(f"Rejected command: {e}")
            reply = {"type": "error", "error": str(e)}
            agent_id = command.get("agentId") if isinstance(command, dict) else None
            if isinstance(agent_id, str) and agent_id:
                reply["agentId"] = agent_id
        except Exception as e:
            logger.error(f"Error handling command: {e}", exc_info=True)
            reply = {"type": "error", "error": f"Internal error: {e}"}

        if reply is not None:
            self.send(reply)

    def send(self, message: Dict[str, Any]) -> None:
        try:
            self.output.write(json.dumps(message) + "\n")
            self.output.flush()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to write message: {e}")

    async def _periodic(self, interval: float, callback) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                callback()
            except Exception:
                logger.exception(f"Periodic task {callback.__name__} failed")

    def _run_cleanup(self) -> None:
        self.pool.cleanup(self.cleanup_max_age)

    def _send_heartbeat(self) -> None:
        self.send(self.dispatcher.heartbeat())

    def _on_log(self, event: LogEvent) -> None:
        if self.forward_all_logs or event.log.type in SIGNIFICANT_LOG_TYPES:
            self.send(log_payload(event))

    def _on_status(self, event: StatusEvent) -> None:
        self.send(status_payload(event))

    def _on_complete(self, event: CompletionEvent) -> None:
        self.send(completion_payload(event))
