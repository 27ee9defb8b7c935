"""Republish ProcessSupervisor notifications as EventBus events.

The supervisor does not know about the bus; this bridge is the only place the
two are wired together.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine

from apm.events.bus import EventBus
from apm.events.topics import AgentTopics, output_topic, spawned_topic, status_topic
from apm.spawn.errors import classify_exit
from apm.spawn.process_manager import ProcessEventKind, ProcessSupervisor

logger = logging.getLogger(__name__)


class SupervisorEventBridge:
    """Subscribes to supervisor notifications and publishes them under agent:* topics."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        bus: EventBus,
        publisher_id: str = "supervisor",
        publish_output: bool = True,
    ) -> None:
        self._supervisor = supervisor
        self._bus = bus
        self._publisher_id = publisher_id
        self._publish_output = publish_output
        self._tasks: set[asyncio.Task[Any]] = set()
        self._attached = False
        self._listeners: dict[ProcessEventKind, Callable[..., None]] = {
            ProcessEventKind.SPAWNED: self._on_spawned,
            ProcessEventKind.OUTPUT: self._on_output,
            ProcessEventKind.STATUS_MARKER: self._on_status_marker,
            ProcessEventKind.EXIT: self._on_exit,
            ProcessEventKind.ERROR: self._on_error,
        }

    def attach(self) -> None:
        if self._attached:
            return
        for kind, listener in self._listeners.items():
            self._supervisor.add_listener(kind, listener)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        for kind, listener in self._listeners.items():
            self._supervisor.remove_listener(kind, listener)
        self._attached = False

    async def drain(self) -> None:
        """Wait for every publish scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _publish(self, topic: str, data: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping %s event", topic)
            return
        coro: Coroutine[Any, Any, int] = self._bus.publish(topic, data, self._publisher_id)
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Publishing supervisor event failed: %s", task.exception())

    def _on_spawned(self, agent_id: str, pid: int) -> None:
        self._publish(spawned_topic(agent_id), {"agent_id": agent_id, "pid": pid})

    def _on_output(self, agent_id: str, stream: str, data: str) -> None:
        if self._publish_output:
            self._publish(
                output_topic(stream), {"agent_id": agent_id, "stream": stream, "data": data}
            )

    def _on_status_marker(self, agent_id: str, marker: str, line: str) -> None:
        self._publish(status_topic(marker), {"agent_id": agent_id, "marker": marker, "line": line})

    def _on_exit(self, agent_id: str, exit_code: int | None, exit_signal: str | None) -> None:
        data: dict[str, Any] = {
            "agent_id": agent_id,
            "exit_code": exit_code,
            "exit_signal": exit_signal,
        }
        code = classify_exit(exit_code, exit_signal)
        if code is None:
            self._publish(AgentTopics.EXITED, data)
        else:
            data["code"] = code.value
            self._publish(AgentTopics.FAILED, data)

    def _on_error(self, agent_id: str, error: BaseException) -> None:
        self._publish(AgentTopics.ERROR, {"agent_id": agent_id, "error": str(error)})
