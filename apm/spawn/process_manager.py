"""ProcessSupervisor: lifecycle, bounded output capture, status markers and
graceful-then-forced termination of spawned agent processes."""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from apm.spawn.errors import (
    DuplicateProcessError,
    InvalidProcessHandleError,
    ProcessNotFoundError,
    SignalDeliveryError,
)
from apm.spawn.handle import STDERR, STDOUT, ProcessHandle, StopLevel

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000
DEFAULT_TERMINATE_TIMEOUT = 10.0
PURGE_DELAY = 1.0

STATUS_MARKERS: dict[str, re.Pattern[str]] = {
    "READY": re.compile(re.escape("[APM_STATUS:READY]")),
    "ERROR": re.compile(re.escape("[APM_STATUS:ERROR]")),
    "COMPLETE": re.compile(re.escape("[APM_STATUS:COMPLETE]")),
    "BLOCKED": re.compile(re.escape("[APM_STATUS:BLOCKED]")),
}


class ProcessStatus(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ProcessStatus.EXITED, ProcessStatus.FAILED)


class ProcessEventKind(str, Enum):
    """Notifications emitted by the supervisor. Listener signatures:

    SPAWNED(agent_id, pid), OUTPUT(agent_id, stream, data),
    ERROR(agent_id, exc), EXIT(agent_id, exit_code, exit_signal),
    STATUS_MARKER(agent_id, marker, line).
    """

    SPAWNED = "process-spawned"
    OUTPUT = "process-output"
    ERROR = "process-error"
    EXIT = "process-exit"
    STATUS_MARKER = "status-marker"


@dataclass(frozen=True)
class ProcessRecord:
    """Snapshot of a tracked process. Never a live reference."""

    agent_id: str
    pid: int
    spawned_at: datetime
    status: ProcessStatus
    exit_code: int | None = None
    exit_signal: str | None = None


@dataclass(frozen=True)
class ProcessOutput:
    stdout: list[str]
    stderr: list[str]


@dataclass(frozen=True)
class ProcessMetrics:
    agent_id: str
    pid: int
    status: ProcessStatus
    runtime: float  # seconds since spawn
    stdout_lines: int
    stderr_lines: int


@dataclass
class _TrackedProcess:
    record: ProcessRecord
    handle: ProcessHandle
    stdout: deque[str]
    stderr: deque[str]
    started: float = field(default_factory=time.monotonic)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    kill_timer: asyncio.TimerHandle | None = None
    purge_timer: asyncio.TimerHandle | None = None

    def buffer(self, stream: str) -> deque[str]:
        return self.stderr if stream == STDERR else self.stdout


class ProcessSupervisor:
    """Tracks agent processes by agent_id. One event loop, no locks."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        purge_delay: float = PURGE_DELAY,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be positive")
        self._buffer_size = buffer_size
        self._purge_delay = purge_delay
        self._processes: dict[str, _TrackedProcess] = {}
        self._listeners: dict[ProcessEventKind, list[Callable[..., Any]]] = {
            kind: [] for kind in ProcessEventKind
        }

    # --- notifications ---

    def add_listener(self, kind: ProcessEventKind | str, listener: Callable[..., Any]) -> None:
        self._listeners[ProcessEventKind(kind)].append(listener)

    def remove_listener(self, kind: ProcessEventKind | str, listener: Callable[..., Any]) -> bool:
        listeners = self._listeners[ProcessEventKind(kind)]
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        return True

    def _emit(self, kind: ProcessEventKind, *args: Any) -> None:
        for listener in list(self._listeners[kind]):
            try:
                listener(*args)
            except Exception:
                logger.exception("ProcessSupervisor %s listener failed", kind.value)

    # --- registration ---

    def register_process(self, agent_id: str, handle: ProcessHandle) -> ProcessRecord:
        """Start tracking handle under agent_id. Raises on duplicate id or missing pid."""
        if agent_id in self._processes:
            raise DuplicateProcessError(agent_id)
        pid = getattr(handle, "pid", None)
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            raise InvalidProcessHandleError(f"Process for {agent_id!r} does not have a PID")

        tracked = _TrackedProcess(
            record=ProcessRecord(
                agent_id=agent_id,
                pid=pid,
                spawned_at=datetime.now(timezone.utc),
                status=ProcessStatus.SPAWNING,
            ),
            handle=handle,
            stdout=deque(maxlen=self._buffer_size),
            stderr=deque(maxlen=self._buffer_size),
        )
        self._processes[agent_id] = tracked
        self._attach(agent_id, tracked)
        # No readiness handshake: running as soon as observers are attached
        tracked.record = replace(tracked.record, status=ProcessStatus.RUNNING)
        logger.info("Registered agent %s (pid %d)", agent_id, pid)
        self._emit(ProcessEventKind.SPAWNED, agent_id, pid)
        return tracked.record

    def _attach(self, agent_id: str, tracked: _TrackedProcess) -> None:
        # Observers are bound to this tracked entry so a reused agent_id never
        # receives a previous process's late output or exit
        def on_output(stream: str, chunk: str | bytes) -> None:
            if self._processes.get(agent_id) is tracked:
                self.capture_output(agent_id, stream, chunk)

        def on_exit(exit_code: int | None, exit_signal: str | None) -> None:
            self._handle_exit(agent_id, tracked, exit_code, exit_signal)

        def on_error(exc: BaseException) -> None:
            logger.warning("Agent %s process error: %s", agent_id, exc)
            self._emit(ProcessEventKind.ERROR, agent_id, exc)

        tracked.handle.add_output_listener(on_output)
        tracked.handle.add_exit_listener(on_exit)
        tracked.handle.add_error_listener(on_error)

    # --- output ---

    def capture_output(self, agent_id: str, stream: str, chunk: str | bytes) -> None:
        """Buffer non-blank lines of chunk (FIFO, bounded) and scan them for status markers."""
        tracked = self._processes.get(agent_id)
        if tracked is None:
            return
        if stream not in (STDOUT, STDERR):
            raise ValueError(f"Unknown stream {stream!r}")
        text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
        buffer = tracked.buffer(stream)
        for line in text.split("\n"):
            if not line.strip():
                continue
            # deque(maxlen=...) evicts the oldest line on append
            buffer.append(line)
            self._scan_markers(agent_id, line)
        self._emit(ProcessEventKind.OUTPUT, agent_id, stream, text)

    def _scan_markers(self, agent_id: str, line: str) -> None:
        for marker, pattern in STATUS_MARKERS.items():
            if pattern.search(line):
                logger.debug("Agent %s reported %s", agent_id, marker)
                self._emit(ProcessEventKind.STATUS_MARKER, agent_id, marker, line)

    def get_output(self, agent_id: str) -> ProcessOutput | None:
        tracked = self._processes.get(agent_id)
        if tracked is None:
            return None
        return ProcessOutput(stdout=list(tracked.stdout), stderr=list(tracked.stderr))

    # --- termination ---

    async def terminate_process(
        self, agent_id: str, timeout: float = DEFAULT_TERMINATE_TIMEOUT
    ) -> None:
        """Request stop, force stop after timeout seconds, return once exit is observed."""
        tracked = self._processes.get(agent_id)
        if tracked is None:
            raise ProcessNotFoundError(agent_id)
        if self._has_exited(tracked):
            return

        if tracked.kill_timer is None:
            logger.info("Terminating agent %s (pid %d)", agent_id, tracked.record.pid)
            if not tracked.handle.stop(StopLevel.REQUEST):
                self._report_signal_failure(agent_id, StopLevel.REQUEST)
            if not tracked.exited.is_set():
                loop = asyncio.get_running_loop()
                tracked.kill_timer = loop.call_later(
                    timeout, self._force_stop, agent_id, tracked
                )
        # A concurrent terminate_process call shares the pending escalation
        await tracked.exited.wait()

    def _force_stop(self, agent_id: str, tracked: _TrackedProcess) -> None:
        tracked.kill_timer = None
        # The handle may report exit before its streams are drained
        if self._has_exited(tracked):
            return
        logger.warning(
            "Agent %s (pid %d) did not exit in time; forcing stop",
            agent_id,
            tracked.record.pid,
        )
        if not tracked.handle.stop(StopLevel.FORCE):
            self._report_signal_failure(agent_id, StopLevel.FORCE)

    def _report_signal_failure(self, agent_id: str, level: StopLevel) -> None:
        error = SignalDeliveryError(f"Could not deliver {level.value} stop to agent {agent_id}")
        logger.warning("%s", error)
        self._emit(ProcessEventKind.ERROR, agent_id, error)

    async def terminate_all(self, timeout: float = DEFAULT_TERMINATE_TIMEOUT) -> None:
        """Terminate every running process concurrently."""
        agent_ids = [r.agent_id for r in self.get_active_processes()]
        if not agent_ids:
            return
        results = await asyncio.gather(
            *(self.terminate_process(a, timeout) for a in agent_ids),
            return_exceptions=True,
        )
        for agent_id, result in zip(agent_ids, results):
            # Purged between listing and terminating: nothing left to stop
            if isinstance(result, Exception) and not isinstance(result, ProcessNotFoundError):
                logger.error("Terminating agent %s failed: %s", agent_id, result)

    # --- exit ---

    def _handle_exit(
        self,
        agent_id: str,
        tracked: _TrackedProcess,
        exit_code: int | None,
        exit_signal: str | None,
    ) -> None:
        if tracked.exited.is_set():
            return
        if tracked.kill_timer is not None:
            tracked.kill_timer.cancel()
            tracked.kill_timer = None
        status = ProcessStatus.EXITED if exit_code == 0 else ProcessStatus.FAILED
        tracked.record = replace(
            tracked.record, status=status, exit_code=exit_code, exit_signal=exit_signal
        )
        tracked.exited.set()
        log = logger.info if status is ProcessStatus.EXITED else logger.warning
        log(
            "Agent %s (pid %d) %s: code=%s signal=%s",
            agent_id,
            tracked.record.pid,
            status.value,
            exit_code,
            exit_signal,
        )
        self._emit(ProcessEventKind.EXIT, agent_id, exit_code, exit_signal)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._purge(agent_id, tracked)
            return
        tracked.purge_timer = loop.call_later(self._purge_delay, self._purge, agent_id, tracked)

    def _purge(self, agent_id: str, tracked: _TrackedProcess) -> None:
        tracked.purge_timer = None
        if self._processes.get(agent_id) is tracked:
            del self._processes[agent_id]
            logger.debug("Purged agent %s", agent_id)

    # --- queries ---

    def _has_exited(self, tracked: _TrackedProcess) -> bool:
        return tracked.exited.is_set() or tracked.handle.has_exited

    def is_running(self, agent_id: str) -> bool:
        tracked = self._processes.get(agent_id)
        if tracked is None:
            return False
        return tracked.record.status is ProcessStatus.RUNNING and not tracked.handle.has_exited

    def get_active_processes(self) -> list[ProcessRecord]:
        return [
            tracked.record
            for agent_id, tracked in self._processes.items()
            if self.is_running(agent_id)
        ]

    def get_process_info(self, agent_id: str) -> ProcessRecord | None:
        tracked = self._processes.get(agent_id)
        return tracked.record if tracked is not None else None

    def get_process_metrics(self, agent_id: str) -> ProcessMetrics | None:
        tracked = self._processes.get(agent_id)
        if tracked is None:
            return None
        return ProcessMetrics(
            agent_id=agent_id,
            pid=tracked.record.pid,
            status=tracked.record.status,
            runtime=time.monotonic() - tracked.started,
            stdout_lines=len(tracked.stdout),
            stderr_lines=len(tracked.stderr),
        )

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._processes

    def __len__(self) -> int:
        return len(self._processes)
