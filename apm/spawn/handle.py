"""Process handle contract consumed by the supervisor, and an asyncio subprocess adapter."""

import asyncio
import codecs
import logging
import signal
from enum import Enum
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

OutputListener = Callable[[str, "str | bytes"], None]
ExitListener = Callable[["int | None", "str | None"], None]
ErrorListener = Callable[[BaseException], None]

STDOUT = "stdout"
STDERR = "stderr"

_DEFAULT_CHUNK_SIZE = 4096
_DRAIN_TIMEOUT = 1.0
# A line longer than this is delivered in pieces
_MAX_LINE = 64 * 1024


class StopLevel(str, Enum):
    """Two-level termination. REQUEST is SIGTERM on POSIX, FORCE is SIGKILL.
    On Windows both map to TerminateProcess."""

    REQUEST = "request"
    FORCE = "force"


@runtime_checkable
class ProcessHandle(Protocol):
    """What a process launcher must hand to ProcessSupervisor.register_process()."""

    @property
    def pid(self) -> int | None:
        """OS process id; None if the process never started."""

    @property
    def has_exited(self) -> bool:
        """True once the OS reported the process gone."""

    def stop(self, level: StopLevel) -> bool:
        """Deliver a stop request. Returns False if delivery failed."""

    def add_output_listener(self, listener: OutputListener) -> None:
        """listener(stream, chunk) for output read from stdout/stderr."""

    def add_exit_listener(self, listener: ExitListener) -> None:
        """listener(exit_code, exit_signal) once, when the process exits."""

    def add_error_listener(self, listener: ErrorListener) -> None:
        """listener(exc) for spawn or stream failures."""


def split_returncode(returncode: int) -> tuple[int | None, str | None]:
    """asyncio reports death-by-signal as -signum; return (exit_code, signal_name)."""
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


class AsyncioProcessHandle:
    """ProcessHandle over asyncio.subprocess.Process.

    Output is decoded as UTF-8 and delivered to listeners as whole lines.
    Must be created inside a running event loop. Reader tasks start
    immediately; listeners registered before the next loop iteration see all
    output. The exit notification is delivered after both streams are drained
    (bounded by a short timeout).
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        chunk_size: int = _DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._process = process
        self._chunk_size = chunk_size
        self._output_listeners: list[OutputListener] = []
        self._exit_listeners: list[ExitListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._exit: tuple[int | None, str | None] | None = None
        loop = asyncio.get_running_loop()
        self._pumps: list[asyncio.Task[None]] = []
        if process.stdout is not None:
            self._pumps.append(loop.create_task(self._pump(STDOUT, process.stdout)))
        if process.stderr is not None:
            self._pumps.append(loop.create_task(self._pump(STDERR, process.stderr)))
        self._waiter = loop.create_task(self._wait())

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def process(self) -> asyncio.subprocess.Process:
        return self._process

    @property
    def has_exited(self) -> bool:
        return self._process.returncode is not None

    def stop(self, level: StopLevel) -> bool:
        try:
            if level is StopLevel.FORCE:
                self._process.kill()
            else:
                self._process.terminate()
        except ProcessLookupError:
            return False
        except OSError as e:
            logger.warning("Failed to deliver %s to pid %s: %s", level.value, self.pid, e)
            return False
        return True

    def add_output_listener(self, listener: OutputListener) -> None:
        self._output_listeners.append(listener)

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)
        if self._exit is not None:
            # Exit already reported: deliver late registrations on the next iteration
            asyncio.get_running_loop().call_soon(listener, *self._exit)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def wait(self) -> tuple[int | None, str | None]:
        """Wait until the exit notification was delivered."""
        await self._waiter
        assert self._exit is not None
        return self._exit

    async def _pump(self, stream: str, reader: asyncio.StreamReader) -> None:
        # Chunks are cut at arbitrary byte offsets; only whole lines are delivered
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        try:
            while True:
                chunk = await reader.read(self._chunk_size)
                if not chunk:
                    break
                pending += decoder.decode(chunk)
                head, newline, pending = pending.rpartition("\n")
                if newline:
                    self._deliver(stream, head + newline)
                if len(pending) > _MAX_LINE:
                    self._deliver(stream, pending)
                    pending = ""
            pending += decoder.decode(b"", final=True)
            if pending:
                self._deliver(stream, pending)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Reading %s of pid %s failed: %s", stream, self.pid, e)
            for listener in list(self._error_listeners):
                self._call(listener, e)

    async def _wait(self) -> None:
        returncode = await self._process.wait()
        if self._pumps:
            _, pending = await asyncio.wait(self._pumps, timeout=_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
        self._exit = split_returncode(returncode)
        for listener in list(self._exit_listeners):
            self._call(listener, *self._exit)

    def _deliver(self, stream: str, text: str) -> None:
        for listener in list(self._output_listeners):
            self._call(listener, stream, text)

    def _call(self, listener: Callable[..., None], *args: object) -> None:
        try:
            listener(*args)
        except Exception:
            logger.exception("Process handle listener failed (pid %s)", self.pid)
