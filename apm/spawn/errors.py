"""Supervisor exceptions and spawn failure classification."""

import asyncio
import errno
from dataclasses import dataclass
from enum import Enum


class SupervisorError(Exception):
    """Base class for process supervisor precondition failures."""


class DuplicateProcessError(SupervisorError):
    """agent_id is already tracked."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Process with agent_id {agent_id!r} is already registered")
        self.agent_id = agent_id


class InvalidProcessHandleError(SupervisorError):
    """Handle has no usable process id."""


class ProcessNotFoundError(SupervisorError, LookupError):
    """agent_id is not tracked (never registered or already purged)."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Process with agent_id {agent_id!r} not found")
        self.agent_id = agent_id


class SignalDeliveryError(SupervisorError):
    """A stop request could not be delivered to the process."""


class SpawnErrorCode(str, Enum):
    """SPAWN_E### codes reported by the launcher."""

    CLI_NOT_FOUND = "SPAWN_E001"
    CLI_NOT_EXECUTABLE = "SPAWN_E002"
    SPAWN_FAILED = "SPAWN_E010"
    SPAWN_TIMEOUT = "SPAWN_E011"
    TOO_MANY_FILES = "SPAWN_E012"
    RESOURCE_UNAVAILABLE = "SPAWN_E013"
    PERMISSION_DENIED = "SPAWN_E014"
    PROCESS_CRASHED = "SPAWN_E030"
    PROCESS_KILLED = "SPAWN_E031"
    PROCESS_ERROR_EXIT = "SPAWN_E032"
    UNKNOWN_ERROR = "SPAWN_E999"


class ErrorCategory(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SpawnErrorInfo:
    """Classified spawn failure with operator guidance."""

    code: SpawnErrorCode
    category: ErrorCategory
    message: str
    guidance: str

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT


_ERRNO_MAP: dict[int, tuple[SpawnErrorCode, ErrorCategory, str]] = {
    errno.ENOENT: (
        SpawnErrorCode.CLI_NOT_FOUND,
        ErrorCategory.PERMANENT,
        "Install the agent executable or fix the command in supervisor.agents",
    ),
    errno.EACCES: (
        SpawnErrorCode.PERMISSION_DENIED,
        ErrorCategory.PERMANENT,
        "Make the executable runnable (chmod +x) or run with sufficient permissions",
    ),
    errno.EAGAIN: (
        SpawnErrorCode.RESOURCE_UNAVAILABLE,
        ErrorCategory.TRANSIENT,
        "System is out of process slots; retry after other agents exit",
    ),
    errno.EMFILE: (
        SpawnErrorCode.TOO_MANY_FILES,
        ErrorCategory.TRANSIENT,
        "Too many open files; raise the descriptor limit or run fewer agents",
    ),
    errno.ETIMEDOUT: (
        SpawnErrorCode.SPAWN_TIMEOUT,
        ErrorCategory.TRANSIENT,
        "Spawn timed out; retry",
    ),
}


def classify_spawn_error(exc: BaseException) -> SpawnErrorInfo:
    """Map an exception raised while spawning to a code and retry category."""
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        code, category, guidance = _ERRNO_MAP[errno.ETIMEDOUT]
        return SpawnErrorInfo(code, category, str(exc) or "spawn timed out", guidance)
    if isinstance(exc, OSError) and exc.errno in _ERRNO_MAP:
        code, category, guidance = _ERRNO_MAP[exc.errno]
        return SpawnErrorInfo(code, category, str(exc), guidance)
    if isinstance(exc, OSError):
        return SpawnErrorInfo(
            SpawnErrorCode.SPAWN_FAILED,
            ErrorCategory.UNKNOWN,
            str(exc),
            "Check the command, working directory and environment",
        )
    return SpawnErrorInfo(
        SpawnErrorCode.UNKNOWN_ERROR,
        ErrorCategory.UNKNOWN,
        str(exc),
        "Unexpected error; see logs",
    )


def classify_exit(exit_code: int | None, exit_signal: str | None) -> SpawnErrorCode | None:
    """Code for an abnormal exit, or None for a clean exit."""
    if exit_code == 0:
        return None
    if exit_signal is not None:
        return SpawnErrorCode.PROCESS_KILLED
    if exit_code is not None and exit_code > 0:
        return SpawnErrorCode.PROCESS_ERROR_EXIT
    return SpawnErrorCode.PROCESS_CRASHED
