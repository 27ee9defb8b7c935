"""Agent spawning: process handles, supervisor, launcher and the bus bridge."""

from apm.spawn.bridge import SupervisorEventBridge
from apm.spawn.errors import (
    DuplicateProcessError,
    ErrorCategory,
    InvalidProcessHandleError,
    ProcessNotFoundError,
    SignalDeliveryError,
    SpawnErrorCode,
    SpawnErrorInfo,
    SupervisorError,
    classify_exit,
    classify_spawn_error,
)
from apm.spawn.handle import AsyncioProcessHandle, ProcessHandle, StopLevel
from apm.spawn.launcher import AgentLauncher, SpawnResult, check_available
from apm.spawn.process_manager import (
    STATUS_MARKERS,
    ProcessEventKind,
    ProcessMetrics,
    ProcessOutput,
    ProcessRecord,
    ProcessStatus,
    ProcessSupervisor,
)

__all__ = [
    "AgentLauncher",
    "AsyncioProcessHandle",
    "DuplicateProcessError",
    "ErrorCategory",
    "InvalidProcessHandleError",
    "ProcessEventKind",
    "ProcessHandle",
    "ProcessMetrics",
    "ProcessNotFoundError",
    "ProcessOutput",
    "ProcessRecord",
    "ProcessStatus",
    "ProcessSupervisor",
    "STATUS_MARKERS",
    "SignalDeliveryError",
    "SpawnErrorCode",
    "SpawnErrorInfo",
    "SpawnResult",
    "StopLevel",
    "SupervisorError",
    "SupervisorEventBridge",
    "check_available",
    "classify_exit",
    "classify_spawn_error",
]
