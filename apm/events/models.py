"""Event Bus data model: envelopes, emission modes, dispatch results, statistics."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = [
    "BusStatistics",
    "Cancel",
    "Continue",
    "DispatchResult",
    "EmissionMode",
    "EventEnvelope",
    "EventMetadata",
]


class EmissionMode(str, Enum):
    """Fan-out discipline for one publish call."""

    ASYNC = "async"  # fire-and-forget, publish does not wait
    SYNC = "sync"  # one handler at a time, registration order, cancellable
    PARALLEL = "parallel"  # all handlers at once, publish waits for all to settle


@dataclass(frozen=True)
class EventMetadata:
    """Injected by the bus on every publish."""

    event_id: str
    timestamp: float
    sequence_number: int
    publisher_id: str | None = None


@dataclass(frozen=True)
class EventEnvelope:
    """Immutable event passed to handlers."""

    topic: str
    data: Any
    metadata: EventMetadata


@dataclass(frozen=True)
class Continue:
    """Handler result: keep dispatching. Same as returning anything else."""


@dataclass(frozen=True)
class Cancel:
    """Handler result: stop dispatch for the current SYNC publish."""

    reason: str = ""


DispatchResult = Continue | Cancel


@dataclass(frozen=True)
class BusStatistics:
    """Snapshot of bus counters. average_delivery_time is in milliseconds."""

    total_published: int = 0
    total_delivered: int = 0
    total_cancelled: int = 0
    topic_counts: dict[str, int] = field(default_factory=dict)
    average_delivery_time: float = 0.0
    current_sequence: int = 0
