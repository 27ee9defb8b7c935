"""In-memory hierarchical event bus: match topic → dispatch to subscribers.
No persistence, no scheduling. Subscriptions are matched on every publish."""

import asyncio
import inspect
import itertools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from apm.events.matching import specificity, topic_matches
from apm.events.models import (
    BusStatistics,
    Cancel,
    EmissionMode,
    EventEnvelope,
    EventMetadata,
)
from apm.events.topics import RESERVED_TOPICS, SystemTopics

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], Any]


@dataclass
class Subscription:
    """One registration of a handler under a literal pattern."""

    id: int
    pattern: str
    handler: Handler
    once: bool = False


class SubscriptionHandle:
    """Returned by on()/once(). unsubscribe() removes exactly this registration."""

    def __init__(self, bus: "EventBus", subscription: Subscription) -> None:
        self._bus = bus
        self._subscription = subscription

    @property
    def id(self) -> int:
        return self._subscription.id

    @property
    def pattern(self) -> str:
        return self._subscription.pattern

    @property
    def active(self) -> bool:
        return self._bus._contains(self._subscription)

    def unsubscribe(self) -> bool:
        return self._bus._remove(self._subscription)

    def __repr__(self) -> str:
        return f"SubscriptionHandle(id={self.id}, pattern={self.pattern!r})"


class EventBus:
    """Topic-based publish/subscribe with * and ** wildcards and three emission modes."""

    def __init__(
        self,
        default_mode: EmissionMode | str = EmissionMode.ASYNC,
        topic_modes: dict[str, EmissionMode | str] | None = None,
    ) -> None:
        self._default_mode = EmissionMode(default_mode)
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._topic_modes: dict[str, EmissionMode] = {}
        self._ids = itertools.count(1)
        self._sequence = 0
        self._tasks: set[asyncio.Task[Any]] = set()
        self._reset_counters()
        for pattern, mode in (topic_modes or {}).items():
            self.set_topic_mode(pattern, mode)

    # --- subscriptions ---

    def on(self, pattern: str, handler: Handler) -> SubscriptionHandle:
        """Register handler under the literal pattern."""
        return self._add(pattern, handler, once=False)

    def once(self, pattern: str, handler: Handler) -> SubscriptionHandle:
        """Register handler that is removed after its first matching publish."""
        return self._add(pattern, handler, once=True)

    def off(self, pattern: str, handler: Handler) -> bool:
        """Remove one registration of handler under exactly this pattern."""
        subs = self._subscriptions.get(pattern)
        if not subs:
            return False
        for sub in subs:
            if sub.handler == handler:
                return self._remove(sub)
        return False

    def remove_all_listeners(self, pattern: str | None = None) -> None:
        if pattern is None:
            self._subscriptions.clear()
        else:
            self._subscriptions.pop(pattern, None)

    def listener_count(self, pattern: str | None = None) -> int:
        if pattern is not None:
            return len(self._subscriptions.get(pattern, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def listeners(self, pattern: str) -> list[Handler]:
        return [sub.handler for sub in self._subscriptions.get(pattern, ())]

    def event_names(self) -> list[str]:
        """Patterns with at least one subscriber, in first-registration order."""
        return [pattern for pattern, subs in self._subscriptions.items() if subs]

    def _add(self, pattern: str, handler: Handler, once: bool) -> SubscriptionHandle:
        if not callable(handler):
            raise TypeError(f"handler for {pattern!r} is not callable")
        sub = Subscription(id=next(self._ids), pattern=pattern, handler=handler, once=once)
        self._subscriptions.setdefault(pattern, []).append(sub)
        return SubscriptionHandle(self, sub)

    def _contains(self, sub: Subscription) -> bool:
        return any(s is sub for s in self._subscriptions.get(sub.pattern, ()))

    def _remove(self, sub: Subscription) -> bool:
        subs = self._subscriptions.get(sub.pattern)
        if not subs:
            return False
        for i, s in enumerate(subs):
            if s is sub:
                del subs[i]
                if not subs:
                    del self._subscriptions[sub.pattern]
                return True
        return False

    def _resolve(self, topic: str) -> list[Subscription]:
        """Matching subscriptions in registration order. once-subscriptions are consumed here."""
        matched = [
            sub
            for pattern, subs in self._subscriptions.items()
            if topic_matches(pattern, topic)
            for sub in subs
        ]
        matched.sort(key=lambda s: s.id)
        for sub in matched:
            if sub.once:
                self._remove(sub)
        return matched

    # --- emission modes ---

    def set_topic_mode(self, pattern: str, mode: EmissionMode | str) -> None:
        self._topic_modes[pattern] = EmissionMode(mode)

    def get_topic_mode(self, topic: str) -> EmissionMode:
        """Most specific matching override, else the bus default."""
        if topic in self._topic_modes:
            return self._topic_modes[topic]
        candidates = [p for p in self._topic_modes if topic_matches(p, topic)]
        if not candidates:
            return self._default_mode
        return self._topic_modes[max(candidates, key=specificity)]

    # --- publish ---

    async def publish(
        self,
        topic: str,
        data: Any = None,
        publisher_id: str | None = None,
        mode: EmissionMode | str | None = None,
    ) -> int:
        """Wrap data in an envelope and dispatch it. Returns the number of matched subscriptions."""
        self._sequence += 1
        envelope = EventEnvelope(
            topic=topic,
            data=data,
            metadata=EventMetadata(
                event_id=uuid.uuid4().hex,
                timestamp=time.time(),
                sequence_number=self._sequence,
                publisher_id=publisher_id,
            ),
        )
        self._total_published += 1
        self._topic_counts[topic] = self._topic_counts.get(topic, 0) + 1

        effective = EmissionMode(mode) if mode is not None else self.get_topic_mode(topic)
        matched = self._resolve(topic)
        if not matched:
            return 0

        started = time.perf_counter()
        if effective is EmissionMode.SYNC:
            await self._dispatch_sync(matched, envelope)
        elif effective is EmissionMode.PARALLEL:
            await self._dispatch_parallel(matched, envelope)
        else:
            self._dispatch_async(matched, envelope)
        self._record_delivery((time.perf_counter() - started) * 1000.0)
        return len(matched)

    def _dispatch_async(self, matched: list[Subscription], envelope: EventEnvelope) -> None:
        for sub in matched:
            self._spawn(self._invoke_guarded(sub, envelope))

    async def _dispatch_sync(self, matched: list[Subscription], envelope: EventEnvelope) -> None:
        for sub in matched:
            try:
                result = await self._invoke(sub, envelope)
            except Exception as e:
                self._report_listener_error(sub, envelope, e)
                continue
            if isinstance(result, Cancel):
                self._report_cancellation(envelope, result)
                break

    async def _dispatch_parallel(
        self, matched: list[Subscription], envelope: EventEnvelope
    ) -> None:
        results = await asyncio.gather(
            *(self._invoke(sub, envelope) for sub in matched),
            return_exceptions=True,
        )
        for sub, result in zip(matched, results):
            if isinstance(result, Exception):
                self._report_listener_error(sub, envelope, result)

    async def _invoke(self, sub: Subscription, envelope: EventEnvelope) -> Any:
        result = sub.handler(envelope)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _invoke_guarded(self, sub: Subscription, envelope: EventEnvelope) -> None:
        # ASYNC mode: a returned Cancel is ordinary data
        try:
            await self._invoke(sub, envelope)
        except Exception as e:
            self._report_listener_error(sub, envelope, e)

    def _report_listener_error(
        self, sub: Subscription, envelope: EventEnvelope, error: Exception
    ) -> None:
        logger.error(
            "EventBus handler for %r failed on %s/%s: %s",
            sub.pattern,
            envelope.topic,
            envelope.metadata.event_id,
            error,
            exc_info=error,
        )
        if envelope.topic in RESERVED_TOPICS:
            return
        self._spawn(
            self.publish(
                SystemTopics.LISTENER_ERROR,
                {
                    "topic": envelope.topic,
                    "event_id": envelope.metadata.event_id,
                    "error": error,
                },
            )
        )

    def _report_cancellation(self, envelope: EventEnvelope, cancel: Cancel) -> None:
        self._total_cancelled += 1
        logger.debug(
            "EventBus: dispatch of %s/%s cancelled: %s",
            envelope.topic,
            envelope.metadata.event_id,
            cancel.reason,
        )
        if envelope.topic in RESERVED_TOPICS:
            return
        self._spawn(
            self.publish(
                SystemTopics.EVENT_CANCELLED,
                {
                    "topic": envelope.topic,
                    "event_id": envelope.metadata.event_id,
                    "reason": cancel.reason,
                },
            )
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every in-flight ASYNC handler and meta-topic publish has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- statistics ---

    def _reset_counters(self) -> None:
        self._total_published = 0
        self._total_delivered = 0
        self._total_cancelled = 0
        self._topic_counts: dict[str, int] = {}
        self._average_delivery_time = 0.0

    def _record_delivery(self, elapsed_ms: float) -> None:
        self._total_delivered += 1
        self._average_delivery_time += (
            elapsed_ms - self._average_delivery_time
        ) / self._total_delivered

    def get_stats(self) -> BusStatistics:
        return BusStatistics(
            total_published=self._total_published,
            total_delivered=self._total_delivered,
            total_cancelled=self._total_cancelled,
            topic_counts=dict(self._topic_counts),
            average_delivery_time=self._average_delivery_time,
            current_sequence=self._sequence,
        )

    def reset_stats(self) -> None:
        """Zero all counters. Subscriptions and the sequence counter are kept."""
        self._reset_counters()

    def shutdown(self) -> None:
        """Drop subscriptions, topic modes and counters. The bus stays usable."""
        self._subscriptions.clear()
        self._topic_modes.clear()
        self._reset_counters()
        self._sequence = 0
        logger.info("EventBus shut down")


_global_bus: EventBus | None = None


def get_event_bus(
    default_mode: EmissionMode | str = EmissionMode.ASYNC,
    topic_modes: dict[str, EmissionMode | str] | None = None,
) -> EventBus:
    """Process-wide bus. Arguments are only used on the first call."""
    global _global_bus
    if _global_bus is None:
        _global_bus = EventBus(default_mode=default_mode, topic_modes=topic_modes)
    return _global_bus


def reset_event_bus() -> None:
    """Shut down and forget the process-wide bus. Used by tests."""
    global _global_bus
    if _global_bus is not None:
        _global_bus.shutdown()
        _global_bus = None
