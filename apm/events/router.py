"""Message routing on top of EventBus.

Router subscribers are kept in the router's own registry and invoked in
priority order (HIGH, NORMAL, LOW; first-subscribed first within a level) by a
single catch-all bus subscription. Routing rules attach a default priority and,
for patterns containing regex syntax, a regular expression matcher. route()
publishes through the bus, so plain bus subscribers receive routed messages too.
"""

import inspect
import itertools
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from apm.events.bus import EventBus, Handler, SubscriptionHandle
from apm.events.matching import MULTI, topic_matches
from apm.events.models import EventEnvelope

logger = logging.getLogger(__name__)

_REGEX_SYNTAX = re.compile(r"[.+?^${}()|\[\]\\]")
_MAX_TIMING_SAMPLES = 1000


class SubscriberPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


_PRIORITY_ORDER = {
    SubscriberPriority.HIGH: 0,
    SubscriberPriority.NORMAL: 1,
    SubscriberPriority.LOW: 2,
}


@dataclass
class RouterSubscriber:
    id: str
    pattern: str
    callback: Handler
    priority: SubscriberPriority
    subscribed_at: float
    metadata: dict[str, Any] = field(default_factory=dict)
    seq: int = 0


@dataclass(frozen=True)
class RoutingRule:
    pattern: str
    priority: SubscriberPriority
    description: str | None
    regex: re.Pattern[str] | None
    created_at: float


@dataclass(frozen=True)
class RoutingResult:
    """delivered counts every handler reached, router subscribers and plain bus subscribers alike."""

    delivered: int
    failed: int
    topics: list[str]
    matched_subscribers: int


@dataclass(frozen=True)
class RoutingStats:
    total_routed: int
    routed_per_topic: dict[str, int]
    subscriber_invocations: dict[str, int]
    average_routing_time: float  # ms, over the last 1000 routes
    failed_routing_attempts: int
    no_subscribers_count: int
    subscriber_failures: int


def compile_pattern(pattern: str) -> re.Pattern[str] | None:
    """Regex for patterns that contain regex syntax; None for plain topic patterns."""
    if not _REGEX_SYNTAX.search(pattern):
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning("Routing pattern %r is not a valid regex: %s", pattern, e)
        return None


class MessageRouter:
    """Route messages to priority-ordered subscribers through an EventBus."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._registry: dict[str, list[RouterSubscriber]] = {}
        self._rules: dict[str, RoutingRule] = {}
        self._seq = itertools.count()
        self._bus_handle: SubscriptionHandle | None = None
        self._reset_counters()

    # --- subscribers ---

    def subscribe(
        self,
        pattern: str,
        subscriber_id: str,
        callback: Handler,
        priority: SubscriberPriority | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RouterSubscriber:
        """Add a subscriber. Without an explicit priority the pattern's routing rule decides."""
        if not callable(callback):
            raise TypeError(f"callback for {subscriber_id!r} is not callable")
        if priority is None:
            rule = self._rules.get(pattern)
            priority = rule.priority if rule is not None else SubscriberPriority.NORMAL
        sub = RouterSubscriber(
            id=subscriber_id,
            pattern=pattern,
            callback=callback,
            priority=SubscriberPriority(priority),
            subscribed_at=time.time(),
            metadata=dict(metadata or {}),
            seq=next(self._seq),
        )
        self._registry.setdefault(pattern, []).append(sub)
        self._ensure_dispatcher()
        return sub

    def unsubscribe(self, pattern: str, subscriber_id: str) -> bool:
        subs = self._registry.get(pattern)
        if not subs:
            return False
        for i, sub in enumerate(subs):
            if sub.id == subscriber_id:
                del subs[i]
                if not subs:
                    del self._registry[pattern]
                if not self._registry:
                    self._release_dispatcher()
                return True
        return False

    def get_matching_subscribers(self, topic: str) -> list[RouterSubscriber]:
        """Subscribers whose pattern matches topic, in delivery order."""
        matched = [
            sub
            for pattern, subs in self._registry.items()
            if self._matches(pattern, topic)
            for sub in subs
        ]
        matched.sort(key=lambda s: (_PRIORITY_ORDER[s.priority], s.seq))
        return matched

    def get_all_subscribers(self) -> dict[str, list[RouterSubscriber]]:
        return {pattern: list(subs) for pattern, subs in self._registry.items()}

    def get_subscriber_count(self, pattern: str | None = None) -> int:
        if pattern is not None:
            return len(self._registry.get(pattern, ()))
        return sum(len(subs) for subs in self._registry.values())

    def _matches(self, pattern: str, topic: str) -> bool:
        if topic_matches(pattern, topic):
            return True
        rule = self._rules.get(pattern)
        return rule is not None and rule.regex is not None and rule.regex.search(topic) is not None

    # --- bus wiring ---

    def _ensure_dispatcher(self) -> None:
        # bus.shutdown() drops the subscription; re-register on demand
        if self._bus_handle is None or not self._bus_handle.active:
            self._bus_handle = self._bus.on(MULTI, self._dispatch)

    def _release_dispatcher(self) -> None:
        if self._bus_handle is not None:
            self._bus_handle.unsubscribe()
            self._bus_handle = None

    async def _dispatch(self, envelope: EventEnvelope) -> None:
        for sub in self.get_matching_subscribers(envelope.topic):
            self._invocations[sub.id] = self._invocations.get(sub.id, 0) + 1
            try:
                result = sub.callback(envelope)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._subscriber_failures += 1
                logger.exception(
                    "Router subscriber %s failed on %s/%s",
                    sub.id,
                    envelope.topic,
                    envelope.metadata.event_id,
                )

    # --- routing ---

    async def route(
        self, topic: str, data: Any = None, publisher_id: str | None = None
    ) -> RoutingResult:
        """Publish data on topic through the bus and account for it."""
        started = time.perf_counter()
        if self._registry:
            self._ensure_dispatcher()
        matched = len(self.get_matching_subscribers(topic))
        via_dispatcher = self._bus_handle is not None
        try:
            bus_matched = await self._bus.publish(topic, data, publisher_id)
        except Exception:
            self._failed_routing_attempts += 1
            raise

        # The catch-all dispatcher stands in for the router's own subscribers
        delivered = bus_matched
        if via_dispatcher and bus_matched:
            delivered = bus_matched - 1 + matched

        self._total_routed += 1
        self._routed_per_topic[topic] = self._routed_per_topic.get(topic, 0) + 1
        self._timings.append((time.perf_counter() - started) * 1000.0)
        if delivered == 0:
            self._no_subscribers += 1
            logger.debug("No subscribers for routed topic %s", topic)
        return RoutingResult(
            delivered=delivered,
            failed=0 if delivered else 1,
            topics=[topic],
            matched_subscribers=matched,
        )

    # --- rules ---

    def add_routing_rule(
        self,
        pattern: str,
        priority: SubscriberPriority | str = SubscriberPriority.NORMAL,
        description: str | None = None,
    ) -> RoutingRule:
        """Add or replace the rule for pattern."""
        rule = RoutingRule(
            pattern=pattern,
            priority=SubscriberPriority(priority),
            description=description,
            regex=compile_pattern(pattern),
            created_at=time.time(),
        )
        self._rules[pattern] = rule
        return rule

    def remove_routing_rule(self, pattern: str) -> bool:
        return self._rules.pop(pattern, None) is not None

    def get_routing_rules(self) -> list[RoutingRule]:
        return list(self._rules.values())

    # --- statistics ---

    def _reset_counters(self) -> None:
        self._total_routed = 0
        self._routed_per_topic: dict[str, int] = {}
        self._invocations: dict[str, int] = {}
        self._timings: deque[float] = deque(maxlen=_MAX_TIMING_SAMPLES)
        self._failed_routing_attempts = 0
        self._no_subscribers = 0
        self._subscriber_failures = 0

    def get_stats(self) -> RoutingStats:
        average = sum(self._timings) / len(self._timings) if self._timings else 0.0
        return RoutingStats(
            total_routed=self._total_routed,
            routed_per_topic=dict(self._routed_per_topic),
            subscriber_invocations=dict(self._invocations),
            average_routing_time=average,
            failed_routing_attempts=self._failed_routing_attempts,
            no_subscribers_count=self._no_subscribers,
            subscriber_failures=self._subscriber_failures,
        )

    def reset_stats(self) -> None:
        self._reset_counters()

    def clear(self) -> None:
        """Drop subscribers, rules and statistics and detach from the bus."""
        self._registry.clear()
        self._rules.clear()
        self._release_dispatcher()
        self._reset_counters()
