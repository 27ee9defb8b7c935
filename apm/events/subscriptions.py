"""Subscription lifecycle on top of EventBus: handles, groups, TTL expiry, duplicate prevention."""

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from apm.events.bus import EventBus, Handler, SubscriptionHandle
from apm.events.models import EventEnvelope

logger = logging.getLogger(__name__)

_TOPIC_RE = re.compile(r"^[a-zA-Z0-9:*_-]+$")
_LEAK_WARNING_THRESHOLD = 50


@dataclass
class ManagedSubscription:
    """Tracked subscription. unsubscribe() is safe to call more than once."""

    id: str
    topic: str
    callback: Handler
    subscribed_at: float
    once: bool = False
    ttl: float | None = None
    expires_at: float | None = None
    group_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    _manager: "SubscriptionManager | None" = field(default=None, repr=False, compare=False)
    _bus_handle: SubscriptionHandle | None = field(default=None, repr=False, compare=False)

    def unsubscribe(self) -> None:
        if self._manager is not None:
            self._manager.unsubscribe(self.id)


@dataclass
class SubscriptionGroup:
    """Named set of subscriptions removed together."""

    id: str
    created_at: float
    subscription_ids: set[str] = field(default_factory=set)
    metadata: dict[str, Any] = field(default_factory=dict)


class SubscriptionManager:
    """Manage subscriptions on a bus with handles, groups and time-to-live."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._subscriptions: dict[str, ManagedSubscription] = {}
        self._groups: dict[str, SubscriptionGroup] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._total = 0
        self._expired = 0
        self._duplicates = 0

    def subscribe(
        self,
        topic: str,
        callback: Handler,
        *,
        once: bool = False,
        ttl: float | None = None,
        metadata: dict[str, Any] | None = None,
        group_id: str | None = None,
    ) -> ManagedSubscription:
        """Subscribe callback to topic. ttl is in seconds. Raises ValueError on a malformed topic."""
        if not _TOPIC_RE.match(topic):
            raise ValueError(f"Invalid topic format: {topic!r}")

        existing = self._find(topic, callback, group_id)
        if existing is not None:
            self._duplicates += 1
            logger.debug("Duplicate subscription to %s prevented", topic)
            return existing

        count = self.get_subscription_count(topic)
        if count >= _LEAK_WARNING_THRESHOLD:
            logger.warning(
                "Topic %s has %d subscriptions (threshold %d); possible listener leak",
                topic,
                count,
                _LEAK_WARNING_THRESHOLD,
            )

        # Raises before anything is registered when no loop is running
        loop = asyncio.get_running_loop() if ttl else None

        now = time.time()
        sub = ManagedSubscription(
            id=uuid.uuid4().hex,
            topic=topic,
            callback=callback,
            subscribed_at=now,
            once=once,
            ttl=ttl,
            expires_at=now + ttl if ttl else None,
            group_id=group_id,
            metadata=dict(metadata or {}),
            _manager=self,
        )
        if once:
            sub._bus_handle = self._bus.once(topic, self._once_wrapper(sub))
        else:
            sub._bus_handle = self._bus.on(topic, callback)
        self._subscriptions[sub.id] = sub

        if group_id is not None:
            self.create_group(group_id).subscription_ids.add(sub.id)
        if loop is not None:
            self._timers[sub.id] = loop.call_later(ttl, self._expire, sub.id)

        self._total += 1
        return sub

    def _once_wrapper(self, sub: ManagedSubscription) -> Handler:
        def deliver_once(envelope: EventEnvelope) -> Any:
            self._forget(sub.id)
            return sub.callback(envelope)

        return deliver_once

    def unsubscribe(self, subscription: ManagedSubscription | str) -> bool:
        sub_id = subscription if isinstance(subscription, str) else subscription.id
        sub = self._forget(sub_id)
        if sub is None:
            return False
        if sub._bus_handle is not None:
            sub._bus_handle.unsubscribe()
        return True

    def unsubscribe_from_topic(self, topic: str) -> int:
        ids = [s.id for s in self._subscriptions.values() if s.topic == topic]
        for sub_id in ids:
            self.unsubscribe(sub_id)
        return len(ids)

    def _forget(self, sub_id: str) -> ManagedSubscription | None:
        sub = self._subscriptions.pop(sub_id, None)
        if sub is None:
            return None
        timer = self._timers.pop(sub_id, None)
        if timer is not None:
            timer.cancel()
        if sub.group_id is not None and sub.group_id in self._groups:
            self._groups[sub.group_id].subscription_ids.discard(sub_id)
        return sub

    def _expire(self, sub_id: str) -> None:
        self._timers.pop(sub_id, None)
        sub = self._subscriptions.get(sub_id)
        if sub is None:
            return
        self.unsubscribe(sub_id)
        self._expired += 1
        logger.debug("Subscription %s to %s expired after %ss", sub_id, sub.topic, sub.ttl)

    def _find(
        self, topic: str, callback: Handler, group_id: str | None
    ) -> ManagedSubscription | None:
        for sub in self._subscriptions.values():
            if sub.topic == topic and sub.callback == callback and sub.group_id == group_id:
                return sub
        return None

    # --- groups ---

    def create_group(
        self, group_id: str, metadata: dict[str, Any] | None = None
    ) -> SubscriptionGroup:
        """Return the group, creating it if needed."""
        group = self._groups.get(group_id)
        if group is None:
            group = SubscriptionGroup(
                id=group_id, created_at=time.time(), metadata=dict(metadata or {})
            )
            self._groups[group_id] = group
        return group

    def subscribe_group(
        self, group_id: str, topic: str, callback: Handler, **options: Any
    ) -> ManagedSubscription:
        self.create_group(group_id)
        return self.subscribe(topic, callback, group_id=group_id, **options)

    def unsubscribe_group(self, group_id: str) -> int:
        group = self._groups.pop(group_id, None)
        if group is None:
            return 0
        ids = list(group.subscription_ids)
        for sub_id in ids:
            self.unsubscribe(sub_id)
        return len(ids)

    def get_group(self, group_id: str) -> SubscriptionGroup | None:
        return self._groups.get(group_id)

    def get_groups(self) -> list[SubscriptionGroup]:
        return list(self._groups.values())

    # --- introspection ---

    def list_subscriptions(self) -> list[ManagedSubscription]:
        return list(self._subscriptions.values())

    def get_topic_subscribers(self, topic: str) -> list[ManagedSubscription]:
        return [s for s in self._subscriptions.values() if s.topic == topic]

    def get_subscription_count(self, topic: str | None = None) -> int:
        if topic is None:
            return len(self._subscriptions)
        return len(self.get_topic_subscribers(topic))

    def get_stats(self) -> dict[str, int]:
        return {
            "total_subscriptions": self._total,
            "active_subscriptions": len(self._subscriptions),
            "expired_subscriptions": self._expired,
            "duplicate_prevented": self._duplicates,
            "group_count": len(self._groups),
            "active_timers": len(self._timers),
        }

    def clear(self) -> None:
        """Remove every managed subscription from the bus and drop all groups."""
        for sub_id in list(self._subscriptions):
            self.unsubscribe(sub_id)
        self._groups.clear()
