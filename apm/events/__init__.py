"""Event Bus: in-memory topic pub/sub, subscription management and message routing."""

from apm.events.bus import (
    EventBus,
    Handler,
    SubscriptionHandle,
    get_event_bus,
    reset_event_bus,
)
from apm.events.matching import topic_matches
from apm.events.models import (
    BusStatistics,
    Cancel,
    Continue,
    DispatchResult,
    EmissionMode,
    EventEnvelope,
    EventMetadata,
)
from apm.events.router import (
    MessageRouter,
    RouterSubscriber,
    RoutingResult,
    RoutingRule,
    RoutingStats,
    SubscriberPriority,
)
from apm.events.subscriptions import (
    ManagedSubscription,
    SubscriptionGroup,
    SubscriptionManager,
)
from apm.events.topics import (
    AgentTopics,
    MessageTopics,
    SystemTopics,
    broadcast_topic,
    direct_topic,
    type_topic,
)

__all__ = [
    "AgentTopics",
    "BusStatistics",
    "Cancel",
    "Continue",
    "DispatchResult",
    "EmissionMode",
    "EventBus",
    "EventEnvelope",
    "EventMetadata",
    "Handler",
    "ManagedSubscription",
    "MessageRouter",
    "MessageTopics",
    "RouterSubscriber",
    "RoutingResult",
    "RoutingRule",
    "RoutingStats",
    "SubscriberPriority",
    "SubscriptionGroup",
    "SubscriptionHandle",
    "SubscriptionManager",
    "SystemTopics",
    "broadcast_topic",
    "direct_topic",
    "get_event_bus",
    "reset_event_bus",
    "topic_matches",
    "type_topic",
]
