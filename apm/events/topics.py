"""Reserved bus topics, the agent topic namespace and message routing topics."""


class SystemTopics:
    """Meta-topics published only by the bus itself."""

    # A SYNC-mode handler returned Cancel(reason). {topic, event_id, reason}
    EVENT_CANCELLED = "event-cancelled"

    # A handler raised. {topic, event_id, error: the exception}
    LISTENER_ERROR = "listener-error"


RESERVED_TOPICS = frozenset({SystemTopics.EVENT_CANCELLED, SystemTopics.LISTENER_ERROR})


class AgentTopics:
    """Topics the supervisor bridge publishes for agent processes."""

    # agent:spawned:<agent_id>. {agent_id, pid}
    SPAWNED = "agent:spawned"

    # agent:output:<stdout|stderr>. {agent_id, stream, data}
    OUTPUT = "agent:output"

    # agent:status:<ready|error|complete|blocked>. {agent_id, marker, line}
    STATUS = "agent:status"

    # Exit code 0. {agent_id, exit_code, exit_signal}
    EXITED = "agent:exited"

    # Any other exit. {agent_id, exit_code, exit_signal, code: SPAWN_E03x}
    FAILED = "agent:failed"

    # Spawn, stream or signal failure. {agent_id, error: str, code?: SPAWN_E###}
    ERROR = "agent:error"

    # Subscribe to everything agent related
    ALL = "agent:**"


class MessageTopics:
    """Agent-to-agent message routing. Payloads are free-form."""

    # message:direct:<receiver_id>
    DIRECT = "message:direct"

    BROADCAST = "message:broadcast"

    # message:type:<agent_type>
    TYPE = "message:type"


def spawned_topic(agent_id: str) -> str:
    return f"{AgentTopics.SPAWNED}:{agent_id}"


def output_topic(stream: str) -> str:
    return f"{AgentTopics.OUTPUT}:{stream}"


def status_topic(marker: str) -> str:
    return f"{AgentTopics.STATUS}:{marker.lower()}"


def direct_topic(receiver_id: str) -> str:
    return f"{MessageTopics.DIRECT}:{receiver_id}"


def broadcast_topic() -> str:
    return MessageTopics.BROADCAST


def type_topic(agent_type: str) -> str:
    return f"{MessageTopics.TYPE}:{agent_type}"
