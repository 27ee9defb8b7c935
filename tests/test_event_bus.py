"""Tests for EventBus: matching, emission modes, cancellation, errors, statistics."""

import asyncio
import time

import pytest

from apm.events import (
    Cancel,
    Continue,
    EmissionMode,
    EventBus,
    EventEnvelope,
    SystemTopics,
    get_event_bus,
    reset_event_bus,
    topic_matches,
)


@pytest.fixture
async def event_bus() -> EventBus:
    bus = EventBus()
    yield bus
    await bus.drain()
    bus.shutdown()


class TestTopicMatching:
    """Wildcard semantics for * and **."""

    @pytest.mark.parametrize(
        "pattern,topic,expected",
        [
            ("agent:*", "agent:spawned", True),
            ("agent:*", "agent:terminated", True),
            ("agent:*", "agent:spawned:manager", False),
            ("agent:*", "agent", False),
            ("agent:*:manager", "agent:spawned:manager", True),
            ("agent:*:manager", "agent:spawned:impl", False),
            ("*:spawned", "agent:spawned", True),
            ("agent:**", "agent:spawned", True),
            ("agent:**", "agent:spawned:manager", True),
            ("agent:**", "agent:terminated:impl", True),
            ("agent:**", "task:completed", False),
            ("agent:**:impl", "agent:terminated:impl", True),
            ("agent:**:impl", "agent:impl", True),
            ("agent:**:impl", "agent:terminated:manager", False),
            ("**", "anything:at:all", True),
            ("**", "listener-error", True),
            ("task:completed", "task:completed", True),
            ("task:completed", "task:completed:1.2", False),
            ("task:completed", "task", False),
        ],
    )
    def test_topic_matches(self, pattern: str, topic: str, expected: bool) -> None:
        assert topic_matches(pattern, topic) is expected


class TestSubscribe:
    """on / once / off / introspection."""

    @pytest.mark.asyncio
    async def test_handlers_keyed_by_literal_pattern(self, event_bus: EventBus) -> None:
        event_bus.on("agent:*", lambda e: None)
        event_bus.on("agent:*", lambda e: None)
        event_bus.on("agent:spawned", lambda e: None)

        assert event_bus.listener_count("agent:*") == 2
        assert event_bus.listener_count("agent:spawned") == 1
        assert event_bus.listener_count("agent:terminated") == 0
        assert event_bus.listener_count() == 3
        assert event_bus.event_names() == ["agent:*", "agent:spawned"]

    @pytest.mark.asyncio
    async def test_off_removes_only_from_exact_pattern(self, event_bus: EventBus) -> None:
        def handler(event: EventEnvelope) -> None:
            pass

        event_bus.on("agent:*", handler)
        event_bus.on("agent:spawned", handler)

        assert event_bus.off("agent:spawned", handler) is True
        assert event_bus.off("agent:spawned", handler) is False
        assert event_bus.listener_count("agent:*") == 1
        assert event_bus.event_names() == ["agent:*"]

    @pytest.mark.asyncio
    async def test_handle_unsubscribe(self, event_bus: EventBus) -> None:
        received: list[str] = []
        handle = event_bus.on("task:completed", lambda e: received.append(e.topic))

        assert handle.active
        assert handle.unsubscribe() is True
        assert handle.unsubscribe() is False
        assert await event_bus.publish("task:completed", {}, mode=EmissionMode.SYNC) == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_once_fires_a_single_time(self, event_bus: EventBus) -> None:
        received: list[int] = []
        event_bus.once("task:*", lambda e: received.append(e.data))

        assert await event_bus.publish("task:completed", 1, mode="sync") == 1
        assert await event_bus.publish("task:completed", 2, mode="sync") == 0
        assert received == [1]
        assert event_bus.listener_count() == 0

    @pytest.mark.asyncio
    async def test_remove_all_listeners(self, event_bus: EventBus) -> None:
        event_bus.on("a", lambda e: None)
        event_bus.on("b", lambda e: None)
        event_bus.on("b", lambda e: None)

        event_bus.remove_all_listeners("b")
        assert event_bus.listener_count() == 1
        event_bus.remove_all_listeners()
        assert event_bus.listener_count() == 0
        assert event_bus.event_names() == []

    @pytest.mark.asyncio
    async def test_listeners_returns_copy(self, event_bus: EventBus) -> None:
        def handler(event: EventEnvelope) -> None:
            pass

        event_bus.on("a", handler)
        listeners = event_bus.listeners("a")
        listeners.clear()
        assert event_bus.listeners("a") == [handler]


class TestPublishAsync:
    """Default fire-and-forget mode."""

    @pytest.mark.asyncio
    async def test_returns_matched_count_before_handlers_run(self, event_bus: EventBus) -> None:
        received: list[str] = []

        async def handler(event: EventEnvelope) -> None:
            received.append(event.topic)

        event_bus.on("agent:*", handler)
        event_bus.on("agent:**", handler)
        event_bus.on("task:*", handler)

        count = await event_bus.publish("agent:spawned", {"pid": 1})

        assert count == 2
        assert received == []
        await event_bus.drain()
        assert received == ["agent:spawned", "agent:spawned"]

    @pytest.mark.asyncio
    async def test_cancel_is_ignored(self, event_bus: EventBus) -> None:
        received: list[str] = []
        cancelled: list[EventEnvelope] = []
        event_bus.on(SystemTopics.EVENT_CANCELLED, cancelled.append)
        event_bus.on("x", lambda e: Cancel("ignored"))
        event_bus.on("x", lambda e: received.append("second"))

        await event_bus.publish("x")
        await event_bus.drain()

        assert received == ["second"]
        assert cancelled == []

    @pytest.mark.asyncio
    async def test_handler_error_reported(self, event_bus: EventBus) -> None:
        errors: list[EventEnvelope] = []
        event_bus.on(SystemTopics.LISTENER_ERROR, errors.append)

        def broken(event: EventEnvelope) -> None:
            raise RuntimeError("boom")

        event_bus.on("x", broken)
        await event_bus.publish("x")
        await event_bus.drain()

        assert len(errors) == 1
        assert errors[0].data["topic"] == "x"
        assert isinstance(errors[0].data["error"], RuntimeError)


class TestPublishSync:
    """Sequential dispatch with cancellation."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self, event_bus: EventBus) -> None:
        order: list[str] = []

        async def h1(event: EventEnvelope) -> None:
            await asyncio.sleep(0.01)
            order.append("h1")

        def h2(event: EventEnvelope) -> None:
            order.append("h2")

        event_bus.on("agent:**", h1)
        event_bus.on("agent:spawned", h2)

        count = await event_bus.publish("agent:spawned", {}, mode=EmissionMode.SYNC)

        assert count == 2
        assert order == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch_and_reports(self, event_bus: EventBus) -> None:
        calls: list[str] = []
        cancelled: list[EventEnvelope] = []
        event_bus.on(SystemTopics.EVENT_CANCELLED, cancelled.append)

        def h1(event: EventEnvelope) -> Cancel:
            calls.append("h1")
            return Cancel(reason="task already claimed")

        def h2(event: EventEnvelope) -> None:
            calls.append("h2")

        event_bus.on("task:claimed", h1)
        event_bus.on("task:claimed", h2)

        count = await event_bus.publish("task:claimed", {}, mode=EmissionMode.SYNC)
        assert count == 2
        assert calls == ["h1"]

        await event_bus.drain()
        assert len(cancelled) == 1
        assert cancelled[0].data["reason"] == "task already claimed"
        assert cancelled[0].data["topic"] == "task:claimed"
        assert event_bus.get_stats().total_cancelled == 1

    @pytest.mark.asyncio
    async def test_continue_result_keeps_dispatching(self, event_bus: EventBus) -> None:
        calls: list[str] = []
        event_bus.on("x", lambda e: calls.append("h1") or Continue())
        event_bus.on("x", lambda e: calls.append("h2"))

        await event_bus.publish("x", mode="sync")
        assert calls == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_siblings(self, event_bus: EventBus) -> None:
        calls: list[str] = []
        errors: list[EventEnvelope] = []
        event_bus.on(SystemTopics.LISTENER_ERROR, errors.append)

        async def broken(event: EventEnvelope) -> None:
            raise ValueError("bad payload")

        event_bus.on("x", broken)
        event_bus.on("x", lambda e: calls.append("after"))

        await event_bus.publish("x", mode=EmissionMode.SYNC)
        assert calls == ["after"]
        await event_bus.drain()
        assert len(errors) == 1


class TestPublishParallel:
    """Concurrent dispatch with settle-all."""

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self, event_bus: EventBus) -> None:
        async def slow(event: EventEnvelope) -> None:
            await asyncio.sleep(0.05)

        event_bus.on("x", slow)
        event_bus.on("x", slow)

        start = time.perf_counter()
        count = await event_bus.publish("x", mode=EmissionMode.PARALLEL)
        elapsed = time.perf_counter() - start

        assert count == 2
        assert elapsed < 0.09

    @pytest.mark.asyncio
    async def test_error_isolated_and_reported(self, event_bus: EventBus) -> None:
        finished: list[str] = []
        errors: list[EventEnvelope] = []
        event_bus.on(SystemTopics.LISTENER_ERROR, errors.append)

        async def broken(event: EventEnvelope) -> None:
            raise RuntimeError("handler crashed")

        async def slow(event: EventEnvelope) -> None:
            await asyncio.sleep(0.02)
            finished.append("slow")

        event_bus.on("x", broken)
        event_bus.on("x", slow)

        count = await event_bus.publish("x", {"n": 1}, mode=EmissionMode.PARALLEL)

        assert count == 2
        assert finished == ["slow"]
        await event_bus.drain()
        assert len(errors) == 1
        assert str(errors[0].data["error"]) == "handler crashed"

    @pytest.mark.asyncio
    async def test_failing_error_handler_does_not_recurse(self, event_bus: EventBus) -> None:
        def broken(event: EventEnvelope) -> None:
            raise RuntimeError("again")

        event_bus.on("x", broken)
        event_bus.on(SystemTopics.LISTENER_ERROR, broken)

        await event_bus.publish("x", mode=EmissionMode.PARALLEL)
        await event_bus.drain()

        assert event_bus.get_stats().topic_counts[SystemTopics.LISTENER_ERROR] == 1


class TestEnvelope:
    """Metadata injection."""

    @pytest.mark.asyncio
    async def test_sequence_numbers_increase_across_topics(self, event_bus: EventBus) -> None:
        seen: list[EventEnvelope] = []
        event_bus.on("**", seen.append)

        await event_bus.publish("a", 1, mode="sync")
        await event_bus.publish("b:c", 2, mode="sync")
        await event_bus.publish("a", 3, mode="sync")

        assert [e.metadata.sequence_number for e in seen] == [1, 2, 3]
        assert len({e.metadata.event_id for e in seen}) == 3

    @pytest.mark.asyncio
    async def test_publisher_id_and_data(self, event_bus: EventBus) -> None:
        seen: list[EventEnvelope] = []
        event_bus.on("agent:spawned:manager", seen.append)

        await event_bus.publish(
            "agent:spawned:manager", {"pid": 7}, publisher_id="spawner", mode="sync"
        )

        assert seen[0].topic == "agent:spawned:manager"
        assert seen[0].data == {"pid": 7}
        assert seen[0].metadata.publisher_id == "spawner"
        assert seen[0].metadata.timestamp > 0


class TestTopicModes:
    """Mode precedence: explicit > most specific override > default."""

    def test_most_specific_override_wins(self) -> None:
        bus = EventBus()
        bus.set_topic_mode("agent:**", EmissionMode.SYNC)
        bus.set_topic_mode("agent:spawned", EmissionMode.PARALLEL)
        bus.set_topic_mode("agent:*:manager", "parallel")

        assert bus.get_topic_mode("agent:spawned") is EmissionMode.PARALLEL
        assert bus.get_topic_mode("agent:terminated") is EmissionMode.SYNC
        assert bus.get_topic_mode("agent:spawned:manager") is EmissionMode.PARALLEL
        assert bus.get_topic_mode("agent:spawned:impl") is EmissionMode.SYNC
        assert bus.get_topic_mode("task:completed") is EmissionMode.ASYNC

    @pytest.mark.asyncio
    async def test_override_applies_and_explicit_mode_beats_it(self) -> None:
        bus = EventBus(default_mode="async", topic_modes={"task:*": "sync"})
        received: list[int] = []
        bus.on("task:done", lambda e: received.append(e.data))

        await bus.publish("task:done", 1)
        assert received == [1]

        await bus.publish("task:done", 2, mode=EmissionMode.ASYNC)
        assert received == [1]
        await bus.drain()
        assert received == [1, 2]


class TestStatistics:
    """Counters, reset and shutdown."""

    @pytest.mark.asyncio
    async def test_counts(self, event_bus: EventBus) -> None:
        event_bus.on("with-sub", lambda e: None)

        await event_bus.publish("with-sub", 1)
        await event_bus.publish("with-sub", 2)
        await event_bus.publish("without-sub", 3)
        await event_bus.drain()

        stats = event_bus.get_stats()
        assert stats.total_published == 3
        assert stats.total_delivered == 2
        assert stats.topic_counts == {"with-sub": 2, "without-sub": 1}
        assert stats.average_delivery_time >= 0
        assert stats.current_sequence == 3

    @pytest.mark.asyncio
    async def test_delivered_counts_publishes_not_handlers(self, event_bus: EventBus) -> None:
        for _ in range(3):
            event_bus.on("x", lambda e: None)
        await event_bus.publish("x", mode="sync")
        assert event_bus.get_stats().total_delivered == 1

    @pytest.mark.asyncio
    async def test_stats_snapshot_is_a_copy(self, event_bus: EventBus) -> None:
        await event_bus.publish("x")
        event_bus.get_stats().topic_counts["x"] = 99
        assert event_bus.get_stats().topic_counts == {"x": 1}

    @pytest.mark.asyncio
    async def test_reset_stats_keeps_subscriptions(self, event_bus: EventBus) -> None:
        event_bus.on("x", lambda e: None)
        await event_bus.publish("x", mode="sync")

        event_bus.reset_stats()

        stats = event_bus.get_stats()
        assert stats.total_published == 0
        assert stats.total_delivered == 0
        assert stats.topic_counts == {}
        assert stats.average_delivery_time == 0
        assert event_bus.listener_count("x") == 1

    @pytest.mark.asyncio
    async def test_shutdown_leaves_bus_usable(self, event_bus: EventBus) -> None:
        event_bus.on("x", lambda e: None)
        event_bus.set_topic_mode("x", EmissionMode.SYNC)
        await event_bus.publish("x")

        event_bus.shutdown()

        assert event_bus.listener_count() == 0
        assert event_bus.get_stats().total_published == 0
        assert event_bus.get_topic_mode("x") is EmissionMode.ASYNC

        seen: list[EventEnvelope] = []
        event_bus.on("x", seen.append)
        await event_bus.publish("x", mode="sync")
        assert seen[0].metadata.sequence_number == 1


class TestGlobalBus:
    """Process-wide instance helpers."""

    def test_get_and_reset(self) -> None:
        reset_event_bus()
        bus = get_event_bus(default_mode="sync")
        assert get_event_bus() is bus
        assert bus.get_topic_mode("anything") is EmissionMode.SYNC
        reset_event_bus()
        assert get_event_bus() is not bus
        reset_event_bus()
