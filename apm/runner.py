"""Supervisor runner: spawns configured agents, publishes their lifecycle on the
event bus, restarts crashed agents and terminates everything on SIGINT/SIGTERM."""

import asyncio
import logging
import os
import signal
import sys
import time
from collections import deque
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from apm.agent_spec import AgentSpec, SupervisorConfig, load_supervisor_config
from apm.events import AgentTopics, EventBus, EventEnvelope, SystemTopics
from apm.logging_config import setup_logging
from apm.settings import get_setting, load_settings
from apm.spawn import (
    AgentLauncher,
    ProcessSupervisor,
    SpawnErrorCode,
    SupervisorEventBridge,
    check_available,
)

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_POLL_INTERVAL = 1.0


def count_recent_crashes(
    crash_times: deque[float], window_minutes: float, now: float | None = None
) -> int:
    """Count crashes within the time window, dropping older entries."""
    if now is None:
        now = time.monotonic()
    cutoff = now - (window_minutes * 60)
    while crash_times and crash_times[0] < cutoff:
        crash_times.popleft()
    return len(crash_times)


def build_event_bus(settings: dict[str, Any]) -> EventBus:
    eb_cfg = settings.get("event_bus", {})
    return EventBus(
        default_mode=eb_cfg.get("default_mode", "async"),
        topic_modes=eb_cfg.get("topic_modes") or {},
    )


class FleetRunner:
    """Owns the bus, the supervisor and the bridge for one run."""

    def __init__(self, settings: dict[str, Any], project_root: Path = _PROJECT_ROOT) -> None:
        self._project_root = project_root
        self._config: SupervisorConfig = load_supervisor_config(settings)
        max_restarts = os.environ.get("APM_MAX_RESTARTS")
        if max_restarts:
            self._config.max_restarts = int(max_restarts)
        self.bus = build_event_bus(settings)
        self.supervisor = ProcessSupervisor(
            buffer_size=self._config.output_buffer_size,
            purge_delay=self._config.purge_delay,
        )
        self.bridge = SupervisorEventBridge(
            self.supervisor, self.bus, publish_output=self._config.publish_output
        )
        self.launcher = AgentLauncher(
            max_retries=self._config.spawn.max_retries,
            retry_base=self._config.spawn.retry_base,
            spawn_timeout=self._config.spawn.spawn_timeout,
        )
        self._crash_times: dict[str, deque[float]] = {}
        self._restart_tasks: set[asyncio.Task[None]] = set()
        self._shutdown = asyncio.Event()
        self._stopping = False
        self.failed_agents: set[str] = set()

    @property
    def config(self) -> SupervisorConfig:
        return self._config

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested.")
        self._shutdown.set()

    async def start(self) -> None:
        """Wire bus subscribers, then spawn every enabled agent."""
        self.bridge.attach()
        self.bus.on(AgentTopics.ALL, self._log_agent_event)
        self.bus.on(SystemTopics.LISTENER_ERROR, self._log_listener_error)
        self.bus.on(AgentTopics.FAILED, self._on_agent_failed)
        agents = self._config.enabled_agents()
        if not agents:
            logger.warning("No agents configured under supervisor.agents")
        for agent_id, spec in agents.items():
            await self.spawn_agent(agent_id, spec)

    async def spawn_agent(self, agent_id: str, spec: AgentSpec) -> bool:
        cwd = spec.cwd
        if cwd is not None and not Path(cwd).is_absolute():
            cwd = str(self._project_root / cwd)
        if check_available(spec.command[0], cwd) is None:
            logger.error(
                "Agent %s: command %r not found or not executable", agent_id, spec.command[0]
            )
            await self._spawn_failed(
                agent_id, SpawnErrorCode.CLI_NOT_FOUND, f"{spec.command[0]}: command not found"
            )
            return False
        result = await self.launcher.spawn_and_register(
            self.supervisor, agent_id, spec.command, cwd=cwd, env=spec.env
        )
        if result.error is not None:
            await self._spawn_failed(agent_id, result.error.code, result.error.message)
        return result.success

    async def _spawn_failed(self, agent_id: str, code: SpawnErrorCode, message: str) -> None:
        self.failed_agents.add(agent_id)
        await self.bus.publish(
            AgentTopics.ERROR,
            {"agent_id": agent_id, "error": message, "code": code.value},
            "supervisor",
        )

    async def run(self) -> int:
        """Run until shutdown is requested or no agent is left running. Returns exit code."""
        await self.start()
        try:
            while not self._shutdown.is_set():
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=_POLL_INTERVAL)
                except asyncio.TimeoutError:
                    pass
                # Let exit notifications reach the restart handler before deciding
                await self.bridge.drain()
                await self.bus.drain()
                if not self.supervisor.get_active_processes() and not self._restart_tasks:
                    logger.info("No agents running.")
                    break
        finally:
            await self.stop()
        return 1 if self.failed_agents else 0

    async def stop(self) -> None:
        """Terminate all agents and flush pending events."""
        if self._stopping:
            return
        self._stopping = True
        for task in list(self._restart_tasks):
            task.cancel()
        if self._restart_tasks:
            await asyncio.gather(*self._restart_tasks, return_exceptions=True)
        logger.info("Terminating agents...")
        await self.supervisor.terminate_all(self._config.terminate_timeout)
        await self.bridge.drain()
        await self.bus.drain()
        self.bridge.detach()
        self.bus.shutdown()
        logger.info("Goodbye.")

    # --- bus handlers ---

    def _log_agent_event(self, event: EventEnvelope) -> None:
        if event.topic.startswith(AgentTopics.OUTPUT):
            logger.debug("%s %s", event.topic, event.data)
        else:
            logger.info("%s %s", event.topic, event.data)

    def _log_listener_error(self, event: EventEnvelope) -> None:
        logger.error("Subscriber failed on %s: %s", event.data["topic"], event.data["error"])

    def _on_agent_failed(self, event: EventEnvelope) -> None:
        agent_id = event.data["agent_id"]
        spec = self._config.agents.get(agent_id)
        if self._stopping or self._shutdown.is_set() or spec is None or not spec.restart:
            return
        crash_times = self._crash_times.setdefault(agent_id, deque())
        crash_times.append(time.monotonic())
        count = count_recent_crashes(crash_times, self._config.restart_window_minutes)
        if count >= self._config.max_restarts:
            logger.error(
                "Agent %s crashed %d times in %s minutes. Not restarting.",
                agent_id,
                count,
                self._config.restart_window_minutes,
            )
            self.failed_agents.add(agent_id)
            return
        logger.warning(
            "Agent %s failed (%s, exit code %s). Restarting (%d/%d)...",
            agent_id,
            event.data.get("code"),
            event.data["exit_code"],
            count,
            self._config.max_restarts,
        )
        task = asyncio.get_running_loop().create_task(self._restart(agent_id, spec))
        self._restart_tasks.add(task)
        task.add_done_callback(self._restart_tasks.discard)

    async def _restart(self, agent_id: str, spec: AgentSpec) -> None:
        await asyncio.sleep(self._config.restart_delay)
        # The exited entry stays tracked until its purge delay passes
        while agent_id in self.supervisor:
            await asyncio.sleep(0.05)
        if not self._stopping:
            await self.spawn_agent(agent_id, spec)


def _install_signal_handlers(runner: FleetRunner) -> None:
    loop = asyncio.get_running_loop()

    def on_signal(signum: int, frame: object) -> None:
        loop.call_soon_threadsafe(runner.request_shutdown)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.request_shutdown)
        except (NotImplementedError, RuntimeError, ValueError):
            # Windows event loops have no add_signal_handler
            try:
                signal.signal(sig, on_signal)
            except (ValueError, OSError):
                pass  # SIGTERM not available on Windows


async def main_async(config_dir: Path | None = None) -> int:
    settings = load_settings(config_dir)
    setup_logging(_PROJECT_ROOT, settings)
    logger.info(
        "Starting supervisor (bus mode %s)",
        get_setting(settings, "event_bus.default_mode", "async"),
    )
    runner = FleetRunner(settings)
    _install_signal_handlers(runner)
    return await runner.run()


def main() -> None:
    """Synchronous entry: python -m apm."""
    load_dotenv(_PROJECT_ROOT / ".env")
    config_dir = os.environ.get("APM_CONFIG_DIR")
    try:
        code = asyncio.run(main_async(Path(config_dir) if config_dir else None))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


__all__ = ["FleetRunner", "count_recent_crashes", "main"]
