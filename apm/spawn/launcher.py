"""Agent launcher: spawn agent subprocesses with piped output, classify and retry spawn failures."""

import asyncio
import logging
import os
import random
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from apm.spawn.errors import DuplicateProcessError, SpawnErrorInfo, classify_spawn_error
from apm.spawn.handle import AsyncioProcessHandle
from apm.spawn.process_manager import ProcessRecord, ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class SpawnResult:
    """Outcome of AgentLauncher.spawn(). Exactly one of handle / error is set."""

    agent_id: str
    handle: AsyncioProcessHandle | None = None
    error: SpawnErrorInfo | None = None
    attempts: int = 1
    record: ProcessRecord | None = None

    @property
    def success(self) -> bool:
        return self.handle is not None

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None


def compute_retry_delay(attempt: int, base: float = 0.5, max_delay: float = 10.0) -> float:
    """Exponential backoff with jitter."""
    delay = min(base * (2**attempt), max_delay)
    jitter = random.uniform(0, delay * 0.3)
    return delay + jitter


def check_available(command: str, cwd: Path | str | None = None) -> str | None:
    """Absolute path of an executable command, or None.

    Bare names are looked up on PATH; relative paths resolve against cwd.
    """
    if os.path.dirname(command) and cwd is not None and not os.path.isabs(command):
        command = os.path.join(cwd, command)
    found = shutil.which(command)
    return os.path.abspath(found) if found else None


class AgentLauncher:
    """Spawns agent commands as asyncio subprocesses."""

    def __init__(
        self,
        max_retries: int = 3,
        retry_base: float = 0.5,
        retry_max_delay: float = 10.0,
        spawn_timeout: float = 30.0,
    ) -> None:
        self._max_retries = max_retries
        self._retry_base = retry_base
        self._retry_max_delay = retry_max_delay
        self._spawn_timeout = spawn_timeout

    async def spawn(
        self,
        agent_id: str,
        argv: Sequence[str],
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
    ) -> SpawnResult:
        """Start argv. Transient failures are retried; permanent ones return immediately."""
        if not argv:
            raise ValueError("argv must not be empty")
        full_env = os.environ.copy()
        full_env.setdefault("PYTHONIOENCODING", "utf-8")
        if env:
            full_env.update(env)

        attempt = 0
        while True:
            try:
                process = await asyncio.wait_for(
                    asyncio.create_subprocess_exec(
                        *argv,
                        cwd=str(cwd) if cwd is not None else None,
                        env=full_env,
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                    ),
                    timeout=self._spawn_timeout,
                )
            except (OSError, asyncio.TimeoutError) as e:
                info = classify_spawn_error(e)
                if info.retryable and attempt < self._max_retries:
                    delay = compute_retry_delay(attempt, self._retry_base, self._retry_max_delay)
                    logger.warning(
                        "Spawning agent %s failed (%s, attempt %d/%d); retrying in %.1fs",
                        agent_id,
                        info.code.value,
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                    )
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue
                logger.error(
                    "Spawning agent %s failed: %s %s. %s",
                    agent_id,
                    info.code.value,
                    info.message,
                    info.guidance,
                )
                return SpawnResult(agent_id=agent_id, error=info, attempts=attempt + 1)

            logger.info("Spawned agent %s: %s (pid %s)", agent_id, argv[0], process.pid)
            return SpawnResult(
                agent_id=agent_id,
                handle=AsyncioProcessHandle(process),
                attempts=attempt + 1,
            )

    async def spawn_and_register(
        self,
        supervisor: ProcessSupervisor,
        agent_id: str,
        argv: Sequence[str],
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
    ) -> SpawnResult:
        """spawn() then hand the handle to the supervisor in the same loop iteration."""
        if agent_id in supervisor:
            raise DuplicateProcessError(agent_id)
        result = await self.spawn(agent_id, argv, cwd=cwd, env=env)
        if result.handle is not None:
            result.record = supervisor.register_process(agent_id, result.handle)
        return result
