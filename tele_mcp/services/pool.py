import asyncio
from collections import deque
from contextlib import suppress
from typing import Deque, Optional, Set

from tele_mcp.core.config import MAX_POOL_SIZE
from tele_mcp.core.logging import logger
from tele_mcp.services.process import ChildProcess, ProcessManager


class ProcessPool:
    """Bounded set of idle, pre-spawned child processes.

    ``get`` never blocks and never spawns: on a miss the caller starts a
    process itself. Processes handed out are never returned.
    """

    def __init__(
        self,
        manager: ProcessManager,
        command: str,
        capacity: int,
        interval_sec: float = 5.0,
    ) -> None:
        self.manager = manager
        self.command = command
        self.capacity = min(max(capacity, 0), MAX_POOL_SIZE)
        self.interval_sec = interval_sec
        self._idle: Deque[ChildProcess] = deque()
        self._active = False
        self._maintenance_task: Optional[asyncio.Task] = None
        self._reaping: Set[asyncio.Task] = set()

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> None:
        if self.capacity <= 0:
            return
        self._active = True
        logger.info(f"Pre-spawning {self.capacity} processes")
        await self.replenish()
        self._maintenance_task = asyncio.create_task(self._maintain())

    def get(self) -> Optional[ChildProcess]:
        while self._idle:
            process = self._idle.popleft()
            if process.alive:
                return process
            logger.warning(f"Discarding dead idle process pid {process.pid}")
            self._reap(process)
        return None

    async def replenish(self) -> int:
        """Spawn enough processes to cover the current deficit."""
        deficit = self.capacity - len(self._idle)
        if deficit <= 0 or not self._active:
            return 0
        logger.info(f"Replenishing pool: {deficit} processes needed")
        results = await asyncio.gather(
            *(self._spawn_one() for _ in range(deficit)), return_exceptions=True
        )
        added = 0
        for result in results:
            if isinstance(result, BaseException):
                logger.warning(f"Failed to spawn process: {result}")
            elif result:
                added += 1
        return added

    async def _spawn_one(self) -> bool:
        process = await self.manager.spawn(self.command)
        # The pool may have filled up or shut down while we were spawning.
        if not self._active or len(self._idle) >= self.capacity:
            await self.manager.terminate(process)
            return False
        self._idle.append(process)
        return True

    async def _maintain(self) -> None:
        while self._active:
            await asyncio.sleep(self.interval_sec)
            try:
                await self.replenish()
            except Exception as exc:
                logger.error(f"pool maintenance error: {exc}")

    def _reap(self, process: ChildProcess) -> None:
        task = asyncio.create_task(self.manager.terminate(process))
        self._reaping.add(task)
        task.add_done_callback(self._reaping.discard)

    async def shutdown(self) -> None:
        self._active = False
        task = self._maintenance_task
        self._maintenance_task = None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        idle = list(self._idle)
        self._idle.clear()
        if idle:
            logger.info(f"Shutting down pool: terminating {len(idle)} idle processes")
        await asyncio.gather(
            *(self.manager.terminate(p) for p in idle),
            *self._reaping,
            return_exceptions=True,
        )
