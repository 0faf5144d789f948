from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("medflow.sync")

DEFAULT_POLL_INTERVAL = 30.0


class PollState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    STOPPED = "STOPPED"


class PollScheduler:
    """Runs ``tick`` immediately and then every ``interval`` seconds.

    ``stop()`` lets an in-flight tick finish and ends the loop; ``cancel()``
    also cancels the running task. ``sleep`` is injectable so tests can drive
    the loop without real timers.
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[Any]],
        interval: float = DEFAULT_POLL_INTERVAL,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "poll",
    ):
        self.tick = tick
        self.interval = interval
        self.name = name
        self.state = PollState.IDLE
        self.ticks = 0
        self._sleep = sleep
        self._stopped = False
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> None:
        if self._stopped:
            return
        self.state = PollState.POLLING
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[POLL] %s tick failed", self.name)
        finally:
            self.ticks += 1
            self.state = PollState.STOPPED if self._stopped else PollState.IDLE

    async def run(self, iterations: Optional[int] = None) -> None:
        done = 0
        while not self._stopped:
            await self.poll_once()
            done += 1
            if self._stopped or (iterations is not None and done >= iterations):
                break
            await self._sleep(self.interval)
        if self._stopped:
            self.state = PollState.STOPPED

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopped = False
        self._task = asyncio.create_task(self.run(), name=f"medflow-{self.name}")
        return self._task

    def stop(self) -> None:
        self._stopped = True
        if self.state != PollState.POLLING:
            self.state = PollState.STOPPED

    def cancel(self) -> None:
        self.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
