"""
Fire-and-forget side effects.

Calendar pushes, contact upserts and notifications run after the caller has
been answered. They are handed to this queue instead of being left as
unawaited coroutines, so their retry policy and failure logging are explicit.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set

from config import logger


class SideEffectQueue:
    def __init__(self, max_attempts: int = 2, backoff_seconds: float = 0.5):
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._tasks: Set[asyncio.Task] = set()
        self._chains: Dict[str, asyncio.Task] = {}
        self.failures: int = 0

    def submit(
        self,
        name: str,
        factory: Callable[[], Awaitable[object]],
        attempts: Optional[int] = None,
        key: Optional[str] = None,
    ) -> asyncio.Task:
        """
        Schedule `factory()` in the background.

        `factory` is called once per attempt so each retry gets a fresh
        coroutine. Effects sharing a `key` run one after another in
        submission order. Failures are logged and never reach the submitter.
        """
        previous = self._chains.get(key) if key else None
        task = asyncio.create_task(
            self._run_after(previous, name, factory, attempts or self.max_attempts)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if key:
            self._chains[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        return task

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._chains.get(key) is task:
            del self._chains[key]

    async def _run_after(
        self,
        previous: Optional[asyncio.Task],
        name: str,
        factory: Callable[[], Awaitable[object]],
        attempts: int,
    ) -> bool:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        return await self._run(name, factory, attempts)

    async def _run(self, name: str, factory: Callable[[], Awaitable[object]], attempts: int) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                await factory()
                if attempt > 1:
                    logger.info(f"[SIDE_EFFECT] {name} succeeded on attempt {attempt}")
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[SIDE_EFFECT] {name} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.backoff_seconds * attempt)

        self.failures += 1
        logger.error(f"[SIDE_EFFECT] {name} gave up after {attempts} attempt(s)")
        return False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding side effect to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
