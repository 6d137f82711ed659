"""
Persisted advisory lock so scheduled and manual runs never overlap.

Directory refresh, fundamentals refresh and the full sweep all write the
same instrument rows, so they share a single lock name.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.data_collector.krx_valuation.repository import InstrumentRepository
from src.utils.logger import get_logger

logger = get_logger(__name__)


class JobLock:
    """Async context manager around a `job_locks` row.

    `acquired` tells the caller whether it owns the lock; the body should be
    skipped when it does not. When the lock is held elsewhere, `acquire` polls
    every `poll_seconds` for up to `wait_seconds` before giving up. Long runs
    call `renew` so the row does not expire underneath them.
    """

    def __init__(
        self,
        repo: InstrumentRepository,
        name: str,
        ttl_seconds: int,
        owner: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        wait_seconds: float = 0,
        poll_seconds: float = 30,
    ) -> None:
        self.repo = repo
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.owner = owner or uuid.uuid4().hex
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.wait_seconds = max(wait_seconds, 0)
        self.poll_seconds = max(poll_seconds, 0.01)
        self.acquired = False

    async def _try_acquire(self) -> bool:
        now = self._clock()
        return await asyncio.to_thread(
            self.repo.try_acquire_lock, self.name, self.owner, now, now + self.ttl
        )

    async def acquire(self) -> bool:
        polls = int(self.wait_seconds // self.poll_seconds)
        for attempt in range(polls + 1):
            if await self._try_acquire():
                self.acquired = True
                logger.info(f"Acquired job lock '{self.name}' (owner {self.owner[:8]})")
                return True
            if attempt < polls:
                logger.info(f"Job lock '{self.name}' busy; retrying in {self.poll_seconds:g}s")
                await asyncio.sleep(self.poll_seconds)

        self.acquired = False
        logger.warning(f"Job lock '{self.name}' is held by another run")
        return False

    async def renew(self) -> bool:
        """Push the expiry one TTL past now; False if the lock was lost."""
        if not self.acquired:
            return False
        try:
            renewed = await self._try_acquire()
        except Exception as e:
            logger.warning(f"Renewing job lock '{self.name}' failed: {e}")
            return False
        if not renewed:
            logger.error(f"Job lock '{self.name}' was taken over by another run")
        return renewed

    async def release(self) -> None:
        if not self.acquired:
            return
        released = await asyncio.to_thread(self.repo.release_lock, self.name, self.owner)
        self.acquired = False
        if not released:
            logger.warning(f"Job lock '{self.name}' was already gone on release")

    async def __aenter__(self) -> "JobLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
