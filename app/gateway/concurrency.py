"""Concurrency Gate: bounds simultaneous in-flight remote calls.

Callers beyond the ceiling wait on an asyncio.Semaphore (FIFO wake-up, no
polling). Slots are released exactly once; use ``gate.slot()`` so release
happens on every exit path, including errors and cancellation.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from app.core.metrics import IN_FLIGHT

logger = logging.getLogger(__name__)


@dataclass
class ConcurrencySlot:
    """Permission to have one remote call in flight."""

    slot_id: int
    released: bool = False


class ConcurrencyGate:
    """Fixed-ceiling admission for remote calls.

    Usage:
        gate = ConcurrencyGate(max_concurrent=2)

        async with gate.slot():
            await call_remote()
    """

    def __init__(self, max_concurrent: int = 2):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._ids = itertools.count(1)
        self._in_flight = 0
        self._peak = 0
        self._waiting = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak

    async def acquire(self) -> ConcurrencySlot:
        """Wait for a free slot and take it."""
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)
        IN_FLIGHT.set(self._in_flight)
        slot = ConcurrencySlot(slot_id=next(self._ids))
        logger.debug("Acquired slot %d (%d/%d in flight)", slot.slot_id, self._in_flight, self.max_concurrent)
        return slot

    def release(self, slot: ConcurrencySlot) -> None:
        """Give a slot back. Releasing the same slot twice is a bug."""
        if slot.released:
            raise RuntimeError(f"Concurrency slot {slot.slot_id} released twice")
        slot.released = True
        self._in_flight -= 1
        IN_FLIGHT.set(self._in_flight)
        self._semaphore.release()
        logger.debug("Released slot %d (%d/%d in flight)", slot.slot_id, self._in_flight, self.max_concurrent)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[ConcurrencySlot]:
        slot = await self.acquire()
        try:
            yield slot
        finally:
            self.release(slot)

    def get_stats(self) -> dict:
        return {
            "max_concurrent": self.max_concurrent,
            "in_flight": self._in_flight,
            "peak_in_flight": self._peak,
            "waiting": self._waiting,
        }
