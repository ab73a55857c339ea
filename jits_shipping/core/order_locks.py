"""
Per-order locks

Shipment creation, cancellation and webhook application for the same order
must not interleave. Every mutation still goes through a version-checked
UPDATE, so a second process is caught at write time; this lock only
serializes tasks inside one process.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class OrderLockManager:
    """
    Manages per-order locks.

    Locks are created on first use and discarded once no task holds or waits
    on them, so the table does not grow with the number of orders ever seen.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._waiters: Dict[int, int] = {}
        self._lock = asyncio.Lock()  # Protects _locks/_waiters

    async def _acquire_entry(self, order_id: int) -> asyncio.Lock:
        async with self._lock:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[order_id] = lock
            self._waiters[order_id] = self._waiters.get(order_id, 0) + 1
            return lock

    async def _release_entry(self, order_id: int) -> None:
        async with self._lock:
            remaining = self._waiters.get(order_id, 1) - 1
            if remaining <= 0:
                self._waiters.pop(order_id, None)
                self._locks.pop(order_id, None)
            else:
                self._waiters[order_id] = remaining

    @asynccontextmanager
    async def hold(self, order_id: int):
        """Hold the lock for one order for the duration of the block."""
        lock = await self._acquire_entry(order_id)
        try:
            async with lock:
                yield
        finally:
            await self._release_entry(order_id)

    def is_locked(self, order_id: int) -> bool:
        lock = self._locks.get(order_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# Global order lock manager - shared across all service instances in the process
order_locks = OrderLockManager()
