"""Per-entity mutual exclusion for the running process.

Row locks (``SELECT ... FOR UPDATE``) and version checks cover concurrent
writers in other processes; this registry keeps coroutines in the same
process from even reaching the database at the same time for one entity.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Lazily created ``asyncio.Lock`` per key, dropped when nobody holds it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def held_keys(self) -> list[str]:
        return [k for k, lock in self._locks.items() if lock.locked()]


def loan_key(loan_id: int) -> str:
    return f"loan:{loan_id}"


def transaction_key(transaction_id: int) -> str:
    return f"tx:{transaction_id}"
