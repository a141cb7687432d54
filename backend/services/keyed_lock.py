"""
Per-key asyncio locks.

Serializes coroutines that touch the same payment reference or order id
inside one process. Cross-process safety comes from the conditional
UPDATEs and the partial unique index on payments; this lock only keeps
same-process callers from interleaving their reads and writes.

Entries are reference-counted and dropped once no coroutine holds or waits
for them, so the table does not grow with every reference ever seen.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLock:
    """Mapping of key -> asyncio.Lock with automatic cleanup."""

    def __init__(self, name: str):
        self.name = name
        # {key: [lock, holders_and_waiters]}
        self._locks: dict[Hashable, list] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._locks[key] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry[0].locked())

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide lock tables
payment_locks = KeyedLock("payment-reference")
order_locks = KeyedLock("order")
