from __future__ import annotations

from contextlib import ExitStack, contextmanager
from threading import Lock, RLock
from typing import Iterator

PERIOD_CLOSE_KEY = "period-close"


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def customer_key(customer_id: int) -> str:
    return f"customer:{customer_id}"


class KeyedLocks:
    """One in-process lock per entity key.

    Serializes writers inside a single worker; the database row locks and
    unique constraints cover writers in other processes. Locks are reentrant
    so an operation may call another operation on the same entity.
    """

    def __init__(self) -> None:
        self._locks: dict[str, RLock] = {}
        self._guard = Lock()

    def _lock_for(self, key: str) -> RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # ordem fixa de aquisição (chaves ordenadas)
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    def known_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


entity_locks = KeyedLocks()
