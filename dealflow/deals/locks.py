from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager


class DealLockRegistry:
    """Per-deal mutexes serializing read-mutate-append sequences inside one process.

    A deal's mutex lives only while some caller holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[uuid.UUID, threading.Lock] = {}
        self._holders: dict[uuid.UUID, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, deal_id: uuid.UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(deal_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[deal_id] = lock
            self._holders[deal_id] = self._holders.get(deal_id, 0) + 1
            return lock

    def _release_entry(self, deal_id: uuid.UUID) -> None:
        with self._guard:
            remaining = self._holders[deal_id] - 1
            if remaining:
                self._holders[deal_id] = remaining
            else:
                del self._holders[deal_id]
                del self._locks[deal_id]

    @contextmanager
    def hold(self, deal_id: uuid.UUID) -> Iterator[None]:
        lock = self._acquire_entry(deal_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(deal_id)

    @contextmanager
    def hold_many(self, deal_ids: Iterable[uuid.UUID]) -> Iterator[None]:
        # acquired in sorted order
        with ExitStack() as stack:
            for deal_id in sorted(set(deal_ids), key=str):
                stack.enter_context(self.hold(deal_id))
            yield


deal_locks = DealLockRegistry()
