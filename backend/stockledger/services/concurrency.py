# Overview: Locking and retry helpers shared by level and ledger services.

from __future__ import annotations

import threading
import time
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .location import LocationKey


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic version conflicts on levels and transactions).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class LevelLockRegistry:
    """
    In-process mutual exclusion per (item, location).

    Locks are re-entrant so a ledger handler holding a level lock can call back
    into the level engine for the same level. Multi-level callers (TRANSFER) must
    go through acquire(), which takes the locks in sorted order.

    A lock is only tracked while some thread holds or waits for it; the last one
    out drops the entry, so the registry stays as small as the live contention.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[tuple[int, str], list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: tuple[int, str]) -> threading.RLock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._entries[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: tuple[int, str]) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def acquire(self, item_id: int, locations: Iterable[LocationKey | None]) -> Iterator[list[tuple[int, str]]]:
        keys = sorted({(item_id, loc.identity()) for loc in locations if loc is not None})
        with ExitStack() as stack:
            for key in keys:
                lock = self._checkout(key)
                stack.callback(self._checkin, key)
                stack.enter_context(lock)
            yield keys


_registry = LevelLockRegistry()


def level_locks(item_id: int, *locations: LocationKey | None):
    """Hold the in-process locks for every given level of item_id."""
    return _registry.acquire(item_id, locations)


def run_atomic(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    run_with_retry() for all-or-nothing operations: any non-retryable error rolls
    the session back before propagating, so no partial flush survives into the
    next commit.
    """
    def _op():
        try:
            return func()
        except (OperationalError, StaleDataError):
            raise
        except Exception:
            db.session.rollback()
            raise

    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
