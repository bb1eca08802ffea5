# Overview: Service-layer helpers for concurrency; per-customer serialization, row locks and bounded retry.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrentModificationError, LedgerError, LedgerResult
from ..extensions import db


_registry_guard = threading.Lock()
_customer_locks: dict[int, threading.RLock] = {}


def _lock_for(customer_id: int) -> threading.RLock:
    with _registry_guard:
        lock = _customer_locks.get(customer_id)
        if lock is None:
            lock = threading.RLock()
            _customer_locks[customer_id] = lock
        return lock


@contextmanager
def customer_lock(customer_id: int, timeout: float | None = None):
    """
    Serialize ledger writes for one customer within this process.

    Held for the whole read balance -> validate -> append -> update cache
    sequence. Re-entrant so a coordinator holding the lock can call ledger
    helpers. Gives up after `timeout` seconds instead of blocking forever.
    """
    if timeout is None:
        timeout = current_app.config.get("LEDGER_LOCK_TIMEOUT_SECONDS", 5.0)
    lock = _lock_for(customer_id)
    if not lock.acquire(timeout=timeout):
        raise ConcurrentModificationError(
            "Customer account is busy, please retry",
            details={"customer_id": customer_id},
        )
    try:
        yield
    finally:
        lock.release()


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    customer_lock() and the version_id columns cover SQLite. Rows already in
    the session are refreshed so decisions use the locked state.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Raises ConcurrentModificationError once
    attempts are exhausted so callers can re-fetch and retry.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF_SECONDS", 0.1)
    attempts = max(1, int(attempts))

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning("Giving up after %d attempts: %s", attempts, exc)
                raise ConcurrentModificationError(
                    "The record was modified concurrently, please retry",
                    details={"attempts": attempts},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))


def serialized(customer_id: int, op):
    """Run op under the customer's lock with bounded retry."""
    with customer_lock(customer_id):
        return run_with_retry(op)


def as_result(func) -> LedgerResult:
    """
    Run a unit of work and tag its outcome.

    Domain errors roll the session back and come back as a failed
    LedgerResult; anything else propagates.
    """
    try:
        return LedgerResult.success(func())
    except LedgerError as exc:
        db.session.rollback()
        return LedgerResult.failure(exc)
