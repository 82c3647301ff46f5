# Overview: Storage-level concurrency helpers: conditional updates and commit retries.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def conditional_update(query, values: dict) -> bool:
    """
    Apply `values` to the rows matched by `query` in a single
    UPDATE ... WHERE statement and commit.

    The WHERE clause carries the precondition (e.g. state IN ('issued',
    'pending')), so the check and the write are one atomic operation in the
    database. Returns True if exactly one row changed, False if the
    precondition no longer held because another writer got there first.

    Objects already loaded in the session are expired by the commit and
    reload on next access.
    """
    def _op():
        updated = query.update(values, synchronize_session=False)
        db.session.commit()
        return updated

    return run_with_retry(_op) == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). func must be safe to run again after a
    rollback.
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


def add_with_retry(instance_factory, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Insert a freshly built row and commit, rebuilding it on retry.

    A rollback discards pending objects, so the factory is called again on
    every attempt.
    """
    def _op():
        instance = instance_factory()
        db.session.add(instance)
        db.session.commit()
        return instance
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
