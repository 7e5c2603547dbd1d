# Overview: Service-layer helpers for row locking and transactional retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConcurrencyError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Callers that lock several rows must order them by primary key.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a unit of work, rolling back on any failure.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Once attempts are exhausted the conflict
    surfaces as ConcurrencyError. Any other exception rolls the session back
    and propagates unchanged, so a failed operation never leaves partial
    writes behind.
    """
    if attempts is None:
        attempts = current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("CONCURRENCY_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyError(
                    f"operation conflicted with a concurrent update after {attempts} attempts"
                ) from exc
            current_app.logger.warning(
                "Concurrency conflict (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    raise ConcurrencyError("operation was not attempted")
