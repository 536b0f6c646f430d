# Overview: Atomic unit-of-work runner; retries write conflicts, enforces deadlines, rolls back on failure.

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import Conflict, DeadlineExceeded, LedgerError, StorageFault
from ..extensions import db
from keyledger.time_utils import utcnow


T = TypeVar("T")


class RetryableConflict(Exception):
    """
    Raised inside a unit of work to ask for a clean retry.

    Used when a uniqueness constraint shows that a concurrent unit won a
    race (same device bound twice, same key code minted twice).
    """


RETRYABLE_ERRORS = (OperationalError, StaleDataError, RetryableConflict)

# SQLSTATEs for serialization failure and deadlock (PostgreSQL)
RETRYABLE_SQLSTATES = ("40001", "40P01")
RETRYABLE_LOCK_MESSAGES = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "deadlock detected",
)


def is_write_conflict(exc: Exception) -> bool:
    """
    True for errors a clean retry can resolve.

    OperationalError also covers fatal faults (missing table, disk I/O,
    refused connection); only lock and serialization failures qualify.
    """
    if not isinstance(exc, OperationalError):
        return isinstance(exc, (StaleDataError, RetryableConflict))
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in RETRYABLE_LOCK_MESSAGES)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_unit() takes the
    database write lock up front there instead.
    """
    return query.with_for_update()


def begin_write_unit() -> None:
    """
    On SQLite, start the unit with BEGIN IMMEDIATE so that concurrent writers
    serialize on the database lock instead of failing at commit time.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def _check_deadline(deadline: datetime | None) -> None:
    if deadline is not None and utcnow() >= deadline:
        raise DeadlineExceeded("Deadline exceeded before the operation completed")


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    deadline: datetime | None = None,
) -> T:
    """
    Execute func as one atomic unit and commit it.

    - Every failure rolls the whole unit back; nothing partial is visible.
    - Lock or serialization OperationalErrors, StaleDataError (optimistic version mismatch)
      and RetryableConflict are retried with exponential backoff.
    - Exhausted retries raise Conflict.
    - deadline is checked before each attempt and before commit.
    - Any other SQLAlchemy error is logged and raised as StorageFault.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        try:
            _check_deadline(deadline)
            begin_write_unit()
            result = func()
            _check_deadline(deadline)
            db.session.commit()
            return result
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if not is_write_conflict(exc):
                current_app.logger.exception("Storage fault inside atomic unit")
                raise StorageFault("Storage error; the operation was rolled back") from exc
            if attempt >= attempts - 1:
                current_app.logger.warning("Atomic unit gave up after %d attempts: %s", attempts, exc)
                raise Conflict("Concurrent update conflict; retry the request") from exc
            delay = backoff_base * (2 ** attempt)
            if deadline is not None:
                remaining = (deadline - utcnow()).total_seconds()
                if remaining <= delay:
                    current_app.logger.warning("Atomic unit aborted: deadline reached during retry backoff")
                    raise DeadlineExceeded("Deadline exceeded while retrying") from exc
            time.sleep(delay)
        except DeadlineExceeded:
            db.session.rollback()
            current_app.logger.warning("Atomic unit aborted: deadline exceeded")
            raise
        except LedgerError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Storage fault inside atomic unit")
            raise StorageFault("Storage error; the operation was rolled back") from exc
        except Exception:
            db.session.rollback()
            raise

    raise Conflict("Concurrent update conflict; retry the request")
