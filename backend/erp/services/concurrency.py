# Overview: Atomic write units, row locking and read retries shared by every service.

from __future__ import annotations

import logging
import time

from flask import current_app, has_app_context
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConstraintViolation, LockTimeout
from ..extensions import db

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the write unit itself is
    serialized by BEGIN IMMEDIATE (see run_atomic). populate_existing() makes
    sure the locked row is re-read rather than served from the identity map.
    """
    return query.with_for_update().populate_existing()


def _lock_timeout_seconds() -> float:
    if has_app_context():
        return float(current_app.config.get("LOCK_TIMEOUT_SECONDS", 5))
    return 5.0


def _begin_write_unit() -> None:
    """
    Open the database-level write scope for the current session.

    - SQLite: BEGIN IMMEDIATE takes the database write lock up front, so two
      units touching the same product cannot interleave their read-check-write.
      The wait is bounded by the driver busy timeout.
    - PostgreSQL: SET LOCAL lock_timeout bounds every row lock taken by
      lock_for_update() inside this transaction.
    """
    session = db.session
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        conn = session.connection()
        dbapi_conn = conn.connection.dbapi_connection
        if not getattr(dbapi_conn, "in_transaction", False):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    elif dialect == "postgresql":
        timeout_ms = int(_lock_timeout_seconds() * 1000)
        session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


def run_atomic(func):
    """
    Run func() as one all-or-nothing unit and commit.

    Any exception rolls back every write made inside the unit and propagates
    as a single error:
    - OperationalError / StaleDataError -> LockTimeout (retryable)
    - IntegrityError -> ConstraintViolation (generic message)
    - WorkflowError subclasses and anything else propagate unchanged

    Writes are never retried here; callers may retry the whole unit on
    LockTimeout.
    """
    try:
        _begin_write_unit()
        result = func()
        db.session.commit()
        return result
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error in write unit: %s", exc.orig)
        raise ConstraintViolation() from exc
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        logger.warning("Lock/concurrency failure in write unit: %s", exc)
        raise LockTimeout() from exc
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a read-only DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locks) and StaleDataError. Only used for
    aggregation readers; write units go through run_atomic.
    """
    if attempts is None:
        attempts = int(current_app.config.get("READ_RETRY_ATTEMPTS", 3)) if has_app_context() else 3
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise LockTimeout() from exc
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise LockTimeout() from last_exc
