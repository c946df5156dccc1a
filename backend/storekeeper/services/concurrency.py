# Overview: Write-transaction and retry helpers shared by every mutating service.

"""
Storekeeper Write Path Invariants (authoritative)

- The store has one writer. Every multi-statement write runs inside
  run_in_write_transaction(), which takes SQLite's write lock up front
  (BEGIN IMMEDIATE) so readers never observe half of a sale.
- The callable either returns (-> COMMIT) or raises (-> ROLLBACK). There is no
  cancellation in between.
- Engine errors (ValidationError, NotFoundError, ...) propagate unchanged
  after the rollback. Store failures are wrapped: IntegrityError becomes
  ConflictError, anything else TransactionError.
- "database is locked" is retried with exponential backoff; a lock that never
  clears surfaces as TransactionError, never as a partial write.
"""

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, MigrationError, TransactionError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for the read half of a read-modify-write.

    NOTE: SQLite ignores SELECT ... FOR UPDATE (BEGIN IMMEDIATE already holds
    the write lock), but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locks) and StaleDataError.
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


def begin_immediate() -> None:
    """
    Take the SQLite write lock now instead of at the first INSERT.

    Joins an already-open transaction instead of nesting (SQLite has no
    nested BEGIN); other dialects rely on their own isolation.
    """
    connection = db.session.connection()
    if connection.dialect.name != "sqlite":
        return
    raw = connection.connection.dbapi_connection
    if not raw.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def require_engine_ready() -> None:
    state = current_app.extensions.get("storekeeper", {})
    if not state.get("ready"):
        raise MigrationError(
            "Engine is not initialised: run init_engine() so schema and money "
            "migration complete before financial operations"
        )


def run_in_write_transaction(func, *, label: str, requires_ready: bool = True):
    """
    Run func() as one atomic write and return its result.

    label names the operation in log lines and TransactionError messages.
    """
    if requires_ready:
        require_engine_ready()

    def _op():
        begin_immediate()
        try:
            result = func()
            db.session.commit()
            return result
        except BaseException:
            db.session.rollback()
            raise

    attempts = current_app.config.get("WRITE_RETRY_ATTEMPTS", 3)
    backoff = current_app.config.get("WRITE_RETRY_BACKOFF", 0.1)
    try:
        return run_with_retry(_op, attempts=attempts, backoff_base=backoff)
    except IntegrityError as exc:
        current_app.logger.warning("%s rejected by store constraint: %s", label, exc.orig)
        raise ConflictError(f"{label} violates a store constraint", details={"constraint": str(exc.orig)}) from exc
    except (SQLAlchemyError, StaleDataError) as exc:
        current_app.logger.exception("%s rolled back after store failure", label)
        raise TransactionError(f"{label} failed and was rolled back", details={"cause": str(exc)}) from exc
