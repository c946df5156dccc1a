# Overview: One-time conversion of legacy integer-cents money columns to decimal amounts.

"""
Storekeeper Money Migration Invariants (authoritative)

- Runs at most once per store. Two guards, checked in order:
  1) the external status record (decimal_migration_complete), the fast path,
  2) the engine_meta money_format marker, written in the SAME transaction as
     the converted rows, so a crash between commit and status save can never
     cause a second division by 100.
- The cents heuristic only runs for stores that carry neither guard.
- Conversion is one write transaction (BEGIN IMMEDIATE): every monetary
  column or none of them.
- Any failure is a MigrationError. init_engine() lets it propagate, so no
  financial operation runs against an ambiguous store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

import sqlalchemy as sa
from flask import current_app

from ..currency import LEGACY_MINOR_UNIT_FACTOR, get_currency_settings, to_decimal
from ..errors import MigrationError, StorekeeperError
from ..extensions import db
from ..models.meta import MONEY_FORMAT_DECIMAL, MONEY_FORMAT_KEY
from ..time_utils import to_utc_z, utcnow
from .concurrency import run_in_write_transaction
from .migration_status import MigrationStatus, MigrationStatusStore, get_status_store, update_status
from .schema_service import get_meta, set_meta

# (table, columns, nullable columns)
MONEY_COLUMNS = (
    ("products", ("price", "cost"), ()),
    ("sales", ("total",), ()),
    ("sale_items", ("price", "cost", "discount", "subtotal"), ()),
    ("bulk_pricing", ("bulk_price",), ()),
    ("stock_movements", ("unit_cost",), ("unit_cost",)),
    ("customers", ("total_spent",), ()),
    ("expenses", ("amount",), ()),
)

# Columns the cents heuristic samples; always populated on a legacy install
SAMPLED_COLUMNS = (
    ("products", "price"),
    ("products", "cost"),
    ("sales", "total"),
    ("sale_items", "subtotal"),
)

REASON_ALREADY_COMPLETE = "already_complete"
REASON_DECIMAL_MARKER = "decimal_marker"
REASON_NO_LEGACY_DATA = "no_legacy_data"
REASON_CONVERTED = "converted"


@dataclass(frozen=True)
class MigrationResult:
    migrated: bool
    reason: str
    status: MigrationStatus
    rows_updated: dict = field(default_factory=dict)


def _sample_money_values(sample_size: int) -> list[Decimal]:
    values = []
    for table, column in SAMPLED_COLUMNS:
        rows = db.session.execute(
            sa.text(f"SELECT {column} FROM {table} WHERE {column} IS NOT NULL LIMIT :n"),
            {"n": sample_size},
        ).scalars()
        values.extend(to_decimal(v) for v in rows)
    return values


def looks_like_minor_units(values) -> bool:
    """
    Cents heuristic over a sample of stored amounts.

    Legacy when there is at least one non-zero value, every value is a whole
    number, and at least one reaches the minor-unit factor (a catalogue priced
    entirely below 1.00 in whole units is not credible as cents).
    """
    nonzero = [v for v in values if v != 0]
    if not nonzero:
        return False
    if any(v != v.to_integral_value() for v in nonzero):
        return False
    return any(abs(v) >= LEGACY_MINOR_UNIT_FACTOR for v in nonzero)


def _store_has_legacy_money() -> bool:
    if get_meta(MONEY_FORMAT_KEY) == MONEY_FORMAT_DECIMAL:
        return False
    sample_size = current_app.config.get("MIGRATION_SAMPLE_SIZE", 200)
    return looks_like_minor_units(_sample_money_values(sample_size))


def needs_migration(status_store: MigrationStatusStore | None = None) -> bool:
    """True when stored money still looks like legacy integer cents."""
    store = status_store or get_status_store()
    if store.load().decimal_migration_complete:
        return False
    return _store_has_legacy_money()


def _verify_no_nulls() -> None:
    for table, columns, nullable in MONEY_COLUMNS:
        required = [c for c in columns if c not in nullable]
        if not required:
            continue
        predicate = " OR ".join(f"{c} IS NULL" for c in required)
        count = db.session.execute(sa.text(f"SELECT COUNT(*) FROM {table} WHERE {predicate}")).scalar()
        if count:
            raise MigrationError(
                f"Money conversion left NULL amounts in {table}",
                details={"table": table, "rows": count},
            )


def _convert_money_columns(decimals: int) -> dict:
    rows_updated = {}
    for table, columns, _nullable in MONEY_COLUMNS:
        # / 100.0: NUMERIC affinity keeps whole amounts as INTEGER, and INTEGER / 100 truncates
        assignments = ", ".join(
            f"{c} = ROUND({c} / {LEGACY_MINOR_UNIT_FACTOR}.0, :places)" for c in columns
        )
        result = db.session.execute(sa.text(f"UPDATE {table} SET {assignments}"), {"places": decimals})
        rows_updated[table] = result.rowcount
    return rows_updated


def migrate(status_store: MigrationStatusStore | None = None) -> MigrationResult:
    """
    Convert every monetary column from minor units to decimal amounts, once.

    Stores with nothing to convert (fresh installs, or already stamped with the
    decimal marker) are only marked complete. Raises MigrationError on any
    failure, after rolling back.
    """
    store = status_store or get_status_store()
    status = store.load()
    if status.decimal_migration_complete:
        return MigrationResult(migrated=False, reason=REASON_ALREADY_COMPLETE, status=status)

    currency = get_currency_settings()
    attempted_at = to_utc_z(utcnow())

    def _run():
        # Re-checked under the write lock: a concurrent startup may have won
        if get_meta(MONEY_FORMAT_KEY) == MONEY_FORMAT_DECIMAL:
            return REASON_DECIMAL_MARKER, {}
        if not _store_has_legacy_money():
            set_meta(MONEY_FORMAT_KEY, MONEY_FORMAT_DECIMAL)
            return REASON_NO_LEGACY_DATA, {}

        current_app.logger.info(
            "Starting decimal money migration (%s, %d decimals)",
            currency.code,
            currency.decimals,
        )
        rows_updated = _convert_money_columns(currency.decimals)
        _verify_no_nulls()
        set_meta(MONEY_FORMAT_KEY, MONEY_FORMAT_DECIMAL)
        return REASON_CONVERTED, rows_updated

    try:
        reason, rows_updated = run_in_write_transaction(_run, label="Decimal money migration", requires_ready=False)
    except MigrationError:
        current_app.logger.error("Decimal money migration failed and was rolled back")
        raise
    except StorekeeperError as exc:
        current_app.logger.error("Decimal money migration failed and was rolled back: %s", exc)
        raise MigrationError(f"Decimal money migration failed: {exc}", details=exc.details) from exc

    try:
        status = update_status(
            store,
            decimal_migration_complete=True,
            uuid_migration_complete=True,
            last_migration_attempt=attempted_at,
        )
    except OSError as exc:
        # Rows are converted and marked in engine_meta; only the fast path is missing
        raise MigrationError(
            "Money migration committed but the status record could not be saved",
            details={"cause": str(exc)},
        ) from exc

    migrated = reason == REASON_CONVERTED
    if migrated:
        current_app.logger.info("Decimal money migration complete: %s", rows_updated)
    return MigrationResult(migrated=migrated, reason=reason, status=status, rows_updated=rows_updated)
