# Overview: Schema manager; the only code path that issues DDL.

"""
Storekeeper Schema Invariants (authoritative)

- ensure_schema() is additive only: CREATE TABLE / ADD COLUMN / CREATE INDEX
  when absent. It never drops, renames, or rewrites existing rows.
- Safe on every startup; a second call is a no-op.
- A store created from scratch by this engine is stamped money_format=decimal
  immediately, so the cents-detection heuristic only ever runs against
  installs that predate the marker.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from flask import current_app

from ..extensions import db
from ..models import EngineMeta
from ..models.meta import MONEY_FORMAT_DECIMAL, MONEY_FORMAT_KEY, SCHEMA_VERSION_KEY
from ..time_utils import utcnow

SCHEMA_VERSION = "3"


def _backfill_columns() -> list[tuple[str, sa.Column]]:
    """
    Columns that older installs may lack, built fresh per call (a Column can
    belong to one table only).
    """
    money = sa.Numeric(14, 4)
    return [
        ("categories", sa.Column("description", sa.Text(), nullable=True)),
        ("products", sa.Column("supplier_id", sa.Integer(), nullable=True)),
        ("products", sa.Column("image_url", sa.String(length=512), nullable=True)),
        ("products", sa.Column("min_stock", sa.Integer(), nullable=False, server_default=sa.text("10"))),
        ("products", sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1"))),
        ("sales", sa.Column("note", sa.Text(), nullable=True)),
        ("sales", sa.Column("customer_id", sa.String(length=36), nullable=True)),
        ("sale_items", sa.Column("discount", money, nullable=False, server_default=sa.text("0"))),
        ("sale_items", sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0"))),
        ("stock_movements", sa.Column("note", sa.String(length=255), nullable=True)),
        ("stock_movements", sa.Column("supplier_id", sa.Integer(), nullable=True)),
        ("stock_movements", sa.Column("reference_number", sa.String(length=128), nullable=True)),
        ("stock_movements", sa.Column("sale_id", sa.String(length=36), nullable=True)),
    ]


def _add_missing_columns(connection) -> list[str]:
    inspector = sa.inspect(connection)
    ops = Operations(MigrationContext.configure(connection))
    added = []
    for table_name, column in _backfill_columns():
        existing = {c["name"] for c in inspector.get_columns(table_name)}
        if column.name in existing:
            continue
        ops.add_column(table_name, column)
        added.append(f"{table_name}.{column.name}")
    return added


def _create_missing_indexes(connection) -> list[str]:
    inspector = sa.inspect(connection)
    created = []
    for table in db.metadata.sorted_tables:
        existing = {ix["name"] for ix in inspector.get_indexes(table.name)}
        for index in table.indexes:
            if index.name in existing:
                continue
            index.create(bind=connection, checkfirst=True)
            created.append(index.name)
    return created


def get_meta(key: str) -> str | None:
    row = db.session.get(EngineMeta, key)
    return row.value if row else None


def set_meta(key: str, value: str) -> None:
    """Stage a marker in the current transaction; the caller commits."""
    row = db.session.get(EngineMeta, key)
    if row is None:
        db.session.add(EngineMeta(key=key, value=value, updated_at=utcnow()))
    else:
        row.value = value
        row.updated_at = utcnow()


def schema_version() -> str | None:
    """Version stamped by the last ensure_schema(); None before the first run."""
    if not sa.inspect(db.engine).has_table(EngineMeta.__tablename__):
        return None
    return get_meta(SCHEMA_VERSION_KEY)


def ensure_schema() -> dict:
    """
    Create every table, column and index the engine needs, if absent.

    Returns a summary: {"fresh_install", "added_columns", "created_indexes"}.
    """
    fresh_install = not sa.inspect(db.engine).has_table("products")

    db.create_all()

    connection = db.session.connection()
    added_columns = _add_missing_columns(connection)
    created_indexes = _create_missing_indexes(connection)

    set_meta(SCHEMA_VERSION_KEY, SCHEMA_VERSION)
    if fresh_install:
        set_meta(MONEY_FORMAT_KEY, MONEY_FORMAT_DECIMAL)
    db.session.commit()

    if fresh_install:
        current_app.logger.info("Created storekeeper schema v%s", SCHEMA_VERSION)
    elif added_columns or created_indexes:
        current_app.logger.info(
            "Upgraded storekeeper schema: columns=%s indexes=%s",
            added_columns,
            created_indexes,
        )

    return {
        "fresh_install": fresh_install,
        "added_columns": added_columns,
        "created_indexes": created_indexes,
    }
