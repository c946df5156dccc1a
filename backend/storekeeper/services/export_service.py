# Overview: Whole-store JSON snapshot for backup and for moving data between installs.

"""
Export document layout (version 2.0):

    {
      "version": "2.0",
      "export_date": "...Z",
      "data_type": "all",
      "metadata": {"export_date", "data_type", "version", "record_count"},
      "data": {
        "categories", "suppliers", "products", "bulk_pricing", "customers",
        "sales" (each with its "items"), "stock_movements",
        "expense_categories", "expenses"
      },
      "integrity": {"record_counts": {...}}
    }

Rows are plain column snapshots. Money is written as a decimal string so no
precision is lost to JSON floats; timestamps are UTC "Z" strings. Products
also carry their category and supplier names so an import into a store with
different ids can still resolve them.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from flask import current_app

from ..extensions import db
from ..models import (
    BulkPricingTier,
    Category,
    Customer,
    Expense,
    ExpenseCategory,
    Product,
    Sale,
    SaleItem,
    StockMovement,
    Supplier,
)
from ..time_utils import to_utc_z, utcnow

EXPORT_VERSION = "2.0"

# Dependency order; import_service walks the same order
DATA_TYPES = (
    "categories",
    "suppliers",
    "products",
    "bulk_pricing",
    "customers",
    "sales",
    "stock_movements",
    "expense_categories",
    "expenses",
)

_MODELS = {
    "categories": Category,
    "suppliers": Supplier,
    "products": Product,
    "bulk_pricing": BulkPricingTier,
    "customers": Customer,
    "sales": Sale,
    "stock_movements": StockMovement,
    "expense_categories": ExpenseCategory,
    "expenses": Expense,
}

# Install-specific, never carried over
_SKIPPED_COLUMNS = {"products": {"image_url"}}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    return value


def _row(obj, data_type: str) -> dict:
    skipped = _SKIPPED_COLUMNS.get(data_type, set())
    return {
        col.key: _plain(getattr(obj, col.key))
        for col in obj.__mapper__.columns
        if col.key not in skipped
    }


def _ordered(model):
    if model is Sale:
        return db.session.query(Sale).order_by(Sale.created_at.asc(), Sale.id.asc()).all()
    # id order is apply order, so a ledger replay never dips below zero
    return db.session.query(model).order_by(model.id.asc()).all()


def _product_row(product: Product) -> dict:
    row = _row(product, "products")
    row["category"] = product.category.name if product.category else None
    row["supplier_name"] = product.supplier.name if product.supplier else None
    return row


def _sale_row(sale: Sale) -> dict:
    row = _row(sale, "sales")
    row["items"] = [_row(item, "sale_items") for item in sale.items]
    return row


def _expense_row(expense: Expense) -> dict:
    row = _row(expense, "expenses")
    row["category_name"] = expense.category.name if expense.category else None
    return row


def _collect() -> dict[str, list[dict]]:
    builders = {"products": _product_row, "sales": _sale_row, "expenses": _expense_row}
    data = {}
    for data_type in DATA_TYPES:
        build = builders.get(data_type)
        rows = _ordered(_MODELS[data_type])
        data[data_type] = [build(r) if build else _row(r, data_type) for r in rows]
    return data


def record_counts(data: dict[str, list]) -> dict[str, int]:
    counts = {data_type: len(data.get(data_type) or []) for data_type in DATA_TYPES}
    counts["sale_items"] = sum(len(s.get("items") or []) for s in data.get("sales") or [])
    return counts


def export_all_data() -> dict:
    """Snapshot every engine table into one JSON-safe document."""
    data = _collect()
    counts = record_counts(data)
    exported_at = to_utc_z(utcnow())
    total = sum(counts.values())
    current_app.logger.info("Exported %d records", total)
    return {
        "version": EXPORT_VERSION,
        "export_date": exported_at,
        "data_type": "all",
        "metadata": {
            "export_date": exported_at,
            "data_type": "all",
            "version": EXPORT_VERSION,
            "record_count": total,
        },
        "data": data,
        "integrity": {"record_counts": counts},
    }


def generate_export_preview() -> dict:
    counts = {data_type: db.session.query(model).count() for data_type, model in _MODELS.items()}
    counts["sale_items"] = db.session.query(SaleItem).count()
    return {
        "total_records": sum(counts.values()),
        "data_counts": counts,
        "export_date": to_utc_z(utcnow()),
    }


def write_export_file(path: str | Path) -> dict:
    """
    Write export_all_data() to `path` and return its metadata.

    An empty store still produces a valid file, flagged empty_export.
    """
    document = export_all_data()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = _json_dumps(document)
    path.write_text(payload, encoding="utf-8")

    metadata = dict(document["metadata"])
    metadata["file_size"] = len(payload.encode("utf-8"))
    metadata["path"] = str(path)
    metadata["empty_export"] = metadata["record_count"] == 0
    return metadata
