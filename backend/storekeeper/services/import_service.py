# Overview: Import an export document: validate it, detect conflicts, apply it under one write transaction.

"""
Storekeeper Import Rules (authoritative)

- Data types are applied in dependency order (import_schemas.SCHEMAS), so a
  record's references are already in the store when it is written. File ids
  are mapped to store ids as records land; references follow the map.
- A record matching an existing one (by id, then by its natural key) is a
  duplicate conflict. conflict_resolution decides:
      "skip"   leave the existing record
      "update" overwrite its master data
      "ask"    write nothing; return the conflicts for the caller to decide
  Sales and stock movements are history: a duplicate is always skipped.
- A record that fails validation or references something that exists
  neither in the file nor in the store is skipped and reported. It never
  aborts the import. A store failure aborts all of it.
- Imported products start at zero; the file's movements are replayed through
  the ledger, then one adjustment brings on-hand to the file's quantity.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import ADJUSTMENT, Product
from .concurrency import run_in_write_transaction
from .export_service import DATA_TYPES, EXPORT_VERSION, record_counts
from .import_schemas import SCHEMAS, BaseImportSchema, ImportContext, file_id
from .inventory_service import apply_movement

CONFLICT_DUPLICATE = "duplicate"
CONFLICT_REFERENCE_MISSING = "reference_missing"
CONFLICT_VALIDATION_FAILED = "validation_failed"

CONFLICT_RESOLUTIONS = ("update", "skip", "ask")


@dataclass(frozen=True)
class DataConflict:
    type: str
    record_type: str
    index: int
    message: str
    matched_by: str | None = None
    existing_id: Any = None
    field: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ImportResult:
    success: bool
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    conflicts: list[DataConflict] = field(default_factory=list)
    counts: dict[str, dict[str, int]] = field(default_factory=dict)
    message: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["conflicts"] = [c.to_dict() for c in self.conflicts]
        return data


def load_import_file(path: str | Path) -> dict:
    path = Path(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise NotFoundError("Import file not found", details={"path": str(path)})
    except json.JSONDecodeError as exc:
        raise ValidationError("Import file is not valid JSON", details={"path": str(path), "cause": str(exc)})


def validate_import_data(document: Any) -> tuple[bool, list[str]]:
    """Structural check of an export document; collects every problem."""
    if not isinstance(document, dict):
        return False, ["Import file must be a JSON object"]

    errors: list[str] = []
    version = document.get("version")
    if version is not None and str(version).split(".")[0] != EXPORT_VERSION.split(".")[0]:
        errors.append(f"Unsupported export version {version}")

    data = document.get("data")
    if not isinstance(data, dict):
        errors.append("No data found in import file")
        return False, errors

    total = 0
    for data_type in DATA_TYPES:
        records = data.get(data_type)
        if records is None:
            continue
        if not isinstance(records, list):
            errors.append(f"{data_type} must be a list")
            continue
        not_objects = sum(1 for r in records if not isinstance(r, dict))
        if not_objects:
            errors.append(f"{data_type} has {not_objects} records that are not objects")
        total += len(records)

    if total == 0 and not errors:
        errors.append("Import file contains no records")
    return not errors, errors


def _require_valid(document: Any) -> dict:
    ok, errors = validate_import_data(document)
    if not ok:
        raise ValidationError("Import file is not valid", details={"errors": errors})
    return document["data"]


def _file_ids(data: dict) -> dict[str, set]:
    return {
        data_type: {i for i in (file_id(r) for r in data.get(data_type) or []) if i is not None}
        for data_type in DATA_TYPES
    }


def _duplicate_message(schema: BaseImportSchema, row: dict, raw_row: dict, matched_by: str) -> str:
    if matched_by == "id":
        return f"{schema.data_type} with id {raw_row.get('id')!r} already exists"
    if matched_by == "barcode":
        return f"Product with barcode {row['barcode']!r} already exists"
    if matched_by == "phone":
        return f"Customer with phone {row['phone']!r} already exists"
    if matched_by == "name":
        return f"{schema.data_type} {row['name']!r} already exists"
    return f"{schema.data_type} record already exists"


def _inspect(schema: BaseImportSchema, raw_row: Any, index: int, ctx: ImportContext):
    """Returns (normalized row, existing record, conflict); read-only."""
    try:
        row = schema.normalize_row(raw_row, ctx)
    except ValidationError as exc:
        return None, None, DataConflict(CONFLICT_VALIDATION_FAILED, schema.data_type, index, exc.message)

    unmapped = schema.auto_resolve_references(row, raw_row, ctx)
    if unmapped:
        ref = unmapped[0]
        message = f"{ref['field']} {ref['value']!r} does not exist in the file or the store"
        return row, None, DataConflict(
            CONFLICT_REFERENCE_MISSING, schema.data_type, index, message, field=ref["field"]
        )

    existing, matched_by = schema.find_existing(row, raw_row)
    if existing is not None:
        return row, existing, DataConflict(
            CONFLICT_DUPLICATE,
            schema.data_type,
            index,
            _duplicate_message(schema, row, raw_row, matched_by),
            matched_by=matched_by,
            existing_id=existing.id,
        )
    return row, None, None


def detect_conflicts(document: Any) -> list[DataConflict]:
    """Every conflict the document would hit against the current store. Writes nothing."""
    data = _require_valid(document)
    ctx = ImportContext(dry_run=True, file_ids=_file_ids(data))
    conflicts = []
    for data_type, schema in SCHEMAS.items():
        for index, raw_row in enumerate(data.get(data_type) or []):
            _, _, conflict = _inspect(schema, raw_row, index, ctx)
            if conflict is not None:
                conflicts.append(conflict)
    return conflicts


def summarize_conflicts(conflicts: list[DataConflict]) -> dict:
    by_type: dict[str, dict[str, int]] = {}
    for conflict in conflicts:
        stats = by_type.setdefault(
            conflict.record_type,
            {"total": 0, CONFLICT_DUPLICATE: 0, CONFLICT_REFERENCE_MISSING: 0, CONFLICT_VALIDATION_FAILED: 0},
        )
        stats["total"] += 1
        stats[conflict.type] += 1
    return {"total_conflicts": len(conflicts), "by_type": by_type, "has_conflicts": bool(conflicts)}


def preview_import(document: Any) -> dict:
    ok, errors = validate_import_data(document)
    if not ok:
        return {
            "valid": False,
            "errors": errors,
            "record_counts": {},
            "conflicts": [],
            "conflict_summary": summarize_conflicts([]),
        }
    conflicts = detect_conflicts(document)
    return {
        "valid": True,
        "errors": [],
        "record_counts": record_counts(document["data"]),
        "conflicts": [c.to_dict() for c in conflicts],
        "conflict_summary": summarize_conflicts(conflicts),
    }


def _apply_record(schema, raw_row, index, ctx, resolution, result) -> str:
    row, existing, conflict = _inspect(schema, raw_row, index, ctx)
    if conflict is not None and conflict.type != CONFLICT_DUPLICATE:
        result.errors.append({
            "record_type": schema.data_type,
            "index": index,
            "message": conflict.message,
            "code": conflict.type.upper(),
        })
        return "skipped"

    try:
        if existing is not None:
            result.conflicts.append(conflict)
            ctx.remember(schema.data_type, file_id(raw_row), existing.id)
            if resolution == "update" and schema.update(existing, row, raw_row, ctx):
                return "updated"
            return "skipped"
        created = schema.insert(row, raw_row, ctx)
    except ValidationError as exc:
        result.errors.append({
            "record_type": schema.data_type,
            "index": index,
            "message": exc.message,
            "code": CONFLICT_VALIDATION_FAILED.upper(),
        })
        return "skipped"

    ctx.remember(schema.data_type, file_id(raw_row), created.id)
    return "imported"


def _reconcile_quantities(ctx: ImportContext) -> None:
    for product_id, target in ctx.opening_quantities.items():
        product = db.session.get(Product, product_id)
        delta = target - product.quantity
        if delta:
            apply_movement(product, ADJUSTMENT, delta, note="Import reconciliation")


def import_all_data(document: Any, *, conflict_resolution: str = "skip") -> ImportResult:
    """
    Apply an export document to the store.

    Raises:
        ValidationError: the document is structurally invalid, or an unknown
            conflict_resolution
        ConflictError / TransactionError: store failure; nothing was written
    """
    if conflict_resolution not in CONFLICT_RESOLUTIONS:
        raise ValidationError(
            f"conflict_resolution must be one of {', '.join(CONFLICT_RESOLUTIONS)}",
            details={"conflict_resolution": conflict_resolution},
        )
    data = _require_valid(document)

    if conflict_resolution == "ask":
        conflicts = detect_conflicts(document)
        if conflicts:
            return ImportResult(
                success=False,
                conflicts=conflicts,
                message="Conflicts detected. Resolve them to continue.",
            )
        conflict_resolution = "skip"

    def _op():
        result = ImportResult(success=True)
        ctx = ImportContext(file_ids=_file_ids(data))
        for data_type, schema in SCHEMAS.items():
            counts = result.counts.setdefault(data_type, {"imported": 0, "updated": 0, "skipped": 0})
            for index, raw_row in enumerate(data.get(data_type) or []):
                counts[_apply_record(schema, raw_row, index, ctx, conflict_resolution, result)] += 1
            if data_type == "stock_movements":
                _reconcile_quantities(ctx)

        result.imported = sum(c["imported"] for c in result.counts.values())
        result.updated = sum(c["updated"] for c in result.counts.values())
        result.skipped = sum(c["skipped"] for c in result.counts.values())
        result.message = (
            f"{result.imported} records imported, {result.updated} updated, {result.skipped} skipped"
        )
        return result

    result = run_in_write_transaction(_op, label="Import")
    current_app.logger.info("Import committed: %s (%d errors)", result.message, len(result.errors))
    return result
