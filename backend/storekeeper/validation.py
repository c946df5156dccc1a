from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .currency import MAX_DECIMALS, to_decimal
from .errors import ValidationError, ConflictError  # noqa: F401  (re-exported)
from .time_utils import normalize_timestamp


# Maximum amount: 9,999,999,999.9999 fits Numeric(14, 4)
MAX_MONEY = Decimal("9999999999.9999")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what callers are allowed to set
    - required_on_create: fields required when creating
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = frozenset()


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Money and other decimals; checked before Integer since neither subclasses the other
    if isinstance(coltype, Numeric) and not isinstance(coltype, Integer):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a decimal amount")
        if isinstance(value, str) and 'e' in value.strip().lower():
            raise ValidationError(f"{col.key} must be a plain decimal (scientific notation not allowed)")
        try:
            amount = to_decimal(value.strip() if isinstance(value, str) else value)
        except ValueError:
            raise ValidationError(f"{col.key} must be a decimal amount")
        if not amount.is_finite():
            raise ValidationError(f"{col.key} must be a finite amount")
        _check_scale(amount, col.key)
        return amount

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, (datetime, date, str)):
            try:
                return normalize_timestamp(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes a caller payload against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and isinstance(val, str) and val == "":
            if not col.nullable:
                raise ValidationError(f"{k} cannot be blank")
            # optional text left blank is stored as NULL (keeps barcode uniqueness sane)
            val = None

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_scale(amount: Decimal, field: str) -> None:
    # columns hold MAX_DECIMALS places; anything finer would be rounded on write
    if amount and amount.normalize().as_tuple().exponent < -MAX_DECIMALS:
        raise ValidationError(f"{field} allows at most {MAX_DECIMALS} decimal places")


def _check_money(patch: dict, field: str, *, allow_zero: bool = True) -> None:
    if field not in patch or patch[field] is None:
        return
    amount = patch[field]
    if amount < 0 or (not allow_zero and amount == 0):
        bound = ">= 0" if allow_zero else "> 0"
        raise ValidationError(f"{field} must be {bound}")
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} cannot exceed {MAX_MONEY}")


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    _check_money(patch, "price")
    _check_money(patch, "cost")
    if "min_stock" in patch and patch["min_stock"] is not None and patch["min_stock"] < 0:
        raise ValidationError("min_stock must be >= 0")


def enforce_rules_expense(patch: dict) -> None:
    _check_money(patch, "amount", allow_zero=False)


def require_positive_quantity(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be > 0")
    return value


def require_money(value: Any, field: str, *, allow_zero: bool = True) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError(f"{field} must be a decimal amount")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite amount")
    _check_scale(amount, field)
    _check_money({field: amount}, field, allow_zero=allow_zero)
    return amount
