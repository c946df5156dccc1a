# Overview: Stock movement ledger; the only code that changes Product.quantity.

"""
Storekeeper Inventory Invariants (authoritative)

Ledger model:
- StockMovement rows are append-only: never updated, never deleted.
  Corrections are new ADJUSTMENT movements.
- stock_in / stock_out carry a positive magnitude; adjustment carries a
  signed, non-zero delta.
- Product.quantity is a cache of the ledger:
    quantity == SUM(stock_in) - SUM(stock_out) + SUM(adjustment)
  apply_movement() inserts the row and moves the cache in the SAME
  transaction, so the equality holds at every commit.

Business invariants:
- On-hand may never go negative. A stock_out or negative adjustment that
  would cross zero is rejected (ValidationError), nothing is written.
- WAC is computed from stock_in rows with a unit_cost only:
    sum(qty * unit_cost) / sum(qty)
  Adjustments and stock-outs never move WAC. No stock_in history -> 0.

Time:
- created_at accepts a caller-supplied (backdated) timestamp; see
  time_utils.normalize_timestamp. Ranges are inclusive on both ends.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app
from sqlalchemy import case, func

from ..currency import MAX_DECIMALS
from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..identifiers import MovementId, ProductId, SaleId, SupplierId
from ..models import ADJUSTMENT, MOVEMENT_TYPES, STOCK_IN, STOCK_OUT, Product, StockMovement, Supplier
from ..time_utils import end_of_day, normalize_timestamp
from ..validation import require_money
from .concurrency import lock_for_update, run_in_write_transaction

WAC_QUANTUM = Decimal(1).scaleb(-MAX_DECIMALS)


def parse_range_bound(value, *, upper: bool) -> datetime | None:
    if value is None:
        return None
    # A bare date as the upper bound means "through the end of that day"
    if isinstance(value, date) and not isinstance(value, datetime):
        return end_of_day(value) if upper else normalize_timestamp(value)
    try:
        return normalize_timestamp(value)
    except ValueError:
        raise ValidationError("Invalid date range bound", details={"value": str(value)})


def _get_product(product_id: ProductId, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter(Product.id == product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def _validate_movement(movement_type: str, quantity, unit_cost) -> tuple[int, Decimal | None]:
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            f"type must be one of {', '.join(MOVEMENT_TYPES)}",
            details={"type": movement_type},
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if movement_type == ADJUSTMENT:
        if quantity == 0:
            raise ValidationError("adjustment quantity must be non-zero")
    elif quantity <= 0:
        raise ValidationError("quantity must be > 0")

    if unit_cost is not None:
        unit_cost = require_money(unit_cost, "unit_cost")
    return quantity, unit_cost


def apply_movement(
    product: Product,
    movement_type: str,
    quantity: int,
    *,
    unit_cost: Decimal | None = None,
    note: str | None = None,
    supplier_id: SupplierId | None = None,
    reference_number: str | None = None,
    sale_id: SaleId | None = None,
    created_at: datetime | None = None,
    movement_id: MovementId | None = None,
) -> StockMovement:
    """
    Core ledger append without transaction management or commit.

    Called by record_movement(), the sales coordinator and the importer, all
    of which already hold the write transaction. movement_id keeps a ledger
    id from an export file.
    """
    delta = -quantity if movement_type == STOCK_OUT else quantity
    new_quantity = product.quantity + delta
    if new_quantity < 0:
        current_app.logger.warning(
            "Refused %s of %s for product %s: only %s on hand",
            movement_type,
            quantity,
            product.id,
            product.quantity,
        )
        raise ValidationError(
            "Insufficient stock",
            details={
                "product_id": product.id,
                "product_name": product.name,
                "on_hand": product.quantity,
                "requested": abs(delta),
            },
        )

    movement = StockMovement(
        id=movement_id,
        product_id=product.id,
        type=movement_type,
        quantity=quantity,
        unit_cost=unit_cost,
        note=note,
        supplier_id=supplier_id,
        reference_number=reference_number,
        sale_id=sale_id,
        created_at=created_at or normalize_timestamp(None),
    )
    db.session.add(movement)
    product.quantity = new_quantity
    db.session.flush()
    return movement


def record_movement(
    product_id: ProductId,
    type: str,
    quantity: int,
    unit_cost=None,
    note: str | None = None,
    supplier_id: SupplierId | None = None,
    reference_number: str | None = None,
    created_at=None,
) -> dict:
    """
    Append a stock movement and move the product's cached quantity with it.

    Raises:
        ValidationError: bad type/quantity/cost, or on-hand would go negative
        NotFoundError: unknown product or supplier
    """
    quantity, unit_cost = _validate_movement(type, quantity, unit_cost)
    try:
        occurred_dt = normalize_timestamp(created_at)
    except ValueError:
        raise ValidationError("created_at must be an ISO-8601 datetime")
    if note is not None:
        note = str(note).strip() or None
        if note and len(note) > 255:
            raise ValidationError("note exceeds max length 255")

    def _op():
        product = _get_product(product_id, lock=True)
        if supplier_id is not None and db.session.get(Supplier, supplier_id) is None:
            raise NotFoundError("Supplier not found", details={"supplier_id": supplier_id})
        movement = apply_movement(
            product,
            type,
            quantity,
            unit_cost=unit_cost,
            note=note,
            supplier_id=supplier_id,
            reference_number=reference_number,
            created_at=occurred_dt,
        )
        return movement.to_dict()

    return run_in_write_transaction(_op, label="Record stock movement")


def list_movements(
    product_id: ProductId | None = None,
    type: str | None = None,
    supplier_id: SupplierId | None = None,
    start=None,
    end=None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    """
    Movements newest first, filtered and paginated.

    Returns:
        Dict with 'items', 'count', and 'pagination'.
    """
    if type is not None and type not in MOVEMENT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(MOVEMENT_TYPES)}")
    start_dt = parse_range_bound(start, upper=False)
    end_dt = parse_range_bound(end, upper=True)

    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if type is not None:
        q = q.filter(StockMovement.type == type)
    if supplier_id is not None:
        q = q.filter(StockMovement.supplier_id == supplier_id)
    if start_dt is not None:
        q = q.filter(StockMovement.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(StockMovement.created_at <= end_dt)

    per_page = min(max(per_page or 50, 1), 500)
    page = max(page or 1, 1)

    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    rows = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return {
        "items": [m.to_dict() for m in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_movement(movement_id: MovementId) -> dict:
    movement = db.session.get(StockMovement, movement_id)
    if movement is None:
        raise NotFoundError("Stock movement not found", details={"movement_id": movement_id})
    return movement.to_dict()


def weighted_average_cost(product_id: ProductId) -> Decimal:
    _get_product(product_id)
    rows = (
        db.session.query(StockMovement.quantity, StockMovement.unit_cost)
        .filter(
            StockMovement.product_id == product_id,
            StockMovement.type == STOCK_IN,
            StockMovement.unit_cost.isnot(None),
        )
        .all()
    )
    total_units = sum(q for q, _ in rows)
    if total_units <= 0:
        return Decimal("0")
    total_cost = sum((Decimal(q) * cost for q, cost in rows), Decimal("0"))
    return (total_cost / total_units).quantize(WAC_QUANTUM, rounding=ROUND_HALF_UP)


def get_quantity_on_hand(product_id: ProductId) -> int:
    """
    On-hand recomputed from the ledger, independent of the cached column.
    Used to audit Product.quantity.
    """
    _get_product(product_id)
    signed = case(
        (StockMovement.type == STOCK_OUT, -StockMovement.quantity),
        else_=StockMovement.quantity,
    )
    total = (
        db.session.query(func.coalesce(func.sum(signed), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def movement_summary(product_id: ProductId | None = None, start=None, end=None) -> dict:
    start_dt = parse_range_bound(start, upper=False)
    end_dt = parse_range_bound(end, upper=True)

    def _sum_for(movement_type):
        return func.coalesce(
            func.sum(case((StockMovement.type == movement_type, StockMovement.quantity), else_=0)),
            0,
        )

    q = db.session.query(
        _sum_for(STOCK_IN).label("total_stock_in"),
        _sum_for(STOCK_OUT).label("total_stock_out"),
        _sum_for(ADJUSTMENT).label("total_adjustments"),
        func.count(StockMovement.id).label("movement_count"),
    )
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if start_dt is not None:
        q = q.filter(StockMovement.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(StockMovement.created_at <= end_dt)

    row = q.one()
    stock_in = int(row.total_stock_in or 0)
    stock_out = int(row.total_stock_out or 0)
    adjustments = int(row.total_adjustments or 0)
    return {
        "total_stock_in": stock_in,
        "total_stock_out": stock_out,
        "total_adjustments": adjustments,
        "net_change": stock_in - stock_out + adjustments,
        "movement_count": int(row.movement_count or 0),
    }


def low_stock_products(include_inactive: bool = False) -> list[dict]:
    q = db.session.query(Product).filter(Product.quantity <= Product.min_stock)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    products = q.order_by(Product.quantity.asc(), Product.name.asc()).all()
    return [p.to_dict() for p in products]
