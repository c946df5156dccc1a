# Overview: Sales transaction coordinator; the single atomic checkout write path.

"""
Storekeeper Sale Invariants (authoritative)

Lifecycle of one checkout:
    Building (cart, caller side) -> Committing (add_sale) -> Committed | Aborted
A cart never reaches the store partially: add_sale() either commits the
sale, all of its items, every stock_out movement and the customer aggregate
update together, or none of them.

Money:
- Item price/cost/discount/subtotal are stored as the caller computed them
  (price may come from resolve_best_price). They must still satisfy
      subtotal == price * quantity - discount
  and the header total must equal SUM(subtotal), both at the configured
  currency precision. Missing subtotal/total are computed.
- cost is the cost snapshot at sale time; defaults to the product's cost.

Stock:
- Each item appends a stock_out movement through the shared ledger path.
  Insufficient stock aborts the whole sale (ValidationError); nothing of it
  is persisted and the customer is untouched.

Time:
- A caller-supplied created_at is stored verbatim (backdated entry). An
  unparseable value falls back to now, logged as a warning.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..currency import get_currency_settings, quantize_money
from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..identifiers import CustomerId, ProductId, SaleId, new_sale_id
from ..models import STOCK_OUT, Customer, Product, Sale, SaleItem
from ..time_utils import normalize_timestamp, utcnow
from ..validation import require_money, require_positive_quantity
from .concurrency import lock_for_update, run_in_write_transaction
from .inventory_service import parse_range_bound, apply_movement

MAX_PAYMENT_METHOD_LENGTH = 32


@dataclass(frozen=True)
class SaleLineInput:
    """A validated cart line, not yet written."""
    product_id: ProductId
    quantity: int
    price: Decimal
    cost: Decimal | None
    discount: Decimal
    subtotal: Decimal


def _validate_header(header: dict) -> dict:
    if not isinstance(header, dict):
        raise ValidationError("Invalid sale header")

    payment_method = header.get("payment_method")
    if not isinstance(payment_method, str) or not payment_method.strip():
        raise ValidationError("payment_method is required")
    payment_method = payment_method.strip()
    if len(payment_method) > MAX_PAYMENT_METHOD_LENGTH:
        raise ValidationError(f"payment_method exceeds max length {MAX_PAYMENT_METHOD_LENGTH}")

    customer_id = header.get("customer_id")
    if customer_id is not None and (not isinstance(customer_id, str) or not customer_id.strip()):
        raise ValidationError("customer_id must be a customer id string")

    note = header.get("note")
    if note is not None:
        note = str(note).strip() or None

    total = header.get("total")
    if total is not None:
        total = require_money(total, "total")

    return {
        "payment_method": payment_method,
        "customer_id": customer_id,
        "note": note,
        "total": total,
        "created_at": _resolve_created_at(header.get("created_at")),
    }


def _resolve_created_at(value):
    if value is None or value == "":
        return utcnow()
    try:
        return normalize_timestamp(value)
    except ValueError:
        current_app.logger.warning("Ignoring unparseable sale created_at %r; using current time", value)
        return utcnow()


def _validate_items(items, decimals: int) -> list[SaleLineInput]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("A sale needs at least one item")

    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("Invalid sale item", details={"index": index})
        product_id = item.get("product_id")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer", details={"index": index})

        quantity = require_positive_quantity(item.get("quantity"))
        price = require_money(item.get("price"), "price")
        cost = require_money(item["cost"], "cost") if item.get("cost") is not None else None
        discount = require_money(item.get("discount") or 0, "discount")

        expected = price * quantity - discount
        if expected < 0:
            raise ValidationError("discount exceeds line amount", details={"index": index})

        subtotal = item.get("subtotal")
        if subtotal is None:
            subtotal = quantize_money(expected, decimals)
        else:
            subtotal = require_money(subtotal, "subtotal")
            if quantize_money(subtotal, decimals) != quantize_money(expected, decimals):
                raise ValidationError(
                    "subtotal must equal price * quantity - discount",
                    details={"index": index, "subtotal": subtotal, "expected": expected},
                )

        lines.append(
            SaleLineInput(
                product_id=ProductId(product_id),
                quantity=quantity,
                price=price,
                cost=cost,
                discount=discount,
                subtotal=subtotal,
            )
        )
    return lines


def _validate_on_hand(products: dict[int, Product], lines: list[SaleLineInput]) -> None:
    product_totals: dict[int, int] = {}
    for line in lines:
        product_totals[line.product_id] = product_totals.get(line.product_id, 0) + line.quantity

    insufficient = []
    for product_id, qty in product_totals.items():
        on_hand = products[product_id].quantity
        if on_hand < qty:
            insufficient.append({
                "product_id": product_id,
                "product_name": products[product_id].name,
                "requested_quantity": qty,
                "on_hand": on_hand,
            })

    if insufficient:
        current_app.logger.warning("Sale refused: insufficient stock for %s", insufficient)
        raise ValidationError(
            "Insufficient stock to complete sale",
            details={"items": insufficient},
        )


def add_sale(header: dict, items: list[dict]) -> SaleId:
    """
    Commit a checkout: sale header, its items, stock decrements, and the
    customer's lifetime totals, as one transaction.

    Returns:
        The new sale id.

    Raises:
        ValidationError: malformed cart, totals that do not add up, archived
            product, or insufficient stock
        NotFoundError: unknown product or customer
        TransactionError: store failure (already rolled back)
    """
    decimals = get_currency_settings().decimals
    data = _validate_header(header)
    lines = _validate_items(items, decimals)

    items_total = sum((line.subtotal for line in lines), Decimal("0"))
    total = data["total"]
    if total is None:
        total = quantize_money(items_total, decimals)
    elif quantize_money(total, decimals) != quantize_money(items_total, decimals):
        raise ValidationError(
            "Sale total must equal the sum of item subtotals",
            details={"total": total, "items_total": items_total},
        )

    def _op():
        products: dict[int, Product] = {}
        for line in lines:
            if line.product_id in products:
                continue
            product = lock_for_update(db.session.query(Product).filter(Product.id == line.product_id)).first()
            if product is None:
                raise NotFoundError("Product not found", details={"product_id": line.product_id})
            if not product.is_active:
                raise ValidationError("Product is archived", details={"product_id": product.id})
            products[product.id] = product

        customer = None
        if data["customer_id"] is not None:
            customer = db.session.get(Customer, data["customer_id"])
            if customer is None:
                raise NotFoundError("Customer not found", details={"customer_id": data["customer_id"]})

        _validate_on_hand(products, lines)

        sale = Sale(
            id=new_sale_id(),
            customer_id=data["customer_id"],
            total=total,
            payment_method=data["payment_method"],
            note=data["note"],
            created_at=data["created_at"],
        )
        db.session.add(sale)
        db.session.flush()

        for position, line in enumerate(lines):
            product = products[line.product_id]
            db.session.add(
                SaleItem(
                    sale_id=sale.id,
                    product_id=product.id,
                    position=position,
                    quantity=line.quantity,
                    price=line.price,
                    cost=line.cost if line.cost is not None else product.cost,
                    discount=line.discount,
                    subtotal=line.subtotal,
                )
            )
            apply_movement(
                product,
                STOCK_OUT,
                line.quantity,
                note=f"Sale {sale.id}",
                sale_id=sale.id,
                created_at=sale.created_at,
            )

        if customer is not None:
            customer.total_spent = (customer.total_spent or Decimal("0")) + total
            customer.visit_count = (customer.visit_count or 0) + 1

        db.session.flush()
        return SaleId(sale.id)

    sale_id = run_in_write_transaction(_op, label="Sale")
    current_app.logger.info("Sale %s committed: total=%s items=%d", sale_id, total, len(lines))
    return sale_id


def get_sale_by_id(sale_id: SaleId) -> dict:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale.to_dict(include_items=True)


def list_sales(
    start=None,
    end=None,
    page: int = 1,
    per_page: int = 50,
    customer_id: CustomerId | None = None,
) -> dict:
    """Sales newest first, by business time, optionally for one customer."""
    start_dt = parse_range_bound(start, upper=False)
    end_dt = parse_range_bound(end, upper=True)

    q = db.session.query(Sale)
    if customer_id is not None:
        q = q.filter(Sale.customer_id == customer_id)
    if start_dt is not None:
        q = q.filter(Sale.created_at >= start_dt)
    if end_dt is not None:
        q = q.filter(Sale.created_at <= end_dt)

    per_page = min(max(per_page or 50, 1), 500)
    page = max(page or 1, 1)
    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    sales = (
        q.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [s.to_dict() for s in sales],
        "count": len(sales),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def sales_by_customer(customer_id: CustomerId) -> list[dict]:
    if db.session.get(Customer, customer_id) is None:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})
    sales = (
        db.session.query(Sale)
        .filter(Sale.customer_id == customer_id)
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .all()
    )
    return [s.to_dict(include_items=True) for s in sales]
