# Overview: Read-only revenue, profit and stock rollups over committed data.

"""
Analytics definitions (authoritative)

Over sales whose business time (created_at) falls in [start, end]:
- total_revenue = SUM(sale.total)
- total_cost    = SUM(item.cost * item.quantity)
- total_profit  = SUM((item.price - item.cost) * item.quantity - item.discount)
- profit_margin = total_profit / total_revenue * 100, 0 when revenue is 0
- net_profit    = total_profit - SUM(expense.amount) over the same window
Amounts are summed as Decimal in Python: SQLite SUM() over NUMERIC columns
goes through floats.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func

from ..currency import get_currency_settings
from ..errors import ValidationError
from ..extensions import db
from ..models import Expense, ExpenseCategory, Product, Sale, SaleItem
from ..time_utils import to_utc_z
from .inventory_service import parse_range_bound, weighted_average_cost

TOP_PRODUCTS_LIMIT = 5
PERCENT_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")

PERIOD_FORMATS = {
    "day": "%Y-%m-%d",
    "week": "%Y-W%W",
    "month": "%Y-%m",
}


def _parse_range(start, end):
    start_dt = parse_range_bound(start, upper=False)
    end_dt = parse_range_bound(end, upper=True)
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("start must be before end")
    return start_dt, end_dt


def _in_window(query, column, start_dt, end_dt):
    if start_dt is not None:
        query = query.filter(column >= start_dt)
    if end_dt is not None:
        query = query.filter(column <= end_dt)
    return query


def _money(value: Decimal) -> Decimal:
    return value.quantize(get_currency_settings().quantum, rounding=ROUND_HALF_UP)


def _margin(profit: Decimal, revenue: Decimal) -> Decimal:
    if revenue == 0:
        return ZERO
    return (profit / revenue * 100).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def _expenses_by_category(start_dt, end_dt) -> list[dict]:
    q = db.session.query(ExpenseCategory.id, ExpenseCategory.name, Expense.amount).join(
        Expense, Expense.category_id == ExpenseCategory.id
    )
    q = _in_window(q, Expense.date, start_dt, end_dt)

    totals: dict[int, dict] = {}
    for category_id, name, amount in q.all():
        entry = totals.setdefault(category_id, {"category_id": category_id, "category": name, "amount": ZERO})
        entry["amount"] += amount
    rows = sorted(totals.values(), key=lambda e: (-e["amount"], e["category"]))
    for row in rows:
        row["amount"] = _money(row["amount"])
    return rows


def get_sales_analytics(start=None, end=None) -> dict:
    """Revenue, profit, margin, top products and expenses for a window (whole history if unbounded)."""
    start_dt, end_dt = _parse_range(start, end)

    sales_q = _in_window(db.session.query(Sale.total), Sale.created_at, start_dt, end_dt)
    totals = [t for (t,) in sales_q.all()]
    total_sales = len(totals)
    total_revenue = sum(totals, ZERO)

    items_q = db.session.query(
        SaleItem.product_id,
        SaleItem.quantity,
        SaleItem.price,
        SaleItem.cost,
        SaleItem.discount,
        SaleItem.subtotal,
    ).join(Sale, Sale.id == SaleItem.sale_id)
    items_q = _in_window(items_q, Sale.created_at, start_dt, end_dt)

    total_cost = ZERO
    total_profit = ZERO
    total_items_sold = 0
    per_product = defaultdict(lambda: {"quantity_sold": 0, "revenue": ZERO, "profit": ZERO})
    for product_id, quantity, price, cost, discount, subtotal in items_q.all():
        line_profit = (price - cost) * quantity - discount
        total_cost += cost * quantity
        total_profit += line_profit
        total_items_sold += quantity
        entry = per_product[product_id]
        entry["quantity_sold"] += quantity
        entry["revenue"] += subtotal
        entry["profit"] += line_profit

    ranked = sorted(per_product.items(), key=lambda kv: (-kv[1]["quantity_sold"], -kv[1]["revenue"], kv[0]))
    top_ids = [pid for pid, _ in ranked[:TOP_PRODUCTS_LIMIT]]
    names = dict(db.session.query(Product.id, Product.name).filter(Product.id.in_(top_ids)).all()) if top_ids else {}
    top_products = [
        {
            "product_id": pid,
            "name": names.get(pid, "[Deleted Product]"),
            "quantity_sold": entry["quantity_sold"],
            "revenue": _money(entry["revenue"]),
            "profit": _money(entry["profit"]),
        }
        for pid, entry in ranked[:TOP_PRODUCTS_LIMIT]
    ]

    expenses = _expenses_by_category(start_dt, end_dt)
    total_expenses = sum((e["amount"] for e in expenses), ZERO)
    avg_sale_value = total_revenue / total_sales if total_sales else ZERO

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "total_sales": total_sales,
        "total_revenue": _money(total_revenue),
        "total_cost": _money(total_cost),
        "total_profit": _money(total_profit),
        "profit_margin": _margin(total_profit, total_revenue),
        "avg_sale_value": _money(avg_sale_value),
        "total_items_sold": total_items_sold,
        "top_products": top_products,
        "expenses_by_category": expenses,
        "total_expenses": _money(total_expenses),
        "net_profit": _money(total_profit - total_expenses),
    }


def sales_report(start=None, end=None, group_by: str = "day") -> dict:
    """Revenue and profit per day, ISO-ish week, or month."""
    if group_by not in PERIOD_FORMATS:
        raise ValidationError("group_by must be day, week, or month")
    start_dt, end_dt = _parse_range(start, end)

    period_expr = func.strftime(PERIOD_FORMATS[group_by], Sale.created_at)
    q = db.session.query(
        period_expr.label("period"),
        Sale.id,
        SaleItem.quantity,
        SaleItem.price,
        SaleItem.cost,
        SaleItem.discount,
        SaleItem.subtotal,
    ).join(SaleItem, SaleItem.sale_id == Sale.id)
    q = _in_window(q, Sale.created_at, start_dt, end_dt)

    periods: dict[str, dict] = {}
    for period, sale_id, quantity, price, cost, discount, subtotal in q.all():
        entry = periods.setdefault(
            period,
            {"period": period, "sale_ids": set(), "items_sold": 0, "revenue": ZERO, "profit": ZERO},
        )
        entry["sale_ids"].add(sale_id)
        entry["items_sold"] += quantity
        entry["revenue"] += subtotal
        entry["profit"] += (price - cost) * quantity - discount

    rows = []
    for period in sorted(periods):
        entry = periods[period]
        rows.append({
            "period": period,
            "sales_count": len(entry["sale_ids"]),
            "items_sold": entry["items_sold"],
            "revenue": _money(entry["revenue"]),
            "profit": _money(entry["profit"]),
            "profit_margin": _margin(entry["profit"], entry["revenue"]),
        })

    return {
        "group_by": group_by,
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "rows": rows,
    }


def inventory_valuation() -> dict:
    """On-hand quantity valued at weighted average cost, active products only."""
    products = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True))
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )

    rows = []
    total_value = ZERO
    for product in products:
        wac = weighted_average_cost(product.id)
        value = wac * product.quantity
        total_value += value
        rows.append({
            "product_id": product.id,
            "name": product.name,
            "quantity": product.quantity,
            "weighted_average_cost": wac,
            "value": _money(value),
        })

    return {"rows": rows, "total_value": _money(total_value)}
