from decimal import Decimal

import pytest

from storekeeper.errors import ValidationError
from storekeeper.services import expense_service, products_service
from storekeeper.services.inventory_service import record_movement
from storekeeper.services.reporting_service import get_sales_analytics, inventory_valuation, sales_report
from storekeeper.services.sales_service import add_sale


@pytest.fixture
def trading_day(make_product):
    """Two days of sales plus one expense."""
    widget = make_product(name="Widget", price="10.00", cost="6.00", quantity=50)
    gadget = make_product(name="Gadget", price="25.00", cost="15.00", quantity=10)

    add_sale(
        {"payment_method": "cash", "created_at": "2024-07-01T09:00:00Z"},
        [
            {"product_id": widget["id"], "quantity": 3, "price": "10.00"},
            {"product_id": gadget["id"], "quantity": 1, "price": "25.00", "discount": "5.00"},
        ],
    )
    add_sale(
        {"payment_method": "card", "created_at": "2024-07-02T15:30:00Z"},
        [{"product_id": widget["id"], "quantity": 2, "price": "10.00"}],
    )

    utilities = expense_service.create_expense_category({"name": "Utilities"})
    expense_service.create_expense({"category_id": utilities["id"], "amount": "7.25", "date": "2024-07-01T12:00:00Z"})
    return {"widget": widget, "gadget": gadget}


def test_analytics_over_a_window(trading_day):
    report = get_sales_analytics("2024-07-01T00:00:00Z", "2024-07-02T23:59:59Z")

    assert report["total_sales"] == 2
    assert report["total_revenue"] == Decimal("70.00")
    assert report["total_cost"] == Decimal("45.00")
    # widget 5 * 4.00 + gadget (25 - 15) - 5 discount
    assert report["total_profit"] == Decimal("25.00")
    assert report["profit_margin"] == Decimal("35.71")
    assert report["avg_sale_value"] == Decimal("35.00")
    assert report["total_items_sold"] == 6
    assert report["total_expenses"] == Decimal("7.25")
    assert report["net_profit"] == Decimal("17.75")
    assert report["expenses_by_category"] == [{"category_id": 1, "category": "Utilities", "amount": Decimal("7.25")}]

    top = report["top_products"]
    assert [p["name"] for p in top] == ["Widget", "Gadget"]
    assert top[0]["quantity_sold"] == 5
    assert top[0]["revenue"] == Decimal("50.00")


def test_window_excludes_sales_outside_it(trading_day):
    report = get_sales_analytics("2024-07-02T00:00:00Z", "2024-07-02T23:59:59Z")

    assert report["total_sales"] == 1
    assert report["total_revenue"] == Decimal("20.00")
    assert report["total_expenses"] == Decimal("0")
    assert report["start"] == "2024-07-02T00:00:00Z"


def test_empty_window_reports_zero_margin(app):
    report = get_sales_analytics("2030-01-01T00:00:00Z", "2030-01-31T00:00:00Z")

    assert report["total_sales"] == 0
    assert report["total_revenue"] == Decimal("0")
    assert report["profit_margin"] == Decimal("0")
    assert report["avg_sale_value"] == Decimal("0")
    assert report["top_products"] == []


def test_inverted_window_is_rejected(app):
    with pytest.raises(ValidationError):
        get_sales_analytics("2024-02-01T00:00:00Z", "2024-01-01T00:00:00Z")


def test_sales_report_groups_by_day(trading_day):
    report = sales_report(group_by="day")

    assert [r["period"] for r in report["rows"]] == ["2024-07-01", "2024-07-02"]
    first, second = report["rows"]
    assert first["sales_count"] == 1
    assert first["items_sold"] == 4
    assert first["revenue"] == Decimal("50.00")
    assert first["profit"] == Decimal("17.00")
    assert second["revenue"] == Decimal("20.00")


def test_sales_report_groups_by_month(trading_day):
    rows = sales_report(group_by="month")["rows"]

    assert rows == [
        {
            "period": "2024-07",
            "sales_count": 2,
            "items_sold": 6,
            "revenue": Decimal("70.00"),
            "profit": Decimal("25.00"),
            "profit_margin": Decimal("35.71"),
        }
    ]
    with pytest.raises(ValidationError):
        sales_report(group_by="year")


def test_archived_product_keeps_its_sales_in_analytics(make_product):
    product = make_product(name="Gone", price="4.00", quantity=1)
    add_sale({"payment_method": "cash"}, [{"product_id": product["id"], "quantity": 1, "price": "4.00"}])
    products_service.archive_product(product["id"])

    report = get_sales_analytics()

    assert report["total_revenue"] == Decimal("4.00")
    assert report["top_products"][0]["name"] == "Gone"


def test_inventory_valuation_uses_weighted_average_cost(make_product):
    pid = make_product(name="Flour")["id"]
    record_movement(pid, "stock_in", 10, unit_cost="1.00")
    record_movement(pid, "stock_in", 10, unit_cost="2.00")
    record_movement(pid, "stock_out", 5)

    valuation = inventory_valuation()

    row = valuation["rows"][0]
    assert row["quantity"] == 15
    assert row["weighted_average_cost"] == Decimal("1.5000")
    assert row["value"] == Decimal("22.50")
    assert valuation["total_value"] == Decimal("22.50")
