from decimal import Decimal

import pytest

from storekeeper.errors import ConflictError, NotFoundError, ValidationError
from storekeeper.extensions import db
from storekeeper.models import BulkPricingTier, StockMovement
from storekeeper.services import catalog_service, expense_service, products_service
from storekeeper.services.bulk_pricing_service import add_tier
from storekeeper.services.inventory_service import get_quantity_on_hand, record_movement


def test_opening_stock_is_a_ledger_movement(app):
    product = products_service.create_product(
        {"name": "Fish Sauce", "price": "4.25", "cost": "2.10", "barcode": "8850001"},
        initial_quantity=12,
    )

    assert product["quantity"] == 12
    assert get_quantity_on_hand(product["id"]) == 12
    movement = db.session.query(StockMovement).filter_by(product_id=product["id"]).one()
    assert movement.type == "stock_in"
    assert movement.unit_cost == Decimal("2.10")
    assert movement.note == "Opening stock"


def test_create_product_validation(app):
    with pytest.raises(ValidationError, match="Missing required fields: price"):
        products_service.create_product({"name": "No price"})
    with pytest.raises(ValidationError, match="price must be >= 0"):
        products_service.create_product({"name": "Negative", "price": "-1"})
    with pytest.raises(ValidationError, match="Field not allowed: quantity"):
        products_service.create_product({"name": "Sneaky", "price": "1", "quantity": 99})
    with pytest.raises(ValidationError, match="scientific notation"):
        products_service.create_product({"name": "Sci", "price": "1e3"})
    with pytest.raises(ValidationError, match="price allows at most 4 decimal places"):
        products_service.create_product({"name": "Fine", "price": "1.23456"})
    with pytest.raises(ValidationError, match="initial_quantity"):
        products_service.create_product({"name": "Neg stock", "price": "1"}, initial_quantity=-1)
    with pytest.raises(NotFoundError, match="Category"):
        products_service.create_product({"name": "Orphan", "price": "1", "category_id": 77})


def test_barcode_is_unique(make_product):
    make_product(barcode="12345")
    other = make_product(barcode="67890")

    with pytest.raises(ConflictError):
        make_product(barcode="12345")
    with pytest.raises(ConflictError):
        products_service.update_product(other["id"], {"barcode": "12345"})

    assert products_service.get_product_by_barcode("67890")["id"] == other["id"]
    with pytest.raises(NotFoundError):
        products_service.get_product_by_barcode("00000")


def test_update_product_patches_only_given_fields(make_product, supplier):
    product = make_product(name="Tea", price="3.00", cost="1.00")

    updated = products_service.update_product(product["id"], {"price": "3.50", "supplier_id": supplier["id"]})

    assert updated["price"] == Decimal("3.50")
    assert updated["cost"] == Decimal("1.00")
    assert updated["supplier_id"] == supplier["id"]


def test_list_products_filters_and_paginates(make_product):
    drinks = catalog_service.create_category({"name": "Drinks"})
    make_product(name="Cola", category_id=drinks["id"], barcode="C-1")
    make_product(name="Lime Soda", category_id=drinks["id"])
    old = make_product(name="Candle")
    products_service.archive_product(old["id"])

    assert [p["name"] for p in products_service.list_products()["items"]] == ["Cola", "Lime Soda"]
    assert products_service.list_products(include_inactive=True)["count"] == 3
    assert [p["name"] for p in products_service.list_products(search="c-1")["items"]] == ["Cola"]
    assert products_service.list_products(category_id=drinks["id"])["count"] == 2

    page = products_service.list_products(page=1, per_page=1)
    assert page["pagination"]["total"] == 2
    assert page["pagination"]["has_next"] is True


def test_product_with_history_is_archived_not_deleted(make_product):
    product = make_product(quantity=3)

    with pytest.raises(ConflictError, match="archive it instead"):
        products_service.delete_product(product["id"])

    archived = products_service.archive_product(product["id"])
    assert archived["is_active"] is False
    assert products_service.get_product(product["id"])["quantity"] == 3


def test_product_without_history_is_deleted_with_its_tiers(make_product):
    product = make_product(price="10.00")
    add_tier(product["id"], 5, "9.00")

    products_service.delete_product(product["id"])

    with pytest.raises(NotFoundError):
        products_service.get_product(product["id"])
    assert db.session.query(BulkPricingTier).count() == 0


# Catalog

def test_category_names_are_unique_ignoring_case(app):
    catalog_service.create_category({"name": "Snacks"})

    with pytest.raises(ConflictError):
        catalog_service.create_category({"name": "snacks"})
    assert [c["name"] for c in catalog_service.list_categories()] == ["Snacks"]


def test_category_in_use_cannot_be_deleted(make_product):
    used = catalog_service.create_category({"name": "Frozen"})
    spare = catalog_service.create_category({"name": "Spare"})
    make_product(category_id=used["id"])

    with pytest.raises(ConflictError):
        catalog_service.delete_category(used["id"])

    catalog_service.delete_category(spare["id"])
    with pytest.raises(NotFoundError):
        catalog_service.get_category(spare["id"])


def test_supplier_with_products_or_deliveries_cannot_be_deleted(make_product, supplier):
    product = make_product(supplier_id=supplier["id"])

    with pytest.raises(ConflictError, match="associated products"):
        catalog_service.delete_supplier(supplier["id"])

    products_service.update_product(product["id"], {"supplier_id": None})
    record_movement(product["id"], "stock_in", 4, unit_cost="1.00", supplier_id=supplier["id"])
    with pytest.raises(ConflictError, match="stock movements"):
        catalog_service.delete_supplier(supplier["id"])


def test_supplier_products_report_deliveries(make_product, supplier):
    rice = make_product(name="Rice", supplier_id=supplier["id"])
    make_product(name="Beans", supplier_id=supplier["id"])
    record_movement(rice["id"], "stock_in", 20, unit_cost="1.00", supplier_id=supplier["id"],
                    created_at="2024-04-01T09:00:00Z")
    record_movement(rice["id"], "stock_in", 5, unit_cost="1.10", supplier_id=supplier["id"],
                    created_at="2024-04-08T09:00:00Z")
    record_movement(rice["id"], "stock_out", 3)

    rows = catalog_service.supplier_products(supplier["id"])

    assert [r["product_name"] for r in rows] == ["Beans", "Rice"]
    beans, rice_row = rows
    assert beans["total_received"] == 0
    assert beans["last_delivery_date"] is None
    assert rice_row["total_received"] == 25
    assert rice_row["current_stock"] == 22
    assert rice_row["last_delivery_date"] == "2024-04-08T09:00:00Z"


def test_update_supplier(supplier):
    updated = catalog_service.update_supplier(supplier["id"], {"contact_name": "Daw Hla"})

    assert updated["contact_name"] == "Daw Hla"
    assert [s["name"] for s in catalog_service.list_suppliers(search="acme")] == ["Acme Wholesale"]


# Expenses

@pytest.fixture
def rent(app):
    return expense_service.create_expense_category({"name": "Rent"})


def test_expense_lifecycle(rent):
    expense = expense_service.create_expense(
        {"category_id": rent["id"], "amount": "450.00", "date": "2024-03-31T00:00:00Z"}
    )
    assert expense["category_name"] == "Rent"
    assert expense["date"] == "2024-03-31T00:00:00Z"

    updated = expense_service.update_expense(expense["id"], {"amount": "475.50"})
    assert updated["amount"] == Decimal("475.50")

    expense_service.delete_expense(expense["id"])
    assert expense_service.list_expenses()["pagination"]["total"] == 0


def test_expense_amount_must_be_positive(rent):
    with pytest.raises(ValidationError, match="amount must be > 0"):
        expense_service.create_expense({"category_id": rent["id"], "amount": "0"})
    with pytest.raises(NotFoundError):
        expense_service.create_expense({"category_id": 999, "amount": "1.00"})


def test_list_expenses_by_window_and_category(rent):
    power = expense_service.create_expense_category({"name": "Electricity"})
    expense_service.create_expense({"category_id": rent["id"], "amount": "400", "date": "2024-01-31T00:00:00Z"})
    expense_service.create_expense({"category_id": power["id"], "amount": "35", "date": "2024-02-10T00:00:00Z"})
    expense_service.create_expense({"category_id": rent["id"], "amount": "400", "date": "2024-02-29T00:00:00Z"})

    february = expense_service.list_expenses(start="2024-02-01T00:00:00Z", end="2024-02-29T23:59:59Z")
    assert [e["amount"] for e in february["items"]] == [Decimal("400"), Decimal("35")]

    assert expense_service.list_expenses(category_id=power["id"])["count"] == 1


def test_expense_category_rules(rent):
    with pytest.raises(ConflictError):
        expense_service.create_expense_category({"name": "Rent"})

    expense_service.create_expense({"category_id": rent["id"], "amount": "1.00"})
    with pytest.raises(ConflictError, match="has expenses"):
        expense_service.delete_expense_category(rent["id"])

    renamed = expense_service.update_expense_category(rent["id"], {"description": "Shop lease"})
    assert renamed["description"] == "Shop lease"
    assert [c["name"] for c in expense_service.list_expense_categories()] == ["Rent"]
