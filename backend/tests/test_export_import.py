from contextlib import contextmanager
from decimal import Decimal

import pytest

from storekeeper import create_app, init_engine
from storekeeper.errors import NotFoundError, ValidationError
from storekeeper.extensions import db
from storekeeper.models import (
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
from storekeeper.services import catalog_service, expense_service
from storekeeper.services.bulk_pricing_service import add_tier, resolve_best_price
from storekeeper.services.export_service import (
    DATA_TYPES,
    export_all_data,
    generate_export_preview,
    write_export_file,
)
from storekeeper.services.import_service import (
    detect_conflicts,
    import_all_data,
    load_import_file,
    preview_import,
    validate_import_data,
)
from storekeeper.services.migration_status import InMemoryStatusStore
from storekeeper.services.sales_service import add_sale, get_sale_by_id

from conftest import TEST_CONFIG


@contextmanager
def _fresh_store():
    """A second, empty install to import into."""
    other = create_app(TEST_CONFIG, status_store=InMemoryStatusStore())
    with other.app_context():
        init_engine()
        try:
            yield other
        finally:
            db.session.remove()
            db.drop_all()


@pytest.fixture
def stocked_store(make_product, make_customer, supplier):
    """A small shop: catalog, a tier, a customer sale and an expense."""
    drinks = catalog_service.create_category({"name": "Drinks"})
    cola = make_product(
        name="Cola",
        price="2.00",
        cost="1.20",
        quantity=24,
        barcode="490-COLA",
        category_id=drinks["id"],
        supplier_id=supplier["id"],
    )
    chips = make_product(name="Chips", price="1.50", cost="0.80", quantity=10)
    add_tier(cola["id"], 12, "1.80")
    customer = make_customer(name="Mina", phone="555-0142")
    sale_id = add_sale(
        {"customer_id": customer["id"], "payment_method": "cash", "created_at": "2024-03-05T10:00:00Z"},
        [
            {"product_id": cola["id"], "quantity": 12, "price": "1.80"},
            {"product_id": chips["id"], "quantity": 2, "price": "1.50", "discount": "0.50"},
        ],
    )
    rent = expense_service.create_expense_category({"name": "Rent"})
    expense_service.create_expense({"category_id": rent["id"], "amount": "450.00", "date": "2024-03-01T00:00:00Z"})
    return {"cola": cola, "chips": chips, "customer": customer, "sale_id": sale_id}


def _products_by_name():
    return {p.name: p for p in db.session.query(Product).all()}


def test_export_snapshots_every_table(stocked_store):
    document = export_all_data()

    assert document["version"] == "2.0"
    assert document["data_type"] == "all"
    assert set(document["data"]) == set(DATA_TYPES)

    counts = document["integrity"]["record_counts"]
    assert counts["products"] == 2
    assert counts["sales"] == 1
    assert counts["sale_items"] == 2
    assert counts["bulk_pricing"] == 1
    # two opening stock_ins and two sale stock_outs
    assert counts["stock_movements"] == 4
    assert document["metadata"]["record_count"] == sum(counts.values())

    cola = next(p for p in document["data"]["products"] if p["name"] == "Cola")
    assert cola["category"] == "Drinks"
    assert cola["supplier_name"] == "Acme Wholesale"
    assert "image_url" not in cola
    # money survives JSON as decimal text
    assert isinstance(cola["price"], str)
    assert Decimal(cola["price"]) == Decimal("2.00")

    sale = document["data"]["sales"][0]
    assert [Decimal(i["subtotal"]) for i in sale["items"]] == [Decimal("21.60"), Decimal("2.50")]
    assert sale["created_at"] == "2024-03-05T10:00:00Z"
    assert document["data"]["expenses"][0]["category_name"] == "Rent"


def test_export_preview_counts_without_building_the_document(stocked_store):
    preview = generate_export_preview()

    assert preview["data_counts"]["sale_items"] == 2
    assert preview["data_counts"]["customers"] == 1
    assert preview["total_records"] == sum(preview["data_counts"].values())


def test_round_trip_into_an_empty_store(stocked_store):
    document = export_all_data()

    with _fresh_store():
        result = import_all_data(document)

        assert result.success is True
        assert result.errors == []
        assert result.updated == 0
        assert result.skipped == 0
        for data_type in DATA_TYPES:
            assert result.counts[data_type]["imported"] == len(document["data"][data_type])

        products = _products_by_name()
        assert products["Cola"].id == stocked_store["cola"]["id"]
        assert products["Cola"].quantity == 12
        assert products["Chips"].quantity == 8
        assert products["Cola"].category.name == "Drinks"
        assert products["Cola"].supplier.name == "Acme Wholesale"
        # the replayed ledger already matches, so no reconciliation row
        assert db.session.query(StockMovement).count() == 4
        assert db.session.query(StockMovement).filter_by(note="Import reconciliation").count() == 0

        sale = get_sale_by_id(stocked_store["sale_id"])
        assert sale["total"] == Decimal("24.10")
        assert sale["customer_name"] == "Mina"
        assert [i["product_name"] for i in sale["items"]] == ["Cola", "Chips"]

        customer = db.session.get(Customer, stocked_store["customer"]["id"])
        assert customer.total_spent == Decimal("24.10")
        assert customer.visit_count == 1

        best = resolve_best_price(products["Cola"].id, 12)
        assert best.is_bulk_price is True
        assert best.price == Decimal("1.80")

        expense = db.session.query(Expense).one()
        assert expense.category.name == "Rent"
        assert expense.amount == Decimal("450.00")


def test_reimporting_into_the_same_store_changes_nothing(stocked_store):
    document = export_all_data()
    movements_before = db.session.query(StockMovement).count()

    result = import_all_data(document)

    assert result.imported == 0
    assert result.skipped == sum(len(document["data"][t]) for t in DATA_TYPES)
    assert result.errors == []
    assert {c.type for c in result.conflicts} == {"duplicate"}
    assert {c.matched_by for c in result.conflicts} == {"id"}
    assert db.session.query(Sale).count() == 1
    assert db.session.query(SaleItem).count() == 2
    assert db.session.query(StockMovement).count() == movements_before
    assert _products_by_name()["Cola"].quantity == 12


def test_conflicts_are_detected_by_id_barcode_and_missing_reference(make_product):
    kept = make_product(name="Cola", price="2.00", barcode="490-COLA")
    document = {
        "version": "2.0",
        "data": {
            "products": [
                {"id": kept["id"], "name": "Cola Zero", "price": "2.20"},
                {"id": 500, "name": "Cola Twin", "barcode": "490-COLA", "price": "2.00"},
                {"id": 501, "name": "Broken", "price": "two dollars"},
                {"id": 502, "name": "Brand New", "price": "3.00"},
            ],
            "bulk_pricing": [
                {"product_id": 502, "min_quantity": 6, "bulk_price": "2.50"},
                {"product_id": 999, "min_quantity": 6, "bulk_price": "1.00"},
            ],
        },
    }

    conflicts = detect_conflicts(document)

    by_index = {(c.record_type, c.index): c for c in conflicts}
    assert by_index[("products", 0)].type == "duplicate"
    assert by_index[("products", 0)].matched_by == "id"
    assert by_index[("products", 1)].matched_by == "barcode"
    assert by_index[("products", 1)].existing_id == kept["id"]
    assert "490-COLA" in by_index[("products", 1)].message
    assert by_index[("products", 2)].type == "validation_failed"
    assert ("products", 3) not in by_index
    # a tier for a product that only exists in the file is fine
    assert ("bulk_pricing", 0) not in by_index
    assert by_index[("bulk_pricing", 1)].type == "reference_missing"
    assert by_index[("bulk_pricing", 1)].field == "product_id"

    preview = preview_import(document)
    assert preview["conflict_summary"]["total_conflicts"] == 4
    assert preview["conflict_summary"]["by_type"]["products"]["duplicate"] == 2
    assert preview["record_counts"]["products"] == 4
    # detection never writes
    assert db.session.query(Product).count() == 1


def test_skip_keeps_existing_records_and_imports_the_rest(make_product):
    kept = make_product(name="Cola", price="2.00", barcode="490-COLA", quantity=3)
    document = {
        "version": "2.0",
        "data": {
            "products": [
                {"id": kept["id"], "name": "Cola Zero", "price": "2.20", "quantity": 40},
                {"id": 502, "name": "Brand New", "price": "3.00", "quantity": 5},
            ],
            "stock_movements": [{"id": 900, "product_id": 999, "type": "stock_in", "quantity": 4}],
        },
    }

    result = import_all_data(document, conflict_resolution="skip")

    assert result.counts["products"] == {"imported": 1, "updated": 0, "skipped": 1}
    assert result.errors[0]["code"] == "REFERENCE_MISSING"
    assert result.errors[0]["record_type"] == "stock_movements"

    products = _products_by_name()
    assert products["Cola"].price == Decimal("2.00")
    assert products["Cola"].quantity == 3
    # no movements in the file for it, so on-hand comes from one reconciling adjustment
    fresh = products["Brand New"]
    assert fresh.quantity == 5
    movement = db.session.query(StockMovement).filter_by(product_id=fresh.id).one()
    assert movement.type == "adjustment"
    assert movement.note == "Import reconciliation"


def test_update_overwrites_master_data_but_never_history(stocked_store):
    document = export_all_data()
    cola = next(p for p in document["data"]["products"] if p["name"] == "Cola")
    cola.update({"name": "Cola Classic", "price": "2.40", "quantity": 999})
    document["data"]["sales"][0]["note"] = "rewritten"
    document["data"]["customers"][0]["address"] = "12 Harbour Road"

    result = import_all_data(document, conflict_resolution="update")

    assert result.counts["products"]["updated"] == 2
    assert result.counts["sales"] == {"imported": 0, "updated": 0, "skipped": 1}
    assert result.counts["stock_movements"]["skipped"] == 4

    db.session.expire_all()
    product = db.session.get(Product, stocked_store["cola"]["id"])
    assert product.name == "Cola Classic"
    assert product.price == Decimal("2.40")
    # on-hand belongs to the ledger
    assert product.quantity == 12
    assert db.session.get(Sale, stocked_store["sale_id"]).note is None
    assert db.session.get(Customer, stocked_store["customer"]["id"]).address == "12 Harbour Road"


def test_update_refuses_a_price_below_an_existing_tier(stocked_store):
    document = export_all_data()
    cola = next(p for p in document["data"]["products"] if p["name"] == "Cola")
    cola["price"] = "1.50"

    result = import_all_data(document, conflict_resolution="update")

    assert any("bulk pricing tier" in e["message"] for e in result.errors)
    db.session.expire_all()
    assert db.session.get(Product, stocked_store["cola"]["id"]).price == Decimal("2.00")


def test_ask_returns_conflicts_and_writes_nothing(make_product):
    kept = make_product(name="Cola", price="2.00")
    document = {
        "version": "2.0",
        "data": {
            "products": [
                {"id": kept["id"], "name": "Cola", "price": "9.00"},
                {"id": 502, "name": "Brand New", "price": "3.00"},
            ]
        },
    }

    result = import_all_data(document, conflict_resolution="ask")

    assert result.success is False
    assert [c.index for c in result.conflicts] == [0]
    assert db.session.query(Product).count() == 1

    clean = {"version": "2.0", "data": {"products": [{"name": "Brand New", "price": "3.00"}]}}
    assert import_all_data(clean, conflict_resolution="ask").imported == 1


def test_references_fall_back_to_names(app, supplier):
    document = {
        "version": "2.0",
        "data": {
            "products": [
                {
                    "id": 7,
                    "name": "Lemonade",
                    "price": "2.50",
                    "category_id": 77,
                    "category": "Drinks",
                    "supplier_id": 88,
                    "supplier_name": "Acme Wholesale",
                }
            ],
            "expenses": [
                {"id": 1, "category_id": 40, "category_name": "Utilities", "amount": "80.00", "date": "2024-02-01"},
                {"id": 2, "amount": "12.00", "date": "2024-02-02"},
            ],
        },
    }

    result = import_all_data(document)

    assert result.errors == []
    product = db.session.get(Product, 7)
    assert product.category.name == "Drinks"
    assert product.supplier_id == supplier["id"]
    assert db.session.query(Supplier).count() == 1
    assert db.session.query(Category).count() == 1
    names = {e.id: e.category.name for e in db.session.query(Expense).all()}
    assert names == {1: "Utilities", 2: "General"}
    assert db.session.query(ExpenseCategory).count() == 2


def test_bad_records_are_reported_not_fatal(app):
    document = {
        "version": "2.0",
        "data": {
            "products": [
                {"id": 1, "name": "Good", "price": "4.00"},
                {"id": 2, "name": "Too precise", "price": "4.00001"},
            ],
            "bulk_pricing": [{"product_id": 1, "min_quantity": 5, "bulk_price": "4.00"}],
            "sales": [
                {
                    "id": "7b0c2a9e-8f6d-4f0e-9a4b-3d2f1e0c9b8a",
                    "total": "99.00",
                    "payment_method": "cash",
                    "items": [{"product_id": 1, "quantity": 1, "price": "4.00", "subtotal": "4.00"}],
                }
            ],
        },
    }

    result = import_all_data(document)

    assert result.imported == 1
    messages = " | ".join(e["message"] for e in result.errors)
    assert "at most 4 decimal places" in messages
    assert "less than regular price" in messages
    assert "sum of its item subtotals" in messages
    assert db.session.query(BulkPricingTier).count() == 0
    assert db.session.query(Sale).count() == 0


@pytest.mark.parametrize(
    "document, message",
    [
        ([1, 2], "JSON object"),
        ({"version": "1.0", "data": {"products": [{"name": "x", "price": "1"}]}}, "Unsupported export version"),
        ({"version": "2.0"}, "No data found"),
        ({"version": "2.0", "data": {"products": {"name": "x"}}}, "products must be a list"),
        ({"version": "2.0", "data": {"products": [], "sales": []}}, "contains no records"),
        ({"version": "2.0", "data": {"products": ["Cola"]}}, "not objects"),
    ],
)
def test_invalid_documents_are_rejected_before_any_write(app, document, message):
    ok, errors = validate_import_data(document)
    assert ok is False
    assert any(message in e for e in errors)

    with pytest.raises(ValidationError, match="Import file is not valid"):
        import_all_data(document)


def test_unknown_conflict_resolution(app):
    with pytest.raises(ValidationError, match="conflict_resolution"):
        import_all_data(
            {"version": "2.0", "data": {"products": [{"name": "x", "price": "1"}]}},
            conflict_resolution="merge",
        )


def test_export_file_round_trips_through_disk(stocked_store, tmp_path):
    path = tmp_path / "backups" / "shop.json"

    metadata = write_export_file(path)

    assert metadata["file_size"] == path.stat().st_size
    assert metadata["empty_export"] is False
    document = load_import_file(path)
    assert document["version"] == "2.0"
    assert len(document["data"]["products"]) == 2


def test_load_import_file_errors(app, tmp_path):
    with pytest.raises(NotFoundError):
        load_import_file(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValidationError, match="not valid JSON"):
        load_import_file(broken)
