"""
Pytest fixtures for storekeeper tests.

Every test gets its own app on a private in-memory SQLite database and its
own in-memory migration status store, so nothing leaks between cases.
"""

import pytest
from sqlalchemy import text

from storekeeper import create_app, init_engine
from storekeeper.extensions import db
from storekeeper.services import catalog_service, customer_service, products_service
from storekeeper.services.migration_status import InMemoryStatusStore

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "SQLALCHEMY_TRACK_MODIFICATIONS": False,
    "CURRENCY_CODE": "USD",
    "CURRENCY_DECIMALS": None,
    "WRITE_RETRY_BACKOFF": 0,
}


@pytest.fixture(scope='function')
def status_store():
    return InMemoryStatusStore()


@pytest.fixture(scope='function')
def bare_app(status_store):
    """App with an empty database; init_engine() not yet run."""
    app = create_app(TEST_CONFIG, status_store=status_store)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def app(bare_app):
    """Fresh install: schema created, migration settled, engine ready."""
    init_engine()
    return bare_app


@pytest.fixture(scope='function')
def db_session(app):
    yield db.session
    db.session.rollback()


@pytest.fixture(scope='function')
def make_product(app):
    """Factory: create a product through the service, optionally with opening stock."""
    counter = {"n": 0}

    def _make(name=None, price="10.00", cost="6.00", quantity=0, **extra):
        counter["n"] += 1
        payload = {"name": name or f"Product {counter['n']}", "price": price, "cost": cost}
        payload.update(extra)
        return products_service.create_product(payload, initial_quantity=quantity)

    return _make


@pytest.fixture(scope='function')
def make_customer(app):
    counter = {"n": 0}

    def _make(name=None, **extra):
        counter["n"] += 1
        payload = {"name": name or f"Customer {counter['n']}"}
        payload.update(extra)
        return customer_service.create_customer(payload)

    return _make


@pytest.fixture(scope='function')
def supplier(app):
    return catalog_service.create_supplier({"name": "Acme Wholesale", "phone": "555-0100"})


@pytest.fixture(scope='function')
def legacy_store(bare_app):
    """
    A pre-existing install holding integer-cents money and no money_format
    marker, as written by older app builds.

    Returns the ids of the seeded rows.
    """
    db.create_all()
    db.session.execute(text(
        "INSERT INTO customers (id, name, total_spent, visit_count) "
        "VALUES ('cust-legacy-1', 'Legacy Customer', 5000, 1)"
    ))
    db.session.execute(text(
        "INSERT INTO products (id, name, price, cost, quantity, min_stock, is_active) "
        "VALUES (1, 'Legacy Widget', 2500, 1500, 8, 10, 1)"
    ))
    db.session.execute(text(
        "INSERT INTO bulk_pricing (id, product_id, min_quantity, bulk_price) VALUES (1, 1, 10, 2250)"
    ))
    db.session.execute(text(
        "INSERT INTO stock_movements (id, product_id, type, quantity, unit_cost) "
        "VALUES (1, 1, 'stock_in', 10, 1500)"
    ))
    db.session.execute(text(
        "INSERT INTO sales (id, customer_id, total, payment_method) "
        "VALUES ('sale-legacy-1', 'cust-legacy-1', 5000, 'cash')"
    ))
    db.session.execute(text(
        "INSERT INTO sale_items (id, sale_id, product_id, position, quantity, price, cost, discount, subtotal) "
        "VALUES ('item-legacy-1', 'sale-legacy-1', 1, 0, 2, 2500, 1500, 0, 5000)"
    ))
    db.session.execute(text(
        "INSERT INTO stock_movements (id, product_id, type, quantity, sale_id) "
        "VALUES (2, 1, 'stock_out', 2, 'sale-legacy-1')"
    ))
    db.session.execute(text("INSERT INTO expense_categories (id, name) VALUES (1, 'Rent')"))
    db.session.execute(text(
        "INSERT INTO expenses (id, category_id, amount, date) VALUES (1, 1, 120000, '2024-01-31 00:00:00')"
    ))
    db.session.commit()
    return {
        "customer_id": "cust-legacy-1",
        "product_id": 1,
        "tier_id": 1,
        "sale_id": "sale-legacy-1",
        "item_id": "item-legacy-1",
        "expense_id": 1,
    }
