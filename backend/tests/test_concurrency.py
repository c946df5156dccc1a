import pytest
from sqlalchemy.exc import OperationalError

from storekeeper.errors import ConflictError, MigrationError, NotFoundError, TransactionError
from storekeeper.extensions import db
from storekeeper.models import Product
from storekeeper.services.concurrency import begin_immediate, require_engine_ready, run_in_write_transaction


def _locked():
    return OperationalError("INSERT INTO products ...", {}, Exception("database is locked"))


def test_result_is_returned_after_commit(app):
    def _op():
        product = Product(name="Committed", price=1, cost=0, quantity=0)
        db.session.add(product)
        db.session.flush()
        return product.id

    product_id = run_in_write_transaction(_op, label="Test write")

    db.session.expire_all()
    assert db.session.get(Product, product_id).name == "Committed"


def test_engine_errors_roll_back_and_propagate_unchanged(app):
    def _op():
        db.session.add(Product(name="Half written", price=1, cost=0, quantity=0))
        db.session.flush()
        raise NotFoundError("Customer not found")

    with pytest.raises(NotFoundError):
        run_in_write_transaction(_op, label="Test write")

    assert db.session.query(Product).filter_by(name="Half written").count() == 0


def test_constraint_violation_becomes_conflict(app):
    def _op():
        db.session.add(Product(name="First", barcode="DUP", price=1, cost=0, quantity=0))
        db.session.add(Product(name="Second", barcode="DUP", price=1, cost=0, quantity=0))
        db.session.flush()

    with pytest.raises(ConflictError, match="Test write violates a store constraint"):
        run_in_write_transaction(_op, label="Test write")

    assert db.session.query(Product).count() == 0


def test_lock_is_retried_then_succeeds(app):
    calls = {"n": 0}

    def _op():
        calls["n"] += 1
        if calls["n"] < 3:
            raise _locked()
        return "done"

    assert run_in_write_transaction(_op, label="Test write") == "done"
    assert calls["n"] == 3


def test_lock_that_never_clears_surfaces_as_transaction_error(app):
    calls = {"n": 0}

    def _op():
        calls["n"] += 1
        raise _locked()

    with pytest.raises(TransactionError, match="Test write failed and was rolled back") as excinfo:
        run_in_write_transaction(_op, label="Test write")

    assert calls["n"] == app.config["WRITE_RETRY_ATTEMPTS"]
    assert "database is locked" in excinfo.value.details["cause"]


def test_writes_are_refused_until_engine_is_ready(bare_app):
    with pytest.raises(MigrationError):
        require_engine_ready()
    with pytest.raises(MigrationError):
        run_in_write_transaction(lambda: None, label="Too early")

    # the migration itself writes before the engine is ready
    db.create_all()
    assert run_in_write_transaction(lambda: "ok", label="Bootstrap", requires_ready=False) == "ok"


def test_begin_immediate_joins_an_open_transaction(app):
    begin_immediate()
    begin_immediate()
    db.session.add(Product(name="Joined", price=1, cost=0, quantity=0))
    db.session.commit()

    assert db.session.query(Product).filter_by(name="Joined").count() == 1
