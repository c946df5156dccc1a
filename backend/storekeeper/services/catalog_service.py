# Overview: Categories and suppliers; deletion refused while products still point at them.

from __future__ import annotations

from sqlalchemy import case, func

from ..errors import ConflictError, NotFoundError
from ..extensions import db
from ..identifiers import CategoryId, SupplierId
from ..models import STOCK_IN, Category, Product, StockMovement, Supplier
from ..time_utils import to_utc_z
from ..validation import ModelValidationPolicy, validate_payload
from .concurrency import run_in_write_transaction

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "description"}),
    required_on_create=frozenset({"name"}),
)

SUPPLIER_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "contact_name", "phone", "email", "address"}),
    required_on_create=frozenset({"name"}),
)


def _get_category(category_id: CategoryId) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category not found", details={"category_id": category_id})
    return category


def _get_supplier(supplier_id: SupplierId) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError("Supplier not found", details={"supplier_id": supplier_id})
    return supplier


def _check_category_name(name: str, exclude_id: CategoryId | None = None) -> None:
    q = db.session.query(Category.id).filter(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(Category.id != exclude_id)
    if q.first() is not None:
        raise ConflictError("Category name already exists", details={"name": name})


# Categories

def list_categories() -> list[dict]:
    return [c.to_dict() for c in db.session.query(Category).order_by(Category.name.asc()).all()]


def get_category(category_id: CategoryId) -> dict:
    return _get_category(category_id).to_dict()


def create_category(payload: dict) -> dict:
    patch = validate_payload(model=Category, payload=payload, policy=CATEGORY_POLICY, partial=False)

    def _op():
        _check_category_name(patch["name"])
        category = Category(**patch)
        db.session.add(category)
        db.session.flush()
        return category.to_dict()

    return run_in_write_transaction(_op, label="Create category")


def update_category(category_id: CategoryId, payload: dict) -> dict:
    patch = validate_payload(model=Category, payload=payload, policy=CATEGORY_POLICY, partial=True)

    def _op():
        category = _get_category(category_id)
        if "name" in patch:
            _check_category_name(patch["name"], exclude_id=category.id)
        for k, v in patch.items():
            setattr(category, k, v)
        db.session.flush()
        return category.to_dict()

    return run_in_write_transaction(_op, label="Update category")


def delete_category(category_id: CategoryId) -> None:
    def _op():
        category = _get_category(category_id)
        in_use = db.session.query(func.count(Product.id)).filter(Product.category_id == category.id).scalar()
        if in_use:
            raise ConflictError(
                "Cannot delete category that is being used by products",
                details={"category_id": category.id, "products": int(in_use)},
            )
        db.session.delete(category)

    run_in_write_transaction(_op, label="Delete category")


# Suppliers

def list_suppliers(search: str | None = None) -> list[dict]:
    q = db.session.query(Supplier)
    if search:
        q = q.filter(Supplier.name.ilike(f"%{search.strip()}%"))
    return [s.to_dict() for s in q.order_by(Supplier.name.asc(), Supplier.id.asc()).all()]


def get_supplier(supplier_id: SupplierId) -> dict:
    return _get_supplier(supplier_id).to_dict()


def create_supplier(payload: dict) -> dict:
    patch = validate_payload(model=Supplier, payload=payload, policy=SUPPLIER_POLICY, partial=False)

    def _op():
        supplier = Supplier(**patch)
        db.session.add(supplier)
        db.session.flush()
        return supplier.to_dict()

    return run_in_write_transaction(_op, label="Create supplier")


def update_supplier(supplier_id: SupplierId, payload: dict) -> dict:
    patch = validate_payload(model=Supplier, payload=payload, policy=SUPPLIER_POLICY, partial=True)

    def _op():
        supplier = _get_supplier(supplier_id)
        for k, v in patch.items():
            setattr(supplier, k, v)
        db.session.flush()
        return supplier.to_dict()

    return run_in_write_transaction(_op, label="Update supplier")


def delete_supplier(supplier_id: SupplierId) -> None:
    """Refused while products name this supplier; reassign them first."""

    def _op():
        supplier = _get_supplier(supplier_id)
        products = db.session.query(func.count(Product.id)).filter(Product.supplier_id == supplier.id).scalar()
        if products:
            raise ConflictError(
                "Cannot delete supplier with associated products",
                details={"supplier_id": supplier.id, "products": int(products)},
            )
        movements = (
            db.session.query(func.count(StockMovement.id)).filter(StockMovement.supplier_id == supplier.id).scalar()
        )
        if movements:
            raise ConflictError(
                "Cannot delete supplier referenced by stock movements",
                details={"supplier_id": supplier.id, "stock_movements": int(movements)},
            )
        db.session.delete(supplier)

    run_in_write_transaction(_op, label="Delete supplier")


def supplier_products(supplier_id: SupplierId) -> list[dict]:
    """Products supplied, with current stock and delivery totals from the ledger."""
    _get_supplier(supplier_id)
    received = func.coalesce(
        func.sum(case((StockMovement.type == STOCK_IN, StockMovement.quantity), else_=0)),
        0,
    )
    last_delivery = func.max(case((StockMovement.type == STOCK_IN, StockMovement.created_at), else_=None))
    rows = (
        db.session.query(
            Product.id,
            Product.name,
            Product.quantity,
            received.label("total_received"),
            last_delivery.label("last_delivery_date"),
        )
        .outerjoin(
            StockMovement,
            (StockMovement.product_id == Product.id) & (StockMovement.supplier_id == supplier_id),
        )
        .filter(Product.supplier_id == supplier_id)
        .group_by(Product.id, Product.name, Product.quantity)
        .order_by(Product.name.asc())
        .all()
    )
    return [
        {
            "product_id": r.id,
            "product_name": r.name,
            "current_stock": r.quantity,
            "total_received": int(r.total_received or 0),
            "last_delivery_date": to_utc_z(r.last_delivery_date),
        }
        for r in rows
    ]
