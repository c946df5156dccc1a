# Overview: Product master data: create, patch, lookup, archive and guarded delete.

"""
Products Service

- quantity is never patched here. Opening stock on create goes through the
  ledger as a stock_in movement, so quantity == ledger sum from the start.
- A price change may not leave a bulk tier at or above the new price.
- Products referenced by sale items or stock movements are never deleted;
  archive_product() hides them instead. Products without history are
  deleted together with their bulk tiers.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, or_

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..identifiers import CategoryId, ProductId
from ..models import STOCK_IN, BulkPricingTier, Category, Product, SaleItem, StockMovement, Supplier
from ..validation import ModelValidationPolicy, enforce_rules_product, require_money, validate_payload
from .concurrency import run_in_write_transaction
from .inventory_service import apply_movement

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "name",
        "barcode",
        "category_id",
        "supplier_id",
        "price",
        "cost",
        "min_stock",
        "image_url",
        "is_active",
    }),
    required_on_create=frozenset({"name", "price"}),
)


def _get_product(product_id: ProductId) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def _check_references(patch: dict) -> None:
    if patch.get("category_id") is not None and db.session.get(Category, patch["category_id"]) is None:
        raise NotFoundError("Category not found", details={"category_id": patch["category_id"]})
    if patch.get("supplier_id") is not None and db.session.get(Supplier, patch["supplier_id"]) is None:
        raise NotFoundError("Supplier not found", details={"supplier_id": patch["supplier_id"]})


def _check_barcode_unique(barcode: str | None, exclude_id: ProductId | None = None) -> None:
    if not barcode:
        return
    q = db.session.query(Product.id).filter(Product.barcode == barcode)
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    if q.first() is not None:
        raise ConflictError("Barcode already exists", details={"barcode": barcode})


def create_product(payload: dict, initial_quantity: int = 0, unit_cost=None) -> dict:
    """
    Create a product, optionally with opening stock.

    initial_quantity > 0 is recorded as a stock_in movement at unit_cost
    (defaults to the product cost) in the same transaction.
    """
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)

    if isinstance(initial_quantity, bool) or not isinstance(initial_quantity, int) or initial_quantity < 0:
        raise ValidationError("initial_quantity must be an integer >= 0")
    if unit_cost is not None:
        unit_cost = require_money(unit_cost, "unit_cost")

    def _op():
        _check_references(patch)
        _check_barcode_unique(patch.get("barcode"))

        product = Product(quantity=0, **patch)
        if product.cost is None:
            product.cost = Decimal("0")
        db.session.add(product)
        db.session.flush()

        if initial_quantity > 0:
            apply_movement(
                product,
                STOCK_IN,
                initial_quantity,
                unit_cost=unit_cost if unit_cost is not None else product.cost,
                note="Opening stock",
                supplier_id=product.supplier_id,
            )
        return product.to_dict()

    return run_in_write_transaction(_op, label="Create product")


def update_product(product_id: ProductId, payload: dict) -> dict:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)

    def _op():
        product = _get_product(product_id)
        _check_references(patch)
        if "barcode" in patch:
            _check_barcode_unique(patch["barcode"], exclude_id=product.id)

        if "price" in patch:
            blocking = (
                db.session.query(BulkPricingTier)
                .filter(
                    BulkPricingTier.product_id == product.id,
                    BulkPricingTier.bulk_price >= patch["price"],
                )
                .order_by(BulkPricingTier.min_quantity.asc())
                .all()
            )
            if blocking:
                raise ValidationError(
                    "New price must stay above every bulk pricing tier",
                    details={"tiers": [t.to_dict() for t in blocking]},
                )

        for k, v in patch.items():
            setattr(product, k, v)
        db.session.flush()
        return product.to_dict()

    return run_in_write_transaction(_op, label="Update product")


def get_product(product_id: ProductId) -> dict:
    return _get_product(product_id).to_dict()


def get_product_by_barcode(barcode: str) -> dict:
    product = db.session.query(Product).filter(Product.barcode == barcode).first()
    if product is None:
        raise NotFoundError("Product not found", details={"barcode": barcode})
    return product.to_dict()


def list_products(
    search: str | None = None,
    category_id: CategoryId | None = None,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing with optional pagination.

    If page is None, returns all matching items.
    """
    base_query = db.session.query(Product)
    if not include_inactive:
        base_query = base_query.filter(Product.is_active.is_(True))
    if category_id is not None:
        base_query = base_query.filter(Product.category_id == category_id)
    if search:
        pattern = f"%{search.strip()}%"
        base_query = base_query.filter(or_(Product.name.ilike(pattern), Product.barcode.ilike(pattern)))
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def archive_product(product_id: ProductId) -> dict:
    def _op():
        product = _get_product(product_id)
        product.is_active = False
        db.session.flush()
        return product.to_dict()

    return run_in_write_transaction(_op, label="Archive product")


def delete_product(product_id: ProductId) -> None:
    """
    Hard-delete a product that has no history.

    Raises:
        ConflictError: sale items or stock movements reference the product;
            archive it instead
    """

    def _op():
        product = _get_product(product_id)
        sale_items = db.session.query(func.count(SaleItem.id)).filter(SaleItem.product_id == product.id).scalar()
        movements = (
            db.session.query(func.count(StockMovement.id)).filter(StockMovement.product_id == product.id).scalar()
        )
        if sale_items or movements:
            raise ConflictError(
                "Product has sales or stock history; archive it instead",
                details={
                    "product_id": product.id,
                    "sale_items": int(sale_items or 0),
                    "stock_movements": int(movements or 0),
                },
            )
        for tier in list(product.bulk_tiers):
            db.session.delete(tier)
        db.session.flush()
        db.session.delete(product)

    run_in_write_transaction(_op, label="Delete product")
