from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

# Authoritative money storage: full precision, never minor units
MONEY = db.Numeric(14, 4, asdecimal=True)


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_name": self.contact_name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data.

    QUANTITY DESIGN DECISION:
    Product.quantity is a denormalized cache of the stock movement ledger.
    It is only ever changed by inventory_service inside the same transaction
    that appends the movement, so it equals the ledger sum at every commit.
    Callers never patch it directly.

    BARCODE: optional, unique when present (NULLs do not collide in SQLite).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_name", "name"),
        db.Index("ix_products_category_updated", "category_id", "updated_at"),
        db.CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        db.CheckConstraint("cost >= 0", name="ck_products_cost_non_negative"),
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(128), nullable=True, unique=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    price = db.Column(MONEY, nullable=False)
    cost = db.Column(MONEY, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=10)

    image_url = db.Column(db.String(512), nullable=True)

    # Archive flag: products with sales or movement history are never hard-deleted
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    supplier = db.relationship("Supplier", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} quantity={self.quantity}>"

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.min_stock

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "barcode": self.barcode,
            "category_id": self.category_id,
            "category": self.category.name if self.category else None,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.name if self.supplier else None,
            "price": self.price,
            "cost": self.cost,
            "quantity": self.quantity,
            "min_stock": self.min_stock,
            "image_url": self.image_url,
            "is_active": self.is_active,
            "has_bulk_pricing": bool(self.bulk_tiers),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class BulkPricingTier(db.Model):
    """
    Quantity-tiered unit price for a product.

    A tier covers [min_quantity, next tier's min_quantity); the highest tier
    is unbounded. min_quantity is unique per product, so resolution never ties.
    """
    __tablename__ = "bulk_pricing"
    __table_args__ = (
        db.UniqueConstraint("product_id", "min_quantity", name="uq_bulk_pricing_product_min_qty"),
        db.CheckConstraint("min_quantity > 0", name="ck_bulk_pricing_min_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    min_quantity = db.Column(db.Integer, nullable=False)
    bulk_price = db.Column(MONEY, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    product = db.relationship(
        "Product",
        backref=db.backref("bulk_tiers", lazy=True, order_by="BulkPricingTier.min_quantity"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "min_quantity": self.min_quantity,
            "bulk_price": self.bulk_price,
            "created_at": to_utc_z(self.created_at),
        }
