from __future__ import annotations

from ..extensions import db
from ..identifiers import new_uuid
from ..time_utils import to_utc_z
from .catalog import MONEY


class Sale(db.Model):
    """
    Committed sale header. Immutable once committed.

    created_at is business time: a caller-supplied (possibly backdated)
    timestamp is stored verbatim, otherwise the commit time.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_created_at", "created_at"),
        db.Index("ix_sales_customer_created", "customer_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=True)

    total = db.Column(MONEY, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SaleItem.position",
    )

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "total": self.total,
            "payment_method": self.payment_method,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    Line item owned by a sale. price/cost are snapshots at sale time, so later
    product edits never rewrite history. subtotal = price * quantity - discount.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    sale_id = db.Column(
        db.String(36),
        db.ForeignKey("sales.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Cart order, so receipts reprint in the order items were rung up
    position = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(MONEY, nullable=False)
    cost = db.Column(MONEY, nullable=False)
    discount = db.Column(MONEY, nullable=False, default=0)
    subtotal = db.Column(MONEY, nullable=False)

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else "[Deleted Product]",
            "quantity": self.quantity,
            "price": self.price,
            "cost": self.cost,
            "discount": self.discount,
            "subtotal": self.subtotal,
        }
