from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .catalog import MONEY

STOCK_IN = "stock_in"
STOCK_OUT = "stock_out"
ADJUSTMENT = "adjustment"
MOVEMENT_TYPES = (STOCK_IN, STOCK_OUT, ADJUSTMENT)


class StockMovement(db.Model):
    """
    Append-only inventory ledger row. Never updated or deleted; corrections
    are new movements.

    quantity is a positive magnitude for stock_in / stock_out and a signed,
    non-zero delta for adjustment. signed_delta gives the effect on on-hand.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_product_type", "product_id", "type"),
        db.CheckConstraint(
            "type IN ('stock_in', 'stock_out', 'adjustment')",
            name="ck_stock_movements_type",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    # Present for stock_in; drives weighted average cost
    unit_cost = db.Column(MONEY, nullable=True)

    note = db.Column(db.String(255), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)
    reference_number = db.Column(db.String(128), nullable=True)

    # Set when written by the sales coordinator
    sale_id = db.Column(db.String(36), nullable=True, index=True)

    created_at = db.Column(
        db.DateTime,
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    product = db.relationship("Product", backref=db.backref("movements", lazy=True))
    supplier = db.relationship("Supplier")

    @property
    def signed_delta(self) -> int:
        if self.type == STOCK_OUT:
            return -self.quantity
        return self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "type": self.type,
            "quantity": self.quantity,
            "unit_cost": self.unit_cost,
            "note": self.note,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.name if self.supplier else None,
            "reference_number": self.reference_number,
            "sale_id": self.sale_id,
            "created_at": to_utc_z(self.created_at),
        }
