from __future__ import annotations

from ..extensions import db
from ..identifiers import new_uuid
from ..time_utils import to_utc_z
from .catalog import MONEY


class Customer(db.Model):
    """
    Customer master data for tracking purchases and loyalty.

    Ids are externally generated UUID strings (legacy numeric ids were
    migrated to this form), unlike the store-generated product ids.

    total_spent and visit_count are denormalized aggregates, changed only by
    the sales coordinator in the same transaction as the sale.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_name", "name"),
        db.Index("ix_customers_total_spent", "total_spent"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)

    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)

    total_spent = db.Column(MONEY, nullable=False, default=0)
    visit_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "total_spent": self.total_spent,
            "visit_count": self.visit_count,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
