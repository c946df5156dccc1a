from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .catalog import MONEY


class ExpenseCategory(db.Model):
    __tablename__ = "expense_categories"
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


class Expense(db.Model):
    """Shop running cost; feeds the expenses-by-category analytics rollup."""
    __tablename__ = "expenses"
    __table_args__ = (
        db.Index("ix_expenses_date", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("expense_categories.id"), nullable=False, index=True)
    amount = db.Column(MONEY, nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Business time of the expense (may be backdated like sales)
    date = db.Column(db.DateTime, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    category = db.relationship("ExpenseCategory", backref=db.backref("expenses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "amount": self.amount,
            "description": self.description,
            "date": to_utc_z(self.date),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
