# Overview: Tagged identifier types, one per entity.

"""
Two identifier spaces live side by side:

- store-generated integers: products, categories, suppliers, bulk tiers,
  stock movements, expenses
- externally generated UUID strings: customers, sales, sale items

NewType keeps them from being passed where the other is expected under a
type checker, at zero runtime cost.
"""

from __future__ import annotations

import uuid
from typing import NewType

ProductId = NewType("ProductId", int)
CategoryId = NewType("CategoryId", int)
SupplierId = NewType("SupplierId", int)
TierId = NewType("TierId", int)
MovementId = NewType("MovementId", int)
ExpenseId = NewType("ExpenseId", int)
ExpenseCategoryId = NewType("ExpenseCategoryId", int)

CustomerId = NewType("CustomerId", str)
SaleId = NewType("SaleId", str)
SaleItemId = NewType("SaleItemId", str)


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_sale_id() -> SaleId:
    return SaleId(new_uuid())


def new_customer_id() -> CustomerId:
    return CustomerId(new_uuid())
