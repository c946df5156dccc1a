# Overview: Quantity-tiered bulk pricing: tier writes with overlap checks, and best-price resolution.

"""
Bulk Pricing Rules (authoritative)

- A product's tiers are ordered by min_quantity ascending. A tier applies to
  [min_quantity, next tier's min_quantity); the highest tier is unbounded.
- Inserting a threshold between two existing ones splits a range, it does not
  overlap it, so the only overlap is a repeated min_quantity.
- 0 < bulk_price < product.price, and min_quantity > 0.
- Tier writes validate and insert under one write transaction, so a
  concurrent price change cannot slip between check and insert.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..currency import MAX_DECIMALS, to_decimal
from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..identifiers import ProductId, TierId
from ..models import BulkPricingTier, Product
from ..validation import require_money, require_positive_quantity
from .concurrency import run_in_write_transaction


@dataclass(frozen=True)
class PriceResolution:
    price: Decimal
    is_bulk_price: bool
    savings: Decimal
    applied_tier: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "is_bulk_price": self.is_bulk_price,
            "savings": self.savings,
            "applied_tier": self.applied_tier,
        }


def _get_product(product_id: ProductId) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def _get_tier(tier_id: TierId) -> BulkPricingTier:
    tier = db.session.get(BulkPricingTier, tier_id)
    if tier is None:
        raise NotFoundError("Bulk pricing tier not found", details={"tier_id": tier_id})
    return tier


def _tiers_for(product_id: ProductId) -> list[BulkPricingTier]:
    return (
        db.session.query(BulkPricingTier)
        .filter(BulkPricingTier.product_id == product_id)
        .order_by(BulkPricingTier.min_quantity.asc())
        .all()
    )


def _check_tier(product: Product, min_quantity: int, bulk_price: Decimal, others: list[BulkPricingTier]) -> None:
    if bulk_price >= product.price:
        raise ValidationError(
            "Bulk price must be less than regular price",
            details={"bulk_price": bulk_price, "price": product.price},
        )
    if any(t.min_quantity == min_quantity for t in others):
        raise ValidationError(
            "A bulk pricing tier already exists for this quantity",
            details={"min_quantity": min_quantity},
        )


def list_tiers(product_id: ProductId) -> list[dict]:
    _get_product(product_id)
    return [t.to_dict() for t in _tiers_for(product_id)]


def add_tier(product_id: ProductId, min_quantity: int, bulk_price) -> dict:
    """
    Add a tier to a product.

    Raises:
        NotFoundError: unknown product
        ValidationError: bad quantity/price, price not below regular price,
            or a tier already starts at min_quantity
    """
    min_quantity = require_positive_quantity(min_quantity, "min_quantity")
    bulk_price = require_money(bulk_price, "bulk_price", allow_zero=False)

    def _op():
        product = _get_product(product_id)
        _check_tier(product, min_quantity, bulk_price, _tiers_for(product_id))
        tier = BulkPricingTier(product_id=product.id, min_quantity=min_quantity, bulk_price=bulk_price)
        db.session.add(tier)
        db.session.flush()
        return tier.to_dict()

    return run_in_write_transaction(_op, label="Add bulk pricing tier")


def update_tier(tier_id: TierId, patch: dict) -> dict:
    """Patch min_quantity and/or bulk_price, re-validated against the product's other tiers."""
    if not isinstance(patch, dict):
        raise ValidationError("Invalid payload")
    unknown = sorted(set(patch) - {"min_quantity", "bulk_price"})
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    new_min = None
    new_price = None
    if "min_quantity" in patch:
        new_min = require_positive_quantity(patch["min_quantity"], "min_quantity")
    if "bulk_price" in patch:
        new_price = require_money(patch["bulk_price"], "bulk_price", allow_zero=False)

    def _op():
        tier = _get_tier(tier_id)
        product = _get_product(tier.product_id)
        others = [t for t in _tiers_for(tier.product_id) if t.id != tier.id]
        min_quantity = new_min if new_min is not None else tier.min_quantity
        bulk_price = new_price if new_price is not None else tier.bulk_price
        _check_tier(product, min_quantity, bulk_price, others)
        tier.min_quantity = min_quantity
        tier.bulk_price = bulk_price
        db.session.flush()
        return tier.to_dict()

    return run_in_write_transaction(_op, label="Update bulk pricing tier")


def delete_tier(tier_id: TierId) -> None:
    def _op():
        db.session.delete(_get_tier(tier_id))

    run_in_write_transaction(_op, label="Delete bulk pricing tier")


def resolve_best_price(product_id: ProductId, quantity: int) -> PriceResolution:
    """
    Unit price for buying `quantity` of a product.

    Picks the tier with the largest min_quantity not exceeding quantity;
    savings = (regular price - tier price) * quantity.
    """
    quantity = require_positive_quantity(quantity)
    product = _get_product(product_id)

    applied = None
    for tier in _tiers_for(product_id):
        if tier.min_quantity > quantity:
            break
        applied = tier

    if applied is None:
        return PriceResolution(price=product.price, is_bulk_price=False, savings=Decimal("0"))

    savings = (product.price - applied.bulk_price) * quantity
    return PriceResolution(
        price=applied.bulk_price,
        is_bulk_price=True,
        savings=savings,
        applied_tier=applied.to_dict(),
    )


def validate_tiers(product_id: ProductId, tiers: list[dict]) -> tuple[bool, list[str]]:
    """
    Check a whole tier set before replacing a product's tiers in an editor.
    Collects every problem instead of stopping at the first.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        return False, ["Product not found"]

    errors: list[str] = []
    quantities = []
    for tier in tiers:
        raw_qty = tier.get("min_quantity")
        raw_price = tier.get("bulk_price")
        quantities.append(raw_qty)

        if isinstance(raw_qty, bool) or not isinstance(raw_qty, int) or raw_qty <= 0:
            errors.append(f"Minimum quantity must be greater than 0 for tier with quantity {raw_qty}")

        try:
            price = to_decimal(raw_price)
            if not price.is_finite():
                raise ValueError("non-finite amount")
        except ValueError:
            errors.append(f"Bulk price is not a valid amount for tier with quantity {raw_qty}")
            continue
        if price <= 0:
            errors.append(f"Bulk price must be greater than 0 for tier with quantity {raw_qty}")
        if price.normalize().as_tuple().exponent < -MAX_DECIMALS:
            errors.append(f"Bulk price allows at most {MAX_DECIMALS} decimal places for tier with quantity {raw_qty}")
        if price >= product.price:
            errors.append(
                f"Bulk price must be less than regular price ({product.price}) for tier with quantity {raw_qty}"
            )

    if len(quantities) != len(set(quantities)):
        errors.append("Duplicate minimum quantities are not allowed")

    return not errors, errors


def products_with_bulk_pricing() -> list[dict]:
    products = (
        db.session.query(Product)
        .join(BulkPricingTier, BulkPricingTier.product_id == Product.id)
        .distinct()
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )
    result = []
    for p in products:
        data = p.to_dict()
        data["bulk_pricing"] = [t.to_dict() for t in p.bulk_tiers]
        result.append(data)
    return result
