from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from flask import current_app
from sqlalchemy import func

from ..currency import get_currency_settings, quantize_money
from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..identifiers import new_uuid
from ..models import (
    BulkPricingTier,
    Category,
    Customer,
    Expense,
    ExpenseCategory,
    Product,
    Sale,
    SaleItem,
    StockMovement,
    Supplier,
)
from ..validation import (
    ModelValidationPolicy,
    enforce_rules_expense,
    enforce_rules_product,
    require_money,
    require_positive_quantity,
    validate_payload,
)
from .inventory_service import _validate_movement, apply_movement

DEFAULT_EXPENSE_CATEGORY = "General"


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _int_id(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


def _uuid_id(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    try:
        uuid.UUID(value)
    except ValueError:
        return None
    return value


def file_id(raw_row: Any) -> int | str | None:
    """The record's id as written in the file, if it is usable as a key."""
    if not isinstance(raw_row, dict):
        return None
    value = raw_row.get("id")
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        return None
    return value


@dataclass
class ImportContext:
    """
    State shared across one import run.

    id_maps: per data type, file id -> store id, filled as records are
    inserted or matched, so later records follow their references.
    In a dry run nothing is written; a reference to a record that is in the
    file counts as resolvable.
    """
    dry_run: bool = False
    file_ids: dict[str, set] = field(default_factory=dict)
    id_maps: dict[str, dict] = field(default_factory=dict)
    opening_quantities: dict[int, int] = field(default_factory=dict)

    def remember(self, data_type: str, source_id, store_id) -> None:
        if source_id is not None:
            self.id_maps.setdefault(data_type, {})[source_id] = store_id

    def resolve(self, data_type: str, model, source_id):
        if isinstance(source_id, bool) or not isinstance(source_id, (int, str)):
            return None
        mapped = self.id_maps.get(data_type, {}).get(source_id)
        if mapped is not None:
            return mapped
        if self.dry_run and source_id in self.file_ids.get(data_type, ()):
            return source_id
        if db.session.get(model, source_id) is not None:
            return source_id
        return None


def _missing(field_name: str, value, entity_type: str) -> dict:
    return {"field": field_name, "value": value, "entity_type": entity_type}


def _find_or_create_by_name(model, name: str, *, ignore_case: bool = True, **defaults):
    column = model.name
    q = db.session.query(model)
    q = q.filter(func.lower(column) == name.lower()) if ignore_case else q.filter(column == name)
    existing = q.first()
    if existing is not None:
        return existing
    max_length = column.type.length
    if max_length and len(name) > max_length:
        raise ValidationError(f"name exceeds max length {max_length}", details={"name": name})
    created = model(name=name, **defaults)
    db.session.add(created)
    db.session.flush()
    current_app.logger.info("Import created %s %r", model.__tablename__, name)
    return created


def _resolve_category_id(ctx: ImportContext, category_id, category_name) -> int | None:
    """Id first, then name (created when unknown); no reference at all means no category."""
    resolved = ctx.resolve("categories", Category, category_id)
    if resolved is not None:
        return resolved
    if category_id is not None:
        current_app.logger.warning("Category %s not found, trying name fallback", category_id)
    name = _to_text(category_name)
    if name is None:
        return None
    return _find_or_create_by_name(Category, name).id


def _resolve_supplier_id(ctx: ImportContext, supplier_id, supplier_name) -> int | None:
    resolved = ctx.resolve("suppliers", Supplier, supplier_id)
    if resolved is not None:
        return resolved
    if supplier_id is not None:
        current_app.logger.warning("Supplier %s not found, trying name fallback", supplier_id)
    name = _to_text(supplier_name)
    if name is None:
        return None
    return _find_or_create_by_name(Supplier, name, ignore_case=False).id


def _resolve_expense_category_id(ctx: ImportContext, category_id, category_name) -> int:
    resolved = ctx.resolve("expense_categories", ExpenseCategory, category_id)
    if resolved is not None:
        return resolved
    name = _to_text(category_name) or DEFAULT_EXPENSE_CATEGORY
    return _find_or_create_by_name(ExpenseCategory, name, ignore_case=False).id


def _check_name_free(model, name: str, exclude_id, *, ignore_case: bool) -> None:
    q = db.session.query(model.id).filter(model.id != exclude_id)
    q = q.filter(func.lower(model.name) == name.lower()) if ignore_case else q.filter(model.name == name)
    if q.first() is not None:
        raise ConflictError(f"{model.__tablename__} name already exists", details={"name": name})


def _check_barcode_free(barcode: str | None, exclude_id=None) -> None:
    if not barcode:
        return
    q = db.session.query(Product.id).filter(Product.barcode == barcode)
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    if q.first() is not None:
        raise ConflictError("Barcode already exists", details={"barcode": barcode})


class BaseImportSchema:
    """
    Rules for one data type of an export document.

    normalize_row() validates and coerces through the same column metadata
    the services use, auto_resolve_references() turns file ids into store ids
    and reports what cannot be resolved, find_existing() matches by id and
    then by the type's natural key.
    """

    data_type = ""
    model: Any = None
    fields: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    integer_ids = True

    def __init__(self):
        self.policy = ModelValidationPolicy(
            writable_fields=frozenset(self.fields),
            required_on_create=frozenset(self.required),
        )

    def normalize_row(self, raw_row: Any, ctx: ImportContext) -> dict[str, Any]:
        if not isinstance(raw_row, dict):
            raise ValidationError("record must be an object")
        payload = {k: raw_row[k] for k in self.fields if k in raw_row}
        return validate_payload(model=self.model, payload=payload, policy=self.policy, partial=False)

    def record_id(self, raw_row: dict):
        value = raw_row.get("id")
        return _int_id(value) if self.integer_ids else _uuid_id(value)

    def auto_resolve_references(self, row: dict, raw_row: dict, ctx: ImportContext) -> list[dict[str, Any]]:
        return []

    def find_existing(self, row: dict, raw_row: dict) -> tuple[Any, str | None]:
        record_id = self.record_id(raw_row)
        if record_id is not None:
            existing = db.session.get(self.model, record_id)
            if existing is not None:
                return existing, "id"
        return self.match_natural_key(row)

    def match_natural_key(self, row: dict) -> tuple[Any, str | None]:
        return None, None

    def insert(self, row: dict, raw_row: dict, ctx: ImportContext):
        raise NotImplementedError

    def update(self, existing, row: dict, raw_row: dict, ctx: ImportContext) -> bool:
        """False when records of this type are history and never rewritten."""
        return False


class CategoriesSchema(BaseImportSchema):
    data_type = "categories"
    model = Category
    fields = ("name", "description")
    required = ("name",)

    def match_natural_key(self, row):
        existing = db.session.query(Category).filter(func.lower(Category.name) == row["name"].lower()).first()
        return (existing, "name") if existing is not None else (None, None)

    def insert(self, row, raw_row, ctx):
        category = Category(id=self.record_id(raw_row), **row)
        db.session.add(category)
        db.session.flush()
        return category

    def update(self, existing, row, raw_row, ctx):
        _check_name_free(Category, row["name"], existing.id, ignore_case=True)
        existing.name = row["name"]
        existing.description = row.get("description")
        return True


class SuppliersSchema(BaseImportSchema):
    data_type = "suppliers"
    model = Supplier
    fields = ("name", "contact_name", "phone", "email", "address")
    required = ("name",)

    def match_natural_key(self, row):
        existing = db.session.query(Supplier).filter(Supplier.name == row["name"]).first()
        return (existing, "name") if existing is not None else (None, None)

    def insert(self, row, raw_row, ctx):
        supplier = Supplier(id=self.record_id(raw_row), **row)
        db.session.add(supplier)
        db.session.flush()
        return supplier

    def update(self, existing, row, raw_row, ctx):
        for key in self.fields:
            setattr(existing, key, row.get(key))
        return True


class ProductsSchema(BaseImportSchema):
    data_type = "products"
    model = Product
    fields = ("name", "barcode", "price", "cost", "quantity", "min_stock", "is_active")
    required = ("name", "price")

    def normalize_row(self, raw_row, ctx):
        row = super().normalize_row(raw_row, ctx)
        enforce_rules_product(row)
        quantity = row.get("quantity")
        if quantity is None:
            row["quantity"] = 0
        elif quantity < 0:
            raise ValidationError("quantity must be >= 0")
        return row

    def match_natural_key(self, row):
        if row.get("barcode"):
            existing = db.session.query(Product).filter(Product.barcode == row["barcode"]).first()
            if existing is not None:
                return existing, "barcode"
        existing = db.session.query(Product).filter(Product.name == row["name"]).first()
        return (existing, "name") if existing is not None else (None, None)

    def insert(self, row, raw_row, ctx):
        _check_barcode_free(row.get("barcode"))
        opening = row.pop("quantity")
        product = Product(
            id=self.record_id(raw_row),
            category_id=_resolve_category_id(ctx, raw_row.get("category_id"), raw_row.get("category")),
            supplier_id=_resolve_supplier_id(ctx, raw_row.get("supplier_id"), raw_row.get("supplier_name")),
            quantity=0,
            **row,
        )
        db.session.add(product)
        db.session.flush()
        # on-hand is rebuilt from the ledger, then reconciled to this
        ctx.opening_quantities[product.id] = opening
        return product

    def update(self, existing, row, raw_row, ctx):
        _check_barcode_free(row.get("barcode"), exclude_id=existing.id)
        if any(t.bulk_price >= row["price"] for t in existing.bulk_tiers):
            raise ValidationError(
                "Price must stay above every bulk pricing tier",
                details={"product_id": existing.id, "price": row["price"]},
            )
        row.pop("quantity", None)
        if "category_id" in raw_row or "category" in raw_row:
            row["category_id"] = _resolve_category_id(ctx, raw_row.get("category_id"), raw_row.get("category"))
        if "supplier_id" in raw_row or "supplier_name" in raw_row:
            row["supplier_id"] = _resolve_supplier_id(ctx, raw_row.get("supplier_id"), raw_row.get("supplier_name"))
        for key, value in row.items():
            setattr(existing, key, value)
        return True


class BulkPricingSchema(BaseImportSchema):
    data_type = "bulk_pricing"
    model = BulkPricingTier
    fields = ("product_id", "min_quantity", "bulk_price")
    required = fields

    def normalize_row(self, raw_row, ctx):
        row = super().normalize_row(raw_row, ctx)
        require_positive_quantity(row["min_quantity"], "min_quantity")
        require_money(row["bulk_price"], "bulk_price", allow_zero=False)
        return row

    def auto_resolve_references(self, row, raw_row, ctx):
        product_id = ctx.resolve("products", Product, row["product_id"])
        if product_id is None:
            return [_missing("product_id", row["product_id"], "products")]
        row["product_id"] = product_id
        return []

    def match_natural_key(self, row):
        existing = (
            db.session.query(BulkPricingTier)
            .filter(BulkPricingTier.product_id == row["product_id"])
            .filter(BulkPricingTier.min_quantity == row["min_quantity"])
            .first()
        )
        return (existing, "other") if existing is not None else (None, None)

    @staticmethod
    def _check_below_price(product_id, bulk_price) -> None:
        product = db.session.get(Product, product_id)
        if bulk_price >= product.price:
            raise ValidationError(
                "Bulk price must be less than regular price",
                details={"bulk_price": bulk_price, "price": product.price},
            )

    def insert(self, row, raw_row, ctx):
        self._check_below_price(row["product_id"], row["bulk_price"])
        tier = BulkPricingTier(id=self.record_id(raw_row), **row)
        db.session.add(tier)
        db.session.flush()
        return tier

    def update(self, existing, row, raw_row, ctx):
        self._check_below_price(existing.product_id, row["bulk_price"])
        existing.bulk_price = row["bulk_price"]
        return True


class CustomersSchema(BaseImportSchema):
    data_type = "customers"
    model = Customer
    fields = ("name", "phone", "email", "address", "total_spent", "visit_count", "created_at")
    required = ("name",)
    integer_ids = False

    def normalize_row(self, raw_row, ctx):
        row = super().normalize_row(raw_row, ctx)
        if row.get("total_spent") is not None:
            require_money(row["total_spent"], "total_spent")
        if row.get("visit_count") is not None and row["visit_count"] < 0:
            raise ValidationError("visit_count must be >= 0")
        return row

    def match_natural_key(self, row):
        if row.get("phone"):
            existing = db.session.query(Customer).filter(Customer.phone == row["phone"]).first()
            if existing is not None:
                return existing, "phone"
        existing = db.session.query(Customer).filter(Customer.name == row["name"]).first()
        return (existing, "name") if existing is not None else (None, None)

    def insert(self, row, raw_row, ctx):
        # aggregates come with the record; imported sales do not add to them
        customer = Customer(id=self.record_id(raw_row) or new_uuid(), **row)
        db.session.add(customer)
        db.session.flush()
        return customer

    def update(self, existing, row, raw_row, ctx):
        for key in ("name", "phone", "email", "address"):
            setattr(existing, key, row.get(key))
        return True


class SalesSchema(BaseImportSchema):
    data_type = "sales"
    model = Sale
    fields = ("customer_id", "total", "payment_method", "note", "created_at")
    required = ("total", "payment_method")
    integer_ids = False

    item_policy = ModelValidationPolicy(
        writable_fields=frozenset({"product_id", "position", "quantity", "price", "cost", "discount", "subtotal"}),
        required_on_create=frozenset({"product_id", "quantity", "price", "subtotal"}),
    )

    def normalize_row(self, raw_row, ctx):
        row = super().normalize_row(raw_row, ctx)
        require_money(row["total"], "total")
        raw_items = raw_row.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("sale must have at least one item")

        items = []
        for raw_item in raw_items:
            if not isinstance(raw_item, dict):
                raise ValidationError("sale item must be an object")
            payload = {k: raw_item[k] for k in self.item_policy.writable_fields if k in raw_item}
            item = validate_payload(model=SaleItem, payload=payload, policy=self.item_policy, partial=False)
            require_positive_quantity(item["quantity"])
            for money_field in ("price", "cost", "discount", "subtotal"):
                if item.get(money_field) is not None:
                    require_money(item[money_field], money_field)
            item["id"] = _uuid_id(raw_item.get("id"))
            items.append(item)

        decimals = get_currency_settings().decimals
        subtotal_sum = sum(i["subtotal"] for i in items)
        if quantize_money(subtotal_sum, decimals) != quantize_money(row["total"], decimals):
            raise ValidationError(
                "Sale total does not equal the sum of its item subtotals",
                details={"total": row["total"], "items_total": subtotal_sum},
            )
        row["items"] = items
        return row

    def auto_resolve_references(self, row, raw_row, ctx):
        unmapped = []
        if row.get("customer_id") is not None:
            customer_id = ctx.resolve("customers", Customer, row["customer_id"])
            if customer_id is None:
                unmapped.append(_missing("customer_id", row["customer_id"], "customers"))
            row["customer_id"] = customer_id
        for item in row["items"]:
            product_id = ctx.resolve("products", Product, item["product_id"])
            if product_id is None:
                unmapped.append(_missing("product_id", item["product_id"], "products"))
            item["product_id"] = product_id
        return unmapped

    def insert(self, row, raw_row, ctx):
        items = row.pop("items")
        sale = Sale(id=self.record_id(raw_row) or new_uuid(), **row)
        db.session.add(sale)
        db.session.flush()
        for position, item in enumerate(items):
            item_id = item.pop("id")
            if item_id is None or db.session.get(SaleItem, item_id) is not None:
                item_id = new_uuid()
            if item.get("cost") is None:
                item["cost"] = db.session.get(Product, item["product_id"]).cost
            item.setdefault("position", position)
            db.session.add(SaleItem(id=item_id, sale_id=sale.id, **item))
        db.session.flush()
        return sale


class StockMovementsSchema(BaseImportSchema):
    data_type = "stock_movements"
    model = StockMovement
    fields = (
        "product_id",
        "type",
        "quantity",
        "unit_cost",
        "note",
        "supplier_id",
        "reference_number",
        "sale_id",
        "created_at",
    )
    required = ("product_id", "type", "quantity")

    def normalize_row(self, raw_row, ctx):
        row = super().normalize_row(raw_row, ctx)
        row["quantity"], row["unit_cost"] = _validate_movement(row["type"], row["quantity"], row.get("unit_cost"))
        return row

    def auto_resolve_references(self, row, raw_row, ctx):
        product_id = ctx.resolve("products", Product, row["product_id"])
        if product_id is None:
            return [_missing("product_id", row["product_id"], "products")]
        row["product_id"] = product_id
        if row.get("supplier_id") is not None:
            supplier_id = ctx.resolve("suppliers", Supplier, row["supplier_id"])
            if supplier_id is None:
                current_app.logger.warning("Supplier %s not found, movement kept without it", row["supplier_id"])
            row["supplier_id"] = supplier_id
        if row.get("sale_id") is not None:
            row["sale_id"] = ctx.id_maps.get("sales", {}).get(row["sale_id"], row["sale_id"])
        return []

    def insert(self, row, raw_row, ctx):
        product = db.session.get(Product, row.pop("product_id"))
        return apply_movement(
            product,
            row.pop("type"),
            row.pop("quantity"),
            movement_id=self.record_id(raw_row),
            **row,
        )


class ExpenseCategoriesSchema(BaseImportSchema):
    data_type = "expense_categories"
    model = ExpenseCategory
    fields = ("name", "description")
    required = ("name",)

    def match_natural_key(self, row):
        existing = db.session.query(ExpenseCategory).filter(ExpenseCategory.name == row["name"]).first()
        return (existing, "name") if existing is not None else (None, None)

    def insert(self, row, raw_row, ctx):
        category = ExpenseCategory(id=self.record_id(raw_row), **row)
        db.session.add(category)
        db.session.flush()
        return category

    def update(self, existing, row, raw_row, ctx):
        _check_name_free(ExpenseCategory, row["name"], existing.id, ignore_case=False)
        existing.name = row["name"]
        existing.description = row.get("description")
        return True


class ExpensesSchema(BaseImportSchema):
    data_type = "expenses"
    model = Expense
    fields = ("amount", "description", "date")
    required = ("amount", "date")

    def normalize_row(self, raw_row, ctx):
        row = super().normalize_row(raw_row, ctx)
        enforce_rules_expense(row)
        return row

    def insert(self, row, raw_row, ctx):
        category_id = _resolve_expense_category_id(ctx, raw_row.get("category_id"), raw_row.get("category_name"))
        expense = Expense(id=self.record_id(raw_row), category_id=category_id, **row)
        db.session.add(expense)
        db.session.flush()
        return expense

    def update(self, existing, row, raw_row, ctx):
        if "category_id" in raw_row or "category_name" in raw_row:
            row["category_id"] = _resolve_expense_category_id(
                ctx, raw_row.get("category_id"), raw_row.get("category_name")
            )
        for key, value in row.items():
            setattr(existing, key, value)
        return True


# Dependency order: a record only references types imported before it
SCHEMAS: dict[str, BaseImportSchema] = {
    schema.data_type: schema
    for schema in (
        CategoriesSchema(),
        SuppliersSchema(),
        ProductsSchema(),
        BulkPricingSchema(),
        CustomersSchema(),
        SalesSchema(),
        StockMovementsSchema(),
        ExpenseCategoriesSchema(),
        ExpensesSchema(),
    )
}
