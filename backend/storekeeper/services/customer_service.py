# Overview: Customer master data and per-customer aggregates.

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, or_

from ..currency import get_currency_settings
from ..errors import ConflictError, NotFoundError
from ..extensions import db
from ..identifiers import CustomerId, new_customer_id
from ..models import Customer, Sale
from ..time_utils import to_utc_z
from ..validation import ModelValidationPolicy, validate_payload
from .concurrency import run_in_write_transaction
from .sales_service import list_sales

# total_spent / visit_count belong to the sales coordinator
CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "phone", "email", "address"}),
    required_on_create=frozenset({"name"}),
)


def _get_customer(customer_id: CustomerId) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})
    return customer


def create_customer(payload: dict, customer_id: CustomerId | None = None) -> dict:
    """
    Create a customer. customer_id lets an importer keep an id generated
    elsewhere; otherwise a new uuid is assigned.
    """
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=False)

    def _op():
        if customer_id is not None and db.session.get(Customer, customer_id) is not None:
            raise ConflictError("Customer id already exists", details={"customer_id": customer_id})
        customer = Customer(id=customer_id or new_customer_id(), total_spent=Decimal("0"), visit_count=0, **patch)
        db.session.add(customer)
        db.session.flush()
        return customer.to_dict()

    return run_in_write_transaction(_op, label="Create customer")


def update_customer(customer_id: CustomerId, payload: dict) -> dict:
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=True)

    def _op():
        customer = _get_customer(customer_id)
        for k, v in patch.items():
            setattr(customer, k, v)
        db.session.flush()
        return customer.to_dict()

    return run_in_write_transaction(_op, label="Update customer")


def get_customer(customer_id: CustomerId) -> dict:
    return _get_customer(customer_id).to_dict()


def list_customers(search: str | None = None, page: int = 1, per_page: int = 50) -> dict:
    """Customers by name; search matches name, phone or email."""
    q = db.session.query(Customer)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Customer.name.ilike(pattern), Customer.phone.ilike(pattern), Customer.email.ilike(pattern)))

    per_page = min(max(per_page or 50, 1), 500)
    page = max(page or 1, 1)
    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    customers = q.order_by(Customer.name.asc(), Customer.id.asc()).offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [c.to_dict() for c in customers],
        "count": len(customers),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def delete_customer(customer_id: CustomerId) -> None:
    """Refused while any sale references the customer; sales history is immutable."""

    def _op():
        customer = _get_customer(customer_id)
        sales_count = db.session.query(func.count(Sale.id)).filter(Sale.customer_id == customer_id).scalar()
        if sales_count:
            raise ConflictError(
                "Cannot delete customer with existing sales records",
                details={"customer_id": customer_id, "sales": int(sales_count)},
            )
        db.session.delete(customer)

    run_in_write_transaction(_op, label="Delete customer")


def customer_statistics(customer_id: CustomerId) -> dict:
    customer = _get_customer(customer_id)
    last_visit = db.session.query(func.max(Sale.created_at)).filter(Sale.customer_id == customer_id).scalar()

    total_spent = customer.total_spent or Decimal("0")
    if customer.visit_count > 0:
        quantum = get_currency_settings().quantum
        average = (total_spent / customer.visit_count).quantize(quantum, rounding=ROUND_HALF_UP)
    else:
        average = Decimal("0")

    return {
        "customer_id": customer.id,
        "total_spent": total_spent,
        "visit_count": customer.visit_count,
        "average_order_value": average,
        "last_visit": to_utc_z(last_visit),
    }


def purchase_history(customer_id: CustomerId, page: int = 1, per_page: int = 20) -> dict:
    _get_customer(customer_id)
    return list_sales(customer_id=customer_id, page=page, per_page=per_page)
