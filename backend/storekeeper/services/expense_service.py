# Overview: Shop expenses and their categories; input to net profit in analytics.

from __future__ import annotations

from sqlalchemy import func

from ..errors import ConflictError, NotFoundError
from ..extensions import db
from ..identifiers import ExpenseCategoryId, ExpenseId
from ..models import Expense, ExpenseCategory
from ..time_utils import utcnow
from ..validation import ModelValidationPolicy, enforce_rules_expense, validate_payload
from .concurrency import run_in_write_transaction
from .inventory_service import parse_range_bound

EXPENSE_CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "description"}),
    required_on_create=frozenset({"name"}),
)

EXPENSE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"category_id", "amount", "description", "date"}),
    required_on_create=frozenset({"category_id", "amount"}),
)


def _get_category(category_id: ExpenseCategoryId) -> ExpenseCategory:
    category = db.session.get(ExpenseCategory, category_id)
    if category is None:
        raise NotFoundError("Expense category not found", details={"category_id": category_id})
    return category


def _get_expense(expense_id: ExpenseId) -> Expense:
    expense = db.session.get(Expense, expense_id)
    if expense is None:
        raise NotFoundError("Expense not found", details={"expense_id": expense_id})
    return expense


def list_expense_categories() -> list[dict]:
    categories = db.session.query(ExpenseCategory).order_by(ExpenseCategory.name.asc()).all()
    return [c.to_dict() for c in categories]


def create_expense_category(payload: dict) -> dict:
    patch = validate_payload(model=ExpenseCategory, payload=payload, policy=EXPENSE_CATEGORY_POLICY, partial=False)

    def _op():
        if db.session.query(ExpenseCategory.id).filter(ExpenseCategory.name == patch["name"]).first():
            raise ConflictError("Expense category already exists", details={"name": patch["name"]})
        category = ExpenseCategory(**patch)
        db.session.add(category)
        db.session.flush()
        return category.to_dict()

    return run_in_write_transaction(_op, label="Create expense category")


def update_expense_category(category_id: ExpenseCategoryId, payload: dict) -> dict:
    patch = validate_payload(model=ExpenseCategory, payload=payload, policy=EXPENSE_CATEGORY_POLICY, partial=True)

    def _op():
        category = _get_category(category_id)
        for k, v in patch.items():
            setattr(category, k, v)
        db.session.flush()
        return category.to_dict()

    return run_in_write_transaction(_op, label="Update expense category")


def delete_expense_category(category_id: ExpenseCategoryId) -> None:
    def _op():
        category = _get_category(category_id)
        count = db.session.query(func.count(Expense.id)).filter(Expense.category_id == category.id).scalar()
        if count:
            raise ConflictError(
                "Cannot delete category that has expenses",
                details={"category_id": category.id, "expenses": int(count)},
            )
        db.session.delete(category)

    run_in_write_transaction(_op, label="Delete expense category")


def create_expense(payload: dict) -> dict:
    """Record an expense; date defaults to now and may be backdated."""
    patch = validate_payload(model=Expense, payload=payload, policy=EXPENSE_POLICY, partial=False)
    enforce_rules_expense(patch)

    def _op():
        _get_category(patch["category_id"])
        expense = Expense(**patch)
        if expense.date is None:
            expense.date = utcnow()
        db.session.add(expense)
        db.session.flush()
        return expense.to_dict()

    return run_in_write_transaction(_op, label="Create expense")


def update_expense(expense_id: ExpenseId, payload: dict) -> dict:
    patch = validate_payload(model=Expense, payload=payload, policy=EXPENSE_POLICY, partial=True)
    enforce_rules_expense(patch)

    def _op():
        expense = _get_expense(expense_id)
        if "category_id" in patch:
            _get_category(patch["category_id"])
        for k, v in patch.items():
            setattr(expense, k, v)
        db.session.flush()
        return expense.to_dict()

    return run_in_write_transaction(_op, label="Update expense")


def delete_expense(expense_id: ExpenseId) -> None:
    def _op():
        db.session.delete(_get_expense(expense_id))

    run_in_write_transaction(_op, label="Delete expense")


def list_expenses(
    start=None,
    end=None,
    category_id: ExpenseCategoryId | None = None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    start_dt = parse_range_bound(start, upper=False)
    end_dt = parse_range_bound(end, upper=True)

    q = db.session.query(Expense)
    if category_id is not None:
        q = q.filter(Expense.category_id == category_id)
    if start_dt is not None:
        q = q.filter(Expense.date >= start_dt)
    if end_dt is not None:
        q = q.filter(Expense.date <= end_dt)

    per_page = min(max(per_page or 50, 1), 500)
    page = max(page or 1, 1)
    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    expenses = q.order_by(Expense.date.desc(), Expense.id.desc()).offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [e.to_dict() for e in expenses],
        "count": len(expenses),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
