from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from errors import NotAuthenticatedError, NotFoundError, PersistenceError, ValidationError
from models import (
    Category,
    ExpenseFrequency,
    RecurringExpense,
    Transaction,
    TransactionType,
)
from recurrence import (
    BatchResult,
    Clock,
    Materialization,
    RolloverEngine,
    is_due,
    local_today,
)
from schemas import (
    CategoryIn,
    CategoryUpdate,
    RecurringExpenseIn,
    RecurringExpenseUpdate,
    TransactionIn,
)

WEEKS_PER_MONTH = 4.33


def _require_user(user_id: Optional[int]) -> int:
    if user_id is None:
        raise NotAuthenticatedError()
    return user_id


def _commit(session: Session, action: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Failed to {action}") from exc


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, type: TransactionType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name, data.type):
            raise ValidationError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
            is_default=data.is_default,
        )
        self.session.add(category)
        _commit(self.session, "create category")
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            name = changes["name"].strip()
            if self._name_taken(name, category.type, exclude_id=category.id):
                raise ValidationError("Category with this name already exists")
            changes["name"] = name
        for field, value in changes.items():
            setattr(category, field, value)
        _commit(self.session, "update category")
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_transactions = self.session.scalar(
            select(Transaction.id).where(Transaction.category_id == category.id).limit(1)
        )
        if in_transactions is not None:
            raise ValidationError(
                "Cannot delete category that is in use by transactions"
            )
        in_expenses = self.session.scalar(
            select(RecurringExpense.id)
            .where(RecurringExpense.category_id == category.id)
            .limit(1)
        )
        if in_expenses is not None:
            raise ValidationError(
                "Cannot delete category that is in use by recurring expenses"
            )
        self.session.delete(category)
        _commit(self.session, "delete category")


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def create(self, data: TransactionIn) -> Transaction:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != data.type:
            raise ValidationError("Category type mismatch")
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=category.id,
            description=data.description.strip(),
            is_recurring=False,
        )
        self.session.add(txn)
        _commit(self.session, "create transaction")
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date <= end)
        if type is not None:
            stmt = stmt.where(Transaction.type == type)
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        _commit(self.session, "delete transaction")


class RecurringExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int],
        clock: Optional[Clock] = None,
    ) -> None:
        self.session = session
        self.user_id = _require_user(user_id)
        self.clock = clock or local_today

    @property
    def engine(self) -> RolloverEngine:
        return RolloverEngine(self.session, self.user_id, clock=self.clock)

    def _check_category(self, category_id: int) -> Category:
        try:
            category = CategoryService(self.session, self.user_id).get(category_id)
        except NotFoundError as exc:
            raise NotFoundError("Category not found or access denied") from exc
        if category.type != TransactionType.expense:
            raise ValidationError("Category type mismatch")
        return category

    def get(self, expense_id: int) -> RecurringExpense:
        expense = self.session.get(RecurringExpense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFoundError("Recurring expense not found")
        return expense

    def list_all(self) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .where(RecurringExpense.user_id == self.user_id)
            .order_by(RecurringExpense.name, RecurringExpense.id)
        )
        return list(self.session.scalars(stmt).all())

    def list_active(self) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .where(
                RecurringExpense.user_id == self.user_id,
                RecurringExpense.is_active.is_(True),
            )
            .order_by(RecurringExpense.name, RecurringExpense.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringExpenseIn) -> RecurringExpense:
        self._check_category(data.category_id)
        expense = RecurringExpense(
            user_id=self.user_id,
            name=data.name.strip(),
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            next_due=data.next_due,
            is_active=data.is_active,
            auto_add=data.auto_add,
            description=data.description,
        )
        self.session.add(expense)
        _commit(self.session, "create recurring expense")
        self.session.refresh(expense)
        return expense

    def update(self, expense_id: int, data: RecurringExpenseUpdate) -> RecurringExpense:
        expense = self.get(expense_id)
        changes = data.changes()
        if changes.get("category_id") is not None:
            self._check_category(changes["category_id"])
        for column in ("name", "category_id", "frequency", "is_active", "auto_add"):
            if column in changes and changes[column] is None:
                raise ValidationError(f"{column} cannot be cleared")
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        for field, value in changes.items():
            setattr(expense, field, value)
        _commit(self.session, "update recurring expense")
        self.session.refresh(expense)
        return expense

    def toggle_active(self, expense_id: int) -> RecurringExpense:
        expense = self.get(expense_id)
        expense.is_active = not expense.is_active
        _commit(self.session, "toggle recurring expense status")
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        # materialized transactions stay in the ledger
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.origin_expense_id == expense.id,
            )
            .values(origin_expense_id=None)
        )
        self.session.delete(expense)
        _commit(self.session, "delete recurring expense")

    def list_due(self, auto_add_only: bool = False) -> list[RecurringExpense]:
        return self.engine.list_due(auto_add_only=auto_add_only)

    def materialize(
        self, expense_id: int, custom_amount_cents: Optional[int] = None
    ) -> Materialization:
        return self.engine.materialize_occurrence(expense_id, custom_amount_cents)

    def process_due(self) -> BatchResult:
        return self.engine.process_due()

    def statistics(self) -> dict[str, object]:
        active = self.list_active()
        today = self.clock()
        totals = {frequency: 0 for frequency in ExpenseFrequency}
        for expense in active:
            totals[expense.frequency] += expense.amount_cents
        estimated_monthly = round(
            totals[ExpenseFrequency.monthly]
            + totals[ExpenseFrequency.yearly] / 12
            + totals[ExpenseFrequency.weekly] * WEEKS_PER_MONTH
        )
        return {
            "active_count": len(active),
            "auto_add_count": sum(1 for expense in active if expense.auto_add),
            "due_count": sum(1 for expense in active if is_due(expense, today)),
            "estimated_monthly_cents": estimated_monthly,
            "totals_by_frequency_cents": {
                frequency.value: amount for frequency, amount in totals.items()
            },
        }
