from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from errors import ValidationError
from models import (
    Category,
    ExpenseFrequency,
    RecurringExpense,
    RecurringPattern,
    Transaction,
    TransactionType,
)
from recurrence import BatchResult, ItemStatus, Materialization


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return cents / 100


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _positive_cents(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is not None and to_cents(value) <= 0:
        raise ValueError("Amount must be positive")
    return value


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")
    icon: Optional[str] = Field(default=None, max_length=50)
    is_default: bool = False


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")
    icon: Optional[str] = Field(default=None, max_length=50)
    is_default: Optional[bool] = None


class TransactionIn(CamelModel):
    date: date
    type: TransactionType
    amount: Decimal
    category_id: int
    description: str = Field(..., min_length=1, max_length=200)

    validate_amount = field_validator("amount")(_positive_cents)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class RecurringExpenseIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: int
    amount: Decimal
    frequency: ExpenseFrequency
    next_due: Optional[date] = None
    is_active: bool = True
    auto_add: bool = False
    description: Optional[str] = None

    validate_amount = field_validator("amount")(_positive_cents)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class RecurringExpenseUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    category_id: Optional[int] = None
    amount: Optional[Decimal] = None
    frequency: Optional[ExpenseFrequency] = None
    next_due: Optional[date] = None
    is_active: Optional[bool] = None
    auto_add: Optional[bool] = None
    description: Optional[str] = None

    validate_amount = field_validator("amount")(_positive_cents)

    def changes(self) -> dict[str, object]:
        """Fields the caller actually sent, keyed by model column name."""
        data = self.model_dump(exclude_unset=True)
        if "amount" in data:
            amount = data.pop("amount")
            if amount is None:
                raise ValidationError("Amount cannot be cleared")
            data["amount_cents"] = to_cents(amount)
        return data


class MaterializeIn(CamelModel):
    amount: Optional[Decimal] = None

    validate_amount = field_validator("amount")(_positive_cents)

    @property
    def amount_cents(self) -> Optional[int]:
        return to_cents(self.amount) if self.amount is not None else None


class CategoryOut(CamelModel):
    id: int
    name: str
    type: TransactionType
    color: Optional[str]
    icon: Optional[str]
    is_default: bool
    created_at: datetime

    @classmethod
    def from_model(cls, category: Category) -> "CategoryOut":
        return cls(
            id=category.id,
            name=category.name,
            type=category.type,
            color=category.color,
            icon=category.icon,
            is_default=category.is_default,
            created_at=category.created_at,
        )


class TransactionOut(CamelModel):
    id: int
    type: TransactionType
    amount: float
    category_id: int
    category: Optional[str]
    description: str
    date: date
    is_recurring: bool
    recurring_pattern: Optional[RecurringPattern]

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            type=txn.type,
            amount=cents_to_amount(txn.amount_cents),
            category_id=txn.category_id,
            category=txn.category.name if txn.category else None,
            description=txn.description,
            date=txn.date,
            is_recurring=txn.is_recurring,
            recurring_pattern=txn.recurring_pattern,
        )


class RecurringExpenseOut(CamelModel):
    id: int
    name: str
    category_id: int
    amount: float
    frequency: ExpenseFrequency
    next_due: Optional[date]
    is_active: bool
    description: Optional[str]
    auto_add: bool
    created_at: datetime

    @classmethod
    def from_model(cls, expense: RecurringExpense) -> "RecurringExpenseOut":
        return cls(
            id=expense.id,
            name=expense.name,
            category_id=expense.category_id,
            amount=cents_to_amount(expense.amount_cents),
            frequency=expense.frequency,
            next_due=expense.next_due,
            is_active=expense.is_active,
            description=expense.description,
            auto_add=expense.auto_add,
            created_at=expense.created_at,
        )


class MaterializationOut(CamelModel):
    transaction_id: int
    expense_id: int
    amount: float
    occurrence_date: date
    next_due: date
    status: ItemStatus
    transaction_created: bool
    schedule_advanced: bool

    @classmethod
    def from_result(cls, result: Materialization) -> "MaterializationOut":
        return cls(
            transaction_id=result.transaction_id,
            expense_id=result.expense_id,
            amount=cents_to_amount(result.amount_cents),
            occurrence_date=result.occurrence_date,
            next_due=result.next_due,
            status=result.status,
            transaction_created=result.transaction_created,
            schedule_advanced=result.schedule_advanced,
        )


class ItemOutcomeOut(CamelModel):
    expense_id: int
    status: ItemStatus
    transaction_id: Optional[int]
    error: Optional[str]


class BatchResultOut(CamelModel):
    processed: int
    failed: int
    outcomes: list[ItemOutcomeOut]

    @classmethod
    def from_result(cls, result: BatchResult) -> "BatchResultOut":
        return cls(
            processed=result.processed,
            failed=result.failed,
            outcomes=[
                ItemOutcomeOut(
                    expense_id=outcome.expense_id,
                    status=outcome.status,
                    transaction_id=outcome.transaction_id,
                    error=outcome.error,
                )
                for outcome in result.outcomes
            ],
        )


class RecurringStatisticsOut(CamelModel):
    active_count: int
    auto_add_count: int
    due_count: int
    estimated_monthly: float
    totals_by_frequency: dict[str, float]

    @classmethod
    def from_stats(cls, stats: dict) -> "RecurringStatisticsOut":
        return cls(
            active_count=stats["active_count"],
            auto_add_count=stats["auto_add_count"],
            due_count=stats["due_count"],
            estimated_monthly=cents_to_amount(stats["estimated_monthly_cents"]),
            totals_by_frequency={
                frequency: cents_to_amount(cents)
                for frequency, cents in stats["totals_by_frequency_cents"].items()
            },
        )
