import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import (
    NotAuthenticatedError,
    NotFoundError,
    PersistenceError,
    RolloverError,
    ValidationError,
)
from models import (
    ExpenseFrequency,
    RecurringExpense,
    RecurringPattern,
    Transaction,
    TransactionType,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], date]


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Same day-of-month ``months`` later, clamped to the end of shorter months.

    Jan 31 + 1 month is Feb 29 in a leap year and Feb 28 otherwise; Feb 29 + 12
    months is Feb 28.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def advance_due_date(current: date, frequency: ExpenseFrequency) -> date:
    if frequency == ExpenseFrequency.weekly:
        return current + timedelta(weeks=1)
    if frequency == ExpenseFrequency.monthly:
        return add_months(current, 1)
    if frequency == ExpenseFrequency.yearly:
        return add_months(current, 12)
    raise ValueError(f"Unsupported frequency: {frequency}")


def recurring_pattern_for(frequency: ExpenseFrequency) -> RecurringPattern:
    return RecurringPattern(frequency.value)


def is_due(expense: RecurringExpense, today: date) -> bool:
    return (
        bool(expense.is_active)
        and expense.next_due is not None
        and expense.next_due <= today
    )


class ItemStatus(str, Enum):
    materialized = "materialized"
    # transaction recorded, but next_due could not be advanced
    degraded = "degraded"
    # occurrence was already in the ledger; only the schedule was touched
    skipped = "skipped"
    failed = "failed"


@dataclass(frozen=True)
class Materialization:
    transaction_id: int
    expense_id: int
    amount_cents: int
    occurrence_date: date
    next_due: date
    transaction_created: bool
    schedule_advanced: bool

    @property
    def degraded(self) -> bool:
        return not self.schedule_advanced

    @property
    def status(self) -> ItemStatus:
        if not self.transaction_created:
            return ItemStatus.skipped
        if self.degraded:
            return ItemStatus.degraded
        return ItemStatus.materialized


@dataclass(frozen=True)
class ItemOutcome:
    expense_id: int
    status: ItemStatus
    transaction_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(
            1
            for outcome in self.outcomes
            if outcome.status in (ItemStatus.materialized, ItemStatus.degraded)
        )

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == ItemStatus.failed)


class RolloverEngine:
    """Turns due recurring expenses into ledger transactions.

    Every query is scoped to ``user_id``; "today" comes from ``clock`` so
    callers and tests can pin the date.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int],
        clock: Optional[Clock] = None,
    ) -> None:
        if user_id is None:
            raise NotAuthenticatedError()
        self.session = session
        self.user_id = user_id
        self.clock = clock or local_today

    def _get_expense(self, expense_id: int) -> RecurringExpense:
        # the schedule is advanced with a bulk UPDATE, so reload over any
        # copy already held by the session
        expense = self.session.scalar(
            select(RecurringExpense)
            .where(
                RecurringExpense.id == expense_id,
                RecurringExpense.user_id == self.user_id,
            )
            .execution_options(populate_existing=True)
        )
        if not expense:
            raise NotFoundError("Recurring expense not found")
        return expense

    def list_due(self, auto_add_only: bool = False) -> list[RecurringExpense]:
        today = self.clock()
        stmt = (
            select(RecurringExpense)
            .where(
                RecurringExpense.user_id == self.user_id,
                RecurringExpense.is_active.is_(True),
                RecurringExpense.next_due.is_not(None),
                RecurringExpense.next_due <= today,
            )
            .order_by(RecurringExpense.next_due, RecurringExpense.id)
            .execution_options(populate_existing=True)
        )
        if auto_add_only:
            stmt = stmt.where(RecurringExpense.auto_add.is_(True))
        return list(self.session.scalars(stmt).all())

    def materialize_occurrence(
        self, expense_id: int, custom_amount_cents: Optional[int] = None
    ) -> Materialization:
        expense = self._get_expense(expense_id)
        if custom_amount_cents is not None and custom_amount_cents <= 0:
            raise ValidationError("Amount must be positive")

        today = self.clock()
        previous_due = expense.next_due
        current_due = previous_due or today
        frequency = expense.frequency
        amount_cents = (
            custom_amount_cents
            if custom_amount_cents is not None
            else expense.amount_cents
        )
        next_due = advance_due_date(current_due, frequency)

        recorded = self._recorded_occurrence(expense.id, current_due)
        created = False
        if recorded is not None:
            # report what the ledger holds, not what this call asked for
            transaction_id = recorded.id
            amount_cents = recorded.amount_cents
        else:
            txn = Transaction(
                user_id=self.user_id,
                date=today,
                type=TransactionType.expense,
                amount_cents=amount_cents,
                category_id=expense.category_id,
                description=expense.name,
                is_recurring=True,
                recurring_pattern=recurring_pattern_for(frequency),
                origin_expense_id=expense.id,
                occurrence_date=current_due,
            )
            self.session.add(txn)
            try:
                self.session.commit()
                transaction_id = txn.id
                created = True
            except IntegrityError as exc:
                self.session.rollback()
                # a concurrent call may have recorded this occurrence first
                recorded = self._recorded_occurrence(expense_id, current_due)
                if recorded is None:
                    raise PersistenceError(
                        f"Failed to record transaction for expense {expense_id}"
                    ) from exc
                transaction_id = recorded.id
                amount_cents = recorded.amount_cents
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise PersistenceError(
                    f"Failed to record transaction for expense {expense_id}"
                ) from exc

        advanced = self._advance_schedule(expense_id, previous_due, next_due)
        logger.info(
            f"rollover: expense_id={expense_id} transaction_id={transaction_id} "
            f"created={created} occurrence={current_due} next_due={next_due} "
            f"advanced={advanced}"
        )
        return Materialization(
            transaction_id=transaction_id,
            expense_id=expense_id,
            amount_cents=amount_cents,
            occurrence_date=current_due,
            next_due=next_due,
            transaction_created=created,
            schedule_advanced=advanced,
        )

    def process_due(self) -> BatchResult:
        result = BatchResult()
        due_ids = [expense.id for expense in self.list_due(auto_add_only=True)]
        for expense_id in due_ids:
            try:
                outcome = self.materialize_occurrence(expense_id)
            except RolloverError as exc:
                logger.warning(
                    f"rollover_batch: expense_id={expense_id} failed error={exc}"
                )
                result.outcomes.append(
                    ItemOutcome(
                        expense_id=expense_id,
                        status=ItemStatus.failed,
                        error=str(exc),
                    )
                )
                continue
            result.outcomes.append(
                ItemOutcome(
                    expense_id=expense_id,
                    status=outcome.status,
                    transaction_id=outcome.transaction_id,
                )
            )
        logger.info(
            f"rollover_batch: user_id={self.user_id} due={len(due_ids)} "
            f"processed={result.processed} failed={result.failed}"
        )
        return result

    def _recorded_occurrence(
        self, expense_id: int, occurrence_date: date
    ) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.origin_expense_id == expense_id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def _advance_schedule(
        self, expense_id: int, previous_due: Optional[date], next_due: date
    ) -> bool:
        """Move next_due forward only if nobody else moved it since it was read."""
        if previous_due is None:
            unchanged = RecurringExpense.next_due.is_(None)
        else:
            unchanged = RecurringExpense.next_due == previous_due
        stmt = (
            update(RecurringExpense)
            .where(
                RecurringExpense.id == expense_id,
                RecurringExpense.user_id == self.user_id,
                unchanged,
            )
            .values(next_due=next_due, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            rowcount = self.session.execute(stmt).rowcount
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(
                f"rollover: expense_id={expense_id} failed to update next_due "
                f"error={exc}"
            )
            return False
        if rowcount == 0:
            logger.warning(
                f"rollover: expense_id={expense_id} next_due changed concurrently, "
                f"not advanced"
            )
            return False
        return True
