import random
from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotAuthenticatedError
from models import (
    Category,
    ExpenseFrequency,
    RecurringExpense,
    RecurringPattern,
    TransactionType,
)
from recurrence import (
    RolloverEngine,
    add_months,
    advance_due_date,
    is_due,
    recurring_pattern_for,
)


def test_weekly_advances_seven_days():
    assert advance_due_date(date(2024, 1, 1), ExpenseFrequency.weekly) == date(
        2024, 1, 8
    )
    assert advance_due_date(date(2024, 12, 28), ExpenseFrequency.weekly) == date(
        2025, 1, 4
    )


def test_monthly_month_end_clamps_to_last_day():
    assert advance_due_date(date(2024, 1, 31), ExpenseFrequency.monthly) == date(
        2024, 2, 29
    )
    assert advance_due_date(date(2023, 1, 31), ExpenseFrequency.monthly) == date(
        2023, 2, 28
    )
    assert advance_due_date(date(2024, 3, 31), ExpenseFrequency.monthly) == date(
        2024, 4, 30
    )


def test_monthly_rolls_over_year_boundary():
    assert advance_due_date(date(2024, 12, 15), ExpenseFrequency.monthly) == date(
        2025, 1, 15
    )


def test_yearly_keeps_month_and_day_and_clamps_leap_day():
    assert advance_due_date(date(2024, 6, 1), ExpenseFrequency.yearly) == date(
        2025, 6, 1
    )
    assert advance_due_date(date(2024, 2, 29), ExpenseFrequency.yearly) == date(
        2025, 2, 28
    )


def test_add_months_handles_multi_year_spans():
    assert add_months(date(2023, 11, 30), 3) == date(2024, 2, 29)
    assert add_months(date(2024, 1, 15), 24) == date(2026, 1, 15)


@pytest.mark.parametrize("frequency", list(ExpenseFrequency))
def test_advance_is_strictly_increasing(frequency):
    current = date(2023, 1, 1)
    end = date(2025, 1, 1)
    while current < end:
        assert advance_due_date(current, frequency) > current
        current += timedelta(days=1)


def test_each_frequency_has_its_own_pattern():
    assert recurring_pattern_for(ExpenseFrequency.weekly) == RecurringPattern.weekly
    assert recurring_pattern_for(ExpenseFrequency.monthly) == RecurringPattern.monthly
    assert recurring_pattern_for(ExpenseFrequency.yearly) == RecurringPattern.yearly


def test_is_due_predicate():
    today = date(2024, 1, 10)

    def expense(is_active, next_due):
        return RecurringExpense(
            name="Rent",
            amount_cents=1000,
            frequency=ExpenseFrequency.monthly,
            is_active=is_active,
            next_due=next_due,
        )

    assert is_due(expense(True, date(2024, 1, 10)), today)
    assert is_due(expense(True, date(2023, 12, 1)), today)
    assert not is_due(expense(True, date(2024, 1, 11)), today)
    assert not is_due(expense(True, None), today)
    assert not is_due(expense(False, date(2024, 1, 1)), today)


def test_engine_requires_caller_identity():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        with pytest.raises(NotAuthenticatedError):
            RolloverEngine(session, None)


def test_list_due_matches_predicate_for_random_expenses():
    rng = random.Random(20240101)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        category = Category(user_id=1, name="Bills", type=TransactionType.expense)
        session.add(category)
        session.flush()
        base = date(2024, 1, 1)
        expenses = []
        for index in range(60):
            next_due = (
                None if rng.random() < 0.2 else base + timedelta(days=rng.randint(-40, 40))
            )
            expense = RecurringExpense(
                user_id=1,
                name=f"Expense {index}",
                category_id=category.id,
                amount_cents=rng.randint(1, 50_000),
                frequency=rng.choice(list(ExpenseFrequency)),
                next_due=next_due,
                is_active=rng.random() < 0.7,
                auto_add=rng.random() < 0.5,
            )
            expenses.append(expense)
        session.add_all(expenses)
        session.commit()

        for _ in range(10):
            today = base + timedelta(days=rng.randint(-45, 45))
            rollover = RolloverEngine(session, 1, clock=lambda today=today: today)

            due = rollover.list_due()
            expected = {e.id for e in expenses if is_due(e, today)}
            assert {e.id for e in due} == expected
            assert [e.next_due for e in due] == sorted(e.next_due for e in due)

            auto_only = rollover.list_due(auto_add_only=True)
            expected_auto = {e.id for e in expenses if is_due(e, today) and e.auto_add}
            assert {e.id for e in auto_only} == expected_auto

            assert [e.id for e in rollover.list_due()] == [e.id for e in due]
