from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import make_user
from errors import ConflictError, NotFoundError, ValidationError
from models import Budget, TransactionType
from schemas import BudgetIn, TransactionIn
from services import BudgetService, TransactionService, reconcile_budgets


def expense(amount: str, category: str = "Food", on: date = date(2024, 3, 10)):
    return TransactionIn(
        description="Spend",
        amount=Decimal(amount),
        category=category,
        date=on,
        type=TransactionType.expense,
    )


def test_natural_key_is_unique_in_the_store(session) -> None:
    user = make_user(session)
    session.add(
        Budget(user_id=user.id, category="Food", limit_cents=100, month=3, year=2024)
    )
    session.commit()

    session.add(
        Budget(user_id=user.id, category="Food", limit_cents=500, month=3, year=2024)
    )
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()

    assert session.query(Budget).count() == 1


def test_get_missing_budget_raises_not_found(session) -> None:
    user = make_user(session)

    with pytest.raises(NotFoundError):
        BudgetService(session, user.id).get(999)


def test_budget_of_another_owner_is_not_found(session) -> None:
    alice = make_user(session, "Alice")
    bob = make_user(session, "Bob")
    budget = BudgetService(session, alice.id).upsert(
        BudgetIn(category="Food", limit=Decimal("10"), month=1, year=2024)
    )

    with pytest.raises(NotFoundError):
        BudgetService(session, bob.id).get(budget.id)
    with pytest.raises(NotFoundError):
        BudgetService(session, bob.id).delete(budget.id)


def test_delete_budget_keeps_ledger_and_recreate_reseeds(session) -> None:
    user = make_user(session)
    txns = TransactionService(session, user.id)
    budgets = BudgetService(session, user.id)
    budget = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("200"), month=3, year=2024)
    )
    txns.create(expense("15.00"))

    old_id = budget.id
    budgets.delete(old_id)
    txns.create(expense("5.00"))
    recreated = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("200"), month=3, year=2024)
    )

    assert len(txns.list()) == 2
    assert recreated.spent_amount == Decimal("20.00")
    assert recreated.id != old_id
    with pytest.raises(NotFoundError):
        budgets.get(old_id)


def test_list_all_and_for_month(session) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    for category, month in [("Transport", 3), ("Food", 3), ("Food", 4)]:
        budgets.upsert(
            BudgetIn(category=category, limit=Decimal("50"), month=month, year=2024)
        )

    assert [(b.category, b.month) for b in budgets.list_all()] == [
        ("Food", 4),
        ("Food", 3),
        ("Transport", 3),
    ]
    assert [b.category for b in budgets.list_for_month(3, 2024)] == [
        "Food",
        "Transport",
    ]


def test_update_same_slice_changes_limit_only(session) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    TransactionService(session, user.id).create(expense("25.00"))
    budget = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )

    updated = budgets.update(
        budget.id, BudgetIn(category="Food", limit=Decimal("150"), month=3, year=2024)
    )

    assert updated.limit == Decimal("150.00")
    assert updated.spent_amount == Decimal("25.00")


def test_update_to_free_slice_moves_and_reseeds(session) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    txns = TransactionService(session, user.id)
    txns.create(expense("25.00"))
    txns.create(expense("60.00", category="Transport", on=date(2024, 4, 3)))
    budget = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )

    moved = budgets.update(
        budget.id,
        BudgetIn(category="Transport", limit=Decimal("80"), month=4, year=2024),
    )

    assert moved.id == budget.id
    assert (moved.category, moved.month, moved.year) == ("Transport", 4, 2024)
    assert moved.spent_amount == Decimal("60.00")


def test_update_onto_taken_slice_conflicts(session) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    food = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )
    budgets.upsert(
        BudgetIn(category="Transport", limit=Decimal("50"), month=3, year=2024)
    )

    with pytest.raises(ConflictError):
        budgets.update(
            food.id,
            BudgetIn(category="Transport", limit=Decimal("70"), month=3, year=2024),
        )

    assert budgets.get(food.id).category == "Food"


def test_negative_limit_is_rejected(session) -> None:
    user = make_user(session)
    bad = BudgetIn.model_construct(
        category="Food", limit=Decimal("-1"), month=3, year=2024
    )

    with pytest.raises(ValidationError):
        BudgetService(session, user.id).upsert(bad)
    assert session.query(Budget).count() == 0


def test_recompute_spent_repairs_drift(session) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    TransactionService(session, user.id).create(expense("42.00"))
    budget = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )
    budget.spent_cents = 1
    session.commit()

    repaired = budgets.recompute_spent(budget.id)

    assert repaired.spent_amount == Decimal("42.00")


def test_reconcile_budgets_counts_and_fixes_drift(session) -> None:
    alice = make_user(session, "Alice")
    bob = make_user(session, "Bob")
    TransactionService(session, alice.id).create(expense("10.00"))
    TransactionService(session, bob.id).create(expense("20.00"))
    a = BudgetService(session, alice.id).upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )
    b = BudgetService(session, bob.id).upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )
    a.spent_cents = 0
    b.spent_cents = 0
    session.commit()

    assert reconcile_budgets(session, alice.id) == 1
    assert BudgetService(session, alice.id).get(a.id).spent_amount == Decimal("10.00")
    assert BudgetService(session, bob.id).get(b.id).spent_amount == Decimal("0.00")

    assert reconcile_budgets(session) == 1
    assert BudgetService(session, bob.id).get(b.id).spent_amount == Decimal("20.00")
    assert reconcile_budgets(session) == 0


def _lookup_missing_on(budgets: BudgetService, missing_calls: set[int]):
    real_lookup = budgets.get_by_slice
    calls = []

    def lookup(category, month, year):
        calls.append(category)
        if len(calls) in missing_calls:
            return None
        return real_lookup(category, month, year)

    return lookup


def test_upsert_losing_insert_race_updates_winner_limit(session, monkeypatch) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    TransactionService(session, user.id).create(expense("15.00"))
    budget = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )
    budget.spent_cents = 1234
    session.commit()

    # The first lookup misses, as if the winner committed right after it.
    monkeypatch.setattr(budgets, "get_by_slice", _lookup_missing_on(budgets, {1}))
    result = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("300"), month=3, year=2024)
    )

    assert result.id == budget.id
    assert result.limit == Decimal("300.00")
    assert result.spent_amount == Decimal("12.34")
    assert session.query(Budget).count() == 1


def test_upsert_losing_race_twice_conflicts(session, monkeypatch) -> None:
    user = make_user(session)
    budgets = BudgetService(session, user.id)
    budget = budgets.upsert(
        BudgetIn(category="Food", limit=Decimal("100"), month=3, year=2024)
    )

    monkeypatch.setattr(
        budgets, "get_by_slice", _lookup_missing_on(budgets, {1, 3})
    )
    with pytest.raises(ConflictError):
        budgets.upsert(
            BudgetIn(category="Food", limit=Decimal("300"), month=3, year=2024)
        )

    monkeypatch.undo()
    assert session.query(Budget).count() == 1
    assert budgets.get(budget.id).limit == Decimal("100.00")
