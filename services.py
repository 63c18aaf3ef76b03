from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import is_store_failure
from errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationError
from models import Budget, Transaction, TransactionType
from money import ZERO, from_cents, to_cents
from periods import Period, month_bounds
from schemas import BudgetIn, TransactionIn

logger = logging.getLogger(__name__)

SAVINGS_RATE_SCALE = Decimal("0.0001")


@contextmanager
def _unit_of_work(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except Exception as exc:
        session.rollback()
        if is_store_failure(exc):
            raise StoreUnavailableError(str(exc)) from exc
        raise


def _amount_cents(value: Optional[Decimal], label: str) -> int:
    if value is None:
        raise ValidationError(f"{label} is required")
    try:
        return to_cents(value)
    except ValueError as exc:
        raise ValidationError(f"{label} is not a valid amount") from exc


def _validate_transaction(data: TransactionIn) -> None:
    if data.type is None or data.date is None:
        raise ValidationError("Transaction type and date are required")
    if not (data.description or "").strip():
        raise ValidationError("Description cannot be empty")
    if not (data.category or "").strip():
        raise ValidationError("Category cannot be empty")
    if _amount_cents(data.amount, "Amount") <= 0:
        raise ValidationError("Amount must be at least 0.01")
    if data.notes is not None and len(data.notes) > 500:
        raise ValidationError("Notes cannot exceed 500 characters")


def _validate_budget(data: BudgetIn) -> None:
    if not (data.category or "").strip():
        raise ValidationError("Category cannot be empty")
    if _amount_cents(data.limit, "Budget limit") < 0:
        raise ValidationError("Budget limit cannot be negative")
    if not 1 <= data.month <= 12:
        raise ValidationError("Month must be between 1 and 12")


@dataclass(frozen=True)
class LedgerEntry:
    """The budget-relevant fields of a transaction at one point in time."""

    type: TransactionType
    category: str
    amount: Decimal
    date: date

    @classmethod
    def from_transaction(cls, txn: Transaction) -> LedgerEntry:
        return cls(txn.type, txn.category, txn.amount, txn.date)

    @property
    def month(self) -> int:
        return self.date.month

    @property
    def year(self) -> int:
        return self.date.year


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None


class AggregationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def total_by_type(
        self, txn_type: TransactionType, period: Optional[Period] = None
    ) -> Decimal:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == txn_type,
        )
        if period is not None:
            if period.is_empty:
                return ZERO
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        return from_cents(self.session.execute(stmt).scalar_one() or 0)

    def category_monthly_expense_total(
        self, category: str, month: int, year: int
    ) -> Decimal:
        start, end = month_bounds(year, month)
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.category == category,
            Transaction.date.between(start, end),
        )
        return from_cents(self.session.execute(stmt).scalar_one() or 0)

    def monthly_expense_totals(self, month: int, year: int) -> dict[str, Decimal]:
        start, end = month_bounds(year, month)
        rows = self.session.execute(
            select(Transaction.category, func.sum(Transaction.amount_cents))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
            .group_by(Transaction.category)
        ).all()
        return {category: from_cents(cents) for category, cents in rows}

    def category_breakdown(
        self, txn_type: TransactionType, period: Optional[Period] = None
    ) -> list[dict[str, object]]:
        if period is not None and period.is_empty:
            return []
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(Transaction.category, total, func.count(Transaction.id))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == txn_type,
            )
            .group_by(Transaction.category)
            .order_by(total.desc(), Transaction.category.asc())
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        return [
            {"category": category, "total": from_cents(cents), "count": count}
            for category, cents, count in self.session.execute(stmt).all()
        ]


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.aggregates = AggregationService(session, user_id)

    def dashboard(self, period: Optional[Period] = None) -> dict[str, object]:
        income = self.aggregates.total_by_type(TransactionType.income, period)
        expenses = self.aggregates.total_by_type(TransactionType.expense, period)
        # Both totals are positive magnitudes.
        balance = income - expenses
        savings_rate = 0.0
        if income > 0:
            ratio = (balance / income).quantize(
                SAVINGS_RATE_SCALE, rounding=ROUND_HALF_UP
            )
            savings_rate = float(ratio * 100)
        return {
            "total_income": income,
            "total_expenses": expenses,
            "balance": balance,
            "savings_rate": savings_rate,
        }


class BudgetService:
    """Budgets and the cached ``spent_cents`` kept beside them.

    ``adjust_spent`` is the only incremental write to the cache. It runs as a
    single ``UPDATE ... SET spent_cents = spent_cents + :delta`` so concurrent
    adjustments to one slice serialize on the row lock instead of racing a
    read-modify-write. It joins the caller's database transaction and never
    commits on its own.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.aggregates = AggregationService(session, user_id)

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(
                Budget.category.asc(),
                Budget.year.desc(),
                Budget.month.desc(),
                Budget.id.asc(),
            )
        )
        return self.session.scalars(stmt).all()

    def list_for_month(self, month: int, year: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
            .order_by(Budget.category.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def get_by_slice(self, category: str, month: int, year: int) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.month == month,
                Budget.year == year,
            )
        )

    def _seed_spent_cents(self, category: str, month: int, year: int) -> int:
        total = self.aggregates.category_monthly_expense_total(category, month, year)
        return to_cents(total)

    def _write_limit(self, data: BudgetIn) -> tuple[Budget, bool]:
        limit_cents = to_cents(data.limit)
        with _unit_of_work(self.session):
            budget = self.get_by_slice(data.category, data.month, data.year)
            if budget:
                budget.limit_cents = limit_cents
                created = False
            else:
                budget = Budget(
                    user_id=self.user_id,
                    category=data.category,
                    limit_cents=limit_cents,
                    spent_cents=self._seed_spent_cents(
                        data.category, data.month, data.year
                    ),
                    month=data.month,
                    year=data.year,
                )
                self.session.add(budget)
                self.session.flush()
                created = True
        return budget, created

    def upsert(self, data: BudgetIn) -> Budget:
        _validate_budget(data)
        try:
            budget, created = self._write_limit(data)
        except IntegrityError as exc:
            # Another request inserted the slice between our lookup and insert.
            if self.get_by_slice(data.category, data.month, data.year) is None:
                raise
            logger.info(
                f"budget_upsert_retry: user_id={self.user_id} "
                f"category={data.category!r} month={data.month} year={data.year}"
            )
            try:
                budget, created = self._write_limit(data)
            except IntegrityError as retry_exc:
                raise ConflictError("Budget already exists") from retry_exc
        self.session.refresh(budget)
        logger.info(
            f"budget_upserted: user_id={self.user_id} id={budget.id} "
            f"created={created} limit={budget.limit} spent={budget.spent_amount}"
        )
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        _validate_budget(data)
        budget = self.get(budget_id)
        same_slice = (budget.category, budget.month, budget.year) == (
            data.category,
            data.month,
            data.year,
        )
        if not same_slice:
            other = self.get_by_slice(data.category, data.month, data.year)
            if other is not None:
                raise ConflictError(
                    "A budget for this category and month already exists"
                )
        try:
            with _unit_of_work(self.session):
                budget.limit_cents = to_cents(data.limit)
                if not same_slice:
                    budget.category = data.category
                    budget.month = data.month
                    budget.year = data.year
                    budget.spent_cents = self._seed_spent_cents(
                        data.category, data.month, data.year
                    )
                self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "A budget for this category and month already exists"
            ) from exc
        self.session.refresh(budget)
        logger.info(
            f"budget_updated: user_id={self.user_id} id={budget.id} "
            f"moved={not same_slice} limit={budget.limit}"
        )
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with _unit_of_work(self.session):
            self.session.delete(budget)
        logger.info(f"budget_deleted: user_id={self.user_id} id={budget_id}")

    def adjust_spent(
        self, category: str, delta: Decimal, month: int, year: int
    ) -> bool:
        """Add ``delta`` to the cached spend of one slice.

        Returns ``False`` without creating anything when the slice has no
        budget yet; ``upsert`` seeds it from the ledger later.
        """
        delta_cents = to_cents(delta)
        stmt = (
            update(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.month == month,
                Budget.year == year,
            )
            .values(spent_cents=Budget.spent_cents + delta_cents)
            .execution_options(synchronize_session="evaluate")
        )
        matched = self.session.execute(stmt).rowcount > 0
        if not matched:
            logger.debug(
                f"spent_adjust_skipped: user_id={self.user_id} "
                f"category={category!r} month={month} year={year}"
            )
        return matched

    def _reflect(self, entry: LedgerEntry, sign: int) -> None:
        if entry.type != TransactionType.expense:
            return
        self.adjust_spent(entry.category, entry.amount * sign, entry.month, entry.year)

    def record_added(self, entry: LedgerEntry) -> None:
        self._reflect(entry, 1)

    def record_removed(self, entry: LedgerEntry) -> None:
        self._reflect(entry, -1)

    def recompute_spent(self, budget_id: int) -> Budget:
        budget = self.get(budget_id)
        actual = self._seed_spent_cents(budget.category, budget.month, budget.year)
        with _unit_of_work(self.session):
            if actual != budget.spent_cents:
                logger.warning(
                    f"budget_drift: user_id={self.user_id} id={budget.id} "
                    f"cached={from_cents(budget.spent_cents)} "
                    f"ledger={from_cents(actual)}"
                )
                _correct_spent(self.session, budget, actual)
        self.session.refresh(budget)
        return budget


def _correct_spent(session: Session, budget: Budget, actual_cents: int) -> None:
    # Delta against the loaded value keeps adjustments committed since the read.
    delta = actual_cents - budget.spent_cents
    stmt = (
        update(Budget)
        .where(Budget.id == budget.id)
        .values(spent_cents=Budget.spent_cents + delta)
        .execution_options(synchronize_session="evaluate")
    )
    session.execute(stmt)


def reconcile_budgets(session: Session, user_id: Optional[int] = None) -> int:
    """Bring every cached spend back to the ledger total; return how many drifted."""
    stmt = select(Budget).order_by(Budget.user_id, Budget.year, Budget.month)
    if user_id is not None:
        stmt = stmt.where(Budget.user_id == user_id)
    budgets = session.scalars(stmt).all()

    totals: dict[tuple[int, int, int], dict[str, Decimal]] = {}
    drifted = 0
    with _unit_of_work(session):
        for budget in budgets:
            key = (budget.user_id, budget.month, budget.year)
            if key not in totals:
                totals[key] = AggregationService(
                    session, budget.user_id
                ).monthly_expense_totals(budget.month, budget.year)
            actual = to_cents(totals[key].get(budget.category, ZERO))
            if actual != budget.spent_cents:
                logger.warning(
                    f"budget_drift: user_id={budget.user_id} id={budget.id} "
                    f"cached={from_cents(budget.spent_cents)} "
                    f"ledger={from_cents(actual)}"
                )
                _correct_spent(session, budget, actual)
                drifted += 1
    logger.info(f"budgets_reconciled: checked={len(budgets)} drifted={drifted}")
    return drifted


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.budgets = BudgetService(session, user_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        period: Optional[Period] = None,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        if period is not None and period.is_empty:
            return []
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> Transaction:
        _validate_transaction(data)
        txn = Transaction(
            user_id=self.user_id,
            description=data.description,
            amount_cents=to_cents(data.amount),
            category=data.category,
            date=data.date,
            type=data.type,
            notes=data.notes,
        )
        with _unit_of_work(self.session):
            self.session.add(txn)
            self.session.flush()
            self.budgets.record_added(LedgerEntry.from_transaction(txn))
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount={txn.amount} category={txn.category!r}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        _validate_transaction(data)
        txn = self.get(transaction_id)
        with _unit_of_work(self.session):
            self.budgets.record_removed(LedgerEntry.from_transaction(txn))
            txn.description = data.description
            txn.amount_cents = to_cents(data.amount)
            txn.category = data.category
            txn.date = data.date
            txn.type = data.type
            txn.notes = data.notes
            self.session.flush()
            self.budgets.record_added(LedgerEntry.from_transaction(txn))
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount={txn.amount} category={txn.category!r}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with _unit_of_work(self.session):
            self.budgets.record_removed(LedgerEntry.from_transaction(txn))
            self.session.delete(txn)
        logger.info(f"transaction_deleted: user_id={self.user_id} id={transaction_id}")
