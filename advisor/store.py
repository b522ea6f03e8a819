from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    case,
    func,
    or_,
    select,
)
from sqlalchemy.ext.asyncio import AsyncEngine

ZERO = Decimal("0")
RECURRING_CADENCES = ("weekly", "monthly")

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("base_currency", String(3)),
    Column("savings_target_rate", Integer, nullable=False, server_default="20"),
    Column("risk_profile", String(10), nullable=False, server_default="medium"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("deleted_at", DateTime),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("name", String(255), nullable=False),
    Column("deleted_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("type", String(20), nullable=False),
    Column("kind", String(20), nullable=False, server_default="normal"),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("description", String(500)),
    Column("occurred_at", DateTime, nullable=False),
    Column("deleted_at", DateTime),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("month", String(7), nullable=False),
    Column("limit_amount", Numeric(12, 2), nullable=False),
    Column("deleted_at", DateTime),
)

recurring_rules = Table(
    "recurring_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("type", String(20)),
    Column("cadence", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("next_run_at", DateTime),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("from_account_id", Integer, ForeignKey("accounts.id")),
    Column("to_account_id", Integer, ForeignKey("accounts.id")),
    Column("description", String(500)),
    Column("is_paused", Boolean, nullable=False, server_default="0"),
    Column("deleted_at", DateTime),
)


@dataclass(frozen=True)
class PreferencesRecord:
    base_currency: Optional[str] = None
    savings_target_rate: int = 20
    risk_profile: str = "medium"


@dataclass(frozen=True)
class AccountRecord:
    id: str
    name: str
    currency: str


@dataclass(frozen=True)
class TransactionRecord:
    type: str
    amount: Decimal
    currency: str
    occurred_at: datetime
    category_id: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class BudgetRecord:
    id: str
    category_id: str
    month: str
    limit_amount: Decimal


@dataclass(frozen=True)
class RecurringRuleRecord:
    id: str
    kind: str
    cadence: str
    amount: Decimal
    next_run_at: Optional[datetime] = None
    category_id: Optional[str] = None
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    description: Optional[str] = None


class FinanceStore(Protocol):
    """Read-only queries the advisor needs from the ledger."""

    async def get_preferences(self, user_id: str) -> PreferencesRecord | None: ...

    async def list_accounts(self, user_id: str) -> list[AccountRecord]: ...

    async def list_transactions(
        self, user_id: str, start: date, end_exclusive: date
    ) -> list[TransactionRecord]: ...

    async def list_budgets(self, user_id: str, month: str) -> list[BudgetRecord]: ...

    async def list_recurring_rules(self, user_id: str) -> list[RecurringRuleRecord]: ...

    async def total_balance(self, user_id: str) -> Decimal: ...

    async def get_category_names(
        self, user_id: str, category_ids: Iterable[str]
    ) -> Mapping[str, str]: ...


class SqlFinanceStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def get_preferences(self, user_id: str) -> PreferencesRecord | None:
        stmt = select(
            users.c.base_currency,
            users.c.savings_target_rate,
            users.c.risk_profile,
        ).where(users.c.id == _coerce_id(user_id))
        row = await self._first(stmt)
        if row is None:
            return None
        return PreferencesRecord(
            base_currency=row["base_currency"],
            savings_target_rate=int(row["savings_target_rate"]),
            risk_profile=row["risk_profile"],
        )

    async def list_accounts(self, user_id: str) -> list[AccountRecord]:
        stmt = (
            select(accounts.c.id, accounts.c.name, accounts.c.currency)
            .where(
                accounts.c.user_id == _coerce_id(user_id),
                accounts.c.deleted_at.is_(None),
            )
            .order_by(accounts.c.id.asc())
        )
        rows = await self._all(stmt)
        return [
            AccountRecord(id=str(row["id"]), name=row["name"], currency=row["currency"])
            for row in rows
        ]

    async def list_transactions(
        self, user_id: str, start: date, end_exclusive: date
    ) -> list[TransactionRecord]:
        stmt = (
            select(
                transactions.c.type,
                transactions.c.amount,
                transactions.c.currency,
                transactions.c.category_id,
                transactions.c.occurred_at,
                transactions.c.description,
            )
            .where(
                transactions.c.user_id == _coerce_id(user_id),
                transactions.c.deleted_at.is_(None),
                transactions.c.kind == "normal",
                transactions.c.occurred_at >= _start_of_day(start),
                transactions.c.occurred_at < _start_of_day(end_exclusive),
            )
            .order_by(transactions.c.occurred_at.asc(), transactions.c.id.asc())
        )
        rows = await self._all(stmt)
        return [
            TransactionRecord(
                type=row["type"],
                amount=_coerce_amount(row["amount"]),
                currency=row["currency"],
                occurred_at=row["occurred_at"],
                category_id=_optional_id(row["category_id"]),
                description=row["description"],
            )
            for row in rows
        ]

    async def list_budgets(self, user_id: str, month: str) -> list[BudgetRecord]:
        stmt = (
            select(
                budgets.c.id,
                budgets.c.category_id,
                budgets.c.month,
                budgets.c.limit_amount,
            )
            .where(
                budgets.c.user_id == _coerce_id(user_id),
                budgets.c.month == month,
                budgets.c.deleted_at.is_(None),
            )
            .order_by(budgets.c.id.asc())
        )
        rows = await self._all(stmt)
        return [
            BudgetRecord(
                id=str(row["id"]),
                category_id=str(row["category_id"]),
                month=row["month"],
                limit_amount=_coerce_amount(row["limit_amount"]),
            )
            for row in rows
        ]

    async def list_recurring_rules(self, user_id: str) -> list[RecurringRuleRecord]:
        stmt = (
            select(
                recurring_rules.c.id,
                recurring_rules.c.kind,
                recurring_rules.c.cadence,
                recurring_rules.c.amount,
                recurring_rules.c.next_run_at,
                recurring_rules.c.category_id,
                recurring_rules.c.from_account_id,
                recurring_rules.c.to_account_id,
                recurring_rules.c.description,
            )
            .where(
                recurring_rules.c.user_id == _coerce_id(user_id),
                recurring_rules.c.deleted_at.is_(None),
                recurring_rules.c.is_paused.is_(False),
                recurring_rules.c.cadence.in_(RECURRING_CADENCES),
                or_(
                    recurring_rules.c.kind == "transfer",
                    and_(
                        recurring_rules.c.kind == "normal",
                        recurring_rules.c.type == "expense",
                    ),
                ),
            )
            .order_by(recurring_rules.c.id.asc())
        )
        rows = await self._all(stmt)
        return [
            RecurringRuleRecord(
                id=str(row["id"]),
                kind=row["kind"],
                cadence=row["cadence"],
                amount=_coerce_amount(row["amount"]),
                next_run_at=row["next_run_at"],
                category_id=_optional_id(row["category_id"]),
                from_account_id=_optional_id(row["from_account_id"]),
                to_account_id=_optional_id(row["to_account_id"]),
                description=row["description"],
            )
            for row in rows
        ]

    async def total_balance(self, user_id: str) -> Decimal:
        signed_amount = case(
            (transactions.c.type == "income", transactions.c.amount),
            (transactions.c.type == "expense", -transactions.c.amount),
            else_=0,
        )
        stmt = select(func.coalesce(func.sum(signed_amount), 0)).where(
            transactions.c.user_id == _coerce_id(user_id),
            transactions.c.deleted_at.is_(None),
        )
        async with self.engine.connect() as conn:
            total_value = (await conn.execute(stmt)).scalar_one()
        return _coerce_amount(total_value)

    async def get_category_names(
        self, user_id: str, category_ids: Iterable[str]
    ) -> Mapping[str, str]:
        ids = sorted({_coerce_id(value) for value in category_ids})
        if not ids:
            return {}
        stmt = select(categories.c.id, categories.c.name).where(
            categories.c.id.in_(ids),
            categories.c.deleted_at.is_(None),
            or_(
                categories.c.user_id == _coerce_id(user_id),
                categories.c.user_id.is_(None),
            ),
        )
        rows = await self._all(stmt)
        return {str(row["id"]): row["name"] for row in rows}

    async def _all(self, stmt) -> list:
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return list(result.mappings().all())

    async def _first(self, stmt):
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return result.mappings().first()


def _coerce_id(value: str | int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid identifier.") from exc


def _optional_id(value: int | None) -> str | None:
    if value is None:
        return None
    return str(value)


def _start_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
