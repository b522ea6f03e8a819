"""
Financial snapshot aggregation.

Reduces a user's accounts, transactions, budgets and recurring rules for one
month into the compact numeric view consumed by both the prompt renderer and
the fallback synthesizer. Every money field is rounded to cents here, and every
free-text label is redacted, so nothing downstream has to repeat either step.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from advisor.periods import (
    format_month,
    month_window,
    parse_month_value,
    resolve_anchor_date,
    trailing_window,
    trend_months,
)
from advisor.redaction import normalize_for_match, redact_free_text
from advisor.schemas import (
    BalancesSnapshot,
    BudgetAdherence,
    BudgetItem,
    CashflowPoint,
    CategoryBreakdownItem,
    FinancialSnapshot,
    Flags,
    MerchantCluster,
    Overview,
    RecurringOutflows,
    RecurringRuleItem,
    UserPreferences,
)
from advisor.store import (
    RECURRING_CADENCES,
    AccountRecord,
    BudgetRecord,
    FinanceStore,
    PreferencesRecord,
    RecurringRuleRecord,
    TransactionRecord,
)

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

NEAR_LIMIT_PERCENT = Decimal("80")
OVER_LIMIT_PERCENT = Decimal("100")
LOW_SAVINGS_RATE = Decimal("0.1")
IRREGULAR_INCOME_RATIO = Decimal("1.5")

MAX_CATEGORY_ITEMS = 5
MAX_BUDGET_ITEMS = 8
MAX_RECURRING_RULES = 5
MAX_MERCHANTS = 5
MAX_OVERSPENDING_NAMES = 8
MIN_MERCHANT_OCCURRENCES = 2

UNCATEGORIZED_LABEL = "Uncategorized"
TRANSFER_LABEL = "Transfer"
RECURRING_EXPENSE_LABEL = "Recurring expense"


@dataclass(frozen=True)
class SnapshotInputs:
    month: str
    today: date
    preferences: PreferencesRecord | None
    accounts: list[AccountRecord]
    transactions: list[TransactionRecord]
    budgets: list[BudgetRecord]
    recurring_rules: list[RecurringRuleRecord]
    total_balance: Decimal
    category_names: Mapping[str, str] = field(default_factory=dict)


async def load_snapshot_inputs(
    store: FinanceStore, user_id: str, month: str, today: date
) -> SnapshotInputs:
    window = month_window(month)
    trend_start = parse_month_value(trend_months(window.month)[0])

    preferences, accounts, transactions, budgets, recurring_rules, total_balance = (
        await asyncio.gather(
            store.get_preferences(user_id),
            store.list_accounts(user_id),
            store.list_transactions(user_id, trend_start, window.end_exclusive),
            store.list_budgets(user_id, window.month),
            store.list_recurring_rules(user_id),
            store.total_balance(user_id),
        )
    )

    category_ids = _referenced_category_ids(transactions, budgets, recurring_rules)
    category_names = (
        await store.get_category_names(user_id, category_ids) if category_ids else {}
    )

    return SnapshotInputs(
        month=window.month,
        today=today,
        preferences=preferences,
        accounts=list(accounts),
        transactions=list(transactions),
        budgets=list(budgets),
        recurring_rules=list(recurring_rules),
        total_balance=total_balance,
        category_names=dict(category_names),
    )


async def build_snapshot(
    store: FinanceStore, user_id: str, month: str, today: date
) -> tuple[FinancialSnapshot, UserPreferences]:
    inputs = await load_snapshot_inputs(store, user_id, month, today)
    return aggregate_snapshot(inputs), resolve_preferences(inputs.preferences)


def resolve_preferences(record: PreferencesRecord | None) -> UserPreferences:
    if record is None:
        return UserPreferences()
    risk_profile = (record.risk_profile or "medium").strip().lower()
    if risk_profile not in {"low", "medium", "high"}:
        risk_profile = "medium"
    rate = min(80, max(0, int(record.savings_target_rate)))
    return UserPreferences(savings_target_rate=rate, risk_profile=risk_profile)


def aggregate_snapshot(inputs: SnapshotInputs) -> FinancialSnapshot:
    window = month_window(inputs.month)
    months = trend_months(window.month)
    anchor = resolve_anchor_date(window, inputs.today)
    last30_from, last30_to = trailing_window(anchor)

    category_names = {
        key: redact_free_text(name) or UNCATEGORIZED_LABEL
        for key, name in inputs.category_names.items()
    }
    account_names = {account.id: redact_free_text(account.name) for account in inputs.accounts}

    trend_totals = {month: {"income": ZERO, "expense": ZERO} for month in months}
    current_totals = {"income": ZERO, "expense": ZERO}
    last30_totals = {"income": ZERO, "expense": ZERO}
    expense_by_category: dict[str, Decimal] = {}
    merchant_stats: dict[str, dict] = {}

    for txn in inputs.transactions:
        amount = _coerce_amount(txn.amount)
        bucket = "income" if _is_income(txn.type) else "expense"
        occurred_on = txn.occurred_at.date()

        trend_entry = trend_totals.get(format_month(occurred_on))
        if trend_entry is not None:
            trend_entry[bucket] += amount

        if window.contains(occurred_on):
            current_totals[bucket] += amount
            if bucket == "expense" and txn.category_id:
                expense_by_category[txn.category_id] = (
                    expense_by_category.get(txn.category_id, ZERO) + amount
                )

        if last30_from <= occurred_on <= last30_to:
            last30_totals[bucket] += amount

        if _is_expense(txn.type) and txn.description:
            label = redact_free_text(txn.description)
            if label:
                key = normalize_for_match(label) or label
                stats = merchant_stats.setdefault(key, {"total": ZERO, "count": 0})
                stats["label"] = label
                stats["total"] += amount
                stats["count"] += 1

    current_income = round_money(current_totals["income"])
    current_expense = round_money(current_totals["expense"])
    current_net = round_money(current_income - current_expense)
    last30_income = round_money(last30_totals["income"])
    last30_expense = round_money(last30_totals["expense"])
    savings_rate = (
        round_money(current_net / current_income) if current_income > ZERO else ZERO
    )

    category_breakdown = _category_breakdown(expense_by_category, current_expense, category_names)
    budget_items = _budget_items(inputs.budgets, expense_by_category, category_names)
    rule_items = _recurring_rule_items(inputs.recurring_rules, account_names, category_names)
    merchants = _merchant_clusters(merchant_stats.values())

    cashflow_trend = []
    for month in months:
        income_total = round_money(trend_totals[month]["income"])
        expense_total = round_money(trend_totals[month]["expense"])
        cashflow_trend.append(
            CashflowPoint(
                month=month,
                income_total=income_total,
                expense_total=expense_total,
                net_total=round_money(income_total - expense_total),
            )
        )

    flags = Flags(
        overspending_category_names=tuple(
            item.category_name for item in budget_items if item.status == "over_limit"
        )[:MAX_OVERSPENDING_NAMES],
        negative_cashflow=current_net < ZERO,
        low_savings_rate=current_income > ZERO and savings_rate < LOW_SAVINGS_RATE,
        irregular_income=is_irregular_income(point.income_total for point in cashflow_trend),
    )

    return FinancialSnapshot(
        month=window.month,
        currency=_resolve_currency(inputs.preferences, inputs.accounts),
        balances=BalancesSnapshot(
            account_count=len(inputs.accounts),
            total_balance=round_money(inputs.total_balance),
        ),
        overview=Overview(
            last_30_days_income=last30_income,
            last_30_days_expense=last30_expense,
            last_30_days_net=round_money(last30_income - last30_expense),
            current_month_income=current_income,
            current_month_expense=current_expense,
            current_month_net=current_net,
            savings_rate=savings_rate,
        ),
        category_breakdown=tuple(category_breakdown),
        cashflow_trend=tuple(cashflow_trend),
        budget_adherence=BudgetAdherence(
            tracked_count=len(budget_items),
            on_track_count=sum(1 for item in budget_items if item.status == "on_track"),
            near_limit_count=sum(1 for item in budget_items if item.status == "near_limit"),
            over_limit_count=sum(1 for item in budget_items if item.status == "over_limit"),
            items=tuple(budget_items),
        ),
        recurring_outflows=RecurringOutflows(rules=tuple(rule_items), merchants=tuple(merchants)),
        flags=flags,
    )


def classify_budget_status(percent_used: Decimal | float | int | str) -> str:
    percent = _coerce_amount(percent_used)
    if percent >= OVER_LIMIT_PERCENT:
        return "over_limit"
    if percent >= NEAR_LIMIT_PERCENT:
        return "near_limit"
    return "on_track"


def is_irregular_income(incomes: Iterable[Decimal]) -> bool:
    values = [_coerce_amount(value) for value in incomes]
    positive = [value for value in values if value > ZERO]
    if len(positive) >= 2:
        return max(positive) / max(Decimal("1"), min(positive)) >= IRREGULAR_INCOME_RATIO
    return len(positive) == 1 and any(value == ZERO for value in values)


def round_money(value: Decimal | float | int | str) -> Decimal:
    return _coerce_amount(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _category_breakdown(
    expense_by_category: Mapping[str, Decimal],
    total_expense: Decimal,
    category_names: Mapping[str, str],
) -> list[CategoryBreakdownItem]:
    items = []
    for category_id, total in expense_by_category.items():
        share = (total / total_expense) * HUNDRED if total_expense > ZERO else ZERO
        items.append(
            CategoryBreakdownItem(
                category_id=category_id,
                name=category_names.get(category_id, UNCATEGORIZED_LABEL),
                total=round_money(total),
                share_percent=round_money(share),
            )
        )
    items.sort(key=lambda item: item.total, reverse=True)
    return items[:MAX_CATEGORY_ITEMS]


def _budget_items(
    budgets: Iterable[BudgetRecord],
    expense_by_category: Mapping[str, Decimal],
    category_names: Mapping[str, str],
) -> list[BudgetItem]:
    items = []
    for budget in budgets:
        spent = round_money(expense_by_category.get(budget.category_id, ZERO))
        limit = round_money(max(ZERO, _coerce_amount(budget.limit_amount)))
        percent_used = round_money((spent / limit) * HUNDRED) if limit > ZERO else ZERO
        items.append(
            BudgetItem(
                budget_id=budget.id,
                category_id=budget.category_id,
                category_name=category_names.get(budget.category_id, UNCATEGORIZED_LABEL),
                limit_amount=limit,
                spent_amount=spent,
                remaining_amount=round_money(limit - spent),
                percent_used=percent_used,
                status=classify_budget_status(percent_used),
            )
        )
    items.sort(key=lambda item: item.percent_used, reverse=True)
    return items[:MAX_BUDGET_ITEMS]


def _recurring_rule_items(
    rules: Iterable[RecurringRuleRecord],
    account_names: Mapping[str, str],
    category_names: Mapping[str, str],
) -> list[RecurringRuleItem]:
    items = []
    for rule in rules:
        if rule.cadence not in RECURRING_CADENCES:
            continue
        if rule.kind == "transfer":
            endpoints = [
                account_names.get(account_id) if account_id else None
                for account_id in (rule.from_account_id, rule.to_account_id)
            ]
            label = " -> ".join(name for name in endpoints if name) or TRANSFER_LABEL
        else:
            category_label = category_names.get(rule.category_id) if rule.category_id else None
            label = (
                redact_free_text(rule.description)
                or category_label
                or RECURRING_EXPENSE_LABEL
            )
        items.append(
            RecurringRuleItem(
                rule_id=rule.id,
                label=label[:120],
                cadence=rule.cadence,
                amount=round_money(rule.amount),
                next_run_at=rule.next_run_at,
            )
        )
    items.sort(key=lambda item: item.amount, reverse=True)
    return items[:MAX_RECURRING_RULES]


def _merchant_clusters(stats: Iterable[dict]) -> list[MerchantCluster]:
    clusters = [
        MerchantCluster(label=entry["label"], total=round_money(entry["total"]), count=entry["count"])
        for entry in stats
        if entry["count"] >= MIN_MERCHANT_OCCURRENCES
    ]
    clusters.sort(key=lambda item: item.total, reverse=True)
    return clusters[:MAX_MERCHANTS]


def _referenced_category_ids(
    transactions: Iterable[TransactionRecord],
    budgets: Iterable[BudgetRecord],
    rules: Iterable[RecurringRuleRecord],
) -> set[str]:
    ids = {budget.category_id for budget in budgets}
    ids.update(rule.category_id for rule in rules if rule.category_id)
    ids.update(txn.category_id for txn in transactions if txn.category_id)
    return ids


def _resolve_currency(
    preferences: PreferencesRecord | None, accounts: list[AccountRecord]
) -> str | None:
    if preferences is not None and preferences.base_currency:
        return preferences.base_currency.strip().upper()
    if accounts and accounts[0].currency:
        return accounts[0].currency.strip().upper()
    return None


def _is_income(txn_type: str) -> bool:
    return txn_type.strip().lower() == "income"


def _is_expense(txn_type: str) -> bool:
    return txn_type.strip().lower() == "expense"


def _coerce_amount(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
