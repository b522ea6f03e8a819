from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Language = Literal["tr", "en", "ru"]
RiskLevel = Literal["low", "medium", "high"]
BudgetStatus = Literal["on_track", "near_limit", "over_limit"]
Cadence = Literal["weekly", "monthly"]
Mode = Literal["ai", "fallback"]
EmergencyFundStatus = Literal["not_started", "building", "ready"]

SUPPORTED_LANGUAGES: tuple[str, ...] = ("tr", "en", "ru")
RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high")

Label = Annotated[str, Field(min_length=1, max_length=120)]
Bullet = Annotated[str, Field(min_length=1, max_length=320)]
Money = Annotated[Decimal, Field(ge=0)]


class FrozenModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class UserPreferences(FrozenModel):
    savings_target_rate: int = Field(default=20, ge=0, le=80)
    risk_profile: RiskLevel = "medium"


class BalancesSnapshot(FrozenModel):
    account_count: int = Field(ge=0)
    total_balance: Decimal


class Overview(FrozenModel):
    last_30_days_income: Money = Field(alias="last30DaysIncome")
    last_30_days_expense: Money = Field(alias="last30DaysExpense")
    last_30_days_net: Decimal = Field(alias="last30DaysNet")
    current_month_income: Money
    current_month_expense: Money
    current_month_net: Decimal
    savings_rate: Decimal


class CategoryBreakdownItem(FrozenModel):
    category_id: str = Field(min_length=1)
    name: Label
    total: Money
    share_percent: Decimal = Field(ge=0)


class CashflowPoint(FrozenModel):
    month: str = Field(pattern=r"^\d{4}-\d{2}$")
    income_total: Money
    expense_total: Money
    net_total: Decimal


class BudgetItem(FrozenModel):
    budget_id: str = Field(min_length=1)
    category_id: str = Field(min_length=1)
    category_name: Label
    limit_amount: Money
    spent_amount: Money
    remaining_amount: Decimal
    percent_used: Decimal = Field(ge=0)
    status: BudgetStatus


class BudgetAdherence(FrozenModel):
    tracked_count: int = Field(ge=0)
    on_track_count: int = Field(ge=0)
    near_limit_count: int = Field(ge=0)
    over_limit_count: int = Field(ge=0)
    items: tuple[BudgetItem, ...] = Field(max_length=8)


class RecurringRuleItem(FrozenModel):
    rule_id: str = Field(min_length=1)
    label: Label
    cadence: Cadence
    amount: Money
    next_run_at: datetime | None = None


class MerchantCluster(FrozenModel):
    label: Label
    total: Money
    count: int = Field(ge=1)


class RecurringOutflows(FrozenModel):
    rules: tuple[RecurringRuleItem, ...] = Field(max_length=5)
    merchants: tuple[MerchantCluster, ...] = Field(max_length=5)


class Flags(FrozenModel):
    overspending_category_names: tuple[Label, ...] = Field(max_length=8)
    negative_cashflow: bool
    low_savings_rate: bool
    irregular_income: bool


class FinancialSnapshot(FrozenModel):
    month: str = Field(pattern=r"^\d{4}-\d{2}$")
    currency: str | None = None
    balances: BalancesSnapshot
    overview: Overview
    category_breakdown: tuple[CategoryBreakdownItem, ...] = Field(max_length=5)
    cashflow_trend: tuple[CashflowPoint, ...] = Field(min_length=3, max_length=3)
    budget_adherence: BudgetAdherence
    recurring_outflows: RecurringOutflows
    flags: Flags


# Advice shape shared by the provider path and the fallback path.


class SavingsAdvice(FrozenModel):
    target_rate: float = Field(ge=0, le=1)
    monthly_target_amount: Money
    next_7_days_actions: tuple[Bullet, ...] = Field(
        alias="next7DaysActions", min_length=1, max_length=8
    )
    auto_transfer_suggestion: Bullet


class RiskProfileAdvice(FrozenModel):
    level: RiskLevel
    title: str = Field(min_length=1, max_length=180)
    rationale: str = Field(min_length=1, max_length=400)
    options: tuple[Annotated[str, Field(min_length=1, max_length=260)], ...] = Field(
        min_length=1, max_length=6
    )


class InvestmentAdvice(FrozenModel):
    profiles: tuple[RiskProfileAdvice, ...] = Field(min_length=1, max_length=3)
    guidance: tuple[Bullet, ...] = Field(min_length=1, max_length=8)


class CutCandidate(FrozenModel):
    label: Label
    suggested_reduction_percent: float = Field(ge=0, le=100)
    alternative_action: Bullet


class ExpenseOptimization(FrozenModel):
    cut_candidates: tuple[CutCandidate, ...] = Field(min_length=1, max_length=6)
    quick_wins: tuple[Bullet, ...] = Field(min_length=1, max_length=8)


class AdviceOutput(FrozenModel):
    summary: str = Field(min_length=1, max_length=1500)
    savings: SavingsAdvice
    investment: InvestmentAdvice
    expense_optimization: ExpenseOptimization
    tips: tuple[Bullet, ...] = Field(min_length=1, max_length=10)


# Advice as delivered to callers, enriched with snapshot-derived amounts.


class AssessedInvestmentAdvice(InvestmentAdvice):
    emergency_fund_target: Money
    emergency_fund_current: Money
    emergency_fund_status: EmergencyFundStatus


class AssessedCutCandidate(CutCandidate):
    current_amount: Money


class AssessedExpenseOptimization(FrozenModel):
    cut_candidates: tuple[AssessedCutCandidate, ...] = Field(min_length=1, max_length=6)
    quick_wins: tuple[Bullet, ...] = Field(min_length=1, max_length=8)


class AdvisorAdvice(FrozenModel):
    summary: str = Field(min_length=1, max_length=1500)
    savings: SavingsAdvice
    investment: AssessedInvestmentAdvice
    expense_optimization: AssessedExpenseOptimization
    tips: tuple[Bullet, ...] = Field(min_length=1, max_length=10)


class AdvisorInsight(FrozenModel):
    month: str = Field(pattern=r"^\d{4}-\d{2}$")
    language: Language
    generated_at: datetime
    mode: Mode
    mode_reason: str | None = Field(default=None, max_length=80)
    provider: str | None = None
    provider_status: int | None = Field(default=None, ge=100, le=599)
    preferences: UserPreferences
    snapshot: FinancialSnapshot
    advice: AdvisorAdvice
