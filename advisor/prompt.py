from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from advisor.schemas import FinancialSnapshot, UserPreferences

LANGUAGE_NAMES = {
    "tr": "Turkish",
    "en": "English",
    "ru": "Russian",
}

SYSTEM_PROMPT = (
    "You are Mintly AI. Return a single valid JSON object only (RFC 8259). "
    "Use double quotes for all keys/strings. No trailing commas. "
    "No markdown fences. No extra text."
)

ADVICE_SHAPE_EXAMPLE = {
    "summary": "string",
    "savings": {
        "targetRate": 0.2,
        "monthlyTargetAmount": 0,
        "next7DaysActions": ["string"],
        "autoTransferSuggestion": "string",
    },
    "investment": {
        "profiles": [
            {
                "level": "low",
                "title": "string",
                "rationale": "string",
                "options": ["string"],
            }
        ],
        "guidance": ["string"],
    },
    "expenseOptimization": {
        "cutCandidates": [
            {
                "label": "string",
                "suggestedReductionPercent": 15,
                "alternativeAction": "string",
            }
        ],
        "quickWins": ["string"],
    },
    "tips": ["string"],
}

RULES = (
    "Rules:",
    "- summary: 2-4 sentences",
    "- savings.next7DaysActions: 3-5 actionable bullets",
    "- investment.profiles: include low, medium, and high risk profiles if possible",
    "- expenseOptimization.cutCandidates: choose realistic top 3 categories or merchants",
    "- reflect preferred savings target rate and preferred risk profile in recommendations",
    "- keep concise and practical",
    "- IMPORTANT: every list field must be a JSON array (never a single string).",
    "- Do not wrap the JSON in markdown fences.",
)


def build_prompt_payload(
    language: str, snapshot: FinancialSnapshot, preferences: UserPreferences
) -> dict[str, Any]:
    """Project the snapshot onto the fields the provider is allowed to see.

    Identifiers (category, budget, rule) and raw descriptions are left out;
    labels were already redacted by the aggregator.
    """
    overview = snapshot.overview
    adherence = snapshot.budget_adherence
    return {
        "month": snapshot.month,
        "language": language,
        "currency": snapshot.currency,
        "preferences": {
            "savingsTargetRate": preferences.savings_target_rate,
            "riskProfile": preferences.risk_profile,
        },
        "balancesSnapshot": {
            "accountCount": snapshot.balances.account_count,
            "totalBalance": _number(snapshot.balances.total_balance),
        },
        "spendOverview": {
            "last30DaysIncome": _number(overview.last_30_days_income),
            "last30DaysExpense": _number(overview.last_30_days_expense),
            "last30DaysNet": _number(overview.last_30_days_net),
            "currentMonthIncome": _number(overview.current_month_income),
            "currentMonthExpense": _number(overview.current_month_expense),
            "currentMonthNet": _number(overview.current_month_net),
            "savingsRate": _number(overview.savings_rate),
        },
        "categoryBreakdown": [
            {
                "name": item.name,
                "total": _number(item.total),
                "sharePercent": _number(item.share_percent),
            }
            for item in snapshot.category_breakdown
        ],
        "cashflowTrend": [
            {
                "month": point.month,
                "incomeTotal": _number(point.income_total),
                "expenseTotal": _number(point.expense_total),
                "netTotal": _number(point.net_total),
            }
            for point in snapshot.cashflow_trend
        ],
        "budgetAdherence": {
            "trackedCount": adherence.tracked_count,
            "onTrackCount": adherence.on_track_count,
            "nearLimitCount": adherence.near_limit_count,
            "overLimitCount": adherence.over_limit_count,
            "items": [
                {
                    "categoryName": item.category_name,
                    "limitAmount": _number(item.limit_amount),
                    "spentAmount": _number(item.spent_amount),
                    "remainingAmount": _number(item.remaining_amount),
                    "percentUsed": _number(item.percent_used),
                    "status": item.status,
                }
                for item in adherence.items
            ],
        },
        "recurringOutflows": {
            "rules": [
                {"label": rule.label, "cadence": rule.cadence, "amount": _number(rule.amount)}
                for rule in snapshot.recurring_outflows.rules
            ],
            "merchants": [
                {"label": merchant.label, "total": _number(merchant.total), "count": merchant.count}
                for merchant in snapshot.recurring_outflows.merchants
            ],
        },
        "flags": {
            "overspendingCategoryNames": list(snapshot.flags.overspending_category_names),
            "negativeCashflow": snapshot.flags.negative_cashflow,
            "lowSavingsRate": snapshot.flags.low_savings_rate,
            "irregularIncome": snapshot.flags.irregular_income,
        },
    }


def render_prompt(
    language: str, snapshot: FinancialSnapshot, preferences: UserPreferences
) -> str:
    if language not in LANGUAGE_NAMES:
        raise ValueError(f"Unsupported language: {language}")
    payload = build_prompt_payload(language, snapshot, preferences)
    lines = [
        "You are Mintly AI, a conservative personal finance advisor.",
        f"Write all narrative text in {LANGUAGE_NAMES[language]}.",
        "Use only the provided aggregate and anonymized data.",
        "Do not include private identifiers, account numbers, emails, transaction IDs, or user IDs.",
        "Return strict JSON only with this exact shape:",
        _dumps(ADVICE_SHAPE_EXAMPLE),
        *RULES,
        f"Input JSON: {_dumps(payload)}",
    ]
    return "\n".join(lines)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _number(value: Decimal) -> int | float:
    if value == value.to_integral_value():
        return int(value)
    return float(value)
