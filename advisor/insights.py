from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from advisor.cache import InsightCache, cache_key
from advisor.config import AdvisorSettings
from advisor.diagnostics import DiagnosticEvent, DiagnosticSink, LoggingSink, combine_sinks
from advisor.errors import AdvisorInvalidRequestError, AdvisorRateLimitError, AdvisorTimeoutError
from advisor.fallback import build_fallback_advice
from advisor.periods import month_window
from advisor.prompt import SYSTEM_PROMPT, render_prompt
from advisor.provider import ProviderClient, ProviderError, build_provider_client
from advisor.redaction import labels_match, preview_text
from advisor.repair import AdviceRepairError, repair_provider_output
from advisor.schemas import (
    SUPPORTED_LANGUAGES,
    AdviceOutput,
    AdvisorAdvice,
    AdvisorInsight,
    AssessedCutCandidate,
    AssessedExpenseOptimization,
    AssessedInvestmentAdvice,
    FinancialSnapshot,
    SavingsAdvice,
    UserPreferences,
)
from advisor.snapshot import build_snapshot, round_money
from advisor.store import FinanceStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
EMERGENCY_FUND_MONTHS = 3
DEFAULT_RETRY_AFTER_SEC = 60

FALLBACK_REASON_BY_PROVIDER_REASON = {
    "timeout": "provider_timeout",
    "http_error": "provider_http_error",
    "response_parse_error": "provider_parse_error",
    "response_shape_error": "provider_parse_error",
}


@dataclass(frozen=True)
class _Outcome:
    advice: AdviceOutput
    mode_reason: Optional[str] = None
    provider: Optional[str] = None
    provider_status: Optional[int] = None


class AdvisorInsightService:
    """Single entry point that turns a user's month into an advisor insight.

    Results are cached per ``user|month|language``. Concurrent requests for the
    same key share one in-flight generation unless ``regenerate`` is set.
    """

    def __init__(
        self,
        store: FinanceStore,
        settings: AdvisorSettings | None = None,
        provider_client: ProviderClient | None = None,
        cache: InsightCache | None = None,
        sink: DiagnosticSink | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or AdvisorSettings()
        self.provider_client = (
            provider_client if provider_client is not None else build_provider_client(self.settings)
        )
        self.cache = cache if cache is not None else InsightCache()
        self.sink = sink if sink is not None else LoggingSink()
        self.now = now or (lambda: datetime.now(timezone.utc))
        self._in_flight: dict[str, asyncio.Task] = {}

    async def generate_advisor_insight(
        self,
        user_id: str,
        month: str,
        language: str,
        regenerate: bool = False,
        on_diagnostic: Callable[[DiagnosticEvent], None] | None = None,
    ) -> AdvisorInsight:
        if language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        normalized_month = month_window(month).month
        key = cache_key(str(user_id), normalized_month, language)
        sink = combine_sinks(self.sink, on_diagnostic)

        self.cache.sweep()

        if regenerate:
            return await self._generate(key, str(user_id), normalized_month, language, True, sink)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Advisor insight cache hit for %s", key)
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._generate(key, str(user_id), normalized_month, language, False, sink)
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.debug("Joining in-flight advisor insight for %s", key)
        return await asyncio.shield(task)

    def clear_cache_for_tests(self) -> None:
        self.cache.clear()
        self._in_flight.clear()

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _generate(
        self,
        key: str,
        user_id: str,
        month: str,
        language: str,
        regenerate: bool,
        sink: DiagnosticSink,
    ) -> AdvisorInsight:
        snapshot, preferences = await build_snapshot(self.store, user_id, month, self.now().date())
        outcome = await self._advise(language, snapshot, preferences, regenerate, sink)

        insight = AdvisorInsight(
            month=month,
            language=language,
            generated_at=self.now(),
            mode="fallback" if outcome.mode_reason else "ai",
            mode_reason=outcome.mode_reason,
            provider=outcome.provider,
            provider_status=outcome.provider_status,
            preferences=preferences,
            snapshot=snapshot,
            advice=assess_advice(outcome.advice, snapshot),
        )
        self.cache.set(key, insight)
        logger.info("Generated advisor insight for %s in %s mode", key, insight.mode)
        return insight

    async def _advise(
        self,
        language: str,
        snapshot: FinancialSnapshot,
        preferences: UserPreferences,
        regenerate: bool,
        sink: DiagnosticSink,
    ) -> _Outcome:
        if self.provider_client is None:
            return self._fallback(language, snapshot, preferences, sink, "missing_api_key")

        provider_name = self.provider_client.provider_name
        prompt = render_prompt(language, snapshot, preferences)
        try:
            result = await self.provider_client.generate_text(
                SYSTEM_PROMPT,
                prompt,
                max_tokens=self.settings.max_tokens,
                sink=sink,
            )
        except ProviderError as error:
            self._raise_hard_failure(error, provider_name, regenerate)
            provider = provider_name if error.status is not None else None
            return self._fallback(
                language,
                snapshot,
                preferences,
                sink,
                FALLBACK_REASON_BY_PROVIDER_REASON.get(error.reason, "provider_unknown_error"),
                provider=provider,
                provider_status=error.status,
                trace_id=error.trace_id,
                retry_after_sec=error.retry_after_sec,
                detail=preview_text(str(error)),
            )

        try:
            advice = repair_provider_output(result.text)
        except AdviceRepairError as error:
            return self._fallback(
                language,
                snapshot,
                preferences,
                sink,
                error.reason,
                provider=result.provider,
                provider_status=result.status,
                trace_id=result.trace_id,
                detail=error.detail,
            )
        return _Outcome(advice, provider=result.provider, provider_status=result.status)

    def _raise_hard_failure(self, error: ProviderError, provider: str, regenerate: bool) -> None:
        if error.reason == "rate_limited":
            logger.error("Advisor provider %s rate limited the request", provider)
            raise AdvisorRateLimitError(
                "Advisor provider rate limited this request",
                details={
                    "provider": provider,
                    "providerStatus": error.status or 429,
                    "retryAfterSec": (
                        error.retry_after_sec
                        if error.retry_after_sec is not None
                        else DEFAULT_RETRY_AFTER_SEC
                    ),
                    "traceId": error.trace_id,
                    "providerErrorCode": error.provider_code,
                },
            ) from error
        if error.reason == "request_invalid":
            logger.error("Advisor provider %s rejected the request: %s", provider, error)
            raise AdvisorInvalidRequestError(
                "Advisor provider request is invalid",
                details={
                    "provider": provider,
                    "providerStatus": error.status or 400,
                    "traceId": error.trace_id,
                    "providerErrorCode": error.provider_code,
                },
            ) from error
        if error.reason == "timeout" and regenerate:
            logger.error("Advisor provider %s timed out during regeneration", provider)
            raise AdvisorTimeoutError(
                "Advisor provider timed out",
                details={
                    "provider": provider,
                    "providerStatus": error.status,
                    "traceId": error.trace_id,
                },
            ) from error

    def _fallback(
        self,
        language: str,
        snapshot: FinancialSnapshot,
        preferences: UserPreferences,
        sink: DiagnosticSink,
        reason: str,
        *,
        provider: Optional[str] = None,
        provider_status: Optional[int] = None,
        trace_id: Optional[str] = None,
        retry_after_sec: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> _Outcome:
        logger.warning("Advisor falling back to local advice: %s", reason)
        sink.emit(
            DiagnosticEvent(
                stage="fallback",
                reason=reason,
                status=provider_status,
                provider=provider,
                trace_id=trace_id,
                retry_after_sec=retry_after_sec,
                detail=detail,
            )
        )
        return _Outcome(
            build_fallback_advice(language, snapshot, preferences),
            mode_reason=reason,
            provider=provider,
            provider_status=provider_status,
        )


def assess_advice(advice: AdviceOutput, snapshot: FinancialSnapshot) -> AdvisorAdvice:
    """Attach snapshot-derived amounts and clamp provider numbers into range."""
    expense = snapshot.overview.current_month_expense
    fund_target = round_money(max(ZERO, expense * EMERGENCY_FUND_MONTHS))
    fund_current = round_money(max(ZERO, snapshot.balances.total_balance))
    if fund_target <= ZERO or fund_current >= fund_target:
        fund_status = "ready"
    elif fund_current > ZERO:
        fund_status = "building"
    else:
        fund_status = "not_started"

    savings = advice.savings
    return AdvisorAdvice(
        summary=advice.summary,
        savings=SavingsAdvice(
            target_rate=min(1.0, max(0.0, savings.target_rate)),
            monthly_target_amount=round_money(max(ZERO, savings.monthly_target_amount)),
            next_7_days_actions=savings.next_7_days_actions,
            auto_transfer_suggestion=savings.auto_transfer_suggestion,
        ),
        investment=AssessedInvestmentAdvice(
            profiles=advice.investment.profiles,
            guidance=advice.investment.guidance,
            emergency_fund_target=fund_target,
            emergency_fund_current=fund_current,
            emergency_fund_status=fund_status,
        ),
        expense_optimization=AssessedExpenseOptimization(
            cut_candidates=tuple(
                AssessedCutCandidate(
                    label=candidate.label,
                    current_amount=resolve_current_amount(candidate.label, snapshot),
                    suggested_reduction_percent=min(
                        100.0, max(0.0, round(candidate.suggested_reduction_percent, 2))
                    ),
                    alternative_action=candidate.alternative_action,
                )
                for candidate in advice.expense_optimization.cut_candidates
            ),
            quick_wins=advice.expense_optimization.quick_wins,
        ),
        tips=advice.tips,
    )


def resolve_current_amount(label: str, snapshot: FinancialSnapshot) -> Decimal:
    for item in snapshot.category_breakdown:
        if labels_match(label, item.name):
            return item.total
    for merchant in snapshot.recurring_outflows.merchants:
        if labels_match(label, merchant.label):
            return merchant.total
    return round_money(ZERO)
