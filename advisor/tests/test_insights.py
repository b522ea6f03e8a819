import asyncio
import copy
import json
import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx

from advisor.cache import InsightCache
from advisor.diagnostics import NullSink
from advisor.errors import AdvisorInvalidRequestError, AdvisorRateLimitError, AdvisorTimeoutError
from advisor.insights import AdvisorInsightService, assess_advice
from advisor.provider import CloudflareWorkersAI, ProviderClient
from advisor.repair import validate_advice
from advisor.snapshot import build_snapshot
from advisor.tests.fakes import VALID_ADVICE, ScriptedTransport, march_2024_store

NOW = datetime(2024, 4, 10, 12, 0, tzinfo=timezone.utc)


def cloudflare_response(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"success": True, "result": {"response": text}})


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class AdvisorInsightServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = march_2024_store()
        self.events = []

    async def _no_sleep(self, delay: float) -> None:
        return None

    def _service(self, *steps, timeout_seconds: float = 20, cache=None) -> AdvisorInsightService:
        self.script = ScriptedTransport(*steps)
        client = ProviderClient(
            CloudflareWorkersAI(api_token="token-1", account_id="acct-1", model="@cf/meta/llama-3.1-8b-instruct"),
            timeout_seconds=timeout_seconds,
            transport=self.script.transport(),
            sleep=self._no_sleep,
            rng=lambda: 0.0,
        )
        return AdvisorInsightService(
            self.store,
            provider_client=client,
            cache=cache,
            sink=NullSink(),
            now=lambda: NOW,
        )

    async def _generate(self, service: AdvisorInsightService, **options):
        options.setdefault("language", "en")
        return await service.generate_advisor_insight(
            "7", "2024-03", on_diagnostic=self.events.append, **options
        )

    def _fallback_events(self):
        return [event for event in self.events if event.stage == "fallback"]

    async def test_provider_advice_is_assessed_against_snapshot(self) -> None:
        service = self._service(cloudflare_response(json.dumps(VALID_ADVICE)))

        insight = await self._generate(service)

        self.assertEqual(insight.mode, "ai")
        self.assertIsNone(insight.mode_reason)
        self.assertEqual(insight.provider, "cloudflare")
        self.assertEqual(insight.provider_status, 200)
        self.assertEqual(insight.month, "2024-03")
        self.assertEqual(insight.generated_at, NOW)
        self.assertEqual(insight.preferences.risk_profile, "high")
        candidate = insight.advice.expense_optimization.cut_candidates[0]
        self.assertEqual(candidate.label, "Groceries")
        self.assertEqual(candidate.current_amount, Decimal("250.00"))
        investment = insight.advice.investment
        self.assertEqual(investment.emergency_fund_target, Decimal("4590.00"))
        self.assertEqual(investment.emergency_fund_current, Decimal("5230.50"))
        self.assertEqual(investment.emergency_fund_status, "ready")
        self.assertEqual(self._fallback_events(), [])

    async def test_repeated_requests_are_served_from_cache(self) -> None:
        service = self._service(cloudflare_response(json.dumps(VALID_ADVICE)))

        first = await self._generate(service)
        second = await self._generate(service)

        self.assertIs(first, second)
        self.assertEqual(len(self.script.requests), 1)

    async def test_language_is_part_of_the_cache_key(self) -> None:
        service = self._service(cloudflare_response(json.dumps(VALID_ADVICE)))

        await self._generate(service, language="en")
        await self._generate(service, language="tr")

        self.assertEqual(len(self.script.requests), 2)

    async def test_expired_entry_is_regenerated(self) -> None:
        clock = FakeClock()
        service = self._service(
            cloudflare_response(json.dumps(VALID_ADVICE)),
            cache=InsightCache(ttl_seconds=60, clock=clock),
        )

        await self._generate(service)
        clock.now = 61
        await self._generate(service)

        self.assertEqual(len(self.script.requests), 2)

    async def test_regenerate_skips_cache_and_refreshes_it(self) -> None:
        service = self._service(cloudflare_response(json.dumps(VALID_ADVICE)))

        first = await self._generate(service)
        regenerated = await self._generate(service, regenerate=True)
        cached = await self._generate(service)

        self.assertIsNot(first, regenerated)
        self.assertIs(cached, regenerated)
        self.assertEqual(len(self.script.requests), 2)

    async def test_concurrent_requests_share_one_generation(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            return cloudflare_response(json.dumps(VALID_ADVICE))

        service = self._service(slow)

        first, second = await asyncio.gather(self._generate(service), self._generate(service))

        self.assertIs(first, second)
        self.assertEqual(len(self.script.requests), 1)
        self.assertEqual(service._in_flight, {})

    async def test_missing_provider_configuration_falls_back(self) -> None:
        service = AdvisorInsightService(self.store, sink=NullSink(), now=lambda: NOW)

        insight = await self._generate(service)

        self.assertEqual(insight.mode, "fallback")
        self.assertEqual(insight.mode_reason, "missing_api_key")
        self.assertIsNone(insight.provider)
        self.assertIsNone(insight.provider_status)
        self.assertEqual(len(self._fallback_events()), 1)

    async def test_network_failure_falls_back_without_provider(self) -> None:
        service = self._service(httpx.ConnectError("connection refused"))

        insight = await self._generate(service)

        self.assertEqual(insight.mode, "fallback")
        self.assertEqual(insight.mode_reason, "provider_unknown_error")
        self.assertIsNone(insight.provider)
        self.assertEqual(len(self.script.requests), 3)

    async def test_persistent_server_error_falls_back_with_status(self) -> None:
        service = self._service(httpx.Response(500, json={"errors": [{"message": "boom"}]}))

        insight = await self._generate(service)

        self.assertEqual(insight.mode_reason, "provider_http_error")
        self.assertEqual(insight.provider, "cloudflare")
        self.assertEqual(insight.provider_status, 500)
        events = self._fallback_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].status, 500)

    async def test_rate_limit_is_raised_to_the_caller(self) -> None:
        service = self._service(httpx.Response(429, headers={"retry-after": "7", "cf-ray": "ray-1"}))

        with self.assertRaises(AdvisorRateLimitError) as ctx:
            await self._generate(service)

        self.assertEqual(ctx.exception.retry_after_sec, 7)
        self.assertEqual(ctx.exception.details["provider"], "cloudflare")
        self.assertEqual(ctx.exception.details["providerStatus"], 429)
        self.assertEqual(ctx.exception.details["traceId"], "ray-1")
        self.assertEqual(len(service.cache), 0)
        self.assertEqual(self._fallback_events(), [])

    async def test_rate_limit_without_header_uses_default_delay(self) -> None:
        service = self._service(httpx.Response(429))

        with self.assertRaises(AdvisorRateLimitError) as ctx:
            await self._generate(service)

        self.assertEqual(ctx.exception.details["retryAfterSec"], 60)

    async def test_rejected_request_is_raised_to_the_caller(self) -> None:
        service = self._service(httpx.Response(400, json={"errors": [{"code": 5006, "message": "bad"}]}))

        with self.assertRaises(AdvisorInvalidRequestError) as ctx:
            await self._generate(service)

        self.assertEqual(ctx.exception.code, "ADVISOR_PROVIDER_INVALID_REQUEST")
        self.assertEqual(ctx.exception.details["providerErrorCode"], "5006")
        self.assertEqual(len(self.script.requests), 1)

    async def test_timeout_falls_back_unless_regenerating(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return cloudflare_response(json.dumps(VALID_ADVICE))

        service = self._service(slow, timeout_seconds=0.01)

        insight = await self._generate(service)
        self.assertEqual(insight.mode_reason, "provider_timeout")
        self.assertIsNone(insight.provider)

        with self.assertRaises(AdvisorTimeoutError):
            await self._generate(service, regenerate=True)

    async def test_unparseable_text_falls_back(self) -> None:
        service = self._service(cloudflare_response("Sorry, I can only chat about the weather."))

        insight = await self._generate(service)

        self.assertEqual(insight.mode_reason, "provider_parse_error")
        self.assertEqual(insight.provider, "cloudflare")
        self.assertEqual(insight.provider_status, 200)
        events = self._fallback_events()
        self.assertEqual(len(events), 1)
        self.assertIn("preview=", events[0].detail)

    async def test_tips_string_is_coerced(self) -> None:
        loose = copy.deepcopy(VALID_ADVICE)
        loose["tips"] = "Pause one subscription.\n- Batch groceries."
        service = self._service(cloudflare_response(json.dumps(loose)))

        insight = await self._generate(service)

        self.assertEqual(insight.mode, "ai")
        self.assertEqual(insight.advice.tips, ("Pause one subscription.", "Batch groceries."))

    async def test_schema_violation_falls_back_once(self) -> None:
        broken = copy.deepcopy(VALID_ADVICE)
        broken["savings"]["targetRate"] = 5
        service = self._service(cloudflare_response(json.dumps(broken)))

        insight = await self._generate(service, language="tr")

        self.assertEqual(insight.mode, "fallback")
        self.assertEqual(insight.mode_reason, "provider_validation_error")
        self.assertEqual(insight.language, "tr")
        events = self._fallback_events()
        self.assertEqual(len(events), 1)
        self.assertIn("savings.targetRate", events[0].detail)
        self.assertEqual(insight.advice.savings.target_rate, 0.25)

    async def test_invalid_arguments(self) -> None:
        service = self._service(cloudflare_response(json.dumps(VALID_ADVICE)))

        with self.assertRaises(ValueError):
            await service.generate_advisor_insight("7", "2024-03", "de")
        with self.assertRaises(ValueError):
            await service.generate_advisor_insight("7", "2024-13", "en")
        self.assertEqual(self.script.requests, [])

    async def test_clear_cache_for_tests(self) -> None:
        service = self._service(cloudflare_response(json.dumps(VALID_ADVICE)))

        await self._generate(service)
        service.clear_cache_for_tests()
        await self._generate(service)

        self.assertEqual(len(self.script.requests), 2)


class AssessAdviceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.snapshot, _ = await build_snapshot(march_2024_store(), "7", "2024-03", date(2024, 4, 10))

    def _advice(self, **savings):
        raw = copy.deepcopy(VALID_ADVICE)
        raw["savings"].update(savings)
        raw["expenseOptimization"]["cutCandidates"] = [
            {"label": "corner market", "suggestedReductionPercent": 12.3456, "alternativeAction": "Shop less."},
            {"label": "Holidays", "suggestedReductionPercent": 5, "alternativeAction": "Stay home."},
        ]
        return validate_advice(raw)

    def test_current_amount_matches_categories_then_merchants(self) -> None:
        assessed = assess_advice(self._advice(), self.snapshot)
        candidates = assessed.expense_optimization.cut_candidates

        self.assertEqual(candidates[0].current_amount, Decimal("250.00"))
        self.assertEqual(candidates[0].suggested_reduction_percent, 12.35)
        self.assertEqual(candidates[1].current_amount, Decimal("0.00"))

    def test_monthly_target_is_rounded(self) -> None:
        assessed = assess_advice(self._advice(monthlyTargetAmount="750.555"), self.snapshot)

        self.assertEqual(assessed.savings.monthly_target_amount, Decimal("750.56"))

    def test_emergency_fund_status(self) -> None:
        cases = {
            "ready": Decimal("5000"),
            "building": Decimal("100"),
            "not_started": Decimal("-40"),
        }
        for status, balance in cases.items():
            with self.subTest(status=status):
                balances = self.snapshot.balances.model_copy(update={"total_balance": balance})
                snapshot = self.snapshot.model_copy(update={"balances": balances})
                investment = assess_advice(self._advice(), snapshot).investment
                self.assertEqual(investment.emergency_fund_status, status)
                self.assertEqual(investment.emergency_fund_current, max(Decimal("0"), balance).quantize(Decimal("0.01")))


if __name__ == "__main__":
    unittest.main()
