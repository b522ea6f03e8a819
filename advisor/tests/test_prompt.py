import json
import unittest
from datetime import date

from advisor.prompt import SYSTEM_PROMPT, build_prompt_payload, render_prompt
from advisor.snapshot import build_snapshot
from advisor.store import AccountRecord
from advisor.tests.fakes import march_2024_store


class PromptRendererTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.snapshot, self.preferences = await build_snapshot(
            march_2024_store(), "7", "2024-03", date(2024, 4, 10)
        )

    def test_prompt_is_deterministic(self) -> None:
        first = render_prompt("en", self.snapshot, self.preferences)
        second = render_prompt("en", self.snapshot, self.preferences)

        self.assertEqual(first, second)

    def test_prompt_structure(self) -> None:
        lines = render_prompt("tr", self.snapshot, self.preferences).split("\n")

        self.assertEqual(lines[0], "You are Mintly AI, a conservative personal finance advisor.")
        self.assertEqual(lines[1], "Write all narrative text in Turkish.")
        self.assertIn("Do not include private identifiers", lines[3])
        self.assertEqual(lines[4], "Return strict JSON only with this exact shape:")
        self.assertEqual(json.loads(lines[5])["savings"]["targetRate"], 0.2)
        self.assertIn("- savings.next7DaysActions: 3-5 actionable bullets", lines)
        self.assertIn("- IMPORTANT: every list field must be a JSON array (never a single string).", lines)
        self.assertIn("- Do not wrap the JSON in markdown fences.", lines)
        self.assertTrue(lines[-1].startswith("Input JSON: "))

    def test_embedded_payload_matches_builder(self) -> None:
        prompt = render_prompt("ru", self.snapshot, self.preferences)
        embedded = json.loads(prompt.split("\n")[-1][len("Input JSON: "):])

        self.assertEqual(embedded, build_prompt_payload("ru", self.snapshot, self.preferences))
        self.assertIn("Russian", prompt)

    def test_payload_contents(self) -> None:
        payload = build_prompt_payload("en", self.snapshot, self.preferences)

        self.assertEqual(payload["preferences"], {"savingsTargetRate": 25, "riskProfile": "high"})
        self.assertEqual(payload["spendOverview"]["currentMonthIncome"], 3000)
        self.assertEqual(payload["spendOverview"]["savingsRate"], 0.49)
        self.assertEqual(payload["categoryBreakdown"][0], {"name": "Rent", "total": 1200, "sharePercent": 78.43})
        self.assertEqual(len(payload["cashflowTrend"]), 3)

    def test_payload_excludes_identifiers_and_raw_text(self) -> None:
        serialized = json.dumps(build_prompt_payload("en", self.snapshot, self.preferences))

        for forbidden in ("john@example.com", "1234567", "categoryId", "budgetId", "ruleId", "Rent payment"):
            with self.subTest(forbidden=forbidden):
                self.assertNotIn(forbidden, serialized)
        self.assertIn("[redacted-email]", serialized)
        self.assertIn("[redacted-number]", serialized)

    async def test_payload_masks_account_numbers_inside_words(self) -> None:
        store = march_2024_store()
        store.category_names["12"] = "Rent IBAN TR330006100519786457841326"
        store.accounts[1] = AccountRecord(id="2", name="Card1234567890", currency="USD")
        snapshot, preferences = await build_snapshot(store, "7", "2024-03", date(2024, 4, 10))

        serialized = json.dumps(build_prompt_payload("en", snapshot, preferences))

        for forbidden in ("0006100519786457841326", "1234567890"):
            with self.subTest(forbidden=forbidden):
                self.assertNotIn(forbidden, serialized)
        self.assertIn("Rent IBAN TR[redacted-number]", serialized)
        self.assertIn("Main checking -> Card[redacted-number]", serialized)

    def test_unknown_language_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            render_prompt("de", self.snapshot, self.preferences)

    def test_system_prompt_demands_single_object(self) -> None:
        self.assertIn("single valid JSON object", SYSTEM_PROMPT)
        self.assertIn("No markdown fences", SYSTEM_PROMPT)


if __name__ == "__main__":
    unittest.main()
