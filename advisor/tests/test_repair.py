import copy
import json
import unittest

from advisor.repair import (
    AdviceRepairError,
    coerce_string_list,
    extract_json_payload,
    loose_to_strict,
    repair_provider_output,
    validate_advice,
)
from advisor.tests.fakes import VALID_ADVICE


class ExtractJsonPayloadTests(unittest.TestCase):
    def test_plain_json(self) -> None:
        self.assertEqual(extract_json_payload(' {"a": 1} '), {"a": 1})

    def test_fenced_block(self) -> None:
        text = 'Here you go:\n```json\n{"a": [1, 2]}\n```\nThanks!'

        self.assertEqual(extract_json_payload(text), {"a": [1, 2]})

    def test_object_embedded_in_prose(self) -> None:
        self.assertEqual(extract_json_payload('Sure! {"a": {"b": 2}} Hope this helps.'), {"a": {"b": 2}})

    def test_no_object_raises_parse_error(self) -> None:
        with self.assertRaises(AdviceRepairError) as ctx:
            extract_json_payload("I cannot help with that. Contact me at bob@example.com")

        self.assertEqual(ctx.exception.reason, "provider_parse_error")
        self.assertIn("[redacted-email]", ctx.exception.preview)
        self.assertNotIn("bob@example.com", ctx.exception.detail)

    def test_broken_object_raises_parse_error(self) -> None:
        with self.assertRaises(AdviceRepairError) as ctx:
            extract_json_payload('{"a": 1,}')

        self.assertEqual(ctx.exception.reason, "provider_parse_error")


class CoercionTests(unittest.TestCase):
    def test_bulleted_string_becomes_list(self) -> None:
        self.assertEqual(
            coerce_string_list("- Pause one subscription.\n* Batch groceries.\n\n2) Walk to work.\r\n• Cook."),
            ["Pause one subscription.", "Batch groceries.", "Walk to work.", "Cook."],
        )

    def test_leading_numbers_without_marker_are_kept(self) -> None:
        self.assertEqual(
            coerce_string_list("20% of income to savings.\n3. Review bills.\n100 less on dining."),
            ["20% of income to savings.", "Review bills.", "100 less on dining."],
        )

    def test_lists_and_other_values_pass_through(self) -> None:
        self.assertEqual(coerce_string_list(["a"]), ["a"])
        self.assertIsNone(coerce_string_list(None))
        self.assertEqual(coerce_string_list("   "), [])

    def test_tips_string_from_provider(self) -> None:
        coerced = loose_to_strict({"tips": "Pause one subscription.\n- Batch groceries."})

        self.assertEqual(coerced["tips"], ["Pause one subscription.", "Batch groceries."])

    def test_all_string_list_fields_and_singletons(self) -> None:
        loose = copy.deepcopy(VALID_ADVICE)
        loose["savings"]["next7DaysActions"] = "1. Save.\n2. Spend less."
        loose["investment"]["guidance"] = "Invest monthly."
        loose["investment"]["profiles"] = {
            "level": " High ",
            "title": "Growth",
            "rationale": "Reserves are healthy.",
            "options": "- Index fund\n- Bonds",
        }
        loose["expenseOptimization"]["quickWins"] = "* Batch errands."
        loose["expenseOptimization"]["cutCandidates"] = {
            "label": "Dining",
            "suggestedReductionPercent": 10,
            "alternativeAction": "Cook at home.",
        }

        coerced = loose_to_strict(loose)

        self.assertEqual(coerced["savings"]["next7DaysActions"], ["Save.", "Spend less."])
        self.assertEqual(coerced["investment"]["guidance"], ["Invest monthly."])
        self.assertEqual(coerced["investment"]["profiles"][0]["options"], ["Index fund", "Bonds"])
        self.assertEqual(coerced["investment"]["profiles"][0]["level"], "high")
        self.assertEqual(coerced["expenseOptimization"]["quickWins"], ["Batch errands."])
        self.assertEqual(coerced["expenseOptimization"]["cutCandidates"][0]["label"], "Dining")
        validate_advice(coerced)

    def test_input_is_never_mutated(self) -> None:
        loose = copy.deepcopy(VALID_ADVICE)
        loose["tips"] = "- One.\n- Two."
        loose["investment"]["profiles"][0]["options"] = "a\nb"
        snapshot = copy.deepcopy(loose)

        loose_to_strict(loose)

        self.assertEqual(loose, snapshot)

    def test_non_objects_pass_through(self) -> None:
        self.assertEqual(loose_to_strict([1, 2]), [1, 2])
        self.assertEqual(loose_to_strict("x"), "x")


class ValidationTests(unittest.TestCase):
    def test_valid_advice(self) -> None:
        advice = validate_advice(VALID_ADVICE)

        self.assertEqual(advice.savings.next_7_days_actions[0], "Move 100 to savings.")
        self.assertEqual(advice.expense_optimization.cut_candidates[0].suggested_reduction_percent, 15)

    def test_reports_first_failing_path(self) -> None:
        broken = copy.deepcopy(VALID_ADVICE)
        broken["savings"]["targetRate"] = 1.5

        with self.assertRaises(AdviceRepairError) as ctx:
            validate_advice(broken, raw_text="account 123456789 leaked")

        self.assertEqual(ctx.exception.reason, "provider_validation_error")
        self.assertEqual(ctx.exception.field_path, "savings.targetRate")
        self.assertEqual(ctx.exception.preview, "account [redacted-number] leaked")

    def test_invalid_risk_level(self) -> None:
        broken = copy.deepcopy(VALID_ADVICE)
        broken["investment"]["profiles"][0]["level"] = "extreme"

        with self.assertRaises(AdviceRepairError) as ctx:
            validate_advice(broken)

        self.assertEqual(ctx.exception.field_path, "investment.profiles.0.level")

    def test_cardinality_limits(self) -> None:
        broken = copy.deepcopy(VALID_ADVICE)
        broken["tips"] = [f"Tip {index}" for index in range(11)]

        with self.assertRaises(AdviceRepairError) as ctx:
            validate_advice(broken)

        self.assertEqual(ctx.exception.field_path, "tips")

    def test_missing_section(self) -> None:
        broken = copy.deepcopy(VALID_ADVICE)
        del broken["expenseOptimization"]

        with self.assertRaises(AdviceRepairError) as ctx:
            validate_advice(broken)

        self.assertEqual(ctx.exception.field_path, "expenseOptimization")


class RepairProviderOutputTests(unittest.TestCase):
    def test_fenced_loose_output_is_repaired(self) -> None:
        loose = copy.deepcopy(VALID_ADVICE)
        loose["tips"] = "Pause one subscription.\n- Batch groceries."
        text = f"```json\n{json.dumps(loose)}\n```"

        advice = repair_provider_output(text)

        self.assertEqual(advice.tips, ("Pause one subscription.", "Batch groceries."))

    def test_empty_text(self) -> None:
        with self.assertRaises(AdviceRepairError) as ctx:
            repair_provider_output("")

        self.assertEqual(ctx.exception.reason, "provider_parse_error")


if __name__ == "__main__":
    unittest.main()
