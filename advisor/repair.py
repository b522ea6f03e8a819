"""
Repair and validation of provider output.

Provider text goes through three steps:

1. ``extract_json_payload`` finds a JSON object in free-form text.
2. ``loose_to_strict`` normalizes the common shape deviations (a bulleted
   string where a list was expected, a single object where a list was
   expected) without touching the input.
3. ``validate_advice`` checks the result against ``AdviceOutput``.

Any failure raises ``AdviceRepairError`` whose ``reason`` is directly usable
as a fallback reason.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any

from pydantic import ValidationError

from advisor.redaction import preview_text
from advisor.schemas import AdviceOutput

FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
OBJECT_SPAN_PATTERN = re.compile(r"\{[\s\S]*\}")
BULLET_PREFIX_PATTERN = re.compile(r"^\s*(?:[-*•]+|\d+[.)])\s*")
LINE_SPLIT_PATTERN = re.compile(r"\r?\n")


class AdviceRepairError(ValueError):
    def __init__(
        self,
        reason: str,
        message: str,
        *,
        field_path: str | None = None,
        preview: str = "",
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.field_path = field_path
        self.preview = preview

    @property
    def detail(self) -> str:
        return f"{self} | preview={json.dumps(self.preview, ensure_ascii=False)}"


def extract_json_payload(text: str) -> Any:
    trimmed = (text or "").strip()
    fenced = FENCED_BLOCK_PATTERN.search(trimmed)
    candidate = fenced.group(1) if fenced else trimmed
    try:
        return json.loads(candidate)
    except ValueError:
        pass

    span = OBJECT_SPAN_PATTERN.search(candidate)
    if span is None:
        raise AdviceRepairError(
            "provider_parse_error",
            "provider JSON parse failed: no JSON object found",
            preview=preview_text(text),
        )
    try:
        return json.loads(span.group(0))
    except ValueError as exc:
        raise AdviceRepairError(
            "provider_parse_error",
            f"provider JSON parse failed: {exc.msg}",
            preview=preview_text(text),
        ) from exc


def coerce_string_list(value: Any) -> Any:
    """Split a bulleted or multi-line string into a list of lines.

    Lists and non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed:
        return []
    lines = [BULLET_PREFIX_PATTERN.sub("", line).strip() for line in LINE_SPLIT_PATTERN.split(trimmed)]
    lines = [line for line in lines if line]
    return lines or [trimmed]


def loose_to_strict(value: Any) -> Any:
    if not isinstance(value, dict):
        return value

    root = copy.deepcopy(value)

    savings = root.get("savings")
    if isinstance(savings, dict) and "next7DaysActions" in savings:
        savings["next7DaysActions"] = coerce_string_list(savings["next7DaysActions"])

    investment = root.get("investment")
    if isinstance(investment, dict):
        if "guidance" in investment:
            investment["guidance"] = coerce_string_list(investment["guidance"])
        profiles = investment.get("profiles")
        if isinstance(profiles, dict):
            profiles = [profiles]
        if isinstance(profiles, list):
            investment["profiles"] = [_coerce_profile(profile) for profile in profiles]

    optimization = root.get("expenseOptimization")
    if isinstance(optimization, dict):
        if "quickWins" in optimization:
            optimization["quickWins"] = coerce_string_list(optimization["quickWins"])
        if isinstance(optimization.get("cutCandidates"), dict):
            optimization["cutCandidates"] = [optimization["cutCandidates"]]

    if "tips" in root:
        root["tips"] = coerce_string_list(root["tips"])

    return root


def validate_advice(value: Any, raw_text: str = "") -> AdviceOutput:
    try:
        return AdviceOutput.model_validate(value)
    except ValidationError as exc:
        first = exc.errors()[0]
        field_path = ".".join(str(part) for part in first["loc"]) or "output"
        raise AdviceRepairError(
            "provider_validation_error",
            f"provider output schema validation failed: {field_path}: {first['msg']}",
            field_path=field_path,
            preview=preview_text(raw_text),
        ) from exc


def repair_provider_output(text: str) -> AdviceOutput:
    return validate_advice(loose_to_strict(extract_json_payload(text)), raw_text=text)


def _coerce_profile(profile: Any) -> Any:
    if not isinstance(profile, dict):
        return profile
    if "options" in profile:
        profile["options"] = coerce_string_list(profile["options"])
    level = profile.get("level")
    if isinstance(level, str):
        profile["level"] = level.strip().lower()
    return profile
