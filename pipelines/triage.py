"""
pipelines/triage.py

Turns whatever the triage producer sends (a JSON string, possibly wrapped in
markdown fences, or an already-decoded mapping with camelCase keys) into a
validated ``TriageMetadata``.

Unlike the rest of the engine this module tolerates producer quirks:
camelCase keys, capitalised enum values and urgency synonyms such as
``emergency`` or ``critical`` are normalised before validation.  An urgency
word outside that vocabulary, or anything else that does not fit the schema,
raises ``storage.errors.ValidationError``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from pydantic import ValidationError as SchemaError

from storage.errors import ValidationError
from storage.models import TriageMetadata

_KEY_ALIASES: dict[str, str] = {
    "severityScore": "severity_score",
    "overallRiskScore": "overall_risk_score",
    "causalityAssessment": "causality_assessment",
    "patientGuidance": "patient_guidance",
    "recommendedActions": "recommended_actions",
    "urgencyLevel": "urgency_level",
    "nextSteps": "next_steps",
}

_URGENCY_ALIASES: dict[str, str] = {
    "emergency": "urgent",
    "critical": "urgent",
    "severe": "urgent",
    "immediate": "urgent",
    "high": "urgent",
    "medium": "soon",
    "moderate": "soon",
    "low": "routine",
}


def _extract_first_json_object(text: str) -> str | None:
    """
    Extract the first {...} object from free text using a brace-matching scan.
    """
    if not text:
        return None

    text = re.sub(r"```(?:json)?", "", text, flags=re.IGNORECASE).replace("```", "")

    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    for i in range(start, len(text)):
        c = text[i]
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None


def normalize_urgency(value: Any) -> str:
    """
    Map producer urgency wording onto routine / soon / urgent.

    A missing urgency means routine.

    Raises:
        ValidationError: a non-empty value that is not a known level or alias.
    """
    lvl = str(value or "").strip().lower()
    if not lvl:
        return "routine"
    if lvl in ("routine", "soon", "urgent"):
        return lvl
    if lvl in _URGENCY_ALIASES:
        return _URGENCY_ALIASES[lvl]
    raise ValidationError(
        f"Unrecognised triage urgency '{value}'.",
        field="urgency_level",
        details={"value": str(value)},
    )


def _snake_keys(data: Any) -> Any:
    if isinstance(data, Mapping):
        return {_KEY_ALIASES.get(k, k): _snake_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_snake_keys(v) for v in data]
    return data


def _normalize(data: dict[str, Any]) -> dict[str, Any]:
    data = _snake_keys(data)

    guidance = data.get("patient_guidance")
    if isinstance(guidance, Mapping):
        guidance = dict(guidance)
        guidance["urgency_level"] = normalize_urgency(guidance.get("urgency_level"))
        data["patient_guidance"] = guidance

    causality = data.get("causality_assessment")
    if isinstance(causality, Mapping) and isinstance(causality.get("likelihood"), str):
        causality = dict(causality)
        causality["likelihood"] = causality["likelihood"].strip().lower()
        data["causality_assessment"] = causality

    return data


def parse_triage(raw: str | Mapping[str, Any] | TriageMetadata) -> TriageMetadata:
    """
    Validate producer output into ``TriageMetadata``.

    Raises:
        ValidationError: no JSON object found, invalid JSON, or schema mismatch.
    """
    if isinstance(raw, TriageMetadata):
        return raw

    if isinstance(raw, Mapping):
        data = dict(raw)
    else:
        json_str = _extract_first_json_object(raw)
        if json_str is None:
            raise ValidationError("No JSON object found in triage output.", field="triage")
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid triage JSON: {exc}", field="triage") from exc

    try:
        return TriageMetadata.model_validate(_normalize(data))
    except SchemaError as exc:
        raise ValidationError(
            "Triage output does not match the expected shape.",
            field="triage",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
