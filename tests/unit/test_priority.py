"""
Unit Tests for Priority Derivation
"""
import pytest

from pipelines.priority import derive_priority, max_severity, severity_rank
from storage.models import (
    PatientGuidance,
    Priority,
    Severity,
    SideEffect,
    TriageMetadata,
    UrgencyLevel,
)


def _effects(*severities):
    return [SideEffect(effect=f"effect {i}", severity=s) for i, s in enumerate(severities)]


def _triage(urgency):
    return TriageMetadata(patient_guidance=PatientGuidance(urgency_level=urgency))


class TestDerivePriority:
    """Tests for the priority rules."""

    @pytest.mark.parametrize(
        "severities,expected",
        [
            (("mild",), Priority.low),
            (("mild", "mild"), Priority.low),
            (("moderate",), Priority.medium),
            (("mild", "moderate"), Priority.medium),
            (("severe",), Priority.high),
            (("life-threatening",), Priority.high),
            (("mild", "severe"), Priority.high),
        ],
    )
    def test_side_effects_only(self, severities, expected):
        assert derive_priority(_effects(*severities)) == expected

    def test_urgent_triage_overrides_mild_effects(self):
        assert derive_priority(_effects("mild"), _triage(UrgencyLevel.urgent)) == Priority.high

    def test_soon_triage_raises_mild_to_medium(self):
        # Lisinopril dry cough triaged "soon"
        assert derive_priority(_effects("mild"), _triage(UrgencyLevel.soon)) == Priority.medium

    def test_routine_triage_does_not_lower_severe(self):
        assert derive_priority(_effects("severe"), _triage(UrgencyLevel.routine)) == Priority.high

    def test_routine_triage_keeps_mild_low(self):
        assert derive_priority(_effects("mild"), _triage(UrgencyLevel.routine)) == Priority.low

    def test_no_effects_is_low(self):
        assert derive_priority([]) == Priority.low

    def test_idempotent(self):
        effects = _effects("moderate", "mild")
        triage = _triage(UrgencyLevel.soon)
        first = derive_priority(effects, triage)
        assert derive_priority(effects, triage) == first


class TestSeverityHelpers:

    def test_max_severity(self):
        assert max_severity(_effects("mild", "life-threatening", "moderate")) == Severity.life_threatening

    def test_max_severity_empty(self):
        assert max_severity([]) is None

    def test_severity_rank_orders_levels(self):
        ranks = [severity_rank(_effects(s)) for s in ("mild", "moderate", "severe", "life-threatening")]
        assert ranks == sorted(ranks)
        assert severity_rank([]) == 0
