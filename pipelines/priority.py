"""
pipelines/priority.py

Derives a report's queue priority from its side effects and, when present,
the triage producer's urgency signal.

The result depends only on its two inputs, so re-running it on an unchanged
report always gives the same answer.
"""

from __future__ import annotations

from typing import Iterable

from storage.models import Priority, Severity, SideEffect, TriageMetadata, UrgencyLevel

SEVERITY_RANK: dict[Severity, int] = {
    Severity.mild: 1,
    Severity.moderate: 2,
    Severity.severe: 3,
    Severity.life_threatening: 4,
}

# Severities the dashboards treat as a serious reaction.
SERIOUS_SEVERITIES = frozenset({Severity.severe, Severity.life_threatening})


def max_severity(side_effects: Iterable[SideEffect]) -> Severity | None:
    """Highest severity among *side_effects*, or ``None`` for an empty list."""
    worst: Severity | None = None
    for se in side_effects:
        if worst is None or SEVERITY_RANK[se.severity] > SEVERITY_RANK[worst]:
            worst = se.severity
    return worst


def severity_rank(side_effects: Iterable[SideEffect]) -> int:
    """Rank of the worst side effect (0 when there are none)."""
    worst = max_severity(side_effects)
    return SEVERITY_RANK[worst] if worst is not None else 0


def _urgency(triage: TriageMetadata | None) -> UrgencyLevel | None:
    if triage is None:
        return None
    return triage.patient_guidance.urgency_level


def derive_priority(
    side_effects: Iterable[SideEffect],
    triage: TriageMetadata | None = None,
) -> Priority:
    """
    Map (side effects, triage) to ``low`` / ``medium`` / ``high``.

    Rules, first match wins:
      1. triage urgency ``urgent``                        -> high
      2. any side effect severe or life-threatening      -> high
      3. triage urgency ``soon`` or any moderate effect   -> medium
      4. otherwise                                        -> low
    """
    severities = {se.severity for se in side_effects}
    urgency = _urgency(triage)

    if urgency == UrgencyLevel.urgent:
        return Priority.high
    if severities & SERIOUS_SEVERITIES:
        return Priority.high
    if urgency == UrgencyLevel.soon or Severity.moderate in severities:
        return Priority.medium
    return Priority.low


PRIORITY_RANK: dict[Priority, int] = {
    Priority.low: 1,
    Priority.medium: 2,
    Priority.high: 3,
}
