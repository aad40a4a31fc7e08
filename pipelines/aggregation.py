"""
pipelines/aggregation.py

Read-side views over a collection of reports: dashboard counters, the
pending-review queue, search/filter/sort and pagination.

Nothing here mutates a report or touches the store; callers hand in the
list they already read.  These are the only status/priority computations the
presentation layer should rely on.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Sequence

from pipelines.priority import PRIORITY_RANK, SERIOUS_SEVERITIES, severity_rank
from storage.errors import ValidationError
from storage.models import (
    DashboardStats,
    Page,
    Priority,
    Report,
    ReportStatus,
    ReviewState,
    Severity,
    utcnow,
)


APPROVED_STATUSES = frozenset({ReportStatus.reviewed, ReportStatus.confirmed})

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_SORT_KEYS: dict[str, Callable[[Report], Any]] = {
    "date": lambda r: r.created_at,
    "severity": lambda r: severity_rank(r.side_effects),
    "priority": lambda r: PRIORITY_RANK[r.priority],
    "requested": lambda r: r.doctor_review.requested_at or _EPOCH,
}


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def dashboard_stats(
    reports: Iterable[Report],
    now: datetime | None = None,
    window_days: int = 7,
) -> DashboardStats:
    """
    Count reports for the dashboard tiles.

    ``approved`` covers both ``reviewed`` and ``confirmed``; ``severe`` counts
    reports with at least one side effect graded exactly ``severe``;
    ``this_week`` counts reports created strictly after ``now - window_days``.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=window_days)

    stats = DashboardStats()
    for r in reports:
        stats.total += 1
        if r.status == ReportStatus.pending:
            stats.pending += 1
        elif r.status in APPROVED_STATUSES:
            stats.approved += 1
        elif r.status == ReportStatus.rejected:
            stats.rejected += 1
        if any(se.severity == Severity.severe for se in r.side_effects):
            stats.severe += 1
        if r.priority == Priority.high:
            stats.high += 1
        if r.created_at > cutoff:
            stats.this_week += 1
    return stats


def percentage(part: int, total: int) -> int:
    """Whole-number percentage, 0 for an empty total."""
    if total <= 0:
        return 0
    return round(part * 100 / total)


def status_breakdown(reports: Iterable[Report]) -> dict[str, int]:
    counts = Counter(r.status.value for r in reports)
    return {s.value: counts.get(s.value, 0) for s in ReportStatus}


def priority_breakdown(reports: Iterable[Report]) -> dict[str, int]:
    counts = Counter(r.priority.value for r in reports)
    return {p.value: counts.get(p.value, 0) for p in Priority}


def top_medicines(reports: Iterable[Report], limit: int = 5) -> list[dict[str, Any]]:
    """Most reported medicine names, ties broken by first appearance."""
    counts = Counter(r.medicine.name for r in reports)
    return [
        {"medicine": name, "report_count": n}
        for name, n in counts.most_common(limit)
    ]


# ---------------------------------------------------------------------------
# Queues, search and sort
# ---------------------------------------------------------------------------


def _search_text(report: Report) -> str:
    parts = [
        report.reporter_name or "",
        report.medicine.name,
        " ".join(se.effect for se in report.side_effects),
    ]
    return "\n".join(parts).lower()


def _severity_values(severity_filter: Severity | str | Iterable[Severity | str]) -> set[str]:
    if isinstance(severity_filter, str):
        severity_filter = [severity_filter]
    return {s.value if isinstance(s, Severity) else str(s) for s in severity_filter}


def filter_and_sort(
    reports: Iterable[Report],
    status_filter: ReportStatus | str | None = None,
    search_term: str | None = None,
    sort_by: str = "date",
    sort_order: str = "desc",
    severity_filter: Severity | str | Iterable[Severity | str] | None = None,
    medicine_filter: str | None = None,
) -> list[Report]:
    """
    Filter by exact status, severity, medicine and free-text search, then sort.

    Args:
        status_filter:   exact status to keep; ``None`` or ``"all"`` keeps all.
        search_term:     case-insensitive substring matched against patient
                         name, medicine name and side-effect text.
        sort_by:         ``date``, ``severity``, ``priority`` or ``requested``.
        sort_order:      ``asc`` or ``desc``.
        severity_filter: one severity or a collection of them; a report is kept
                         when any of its side effects has one of them.
                         ``"serious"`` means severe or life-threatening.
        medicine_filter: medicine name, matched case-insensitively in full.

    The sort is stable: reports with equal keys keep their input order.

    Raises:
        ValidationError: unknown ``sort_by`` or ``sort_order``.
    """
    key = _SORT_KEYS.get(sort_by)
    if key is None:
        raise ValidationError(f"Unsupported sort key '{sort_by}'.", field="sort_by")
    order = (sort_order or "").lower()
    if order not in ("asc", "desc"):
        raise ValidationError(f"Unsupported sort order '{sort_order}'.", field="sort_order")

    selected = list(reports)

    if status_filter is not None and status_filter != "all":
        wanted = status_filter.value if isinstance(status_filter, ReportStatus) else str(status_filter)
        selected = [r for r in selected if r.status.value == wanted]

    if severity_filter is not None and severity_filter != "all":
        if severity_filter == "serious":
            severity_filter = SERIOUS_SEVERITIES
        levels = _severity_values(severity_filter)
        selected = [
            r for r in selected
            if any(se.severity.value in levels for se in r.side_effects)
        ]

    medicine = (medicine_filter or "").strip().lower()
    if medicine:
        selected = [r for r in selected if r.medicine.name.strip().lower() == medicine]

    term = (search_term or "").strip().lower()
    if term:
        selected = [r for r in selected if term in _search_text(r)]

    return sorted(selected, key=key, reverse=(order == "desc"))


def pending_reviews(
    reports: Iterable[Report],
    sort_by: str = "requested",
    sort_order: str = "desc",
    search_term: str | None = None,
) -> list[Report]:
    """Reports with an open review request, newest request first by default."""
    open_requests = [r for r in reports if r.doctor_review.state == ReviewState.requested]
    return filter_and_sort(
        open_requests,
        search_term=search_term,
        sort_by=sort_by,
        sort_order=sort_order,
    )


def paginate(items: Sequence[Any], page: int, page_size: int) -> Page:
    """
    Slice *items* into a 1-indexed page.

    A page past the end yields empty ``items``; it is not an error.

    Raises:
        ValidationError: ``page`` or ``page_size`` below 1.
    """
    if page < 1:
        raise ValidationError("page must be >= 1", field="page")
    if page_size < 1:
        raise ValidationError("page_size must be >= 1", field="page_size")

    total = len(items)
    start = (page - 1) * page_size
    return Page(
        items=list(items[start : start + page_size]),
        total_items=total,
        total_pages=math.ceil(total / page_size),
    )
