"""
storage/report_manager.py

Business logic for ADR reports: the status lifecycle, the doctor-review
request sub-workflow, triage ingestion and the role-scoped read surface.

Responsibilities
----------------
- Validating every status change against the allowed-edge table and the
  caller's role.
- Keeping ``priority`` in step with triage and side effects.
- Recording the clinician's causality assessment and follow-up information
  added after submission.
- Running each mutation as one read-modify-write against the store, so a
  lost race surfaces as ``ConflictError`` instead of a silent overwrite.
- Providing the presentation layer with a framework-agnostic API.

Lifecycle
---------
::

    pending ──► under_review ──► reviewed  ──┐
       │             │       └─► confirmed ──┼──► archived
       │             └─────────► rejected  ──┘
       ├──► reviewed
       └──► rejected

``rejected`` and ``archived`` are terminal; only an admin ``reopen`` leaves
them.  ``pending -> under_review`` is system-triggered and open to any actor;
every other edge needs a doctor or admin.

Review requests
---------------
``none -> requested -> answered``.  While a request is open the report may
only move to ``under_review`` or ``reviewed``.  Answering it moves a
``pending``/``under_review`` report to ``reviewed`` in the same write.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping

from pydantic import ValidationError as SchemaError

from pipelines import aggregation
from pipelines.priority import derive_priority
from pipelines.triage import parse_triage
from storage.config import Settings, get_settings
from storage.db import ReportStore
from storage.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationError,
)
from storage.models import (
    FOLLOW_UP_MAX_LENGTH,
    ActorContext,
    ActorRole,
    CausalityAlgorithm,
    CausalityCategory,
    ClinicalCausality,
    DashboardStats,
    FollowUp,
    FollowUpType,
    Page,
    Report,
    ReportStatus,
    ReviewAnswer,
    ReviewRequest,
    ReviewState,
    Severity,
    TriageMetadata,
    TriageStatus,
    Workflow,
    WorkflowComment,
    utcnow,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.pending: frozenset(
        {ReportStatus.under_review, ReportStatus.reviewed, ReportStatus.rejected}
    ),
    ReportStatus.under_review: frozenset(
        {ReportStatus.reviewed, ReportStatus.confirmed, ReportStatus.rejected}
    ),
    ReportStatus.reviewed: frozenset({ReportStatus.archived}),
    ReportStatus.confirmed: frozenset({ReportStatus.archived}),
    ReportStatus.rejected: frozenset({ReportStatus.archived}),
    ReportStatus.archived: frozenset(),
}

# Edges any authenticated actor may trigger.
_OPEN_EDGES = frozenset({(ReportStatus.pending, ReportStatus.under_review)})

TERMINAL_STATUSES = frozenset({ReportStatus.rejected, ReportStatus.archived})

_TRIAGE_STATUSES = frozenset({ReportStatus.pending, ReportStatus.under_review})
_REVIEWABLE_STATUSES = frozenset(
    {ReportStatus.pending, ReportStatus.under_review, ReportStatus.reviewed}
)
# Targets still consistent with an open review request.
_OPEN_REQUEST_TARGETS = frozenset({ReportStatus.under_review, ReportStatus.reviewed})

_REOPEN_TARGET = ReportStatus.under_review


def is_allowed_transition(from_status: ReportStatus, to_status: ReportStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def _as_status(value: ReportStatus | str, current: ReportStatus) -> ReportStatus:
    try:
        return ReportStatus(value)
    except ValueError as exc:
        raise InvalidTransitionError(current.value, str(value)) from exc


class ReportManager:
    """
    Lifecycle engine and review-request workflow over a ``ReportStore``.

    Every mutating method takes the caller's ``ActorContext`` explicitly and
    returns the report as stored after the write.
    """

    def __init__(self, store: ReportStore | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.store = store or ReportStore(self.settings.db_path)

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _load(self, report_id: str, expected_version: int | None = None) -> Report:
        report = self.store.get(report_id)
        if expected_version is not None and report.version != expected_version:
            logger.warning(
                "Stale write on report %s: caller read version %d, store has %d",
                report_id, expected_version, report.version,
            )
            raise ConflictError(report_id, expected_version)
        return report

    def _save(self, report: Report, actor_id: str, action: str, detail: str | None = None) -> Report:
        report.updated_at = utcnow()
        return self.store.put(
            report,
            expected_version=report.version,
            actor_id=actor_id,
            action=action,
            detail=detail,
        )

    @staticmethod
    def _require_clinician(actor: ActorContext, what: str) -> None:
        if not actor.is_clinician:
            raise ForbiddenError(
                f"Role '{actor.actor_role.value}' may not {what}.", role=actor.actor_role.value
            )

    @staticmethod
    def _require_owner_or_clinician(actor: ActorContext, report: Report, what: str) -> None:
        if actor.actor_role == ActorRole.patient and actor.actor_id != report.reporter_id:
            raise ForbiddenError(
                f"Patient '{actor.actor_id}' may not {what} another patient's report.",
                role=actor.actor_role.value,
                details={"report_id": report.id},
            )

    @staticmethod
    def _append_comment(report: Report, actor: ActorContext, text: str | None) -> None:
        if text and text.strip():
            report.workflow.comments.append(
                WorkflowComment(
                    author_id=actor.actor_id,
                    author_role=actor.actor_role,
                    text=text.strip(),
                )
            )

    def _apply_transition(
        self,
        report: Report,
        actor: ActorContext,
        target: ReportStatus | str,
        comment: str | None = None,
    ) -> tuple[ReportStatus, ReportStatus]:
        """Validate and apply a status change in memory; the caller persists it."""
        current = report.status
        target = _as_status(target, current)

        if not is_allowed_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

        if (current, target) not in _OPEN_EDGES and not actor.is_clinician:
            raise ForbiddenError(
                f"Role '{actor.actor_role.value}' may not move a report "
                f"from {current.value} to {target.value}.",
                role=actor.actor_role.value,
                details={"from": current.value, "to": target.value},
            )

        if (
            report.doctor_review.state == ReviewState.requested
            and target not in _OPEN_REQUEST_TARGETS
        ):
            raise InvalidStateError(
                f"Report {report.id} has an open review request; answer it before "
                f"moving the report to {target.value}.",
                state=report.doctor_review.state.value,
                details={"status": current.value, "target": target.value},
            )

        report.status = target
        self._append_comment(report, actor, comment)
        return current, target

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def submit(self, actor: ActorContext, report: Report) -> Report:
        """
        File a new report in ``pending``.

        Engine-owned fields (status, priority, triage, review state, comments,
        version, timestamps) are reset regardless of what the caller sent;
        triage arrives later through :meth:`attach_triage`.

        Raises:
            ValidationError: no side effects, or no reporter id.
            ForbiddenError:  a patient filing for someone else.
        """
        if not report.reporter_id:
            raise ValidationError("reporter_id is required.", field="reporter_id")
        if not report.side_effects:
            raise ValidationError("At least one side effect is required.", field="side_effects")
        self._require_owner_or_clinician(actor, report, "file a report for")

        now = utcnow()
        new_report = report.model_copy(
            update={
                "status": ReportStatus.pending,
                "priority": derive_priority(report.side_effects),
                "triage": None,
                "triage_status": TriageStatus(),
                "doctor_review": ReviewRequest(),
                "review_history": [],
                "workflow": Workflow(),
                "clinical_causality": None,
                "follow_ups": [],
                "version": 1,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )

        stored = self.store.create(new_report, actor_id=actor.actor_id)
        logger.info(
            "Report %s submitted by %s (priority=%s)",
            stored.id, actor.actor_id, stored.priority.value,
        )
        return stored

    def get_report(self, report_id: str, actor: ActorContext) -> Report:
        """Read one report; patients may only read their own."""
        report = self.store.get(report_id)
        self._require_owner_or_clinician(actor, report, "read")
        return report

    def attach_triage(
        self,
        report_id: str,
        triage: TriageMetadata | Mapping[str, Any] | str,
        source: str = "triage-service",
    ) -> Report:
        """
        Attach (or replace) triage analysis and recompute priority.

        *triage* may be a ``TriageMetadata`` or raw producer output; raw
        output that fails validation is recorded as a failed attempt before
        the error is raised.

        Raises:
            NotFoundError:     unknown report.
            InvalidStateError: report no longer ``pending``/``under_review``.
            ValidationError:   producer output does not fit the schema.
        """
        report = self._load(report_id)
        if report.status not in _TRIAGE_STATUSES:
            raise InvalidStateError(
                f"Cannot attach triage to report {report_id} in status {report.status.value}.",
                state=report.status.value,
            )

        try:
            metadata = parse_triage(triage)
        except ValidationError as exc:
            self.record_triage_failure(report_id, exc.message, source=source)
            raise

        report.triage = metadata
        report.priority = derive_priority(report.side_effects, metadata)
        report.triage_status = TriageStatus(
            attempts=report.triage_status.attempts + 1,
            last_error=None,
            processed_at=utcnow(),
        )

        stored = self._save(
            report, source, "triage_attached",
            detail=f"urgency={metadata.patient_guidance.urgency_level.value}",
        )
        logger.info(
            "Triage attached to report %s (urgency=%s, priority=%s)",
            report_id, metadata.patient_guidance.urgency_level.value, stored.priority.value,
        )
        return stored

    def record_triage_failure(self, report_id: str, error: str, source: str = "triage-service") -> Report:
        """Count a failed triage attempt; retry policy belongs to the producer."""
        report = self._load(report_id)
        report.triage_status = TriageStatus(
            attempts=report.triage_status.attempts + 1,
            last_error=error,
            processed_at=report.triage_status.processed_at,
        )
        stored = self._save(report, source, "triage_failed", detail=error[:500])
        logger.warning(
            "Triage failed for report %s (attempt %d): %s",
            report_id, stored.triage_status.attempts, error,
        )
        return stored

    def transition(
        self,
        report_id: str,
        actor: ActorContext,
        target: ReportStatus | str,
        comment: str | None = None,
        expected_version: int | None = None,
    ) -> Report:
        """
        Move a report along one edge of the lifecycle.

        Args:
            expected_version: version the caller based its decision on; a
                              mismatch raises ``ConflictError`` immediately.

        Raises:
            InvalidTransitionError, ForbiddenError, InvalidStateError,
            NotFoundError, ConflictError.
        """
        report = self._load(report_id, expected_version)
        from_status, to_status = self._apply_transition(report, actor, target, comment)

        stored = self._save(
            report, actor.actor_id, "status_changed",
            detail=f"{from_status.value}->{to_status.value}",
        )
        logger.info(
            "Report %s: %s -> %s by %s (%s)",
            report_id, from_status.value, to_status.value,
            actor.actor_id, actor.actor_role.value,
        )
        return stored

    def reopen(self, report_id: str, actor: ActorContext, reason: str) -> Report:
        """
        Admin-only escape hatch out of ``rejected``/``archived``.

        The report returns to ``under_review``; the reason is kept as a
        workflow comment and in the audit log.
        """
        if actor.actor_role != ActorRole.admin:
            raise ForbiddenError("Only an admin may reopen a report.", role=actor.actor_role.value)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reopen a report.", field="reason")

        report = self._load(report_id)
        if report.status not in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Report {report_id} is {report.status.value}; only terminal reports can be reopened.",
                state=report.status.value,
            )

        from_status = report.status
        report.status = _REOPEN_TARGET
        self._append_comment(report, actor, reason)

        stored = self._save(
            report, actor.actor_id, "report_reopened",
            detail=f"{from_status.value}->{_REOPEN_TARGET.value}: {reason.strip()}",
        )
        logger.info("Report %s reopened by admin %s", report_id, actor.actor_id)
        return stored

    def add_comment(self, report_id: str, actor: ActorContext, text: str) -> Report:
        """Append a reviewer note without changing status."""
        self._require_clinician(actor, "comment on reports")
        if not text or not text.strip():
            raise ValidationError("Comment text is required.", field="text")

        report = self._load(report_id)
        self._append_comment(report, actor, text)
        return self._save(report, actor.actor_id, "comment_added")

    def add_follow_up(
        self,
        report_id: str,
        actor: ActorContext,
        information_type: FollowUpType | str,
        description: str,
    ) -> Report:
        """
        Append follow-up information (new details, a correction, a later
        report) to a submitted report.

        Open to the owning patient as well as doctors and admins.

        Raises:
            ValidationError:   empty or over-long description, unknown type.
            ForbiddenError:    a patient adding to someone else's report.
            InvalidStateError: the report is archived.
        """
        text = (description or "").strip()
        if not text:
            raise ValidationError("Follow-up description is required.", field="description")
        if len(text) > FOLLOW_UP_MAX_LENGTH:
            raise ValidationError(
                f"Follow-up description cannot exceed {FOLLOW_UP_MAX_LENGTH} characters.",
                field="description",
            )
        try:
            kind = FollowUpType(information_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown follow-up type '{information_type}'.", field="information_type"
            ) from exc

        report = self._load(report_id)
        self._require_owner_or_clinician(actor, report, "add follow-up information to")
        if report.status == ReportStatus.archived:
            raise InvalidStateError(
                f"Report {report_id} is archived and cannot take follow-up information.",
                state=report.status.value,
            )

        report.follow_ups.append(
            FollowUp(
                information_type=kind,
                description=text,
                reported_by=actor.actor_id,
                reporter_role=actor.actor_role,
            )
        )
        stored = self._save(report, actor.actor_id, "follow_up_added", detail=kind.value)
        logger.info("Follow-up (%s) added to report %s by %s", kind.value, report_id, actor.actor_id)
        return stored

    def assess_causality(
        self,
        report_id: str,
        actor: ActorContext,
        category: CausalityCategory | str,
        algorithm: CausalityAlgorithm | str = CausalityAlgorithm.not_assessed,
        score: float | None = None,
        comments: str | None = None,
        expected_version: int | None = None,
    ) -> Report:
        """
        Record a clinician's causality assessment, replacing any earlier one.

        Independent of the triage producer's advisory likelihood, which is
        left untouched.

        Raises:
            ForbiddenError:    actor is not a doctor/admin.
            ValidationError:   unknown algorithm or category.
            InvalidStateError: the report is archived.
            ConflictError:     lost a concurrent write.
        """
        self._require_clinician(actor, "assess causality")
        try:
            assessment = ClinicalCausality(
                algorithm=algorithm,
                category=category,
                score=score,
                comments=(comments or "").strip() or None,
                assessed_by=actor.actor_id,
            )
        except SchemaError as exc:
            raise ValidationError(
                "Malformed causality assessment.",
                field="causality",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        report = self._load(report_id, expected_version)
        if report.status == ReportStatus.archived:
            raise InvalidStateError(
                f"Report {report_id} is archived; its causality assessment is final.",
                state=report.status.value,
            )

        report.clinical_causality = assessment
        stored = self._save(
            report, actor.actor_id, "causality_assessed",
            detail=f"{assessment.algorithm.value}: {assessment.category.value}",
        )
        logger.info(
            "Causality on report %s assessed by %s as %s (%s)",
            report_id, actor.actor_id, assessment.category.value, assessment.algorithm.value,
        )
        return stored

    # -----------------------------------------------------------------------
    # Review-request sub-workflow
    # -----------------------------------------------------------------------

    def request_review(self, report_id: str, actor: ActorContext, reason: str | None = None) -> Report:
        """
        Open a doctor-review request on a report.

        A previous, answered request is moved to ``review_history``.  The
        report's status is left unchanged.

        Raises:
            InvalidStateError: a request is already open, or the report is
                               confirmed/rejected/archived.
            ForbiddenError:    a patient asking about someone else's report.
        """
        report = self._load(report_id)
        self._require_owner_or_clinician(actor, report, "request a review of")

        if report.status not in _REVIEWABLE_STATUSES:
            raise InvalidStateError(
                f"Report {report_id} is {report.status.value} and cannot accept a review request.",
                state=report.status.value,
            )
        if report.doctor_review.state == ReviewState.requested:
            raise InvalidStateError(
                f"Report {report_id} already has an open review request.",
                state=ReviewState.requested.value,
            )

        if report.doctor_review.state == ReviewState.answered:
            report.review_history.append(report.doctor_review)

        report.doctor_review = ReviewRequest(
            state=ReviewState.requested,
            requested_at=utcnow(),
            requested_by=actor.actor_id,
            request_reason=(reason or "").strip() or None,
        )

        stored = self._save(report, actor.actor_id, "review_requested")
        logger.info("Review requested on report %s by %s", report_id, actor.actor_id)
        return stored

    def answer_review(
        self,
        report_id: str,
        actor: ActorContext,
        answer: ReviewAnswer | Mapping[str, Any],
        expected_version: int | None = None,
    ) -> Report:
        """
        Record a doctor's answer to the open review request.

        If the report is still ``pending`` or ``under_review`` it moves to
        ``reviewed``; the answer and the status change are one write, so both
        land or neither does.

        Raises:
            ForbiddenError:    actor is not a doctor/admin.
            InvalidStateError: no open request.
            ValidationError:   empty remarks or malformed answer.
            ConflictError:     lost a concurrent write.
        """
        self._require_clinician(actor, "answer review requests")

        if not isinstance(answer, ReviewAnswer):
            try:
                answer = ReviewAnswer.model_validate(answer)
            except SchemaError as exc:
                raise ValidationError(
                    "Malformed review answer.",
                    field="answer",
                    details={"errors": exc.errors(include_url=False, include_context=False)},
                ) from exc

        report = self._load(report_id, expected_version)
        current = report.doctor_review
        if current.state != ReviewState.requested:
            raise InvalidStateError(
                f"Report {report_id} has no open review request.",
                state=current.state.value,
            )
        if not answer.remarks or not answer.remarks.strip():
            raise ValidationError("Review remarks are required.", field="remarks")

        report.doctor_review = ReviewRequest.model_validate(
            {
                **current.model_dump(),
                "state": ReviewState.answered,
                "reviewer_id": actor.actor_id,
                "answered_at": utcnow(),
                "remarks": answer.remarks.strip(),
                "recommendation": answer.recommendation,
                "action_required": answer.action_required,
                "agreed_with_ai": answer.agreed_with_ai,
            }
        )

        detail = f"action={answer.action_required.value}"
        if report.status in (ReportStatus.pending, ReportStatus.under_review):
            from_status, to_status = self._apply_transition(report, actor, ReportStatus.reviewed)
            detail += f"; {from_status.value}->{to_status.value}"

        stored = self._save(report, actor.actor_id, "review_answered", detail=detail)
        logger.info(
            "Review on report %s answered by %s (status=%s)",
            report_id, actor.actor_id, stored.status.value,
        )
        return stored

    def list_pending_reviews(
        self,
        search_term: str | None = None,
        sort_by: str = "requested",
        sort_order: str = "desc",
    ) -> list[Report]:
        """Open review requests, most recent request first by default."""
        open_requests = self.store.query(filter={"review_state": ReviewState.requested})
        return aggregation.pending_reviews(
            open_requests, sort_by=sort_by, sort_order=sort_order, search_term=search_term
        )

    # -----------------------------------------------------------------------
    # Role-scoped read surface
    # -----------------------------------------------------------------------

    def _visible_reports(self, actor: ActorContext | None) -> list[Report]:
        if actor is not None and actor.actor_role == ActorRole.patient:
            return self.store.query(filter={"reporter_id": actor.actor_id})
        return self.store.query()

    def dashboard_stats(
        self, actor: ActorContext | None = None, now: datetime | None = None
    ) -> DashboardStats:
        """Dashboard counters; a patient only sees their own reports counted."""
        return aggregation.dashboard_stats(
            self._visible_reports(actor),
            now=now,
            window_days=self.settings.stats_window_days,
        )

    def list_reports(
        self,
        actor: ActorContext | None = None,
        status_filter: ReportStatus | str | None = None,
        search_term: str | None = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        page: int = 1,
        page_size: int | None = None,
        severity_filter: Severity | str | Iterable[Severity | str] | None = None,
        medicine_filter: str | None = None,
    ) -> Page:
        """Filtered, sorted and paginated report list for the current actor."""
        reports = aggregation.filter_and_sort(
            self._visible_reports(actor),
            status_filter=status_filter,
            search_term=search_term,
            sort_by=sort_by,
            sort_order=sort_order,
            severity_filter=severity_filter,
            medicine_filter=medicine_filter,
        )
        return aggregation.paginate(reports, page, page_size or self.settings.default_page_size)
