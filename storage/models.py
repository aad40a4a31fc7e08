"""
storage/models.py

Pydantic v2 data models for the ADR report lifecycle and review workflow.

These models describe the shape of data flowing between the engine
(report_manager.py), the aggregation pipelines and the store adapter.  They
are NOT ORM models; persistence is handled entirely by db.py, which stores
each ``Report`` as one encrypted JSON document.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ActorRole(str, Enum):
    """Roles an authenticated actor can hold."""
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


class ReportStatus(str, Enum):
    """Lifecycle states of an ADR report."""
    pending = "pending"
    under_review = "under_review"
    reviewed = "reviewed"
    confirmed = "confirmed"
    rejected = "rejected"
    archived = "archived"


class Severity(str, Enum):
    mild = "mild"
    moderate = "moderate"
    severe = "severe"
    life_threatening = "life-threatening"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class UrgencyLevel(str, Enum):
    """Patient-facing urgency emitted by the triage producer."""
    routine = "routine"
    soon = "soon"
    urgent = "urgent"


class CausalityLikelihood(str, Enum):
    certain = "certain"
    probable = "probable"
    possible = "possible"
    unlikely = "unlikely"
    unassessable = "unassessable"


class ReviewState(str, Enum):
    """States of the doctor-review request sub-workflow."""
    none = "none"
    requested = "requested"
    answered = "answered"


class ActionRequired(str, Enum):
    """What the reviewing doctor asks the patient to do."""
    none = "none"
    monitor = "monitor"
    adjust_dosage = "adjust_dosage"
    stop_medication = "stop_medication"
    seek_emergency = "seek_emergency"
    schedule_appointment = "schedule_appointment"


class CausalityAlgorithm(str, Enum):
    """Standardised causality method used by the assessing clinician."""
    who_umc = "WHO-UMC"
    naranjo = "Naranjo"
    cioms_rucam = "CIOMS/RUCAM"
    other = "Other"
    not_assessed = "Not assessed"


class CausalityCategory(str, Enum):
    certain = "certain"
    probable = "probable"
    possible = "possible"
    unlikely = "unlikely"
    conditional = "conditional"
    unassessable = "unassessable"
    unclassifiable = "unclassifiable"


class FollowUpType(str, Enum):
    additional_information = "additional_information"
    correction = "correction"
    follow_up_report = "follow_up_report"


# ---------------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------------


class ActorContext(BaseModel):
    """The already-authenticated caller of a mutating operation."""
    actor_id: str
    actor_role: ActorRole

    @property
    def is_clinician(self) -> bool:
        return self.actor_role in (ActorRole.doctor, ActorRole.admin)


# ---------------------------------------------------------------------------
# Report building blocks
# ---------------------------------------------------------------------------


class MedicineRef(BaseModel):
    """Reference to the suspected medicine; opaque to the engine."""
    name: str
    dosage: str | None = None
    route: str | None = None


class SideEffect(BaseModel):
    effect: str
    severity: Severity
    onset: str | None = None
    duration: str | None = None


class CausalityAssessment(BaseModel):
    likelihood: CausalityLikelihood = CausalityLikelihood.unassessable
    reasoning: str | None = None


class PatientGuidance(BaseModel):
    urgency_level: UrgencyLevel = UrgencyLevel.routine
    recommendation: str | None = None
    next_steps: list[str] = Field(default_factory=list)


class TriageMetadata(BaseModel):
    """
    Fixed-shape analysis produced by the external triage service.

    Scores are kept in whatever range the producer uses; only
    ``patient_guidance.urgency_level`` is interpreted by the engine.
    """
    summary: str = ""
    severity_score: float | None = None
    overall_risk_score: float | None = None
    causality_assessment: CausalityAssessment = Field(default_factory=CausalityAssessment)
    patient_guidance: PatientGuidance = Field(default_factory=PatientGuidance)
    recommended_actions: list[str] = Field(default_factory=list)
    model: str | None = Field(default=None, description="Producer model identifier.")


class TriageStatus(BaseModel):
    """Bookkeeping for triage ingestion attempts."""
    attempts: int = 0
    last_error: str | None = None
    processed_at: datetime | None = None


class ReviewRequest(BaseModel):
    """
    A patient's request for a doctor's opinion on one report.

    ``state == none`` is the "no request yet" variant; the record is always
    present on a report so callers never have to probe for missing fields.
    """
    state: ReviewState = ReviewState.none
    requested_at: datetime | None = None
    requested_by: str | None = None
    request_reason: str | None = None

    reviewer_id: str | None = None
    answered_at: datetime | None = None
    remarks: str | None = None
    recommendation: str | None = None
    action_required: ActionRequired | None = None
    agreed_with_ai: bool | None = None

    @model_validator(mode="after")
    def _check_consistency(self) -> "ReviewRequest":
        if (self.reviewer_id is None) != (self.answered_at is None):
            raise ValueError("reviewer_id and answered_at must be set together")
        if self.state == ReviewState.answered and self.reviewer_id is None:
            raise ValueError("an answered review needs reviewer_id and answered_at")
        if self.state == ReviewState.requested:
            if self.requested_at is None:
                raise ValueError("a requested review needs requested_at")
            if self.reviewer_id is not None:
                raise ValueError("a requested review cannot carry an answer yet")
        return self


class ReviewAnswer(BaseModel):
    """Input to ``answer_review``."""
    remarks: str
    recommendation: str | None = None
    action_required: ActionRequired = ActionRequired.none
    agreed_with_ai: bool = True


class WorkflowComment(BaseModel):
    author_id: str
    author_role: ActorRole
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class Workflow(BaseModel):
    comments: list[WorkflowComment] = Field(default_factory=list)


class ClinicalCausality(BaseModel):
    """
    A clinician's formal causality assessment.

    Kept apart from ``TriageMetadata.causality_assessment``, which is the
    triage producer's advisory guess.
    """
    algorithm: CausalityAlgorithm = CausalityAlgorithm.not_assessed
    score: float | None = None
    category: CausalityCategory
    comments: str | None = None
    assessed_by: str
    assessment_date: datetime = Field(default_factory=utcnow)


FOLLOW_UP_MAX_LENGTH = 500


class FollowUp(BaseModel):
    """Extra information added to a report after submission."""
    information_type: FollowUpType
    description: str = Field(max_length=FOLLOW_UP_MAX_LENGTH)
    reported_by: str
    reporter_role: ActorRole
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


class Report(BaseModel):
    """
    One adverse-drug-reaction report.

    ``status`` and ``priority`` are owned by the engine: ``submit`` overwrites
    whatever the caller put there, and every later write goes through
    report_manager.py.
    """
    id: str = Field(default_factory=lambda: uuid4().hex)
    reporter_id: str | None = None
    reporter_name: str | None = None
    medicine: MedicineRef
    side_effects: list[SideEffect] = Field(default_factory=list)

    status: ReportStatus = ReportStatus.pending
    priority: Priority = Priority.low

    triage: TriageMetadata | None = None
    triage_status: TriageStatus = Field(default_factory=TriageStatus)

    doctor_review: ReviewRequest = Field(default_factory=ReviewRequest)
    review_history: list[ReviewRequest] = Field(default_factory=list)

    workflow: Workflow = Field(default_factory=Workflow)
    clinical_causality: ClinicalCausality | None = None
    follow_ups: list[FollowUp] = Field(default_factory=list)

    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    """One row of the append-only audit log."""
    id: int
    actor_id: str
    action: str
    report_id: str | None = None
    detail: str | None = None
    timestamp: str


# ---------------------------------------------------------------------------
# Read-side result shapes
# ---------------------------------------------------------------------------


class DashboardStats(BaseModel):
    total: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    severe: int = 0
    high: int = 0
    this_week: int = 0


class Page(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total_items: int = 0
    total_pages: int = 0
