"""
Unit Tests for the Doctor-Review Request Workflow
"""
import pytest

from storage.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    ValidationError,
)
from storage.models import ActionRequired, ReportStatus, ReviewAnswer, ReviewState


S = ReportStatus

ANSWER = ReviewAnswer(
    remarks="Likely NSAID gastropathy; stop aspirin.",
    recommendation="Switch to paracetamol for pain.",
    action_required=ActionRequired.stop_medication,
    agreed_with_ai=True,
)


class TestRequestReview:

    def test_owner_requests_review(self, manager, patient, submitted):
        report = submitted(severities=("severe",), medicine="Aspirin")
        stored = manager.request_review(report.id, patient, "  Blood in stool. ")

        review = stored.doctor_review
        assert review.state == ReviewState.requested
        assert review.requested_by == patient.actor_id
        assert review.request_reason == "Blood in stool."
        assert review.requested_at is not None
        assert review.reviewer_id is None
        assert stored.status == S.pending

    def test_other_patient_forbidden(self, manager, other_patient, submitted):
        report = submitted()
        with pytest.raises(ForbiddenError):
            manager.request_review(report.id, other_patient)

    def test_doctor_may_request(self, manager, doctor, submitted):
        report = submitted()
        assert manager.request_review(report.id, doctor).doctor_review.state == ReviewState.requested

    def test_duplicate_request_refused(self, manager, patient, submitted):
        report = submitted()
        manager.request_review(report.id, patient)
        with pytest.raises(InvalidStateError):
            manager.request_review(report.id, patient)

    @pytest.mark.parametrize("closed", [S.rejected, S.confirmed])
    def test_closed_reports_refuse_requests(self, manager, patient, doctor, submitted, closed):
        report = submitted()
        if closed == S.confirmed:
            manager.transition(report.id, doctor, S.under_review)
        manager.transition(report.id, doctor, closed)
        with pytest.raises(InvalidStateError):
            manager.request_review(report.id, patient)


class TestAnswerReview:

    def test_answer_moves_pending_to_reviewed(self, manager, patient, doctor, submitted):
        report = submitted(severities=("severe",), medicine="Aspirin")
        manager.request_review(report.id, patient, "Is this serious?")

        stored = manager.answer_review(report.id, doctor, ANSWER)

        review = stored.doctor_review
        assert review.state == ReviewState.answered
        assert review.reviewer_id == doctor.actor_id
        assert review.answered_at is not None
        assert review.remarks == ANSWER.remarks
        assert review.action_required == ActionRequired.stop_medication
        assert review.request_reason == "Is this serious?"
        assert stored.status == S.reviewed

        audit = manager.store.list_audit(report.id)[-1]
        assert audit.action == "review_answered"
        assert "pending->reviewed" in audit.detail

    def test_answer_from_under_review(self, manager, patient, doctor, submitted):
        report = submitted()
        manager.transition(report.id, patient, S.under_review)
        manager.request_review(report.id, patient)
        assert manager.answer_review(report.id, doctor, ANSWER).status == S.reviewed

    def test_answer_keeps_reviewed_status(self, manager, patient, doctor, submitted):
        report = submitted()
        manager.transition(report.id, doctor, S.reviewed)
        manager.request_review(report.id, patient)
        stored = manager.answer_review(report.id, doctor, ANSWER)
        assert stored.status == S.reviewed
        assert stored.doctor_review.state == ReviewState.answered

    def test_answer_and_status_change_are_one_write(self, manager, patient, doctor, submitted):
        report = submitted()
        requested = manager.request_review(report.id, patient)
        stored = manager.answer_review(report.id, doctor, ANSWER)
        assert stored.version == requested.version + 1

    def test_answer_accepts_mapping(self, manager, patient, doctor, submitted):
        report = submitted()
        manager.request_review(report.id, patient)
        stored = manager.answer_review(report.id, doctor, {"remarks": "Monitor for a week.", "action_required": "monitor"})
        assert stored.doctor_review.action_required == ActionRequired.monitor
        assert stored.doctor_review.agreed_with_ai is True

    def test_patient_cannot_answer(self, manager, patient, submitted):
        report = submitted()
        manager.request_review(report.id, patient)
        with pytest.raises(ForbiddenError):
            manager.answer_review(report.id, patient, ANSWER)

    @pytest.mark.parametrize("remarks", ["", "   "])
    def test_empty_remarks(self, manager, patient, doctor, submitted, remarks):
        report = submitted()
        manager.request_review(report.id, patient)
        with pytest.raises(ValidationError) as exc_info:
            manager.answer_review(report.id, doctor, ReviewAnswer(remarks=remarks))
        assert exc_info.value.field == "remarks"

        stored = manager.store.get(report.id)
        assert stored.doctor_review.state == ReviewState.requested
        assert stored.status == S.pending

    def test_malformed_answer(self, manager, patient, doctor, submitted):
        report = submitted()
        manager.request_review(report.id, patient)
        with pytest.raises(ValidationError):
            manager.answer_review(report.id, doctor, {"remarks": "ok", "action_required": "pray"})

    def test_no_open_request(self, manager, doctor, submitted):
        report = submitted()
        with pytest.raises(InvalidStateError):
            manager.answer_review(report.id, doctor, ANSWER)

    def test_second_answer_refused(self, manager, patient, doctor, admin, submitted):
        report = submitted()
        manager.request_review(report.id, patient)
        manager.answer_review(report.id, doctor, ANSWER)
        with pytest.raises(InvalidStateError):
            manager.answer_review(report.id, admin, ANSWER)

    def test_concurrent_answers_conflict(self, manager, patient, doctor, admin, submitted):
        report = submitted()
        seen = manager.request_review(report.id, patient)

        manager.answer_review(report.id, doctor, ANSWER, expected_version=seen.version)
        with pytest.raises(ConflictError):
            manager.answer_review(report.id, admin, ANSWER, expected_version=seen.version)

        stored = manager.store.get(report.id)
        assert stored.doctor_review.reviewer_id == doctor.actor_id


class TestRequestAndStatusCoupling:

    @pytest.mark.parametrize("target", [S.rejected, S.confirmed])
    def test_open_request_blocks_closing(self, manager, patient, doctor, submitted, target):
        report = submitted()
        manager.transition(report.id, doctor, S.under_review)
        manager.request_review(report.id, patient)
        with pytest.raises(InvalidStateError):
            manager.transition(report.id, doctor, target)

    def test_open_request_allows_reviewed(self, manager, patient, doctor, submitted):
        report = submitted()
        manager.request_review(report.id, patient)
        stored = manager.transition(report.id, doctor, S.reviewed)
        assert stored.status == S.reviewed
        assert stored.doctor_review.state == ReviewState.requested

    def test_answered_never_leaves_report_pending(self, manager, patient, doctor, submitted):
        for _ in range(3):
            report = submitted()
            manager.request_review(report.id, patient)
            manager.answer_review(report.id, doctor, ANSWER)

        for report in manager.store.all():
            if report.doctor_review.state == ReviewState.answered:
                assert report.status not in (S.pending, S.under_review)


class TestReRequest:

    def test_previous_answer_moves_to_history(self, manager, patient, doctor, submitted):
        report = submitted()
        manager.request_review(report.id, patient, "first")
        manager.answer_review(report.id, doctor, ANSWER)

        stored = manager.request_review(report.id, patient, "still hurts")
        assert stored.doctor_review.state == ReviewState.requested
        assert stored.doctor_review.request_reason == "still hurts"
        assert len(stored.review_history) == 1
        assert stored.review_history[0].remarks == ANSWER.remarks


class TestPendingQueue:

    def test_only_open_requests_listed(self, manager, patient, doctor, submitted):
        waiting = submitted(medicine="Aspirin")
        answered = submitted(medicine="Metformin")
        submitted(medicine="Omeprazole")

        manager.request_review(waiting.id, patient)
        manager.request_review(answered.id, patient)
        manager.answer_review(answered.id, doctor, ANSWER)

        assert [r.id for r in manager.list_pending_reviews()] == [waiting.id]

    def test_most_recent_request_first(self, manager, patient, submitted):
        first = submitted()
        second = submitted()
        manager.request_review(second.id, patient)
        manager.request_review(first.id, patient)

        queue = manager.list_pending_reviews()
        assert [r.id for r in queue] == [first.id, second.id]

        queue = manager.list_pending_reviews(sort_order="asc")
        assert [r.id for r in queue] == [second.id, first.id]

    def test_queue_search(self, manager, patient, submitted):
        aspirin = submitted(medicine="Aspirin")
        other = submitted(medicine="Lisinopril")
        manager.request_review(aspirin.id, patient)
        manager.request_review(other.id, patient)

        assert [r.id for r in manager.list_pending_reviews(search_term="aspirin")] == [aspirin.id]
