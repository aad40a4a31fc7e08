"""
Unit Tests for JSON / PDF Report Export
"""
import json

import pytest

from storage.errors import ForbiddenError, NotFoundError
from storage.export import _answered_reviews, export_json, export_pdf
from storage.models import ReviewAnswer


@pytest.fixture
def answered(manager, patient, doctor, submitted):
    report = submitted(severities=("severe",), medicine="Aspirin", effect="Stomach <bleeding>")
    manager.attach_triage(report.id, {
        "summary": "Probable NSAID-related GI bleed & anaemia.",
        "causalityAssessment": {"likelihood": "probable"},
        "patientGuidance": {"urgencyLevel": "urgent"},
        "recommendedActions": ["Stop aspirin", "Seek care today"],
    })
    manager.request_review(report.id, patient, "Is this serious?")
    return manager.answer_review(report.id, doctor, ReviewAnswer(
        remarks="Stop aspirin <now>.",
        action_required="stop_medication",
    ))


class TestExportJson:

    def test_bundle_contents(self, manager, patient, answered):
        bundle = json.loads(export_json(manager, answered.id, patient))

        assert bundle["report"]["id"] == answered.id
        assert bundle["report"]["status"] == "reviewed"
        assert bundle["report"]["priority"] == "high"
        assert bundle["report"]["overall_severity"] == "severe"
        assert bundle["medicine"]["name"] == "Aspirin"
        assert bundle["triage"]["patient_guidance"]["urgency_level"] == "urgent"
        assert bundle["doctor_review"]["state"] == "answered"
        assert bundle["doctor_review"]["action_required"] == "stop_medication"
        assert bundle["disclaimer"]

    def test_bundle_carries_causality_and_follow_ups(self, manager, patient, doctor, answered):
        manager.assess_causality(answered.id, doctor, category="probable", algorithm="WHO-UMC")
        manager.add_follow_up(answered.id, patient, "additional_information", "Stopped aspirin yesterday.")

        bundle = json.loads(export_json(manager, answered.id, patient))
        assert bundle["clinical_causality"]["category"] == "probable"
        assert bundle["clinical_causality"]["algorithm"] == "WHO-UMC"
        assert [f["description"] for f in bundle["follow_ups"]] == ["Stopped aspirin yesterday."]

    def test_export_is_audited(self, manager, doctor, answered):
        export_json(manager, answered.id, doctor)
        entry = manager.store.list_audit(answered.id)[-1]
        assert entry.action == "export_json"
        assert entry.actor_id == doctor.actor_id

    def test_other_patient_forbidden(self, manager, other_patient, answered):
        with pytest.raises(ForbiddenError):
            export_json(manager, answered.id, other_patient)

    def test_unknown_report(self, manager, doctor):
        with pytest.raises(NotFoundError):
            export_json(manager, "missing", doctor)


class TestExportPdf:

    def test_pdf_bytes(self, manager, patient, answered):
        pdf = export_pdf(manager, answered.id, patient)
        assert pdf.startswith(b"%PDF")
        assert manager.store.list_audit(answered.id)[-1].action == "export_pdf"

    def test_pdf_without_triage_or_review(self, manager, doctor, submitted):
        report = submitted()
        assert export_pdf(manager, report.id, doctor).startswith(b"%PDF")

    def test_other_patient_forbidden(self, manager, other_patient, answered):
        with pytest.raises(ForbiddenError):
            export_pdf(manager, answered.id, other_patient)

    def test_pdf_with_causality_and_follow_ups(self, manager, patient, doctor, answered):
        manager.assess_causality(answered.id, doctor, category="certain", comments="Positive <rechallenge>.")
        manager.add_follow_up(answered.id, patient, "correction", "Dose was 300mg & daily.")
        assert export_pdf(manager, answered.id, patient).startswith(b"%PDF")


class TestReviewHistoryInExport:
    """Earlier answered reviews stay in the handoff after a re-request."""

    @pytest.fixture
    def re_requested(self, manager, patient, doctor, answered):
        manager.request_review(answered.id, patient, "Pain came back.")
        return manager.answer_review(answered.id, doctor, ReviewAnswer(remarks="Restart at half dose."))

    def test_every_answered_review_is_rendered(self, re_requested):
        reviews = _answered_reviews(re_requested)
        assert [r.remarks for r in reviews] == ["Stop aspirin <now>.", "Restart at half dose."]

    def test_open_request_is_not_rendered_as_answer(self, manager, patient, answered):
        reopened = manager.request_review(answered.id, patient, "Another question.")
        reviews = _answered_reviews(reopened)
        assert [r.remarks for r in reviews] == ["Stop aspirin <now>."]

    def test_pdf_after_re_request(self, manager, patient, re_requested):
        assert export_pdf(manager, re_requested.id, patient).startswith(b"%PDF")

    def test_json_keeps_history(self, manager, patient, re_requested):
        bundle = json.loads(export_json(manager, re_requested.id, patient))
        assert [r["remarks"] for r in bundle["review_history"]] == ["Stop aspirin <now>."]
        assert bundle["doctor_review"]["remarks"] == "Restart at half dose."
