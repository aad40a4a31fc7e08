"""
storage/seed.py

Seed the report store with a handful of demo ADR reports that exercise the
main workflow paths: a severe report waiting for a doctor, a triaged mild
report, an answered review and a rejected duplicate.

Usage:
  python -m storage.seed            # seeds Settings.db_path
  python -m storage.seed --db /tmp/demo.db

Demo data only; no real PHI.
"""

import argparse
import logging
from pathlib import Path

from storage.config import get_settings
from storage.models import ActorContext, ActorRole, MedicineRef, Report, ReviewAnswer, SideEffect
from storage.report_manager import ReportManager
from storage.db import ReportStore

logger = logging.getLogger(__name__)

DEMO_PATIENT = ActorContext(actor_id="patient-demo", actor_role=ActorRole.patient)
DEMO_DOCTOR = ActorContext(actor_id="doctor-demo", actor_role=ActorRole.doctor)


def _demo_report(medicine: str, dosage: str, effects: list[tuple[str, str]]) -> Report:
    return Report(
        reporter_id=DEMO_PATIENT.actor_id,
        reporter_name="Demo Patient",
        medicine=MedicineRef(name=medicine, dosage=dosage, route="oral"),
        side_effects=[SideEffect(effect=e, severity=s, onset="within days") for e, s in effects],
    )


def seed_demo_reports(manager: ReportManager) -> list[Report]:
    """Create the demo scenarios and return the stored reports."""
    created: list[Report] = []

    # Severe GI bleed with an open review request.
    r = manager.submit(DEMO_PATIENT, _demo_report(
        "Aspirin", "100mg", [("Severe stomach pain and bleeding", "severe")],
    ))
    r = manager.request_review(r.id, DEMO_PATIENT, "Blood in stool since starting aspirin.")
    created.append(r)

    # Mild cough, triaged as "soon".
    r = manager.submit(DEMO_PATIENT, _demo_report("Lisinopril", "10mg", [("Dry cough", "mild")]))
    r = manager.attach_triage(r.id, {
        "summary": "Dry cough is a known ACE-inhibitor effect.",
        "causalityAssessment": {"likelihood": "Probable"},
        "patientGuidance": {"urgencyLevel": "soon"},
        "recommendedActions": ["Discuss alternatives with prescriber"],
    })
    created.append(r)

    # Moderate nausea, review answered by a doctor.
    r = manager.submit(DEMO_PATIENT, _demo_report("Metformin", "500mg", [("Nausea", "moderate")]))
    r = manager.transition(r.id, DEMO_DOCTOR, "under_review")
    r = manager.request_review(r.id, DEMO_PATIENT, "Is it safe to keep taking this?")
    r = manager.answer_review(r.id, DEMO_DOCTOR, ReviewAnswer(
        remarks="Common early effect; take with meals.",
        recommendation="Continue and monitor for two weeks.",
        action_required="monitor",
    ))
    created.append(r)

    # Duplicate submission, rejected.
    r = manager.submit(DEMO_PATIENT, _demo_report("Omeprazole", "20mg", [("Headache", "mild")]))
    r = manager.transition(r.id, DEMO_DOCTOR, "rejected", comment="Duplicate of an earlier report.")
    created.append(r)

    logger.info("Seeded %d demo reports into %s", len(created), manager.store.db_path)
    return created


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Seed demo ADR reports.")
    parser.add_argument("--db", type=Path, default=settings.db_path, help="SQLite file to seed")
    args = parser.parse_args()

    manager = ReportManager(store=ReportStore(args.db), settings=settings)
    for report in seed_demo_reports(manager):
        print(f"{report.id}  {report.status.value:<12} {report.priority.value:<6} {report.medicine.name}")


if __name__ == "__main__":
    main()
