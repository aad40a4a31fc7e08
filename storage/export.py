"""
storage/export.py

Handoff export helpers: produce a JSON string or PDF bytes for one ADR report,
e.g. for a pharmacovigilance officer or the patient's own records.

Both exporters enforce the same access rule as ``ReportManager.get_report``
(patients only export their own reports) and write an audit row.

Dependencies
------------
- reportlab  (PDF generation)
- storage.report_manager  (data access)
"""

from __future__ import annotations

import html
import json
import logging
from io import BytesIO
from typing import Any

from pipelines.priority import max_severity
from storage.models import ActorContext, Report, ReviewRequest, utcnow
from storage.report_manager import ReportManager

logger = logging.getLogger(__name__)

_DISCLAIMER = (
    "Generated from a patient-submitted adverse drug reaction report. "
    "AI triage output is advisory and does not replace clinical judgement."
)


def _fmt(value: Any) -> str:
    if value is None or value == "":
        return "—"
    if hasattr(value, "value"):
        return str(value.value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


# ---------------------------------------------------------------------------
# Shared data fetch
# ---------------------------------------------------------------------------


def _answered_reviews(report: Report) -> list[ReviewRequest]:
    """Every answered review on *report*, earlier cycles first."""
    return [r for r in (*report.review_history, report.doctor_review) if r.reviewer_id is not None]


def _build_export_bundle(report: Report) -> dict[str, Any]:
    """Assemble all exportable data for a report."""
    worst = max_severity(report.side_effects)
    review = report.doctor_review
    return {
        "export_generated_at": utcnow().isoformat(),
        "report": {
            "id": report.id,
            "status": report.status.value,
            "priority": report.priority.value,
            "overall_severity": worst.value if worst else None,
            "reporter_id": report.reporter_id,
            "reporter_name": report.reporter_name,
            "created_at": report.created_at.isoformat(),
            "updated_at": report.updated_at.isoformat(),
        },
        "medicine": report.medicine.model_dump(mode="json"),
        "side_effects": [se.model_dump(mode="json") for se in report.side_effects],
        "triage": report.triage.model_dump(mode="json") if report.triage else None,
        "doctor_review": review.model_dump(mode="json"),
        "review_history": [r.model_dump(mode="json") for r in report.review_history],
        "clinical_causality": (
            report.clinical_causality.model_dump(mode="json") if report.clinical_causality else None
        ),
        "follow_ups": [f.model_dump(mode="json") for f in report.follow_ups],
        "comments": [c.model_dump(mode="json") for c in report.workflow.comments],
        "disclaimer": _DISCLAIMER,
    }


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def export_json(manager: ReportManager, report_id: str, requester: ActorContext) -> str:
    """
    Produce a pretty-printed JSON handoff for *report_id*.

    Raises:
        NotFoundError, ForbiddenError: as ``ReportManager.get_report``.
    """
    report = manager.get_report(report_id, requester)
    bundle = _build_export_bundle(report)
    manager.store.append_audit(requester.actor_id, "export_json", report_id=report_id)
    return json.dumps(bundle, indent=2, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# PDF export
# ---------------------------------------------------------------------------


def export_pdf(manager: ReportManager, report_id: str, requester: ActorContext) -> bytes:
    """
    Produce a PDF handoff for *report_id* using reportlab.

    Raises:
        NotFoundError, ForbiddenError: as ``ReportManager.get_report``.
    """
    from reportlab.lib import colors
    from reportlab.lib.pagesizes import LETTER
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.lib.units import inch
    from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

    report = manager.get_report(report_id, requester)
    bundle = _build_export_bundle(report)

    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=LETTER,
        leftMargin=inch,
        rightMargin=inch,
        topMargin=inch,
        bottomMargin=inch,
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "CustomTitle",
        parent=styles["Title"],
        fontSize=18,
        textColor=colors.HexColor("#1a3a5c"),
        spaceAfter=6,
    )
    heading_style = ParagraphStyle(
        "CustomHeading",
        parent=styles["Heading2"],
        fontSize=12,
        textColor=colors.HexColor("#1a3a5c"),
        spaceBefore=12,
        spaceAfter=4,
    )
    normal = styles["Normal"]
    small = ParagraphStyle("Small", parent=normal, fontSize=8, textColor=colors.grey)

    table_style = TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1a3a5c")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f0f4f8")]),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#cccccc")),
        ("LEFTPADDING", (0, 0), (-1, -1), 6),
        ("RIGHTPADDING", (0, 0), (-1, -1), 6),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ])

    meta = bundle["report"]
    medicine = bundle["medicine"]
    story = []

    # ---- Header ----
    story.append(Paragraph("Adverse Drug Reaction Report", title_style))
    story.append(Paragraph(f"Generated: {bundle['export_generated_at']}", small))
    story.append(Spacer(1, 0.15 * inch))

    # ---- Report metadata ----
    story.append(Paragraph("Report", heading_style))
    meta_data = [
        ["Field", "Value"],
        ["Report ID", meta["id"]],
        ["Status", meta["status"]],
        ["Priority", meta["priority"]],
        ["Overall severity", _fmt(meta["overall_severity"])],
        ["Medicine", " ".join(filter(None, [medicine["name"], medicine.get("dosage"), medicine.get("route")]))],
        ["Submitted", meta["created_at"]],
    ]
    meta_table = Table(meta_data, colWidths=[2 * inch, 4.5 * inch])
    meta_table.setStyle(table_style)
    story.append(meta_table)

    # ---- Side effects ----
    story.append(Paragraph("Side Effects", heading_style))
    se_data = [["Effect", "Severity", "Onset", "Duration"]] + [
        [se.effect, se.severity.value, _fmt(se.onset), _fmt(se.duration)]
        for se in report.side_effects
    ]
    se_table = Table(se_data, colWidths=[2.5 * inch, 1.3 * inch, 1.35 * inch, 1.35 * inch])
    se_table.setStyle(table_style)
    story.append(se_table)

    # ---- Triage ----
    if report.triage is not None:
        story.append(Paragraph("AI Triage", heading_style))
        story.append(Paragraph(html.escape(report.triage.summary or "No summary provided."), normal))
        story.append(Paragraph(
            f"<b>Urgency:</b> {report.triage.patient_guidance.urgency_level.value} &nbsp; "
            f"<b>Causality:</b> {report.triage.causality_assessment.likelihood.value}",
            normal,
        ))
        for action in report.triage.recommended_actions:
            story.append(Paragraph(f"• {html.escape(action)}", normal))

    # ---- Clinical causality ----
    causality = report.clinical_causality
    if causality is not None:
        story.append(Paragraph("Causality Assessment", heading_style))
        story.append(Paragraph(
            f"<b>Category:</b> {causality.category.value} &nbsp; "
            f"<b>Method:</b> {html.escape(causality.algorithm.value)} &nbsp; "
            f"<b>Score:</b> {_fmt(causality.score)}",
            normal,
        ))
        if causality.comments:
            story.append(Paragraph(html.escape(causality.comments), normal))

    # ---- Doctor reviews, oldest first ----
    answered = _answered_reviews(report)
    for i, review in enumerate(answered, start=1):
        title = "Doctor Review" if len(answered) == 1 else f"Doctor Review {i} of {len(answered)}"
        story.append(Paragraph(title, heading_style))
        story.append(Paragraph(f"Answered: {_fmt(review.answered_at)}", small))
        story.append(Paragraph(html.escape(review.remarks or ""), normal))
        story.append(Paragraph(
            f"<b>Action required:</b> {_fmt(review.action_required)} &nbsp; "
            f"<b>Agreed with AI:</b> {_fmt(review.agreed_with_ai)}",
            normal,
        ))
        if review.recommendation:
            story.append(Paragraph(f"<b>Recommendation:</b> {html.escape(review.recommendation)}", normal))

    # ---- Follow-ups ----
    if report.follow_ups:
        story.append(Paragraph("Follow-up Information", heading_style))
        fu_data = [["Date", "Type", "Description"]] + [
            [f.created_at.date().isoformat(), f.information_type.value.replace("_", " "),
             Paragraph(html.escape(f.description), normal)]
            for f in report.follow_ups
        ]
        fu_table = Table(fu_data, colWidths=[1.1 * inch, 1.5 * inch, 3.9 * inch])
        fu_table.setStyle(table_style)
        story.append(fu_table)

    # ---- Disclaimer ----
    story.append(Spacer(1, 0.3 * inch))
    story.append(Paragraph(bundle["disclaimer"], small))

    doc.build(story)
    manager.store.append_audit(requester.actor_id, "export_pdf", report_id=report_id)
    logger.info("Exported PDF for report %s to %s", report_id, requester.actor_id)
    return buf.getvalue()
