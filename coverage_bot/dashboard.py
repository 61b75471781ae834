"""HTML rendering of the staff submissions dashboard."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from coverage_bot.models.verification import SubmissionRecord, VerificationStatus

TEMPLATES_DIR = Path(__file__).parent / "templates"

STATUS_CLASSES = {
    VerificationStatus.VERIFIED: "status-verified",
    VerificationStatus.REVIEW_NEEDED: "status-review",
    VerificationStatus.PLAN_NOT_FOUND: "status-not-found",
}


def status_counts(submissions: list[SubmissionRecord]) -> dict[str, int]:
    counts = {status.value: 0 for status in VerificationStatus}
    for record in submissions:
        counts[record.verification_result.status.value] += 1
    return counts


def render_dashboard(submissions: list[SubmissionRecord]) -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=True,
    )
    template = env.get_template("dashboard.html")

    rows = []
    for record in submissions:
        result = record.verification_result
        rows.append({
            "submission_id": record.submission_id,
            "submitted_at": record.submitted_at.strftime("%b %d, %Y %I:%M %p"),
            "patient": record.patient_data.model_dump(),
            "status": result.status.value,
            "status_class": STATUS_CLASSES[result.status],
            "plan_name": result.plan_name,
            "coverage_summary": result.coverage_summary,
            "next_steps": result.next_steps,
        })

    return template.render(
        submissions=rows,
        counts=status_counts(submissions),
        generated_date=datetime.now().strftime("%B %d, %Y"),
    )
