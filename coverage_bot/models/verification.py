from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from coverage_bot.models.patient import PatientRecord


class VerificationStatus(str, Enum):
    VERIFIED = "Verified"
    REVIEW_NEEDED = "Review Needed"
    PLAN_NOT_FOUND = "Plan Not Found"

    @classmethod
    def parse(cls, value: str) -> VerificationStatus:
        """Accept the wire spelling as well as the compact one ("ReviewNeeded")."""
        for status in cls:
            if value in (status.value, status.value.replace(" ", "")):
                return status
        raise ValueError(f"Unknown verification status: {value!r}")


class VerificationResult(BaseModel):
    status: VerificationStatus
    plan_name: str
    coverage_summary: str
    next_steps: str

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}


class SubmissionRecord(BaseModel):
    submission_id: str
    submitted_at: datetime
    patient_data: PatientRecord
    verification_result: VerificationResult
    session_id: str = ""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}
