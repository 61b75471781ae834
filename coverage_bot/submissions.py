from __future__ import annotations

import json
import logging
import secrets
import time
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from coverage_bot.config import settings
from coverage_bot.models.patient import PatientRecord
from coverage_bot.models.session import utcnow
from coverage_bot.models.verification import SubmissionRecord, VerificationResult

logger = logging.getLogger(__name__)

_RECORDS = TypeAdapter(list[SubmissionRecord])


def new_submission_id() -> str:
    return f"ins_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class SubmissionLog:
    """Completed verifications, appended to a JSON file for the staff dashboard."""

    def __init__(self, path: Path | None = None):
        self.path = path or settings.submissions_file

    def _read(self) -> list[SubmissionRecord]:
        if not self.path.exists():
            return []
        try:
            return _RECORDS.validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as exc:
            logger.error("Failed to read submissions from %s: %s", self.path, exc)
            return []

    def _write(self, records: list[SubmissionRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [r.model_dump(mode="json", by_alias=True) for r in records]
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def record(
        self,
        patient: PatientRecord,
        result: VerificationResult,
        session_id: str = "",
    ) -> SubmissionRecord:
        entry = SubmissionRecord(
            submission_id=new_submission_id(),
            submitted_at=utcnow(),
            patient_data=patient,
            verification_result=result,
            session_id=session_id,
        )
        records = self._read()
        records.append(entry)
        self._write(records)
        logger.info("Saved submission %s (%s)", entry.submission_id, result.status.value)
        return entry

    def list(self) -> list[SubmissionRecord]:
        """All submissions, newest first."""
        return list(reversed(self._read()))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
