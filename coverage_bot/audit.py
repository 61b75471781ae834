"""HIPAA access trail.

Every session start, consent decision, release of a patient record to the
verification oracle and session end is appended to a JSON file that staff can
review. Events identify sessions only by id.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from coverage_bot.config import settings
from coverage_bot.models.audit import AuditEvent, AuditEventType
from coverage_bot.models.session import utcnow

logger = logging.getLogger(__name__)

_EVENTS = TypeAdapter(list[AuditEvent])


def new_event_id() -> str:
    return f"audit_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class AuditLog:
    def __init__(self, path: Path | None = None):
        self.path = path or settings.audit_file

    def _read(self) -> list[AuditEvent]:
        if not self.path.exists():
            return []
        try:
            return _EVENTS.validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as exc:
            logger.error("Failed to read audit trail from %s: %s", self.path, exc)
            return []

    def _write(self, events: list[AuditEvent]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [e.model_dump(mode="json", by_alias=True) for e in events]
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def record(self, event: AuditEventType, session_id: str, details: str = "") -> AuditEvent:
        entry = AuditEvent(
            event_id=new_event_id(),
            timestamp=utcnow(),
            event=event,
            session_id=session_id,
            details=details,
        )
        events = self._read()
        events.append(entry)
        self._write(events)
        logger.info("[AUDIT] %s session=%s %s", event.value, session_id, details)
        return entry

    def events(self, session_id: str | None = None) -> list[AuditEvent]:
        """Events in the order they happened, optionally for one session."""
        events = self._read()
        if session_id is not None:
            events = [e for e in events if e.session_id == session_id]
        return events
