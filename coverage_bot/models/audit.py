from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class AuditEventType(str, Enum):
    SESSION_START = "session_start"
    CONSENT_GIVEN = "consent_given"
    CONSENT_DECLINED = "consent_declined"
    DATA_ACCESS = "data_access"
    SESSION_END = "session_end"


class AuditEvent(BaseModel):
    """One entry of the HIPAA access trail. Details never carry patient data."""

    event_id: str
    timestamp: datetime
    event: AuditEventType
    session_id: str
    details: str = ""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}
