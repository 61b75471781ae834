from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from coverage_bot.models.patient import PartialPatientRecord
from coverage_bot.models.verification import VerificationResult


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Step(str, Enum):
    INTRO = "intro"
    CONSENT = "consent"
    NAME = "name"
    DOB = "dob"
    PROVIDER = "provider"
    POLICY_ID = "policyId"
    CONFIRM = "confirm"
    SUBMITTING = "submitting"
    RESULT = "result"
    ERROR = "error"
    END = "end"


FIELD_STEPS = (Step.NAME, Step.DOB, Step.PROVIDER, Step.POLICY_ID)
TERMINAL_STEPS = (Step.RESULT, Step.ERROR, Step.END)


class MessageKind(str, Enum):
    PROMPT = "prompt"
    ANSWER = "answer"
    VALIDATION = "validation"
    SUMMARY = "summary"
    STATUS = "status"
    RESULT = "result"
    ERROR = "error"
    NOTICE = "notice"


class Icon(str, Enum):
    """Tags for the widget to pick an icon; no markup is stored."""

    SHIELD = "shield-check"
    CHECK = "check-circle"
    WARNING = "exclamation-circle"
    CROSS = "x-circle"


class Message(BaseModel):
    id: int
    sender: str  # "bot" or "user"
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    kind: MessageKind = MessageKind.PROMPT
    icon: Icon | None = None
    actions: list[str] = Field(default_factory=list)  # e.g. ["restart"]

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class ConversationSession(BaseModel):
    session_id: str
    step: Step = Step.INTRO
    collected_fields: PartialPatientRecord = Field(default_factory=PartialPatientRecord)
    transcript: list[Message] = Field(default_factory=list)
    consent_given: bool = False
    result: VerificationResult | None = None
    # Edit-on-reject bookkeeping
    choosing_edit_field: bool = False
    return_to_confirm: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    def is_expired(self, ttl_seconds: float, now: datetime | None = None) -> bool:
        """True when the session has been idle for longer than *ttl_seconds*."""
        now = now or utcnow()
        return now - self.last_activity_at > timedelta(seconds=ttl_seconds)

    def append(
        self,
        sender: str,
        text: str,
        kind: MessageKind = MessageKind.PROMPT,
        icon: Icon | None = None,
        actions: list[str] | None = None,
    ) -> Message:
        message = Message(
            id=len(self.transcript) + 1,
            sender=sender,
            text=text,
            kind=kind,
            icon=icon,
            actions=actions or [],
        )
        self.transcript.append(message)
        self.last_activity_at = message.timestamp
        return message
