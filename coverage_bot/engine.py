"""Insurance verification conversation engine.

Drives one widget session through the verification flow:

    intro -> [consent] -> name -> dob -> provider -> policyId -> confirm
          -> submitting -> result | error -> end

Every user input is appended to the transcript before it is validated, and
every bot transition appends its own message. The session is saved to the
store after each transition except ``submitting``, so a reload during an
in-flight verification resumes at ``confirm``. Completed sessions (with a
result) are removed from the store and live only in memory until restart.
Sessions idle for longer than the policy TTL are treated as expired and
replaced by a fresh one.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from coverage_bot.audit import AuditLog
from coverage_bot.config import Settings, settings
from coverage_bot.models.audit import AuditEventType
from coverage_bot.models.patient import PatientRecord
from coverage_bot.models.session import (
    FIELD_STEPS,
    ConversationSession,
    Icon,
    MessageKind,
    Step,
)
from coverage_bot.models.verification import VerificationResult, VerificationStatus
from coverage_bot.oracle.base import OracleError, VerificationOracle
from coverage_bot.session import SessionStore, is_valid_key, new_session_id
from coverage_bot.submissions import SubmissionLog
from coverage_bot.validators import (
    InvalidInput,
    validate_date_of_birth,
    validate_name,
    validate_policy_id,
    validate_provider,
)

logger = logging.getLogger(__name__)

BOT = "bot"
USER = "user"

RESTART_ACTION = "restart"
CONSENT_ACTIONS = ["consent", "decline"]


class ConsentMode(str, Enum):
    IMPLICIT = "implicit"  # confirming the summary counts as consent
    EXPLICIT = "explicit"  # HIPAA consent is captured before any field


class RejectPolicy(str, Enum):
    RESTART = "restart"
    EDIT = "edit"


class EnginePolicy(BaseModel):
    consent_mode: ConsentMode = ConsentMode.IMPLICIT
    reject_policy: RejectPolicy = RejectPolicy.RESTART
    clear_on_close: bool = False
    oracle_timeout: float = 30.0
    session_ttl: float = 24 * 60 * 60
    admissions_phone: str = "(800) 555-0123"

    model_config = {"frozen": True}

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> EnginePolicy:
        config = config or settings
        return cls(
            consent_mode=ConsentMode(config.consent_mode),
            reject_policy=RejectPolicy(config.reject_policy),
            clear_on_close=config.clear_session_on_close,
            oracle_timeout=config.oracle_timeout_seconds,
            session_ttl=config.session_ttl_seconds,
            admissions_phone=config.admissions_phone,
        )


# step -> (PartialPatientRecord attribute, validator)
_FIELDS: dict[Step, tuple[str, Callable[[str], str]]] = {
    Step.NAME: ("name", validate_name),
    Step.DOB: ("date_of_birth", validate_date_of_birth),
    Step.PROVIDER: ("insurance_provider", validate_provider),
    Step.POLICY_ID: ("policy_id", validate_policy_id),
}

_NEXT_STEP = {
    Step.NAME: Step.DOB,
    Step.DOB: Step.PROVIDER,
    Step.PROVIDER: Step.POLICY_ID,
    Step.POLICY_ID: Step.CONFIRM,
}

# Checked in order; "policy" must win over "name" etc.
_EDIT_TARGETS = (
    ("policy", Step.POLICY_ID),
    ("member", Step.POLICY_ID),
    ("provider", Step.PROVIDER),
    ("insurance", Step.PROVIDER),
    ("dob", Step.DOB),
    ("birth", Step.DOB),
    ("date", Step.DOB),
    ("name", Step.NAME),
)

RESTART_KEYWORDS = ("restart", "start over", "try again", "new verification")

_RESULT_DISPLAY = {
    VerificationStatus.VERIFIED: ("Benefits Verified", Icon.CHECK),
    VerificationStatus.REVIEW_NEEDED: ("Review Needed", Icon.WARNING),
    VerificationStatus.PLAN_NOT_FOUND: ("Plan Not Found", Icon.CROSS),
}

NAME_QUESTION = "To get started, what is your full name?"
OPENINGS = {
    "new": (
        "Hello! I'm an AI assistant. I can help you verify your insurance coverage "
        f"in just a few steps. {NAME_QUESTION}"
    ),
    "returning": "Welcome back! Let's start a new insurance verification. To begin, what is your full name?",
    "restart": f"Let's start over. {NAME_QUESTION}",
    "expired": (
        "Your previous session expired for security reasons. Let's start a new verification. "
        f"{NAME_QUESTION}"
    ),
}
CONSENT_INTRO = (
    "Hello! I'm your secure insurance verification assistant. I can help you verify your "
    "insurance coverage for our treatment programs. All information is transmitted securely "
    "and handled in line with HIPAA. To begin, I'll need your consent to process your health "
    'information. Reply "I agree" to continue.'
)
CONSENT_REPROMPT = 'Please reply "I agree" to give your consent, or "no" to decline.'
EDIT_CHOICE_PROMPT = (
    "Which information would you like to change? Say 'name', 'dob', 'provider', "
    "or 'policy' to update that field."
)
SUBMITTING_TEXT = "Thank you. Verifying your benefits now, please wait a moment..."
END_TEXT = (
    "I'm glad I could assist you. A member of our team will be in touch shortly based on "
    "the next steps provided. You can now close this window."
)


def is_affirmative(text: str) -> bool:
    lowered = text.strip().lower()
    return lowered.startswith("y") or "confirm" in lowered


def is_confirmation(text: str) -> bool:
    """Stricter than :func:`is_affirmative`: "yes" or "confirm" as a whole word."""
    return re.search(r"\b(yes|confirm)\b", text.strip().lower()) is not None


def is_restart_request(text: str) -> bool:
    lowered = text.strip().lower()
    return any(keyword in lowered for keyword in RESTART_KEYWORDS)


def parse_consent(text: str) -> bool | None:
    """True for agreement, False for refusal, None when unclear."""
    lowered = text.strip().lower()
    if re.search(r"\b(no|not|don't|dont|decline|refuse)\b", lowered):
        return False
    if lowered.startswith("y") or any(word in lowered for word in ("agree", "consent", "accept")):
        return True
    return None


def _edit_target(text: str) -> Step | None:
    lowered = text.strip().lower()
    for keyword, step in _EDIT_TARGETS:
        if keyword in lowered:
            return step
    return None


CompletionCallback = Callable[[VerificationResult], Any]


class ConversationEngine:
    """State machine for one verification widget, keyed by *session_key*."""

    def __init__(
        self,
        session_key: str,
        store: SessionStore,
        oracle: VerificationOracle,
        policy: EnginePolicy | None = None,
        submissions: SubmissionLog | None = None,
        on_complete: CompletionCallback | None = None,
        audit: AuditLog | None = None,
    ):
        if not is_valid_key(session_key):
            raise ValueError(f"Invalid session key: {session_key!r}")
        self.session_key = session_key
        self.store = store
        self.oracle = oracle
        self.policy = policy or EnginePolicy()
        self.submissions = submissions
        self.on_complete = on_complete
        self.audit = audit
        self.is_open = False
        self._session: ConversationSession | None = None
        # Session whose verification call is awaiting the oracle
        self._pending: ConversationSession | None = None

    # ------------------------------------------------------------------
    # Host integration
    # ------------------------------------------------------------------

    @property
    def session(self) -> ConversationSession:
        if self._session is None:
            self._session = self._load_or_create()
        return self._session

    @property
    def in_flight(self) -> bool:
        """Whether the current session is waiting on the oracle.

        A call abandoned by :meth:`restart` does not count.
        """
        return self._pending is not None and self._pending is self._session

    @property
    def last_activity(self) -> datetime | None:
        return self._session.last_activity_at if self._session is not None else None

    def is_idle(self, now: datetime | None = None) -> bool:
        if self.in_flight:
            return False
        return self._session is None or self._session.is_expired(self.policy.session_ttl, now)

    def open(self, returning: bool = False) -> ConversationSession:
        self.is_open = True
        if self._session is None:
            self._session = self._load_or_create(returning)
        elif not self.in_flight and self._session.is_expired(self.policy.session_ttl):
            self._expire(self._session)
        return self._session

    def close(self) -> None:
        """Hide the widget. An in-flight verification is left to finish on its own."""
        self.is_open = False
        if self._session is not None:
            self._audit(AuditEventType.SESSION_END, "Widget closed", self._session)
        if self.policy.clear_on_close:
            self.store.clear(self.session_key)
            self._session = None
        else:
            self._persist()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def handle_input(self, text: str) -> ConversationSession:
        session = self.session
        text = text.strip()
        if not text:
            return session

        if self.in_flight or session.step == Step.SUBMITTING:
            logger.warning("Ignoring input for session %s while verification is in flight", session.session_id)
            return session

        if is_restart_request(text):
            return self.restart()

        if session.is_terminal:
            self._handle_terminal_input(text)
            return self.session

        session.append(USER, text, kind=MessageKind.ANSWER)

        if session.step == Step.CONSENT:
            self._handle_consent_text(text)
        elif session.step in FIELD_STEPS:
            self._handle_field(text)
        elif session.step == Step.CONFIRM:
            await self._handle_confirm(text)
        else:
            logger.warning("Session %s received input in unexpected step %s", session.session_id, session.step)
            session.append(BOT, "I didn't understand that. Please follow the prompts above.", kind=MessageKind.NOTICE)
            self._persist()

        return self.session

    def give_consent(self, granted: bool) -> ConversationSession:
        session = self.session
        if session.step != Step.CONSENT:
            logger.debug("Consent ignored for session %s in step %s", session.session_id, session.step)
            return session
        if granted:
            session.append(USER, "I consent to the use of my health information for insurance verification.",
                           kind=MessageKind.ANSWER)
        else:
            session.append(USER, "I do not consent to the use of my health information.", kind=MessageKind.ANSWER)
        self._apply_consent(granted)
        return session

    def restart(self) -> ConversationSession:
        previous = self._session
        if previous is not None:
            self._audit(AuditEventType.SESSION_END, "Restarted by user", previous)
        self.store.clear(self.session_key)
        self._session = None
        session = self._new_session("restart")
        logger.info(
            "Restarted verification %s -> %s",
            previous.session_id if previous else None,
            session.session_id,
        )
        return session

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _load_or_create(self, returning: bool = False) -> ConversationSession:
        session = self.store.load(self.session_key)
        if session is None or session.step == Step.INTRO:
            return self._new_session("returning" if returning else "new")
        if session.is_expired(self.policy.session_ttl):
            return self._expire(session)
        if session.step == Step.SUBMITTING:
            session.step = Step.CONFIRM
        logger.info("Resumed session %s at step %s", session.session_id, session.step.value)
        return session

    def _new_session(self, reason: str) -> ConversationSession:
        session = ConversationSession(session_id=new_session_id())
        self._session = session
        if self.policy.consent_mode == ConsentMode.EXPLICIT:
            session.step = Step.CONSENT
            text = CONSENT_INTRO
            if reason == "restart":
                text = "Let's start over. " + text
            elif reason == "returning":
                text = "Welcome back! " + text
            elif reason == "expired":
                text = "Your previous session expired for security reasons. " + text
            session.append(BOT, text, icon=Icon.SHIELD, actions=list(CONSENT_ACTIONS))
        else:
            session.step = Step.NAME
            session.append(BOT, OPENINGS[reason])
        self._audit(AuditEventType.SESSION_START, f"Verification session started ({reason})", session)
        self._persist()
        return session

    def _expire(self, stale: ConversationSession) -> ConversationSession:
        logger.info("Session %s expired after %.0fs idle", stale.session_id, self.policy.session_ttl)
        self._audit(AuditEventType.SESSION_END, "Session expired", stale)
        self.store.clear(self.session_key)
        self._session = None
        return self._new_session("expired")

    def _prompt_for(self, step: Step) -> str:
        fields = self.session.collected_fields
        if step == Step.NAME:
            return NAME_QUESTION
        if step == Step.DOB:
            return f"Thanks, {fields.name}. What is your date of birth? (MM/DD/YYYY)"
        if step == Step.PROVIDER:
            return "Great. Which insurance provider do you have? (e.g., Aetna, Blue Cross)"
        if step == Step.POLICY_ID:
            return "Almost there. What is your Policy or Member ID?"
        raise ValueError(f"No prompt for step {step}")

    def _handle_consent_text(self, text: str) -> None:
        answer = parse_consent(text)
        if answer is None:
            self.session.append(BOT, CONSENT_REPROMPT, kind=MessageKind.VALIDATION,
                                icon=Icon.SHIELD, actions=list(CONSENT_ACTIONS))
            self._persist()
            return
        self._apply_consent(answer)

    def _apply_consent(self, granted: bool) -> None:
        session = self.session
        if granted:
            session.consent_given = True
            self._audit(AuditEventType.CONSENT_GIVEN, "Patient consented to processing of health information")
            if session.return_to_confirm and session.collected_fields.is_complete():
                session.return_to_confirm = False
                self._enter_confirm()
            else:
                session.step = Step.NAME
                session.append(BOT, f"Thank you for your consent. {NAME_QUESTION}")
        else:
            self._audit(AuditEventType.CONSENT_DECLINED, "Patient declined consent")
            session.step = Step.END
            session.append(
                BOT,
                "I understand. Without consent, we cannot proceed with insurance verification. "
                f"You may still contact our admissions team directly at {self.policy.admissions_phone} "
                "for assistance.",
                kind=MessageKind.NOTICE,
                actions=[RESTART_ACTION],
            )
        self._persist()

    def _handle_field(self, text: str) -> None:
        session = self.session
        step = session.step
        attr, validator = _FIELDS[step]
        try:
            value = validator(text)
        except InvalidInput as exc:
            session.append(BOT, exc.message, kind=MessageKind.VALIDATION)
            self._persist()
            return

        setattr(session.collected_fields, attr, value)
        next_step = _NEXT_STEP[step]
        if session.return_to_confirm:
            session.return_to_confirm = False
            next_step = Step.CONFIRM

        if next_step == Step.CONFIRM:
            self._enter_confirm()
        else:
            session.step = next_step
            session.append(BOT, self._prompt_for(next_step))
        self._persist()

    def _enter_confirm(self) -> None:
        session = self.session
        fields = session.collected_fields
        lines = [
            "Perfect. Please review your information:",
            f"- Name: {fields.name}",
            f"- Date of Birth: {fields.date_of_birth}",
            f"- Provider: {fields.insurance_provider}",
            f"- Policy ID: {fields.policy_id}",
        ]
        if self.policy.consent_mode == ConsentMode.IMPLICIT:
            lines.append("By confirming, you agree to let us use this information to verify your benefits.")
        if self.policy.reject_policy == RejectPolicy.EDIT:
            lines.append('Type "confirm" to proceed or "edit" to make changes.')
        else:
            lines.append("Is this all correct? (Yes/No)")
        session.step = Step.CONFIRM
        session.append(BOT, "\n".join(lines), kind=MessageKind.SUMMARY)

    def _is_confirmed(self, text: str) -> bool:
        # With edits on offer, "you got my name wrong" must not read as a yes.
        if self.policy.reject_policy == RejectPolicy.EDIT:
            return is_confirmation(text)
        return is_affirmative(text)

    async def _handle_confirm(self, text: str) -> None:
        session = self.session

        if session.choosing_edit_field:
            target = _edit_target(text)
            if target is None and self._is_confirmed(text):
                session.choosing_edit_field = False
                await self._submit()
            elif target is None:
                session.append(BOT, EDIT_CHOICE_PROMPT, kind=MessageKind.VALIDATION)
                self._persist()
            else:
                session.choosing_edit_field = False
                session.return_to_confirm = True
                setattr(session.collected_fields, _FIELDS[target][0], None)
                session.step = target
                session.append(BOT, self._prompt_for(target))
                self._persist()
            return

        if self._is_confirmed(text):
            await self._submit()
            return

        if self.policy.reject_policy == RejectPolicy.RESTART:
            self.restart()
            return

        if re.search(r"\b(edit|change|no|wrong|fix)\b", text.lower()):
            session.choosing_edit_field = True
            session.append(BOT, EDIT_CHOICE_PROMPT)
        else:
            session.append(
                BOT,
                "Please type 'confirm' to proceed with verification or 'edit' to make changes.",
                kind=MessageKind.VALIDATION,
            )
        self._persist()

    async def _submit(self) -> None:
        session = self.session

        if session.result is not None:
            session.append(BOT, "This verification is already complete. Start a new verification to check again.",
                           kind=MessageKind.NOTICE, actions=[RESTART_ACTION])
            return

        if not session.consent_given:
            if self.policy.consent_mode == ConsentMode.IMPLICIT:
                session.consent_given = True
                self._audit(AuditEventType.CONSENT_GIVEN, "Patient confirmed the summary, which counts as consent")
            else:
                session.step = Step.CONSENT
                session.return_to_confirm = True
                session.append(BOT, "Before we can verify your benefits, I need your consent. " + CONSENT_REPROMPT,
                               icon=Icon.SHIELD, actions=list(CONSENT_ACTIONS))
                self._persist()
                return

        if not session.collected_fields.is_complete():
            missing = next(
                step for step in FIELD_STEPS
                if not getattr(session.collected_fields, _FIELDS[step][0])
            )
            logger.warning("Session %s reached confirm without %s", session.session_id, missing.value)
            session.step = missing
            session.append(BOT, self._prompt_for(missing))
            self._persist()
            return

        record = session.collected_fields.to_record()
        session.step = Step.SUBMITTING
        session.append(BOT, SUBMITTING_TEXT, kind=MessageKind.STATUS)

        self._audit(AuditEventType.DATA_ACCESS, "Patient record sent for insurance verification")
        self._pending = session
        try:
            result = await asyncio.wait_for(
                self.oracle.submit(record, session.consent_given),
                timeout=self.policy.oracle_timeout,
            )
        except (asyncio.TimeoutError, OracleError) as exc:
            logger.warning("Verification failed for session %s: %s: %s",
                           session.session_id, type(exc).__name__, exc)
            if self._session is session:
                self._fail()
            return
        except Exception:
            logger.exception("Unexpected verification failure for session %s", session.session_id)
            if self._session is session:
                self._fail()
            return
        finally:
            if self._pending is session:
                self._pending = None

        if self._session is not session:
            logger.info("Discarding result for abandoned session %s", session.session_id)
            return
        await self._complete(record, result)

    async def _complete(self, record: PatientRecord, result: VerificationResult) -> None:
        session = self.session
        session.result = result
        session.step = Step.RESULT

        title, icon = _RESULT_DISPLAY[result.status]
        session.append(
            BOT,
            f"{title}\n"
            f"Plan Name: {result.plan_name}\n"
            f"Coverage Summary: {result.coverage_summary}\n"
            f"Next Steps: {result.next_steps}",
            kind=MessageKind.RESULT,
            icon=icon,
        )
        if result.status == VerificationStatus.PLAN_NOT_FOUND:
            closing = "Our team will be in touch to help with your plan."
        else:
            closing = f"Our team will be in touch about your {result.plan_name} coverage."
        session.append(
            BOT,
            f"{closing} You can close this window now, or start a new verification.",
            kind=MessageKind.NOTICE,
            actions=[RESTART_ACTION],
        )
        logger.info("Verification %s completed: %s", session.session_id, result.status.value)

        self.store.clear(self.session_key)

        if self.submissions is not None:
            try:
                self.submissions.record(record, result, session_id=session.session_id)
            except OSError:
                logger.exception("Failed to save submission for session %s", session.session_id)

        if self.on_complete is not None:
            try:
                outcome = self.on_complete(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("on_complete callback failed for session %s", session.session_id)

    def _fail(self) -> None:
        session = self.session
        self._audit(AuditEventType.DATA_ACCESS, "Verification service error")
        session.result = None
        session.step = Step.ERROR
        session.append(
            BOT,
            "Verification Failed\n"
            "We encountered a problem verifying your insurance. Please double-check your "
            "information or contact our admissions team directly at "
            f"{self.policy.admissions_phone}.",
            kind=MessageKind.ERROR,
            icon=Icon.CROSS,
        )
        session.append(
            BOT,
            'Would you like to try again? Type "restart" to start a new verification.',
            kind=MessageKind.NOTICE,
            actions=[RESTART_ACTION],
        )
        self._persist()

    def _handle_terminal_input(self, text: str) -> None:
        session = self.session
        session.append(USER, text, kind=MessageKind.ANSWER)
        if session.step in (Step.RESULT, Step.ERROR):
            session.step = Step.END
            text = END_TEXT if session.result is not None else (
                "Our admissions team is available at "
                f"{self.policy.admissions_phone} if you need help before trying again."
            )
        else:
            text = 'This verification has ended. Type "restart" to start a new verification.'
        session.append(BOT, text, kind=MessageKind.NOTICE, actions=[RESTART_ACTION])
        self._persist()

    def _audit(self, event: AuditEventType, details: str, session: ConversationSession | None = None) -> None:
        if session is None:
            session = self._session
        if self.audit is None or session is None:
            return
        try:
            self.audit.record(event, session.session_id, details)
        except OSError:
            logger.exception("Failed to write audit event %s for session %s", event.value, session.session_id)

    def _persist(self) -> None:
        session = self._session
        if session is None or session.step == Step.SUBMITTING or session.result is not None:
            return
        try:
            self.store.save(self.session_key, session)
        except OSError:
            logger.exception("Failed to persist session %s", session.session_id)
