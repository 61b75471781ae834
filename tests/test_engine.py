"""Tests for the verification conversation engine.

A stub oracle stands in for the verification backend so every transition can
be exercised without network access.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from coverage_bot.audit import AuditLog
from coverage_bot.config import Settings
from coverage_bot.engine import (
    ConsentMode,
    ConversationEngine,
    EnginePolicy,
    RejectPolicy,
    is_affirmative,
    is_confirmation,
    is_restart_request,
    parse_consent,
)
from coverage_bot.models.audit import AuditEventType
from coverage_bot.models.patient import PartialPatientRecord
from coverage_bot.models.session import ConversationSession, Icon, MessageKind, Step, utcnow
from coverage_bot.models.verification import VerificationResult, VerificationStatus
from coverage_bot.oracle.base import NetworkError, ServiceError
from coverage_bot.session import InMemorySessionStore
from coverage_bot.submissions import SubmissionLog

KEY = "test-key"
ANSWERS = ["Jane Doe", "04/12/1990", "Aetna", "AETNA123456"]

GOLD_PPO = VerificationResult(
    status=VerificationStatus.VERIFIED,
    plan_name="Aetna Gold PPO",
    coverage_summary="Covers IOP services at 80% after a $500 deductible is met.",
    next_steps="Our admissions team will call you to confirm your benefits and next steps.",
)


class StubOracle:
    def __init__(self, result: VerificationResult = GOLD_PPO, error: Exception | None = None):
        self.result = result
        self.error = error
        self.gate: asyncio.Event | None = None
        self.calls = []

    async def submit(self, record, consent):
        self.calls.append((record, consent))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def _make_engine(
    oracle: StubOracle | None = None,
    policy: EnginePolicy | None = None,
    store: InMemorySessionStore | None = None,
    **kwargs,
) -> ConversationEngine:
    engine = ConversationEngine(
        KEY,
        store if store is not None else InMemorySessionStore(),
        oracle or StubOracle(),
        policy=policy,
        **kwargs,
    )
    engine.open()
    return engine


async def _answer(engine: ConversationEngine, answers=ANSWERS) -> None:
    for text in answers:
        await engine.handle_input(text)


async def _wait_until_in_flight(engine: ConversationEngine) -> None:
    for _ in range(100):
        if engine.in_flight:
            return
        await asyncio.sleep(0)
    raise AssertionError("verification never started")


def _bot_texts(engine: ConversationEngine) -> list[str]:
    return [m.text for m in engine.session.transcript if m.sender == "bot"]


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------


class TestInputHelpers:
    @pytest.mark.parametrize("text", ["yes", "Y", "Yep", "confirm", "I confirm"])
    def test_affirmative(self, text):
        assert is_affirmative(text)

    @pytest.mark.parametrize("text", ["no", "nope", "wrong", "edit"])
    def test_not_affirmative(self, text):
        assert not is_affirmative(text)

    @pytest.mark.parametrize("text", ["restart", "Start over please", "try again", "New verification"])
    def test_restart_request(self, text):
        assert is_restart_request(text)

    @pytest.mark.parametrize("text", ["yes", "Yes please", "confirm", "I confirm that"])
    def test_confirmation(self, text):
        assert is_confirmation(text)

    @pytest.mark.parametrize("text", ["you got my name wrong", "yeah", "yesterday", "confirmed?"])
    def test_not_confirmation(self, text):
        assert not is_confirmation(text)

    def test_consent_parsing(self):
        assert parse_consent("I agree") is True
        assert parse_consent("yes") is True
        assert parse_consent("No thanks") is False
        assert parse_consent("I do not consent") is False
        assert parse_consent("what is HIPAA?") is None


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


class TestOpening:
    def test_new_session_asks_for_name(self):
        engine = _make_engine()
        session = engine.session
        assert session.step == Step.NAME
        assert len(session.transcript) == 1
        assert "what is your full name?" in session.transcript[0].text
        assert engine.is_open

    def test_returning_visitor_gets_welcome_back(self):
        engine = ConversationEngine(KEY, InMemorySessionStore(), StubOracle())
        engine.open(returning=True)
        assert engine.session.transcript[0].text.startswith("Welcome back!")

    def test_opening_is_persisted(self):
        store = InMemorySessionStore()
        engine = _make_engine(store=store)
        assert store.load(KEY).session_id == engine.session.session_id

    def test_reopen_keeps_existing_session(self):
        engine = _make_engine()
        session_id = engine.session.session_id
        engine.close()
        engine.open()
        assert engine.session.session_id == session_id
        assert len(engine.session.transcript) == 1

    async def test_empty_input_is_ignored(self):
        engine = _make_engine()
        await engine.handle_input("   ")
        assert len(engine.session.transcript) == 1
        assert engine.session.step == Step.NAME


# ---------------------------------------------------------------------------
# Field collection
# ---------------------------------------------------------------------------


class TestFieldCollection:
    async def test_happy_path_reaches_confirm(self):
        engine = _make_engine()
        await _answer(engine)

        session = engine.session
        assert session.step == Step.CONFIRM
        assert session.collected_fields.is_complete()
        summary = session.transcript[-1]
        assert summary.kind == MessageKind.SUMMARY
        assert "- Name: Jane Doe" in summary.text
        assert "- Policy ID: AETNA123456" in summary.text
        assert "(Yes/No)" in summary.text

    async def test_prompts_follow_field_order(self):
        engine = _make_engine()
        await engine.handle_input("Jane Doe")
        assert engine.session.step == Step.DOB
        assert _bot_texts(engine)[-1] == "Thanks, Jane Doe. What is your date of birth? (MM/DD/YYYY)"
        await engine.handle_input("04/12/1990")
        assert engine.session.step == Step.PROVIDER
        await engine.handle_input("Aetna")
        assert engine.session.step == Step.POLICY_ID

    async def test_invalid_name_stays_on_step(self):
        engine = _make_engine()
        await engine.handle_input("J")

        session = engine.session
        assert session.step == Step.NAME
        assert session.collected_fields.name is None
        assert session.transcript[-2].sender == "user"
        assert session.transcript[-2].text == "J"
        assert session.transcript[-1].text == "Please provide your full name."
        assert session.transcript[-1].kind == MessageKind.VALIDATION

    async def test_invalid_input_adds_exactly_one_bot_message(self):
        engine = _make_engine()
        await engine.handle_input("Jane Doe")
        before = len(engine.session.transcript)
        await engine.handle_input("1990-04-12")
        assert len(engine.session.transcript) == before + 2
        assert engine.session.step == Step.DOB
        assert engine.session.collected_fields.date_of_birth is None

    async def test_answers_are_trimmed(self):
        engine = _make_engine()
        await engine.handle_input("  Jane Doe  ")
        assert engine.session.collected_fields.name == "Jane Doe"

    async def test_every_transition_is_saved(self):
        store = InMemorySessionStore()
        engine = _make_engine(store=store)
        await _answer(engine, ANSWERS[:2])
        saved = store.load(KEY)
        assert saved.step == Step.PROVIDER
        assert saved.collected_fields.date_of_birth == "04/12/1990"
        assert len(saved.transcript) == len(engine.session.transcript)

    async def test_reload_resumes_mid_flow(self):
        store = InMemorySessionStore()
        await _answer(_make_engine(store=store), ANSWERS[:3])

        resumed = _make_engine(store=store)
        assert resumed.session.step == Step.POLICY_ID
        assert resumed.session.collected_fields.insurance_provider == "Aetna"
        await resumed.handle_input("AETNA123456")
        assert resumed.session.step == Step.CONFIRM


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    async def test_end_to_end_verified(self):
        oracle = StubOracle()
        store = InMemorySessionStore()
        engine = _make_engine(oracle, store=store)
        await _answer(engine, ANSWERS + ["yes"])

        session = engine.session
        assert session.step == Step.RESULT
        assert session.result == GOLD_PPO
        assert "Gold PPO" in session.transcript[-1].text
        assert session.consent_given
        assert len(oracle.calls) == 1
        record, consent = oracle.calls[0]
        assert consent is True
        assert record.policy_id == "AETNA123456"
        # Completed sessions are not kept in the store.
        assert store.load(KEY) is None

    async def test_result_message_shows_plan_details(self):
        engine = _make_engine()
        await _answer(engine, ANSWERS + ["yes"])
        result_message = next(m for m in engine.session.transcript if m.kind == MessageKind.RESULT)
        assert result_message.icon == Icon.CHECK
        assert "Benefits Verified" in result_message.text
        assert "Plan Name: Aetna Gold PPO" in result_message.text
        assert "80%" in result_message.text

    async def test_status_message_precedes_result(self):
        engine = _make_engine()
        await _answer(engine, ANSWERS + ["yes"])
        kinds = [m.kind for m in engine.session.transcript]
        assert kinds.index(MessageKind.STATUS) < kinds.index(MessageKind.RESULT)

    async def test_plan_not_found_result(self):
        result = VerificationResult(
            status=VerificationStatus.PLAN_NOT_FOUND,
            plan_name="N/A",
            coverage_summary="No matching plan.",
            next_steps="Please call admissions.",
        )
        engine = _make_engine(StubOracle(result=result))
        await _answer(engine, ANSWERS + ["yes"])
        assert engine.session.step == Step.RESULT
        result_message = next(m for m in engine.session.transcript if m.kind == MessageKind.RESULT)
        assert result_message.icon == Icon.CROSS

    async def test_network_error_leads_to_error_step(self):
        store = InMemorySessionStore()
        engine = _make_engine(StubOracle(error=NetworkError("unreachable")), store=store)
        await _answer(engine, ANSWERS + ["yes"])

        session = engine.session
        assert session.step == Step.ERROR
        assert session.result is None
        assert any('Type "restart"' in text for text in _bot_texts(engine))
        assert any("(800) 555-0123" in text for text in _bot_texts(engine))
        assert store.load(KEY).step == Step.ERROR
        assert not engine.in_flight

    async def test_service_error_leads_to_error_step(self):
        engine = _make_engine(StubOracle(error=ServiceError("bad payload")))
        await _answer(engine, ANSWERS + ["yes"])
        assert engine.session.step == Step.ERROR

    async def test_unexpected_exception_leads_to_error_step(self):
        engine = _make_engine(StubOracle(error=RuntimeError("boom")))
        await _answer(engine, ANSWERS + ["yes"])
        assert engine.session.step == Step.ERROR
        assert engine.session.result is None

    async def test_timeout_leads_to_error_step(self):
        oracle = StubOracle()
        oracle.gate = asyncio.Event()
        engine = _make_engine(oracle, policy=EnginePolicy(oracle_timeout=0.01))
        await _answer(engine, ANSWERS + ["yes"])
        assert engine.session.step == Step.ERROR
        assert not engine.in_flight

    async def test_submitting_is_never_persisted(self):
        store = InMemorySessionStore()
        oracle = StubOracle()
        oracle.gate = asyncio.Event()
        engine = _make_engine(oracle, store=store)
        await _answer(engine)

        task = asyncio.create_task(engine.handle_input("yes"))
        await _wait_until_in_flight(engine)
        assert engine.session.step == Step.SUBMITTING
        assert store.load(KEY).step == Step.CONFIRM

        oracle.gate.set()
        await task
        assert engine.session.step == Step.RESULT

    async def test_persisted_submitting_resumes_at_confirm(self):
        store = InMemorySessionStore()
        session = ConversationSession(
            session_id="s1",
            step=Step.SUBMITTING,
            collected_fields=PartialPatientRecord(
                name="Jane Doe", date_of_birth="04/12/1990", insurance_provider="Aetna", policy_id="AETNA123456"
            ),
        )
        store.save(KEY, session)
        engine = _make_engine(store=store)
        assert engine.session.step == Step.CONFIRM

    async def test_input_while_in_flight_is_ignored(self):
        oracle = StubOracle()
        oracle.gate = asyncio.Event()
        engine = _make_engine(oracle)
        await _answer(engine)

        task = asyncio.create_task(engine.handle_input("yes"))
        await _wait_until_in_flight(engine)
        before = len(engine.session.transcript)
        await engine.handle_input("yes")
        assert len(engine.session.transcript) == before

        oracle.gate.set()
        await task
        assert len(oracle.calls) == 1

    async def test_one_oracle_call_per_confirmation(self):
        oracle = StubOracle()
        engine = _make_engine(oracle)
        await _answer(engine, ANSWERS + ["yes", "yes", "confirm"])
        assert len(oracle.calls) == 1
        assert engine.session.step == Step.END
        assert engine.session.result == GOLD_PPO

    async def test_result_stays_attached_after_end(self):
        engine = _make_engine()
        await _answer(engine, ANSWERS + ["yes", "thanks"])
        session = engine.session
        assert session.step == Step.END
        assert session.result == GOLD_PPO
        assert session.transcript[-1].actions == ["restart"]

    async def test_restart_during_flight_discards_result(self):
        oracle = StubOracle()
        oracle.gate = asyncio.Event()
        engine = _make_engine(oracle)
        await _answer(engine)

        task = asyncio.create_task(engine.handle_input("yes"))
        await _wait_until_in_flight(engine)
        engine.restart()

        # The fresh session takes input while the old call is still pending.
        assert not engine.in_flight
        await engine.handle_input("Jane Doe")
        assert engine.session.step == Step.DOB
        assert engine.session.transcript[-2].text == "Jane Doe"

        oracle.gate.set()
        await task

        assert engine.session.step == Step.DOB
        assert engine.session.result is None
        assert not engine.in_flight

    async def test_submission_is_logged(self, tmp_path):
        log = SubmissionLog(tmp_path / "submissions.json")
        engine = _make_engine(submissions=log)
        await _answer(engine, ANSWERS + ["yes"])

        records = log.list()
        assert len(records) == 1
        assert records[0].patient_data.name == "Jane Doe"
        assert records[0].verification_result.plan_name == "Aetna Gold PPO"
        assert records[0].session_id == engine.session.session_id

    async def test_on_complete_callback(self):
        seen = []
        engine = _make_engine(on_complete=seen.append)
        await _answer(engine, ANSWERS + ["yes"])
        assert seen == [GOLD_PPO]

    async def test_async_on_complete_callback(self):
        seen = []

        async def notify(result):
            seen.append(result.plan_name)

        engine = _make_engine(on_complete=notify)
        await _answer(engine, ANSWERS + ["yes"])
        assert seen == ["Aetna Gold PPO"]

    async def test_failing_callback_does_not_lose_result(self):
        def explode(result):
            raise RuntimeError("webhook down")

        engine = _make_engine(on_complete=explode)
        await _answer(engine, ANSWERS + ["yes"])
        assert engine.session.step == Step.RESULT
        assert engine.session.result == GOLD_PPO

    async def test_callback_not_called_on_failure(self):
        seen = []
        engine = _make_engine(StubOracle(error=NetworkError("down")), on_complete=seen.append)
        await _answer(engine, ANSWERS + ["yes"])
        assert seen == []


# ---------------------------------------------------------------------------
# Restart
# ---------------------------------------------------------------------------


class TestRestart:
    async def test_restart_resets_everything(self):
        store = InMemorySessionStore()
        engine = _make_engine(store=store)
        await _answer(engine, ANSWERS[:2])
        old_id = engine.session.session_id

        session = engine.restart()

        assert session.session_id != old_id
        assert session.step == Step.NAME
        assert session.collected_fields == PartialPatientRecord()
        assert session.result is None
        assert len(session.transcript) == 1
        assert session.transcript[0].text == "Let's start over. To get started, what is your full name?"
        assert store.load(KEY).session_id == session.session_id

    async def test_typing_restart_after_error(self):
        engine = _make_engine(StubOracle(error=NetworkError("down")))
        await _answer(engine, ANSWERS + ["yes"])
        await engine.handle_input("restart")
        assert engine.session.step == Step.NAME
        assert len(engine.session.transcript) == 1

    async def test_typing_restart_after_result(self):
        engine = _make_engine()
        await _answer(engine, ANSWERS + ["yes"])
        await engine.handle_input("start over")
        assert engine.session.step == Step.NAME
        assert engine.session.result is None

    async def test_other_input_after_error_ends(self):
        engine = _make_engine(StubOracle(error=NetworkError("down")))
        await _answer(engine, ANSWERS + ["yes", "ok"])
        assert engine.session.step == Step.END
        assert "(800) 555-0123" in engine.session.transcript[-1].text

    async def test_restart_keyword_at_field_step(self):
        engine = _make_engine()
        await engine.handle_input("Jane Doe")
        old_id = engine.session.session_id

        await engine.handle_input("start over")

        session = engine.session
        assert session.session_id != old_id
        assert session.step == Step.NAME
        assert session.collected_fields.name is None

    async def test_restart_keyword_is_never_stored_as_a_name(self):
        engine = _make_engine()
        await engine.handle_input("start over")
        assert engine.session.step == Step.NAME
        assert engine.session.collected_fields.name is None

    async def test_reject_summary_restarts_by_default(self):
        oracle = StubOracle()
        engine = _make_engine(oracle)
        await _answer(engine, ANSWERS + ["no"])
        assert engine.session.step == Step.NAME
        assert engine.session.collected_fields.name is None
        assert oracle.calls == []


# ---------------------------------------------------------------------------
# Edit on reject
# ---------------------------------------------------------------------------


class TestEditPolicy:
    def _engine(self, oracle=None) -> ConversationEngine:
        return _make_engine(oracle, policy=EnginePolicy(reject_policy=RejectPolicy.EDIT))

    async def test_edit_single_field_and_return_to_confirm(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        await _answer(engine, ANSWERS + ["edit"])
        assert engine.session.step == Step.CONFIRM
        assert engine.session.choosing_edit_field

        await engine.handle_input("provider")
        assert engine.session.step == Step.PROVIDER
        await engine.handle_input("Cigna")

        session = engine.session
        assert session.step == Step.CONFIRM
        assert session.collected_fields.insurance_provider == "Cigna"
        assert session.collected_fields.name == "Jane Doe"
        assert "- Provider: Cigna" in session.transcript[-1].text

        await engine.handle_input("confirm")
        assert engine.session.step == Step.RESULT
        assert oracle.calls[0][0].insurance_provider == "Cigna"

    async def test_unclear_field_choice_reprompts(self):
        engine = self._engine()
        await _answer(engine, ANSWERS + ["no", "hmm"])
        assert engine.session.step == Step.CONFIRM
        assert engine.session.choosing_edit_field
        assert engine.session.transcript[-1].kind == MessageKind.VALIDATION

    async def test_unclear_confirm_answer_reprompts(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        await _answer(engine, ANSWERS + ["maybe"])
        assert engine.session.step == Step.CONFIRM
        assert not engine.session.choosing_edit_field
        assert oracle.calls == []

    async def test_reply_starting_with_y_is_not_a_confirmation(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        await _answer(engine, ANSWERS + ["you got my name wrong"])
        assert oracle.calls == []
        assert engine.session.step == Step.CONFIRM
        assert engine.session.choosing_edit_field

    async def test_yeah_reprompts_instead_of_submitting(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        await _answer(engine, ANSWERS + ["yeah"])
        assert oracle.calls == []
        assert engine.session.transcript[-1].kind == MessageKind.VALIDATION

    async def test_field_choice_starting_with_y_is_not_a_confirmation(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        await _answer(engine, ANSWERS + ["edit", "yup whatever"])
        assert oracle.calls == []
        assert engine.session.choosing_edit_field


# ---------------------------------------------------------------------------
# Explicit consent
# ---------------------------------------------------------------------------


class TestExplicitConsent:
    def _engine(self, oracle=None, store=None) -> ConversationEngine:
        return _make_engine(oracle, policy=EnginePolicy(consent_mode=ConsentMode.EXPLICIT), store=store)

    def test_opens_with_consent_request(self):
        engine = self._engine()
        opening = engine.session.transcript[0]
        assert engine.session.step == Step.CONSENT
        assert opening.icon == Icon.SHIELD
        assert opening.actions == ["consent", "decline"]

    async def test_declining_ends_without_verification(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        await engine.handle_input("No thanks")
        assert engine.session.step == Step.END
        assert not engine.session.consent_given
        assert oracle.calls == []

    async def test_unclear_reply_reprompts(self):
        engine = self._engine()
        await engine.handle_input("what does this mean?")
        assert engine.session.step == Step.CONSENT
        assert engine.session.transcript[-1].kind == MessageKind.VALIDATION

    async def test_consent_button_then_full_flow(self):
        oracle = StubOracle()
        engine = self._engine(oracle)
        engine.give_consent(True)
        assert engine.session.step == Step.NAME
        assert engine.session.consent_given

        await _answer(engine, ANSWERS)
        assert "By confirming" not in engine.session.transcript[-1].text
        await engine.handle_input("yes")
        assert engine.session.step == Step.RESULT
        assert len(oracle.calls) == 1

    async def test_confirm_without_consent_never_calls_oracle(self):
        store = InMemorySessionStore()
        session = ConversationSession(
            session_id="s1",
            step=Step.CONFIRM,
            collected_fields=PartialPatientRecord(
                name="Jane Doe", date_of_birth="04/12/1990", insurance_provider="Aetna", policy_id="AETNA123456"
            ),
        )
        store.save(KEY, session)
        oracle = StubOracle()
        engine = self._engine(oracle, store=store)

        await engine.handle_input("yes")
        assert engine.session.step == Step.CONSENT
        assert oracle.calls == []

        await engine.handle_input("I agree")
        assert engine.session.step == Step.CONFIRM
        await engine.handle_input("yes")
        assert engine.session.step == Step.RESULT
        assert len(oracle.calls) == 1

    def test_give_consent_outside_consent_step_is_ignored(self):
        engine = _make_engine()
        before = len(engine.session.transcript)
        engine.give_consent(True)
        assert len(engine.session.transcript) == before
        assert engine.session.step == Step.NAME


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestClose:
    async def test_close_keeps_session_by_default(self):
        store = InMemorySessionStore()
        engine = _make_engine(store=store)
        await engine.handle_input("Jane Doe")
        engine.close()
        assert not engine.is_open
        assert store.load(KEY).step == Step.DOB

    async def test_close_can_clear_session(self):
        store = InMemorySessionStore()
        engine = _make_engine(store=store, policy=EnginePolicy(clear_on_close=True))
        await engine.handle_input("Jane Doe")
        engine.close()
        assert store.load(KEY) is None
        engine.open()
        assert engine.session.step == Step.NAME
        assert engine.session.collected_fields.name is None


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestEnginePolicy:
    def test_from_settings(self):
        policy = EnginePolicy.from_settings(Settings(
            consent_mode="explicit",
            reject_policy="edit",
            clear_session_on_close=True,
            oracle_timeout_seconds=5,
            admissions_phone="(555) 000-0000",
        ))
        assert policy.consent_mode == ConsentMode.EXPLICIT
        assert policy.reject_policy == RejectPolicy.EDIT
        assert policy.clear_on_close
        assert policy.oracle_timeout == 5.0
        assert policy.admissions_phone == "(555) 000-0000"

    async def test_admissions_phone_used_in_error(self):
        engine = _make_engine(
            StubOracle(error=NetworkError("down")),
            policy=EnginePolicy(admissions_phone="(555) 000-0000"),
        )
        await _answer(engine, ANSWERS + ["yes"])
        assert any("(555) 000-0000" in text for text in _bot_texts(engine))


# ---------------------------------------------------------------------------
# Session keys
# ---------------------------------------------------------------------------


class TestSessionKey:
    @pytest.mark.parametrize("key", ["", "../etc/passwd", "has space", "x" * 65])
    def test_rejects_invalid_key_up_front(self, key):
        with pytest.raises(ValueError):
            ConversationEngine(key, InMemorySessionStore(), StubOracle())


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_stale_stored_session_is_replaced(self):
        store = InMemorySessionStore()
        stale = ConversationSession(
            session_id="old",
            step=Step.PROVIDER,
            collected_fields=PartialPatientRecord(name="Jane Doe", date_of_birth="04/12/1990"),
            last_activity_at=utcnow() - timedelta(hours=25),
        )
        store.save(KEY, stale)

        engine = _make_engine(store=store)

        session = engine.session
        assert session.session_id != "old"
        assert session.step == Step.NAME
        assert session.collected_fields.name is None
        assert session.transcript[0].text.startswith("Your previous session expired")
        assert store.load(KEY).session_id == session.session_id

    def test_recent_session_is_resumed(self):
        store = InMemorySessionStore()
        store.save(KEY, ConversationSession(
            session_id="recent",
            step=Step.DOB,
            last_activity_at=utcnow() - timedelta(hours=1),
        ))
        assert _make_engine(store=store).session.session_id == "recent"

    async def test_reopening_a_stale_widget_expires_it(self):
        engine = _make_engine(policy=EnginePolicy(session_ttl=60))
        await engine.handle_input("Jane Doe")
        engine.close()
        engine.session.last_activity_at = utcnow() - timedelta(minutes=5)

        engine.open()

        assert engine.session.step == Step.NAME
        assert engine.session.collected_fields.name is None
        assert "expired" in engine.session.transcript[0].text

    def test_explicit_consent_mode_expiry_asks_for_consent_again(self):
        store = InMemorySessionStore()
        store.save(KEY, ConversationSession(
            session_id="old",
            step=Step.NAME,
            consent_given=True,
            last_activity_at=utcnow() - timedelta(days=2),
        ))
        engine = _make_engine(store=store, policy=EnginePolicy(consent_mode=ConsentMode.EXPLICIT))
        assert engine.session.step == Step.CONSENT
        assert not engine.session.consent_given
        assert engine.session.transcript[0].text.startswith("Your previous session expired")

    def test_idle(self):
        engine = _make_engine(policy=EnginePolicy(session_ttl=60))
        assert not engine.is_idle()
        assert engine.is_idle(utcnow() + timedelta(minutes=2))


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TestAuditTrail:
    async def test_verification_events(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.json")
        engine = _make_engine(audit=audit)
        await _answer(engine, ANSWERS + ["yes"])
        engine.close()

        events = audit.events(engine.session.session_id)
        assert [e.event for e in events] == [
            AuditEventType.SESSION_START,
            AuditEventType.CONSENT_GIVEN,
            AuditEventType.DATA_ACCESS,
            AuditEventType.SESSION_END,
        ]

    async def test_details_carry_no_patient_data(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.json")
        engine = _make_engine(audit=audit)
        await _answer(engine, ANSWERS + ["yes"])
        raw = (tmp_path / "audit.json").read_text(encoding="utf-8")
        for value in ANSWERS:
            assert value not in raw

    async def test_declined_consent(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.json")
        engine = _make_engine(audit=audit, policy=EnginePolicy(consent_mode=ConsentMode.EXPLICIT))
        await engine.handle_input("no")
        assert [e.event for e in audit.events()] == [
            AuditEventType.SESSION_START,
            AuditEventType.CONSENT_DECLINED,
        ]

    async def test_explicit_consent_logged_once(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.json")
        engine = _make_engine(audit=audit, policy=EnginePolicy(consent_mode=ConsentMode.EXPLICIT))
        engine.give_consent(True)
        await _answer(engine, ANSWERS + ["yes"])
        events = [e.event for e in audit.events()]
        assert events.count(AuditEventType.CONSENT_GIVEN) == 1

    async def test_failed_verification_is_logged(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.json")
        engine = _make_engine(StubOracle(error=NetworkError("down")), audit=audit)
        await _answer(engine, ANSWERS + ["yes"])
        details = [e.details for e in audit.events() if e.event == AuditEventType.DATA_ACCESS]
        assert details == ["Patient record sent for insurance verification", "Verification service error"]

    async def test_restart_ends_old_session_and_starts_new(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.json")
        engine = _make_engine(audit=audit)
        old_id = engine.session.session_id
        engine.restart()
        assert [e.event for e in audit.events(old_id)] == [
            AuditEventType.SESSION_START,
            AuditEventType.SESSION_END,
        ]
        assert [e.event for e in audit.events(engine.session.session_id)] == [AuditEventType.SESSION_START]
