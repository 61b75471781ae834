"""Verification oracle contract.

An oracle takes a complete, consented :class:`PatientRecord` and returns a
:class:`VerificationResult`. Adapters translate their transport errors into
:class:`NetworkError` or :class:`ServiceError`; any payload that does not
match the response contract is a :class:`ServiceError`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import ValidationError

from coverage_bot.config import Settings, settings
from coverage_bot.models.patient import PatientRecord
from coverage_bot.models.verification import VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("status", "planName", "coverageSummary", "nextSteps")


class OracleError(Exception):
    """Base class for verification failures."""


class NetworkError(OracleError):
    """The oracle could not be reached or did not answer in time."""


class ServiceError(OracleError):
    """The oracle answered with an error or an invalid payload."""


class ConsentRequired(OracleError):
    """Submission attempted without the patient's consent."""


class VerificationOracle(Protocol):
    async def submit(self, record: PatientRecord, consent: bool) -> VerificationResult: ...


def require_consent(consent: bool) -> None:
    if consent is not True:
        raise ConsentRequired("Patient consent is required for insurance verification.")


def normalize_result(payload: Any) -> VerificationResult:
    """Validate an oracle response body and convert it to a VerificationResult."""
    if not isinstance(payload, dict):
        raise ServiceError(f"Expected a JSON object, got {type(payload).__name__}")

    missing = [key for key in REQUIRED_KEYS if key not in payload]
    if missing:
        raise ServiceError(f"Response missing required keys: {', '.join(missing)}")

    for key in REQUIRED_KEYS:
        if not isinstance(payload[key], str):
            raise ServiceError(f"Response key {key!r} must be a string")

    try:
        status = VerificationStatus.parse(payload["status"])
    except ValueError as exc:
        raise ServiceError(str(exc)) from exc

    try:
        return VerificationResult(
            status=status,
            plan_name=payload["planName"],
            coverage_summary=payload["coverageSummary"],
            next_steps=payload["nextSteps"],
        )
    except ValidationError as exc:
        raise ServiceError(f"Invalid verification result: {exc}") from exc


def build_oracle(config: Settings | None = None) -> VerificationOracle:
    """Pick the oracle adapter named by ``oracle_backend``."""
    config = config or settings
    backend = config.oracle_backend.lower()

    if backend == "claude":
        from coverage_bot.oracle.claude import ClaudeVerificationOracle

        return ClaudeVerificationOracle(api_key=config.anthropic_api_key, model=config.model)
    if backend == "http":
        from coverage_bot.oracle.http import HttpVerificationOracle

        if not config.oracle_url:
            raise ValueError("ORACLE_URL must be set when ORACLE_BACKEND=http")
        return HttpVerificationOracle(
            base_url=config.oracle_url,
            api_key=config.oracle_api_key,
            timeout=config.oracle_timeout_seconds,
        )
    if backend != "canned":
        logger.warning("Unknown oracle backend %r, falling back to canned responses", backend)

    from coverage_bot.oracle.canned import CannedVerificationOracle

    return CannedVerificationOracle()
