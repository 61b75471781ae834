"""Rule-based canned coverage assessments.

Used for demos and local development when no verification service or LLM is
configured. The rules mirror the knowledge base given to the LLM oracle so
both backends classify the same inputs the same way.
"""

from __future__ import annotations

import logging
import re

from coverage_bot.models.patient import PatientRecord
from coverage_bot.models.verification import VerificationResult, VerificationStatus
from coverage_bot.oracle.base import require_consent

logger = logging.getLogger(__name__)

RECOGNIZED_PROVIDERS = {
    "aetna": "Aetna",
    "blue cross": "Blue Cross",
    "bcbs": "BCBS",
    "cigna": "Cigna",
    "unitedhealthcare": "UnitedHealthcare",
    "united healthcare": "UnitedHealthcare",
    "uhc": "UnitedHealthcare",
}

_GROUP_NUMBER = re.compile(r"^(GRP|GROUP)[-\s]?\w*$", re.IGNORECASE)


def match_provider(provider: str) -> str | None:
    lowered = provider.lower()
    for key, canonical in RECOGNIZED_PROVIDERS.items():
        if key in lowered:
            return canonical
    return None


class CannedVerificationOracle:
    async def submit(self, record: PatientRecord, consent: bool) -> VerificationResult:
        require_consent(consent)
        result = assess(record)
        logger.info("Canned assessment for provider %r: %s", record.insurance_provider, result.status.value)
        return result


def assess(record: PatientRecord) -> VerificationResult:
    provider = match_provider(record.insurance_provider)
    if provider is None:
        return VerificationResult(
            status=VerificationStatus.PLAN_NOT_FOUND,
            plan_name="N/A",
            coverage_summary=(
                f"We could not locate a plan from {record.insurance_provider} in our network records."
            ),
            next_steps="Please call our admissions team so we can verify your benefits manually.",
        )

    policy_id = record.policy_id.replace(" ", "")
    if _GROUP_NUMBER.match(policy_id) or len(policy_id) < 6:
        return VerificationResult(
            status=VerificationStatus.REVIEW_NEEDED,
            plan_name=f"{provider} Employer Group Plan",
            coverage_summary=(
                "This looks like an employer group plan that may require pre-authorization "
                "before intensive outpatient services are covered."
            ),
            next_steps="Our team will investigate your plan details and contact you with the outcome.",
        )

    if policy_id.isdigit():
        return VerificationResult(
            status=VerificationStatus.VERIFIED,
            plan_name=f"{provider} Silver Plan",
            coverage_summary="Covers IOP services at 60% after a $2500 deductible is met.",
            next_steps="Our admissions team will call you to confirm your benefits and next steps.",
        )

    return VerificationResult(
        status=VerificationStatus.VERIFIED,
        plan_name=f"{provider} Gold PPO",
        coverage_summary="Covers IOP services at 80% after a $500 deductible is met.",
        next_steps="Our admissions team will call you to confirm your benefits and next steps.",
    )
