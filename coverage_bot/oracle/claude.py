"""LLM-backed verification oracle using Claude tool use.

The model is forced to answer through a single ``record_verification`` tool
whose input schema is the oracle response contract, so the tool input can be
normalized like any other oracle payload.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import anthropic

from coverage_bot.models.patient import PatientRecord
from coverage_bot.models.verification import VerificationResult, VerificationStatus
from coverage_bot.oracle.base import NetworkError, ServiceError, normalize_result, require_consent

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

VERIFICATION_TOOL: dict[str, Any] = {
    "name": "record_verification",
    "description": "Record the insurance verification outcome for the patient.",
    "input_schema": {
        "type": "object",
        "properties": {
            "status": {
                "type": "string",
                "enum": [s.value for s in VerificationStatus],
                "description": "The final verification status.",
            },
            "planName": {
                "type": "string",
                "description": 'The name of the insurance plan found, or "N/A" if not found.',
            },
            "coverageSummary": {
                "type": "string",
                "description": "A user-friendly summary of the benefits, or what needs clarification.",
            },
            "nextSteps": {
                "type": "string",
                "description": "Clear, actionable next steps for the patient.",
            },
        },
        "required": ["status", "planName", "coverageSummary", "nextSteps"],
    },
}


def _load_prompt(name: str) -> str:
    path = PROMPTS_DIR / f"{name}.md"
    if path.exists():
        return path.read_text(encoding="utf-8")
    logger.warning("Prompt file not found: %s", path)
    return ""


def _build_user_prompt(record: PatientRecord) -> str:
    return (
        'A potential patient is verifying their insurance for services at "NewVisionWellness".\n'
        "Patient Information:\n"
        f"- Name: {record.name}\n"
        f"- Date of Birth: {record.date_of_birth}\n"
        f"- Insurance Provider: {record.insurance_provider}\n"
        f"- Policy ID: {record.policy_id}\n\n"
        "Analyze this information against your knowledge base and determine the coverage."
    )


class ClaudeVerificationOracle:
    def __init__(self, api_key: str = "", model: str = "claude-haiku-4-5-20251001", client: Any = None):
        self.model = model
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self.system_prompt = _load_prompt("verification")

    async def submit(self, record: PatientRecord, consent: bool) -> VerificationResult:
        require_consent(consent)

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=1024,
                system=self.system_prompt,
                tools=[VERIFICATION_TOOL],
                tool_choice={"type": "tool", "name": VERIFICATION_TOOL["name"]},
                messages=[{"role": "user", "content": _build_user_prompt(record)}],
            )
        except anthropic.APIConnectionError as exc:
            # Also covers APITimeoutError
            logger.error("Claude request failed: %s", exc)
            raise NetworkError(str(exc)) from exc
        except anthropic.APIStatusError as exc:
            logger.error("Claude API error %s: %s", exc.status_code, exc)
            raise ServiceError(f"Claude API returned {exc.status_code}") from exc

        for block in response.content:
            if getattr(block, "type", None) == "tool_use" and block.name == VERIFICATION_TOOL["name"]:
                return normalize_result(block.input)

        logger.error("Claude response had no %s tool call (stop_reason=%s)",
                     VERIFICATION_TOOL["name"], getattr(response, "stop_reason", None))
        raise ServiceError("Model did not return a verification result")
