"""HTTP verification service client.

POSTs the patient record to ``{base_url}/verify`` and normalizes the JSON
response. One request per call; retries are left to the user.
"""

from __future__ import annotations

import logging

import httpx

from coverage_bot.models.patient import PatientRecord
from coverage_bot.models.verification import VerificationResult
from coverage_bot.oracle.base import NetworkError, ServiceError, normalize_result, require_consent

logger = logging.getLogger(__name__)


class HttpVerificationOracle:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def submit(self, record: PatientRecord, consent: bool) -> VerificationResult:
        require_consent(consent)
        body = {**record.to_request(), "consent": True}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.post("/verify", json=body)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Verification service HTTP error %s: %s",
                exc.response.status_code,
                exc,
            )
            raise ServiceError(f"Verification service returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("Verification service request failed: %s", exc)
            raise NetworkError(str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            logger.error("Verification service returned invalid JSON: %s", exc)
            raise ServiceError("Verification service returned invalid JSON") from exc

        return normalize_result(payload)
