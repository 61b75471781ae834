from __future__ import annotations

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class PartialPatientRecord(BaseModel):
    """Fields collected so far; each is filled in when its step completes."""

    name: str | None = None
    date_of_birth: str | None = None
    insurance_provider: str | None = None
    policy_id: str | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    def is_complete(self) -> bool:
        return all((self.name, self.date_of_birth, self.insurance_provider, self.policy_id))

    def to_record(self) -> PatientRecord:
        if not self.is_complete():
            raise ValueError("Patient record is missing required fields")
        return PatientRecord(
            name=self.name,
            date_of_birth=self.date_of_birth,
            insurance_provider=self.insurance_provider,
            policy_id=self.policy_id,
        )


class PatientRecord(BaseModel):
    name: str
    date_of_birth: str
    insurance_provider: str
    policy_id: str

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}

    def to_request(self) -> dict[str, str]:
        """Oracle request body keys: name, dob, provider, policyId."""
        return {
            "name": self.name,
            "dob": self.date_of_birth,
            "provider": self.insurance_provider,
            "policyId": self.policy_id,
        }
