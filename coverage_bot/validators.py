"""Field validators for the verification conversation.

Each validator takes raw user input and returns the trimmed value, or raises
:class:`InvalidInput` carrying the message the bot should reply with.
"""

from __future__ import annotations

import re

# Month 01-12 and day 01-31 only; calendar validity (e.g. 02/30) is not checked.
_DOB_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/(0[1-9]|[12]\d|3[01])/\d{4}$")


class InvalidInput(ValueError):
    """User input failed local validation for *field*."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


def validate_name(value: str) -> str:
    value = value.strip()
    if len(value) < 2:
        raise InvalidInput("name", "Please provide your full name.")
    return value


def validate_date_of_birth(value: str) -> str:
    value = value.strip()
    if not _DOB_PATTERN.match(value):
        raise InvalidInput("dateOfBirth", "Please provide your date of birth in MM/DD/YYYY format.")
    return value


def validate_provider(value: str) -> str:
    value = value.strip()
    if len(value) < 2:
        raise InvalidInput("insuranceProvider", "Please provide your insurance provider name.")
    return value


def validate_policy_id(value: str) -> str:
    value = value.strip()
    if len(value) < 3:
        raise InvalidInput("policyId", "Please provide a valid Policy ID or Member ID.")
    return value
