"""
Shared lightweight types and helpers used across the clinical gateway.
"""

import re
from datetime import datetime, timezone
from typing import Any

from clinical_gateway.errors import ValidationError

# Resources travel through the gateway as decoded JSON objects.
type JsonObject = dict[str, Any]

DEFAULT_COUNTRY_CODE = "254"

_REFERENCE_PATTERN = re.compile(
    r"^(?P<type>[A-Z][A-Za-z]+)/(?P<id>[A-Za-z0-9\-\.]{1,64})$"
)


def normalize_msisdn(value: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalise a phone number to E.164 form (``+<country code><subscriber>``).

    Accepted inputs, with any spaces, hyphens or brackets ignored:

    - ``+254722000000`` (already international)
    - ``254722000000`` (international without the plus)
    - ``0722000000`` (national, prefixed with the default country code)

    :param value: The phone number to normalise.
    :param country_code: Country code used for national numbers.
    :returns: The normalised number.
    :raises ValidationError: If the value is not a plausible phone number.
    """
    if not isinstance(value, str):
        raise ValidationError("phone number must be a string")

    digits = re.sub(r"[\s\-()]", "", value)

    if digits.startswith("+"):
        digits = digits[1:]
    elif digits.startswith("0"):
        digits = country_code + digits[1:]

    if not digits.isdigit():
        raise ValidationError(f"invalid phone number: {value!r}")

    # E.164 allows at most 15 digits; anything under 8 is not a subscriber number
    if not 8 <= len(digits) <= 15:
        raise ValidationError(f"invalid phone number length: {value!r}")

    return f"+{digits}"


def mask_msisdn(value: str) -> str:
    """
    Mask all but the last three digits of a phone number, for log output.

    :param value: Phone number in any format.
    :returns: The masked number, e.g. ``"*********000"``.
    """
    if len(value) <= 3:
        return "*" * len(value)
    return "*" * (len(value) - 3) + value[-3:]


def fhir_now() -> str:
    """
    Return the current UTC time as a FHIR ``dateTime`` string (second precision).
    """
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_reference(resource_type: str, resource_id: str) -> str:
    """
    Compose a relative FHIR reference such as ``"Patient/123"``.

    :raises ValidationError: If either part is empty.
    """
    if not resource_type or not resource_id:
        raise ValidationError("a reference needs both a resource type and an id")
    return f"{resource_type}/{resource_id}"


def split_reference(reference: str) -> tuple[str, str]:
    """
    Split a relative FHIR reference into ``(resource_type, resource_id)``.

    :raises ValidationError: If the reference is not of the form ``Type/id``.
    """
    match = _REFERENCE_PATTERN.match(reference or "")
    if not match:
        raise ValidationError(f"invalid resource reference: {reference!r}")
    return match.group("type"), match.group("id")


def require_identifiers(**identifiers: str | None) -> None:
    """
    Check that every named identifier is a non-blank string.

    :raises ValidationError: Naming the first missing identifier.
    """
    for name, value in identifiers.items():
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"missing required identifier: {name}")
