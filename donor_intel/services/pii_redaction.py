# donor_intel/services/pii_redaction.py
"""
PII redaction around LLM calls.

Donor names, emails and addresses are swapped for fixed placeholders such as
[DONOR_NAME] before a prompt leaves the process, and swapped back into the
model's reply afterwards. The placeholder map lives only for one round trip.

Known limitation: when one field value is a substring of another (a name that
also appears inside the address, say), the earlier replacement wins and the
round trip can come back partially garbled.
"""
import re
from collections.abc import Mapping
from typing import Any, Dict, Optional, Tuple

from donor_intel.models import PIIValues, RedactionResult

PLACEHOLDERS: Dict[str, str] = {
    "DONOR_NAME": "[DONOR_NAME]",
    "DONOR_EMAIL": "[DONOR_EMAIL]",
    "DONOR_ADDRESS": "[DONOR_ADDRESS]",
    "DONOR_CITY": "[DONOR_CITY]",
    "DONOR_STATE": "[DONOR_STATE]",
}

# replacement order matters for overlapping values
_FIELD_KEYS: Tuple[Tuple[str, str], ...] = (
    ("name", "DONOR_NAME"),
    ("email", "DONOR_EMAIL"),
    ("address", "DONOR_ADDRESS"),
    ("city", "DONOR_CITY"),
    ("state", "DONOR_STATE"),
)


def _clean(value: Optional[Any]) -> str:
    if value is None:
        return ""
    return str(value).strip()


def redact_pii(text: str, pii: PIIValues) -> RedactionResult:
    """
    Replace every case-insensitive occurrence of each provided identity value
    with its placeholder. Values are matched literally, never as patterns.
    Empty or whitespace-only values are skipped and left out of the map.
    """
    redacted = text or ""
    placeholders: Dict[str, str] = {}

    for field_name, key in _FIELD_KEYS:
        value = _clean(getattr(pii, field_name, None))
        if not value:
            continue
        placeholders[key] = value
        token = PLACEHOLDERS[key]
        redacted = re.sub(re.escape(value), lambda _m, t=token: t, redacted, flags=re.IGNORECASE)

    return RedactionResult(redacted=redacted, placeholders=placeholders)


def unredact_pii(text: str, placeholders: Dict[str, str]) -> str:
    """Put real values back in place of [KEY] tokens. Unknown tokens stay as-is."""
    result = text or ""
    for key, value in (placeholders or {}).items():
        result = result.replace(f"[{key}]", value)
    return result


def pii_values_for_donor(donor: Any) -> PIIValues:
    """Identity fields of a donor record (mapping or model) for redaction."""
    def pick(name: str) -> Optional[str]:
        value = donor.get(name) if isinstance(donor, Mapping) else getattr(donor, name, None)
        return None if value is None else str(value)

    return PIIValues(
        name=pick("display_name"),
        email=pick("email"),
        address=pick("billing_address"),
        city=pick("city"),
        state=pick("state"),
    )
