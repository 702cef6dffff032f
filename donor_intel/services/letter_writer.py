# donor_intel/services/letter_writer.py
"""
LLM-written donor outreach drafts (year-end letter, SMS, email).

The user prompt is passed through the PII redactor before it reaches the chat
model and the reply is unredacted on the way back, so the provider only ever
sees placeholders like [DONOR_NAME].
"""
import re
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional

from donor_intel.errors import LLMError
from donor_intel.models import EmailDraft, LifecycleConfig, LifecycleStatus, PIIValues, YearGivingSummary
from donor_intel.services.donor_lifecycle import get_donor_lifecycle_status
from donor_intel.services.pii_redaction import pii_values_for_donor, redact_pii, unredact_pii
from donor_intel.utils.helpers import load_prompt, render_prompt

DEFAULT_DONOR_NAME = "Valued Donor"
DEFAULT_EMAIL_SUBJECT = "Thank you"

_SUBJECT_RE = re.compile(r"Subject:\s*(.+?)(?:\n|$)", re.IGNORECASE)


def _donor_name(donor: Any) -> str:
    name = donor.get("display_name") if isinstance(donor, Mapping) else getattr(donor, "display_name", None)
    return name or DEFAULT_DONOR_NAME


async def complete_redacted(llm: Any, system_prompt: str, user_prompt: str, pii: PIIValues) -> str:
    """Run one chat completion with the user prompt redacted; returns the unredacted reply."""
    redaction = redact_pii(user_prompt, pii)
    try:
        response = await llm.ainvoke([("system", system_prompt), ("human", redaction.redacted)])
    except Exception as e:
        logging.error(f"[LetterWriter] LLM call failed: {e}")
        raise LLMError(f"LLM call failed: {e}") from e

    content = getattr(response, "content", response)
    if not isinstance(content, str):
        content = str(content) if content else ""
    return unredact_pii(content.strip(), redaction.placeholders)


async def generate_year_end_letter(llm: Any, donor: Any, summary: YearGivingSummary) -> str:
    system_prompt = render_prompt(load_prompt("year_end_letter.system.j2"), {})
    user_prompt = render_prompt(load_prompt("year_end_letter.user.j2"), {
        "donor_name": _donor_name(donor),
        "year": summary.year,
        "total": summary.total,
        "gift_count": summary.gift_count,
    })
    text = await complete_redacted(llm, system_prompt, user_prompt, pii_values_for_donor(donor))
    return text or "Unable to generate letter."


async def generate_text_draft(
    llm: Any,
    donor: Any,
    config: Optional[LifecycleConfig] = None,
    now: Optional[datetime] = None,
) -> str:
    """Short SMS; donors classified New or Active get a thank-you, everyone else a we-miss-you."""
    lifecycle = get_donor_lifecycle_status(donor, config, now)
    status = "Active" if lifecycle.status in (LifecycleStatus.NEW, LifecycleStatus.ACTIVE) else "Lapsed"

    system_prompt = render_prompt(load_prompt("text_draft.system.j2"), {})
    user_prompt = render_prompt(load_prompt("text_draft.user.j2"), {
        "donor_name": _donor_name(donor),
        "status": status,
    })
    text = await complete_redacted(llm, system_prompt, user_prompt, pii_values_for_donor(donor))
    return text or "Unable to generate text draft."


def parse_email_draft(raw: str) -> EmailDraft:
    raw = (raw or "").strip()
    subject = DEFAULT_EMAIL_SUBJECT
    body = raw
    match = _SUBJECT_RE.search(raw)
    if match:
        subject = match.group(1).strip()
        body = _SUBJECT_RE.sub("", raw, count=1).strip()
    return EmailDraft(subject=subject, body=body or "Unable to generate email body.")


async def generate_email_draft(llm: Any, donor: Any) -> EmailDraft:
    system_prompt = render_prompt(load_prompt("email_draft.system.j2"), {})
    user_prompt = render_prompt(load_prompt("email_draft.user.j2"), {"donor_name": _donor_name(donor)})
    raw = await complete_redacted(llm, system_prompt, user_prompt, pii_values_for_donor(donor))
    return parse_email_draft(raw)
