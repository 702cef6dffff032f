# donor_intel/services/donor_chat.py
"""
Donor chat: answers a free-text question about an org's donors.

Questions are routed by wording:
- "top / highest ... donor" -> ranked by lifetime value, answered without the LLM
- "how many / total / average" -> dashboard aggregates, answered without the LLM
- anything else -> hybrid donor search, then one chat completion over the matches

Matched donors reach the model only as numbered references ([[1]], [[2]], ...)
with no identity fields, and the question itself goes through the PII redactor.
References in the reply are swapped for [[id|name]] links afterwards. History
is supplied by the caller on every request; nothing is kept between calls.
"""
import os
import re
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Literal, Optional, Sequence

from donor_intel.context import RequestContext
from donor_intel.models import ChatAnswer, ChatTurn, DashboardMetrics, PIIValues, RetrievedDonor, TopDonorRow
from donor_intel.services import giving_aggregator
from donor_intel.services.donor_search import search_donors
from donor_intel.services.letter_writer import complete_redacted
from donor_intel.services.pii_redaction import pii_values_for_donor
from donor_intel.utils.helpers import load_prompt, render_prompt

# ---- Env flags / knobs ----
CHAT_HISTORY_TURNS = int(os.getenv("DONOR_CHAT_HISTORY_TURNS", "30"))
TOP_DONOR_MAX = 10

NO_DATA_REPLY = "I don't have that information in the database."
NO_DONORS_REPLY = "I don't have donor data in the database."

ChatRoute = Literal["top_donors", "stats", "search"]

_RANK_WORDS = r"(top|highest|most|biggest|largest|#1|number one)"
_SUBJECT_WORDS = r"(donors?|giving|contributions?|donations?)"
_TOP_DONOR_RE = re.compile(
    rf"\b{_RANK_WORDS}\b.*\b{_SUBJECT_WORDS}\b|\b{_SUBJECT_WORDS}\b.*\b{_RANK_WORDS}\b",
    re.IGNORECASE,
)
_STATS_RE = re.compile(r"\b(how many|count|total|sum|average|avg|mean)\b", re.IGNORECASE)
_COUNT_RE = re.compile(r"\b(how many|count|number of)\b", re.IGNORECASE)
_AVERAGE_RE = re.compile(r"\b(average|avg|mean)\b", re.IGNORECASE)
_AVERAGE_GIFT_RE = re.compile(
    r"\b(average\s*gift|avg\s*gift|mean\s*gift|gift\s*average|average\s*donation)\b", re.IGNORECASE
)
_TOP_N_RE = re.compile(r"\b(top|first)\s*(\d+)\b", re.IGNORECASE)
_REFERENCE_RE = re.compile(r"\[\[(\d+)\]\]")

STATE_NAME_TO_ABBR: Dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR", "california": "CA",
    "colorado": "CO", "connecticut": "CT", "delaware": "DE", "florida": "FL", "georgia": "GA",
    "hawaii": "HI", "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV", "new hampshire": "NH",
    "new jersey": "NJ", "new mexico": "NM", "new york": "NY", "north carolina": "NC",
    "north dakota": "ND", "ohio": "OH", "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA",
    "rhode island": "RI", "south carolina": "SC", "south dakota": "SD", "tennessee": "TN",
    "texas": "TX", "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
}
# longest first so "west virginia" wins over "virginia" and "arkansas" over "kansas"
_STATE_NAMES = sorted(STATE_NAME_TO_ABBR, key=len, reverse=True)
_STATE_ABBR_TO_NAME = {abbr: name for name, abbr in STATE_NAME_TO_ABBR.items()}


def classify_question(message: str) -> ChatRoute:
    if _TOP_DONOR_RE.search(message or ""):
        return "top_donors"
    if _STATS_RE.search(message or ""):
        return "stats"
    return "search"


def expand_query_for_search(query: str) -> str:
    """
    Add the other spelling of a US state so "California" also finds "CA" and
    vice versa. Abbreviations only count when written in capitals ("IN", not "in").
    """
    if not query:
        return query
    lower = query.lower()
    parts = [query]
    for name in _STATE_NAMES:
        if re.search(rf"\b{name}\b", lower):
            parts.append(STATE_NAME_TO_ABBR[name])
            break
    for abbr, name in _STATE_ABBR_TO_NAME.items():
        if re.search(rf"\b{abbr}\b", query):
            parts.append(name)
            break
    return " ".join(parts)


def strip_sql_artifacts(text: str) -> str:
    """Drop LIKE wildcards (% and _) that models sometimes echo back."""
    text = (text or "").replace("%", "").replace("_", " ")
    return re.sub(r"[ \t]+", " ", text).strip()


def format_usd(value: float) -> str:
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def top_donor_limit(message: str) -> int:
    match = _TOP_N_RE.search(message or "")
    if not match:
        return 1
    return max(1, min(int(match.group(2)), TOP_DONOR_MAX))


def _top_donor_reply(rows: Sequence[TopDonorRow], limit: int) -> str:
    if not rows:
        return NO_DONORS_REPLY
    if limit == 1:
        top = rows[0]
        return f"The top donor by total lifetime value is {top.display_name or 'Unknown'} with {format_usd(top.amount)}."
    listed = "; ".join(f"{r.display_name or 'Unknown'} ({format_usd(r.amount)})" for r in rows)
    return f"Top donors by total lifetime value: {listed}."


def _stats_reply(message: str, metrics: DashboardMetrics) -> str:
    if _COUNT_RE.search(message):
        return f"There are {metrics.total_donors:,} donors."
    if _AVERAGE_RE.search(message):
        label = "Average gift" if _AVERAGE_GIFT_RE.search(message) else "Average lifetime value"
        return f"{label} is {format_usd(metrics.average_gift)}."
    return f"Total lifetime value is {format_usd(metrics.total_revenue)}."


def _history_turns(history: Optional[Sequence[Any]]) -> List[ChatTurn]:
    # malformed entries are dropped, not rejected
    turns = []
    for item in history or []:
        if isinstance(item, ChatTurn):
            turns.append(item)
        elif (
            isinstance(item, Mapping)
            and item.get("role") in ("user", "assistant")
            and isinstance(item.get("content"), str)
        ):
            turns.append(ChatTurn(role=item["role"], content=item["content"]))
    return turns[-CHAT_HISTORY_TURNS:]


def _link_references(reply: str, donors: Sequence[RetrievedDonor]) -> str:
    def link(match: re.Match) -> str:
        index = int(match.group(1)) - 1
        if 0 <= index < len(donors):
            donor = donors[index]
            return f"[[{donor.id}|{donor.display_name or 'Unknown'}]]"
        return match.group(0)
    return _REFERENCE_RE.sub(link, reply)


async def answer_question(
    llm: Any,
    message: str,
    ctx: RequestContext,
    *,
    embedder: Any,
    store: Any,
    history: Optional[Sequence[Any]] = None,
) -> ChatAnswer:
    """
    Answer one chat message for ctx.org_id. Only the search route calls the
    embedder and the LLM; their failures propagate as EmbeddingError,
    VectorLookupError or LLMError.
    """
    message = (message or "").strip()
    if not message:
        raise ValueError("Message required")

    route = classify_question(message)
    if route == "top_donors":
        limit = top_donor_limit(message)
        rows = await giving_aggregator.top_donors(store, ctx.org_id, "all", today=ctx.today, limit=limit)
        donors = [
            RetrievedDonor(
                id=r.id,
                display_name=r.display_name,
                total_lifetime_value=r.amount,
                last_donation_date=r.last_donation_date,
            )
            for r in rows
        ]
        return ChatAnswer(reply=_top_donor_reply(rows, limit), donors=donors, route=route)

    if route == "stats":
        metrics = await giving_aggregator.dashboard_metrics(store, ctx.org_id)
        return ChatAnswer(reply=_stats_reply(message, metrics), route=route)

    result = await search_donors(expand_query_for_search(message), ctx.org_id, embedder=embedder, store=store)
    donors = result.donors
    user_prompt = render_prompt(load_prompt("donor_chat.user.j2"), {
        "history": _history_turns(history),
        "message": message,
        "donors": [
            {
                "lifetime_value": "unknown" if d.total_lifetime_value is None else format_usd(d.total_lifetime_value),
                "last_gift": d.last_donation_date or "never",
                "similarity": d.similarity,
            }
            for d in donors
        ],
    })
    # the question may name the best match; keep that out of the prompt too
    pii = pii_values_for_donor(donors[0]) if donors else PIIValues()
    raw = await complete_redacted(llm, render_prompt(load_prompt("donor_chat.system.j2"), {}), user_prompt, pii)

    logging.info(
        f"[DonorChat] org={ctx.org_id} route=search method={result.method} donors={len(donors)}"
    )
    reply = _link_references(strip_sql_artifacts(raw), donors)
    return ChatAnswer(reply=reply or NO_DATA_REPLY, donors=donors, route=route)
