# donor_intel/services/donor_search.py
"""
Semantic donor retrieval with a keyword fallback, scoped to one org.

- Embeds the query and asks the store for the nearest donors (vector similarity)
- Keeps the top matches; if there are none, or the best one is weak, falls back
  to a case-insensitive substring match on display name and email
- Reports what was actually used in `debug`
"""
import os
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from donor_intel.errors import DonorIntelError, EmbeddingError, StoreError, VectorLookupError
from donor_intel.models import DonorSearchItem, DonorSearchResult, RetrievedDonor, SearchDebug
from donor_intel.utils.coerce import date_only_str, to_optional_number

# ---- Env flags / knobs ----
MATCH_THRESHOLD = float(os.getenv("DONOR_SEARCH_MATCH_THRESHOLD", "0.2"))
MATCH_COUNT = int(os.getenv("DONOR_SEARCH_MATCH_COUNT", "50"))
CONFIDENCE_FLOOR = float(os.getenv("DONOR_SEARCH_CONFIDENCE_FLOOR", "0.25"))
RESULT_LIMIT = int(os.getenv("DONOR_SEARCH_RESULT_LIMIT", "5"))
QUICK_SEARCH_LIMIT = int(os.getenv("DONOR_QUICK_SEARCH_LIMIT", "10"))


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def normalize_donor_row(row: Dict[str, Any]) -> RetrievedDonor:
    return RetrievedDonor(
        id=str(row.get("id")),
        qb_customer_id=_opt_str(row.get("qb_customer_id")),
        display_name=_opt_str(row.get("display_name")),
        email=_opt_str(row.get("email")),
        billing_address=_opt_str(row.get("billing_address")),
        total_lifetime_value=to_optional_number(row.get("total_lifetime_value")),
        last_donation_date=date_only_str(_opt_str(row.get("last_donation_date"))),
        similarity=to_optional_number(row.get("similarity")),
    )


def _by_lifetime_value(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # lifetime value desc, nulls/non-numeric last; stable otherwise
    def key(row: Dict[str, Any]) -> Tuple[int, float]:
        ltv = to_optional_number(row.get("total_lifetime_value"))
        return (1, 0.0) if ltv is None else (0, -ltv)
    return sorted(rows, key=key)


def _merge_by_id(*row_lists: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    merged = []
    for rows in row_lists:
        for row in rows:
            donor_id = str(row.get("id"))
            if donor_id not in seen:
                seen.add(donor_id)
                merged.append(row)
    return merged


async def _keyword_rows(
    store: Any, term: str, org_id: str, limit: int, strict: bool = False
) -> List[Dict[str, Any]]:
    """
    Name and email substring lookups, run concurrently and merged by donor id
    (name hits first). An email failure always counts as no rows; a name
    failure raises only when `strict`.
    """
    name_res, email_res = await asyncio.gather(
        store.find_donors_by_name_like(term, org_id, limit),
        store.find_donors_by_email_like(term, org_id, limit),
        return_exceptions=True,
    )
    for res in (name_res, email_res):
        if isinstance(res, BaseException) and not isinstance(res, Exception):
            raise res

    if isinstance(name_res, Exception):
        if strict:
            if isinstance(name_res, StoreError):
                raise name_res
            raise StoreError(f"Keyword donor search failed: {name_res}") from name_res
        logging.warning(f"[DonorSearch] keyword name lookup failed: {name_res}")
        name_res = []
    if isinstance(email_res, Exception):
        logging.warning(f"[DonorSearch] keyword email lookup failed: {email_res}")
        email_res = []

    return _merge_by_id(name_res or [], email_res or [])


async def search_donors(query: str, org_id: str, *, embedder: Any, store: Any) -> DonorSearchResult:
    """
    Resolve a free-text query into at most RESULT_LIMIT donors.

    Embedding and vector lookup failures raise (EmbeddingError /
    VectorLookupError); a failing keyword fallback is treated as no matches.
    """
    trimmed = (query or "").strip()
    if not trimmed:
        return DonorSearchResult(donors=[], method="keyword", debug=SearchDebug())

    try:
        query_embedding = await embedder.embed(trimmed)
    except DonorIntelError:
        raise
    except Exception as e:
        raise EmbeddingError(f"Failed to generate query embedding: {e}") from e
    if not query_embedding:
        raise EmbeddingError("Failed to generate query embedding.")

    threshold_used = MATCH_THRESHOLD
    try:
        vector_rows = await store.match_donors(query_embedding, threshold_used, MATCH_COUNT, org_id)
    except Exception as e:
        raise VectorLookupError(f"match_donors failed: {e}") from e

    vector_rows = list(vector_rows or [])
    vector_donors = sorted(
        (normalize_donor_row(r) for r in vector_rows),
        key=lambda d: -(d.similarity or 0.0),
    )[:RESULT_LIMIT]
    best_similarity = max((d.similarity or 0.0 for d in vector_donors), default=None)
    debug = SearchDebug(
        vector_count=len(vector_rows),
        best_similarity=best_similarity,
        threshold_used=threshold_used,
    )

    low_confidence = not vector_donors or (best_similarity is not None and best_similarity < CONFIDENCE_FLOOR)
    if not low_confidence:
        return DonorSearchResult(donors=vector_donors, method="vector", debug=debug)

    logging.info(
        f"[DonorSearch] low confidence org={org_id} vectorCount={len(vector_rows)} "
        f"best={best_similarity}; trying keyword fallback"
    )
    keyword_rows = _by_lifetime_value(await _keyword_rows(store, trimmed, org_id, RESULT_LIMIT))[:RESULT_LIMIT]
    keyword_donors = [normalize_donor_row({**row, "similarity": None}) for row in keyword_rows]

    if keyword_donors:
        return DonorSearchResult(donors=keyword_donors, method="vector+keyword", debug=debug)
    return DonorSearchResult(donors=vector_donors, method="vector", debug=debug)


async def quick_search(
    query: str, org_id: str, *, store: Any, limit: int = QUICK_SEARCH_LIMIT
) -> List[DonorSearchItem]:
    """Command-menu lookup: name and email substring matches, no embeddings."""
    trimmed = (query or "").strip()
    if not trimmed:
        return []
    rows = await _keyword_rows(store, trimmed, org_id, limit, strict=True)
    return [
        DonorSearchItem(
            id=str(r.get("id")),
            display_name=_opt_str(r.get("display_name")),
            total_lifetime_value=to_optional_number(r.get("total_lifetime_value")),
        )
        for r in rows[:limit]
    ]
