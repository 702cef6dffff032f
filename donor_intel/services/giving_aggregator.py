# donor_intel/services/giving_aggregator.py
"""
Time-windowed giving aggregates over an organization's donor population.

Gift lookups take a list of donor ids, and an org can have more donors than a
single lookup accepts, so ids go out in fixed-size batches that run
concurrently and are merged by donor id. For top donors a failing batch is
skipped (partial result); the trend chart fails instead.
"""
import os
import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from donor_intel.errors import StoreError
from donor_intel.models import DashboardMetrics, DonationTrendPoint, TopDonorRow, YearGivingSummary
from donor_intel.utils.coerce import date_only_str, to_date_only, to_number, to_optional_number
from donor_intel.utils.helpers import chunked

# ---- Env flags / knobs ----
TOP_DONORS_LIMIT = int(os.getenv("TOP_DONORS_LIMIT", "5"))
TOP_DONORS_BATCH_SIZE = int(os.getenv("TOP_DONORS_BATCH_SIZE", "150"))
TREND_BATCH_SIZE = int(os.getenv("DONATION_TREND_BATCH_SIZE", "100"))
TREND_MONTHS = 12

TopDonorRange = Literal["30d", "90d", "ytd", "all"]
WINDOW_DAYS = {"30d": 30, "90d": 90}


@dataclass
class _Running:
    total: float = 0.0
    last_date: Optional[str] = None


def _today(today: Optional[date]) -> date:
    return today or datetime.now(timezone.utc).date()


def range_cutoff(range_: str, today: Optional[date] = None) -> Optional[str]:
    """YYYY-MM-DD lower bound for a windowed range; None for "all"."""
    today = _today(today)
    if range_ == "all":
        return None
    if range_ in WINDOW_DAYS:
        return to_date_only(today - timedelta(days=WINDOW_DAYS[range_]))
    if range_ == "ytd":
        return f"{today.year}-01-01"
    raise ValueError(f"Unknown top donors range: {range_!r}")


def _rank_key(donor_id: str, amount: Optional[float]) -> Tuple[int, float, str]:
    # amount desc, missing amounts last, then donor id asc
    if amount is None:
        return (1, 0.0, donor_id)
    return (0, -amount, donor_id)


async def sum_gifts_by_donor(
    store: Any,
    donor_ids: Sequence[str],
    cutoff: str,
    batch_size: int = TOP_DONORS_BATCH_SIZE,
) -> Dict[str, _Running]:
    """
    Per-donor running totals of every gift dated on/after `cutoff`.
    Batches run concurrently; a batch whose lookup fails is logged and skipped.
    """
    batches = list(chunked(list(donor_ids), batch_size))
    if not batches:
        return {}

    results = await asyncio.gather(
        *(store.gifts_for_donors(batch, cutoff) for batch in batches),
        return_exceptions=True,
    )

    sums: Dict[str, _Running] = {}
    for index, rows in enumerate(results):
        if isinstance(rows, BaseException):
            if not isinstance(rows, Exception):
                raise rows
            logging.error(
                f"[TopDonors] donations lookup failed batch={index} size={len(batches[index])} cutoff={cutoff}: {rows}"
            )
            continue

        for row in rows or []:
            donor_id = row.get("donor_id")
            if donor_id is None:
                continue
            cur = sums.setdefault(str(donor_id), _Running())
            cur.total += to_number(row.get("amount"))
            gift_date = date_only_str(row.get("date"))
            if gift_date and (cur.last_date is None or gift_date > cur.last_date):
                cur.last_date = gift_date
    return sums


async def _top_by_lifetime_value(store: Any, org_id: str, limit: int) -> List[TopDonorRow]:
    try:
        rows = await store.top_donors_by_lifetime_value(org_id, limit)
    except Exception as e:
        logging.error(f"[TopDonors] lifetime value lookup failed org={org_id}: {e}")
        return []

    ranked = sorted(
        rows or [],
        key=lambda r: _rank_key(str(r.get("id")), to_optional_number(r.get("total_lifetime_value"))),
    )
    return [
        TopDonorRow(
            id=str(r.get("id")),
            display_name=None if r.get("display_name") is None else str(r.get("display_name")),
            amount=to_number(r.get("total_lifetime_value")),
            last_donation_date=date_only_str(r.get("last_donation_date")),
        )
        for r in ranked[:limit]
    ]


async def top_donors(
    store: Any,
    org_id: str,
    range_: TopDonorRange,
    today: Optional[date] = None,
    limit: int = TOP_DONORS_LIMIT,
) -> List[TopDonorRow]:
    """
    Top donors for the org by giving in `range_`.

    "all" ranks by the denormalized lifetime value. "30d", "90d" and "ytd" sum
    donations dated on/after the cutoff. Equal amounts are ordered by donor id.
    Never raises on lookup failures: degrades to an empty or partial list.
    """
    cutoff = range_cutoff(range_, today)
    if cutoff is None:
        return await _top_by_lifetime_value(store, org_id, limit)

    try:
        donor_ids = await store.donor_ids_for_org(org_id)
    except Exception as e:
        logging.error(f"[TopDonors] donor id lookup failed org={org_id} range={range_}: {e}")
        return []
    if not donor_ids:
        logging.info(f"[TopDonors] No donors for org, range={range_} cutoff={cutoff}")
        return []

    sums = await sum_gifts_by_donor(store, donor_ids, cutoff)
    ranked = sorted(sums.items(), key=lambda kv: _rank_key(kv[0], kv[1].total))[:limit]
    logging.info(
        f"[TopDonors] range={range_} cutoff={cutoff} orgDonors={len(donor_ids)} "
        f"donorsWithGifts={len(sums)} topCount={len(ranked)}"
    )
    if not ranked:
        return []

    # display metadata only for the top-N, never the whole population
    info: Dict[str, Dict[str, Any]] = {}
    try:
        for row in await store.donors_by_ids([donor_id for donor_id, _ in ranked]) or []:
            info[str(row.get("id"))] = row
    except Exception as e:
        logging.warning(f"[TopDonors] donor metadata lookup failed: {e}")

    out = []
    for donor_id, running in ranked:
        meta = info.get(donor_id, {})
        name = meta.get("display_name")
        out.append(TopDonorRow(
            id=donor_id,
            display_name=None if name is None else str(name),
            amount=running.total,
            last_donation_date=running.last_date or date_only_str(meta.get("last_donation_date")),
        ))
    return out


async def dashboard_metrics(store: Any, org_id: str) -> DashboardMetrics:
    """Donor count, summed lifetime value and average per donor for the org."""
    values = await store.lifetime_values_for_org(org_id) or []
    total_donors = len(values)
    total_revenue = sum(to_number(v) for v in values)
    average_gift = total_revenue / total_donors if total_donors > 0 else 0.0
    return DashboardMetrics(total_donors=total_donors, total_revenue=total_revenue, average_gift=average_gift)


def _month_start(year: int, month: int) -> date:
    # month may run past 12 or below 1
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return date(year, month, 1)


async def donation_trend(
    store: Any, org_id: str, today: Optional[date] = None
) -> List[DonationTrendPoint]:
    """
    Monthly donation totals for the last 12 calendar months (current month
    included). Every month appears, with 0 when nothing was given.
    """
    today = _today(today)
    start = _month_start(today.year, today.month - (TREND_MONTHS - 1))
    months = [_month_start(start.year, start.month + i) for i in range(TREND_MONTHS)]
    totals: Dict[str, float] = {m.strftime("%Y-%m"): 0.0 for m in months}

    donor_ids = await store.donor_ids_for_org(org_id) or []
    batches = list(chunked(list(donor_ids), TREND_BATCH_SIZE))
    results = await asyncio.gather(
        *(store.gifts_for_donors(batch, to_date_only(start)) for batch in batches),
        return_exceptions=True,
    )
    for index, rows in enumerate(results):
        if isinstance(rows, BaseException):
            if not isinstance(rows, Exception):
                raise rows
            logging.error(f"[DonationTrend] donations lookup failed batch={index}: {rows}")
            if isinstance(rows, StoreError):
                raise rows
            raise StoreError(f"Failed to load donation trend: {rows}") from rows
        for row in rows or []:
            gift_date = date_only_str(row.get("date"))
            key = gift_date[:7] if gift_date else None
            if key in totals:
                totals[key] += to_number(row.get("amount"))

    return [
        DonationTrendPoint(month=m.strftime("%b %y"), key=m.strftime("%Y-%m"), total=totals[m.strftime("%Y-%m")])
        for m in months
    ]


async def year_giving_summary(store: Any, donor_id: str, year: int) -> YearGivingSummary:
    """Total and number of gifts a donor made in a calendar year."""
    rows = await store.gifts_for_donors([donor_id], f"{year}-01-01", until=f"{year + 1}-01-01") or []
    total = sum(to_number(r.get("amount")) for r in rows)
    return YearGivingSummary(year=year, total=total, gift_count=len(rows))
