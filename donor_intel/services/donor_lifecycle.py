# donor_intel/services/donor_lifecycle.py
"""
Donor lifecycle status from giving history.

Stage is recomputed on every call from the donor's last gift date and lifetime
value; nothing here is persisted. Months are flat 30-day months.
"""
from collections.abc import Mapping
from datetime import datetime, time, timezone
from typing import Any, Iterable, List, Optional, Set

from donor_intel.models import LifecycleConfig, LifecycleResult, LifecycleStatus
from donor_intel.utils.coerce import parse_date_only, to_number

MONTH_SECONDS = 30 * 24 * 60 * 60

DEFAULT_NEW_MONTHS = 6
DEFAULT_LAPSED_MONTHS = 12
DEFAULT_LOST_MONTHS = 24
DEFAULT_MAJOR_THRESHOLD = 5000

DEFAULT_LIFECYCLE_CONFIG = LifecycleConfig(
    new_donor_months=DEFAULT_NEW_MONTHS,
    lapsed_months=DEFAULT_LAPSED_MONTHS,
    lost_months=DEFAULT_LOST_MONTHS,
    major_donor_threshold=DEFAULT_MAJOR_THRESHOLD,
)

# "Sort by status": re-engagement first (Lapsed, Lost), then Active, then New.
STATUS_SORT_ORDER: List[LifecycleStatus] = [
    LifecycleStatus.LAPSED,
    LifecycleStatus.LOST,
    LifecycleStatus.ACTIVE,
    LifecycleStatus.NEW,
]

MAJOR_BADGE = "Major"


def _field(donor: Any, name: str) -> Any:
    if isinstance(donor, Mapping):
        return donor.get(name)
    return getattr(donor, name, None)


def _threshold(config: Optional[LifecycleConfig], name: str, default: float) -> float:
    value = getattr(config, name, None) if config is not None else None
    return default if value is None else value


def _as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def get_donor_lifecycle_status(
    donor: Any,
    config: Optional[LifecycleConfig] = None,
    now: Optional[datetime] = None,
) -> LifecycleResult:
    """
    Classify a donor as New / Active / Lapsed / Lost and flag major donors.

    Checks run in a fixed order: no usable last gift date -> Lapsed; more than
    lost_months since the last gift -> Lost; more than lapsed_months -> Lapsed;
    at most new_donor_months -> New; otherwise Active. Major means lifetime
    value strictly above the threshold. Never raises on malformed input.
    """
    new_months = _threshold(config, "new_donor_months", DEFAULT_NEW_MONTHS)
    lapsed_months = _threshold(config, "lapsed_months", DEFAULT_LAPSED_MONTHS)
    lost_months = _threshold(config, "lost_months", DEFAULT_LOST_MONTHS)
    major_threshold = _threshold(config, "major_donor_threshold", DEFAULT_MAJOR_THRESHOLD)

    ltv = to_number(_field(donor, "total_lifetime_value"))
    is_major = ltv > major_threshold

    last_date = parse_date_only(_field(donor, "last_donation_date"))
    if last_date is None:
        return LifecycleResult(status=LifecycleStatus.LAPSED, is_major=is_major)

    last_at = datetime.combine(last_date, time.min, tzinfo=timezone.utc)
    months_since_last = (_as_utc(now) - last_at).total_seconds() / MONTH_SECONDS

    if months_since_last > lost_months:
        status = LifecycleStatus.LOST
    elif months_since_last > lapsed_months:
        status = LifecycleStatus.LAPSED
    elif months_since_last <= new_months:
        status = LifecycleStatus.NEW
    else:
        status = LifecycleStatus.ACTIVE
    return LifecycleResult(status=status, is_major=is_major)


def sort_by_status(
    donors: Iterable[Any],
    config: Optional[LifecycleConfig] = None,
    now: Optional[datetime] = None,
) -> List[Any]:
    """Stable sort by STATUS_SORT_ORDER; donors within a stage keep their order."""
    now = _as_utc(now)
    rank = {status: i for i, status in enumerate(STATUS_SORT_ORDER)}
    return sorted(
        donors,
        key=lambda d: rank[get_donor_lifecycle_status(d, config, now).status],
    )


def filter_by_badges(
    donors: Iterable[Any],
    badges: Iterable[str],
    config: Optional[LifecycleConfig] = None,
    now: Optional[datetime] = None,
) -> List[Any]:
    """
    Keep donors whose stage is among `badges`, or who are major donors when
    "Major" is selected. An empty badge selection keeps every donor.
    """
    selected: Set[str] = {b.value if isinstance(b, LifecycleStatus) else str(b) for b in badges}
    donors = list(donors)
    if not selected:
        return donors

    now = _as_utc(now)
    kept = []
    for donor in donors:
        result = get_donor_lifecycle_status(donor, config, now)
        if result.status.value in selected or (result.is_major and MAJOR_BADGE in selected):
            kept.append(donor)
    return kept
