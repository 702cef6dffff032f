# donor_intel/context.py
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from donor_intel.models import LifecycleConfig


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request state handed to every entry point in main.py.

    org_id is trusted: the caller has already resolved and authorized it.
    now is captured once so every component in the request sees the same clock.
    """
    org_id: str
    now: datetime = field(default_factory=_utcnow)
    lifecycle_config: Optional[LifecycleConfig] = None

    @property
    def today(self) -> date:
        now = self.now if self.now.tzinfo else self.now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc).date()
