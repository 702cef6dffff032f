from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class Donor(BaseModel):
    """
    Identity record for a donor, as read from the store.
    Lifetime value and last gift date are denormalized by the external sync
    and are read-only here.
    """
    id: str
    org_id: Optional[str] = None
    qb_customer_id: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    billing_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    total_lifetime_value: Optional[float] = None
    last_donation_date: Optional[str] = None


class Gift(BaseModel):
    """A single recorded donation. Amount is already coerced (invalid -> 0)."""
    donor_id: str
    amount: float = 0.0
    date: Optional[str] = None


class RetrievedDonor(BaseModel):
    id: str
    qb_customer_id: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    billing_address: Optional[str] = None
    total_lifetime_value: Optional[float] = None
    last_donation_date: Optional[str] = None
    similarity: Optional[float] = None


class SearchDebug(BaseModel):
    vector_count: int = 0
    best_similarity: Optional[float] = None
    threshold_used: float = 0.0


class DonorSearchResult(BaseModel):
    """Ranked donors for a free-text query, tagged with the method that produced them."""
    donors: List[RetrievedDonor] = Field(default_factory=list)
    method: Literal["vector", "keyword", "vector+keyword"]
    debug: SearchDebug = Field(default_factory=SearchDebug)


class DonorSearchItem(BaseModel):
    id: str
    display_name: Optional[str] = None
    total_lifetime_value: Optional[float] = None


class LifecycleStatus(str, Enum):
    NEW = "New"
    ACTIVE = "Active"
    LAPSED = "Lapsed"
    LOST = "Lost"


class LifecycleConfig(BaseModel):
    """
    Thresholds for lifecycle stage and the major-donor badge.
    Unset fields fall back to the defaults (6 / 12 / 24 months, $5000).
    Thresholds are never validated against each other.
    """
    new_donor_months: Optional[float] = None
    lapsed_months: Optional[float] = None
    lost_months: Optional[float] = None
    major_donor_threshold: Optional[float] = None

    @classmethod
    def from_settings(
        cls, settings: Optional[Dict] = None, overrides: Optional[Dict] = None
    ) -> "LifecycleConfig":
        """From the `lifecycle` section of app settings, with per-org overrides on top."""
        # an unset override keeps the app setting
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        return cls(**{**(settings or {}), **overrides})


class LifecycleResult(BaseModel):
    status: LifecycleStatus
    is_major: bool = False


class PIIValues(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None


class RedactionResult(BaseModel):
    redacted: str
    # placeholder key (e.g. DONOR_NAME) -> original value; kept out of reprs/logs
    placeholders: Dict[str, str] = Field(default_factory=dict, repr=False)


class TopDonorRow(BaseModel):
    id: str
    display_name: Optional[str] = None
    amount: float = 0.0
    last_donation_date: Optional[str] = None


class DashboardMetrics(BaseModel):
    total_donors: int = 0
    total_revenue: float = 0.0
    average_gift: float = 0.0


class DonationTrendPoint(BaseModel):
    month: str   # e.g. "Jan 26"
    key: str     # e.g. "2026-01"
    total: float = 0.0


class YearGivingSummary(BaseModel):
    year: int
    total: float = 0.0
    gift_count: int = 0


class EmailDraft(BaseModel):
    subject: str
    body: str


class EmbeddingRefreshStats(BaseModel):
    considered: int = 0
    attempted: int = 0
    generated: int = 0
    skipped: int = 0


class ChatTurn(BaseModel):
    """One prior message of a donor chat; the caller keeps the history, not us."""
    role: Literal["user", "assistant"]
    content: str


class ChatAnswer(BaseModel):
    reply: str
    donors: List[RetrievedDonor] = Field(default_factory=list)
    route: Literal["top_donors", "stats", "search"]
