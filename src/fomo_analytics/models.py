from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Sequence, Union

from .errors import InvalidDateRange


DateLike = Union[date, datetime]


class TargetType(str, Enum):
    OFFER = "offer"
    EVENT = "event"


class DurationMode(str, Enum):
    DAILY = "daily"
    HOURLY = "hourly"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"
    PAUSED = "paused"


class EntityType(str, Enum):
    PROFILE = "profile"
    OFFER = "offer"
    EVENT = "event"


class SourceKind(str, Enum):
    VIEW = "view"
    INTERACTION = "interaction"
    VISIT = "visit"
    CHECKIN = "checkin"
    REDEMPTION = "redemption"
    BOOKING = "booking"
    PURCHASE = "purchase"


VERIFIED_KINDS = frozenset({SourceKind.VISIT, SourceKind.CHECKIN, SourceKind.REDEMPTION})


class RawSource(str, Enum):
    """Raw table a canonical event was normalized from."""

    PROFILE_VIEW = "profile_view"
    PROFILE_INTERACTION = "profile_interaction"
    FOLLOWER_ADDED = "follower_added"
    OFFER_VIEW = "offer_view"
    OFFER_INTERACTION = "offer_interaction"
    OFFER_REDEMPTION = "offer_redemption"
    EVENT_VIEW = "event_view"
    RSVP = "rsvp"
    TICKET_CHECKIN = "ticket_checkin"
    EVENT_RESERVATION_CHECKIN = "event_reservation_checkin"
    DIRECT_RESERVATION_CHECKIN = "direct_reservation_checkin"
    STUDENT_DISCOUNT_REDEMPTION = "student_discount_redemption"
    RESERVATION_BOOKING = "reservation_booking"
    TICKET_SALE = "ticket_sale"


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DateRange:
    """
    Reporting range requested by a dashboard.

    ``start`` is inclusive and ``end`` is exclusive, matching the half-open
    convention used for every window in this package.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end <= self.start:
            raise InvalidDateRange(f"end ({self.end.isoformat()}) must be greater than start ({self.start.isoformat()})")

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= ensure_utc(timestamp) < self.end


@dataclass(frozen=True)
class Campaign:
    """
    A paid boost for a single offer or event.

    Daily boosts are described by ``start_date``/``end_date`` (both inclusive
    days); hourly boosts by ``created_at`` plus ``duration_hours``.
    ``deactivated_at`` is set when the business switched the boost off early.
    """

    id: str
    target_type: TargetType
    target_id: str
    business_id: str
    created_at: datetime
    duration_mode: DurationMode = DurationMode.DAILY
    start_date: Optional[DateLike] = None
    end_date: Optional[DateLike] = None
    duration_hours: Optional[int] = None
    status: CampaignStatus = CampaignStatus.ACTIVE
    total_cost_cents: int = 0
    deactivated_at: Optional[datetime] = None

    @property
    def target_entity_type(self) -> EntityType:
        return EntityType.OFFER if self.target_type == TargetType.OFFER else EntityType.EVENT


@dataclass(frozen=True)
class ResolvedWindow:
    start: datetime
    end: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= ensure_utc(timestamp) < self.end

    def as_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class PlanInterval:
    """
    One contiguous period a business held a subscription tier.

    ``valid_to`` is ``None`` (or ``end_inclusive`` is set) for the current,
    open-ended period.
    """

    business_id: str
    plan_slug: str
    valid_from: datetime
    valid_to: Optional[datetime] = None
    end_inclusive: bool = False


@dataclass(frozen=True)
class CanonicalEvent:
    """
    Source-agnostic customer event produced by the normalizer.

    ``commission_percent`` carries the rate frozen on the originating order,
    when the raw row recorded one.
    """

    timestamp: datetime
    source_kind: SourceKind
    entity_id: str
    entity_type: EntityType
    source: RawSource
    user_id: Optional[str] = None
    amount_cents: Optional[int] = None
    record_id: Optional[str] = None
    commission_percent: Optional[int] = None

    @property
    def is_verified_visit(self) -> bool:
        return self.source_kind in VERIFIED_KINDS


@dataclass(frozen=True)
class CommissionRate:
    percent: int
    source: str


@dataclass(frozen=True)
class RevenueSummary:
    gross_cents: int = 0
    commission_cents: int = 0
    net_cents: int = 0
    effective_percent: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "grossCents": self.gross_cents,
            "commissionCents": self.commission_cents,
            "netCents": self.net_cents,
            "effectivePercent": self.effective_percent,
        }


@dataclass(frozen=True)
class AttributionResult:
    campaign_id: str
    total_visits: int
    unique_visitor_user_ids: FrozenSet[str]
    gross_revenue_cents: int
    net_revenue_cents: int
    commission_cents: int = 0
    commission_percent: int = 0
    spent_cents: int = 0
    window: Optional[ResolvedWindow] = None

    @property
    def unique_visitors(self) -> int:
        return len(self.unique_visitor_user_ids)

    @property
    def cost_per_customer_cents(self) -> float:
        if not self.unique_visitor_user_ids:
            return 0.0
        return self.spent_cents / len(self.unique_visitor_user_ids)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "campaignId": self.campaign_id,
            "totalVisits": self.total_visits,
            "uniqueVisitors": self.unique_visitors,
            "uniqueVisitorUserIds": sorted(self.unique_visitor_user_ids),
            "grossRevenueCents": self.gross_revenue_cents,
            "netRevenueCents": self.net_revenue_cents,
            "commissionCents": self.commission_cents,
            "commissionPercent": self.commission_percent,
            "spentCents": self.spent_cents,
            "costPerCustomerCents": self.cost_per_customer_cents,
            "window": None if self.window is None else self.window.as_dict(),
        }


@dataclass(frozen=True)
class CustomerSummary:
    verified_visits: int
    unique_customers: int
    repeat_customers: int

    @property
    def repeat_rate(self) -> float:
        if self.unique_customers == 0:
            return 0.0
        return self.repeat_customers / self.unique_customers * 100


@dataclass(frozen=True)
class OverviewMetrics:
    total_views: int
    unique_customers: int
    repeat_customers: int
    bookings: int
    tickets: int
    verified_visits: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "totalViews": self.total_views,
            "uniqueCustomers": self.unique_customers,
            "repeatCustomers": self.repeat_customers,
            "bookings": self.bookings,
            "tickets": self.tickets,
            "verifiedVisits": self.verified_visits,
        }


@dataclass(frozen=True)
class SectionTotals:
    views: int = 0
    interactions: int = 0
    visits: int = 0


@dataclass(frozen=True)
class MetricComparison:
    without: int
    with_boost: int
    change: int


@dataclass(frozen=True)
class ComparisonSection:
    views: MetricComparison
    interactions: MetricComparison
    visits: MetricComparison


@dataclass(frozen=True)
class BoostComparison:
    profile: ComparisonSection
    offers: ComparisonSection
    events: ComparisonSection
    uncovered_profile_events: int = 0
    new_customers: int = 0


@dataclass(frozen=True)
class GuidanceWindow:
    day_index: int
    hours_range: str
    count: int = 0


@dataclass(frozen=True)
class GuidanceSection:
    views: Sequence[GuidanceWindow]
    interactions: Sequence[GuidanceWindow]
    visits: Sequence[GuidanceWindow]


@dataclass(frozen=True)
class GuidanceReport:
    profile: GuidanceSection
    offers: GuidanceSection
    events: GuidanceSection
    profile_totals: SectionTotals
    offer_totals: SectionTotals
    event_totals: SectionTotals
    recommended: Dict[str, GuidanceWindow] = field(default_factory=dict)
    best_overall: Optional[GuidanceWindow] = None


def serialize(obj: Any) -> Any:
    """
    Convert result dataclasses into JSON-serialisable camelCase structures.

    The FastAPI layer uses this for the nested report types that do not carry
    their own ``as_dict``.
    """

    if hasattr(obj, "as_dict"):
        return obj.as_dict()
    if isinstance(obj, GuidanceWindow):
        return {"dayIndex": obj.day_index, "hoursRange": obj.hours_range, "count": obj.count}
    if isinstance(obj, GuidanceSection):
        return {
            "views": [serialize(window) for window in obj.views],
            "interactions": [serialize(window) for window in obj.interactions],
            "visits": [serialize(window) for window in obj.visits],
        }
    if isinstance(obj, SectionTotals):
        return {"views": obj.views, "interactions": obj.interactions, "visits": obj.visits}
    if isinstance(obj, GuidanceReport):
        return {
            "profile": serialize(obj.profile),
            "offers": serialize(obj.offers),
            "events": serialize(obj.events),
            "profileTotals": serialize(obj.profile_totals),
            "offerTotals": serialize(obj.offer_totals),
            "eventTotals": serialize(obj.event_totals),
            "recommendedPlan": {name: serialize(window) for name, window in obj.recommended.items()},
            "bestOverall": None if obj.best_overall is None else serialize(obj.best_overall),
        }
    if isinstance(obj, MetricComparison):
        return {"without": obj.without, "with": obj.with_boost, "change": obj.change}
    if isinstance(obj, ComparisonSection):
        return {
            "views": serialize(obj.views),
            "interactions": serialize(obj.interactions),
            "visits": serialize(obj.visits),
        }
    if isinstance(obj, BoostComparison):
        return {
            "profile": serialize(obj.profile),
            "offers": serialize(obj.offers),
            "events": serialize(obj.events),
            "uncoveredProfileEvents": obj.uncovered_profile_events,
            "newCustomers": obj.new_customers,
        }
    if isinstance(obj, CustomerSummary):
        return {
            "verifiedVisits": obj.verified_visits,
            "uniqueCustomers": obj.unique_customers,
            "repeatCustomers": obj.repeat_customers,
            "repeatRate": obj.repeat_rate,
        }
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {key: serialize(value) for key, value in obj.items()}
    if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes)):
        return [serialize(item) for item in obj]
    return obj
