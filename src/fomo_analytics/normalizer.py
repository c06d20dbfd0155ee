"""
Raw row normalization.

Each raw source the marketplace records (engagement log, follower table, offer
views and purchases, event views, RSVPs, tickets, reservations, student-discount
redemptions) is mapped into ``CanonicalEvent``. Rows are plain mappings as
returned by the repository, so inline payloads and database rows share the
same path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .models import CanonicalEvent, DateLike, EntityType, RawSource, SourceKind, ensure_utc

Row = Mapping[str, Any]

PROFILE_VIEW_TYPES = frozenset({"profile_view"})
PROFILE_INTERACTION_TYPES = frozenset(
    {"follow", "favorite", "share", "click", "profile_click", "profile_interaction"}
)
OFFER_INTERACTION_TYPES = frozenset({"offer_redeem_click"})
RSVP_INTERACTION_STATUSES = frozenset({"interested", "going"})
BOOKING_STATUSES = frozenset({"accepted"})
PAID_PREPAID_STATUS = "paid"


@dataclass
class RawEventBundle:
    """
    Every raw row needed to compute a business's metrics for one range.

    The caller owns these rows; the normalizer and aggregator never fetch.
    """

    business_id: str
    offer_ids: Sequence[str] = field(default_factory=tuple)
    event_ids: Sequence[str] = field(default_factory=tuple)
    engagement_events: Sequence[Row] = field(default_factory=tuple)
    followers: Sequence[Row] = field(default_factory=tuple)
    offer_views: Sequence[Row] = field(default_factory=tuple)
    offer_purchases: Sequence[Row] = field(default_factory=tuple)
    event_views: Sequence[Row] = field(default_factory=tuple)
    rsvps: Sequence[Row] = field(default_factory=tuple)
    tickets: Sequence[Row] = field(default_factory=tuple)
    ticket_tiers: Sequence[Row] = field(default_factory=tuple)
    reservations: Sequence[Row] = field(default_factory=tuple)
    student_redemptions: Sequence[Row] = field(default_factory=tuple)


def coerce_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def coerce_date_like(value: Any) -> Optional[DateLike]:
    """Date-only strings stay whole days; anything with a time is an instant."""
    if value is None or isinstance(value, datetime):
        return coerce_timestamp(value)
    if isinstance(value, date):
        return value
    if isinstance(value, str) and "T" not in value and " " not in value.strip():
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None
    return coerce_timestamp(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _build(
    row: Row,
    timestamp_field: str,
    kind: SourceKind,
    entity_type: EntityType,
    entity_id: Optional[str],
    source: RawSource,
    user_field: str = "user_id",
    amount_cents: Optional[int] = None,
    commission_percent: Optional[int] = None,
) -> Optional[CanonicalEvent]:
    timestamp = coerce_timestamp(row.get(timestamp_field))
    if timestamp is None or entity_id is None:
        return None
    return CanonicalEvent(
        timestamp=timestamp,
        source_kind=kind,
        entity_id=entity_id,
        entity_type=entity_type,
        source=source,
        user_id=_optional_str(row.get(user_field)),
        amount_cents=amount_cents,
        record_id=_optional_str(row.get("id")),
        commission_percent=commission_percent,
    )


def _collect(events: Iterable[Optional[CanonicalEvent]]) -> List[CanonicalEvent]:
    return [event for event in events if event is not None]


def normalize_profile_views(rows: Iterable[Row], business_id: str) -> List[CanonicalEvent]:
    return _collect(
        _build(row, "created_at", SourceKind.VIEW, EntityType.PROFILE, business_id, RawSource.PROFILE_VIEW)
        for row in rows
        if row.get("event_type") in PROFILE_VIEW_TYPES
    )


def normalize_profile_interactions(
    engagement_rows: Iterable[Row],
    follower_rows: Iterable[Row],
    business_id: str,
) -> List[CanonicalEvent]:
    """
    Union of explicit interaction log rows and follower-added rows.

    Both tables must be read; followers who later unfollowed are excluded.
    """

    interactions = _collect(
        _build(
            row, "created_at", SourceKind.INTERACTION, EntityType.PROFILE, business_id, RawSource.PROFILE_INTERACTION
        )
        for row in engagement_rows
        if row.get("event_type") in PROFILE_INTERACTION_TYPES
    )
    follows = _collect(
        _build(row, "created_at", SourceKind.INTERACTION, EntityType.PROFILE, business_id, RawSource.FOLLOWER_ADDED)
        for row in follower_rows
        if row.get("unfollowed_at") is None
    )
    return interactions + follows


def normalize_offer_views(rows: Iterable[Row]) -> List[CanonicalEvent]:
    return _collect(
        _build(
            row, "viewed_at", SourceKind.VIEW, EntityType.OFFER, _optional_str(row.get("discount_id")), RawSource.OFFER_VIEW
        )
        for row in rows
    )


def normalize_offer_interactions(rows: Iterable[Row], offer_ids: Collection[str]) -> List[CanonicalEvent]:
    allowed = set(offer_ids)
    return _collect(
        _build(
            row,
            "created_at",
            SourceKind.INTERACTION,
            EntityType.OFFER,
            _optional_str(row.get("entity_id")),
            RawSource.OFFER_INTERACTION,
        )
        for row in rows
        if row.get("event_type") in OFFER_INTERACTION_TYPES and str(row.get("entity_id")) in allowed
    )


def normalize_offer_redemptions(rows: Iterable[Row]) -> List[CanonicalEvent]:
    return _collect(
        _build(
            row,
            "redeemed_at",
            SourceKind.REDEMPTION,
            EntityType.OFFER,
            _optional_str(row.get("discount_id")),
            RawSource.OFFER_REDEMPTION,
            amount_cents=_optional_int(row.get("final_price_cents")),
            commission_percent=_optional_int(row.get("commission_percent")),
        )
        for row in rows
    )


def normalize_event_views(rows: Iterable[Row]) -> List[CanonicalEvent]:
    return _collect(
        _build(
            row, "viewed_at", SourceKind.VIEW, EntityType.EVENT, _optional_str(row.get("event_id")), RawSource.EVENT_VIEW
        )
        for row in rows
    )


def normalize_rsvps(rows: Iterable[Row]) -> List[CanonicalEvent]:
    return _collect(
        _build(
            row, "created_at", SourceKind.INTERACTION, EntityType.EVENT, _optional_str(row.get("event_id")), RawSource.RSVP
        )
        for row in rows
        if row.get("status") in RSVP_INTERACTION_STATUSES
    )


def _tier_prices(tier_rows: Iterable[Row]) -> Dict[str, int]:
    prices: Dict[str, int] = {}
    for tier in tier_rows:
        price = _optional_int(tier.get("price_cents"))
        if tier.get("id") is not None and price is not None:
            prices[str(tier["id"])] = price
    return prices


def normalize_ticket_checkins(rows: Iterable[Row], tier_rows: Iterable[Row]) -> List[CanonicalEvent]:
    """
    One check-in event per scanned ticket, priced from its tier.

    Revenue is attributed per checked-in unit: tickets from one order can be
    scanned at different times, so the order total is never used here.
    """

    prices = _tier_prices(tier_rows)
    return _collect(
        _build(
            row,
            "checked_in_at",
            SourceKind.CHECKIN,
            EntityType.EVENT,
            _optional_str(row.get("event_id")),
            RawSource.TICKET_CHECKIN,
            amount_cents=prices.get(str(row.get("tier_id"))),
            commission_percent=_optional_int(row.get("commission_percent")),
        )
        for row in rows
    )


def normalize_ticket_sales(rows: Iterable[Row], tier_rows: Iterable[Row]) -> List[CanonicalEvent]:
    prices = _tier_prices(tier_rows)
    return _collect(
        _build(
            row,
            "created_at",
            SourceKind.PURCHASE,
            EntityType.EVENT,
            _optional_str(row.get("event_id")),
            RawSource.TICKET_SALE,
            amount_cents=prices.get(str(row.get("tier_id"))),
            commission_percent=_optional_int(row.get("commission_percent")),
        )
        for row in rows
    )


def _prepaid_amount(row: Row) -> Optional[int]:
    if row.get("prepaid_charge_status") != PAID_PREPAID_STATUS:
        return None
    return _optional_int(row.get("prepaid_min_charge_cents"))


def offer_linked_reservation_ids(purchase_rows: Iterable[Row]) -> Set[str]:
    return {str(row["reservation_id"]) for row in purchase_rows if row.get("reservation_id") is not None}


def normalize_reservation_checkins(
    rows: Iterable[Row],
    business_id: str,
    offer_linked_ids: Collection[str] = (),
) -> List[CanonicalEvent]:
    """
    Event-linked reservations become event check-ins; direct reservations
    become profile visits unless they were created through an offer purchase
    (those are already counted as offer redemptions).
    """

    linked = set(offer_linked_ids)
    events: List[Optional[CanonicalEvent]] = []
    for row in rows:
        event_id = _optional_str(row.get("event_id"))
        if event_id is not None:
            events.append(
                _build(
                    row,
                    "checked_in_at",
                    SourceKind.CHECKIN,
                    EntityType.EVENT,
                    event_id,
                    RawSource.EVENT_RESERVATION_CHECKIN,
                    amount_cents=_prepaid_amount(row),
                    commission_percent=_optional_int(row.get("commission_percent")),
                )
            )
        elif str(row.get("id")) not in linked:
            events.append(
                _build(
                    row,
                    "checked_in_at",
                    SourceKind.VISIT,
                    EntityType.PROFILE,
                    business_id,
                    RawSource.DIRECT_RESERVATION_CHECKIN,
                    amount_cents=_prepaid_amount(row),
                    commission_percent=_optional_int(row.get("commission_percent")),
                )
            )
    return _collect(events)


def normalize_reservation_bookings(rows: Iterable[Row], business_id: str) -> List[CanonicalEvent]:
    events: List[Optional[CanonicalEvent]] = []
    for row in rows:
        if row.get("status") not in BOOKING_STATUSES:
            continue
        event_id = _optional_str(row.get("event_id"))
        events.append(
            _build(
                row,
                "created_at",
                SourceKind.BOOKING,
                EntityType.PROFILE if event_id is None else EntityType.EVENT,
                business_id if event_id is None else event_id,
                RawSource.RESERVATION_BOOKING,
            )
        )
    return _collect(events)


def normalize_student_redemptions(rows: Iterable[Row], business_id: str) -> List[CanonicalEvent]:
    return _collect(
        _build(
            row,
            "created_at",
            SourceKind.REDEMPTION,
            EntityType.PROFILE,
            business_id,
            RawSource.STUDENT_DISCOUNT_REDEMPTION,
        )
        for row in rows
    )


def normalize_all(bundle: RawEventBundle) -> List[CanonicalEvent]:
    business_id = bundle.business_id
    linked = offer_linked_reservation_ids(bundle.offer_purchases)
    redeemed = [row for row in bundle.offer_purchases if row.get("redeemed_at") is not None]
    checked_in_tickets = [row for row in bundle.tickets if row.get("checked_in_at") is not None]
    checked_in_reservations = [row for row in bundle.reservations if row.get("checked_in_at") is not None]

    events: List[CanonicalEvent] = []
    events.extend(normalize_profile_views(bundle.engagement_events, business_id))
    events.extend(normalize_profile_interactions(bundle.engagement_events, bundle.followers, business_id))
    events.extend(normalize_offer_views(bundle.offer_views))
    events.extend(normalize_offer_interactions(bundle.engagement_events, bundle.offer_ids))
    events.extend(normalize_offer_redemptions(redeemed))
    events.extend(normalize_event_views(bundle.event_views))
    events.extend(normalize_rsvps(bundle.rsvps))
    events.extend(normalize_ticket_checkins(checked_in_tickets, bundle.ticket_tiers))
    events.extend(normalize_ticket_sales(bundle.tickets, bundle.ticket_tiers))
    events.extend(normalize_reservation_checkins(checked_in_reservations, business_id, linked))
    events.extend(normalize_reservation_bookings(bundle.reservations, business_id))
    events.extend(normalize_student_redemptions(bundle.student_redemptions, business_id))
    return events
