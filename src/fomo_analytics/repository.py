from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import DateTime, bindparam, create_engine, text
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .errors import DataSourceUnavailable
from .models import Campaign, CampaignStatus, DateRange, DurationMode, PlanInterval, TargetType
from .normalizer import RawEventBundle, coerce_date_like, coerce_timestamp

RawRows = Sequence[Mapping[str, Any]]
_TIMESTAMP = DateTime(timezone=True)


class AnalyticsRepository:
    """
    Interface for loading the raw rows the engine aggregates.

    Every method is a single bounded fetch scoped by business, entity ids and
    date range, so the service can issue them concurrently. Implementations
    raise ``DataSourceUnavailable`` when a fetch fails.
    """

    def fetch_entity_ids(self, business_id: str) -> Tuple[Sequence[str], Sequence[str]]:
        raise NotImplementedError

    def fetch_engagement_events(self, business_id: str, date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_followers(self, business_id: str, date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_offer_views(self, offer_ids: Sequence[str], date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_offer_purchases(self, offer_ids: Sequence[str], date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_event_views(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_rsvps(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_tickets(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_ticket_tiers(self, event_ids: Sequence[str]) -> RawRows:
        raise NotImplementedError

    def fetch_reservations(self, business_id: str, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_student_redemptions(self, business_id: str, date_range: DateRange) -> RawRows:
        raise NotImplementedError

    def fetch_plan_history(self, business_id: str) -> Sequence[PlanInterval]:
        raise NotImplementedError

    def fetch_campaigns(self, business_id: str) -> Sequence[Campaign]:
        raise NotImplementedError

    def fetch_active_plan_slug(self, business_id: str) -> Optional[str]:
        raise NotImplementedError

    def fetch_commission_ledger(self, period_start: datetime, period_end: datetime) -> RawRows:
        raise NotImplementedError


def _as_dicts(rows: Sequence[Row]) -> Tuple[Dict[str, Any], ...]:
    return tuple(dict(row._mapping) for row in rows)


class SQLAnalyticsRepository(AnalyticsRepository):
    """
    Load raw rows from the marketplace schema.

    Expected tables (only the referenced columns are required):
      - discounts(id, business_id), events(id, business_id)
      - engagement_events(id, business_id, event_type, entity_id, user_id, created_at)
      - business_followers(id, business_id, user_id, created_at, unfollowed_at)
      - discount_views(id, discount_id, user_id, viewed_at)
      - offer_purchases(id, discount_id, user_id, redeemed_at, final_price_cents,
        commission_percent, reservation_id)
      - event_views(id, event_id, user_id, viewed_at)
      - rsvps(id, event_id, user_id, status, created_at)
      - tickets(id, event_id, tier_id, order_id, user_id, checked_in_at, created_at)
      - ticket_orders(id, commission_percent), ticket_tiers(id, event_id, price_cents)
      - reservations(id, business_id, event_id, user_id, status, checked_in_at,
        created_at, prepaid_min_charge_cents, prepaid_charge_status)
      - student_discount_redemptions(id, business_id, user_id, created_at)
      - business_subscription_plan_history(business_id, plan_slug, valid_from, valid_to)
      - offer_boosts / event_boosts(id, discount_id|event_id, business_id, created_at,
        duration_mode, start_date, end_date, duration_hours, status,
        total_cost_cents, deactivated_at)
      - business_subscriptions(business_id, plan_id, status), subscription_plans(id, slug)
      - commission_ledger(id, business_id, commission_amount_cents, redeemed_at, status)
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _fetch(self, source: str, query: Any, params: Dict[str, Any]) -> Tuple[Dict[str, Any], ...]:
        if "start" in params:
            query = query.bindparams(bindparam("start", type_=_TIMESTAMP), bindparam("end", type_=_TIMESTAMP))
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(query, params).fetchall()
        except SQLAlchemyError as exc:
            raise DataSourceUnavailable(source, exc) from exc
        return _as_dicts(rows)

    @staticmethod
    def _range_params(date_range: DateRange) -> Dict[str, Any]:
        return {"start": date_range.start, "end": date_range.end}

    def fetch_entity_ids(self, business_id: str) -> Tuple[Sequence[str], Sequence[str]]:
        params = {"business_id": business_id}
        offers = self._fetch("discounts", text("SELECT id FROM discounts WHERE business_id = :business_id"), params)
        events = self._fetch("events", text("SELECT id FROM events WHERE business_id = :business_id"), params)
        return tuple(str(row["id"]) for row in offers), tuple(str(row["id"]) for row in events)

    def fetch_engagement_events(self, business_id: str, date_range: DateRange) -> RawRows:
        query = text(
            """
            SELECT id, business_id, event_type, entity_id, user_id, created_at
            FROM engagement_events
            WHERE business_id = :business_id AND created_at >= :start AND created_at < :end
            """
        )
        return self._fetch("engagement_events", query, {"business_id": business_id, **self._range_params(date_range)})

    def fetch_followers(self, business_id: str, date_range: DateRange) -> RawRows:
        query = text(
            """
            SELECT id, business_id, user_id, created_at, unfollowed_at
            FROM business_followers
            WHERE business_id = :business_id AND unfollowed_at IS NULL
              AND created_at >= :start AND created_at < :end
            """
        )
        return self._fetch("business_followers", query, {"business_id": business_id, **self._range_params(date_range)})

    def fetch_offer_views(self, offer_ids: Sequence[str], date_range: DateRange) -> RawRows:
        if not offer_ids:
            return ()
        query = text(
            """
            SELECT id, discount_id, user_id, viewed_at
            FROM discount_views
            WHERE discount_id IN :ids AND viewed_at >= :start AND viewed_at < :end
            """
        ).bindparams(bindparam("ids", expanding=True))
        return self._fetch("discount_views", query, {"ids": list(offer_ids), **self._range_params(date_range)})

    def fetch_offer_purchases(self, offer_ids: Sequence[str], date_range: DateRange) -> RawRows:
        if not offer_ids:
            return ()
        # Reservation-linked purchases are kept regardless of redemption time so
        # offer-created reservations can be told apart from direct ones.
        query = text(
            """
            SELECT id, discount_id, user_id, redeemed_at, final_price_cents, commission_percent, reservation_id
            FROM offer_purchases
            WHERE discount_id IN :ids
              AND ((redeemed_at >= :start AND redeemed_at < :end) OR reservation_id IS NOT NULL)
            """
        ).bindparams(bindparam("ids", expanding=True))
        return self._fetch("offer_purchases", query, {"ids": list(offer_ids), **self._range_params(date_range)})

    def fetch_event_views(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        if not event_ids:
            return ()
        query = text(
            """
            SELECT id, event_id, user_id, viewed_at
            FROM event_views
            WHERE event_id IN :ids AND viewed_at >= :start AND viewed_at < :end
            """
        ).bindparams(bindparam("ids", expanding=True))
        return self._fetch("event_views", query, {"ids": list(event_ids), **self._range_params(date_range)})

    def fetch_rsvps(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        if not event_ids:
            return ()
        query = text(
            """
            SELECT id, event_id, user_id, status, created_at
            FROM rsvps
            WHERE event_id IN :ids AND created_at >= :start AND created_at < :end
            """
        ).bindparams(bindparam("ids", expanding=True))
        return self._fetch("rsvps", query, {"ids": list(event_ids), **self._range_params(date_range)})

    def fetch_tickets(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        if not event_ids:
            return ()
        query = text(
            """
            SELECT t.id, t.event_id, t.tier_id, t.order_id, t.user_id, t.checked_in_at, t.created_at,
                   o.commission_percent
            FROM tickets t
            LEFT JOIN ticket_orders o ON o.id = t.order_id
            WHERE t.event_id IN :ids
              AND ((t.checked_in_at >= :start AND t.checked_in_at < :end)
                   OR (t.created_at >= :start AND t.created_at < :end))
            """
        ).bindparams(bindparam("ids", expanding=True))
        return self._fetch("tickets", query, {"ids": list(event_ids), **self._range_params(date_range)})

    def fetch_ticket_tiers(self, event_ids: Sequence[str]) -> RawRows:
        if not event_ids:
            return ()
        query = text("SELECT id, event_id, price_cents FROM ticket_tiers WHERE event_id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        return self._fetch("ticket_tiers", query, {"ids": list(event_ids)})

    def fetch_reservations(self, business_id: str, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        params: Dict[str, Any] = {"business_id": business_id, **self._range_params(date_range)}
        scope = "business_id = :business_id"
        if event_ids:
            scope = "(business_id = :business_id OR event_id IN :ids)"
            params["ids"] = list(event_ids)
        query = text(
            f"""
            SELECT id, business_id, event_id, user_id, status, checked_in_at, created_at,
                   prepaid_min_charge_cents, prepaid_charge_status
            FROM reservations
            WHERE {scope}
              AND ((checked_in_at >= :start AND checked_in_at < :end)
                   OR (created_at >= :start AND created_at < :end))
            """
        )
        if event_ids:
            query = query.bindparams(bindparam("ids", expanding=True))
        return self._fetch("reservations", query, params)

    def fetch_student_redemptions(self, business_id: str, date_range: DateRange) -> RawRows:
        query = text(
            """
            SELECT id, business_id, user_id, created_at
            FROM student_discount_redemptions
            WHERE business_id = :business_id AND created_at >= :start AND created_at < :end
            """
        )
        return self._fetch(
            "student_discount_redemptions", query, {"business_id": business_id, **self._range_params(date_range)}
        )

    def fetch_plan_history(self, business_id: str) -> Sequence[PlanInterval]:
        query = text(
            """
            SELECT business_id, plan_slug, valid_from, valid_to
            FROM business_subscription_plan_history
            WHERE business_id = :business_id
            ORDER BY valid_from ASC
            """
        )
        rows = self._fetch("business_subscription_plan_history", query, {"business_id": business_id})
        return tuple(self._row_to_plan_interval(row) for row in rows)

    def fetch_campaigns(self, business_id: str) -> Sequence[Campaign]:
        columns = (
            "id, business_id, created_at, duration_mode, start_date, end_date, duration_hours, "
            "status, total_cost_cents, deactivated_at"
        )
        params = {"business_id": business_id}
        offer_rows = self._fetch(
            "offer_boosts",
            text(f"SELECT {columns}, discount_id AS target_id FROM offer_boosts WHERE business_id = :business_id"),
            params,
        )
        event_rows = self._fetch(
            "event_boosts",
            text(f"SELECT {columns}, event_id AS target_id FROM event_boosts WHERE business_id = :business_id"),
            params,
        )
        return tuple(self._row_to_campaign(row, TargetType.OFFER) for row in offer_rows) + tuple(
            self._row_to_campaign(row, TargetType.EVENT) for row in event_rows
        )

    def fetch_active_plan_slug(self, business_id: str) -> Optional[str]:
        query = text(
            """
            SELECT p.slug
            FROM business_subscriptions s
            JOIN subscription_plans p ON p.id = s.plan_id
            WHERE s.business_id = :business_id AND s.status = 'active'
            LIMIT 1
            """
        )
        rows = self._fetch("business_subscriptions", query, {"business_id": business_id})
        return str(rows[0]["slug"]) if rows else None

    def fetch_commission_ledger(self, period_start: datetime, period_end: datetime) -> RawRows:
        query = text(
            """
            SELECT id, business_id, commission_amount_cents, redeemed_at, status
            FROM commission_ledger
            WHERE status = 'pending' AND redeemed_at >= :start AND redeemed_at < :end
            """
        )
        return self._fetch("commission_ledger", query, {"start": period_start, "end": period_end})

    @staticmethod
    def _row_to_plan_interval(row: Mapping[str, Any]) -> PlanInterval:
        valid_to = coerce_timestamp(row.get("valid_to"))
        return PlanInterval(
            business_id=str(row["business_id"]),
            plan_slug=str(row["plan_slug"]),
            valid_from=coerce_timestamp(row["valid_from"]),
            valid_to=valid_to,
            end_inclusive=valid_to is None,
        )

    @staticmethod
    def _row_to_campaign(row: Mapping[str, Any], target_type: TargetType) -> Campaign:
        return Campaign(
            id=str(row["id"]),
            target_type=target_type,
            target_id=str(row["target_id"]),
            business_id=str(row["business_id"]),
            created_at=coerce_timestamp(row["created_at"]),
            duration_mode=DurationMode(row.get("duration_mode") or DurationMode.DAILY.value),
            start_date=coerce_date_like(row.get("start_date")),
            end_date=coerce_date_like(row.get("end_date")),
            duration_hours=row.get("duration_hours"),
            status=CampaignStatus(row.get("status") or CampaignStatus.ACTIVE.value),
            total_cost_cents=int(row.get("total_cost_cents") or 0),
            deactivated_at=coerce_timestamp(row.get("deactivated_at")),
        )


@dataclass
class InMemoryRepository(AnalyticsRepository):
    """
    Repository over rows supplied by the caller.

    Used for ad-hoc requests that ship their rows inline and in tests.
    """

    bundles: Dict[str, RawEventBundle] = field(default_factory=dict)
    plan_history: Sequence[PlanInterval] = field(default_factory=tuple)
    campaigns: Sequence[Campaign] = field(default_factory=tuple)
    active_plans: Dict[str, str] = field(default_factory=dict)
    commission_ledger: RawRows = field(default_factory=tuple)

    def _bundle(self, business_id: str) -> RawEventBundle:
        return self.bundles.get(business_id) or RawEventBundle(business_id=business_id)

    def _bundle_for_entities(self, ids: Sequence[str]) -> List[RawEventBundle]:
        wanted = set(ids)
        return [
            bundle
            for bundle in self.bundles.values()
            if wanted.intersection(bundle.offer_ids) or wanted.intersection(bundle.event_ids)
        ]

    def fetch_entity_ids(self, business_id: str) -> Tuple[Sequence[str], Sequence[str]]:
        bundle = self._bundle(business_id)
        return tuple(bundle.offer_ids), tuple(bundle.event_ids)

    def fetch_engagement_events(self, business_id: str, date_range: DateRange) -> RawRows:
        return tuple(self._bundle(business_id).engagement_events)

    def fetch_followers(self, business_id: str, date_range: DateRange) -> RawRows:
        return tuple(self._bundle(business_id).followers)

    def fetch_offer_views(self, offer_ids: Sequence[str], date_range: DateRange) -> RawRows:
        return tuple(row for bundle in self._bundle_for_entities(offer_ids) for row in bundle.offer_views)

    def fetch_offer_purchases(self, offer_ids: Sequence[str], date_range: DateRange) -> RawRows:
        return tuple(row for bundle in self._bundle_for_entities(offer_ids) for row in bundle.offer_purchases)

    def fetch_event_views(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        return tuple(row for bundle in self._bundle_for_entities(event_ids) for row in bundle.event_views)

    def fetch_rsvps(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        return tuple(row for bundle in self._bundle_for_entities(event_ids) for row in bundle.rsvps)

    def fetch_tickets(self, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        return tuple(row for bundle in self._bundle_for_entities(event_ids) for row in bundle.tickets)

    def fetch_ticket_tiers(self, event_ids: Sequence[str]) -> RawRows:
        return tuple(row for bundle in self._bundle_for_entities(event_ids) for row in bundle.ticket_tiers)

    def fetch_reservations(self, business_id: str, event_ids: Sequence[str], date_range: DateRange) -> RawRows:
        return tuple(self._bundle(business_id).reservations)

    def fetch_student_redemptions(self, business_id: str, date_range: DateRange) -> RawRows:
        return tuple(self._bundle(business_id).student_redemptions)

    def fetch_plan_history(self, business_id: str) -> Sequence[PlanInterval]:
        return tuple(interval for interval in self.plan_history if interval.business_id == business_id)

    def fetch_campaigns(self, business_id: str) -> Sequence[Campaign]:
        return tuple(campaign for campaign in self.campaigns if campaign.business_id == business_id)

    def fetch_active_plan_slug(self, business_id: str) -> Optional[str]:
        return self.active_plans.get(business_id)

    def fetch_commission_ledger(self, period_start: datetime, period_end: datetime) -> RawRows:
        return tuple(self.commission_ledger)


@dataclass(frozen=True)
class RepositoryConfig:
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        return cls(database_url=os.getenv("FOMO_ANALYTICS_DATABASE_URL"))


def build_repository_from_env(config: Optional[RepositoryConfig] = None) -> Optional[AnalyticsRepository]:
    cfg = config or RepositoryConfig.from_env()
    if cfg.database_url:
        engine = create_engine(cfg.database_url)
        return SQLAnalyticsRepository(engine)
    return None
