from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, text

from fomo_analytics.errors import DataSourceUnavailable
from fomo_analytics.models import DateRange, DurationMode, TargetType
from fomo_analytics.repository import RepositoryConfig, SQLAnalyticsRepository, build_repository_from_env
from fomo_analytics.service import AnalyticsService

MARCH = DateRange(datetime(2024, 3, 1, tzinfo=timezone.utc), datetime(2024, 4, 1, tzinfo=timezone.utc))

SCHEMA = (
    "CREATE TABLE discounts (id TEXT PRIMARY KEY, business_id TEXT)",
    "CREATE TABLE events (id TEXT PRIMARY KEY, business_id TEXT)",
    "CREATE TABLE engagement_events (id TEXT, business_id TEXT, event_type TEXT, entity_id TEXT, user_id TEXT, created_at TEXT)",
    "CREATE TABLE business_followers (id TEXT, business_id TEXT, user_id TEXT, created_at TEXT, unfollowed_at TEXT)",
    "CREATE TABLE discount_views (id TEXT, discount_id TEXT, user_id TEXT, viewed_at TEXT)",
    "CREATE TABLE offer_purchases (id TEXT, discount_id TEXT, user_id TEXT, redeemed_at TEXT, final_price_cents INTEGER,"
    " commission_percent INTEGER, reservation_id TEXT)",
    "CREATE TABLE event_views (id TEXT, event_id TEXT, user_id TEXT, viewed_at TEXT)",
    "CREATE TABLE rsvps (id TEXT, event_id TEXT, user_id TEXT, status TEXT, created_at TEXT)",
    "CREATE TABLE tickets (id TEXT, event_id TEXT, tier_id TEXT, order_id TEXT, user_id TEXT, checked_in_at TEXT, created_at TEXT)",
    "CREATE TABLE ticket_orders (id TEXT, commission_percent INTEGER)",
    "CREATE TABLE ticket_tiers (id TEXT, event_id TEXT, price_cents INTEGER)",
    "CREATE TABLE reservations (id TEXT, business_id TEXT, event_id TEXT, user_id TEXT, status TEXT, checked_in_at TEXT,"
    " created_at TEXT, prepaid_min_charge_cents INTEGER, prepaid_charge_status TEXT)",
    "CREATE TABLE student_discount_redemptions (id TEXT, business_id TEXT, user_id TEXT, created_at TEXT)",
    "CREATE TABLE business_subscription_plan_history (business_id TEXT, plan_slug TEXT, valid_from TEXT, valid_to TEXT)",
    "CREATE TABLE offer_boosts (id TEXT, discount_id TEXT, business_id TEXT, created_at TEXT, duration_mode TEXT,"
    " start_date TEXT, end_date TEXT, duration_hours INTEGER, status TEXT, total_cost_cents INTEGER, deactivated_at TEXT)",
    "CREATE TABLE event_boosts (id TEXT, event_id TEXT, business_id TEXT, created_at TEXT, duration_mode TEXT,"
    " start_date TEXT, end_date TEXT, duration_hours INTEGER, status TEXT, total_cost_cents INTEGER, deactivated_at TEXT)",
    "CREATE TABLE subscription_plans (id TEXT, slug TEXT)",
    "CREATE TABLE business_subscriptions (business_id TEXT, plan_id TEXT, status TEXT)",
    "CREATE TABLE commission_ledger (id TEXT, business_id TEXT, commission_amount_cents INTEGER, redeemed_at TEXT, status TEXT)",
)

ROWS = (
    "INSERT INTO discounts VALUES ('offer-1', 'biz-1'), ('offer-x', 'biz-2')",
    "INSERT INTO events VALUES ('event-1', 'biz-1')",
    "INSERT INTO engagement_events VALUES ('e1', 'biz-1', 'profile_view', NULL, 'u1', '2024-03-03 10:00:00'),"
    " ('e2', 'biz-1', 'profile_view', NULL, 'u1', '2024-02-03 10:00:00')",
    "INSERT INTO discount_views VALUES ('v1', 'offer-1', 'u1', '2024-03-04 10:00:00'),"
    " ('v2', 'offer-x', 'u1', '2024-03-04 10:00:00')",
    "INSERT INTO offer_purchases VALUES ('p1', 'offer-1', 'user-a', '2024-03-05 11:00:00', 2000, 10, NULL)",
    "INSERT INTO tickets VALUES ('t1', 'event-1', 'tier-1', 'o1', 'user-a', '2024-03-06 21:00:00', '2024-02-20 09:00:00')",
    "INSERT INTO ticket_orders VALUES ('o1', 6)",
    "INSERT INTO ticket_tiers VALUES ('tier-1', 'event-1', 1500)",
    "INSERT INTO reservations VALUES ('r1', 'biz-1', NULL, 'u9', 'accepted', '2024-03-07 20:00:00',"
    " '2024-03-02 08:00:00', 3000, 'paid')",
    "INSERT INTO business_subscription_plan_history VALUES ('biz-1', 'free', '2024-01-01 00:00:00', '2024-03-05 00:00:00'),"
    " ('biz-1', 'pro', '2024-03-05 00:00:00', NULL)",
    "INSERT INTO offer_boosts VALUES ('b1', 'offer-1', 'biz-1', '2024-03-01 09:00:00', 'daily', '2024-03-05', '2024-03-05',"
    " NULL, 'completed', 5000, NULL)",
    "INSERT INTO event_boosts VALUES ('b2', 'event-1', 'biz-1', '2024-03-06 20:00:00', 'hourly', NULL, NULL, 3, 'active',"
    " 1500, NULL)",
    "INSERT INTO subscription_plans VALUES ('plan-pro', 'pro')",
    "INSERT INTO business_subscriptions VALUES ('biz-1', 'plan-pro', 'active')",
    "INSERT INTO commission_ledger VALUES ('l1', 'biz-1', 800, '2024-03-05 11:00:00', 'pending')",
)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'analytics.db'}", connect_args={"check_same_thread": False})
    with engine.begin() as connection:
        for statement in SCHEMA + ROWS:
            connection.execute(text(statement))
    yield engine
    engine.dispose()


def test_entity_ids_are_scoped_to_business(engine):
    repository = SQLAnalyticsRepository(engine)

    assert repository.fetch_entity_ids("biz-1") == (("offer-1",), ("event-1",))


def test_fetches_are_bounded_by_range_and_entities(engine):
    repository = SQLAnalyticsRepository(engine)

    assert [row["id"] for row in repository.fetch_engagement_events("biz-1", MARCH)] == ["e1"]
    assert [row["id"] for row in repository.fetch_offer_views(["offer-1"], MARCH)] == ["v1"]
    assert repository.fetch_offer_views([], MARCH) == ()


def test_ticket_rows_carry_frozen_order_rate(engine):
    (ticket,) = SQLAnalyticsRepository(engine).fetch_tickets(["event-1"], MARCH)

    assert ticket["commission_percent"] == 6
    assert ticket["tier_id"] == "tier-1"


def test_campaign_rows_map_to_campaigns(engine):
    campaigns = {campaign.id: campaign for campaign in SQLAnalyticsRepository(engine).fetch_campaigns("biz-1")}

    daily = campaigns["b1"]
    assert daily.target_type == TargetType.OFFER
    assert daily.target_id == "offer-1"
    assert daily.start_date == date(2024, 3, 5)
    assert daily.total_cost_cents == 5000

    hourly = campaigns["b2"]
    assert hourly.duration_mode == DurationMode.HOURLY
    assert hourly.duration_hours == 3
    assert hourly.created_at == datetime(2024, 3, 6, 20, 0, tzinfo=timezone.utc)


def test_plan_history_marks_current_period_open(engine):
    free, pro = SQLAnalyticsRepository(engine).fetch_plan_history("biz-1")

    assert free.plan_slug == "free"
    assert free.valid_to == datetime(2024, 3, 5, tzinfo=timezone.utc)
    assert pro.valid_to is None
    assert pro.end_inclusive is True


def test_active_plan_slug(engine):
    repository = SQLAnalyticsRepository(engine)

    assert repository.fetch_active_plan_slug("biz-1") == "pro"
    assert repository.fetch_active_plan_slug("biz-2") is None


def test_missing_table_raises_data_source_unavailable(tmp_path):
    repository = SQLAnalyticsRepository(create_engine(f"sqlite:///{tmp_path / 'empty.db'}"))

    with pytest.raises(DataSourceUnavailable) as excinfo:
        repository.fetch_followers("biz-1", MARCH)

    assert excinfo.value.source == "business_followers"


def test_build_repository_from_env_requires_url(monkeypatch, tmp_path):
    monkeypatch.delenv("FOMO_ANALYTICS_DATABASE_URL", raising=False)
    assert build_repository_from_env() is None

    repository = build_repository_from_env(RepositoryConfig(database_url=f"sqlite:///{tmp_path / 'x.db'}"))
    assert isinstance(repository, SQLAnalyticsRepository)


@pytest.mark.asyncio
async def test_service_end_to_end_over_sql(engine):
    service = AnalyticsService(SQLAnalyticsRepository(engine))

    metrics = await service.compute_overview_metrics("biz-1", MARCH)
    assert metrics.total_views == 1
    assert metrics.unique_customers == 2
    assert metrics.repeat_customers == 1
    assert metrics.verified_visits == 3
    assert metrics.bookings == 1

    results = {result.campaign_id: result for result in await service.attribute_campaigns("biz-1", MARCH)}
    assert results["b1"].gross_revenue_cents == 2000
    assert results["b1"].commission_cents == 200
    assert results["b2"].gross_revenue_cents == 1500
    assert results["b2"].commission_cents == 90

    (invoice,) = await service.commission_invoices(MARCH.start, MARCH.end)
    assert invoice.total_cents == 800
