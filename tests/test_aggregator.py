from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from fomo_analytics.aggregator import (
    calculate_change,
    compare_boosted,
    compute_attribution,
    compute_overview,
    count_new_customers,
    section_totals,
    summarize_customers,
)
from fomo_analytics.dataset import EventDataset
from fomo_analytics.errors import InvalidDateRange
from fomo_analytics.models import (
    Campaign,
    CanonicalEvent,
    DateRange,
    DurationMode,
    EntityType,
    PlanInterval,
    RawSource,
    SourceKind,
    TargetType,
)

MARCH = DateRange(datetime(2024, 3, 1, tzinfo=timezone.utc), datetime(2024, 4, 1, tzinfo=timezone.utc))


def _event(ts, kind, entity_type=EntityType.PROFILE, entity_id="biz-1", source=None, user_id=None, **extra):
    defaults = {
        SourceKind.VIEW: RawSource.PROFILE_VIEW,
        SourceKind.INTERACTION: RawSource.PROFILE_INTERACTION,
        SourceKind.VISIT: RawSource.DIRECT_RESERVATION_CHECKIN,
        SourceKind.CHECKIN: RawSource.TICKET_CHECKIN,
        SourceKind.REDEMPTION: RawSource.OFFER_REDEMPTION,
        SourceKind.BOOKING: RawSource.RESERVATION_BOOKING,
        SourceKind.PURCHASE: RawSource.TICKET_SALE,
    }
    return CanonicalEvent(
        timestamp=ts,
        source_kind=kind,
        entity_id=entity_id,
        entity_type=entity_type,
        source=source or defaults[kind],
        user_id=user_id,
        **extra,
    )


def _at(day, hour=12, minute=0, second=0, month=3):
    return datetime(2024, month, day, hour, minute, second, tzinfo=timezone.utc)


def test_date_range_rejects_inverted_bounds():
    with pytest.raises(InvalidDateRange):
        DateRange(_at(2), _at(1))


def test_redemption_and_ticket_checkin_by_same_user_is_one_repeat_customer():
    events = [
        _event(_at(3), SourceKind.REDEMPTION, EntityType.OFFER, "offer-1", user_id="user-a"),
        _event(_at(4), SourceKind.CHECKIN, EntityType.EVENT, "event-1", user_id="user-a"),
    ]

    metrics = compute_overview(events, MARCH)

    assert metrics.unique_customers == 1
    assert metrics.repeat_customers == 1
    assert metrics.verified_visits == 2


def test_single_visit_user_is_never_repeat():
    events = [
        _event(_at(3), SourceKind.VISIT, user_id="user-a"),
        _event(_at(3), SourceKind.VISIT, user_id="user-b"),
        _event(_at(5), SourceKind.VISIT, user_id="user-b"),
        _event(_at(6), SourceKind.VISIT),
    ]

    summary = summarize_customers(EventDataset.from_events(events))

    assert summary.verified_visits == 4
    assert summary.unique_customers == 2
    assert summary.repeat_customers == 1
    assert summary.repeat_customers <= summary.unique_customers
    assert summary.repeat_rate == 50.0


def test_overview_counts_profile_views_bookings_and_tickets_in_range():
    events = [
        _event(_at(2), SourceKind.VIEW),
        _event(_at(2), SourceKind.VIEW, EntityType.OFFER, "offer-1", source=RawSource.OFFER_VIEW),
        _event(_at(2), SourceKind.VIEW, EntityType.EVENT, "event-1", source=RawSource.EVENT_VIEW),
        _event(_at(28, month=2), SourceKind.VIEW),
        _event(_at(2), SourceKind.BOOKING),
        _event(_at(2), SourceKind.PURCHASE, EntityType.EVENT, "event-1"),
        _event(_at(2), SourceKind.PURCHASE, EntityType.EVENT, "event-1"),
        _event(_at(2), SourceKind.INTERACTION),
    ]

    metrics = compute_overview(events, MARCH)

    assert metrics.total_views == 1
    assert metrics.bookings == 1
    assert metrics.tickets == 2
    assert metrics.verified_visits == 0
    assert metrics.as_dict()["totalViews"] == 1


def test_section_totals_split_by_entity_type():
    events = [
        _event(_at(2), SourceKind.VIEW),
        _event(_at(2), SourceKind.INTERACTION, EntityType.OFFER, "offer-1", source=RawSource.OFFER_INTERACTION),
        _event(_at(2), SourceKind.CHECKIN, EntityType.EVENT, "event-1"),
        _event(_at(2), SourceKind.REDEMPTION, EntityType.PROFILE, source=RawSource.STUDENT_DISCOUNT_REDEMPTION),
    ]

    totals = section_totals(events, MARCH)

    assert totals[EntityType.PROFILE].views == 1
    assert totals[EntityType.PROFILE].visits == 1
    assert totals[EntityType.OFFER].interactions == 1
    assert totals[EntityType.EVENT].visits == 1


def _offer_boost(**overrides) -> Campaign:
    fields = dict(
        id="boost-1",
        target_type=TargetType.OFFER,
        target_id="offer-1",
        business_id="biz-1",
        created_at=_at(1, 10),
        duration_mode=DurationMode.HOURLY,
        duration_hours=3,
        total_cost_cents=6000,
    )
    fields.update(overrides)
    return Campaign(**fields)


def test_attribution_counts_verified_visits_inside_window_only():
    events = [
        _event(_at(1, 10, 30), SourceKind.REDEMPTION, EntityType.OFFER, "offer-1", user_id="a", amount_cents=2000),
        _event(
            _at(1, 12, 59),
            SourceKind.REDEMPTION,
            EntityType.OFFER,
            "offer-1",
            user_id="b",
            amount_cents=1000,
            commission_percent=10,
        ),
        _event(_at(1, 13, 0, 1), SourceKind.REDEMPTION, EntityType.OFFER, "offer-1", user_id="c", amount_cents=500),
        _event(_at(1, 11), SourceKind.REDEMPTION, EntityType.OFFER, "offer-2", user_id="d", amount_cents=500),
        _event(_at(1, 11), SourceKind.VIEW, EntityType.OFFER, "offer-1", source=RawSource.OFFER_VIEW),
        _event(_at(1, 11), SourceKind.VISIT, user_id="e", amount_cents=500),
    ]

    (result,) = compute_attribution("biz-1", MARCH, [_offer_boost()], events, commission_percent=12)

    assert result.campaign_id == "boost-1"
    assert result.total_visits == 2
    assert result.unique_visitor_user_ids == frozenset({"a", "b"})
    assert result.gross_revenue_cents == 3000
    assert result.commission_cents == 340
    assert result.net_revenue_cents == 2660
    assert result.commission_percent == 11
    assert result.cost_per_customer_cents == 3000.0
    assert result.window.end == _at(1, 13)


def test_overlapping_campaigns_each_claim_the_visit():
    events = [_event(_at(1, 11), SourceKind.REDEMPTION, EntityType.OFFER, "offer-1", user_id="a", amount_cents=1000)]
    campaigns = [
        _offer_boost(),
        _offer_boost(id="boost-2", duration_mode=DurationMode.DAILY, start_date=date(2024, 3, 1), end_date=date(2024, 3, 1)),
    ]

    results = compute_attribution("biz-1", MARCH, campaigns, events)

    assert [result.total_visits for result in results] == [1, 1]


def test_attribution_skips_unresolvable_and_foreign_campaigns():
    campaigns = [
        _offer_boost(id="broken", duration_hours=None),
        _offer_boost(id="other-business", business_id="biz-2"),
        _offer_boost(id="ok"),
    ]

    results = compute_attribution("biz-1", MARCH, campaigns, [])

    assert [result.campaign_id for result in results] == ["ok"]
    assert results[0].total_visits == 0
    assert results[0].commission_percent == 12
    assert results[0].cost_per_customer_cents == 0.0


def test_attribution_is_bounded_by_reporting_range():
    events = [_event(_at(1, 11), SourceKind.REDEMPTION, EntityType.OFFER, "offer-1", user_id="a")]
    narrow = DateRange(_at(1, 12), _at(2))

    (result,) = compute_attribution("biz-1", narrow, [_offer_boost()], events)

    assert result.total_visits == 0


def test_event_boost_ignores_offer_with_same_id():
    boost = _offer_boost(target_type=TargetType.EVENT, target_id="shared-id")
    events = [
        _event(_at(1, 11), SourceKind.REDEMPTION, EntityType.OFFER, "shared-id", user_id="a"),
        _event(_at(1, 11), SourceKind.CHECKIN, EntityType.EVENT, "shared-id", user_id="b"),
    ]

    (result,) = compute_attribution("biz-1", MARCH, [boost], events)

    assert result.unique_visitor_user_ids == frozenset({"b"})


@pytest.mark.parametrize(
    "without, with_boost, expected",
    [(0, 0, 0), (0, 5, 100), (2, 3, 50), (3, 4, 33), (8, 9, 13), (8, 7, -12), (4, 0, -100)],
)
def test_calculate_change_rounds_half_up(without, with_boost, expected):
    assert calculate_change(without, with_boost) == expected


def test_compare_boosted_splits_profile_by_plan_and_entities_by_window():
    business_range = DateRange(_at(1, 0, month=1), _at(1, 0))
    intervals = [
        PlanInterval("biz-1", "free", _at(5, 0, month=1), _at(1, 0, month=2)),
        PlanInterval("biz-1", "pro", _at(1, 0, month=2), None),
    ]
    campaigns = [
        _offer_boost(duration_mode=DurationMode.DAILY, start_date=date(2024, 2, 10), end_date=date(2024, 2, 10)),
    ]
    events = [
        _event(_at(2, month=1), SourceKind.VIEW),
        _event(_at(10, month=1), SourceKind.VIEW),
        _event(_at(20, month=1), SourceKind.VIEW),
        _event(_at(5, month=2), SourceKind.VIEW),
        _event(_at(6, month=2), SourceKind.VIEW),
        _event(_at(7, month=2), SourceKind.VIEW),
        _event(_at(7, month=2), SourceKind.INTERACTION),
        _event(_at(10, month=2), SourceKind.VIEW, EntityType.OFFER, "offer-1", source=RawSource.OFFER_VIEW),
        _event(_at(12, month=2), SourceKind.VIEW, EntityType.OFFER, "offer-1", source=RawSource.OFFER_VIEW),
        _event(_at(10, month=2), SourceKind.VIEW, EntityType.OFFER, "offer-2", source=RawSource.OFFER_VIEW),
        _event(_at(5, month=3), SourceKind.VIEW),
    ]

    comparison = compare_boosted("biz-1", business_range, events, campaigns, intervals)

    assert (comparison.profile.views.without, comparison.profile.views.with_boost) == (2, 3)
    assert comparison.profile.views.change == 50
    assert comparison.profile.interactions.change == 100
    assert comparison.profile.visits.change == 0
    assert comparison.uncovered_profile_events == 1
    assert (comparison.offers.views.without, comparison.offers.views.with_boost) == (2, 1)
    assert comparison.offers.views.change == -50
    assert comparison.events.views.without == 0


def test_new_customers_count_direct_checkins_since_first_paid_plan():
    intervals = [
        PlanInterval("biz-1", "free", _at(1, 0, month=1), _at(1, 0, month=2)),
        PlanInterval("biz-1", "basic", _at(1, 0, month=2), _at(1, 0)),
        PlanInterval("biz-1", "free", _at(1, 0), None),
    ]
    events = [
        _event(_at(20, month=1), SourceKind.VISIT, user_id="before-paid"),
        _event(_at(2, month=2), SourceKind.VISIT, user_id="user-a"),
        _event(_at(3, month=3), SourceKind.VISIT, user_id="user-a"),
        _event(_at(4, month=3), SourceKind.VISIT, user_id="user-b"),
        _event(_at(5, month=3), SourceKind.VISIT),
        _event(_at(6, month=3), SourceKind.CHECKIN, EntityType.EVENT, "event-1", user_id="ticket-holder"),
        _event(_at(7, month=3), SourceKind.REDEMPTION, source=RawSource.STUDENT_DISCOUNT_REDEMPTION, user_id="student"),
    ]

    assert count_new_customers("biz-1", events, intervals) == 2
    assert count_new_customers("biz-1", events, intervals[:1]) == 0
    assert count_new_customers("biz-2", events, intervals) == 0


def test_compare_boosted_reports_new_customers_in_range():
    intervals = [PlanInterval("biz-1", "pro", _at(10), None)]
    events = [
        _event(_at(5), SourceKind.VISIT, user_id="user-a"),
        _event(_at(12), SourceKind.VISIT, user_id="user-b"),
        _event(_at(2, month=4), SourceKind.VISIT, user_id="user-c"),
    ]

    comparison = compare_boosted("biz-1", MARCH, events, [], intervals)

    assert comparison.new_customers == 1
    assert comparison.uncovered_profile_events == 1
