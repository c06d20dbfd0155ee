from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Collection, Dict, Iterable, List, Optional, Sequence, Tuple

from .commission import FREE_COMMISSION_PERCENT
from .dataset import EventDataset, TimestampPredicate, in_range
from .intervals import first_paid_start, partition_by_plan, within_window
from .models import (
    VERIFIED_KINDS,
    AttributionResult,
    BoostComparison,
    Campaign,
    CanonicalEvent,
    ComparisonSection,
    CustomerSummary,
    DateRange,
    EntityType,
    MetricComparison,
    OverviewMetrics,
    PlanInterval,
    RawSource,
    ResolvedWindow,
    SectionTotals,
    SourceKind,
    ensure_utc,
)
from .revenue import summarize_revenue
from .windows import resolve_window

logger = logging.getLogger(__name__)

VIEW_KINDS = frozenset({SourceKind.VIEW})
INTERACTION_KINDS = frozenset({SourceKind.INTERACTION})


def summarize_customers(
    dataset: EventDataset,
    predicate: Optional[TimestampPredicate] = None,
    entity_type: Optional[EntityType] = None,
    entity_ids: Optional[Collection[str]] = None,
) -> CustomerSummary:
    """
    Verified-visit totals plus unique and repeat customers.

    Anonymous visits count toward ``verified_visits`` but not toward either
    customer figure.
    """

    frequencies = dataset.customer_frequencies(predicate=predicate, entity_type=entity_type, entity_ids=entity_ids)
    return CustomerSummary(
        verified_visits=sum(
            1 for _ in dataset.verified_visits(predicate=predicate, entity_type=entity_type, entity_ids=entity_ids)
        ),
        unique_customers=len(frequencies),
        repeat_customers=sum(1 for count in frequencies.values() if count >= 2),
    )


def compute_overview(events: Iterable[CanonicalEvent], date_range: DateRange) -> OverviewMetrics:
    """
    Headline numbers for one business and range.

    ``events`` must already be scoped to the business's profile, offers and
    events. ``total_views`` counts profile views only.
    """

    dataset = EventDataset.from_events(events)
    predicate = in_range(date_range)
    customers = summarize_customers(dataset, predicate=predicate)
    return OverviewMetrics(
        total_views=dataset.count(predicate=predicate, kinds=VIEW_KINDS, entity_type=EntityType.PROFILE),
        unique_customers=customers.unique_customers,
        repeat_customers=customers.repeat_customers,
        bookings=dataset.count(predicate=predicate, kinds={SourceKind.BOOKING}),
        tickets=sum(
            1
            for event in dataset.iter_events(predicate=predicate, kinds={SourceKind.PURCHASE})
            if event.source == RawSource.TICKET_SALE
        ),
        verified_visits=customers.verified_visits,
    )


def _totals_for(
    dataset: EventDataset,
    entity_type: EntityType,
    predicate: Optional[TimestampPredicate] = None,
) -> SectionTotals:
    return SectionTotals(
        views=dataset.count(predicate=predicate, kinds=VIEW_KINDS, entity_type=entity_type),
        interactions=dataset.count(predicate=predicate, kinds=INTERACTION_KINDS, entity_type=entity_type),
        visits=dataset.count(predicate=predicate, kinds=VERIFIED_KINDS, entity_type=entity_type),
    )


def section_totals(events: Iterable[CanonicalEvent], date_range: DateRange) -> Dict[EntityType, SectionTotals]:
    dataset = EventDataset.from_events(events)
    predicate = in_range(date_range)
    return {entity_type: _totals_for(dataset, entity_type, predicate) for entity_type in EntityType}


def compute_attribution(
    business_id: str,
    date_range: DateRange,
    campaigns: Iterable[Campaign],
    events: Iterable[CanonicalEvent],
    commission_percent: int = FREE_COMMISSION_PERCENT,
) -> List[AttributionResult]:
    """
    Attribute verified visits and their revenue to each campaign.

    Each campaign is evaluated on its own: a visit inside two overlapping
    windows for the same entity counts for both. Campaigns whose window
    cannot be resolved are skipped rather than failing the request.
    """

    dataset = EventDataset.from_events(events)
    results: List[AttributionResult] = []

    for campaign in campaigns:
        if campaign.business_id != business_id:
            continue
        window = resolve_window(campaign)
        if window is None:
            logger.debug("Campaign %s has no resolvable window; excluded from attribution", campaign.id)
            continue

        predicate = _window_predicate(window, date_range)
        visits = list(
            dataset.verified_visits(
                predicate=predicate,
                entity_type=campaign.target_entity_type,
                entity_ids=(campaign.target_id,),
            )
        )
        revenue = summarize_revenue(visits, commission_percent)
        results.append(
            AttributionResult(
                campaign_id=campaign.id,
                total_visits=len(visits),
                unique_visitor_user_ids=frozenset(event.user_id for event in visits if event.user_id is not None),
                gross_revenue_cents=revenue.gross_cents,
                net_revenue_cents=revenue.net_cents,
                commission_cents=revenue.commission_cents,
                commission_percent=revenue.effective_percent,
                spent_cents=campaign.total_cost_cents,
                window=window,
            )
        )
    return results


def _window_predicate(window: ResolvedWindow, date_range: DateRange) -> TimestampPredicate:
    return lambda event: within_window(event.timestamp, window) and date_range.contains(event.timestamp)


def calculate_change(without: int, with_boost: int) -> int:
    if without == 0:
        return 100 if with_boost > 0 else 0
    # Half-up like the dashboard's Math.round, not banker's rounding.
    return math.floor((with_boost - without) / without * 100 + 0.5)


def _comparison(without: SectionTotals, with_boost: SectionTotals) -> ComparisonSection:
    return ComparisonSection(
        views=MetricComparison(without.views, with_boost.views, calculate_change(without.views, with_boost.views)),
        interactions=MetricComparison(
            without.interactions,
            with_boost.interactions,
            calculate_change(without.interactions, with_boost.interactions),
        ),
        visits=MetricComparison(without.visits, with_boost.visits, calculate_change(without.visits, with_boost.visits)),
    )


def _split_by_windows(
    events: Iterable[CanonicalEvent],
    windows_by_entity: Dict[Tuple[EntityType, str], List[ResolvedWindow]],
) -> Sequence[List[CanonicalEvent]]:
    boosted: List[CanonicalEvent] = []
    organic: List[CanonicalEvent] = []
    for event in events:
        windows = windows_by_entity.get((event.entity_type, event.entity_id), ())
        if any(within_window(event.timestamp, window) for window in windows):
            boosted.append(event)
        else:
            organic.append(event)
    return organic, boosted


def _section_totals_of(events: Sequence[CanonicalEvent], entity_type: EntityType) -> SectionTotals:
    return _totals_for(EventDataset.from_events(events), entity_type)


def count_new_customers(
    business_id: str,
    events: Iterable[CanonicalEvent],
    intervals: Iterable[PlanInterval],
) -> int:
    """
    Distinct customers checked in on direct profile reservations since the
    business first moved onto a paid plan. Zero when it never has.
    """

    paid_start = first_paid_start(business_id, intervals)
    if paid_start is None:
        return 0
    return len(
        {
            event.user_id
            for event in events
            if event.source == RawSource.DIRECT_RESERVATION_CHECKIN
            and event.user_id
            and ensure_utc(event.timestamp) >= paid_start
        }
    )


def compare_boosted(
    business_id: str,
    date_range: DateRange,
    events: Iterable[CanonicalEvent],
    campaigns: Iterable[Campaign],
    intervals: Iterable[PlanInterval],
) -> BoostComparison:
    """
    "Without vs with" comparison shown on the boost value tab.

    Profile activity is split by subscription tier (free vs paid plan periods,
    with plan-history gaps reported separately). Offer and event activity is
    split by whether it happened inside one of that entity's boost windows.
    """

    intervals = list(intervals)
    in_scope = [event for event in events if date_range.contains(event.timestamp)]

    profile_events = [event for event in in_scope if event.entity_type == EntityType.PROFILE]
    partition = partition_by_plan(profile_events, business_id, intervals)
    profile = _comparison(
        _section_totals_of(partition.free, EntityType.PROFILE),
        _section_totals_of(partition.paid, EntityType.PROFILE),
    )

    windows_by_entity: Dict[Tuple[EntityType, str], List[ResolvedWindow]] = defaultdict(list)
    for campaign in campaigns:
        if campaign.business_id != business_id:
            continue
        window = resolve_window(campaign)
        if window is not None:
            windows_by_entity[(campaign.target_entity_type, campaign.target_id)].append(window)

    sections = {}
    for entity_type in (EntityType.OFFER, EntityType.EVENT):
        entity_events = [event for event in in_scope if event.entity_type == entity_type]
        organic, boosted = _split_by_windows(entity_events, windows_by_entity)
        sections[entity_type] = _comparison(
            _section_totals_of(organic, entity_type),
            _section_totals_of(boosted, entity_type),
        )

    return BoostComparison(
        profile=profile,
        offers=sections[EntityType.OFFER],
        events=sections[EntityType.EVENT],
        uncovered_profile_events=len(partition.uncovered),
        new_customers=count_new_customers(business_id, in_scope, intervals),
    )
