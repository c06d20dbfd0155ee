"""
Repository-backed analytics facade.

Raw-data fetches are independent and bounded, so they are issued concurrently
on worker threads while the commission rate resolves alongside them. The pure
computation entry points are re-exported here for callers that already hold
their events.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .aggregator import compare_boosted, compute_attribution, compute_overview, section_totals
from .commission import CommissionInvoice, CommissionResolver, build_commission_resolver, invoice_commission_ledger
from .configuration import AnalyticsConfig, coerce_timezone
from .errors import DataSourceUnavailable
from .guidance import build_guidance_report, compute_guidance_windows  # noqa: F401
from .models import (
    AttributionResult,
    BoostComparison,
    CanonicalEvent,
    DateRange,
    EntityType,
    GuidanceReport,
    OverviewMetrics,
    SectionTotals,
)
from .normalizer import RawEventBundle, normalize_all
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

Fetch = Tuple[Callable[..., Any], Tuple[Any, ...]]


async def gather_fetches(fetches: Dict[str, Fetch]) -> Dict[str, Any]:
    """
    Run every fetch on a worker thread and return results keyed by name.

    The first failure cancels the fetches still pending and surfaces as
    ``DataSourceUnavailable``; partial results are discarded. Cancelling the
    caller cancels every fetch task too.
    """

    tasks = {
        asyncio.ensure_future(asyncio.to_thread(func, *args)): name for name, (func, args) in fetches.items()
    }
    if not tasks:
        return {}
    try:
        done, pending = await asyncio.wait(tasks.keys(), return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = [task for task in done if task.exception() is not None]
    if failed:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        task = failed[0]
        exc = task.exception()
        logger.warning("Raw data fetch %s failed: %s", tasks[task], exc)
        if isinstance(exc, DataSourceUnavailable):
            raise exc
        raise DataSourceUnavailable(tasks[task], exc) from exc

    return {name: task.result() for task, name in tasks.items()}


class AnalyticsService:
    """
    Compute dashboard metrics for one business from repository data.

    ``commission_resolver`` defaults to the live service, then the business's
    active plan, then the free rate.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        commission_resolver: Optional[CommissionResolver] = None,
        config: Optional[AnalyticsConfig] = None,
    ) -> None:
        self.repository = repository
        self.config = config or AnalyticsConfig()
        self.commission_resolver = commission_resolver or build_commission_resolver(
            self.config.commission,
            plan_lookup=repository.fetch_active_plan_slug,
        )

    async def load_bundle(
        self,
        business_id: str,
        date_range: DateRange,
        extra: Optional[Dict[str, Fetch]] = None,
    ) -> Tuple[RawEventBundle, Dict[str, Any]]:
        """
        Fetch every raw source for ``business_id``.

        ``extra`` fetches (campaigns, plan history) run in the first round next
        to the entity lookup and are returned alongside the bundle.
        """

        first = await gather_fetches({"entities": (self.repository.fetch_entity_ids, (business_id,)), **(extra or {})})
        offer_ids, event_ids = first.pop("entities")
        rows = await gather_fetches(self._bundle_fetches(business_id, date_range, offer_ids, event_ids))
        bundle = RawEventBundle(business_id=business_id, offer_ids=tuple(offer_ids), event_ids=tuple(event_ids), **rows)
        return bundle, first

    def _bundle_fetches(
        self,
        business_id: str,
        date_range: DateRange,
        offer_ids: Sequence[str],
        event_ids: Sequence[str],
    ) -> Dict[str, Fetch]:
        repo = self.repository
        return {
            "engagement_events": (repo.fetch_engagement_events, (business_id, date_range)),
            "followers": (repo.fetch_followers, (business_id, date_range)),
            "offer_views": (repo.fetch_offer_views, (offer_ids, date_range)),
            "offer_purchases": (repo.fetch_offer_purchases, (offer_ids, date_range)),
            "event_views": (repo.fetch_event_views, (event_ids, date_range)),
            "rsvps": (repo.fetch_rsvps, (event_ids, date_range)),
            "tickets": (repo.fetch_tickets, (event_ids, date_range)),
            "ticket_tiers": (repo.fetch_ticket_tiers, (event_ids,)),
            "reservations": (repo.fetch_reservations, (business_id, event_ids, date_range)),
            "student_redemptions": (repo.fetch_student_redemptions, (business_id, date_range)),
        }

    async def load_events(
        self,
        business_id: str,
        date_range: DateRange,
        extra: Optional[Dict[str, Fetch]] = None,
    ) -> Tuple[List[CanonicalEvent], Dict[str, Any]]:
        bundle, fetched = await self.load_bundle(business_id, date_range, extra)
        return normalize_all(bundle), fetched

    async def compute_overview_metrics(self, business_id: str, date_range: DateRange) -> OverviewMetrics:
        events, _ = await self.load_events(business_id, date_range)
        return compute_overview(events, date_range)

    async def performance_totals(self, business_id: str, date_range: DateRange) -> Dict[EntityType, SectionTotals]:
        events, _ = await self.load_events(business_id, date_range)
        return section_totals(events, date_range)

    async def resolve_commission_percent(self, business_id: str) -> int:
        return await self.commission_resolver.resolve_percent(business_id)

    async def attribute_campaigns(self, business_id: str, date_range: DateRange) -> List[AttributionResult]:
        commission_task = asyncio.ensure_future(self.resolve_commission_percent(business_id))
        try:
            events, fetched = await self.load_events(
                business_id,
                date_range,
                {"campaigns": (self.repository.fetch_campaigns, (business_id,))},
            )
        except BaseException:
            commission_task.cancel()
            raise
        percent = await commission_task
        return compute_attribution(business_id, date_range, fetched["campaigns"], events, commission_percent=percent)

    async def guidance_report(self, business_id: str, date_range: DateRange) -> GuidanceReport:
        events, _ = await self.load_events(business_id, date_range)
        in_range = [event for event in events if date_range.contains(event.timestamp)]
        return build_guidance_report(in_range, coerce_timezone(self.config.guidance.timezone))

    async def boost_comparison(self, business_id: str, date_range: DateRange) -> BoostComparison:
        events, fetched = await self.load_events(
            business_id,
            date_range,
            {
                "campaigns": (self.repository.fetch_campaigns, (business_id,)),
                "plan_history": (self.repository.fetch_plan_history, (business_id,)),
            },
        )
        return compare_boosted(business_id, date_range, events, fetched["campaigns"], fetched["plan_history"])

    async def commission_invoices(self, period_start: datetime, period_end: datetime) -> List[CommissionInvoice]:
        rows = await gather_fetches(
            {"commission_ledger": (self.repository.fetch_commission_ledger, (period_start, period_end))}
        )
        return invoice_commission_ledger(rows["commission_ledger"], period_start, period_end)
