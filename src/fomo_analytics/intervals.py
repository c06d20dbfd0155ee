from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import CanonicalEvent, PlanInterval, ResolvedWindow, ensure_utc

FREE_PLAN_SLUG = "free"


def within_window(timestamp: datetime, window: ResolvedWindow) -> bool:
    """
    True iff ``window.start <= timestamp < window.end``.

    Campaigns are attributed independently, so overlapping windows for the same
    entity may both claim a timestamp.
    """

    return window.start <= ensure_utc(timestamp) < window.end


def _business_timeline(business_id: str, intervals: Iterable[PlanInterval]) -> List[Tuple[PlanInterval, Optional[datetime]]]:
    """
    Order a business's plan intervals and compute each one's effective end.

    The effective end is clipped to the next interval's ``valid_from`` so
    touching or overlapping periods never share an instant.
    """

    ordered = sorted(
        (interval for interval in intervals if interval.business_id == business_id),
        key=lambda interval: ensure_utc(interval.valid_from),
    )
    timeline: List[Tuple[PlanInterval, Optional[datetime]]] = []
    for index, interval in enumerate(ordered):
        if interval.valid_to is None or interval.end_inclusive:
            end: Optional[datetime] = None
        else:
            end = ensure_utc(interval.valid_to)
        if index + 1 < len(ordered):
            next_start = ensure_utc(ordered[index + 1].valid_from)
            end = next_start if end is None else min(end, next_start)
        timeline.append((interval, end))
    return timeline


def _match(timestamp: datetime, timeline: Sequence[Tuple[PlanInterval, Optional[datetime]]]) -> Optional[str]:
    for interval, end in timeline:
        if ensure_utc(interval.valid_from) <= timestamp and (end is None or timestamp < end):
            return interval.plan_slug
    return None


def within_plan_history(
    timestamp: datetime,
    business_id: str,
    intervals: Iterable[PlanInterval],
) -> Optional[str]:
    """Return the plan slug covering ``timestamp`` or ``None`` for a gap."""
    return _match(ensure_utc(timestamp), _business_timeline(business_id, intervals))


def first_paid_start(business_id: str, intervals: Iterable[PlanInterval]) -> Optional[datetime]:
    starts = [
        ensure_utc(interval.valid_from)
        for interval in intervals
        if interval.business_id == business_id and interval.plan_slug != FREE_PLAN_SLUG
    ]
    return min(starts) if starts else None


@dataclass
class PlanPartition:
    paid: List[CanonicalEvent] = field(default_factory=list)
    free: List[CanonicalEvent] = field(default_factory=list)
    uncovered: List[CanonicalEvent] = field(default_factory=list)


def partition_by_plan(
    events: Iterable[CanonicalEvent],
    business_id: str,
    intervals: Iterable[PlanInterval],
) -> PlanPartition:
    """
    Split events into paid-tier, free-tier and uncovered buckets.

    Events falling in a plan-history gap go to ``uncovered`` only; they are
    never counted as free.
    """

    timeline = _business_timeline(business_id, intervals)
    partition = PlanPartition()
    for event in events:
        slug = _match(ensure_utc(event.timestamp), timeline)
        if slug is None:
            partition.uncovered.append(event)
        elif slug == FREE_PLAN_SLUG:
            partition.free.append(event)
        else:
            partition.paid.append(event)
    return partition
