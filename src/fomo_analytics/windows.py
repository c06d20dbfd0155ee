"""
Boost window resolution.

Turns a campaign's configuration into the exact half-open ``[start, end)``
interval used for attribution:

- daily boosts run from 00:00 UTC of ``start_date`` up to 00:00 UTC of the day
  after ``end_date``
- hourly boosts run from ``created_at`` for ``duration_hours`` hours
- a boost switched off early stops at ``deactivated_at``
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Set

from .models import Campaign, CampaignStatus, DateLike, DurationMode, ResolvedWindow, ensure_utc

logger = logging.getLogger(__name__)


def _start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _window_start(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return _start_of_day(value)


def _window_end(value: DateLike) -> datetime:
    # A bare date is an inclusive day; the exclusive end is the next midnight.
    if isinstance(value, datetime):
        return ensure_utc(value)
    return _start_of_day(value + timedelta(days=1))


def resolve_window(campaign: Campaign) -> Optional[ResolvedWindow]:
    """
    Resolve ``campaign`` to a concrete window, or ``None`` when its duration
    fields are insufficient for its ``duration_mode``.
    """

    if campaign.duration_mode == DurationMode.HOURLY:
        if campaign.created_at is None or not campaign.duration_hours or campaign.duration_hours <= 0:
            logger.debug("Skipping hourly campaign %s without a positive duration", campaign.id)
            return None
        start = ensure_utc(campaign.created_at)
        end = start + timedelta(hours=campaign.duration_hours)
    else:
        if campaign.start_date is None or campaign.end_date is None:
            logger.debug("Skipping daily campaign %s without start/end dates", campaign.id)
            return None
        start = _window_start(campaign.start_date)
        end = _window_end(campaign.end_date)

    if campaign.deactivated_at is not None:
        end = min(end, ensure_utc(campaign.deactivated_at))

    if end < start:
        logger.debug("Campaign %s resolves to an inverted window", campaign.id)
        return None
    return ResolvedWindow(start=start, end=end)


def is_campaign_running(campaign: Campaign, now: datetime) -> bool:
    """Whether ``campaign`` is live at the caller-supplied ``now``."""
    if campaign.status != CampaignStatus.ACTIVE:
        return False
    window = resolve_window(campaign)
    if window is None:
        return False
    return window.contains(now)


def currently_boosted_ids(campaigns: Iterable[Campaign], now: datetime) -> Set[str]:
    return {campaign.target_id for campaign in campaigns if is_campaign_running(campaign, now)}
