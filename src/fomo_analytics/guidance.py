"""
Best-time recommendations.

Historical timestamps are bucketed into (day-of-week x two-hour slot) cells in
the business's local timezone; the two busiest cells become the suggested
windows. Day indices follow the dashboard convention, 0 = Sunday.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, tzinfo
from typing import Dict, Iterable, List, Sequence, Tuple

from .dataset import EventDataset
from .models import (
    CanonicalEvent,
    EntityType,
    GuidanceReport,
    GuidanceSection,
    GuidanceWindow,
    SectionTotals,
    SourceKind,
    VERIFIED_KINDS,
    ensure_utc,
)

DefaultPair = Tuple[Tuple[int, str], Tuple[int, str]]

DEFAULT_WINDOWS: DefaultPair = ((5, "18:00–20:00"), (6, "19:00–21:00"))

SECTION_DEFAULTS: Dict[EntityType, Dict[str, DefaultPair]] = {
    EntityType.PROFILE: {
        "views": ((5, "17:00–19:00"), (6, "17:00–19:00")),
        "interactions": ((5, "18:00–21:00"), (6, "18:00–21:00")),
        "visits": ((5, "20:00–23:00"), (6, "20:00–23:00")),
    },
    EntityType.OFFER: {
        "views": ((5, "17:00–19:00"), (6, "17:00–19:00")),
        "interactions": ((5, "18:00–21:00"), (6, "18:00–21:00")),
        "visits": ((5, "20:00–23:00"), (6, "20:00–23:00")),
    },
    EntityType.EVENT: {
        "views": ((3, "19:00–21:00"), (4, "19:00–21:00")),
        "interactions": ((4, "20:00–23:00"), (5, "19:00–22:00")),
        "visits": ((5, "23:00–03:00"), (6, "23:00–03:00")),
    },
}

CATEGORY_DEFAULTS: Dict[str, DefaultPair] = {
    "publish": ((5, "17:00–19:00"), (6, "17:00–19:00")),
    "interactions": ((5, "18:00–21:00"), (6, "18:00–21:00")),
    "visits": ((5, "20:00–23:00"), (6, "20:00–23:00")),
}

CATEGORY_KINDS = {
    "views": frozenset({SourceKind.VIEW}),
    "interactions": frozenset({SourceKind.INTERACTION}),
    "visits": VERIFIED_KINDS,
}


def format_hour_range(slot_start: int) -> str:
    return f"{slot_start:02d}:00–{(slot_start + 2) % 24:02d}:00"


def bucket_key(timestamp: datetime, tz: tzinfo) -> Tuple[int, int]:
    local = ensure_utc(timestamp).astimezone(tz)
    # datetime.weekday() is Monday=0; dashboards use Sunday=0.
    day_index = (local.weekday() + 1) % 7
    return day_index, (local.hour // 2) * 2


def compute_guidance_windows(
    timestamps: Iterable[datetime],
    tz: tzinfo,
    defaults: DefaultPair = DEFAULT_WINDOWS,
) -> List[GuidanceWindow]:
    """
    Return exactly two ranked windows.

    Ties rank the earlier day and slot first. With no data the fixed
    ``defaults`` pair is returned; a single populated bucket is padded with
    the first default that does not repeat it.
    """

    counts = Counter(bucket_key(timestamp, tz) for timestamp in timestamps)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0][0], item[0][1]))
    windows = [
        GuidanceWindow(day_index=day, hours_range=format_hour_range(slot), count=count)
        for (day, slot), count in ranked[:2]
    ]

    for day, hours in defaults:
        if len(windows) >= 2:
            break
        if any(window.day_index == day and window.hours_range == hours for window in windows):
            continue
        windows.append(GuidanceWindow(day_index=day, hours_range=hours, count=0))
    return windows


def _timestamps(events: Iterable[CanonicalEvent]) -> List[datetime]:
    return [event.timestamp for event in events]


def build_guidance_report(events: Sequence[CanonicalEvent], tz: tzinfo) -> GuidanceReport:
    """
    Run the recommender per section and category, then over the union of
    sections per category and once more over everything for ``best_overall``.
    """

    dataset = EventDataset.from_events(events)
    sections: Dict[EntityType, GuidanceSection] = {}
    totals: Dict[EntityType, SectionTotals] = {}

    for entity_type, defaults in SECTION_DEFAULTS.items():
        per_category = {
            category: _timestamps(dataset.iter_events(kinds=kinds, entity_type=entity_type))
            for category, kinds in CATEGORY_KINDS.items()
        }
        sections[entity_type] = GuidanceSection(
            views=compute_guidance_windows(per_category["views"], tz, defaults["views"]),
            interactions=compute_guidance_windows(per_category["interactions"], tz, defaults["interactions"]),
            visits=compute_guidance_windows(per_category["visits"], tz, defaults["visits"]),
        )
        totals[entity_type] = SectionTotals(
            views=len(per_category["views"]),
            interactions=len(per_category["interactions"]),
            visits=len(per_category["visits"]),
        )

    recommended = {
        "publish": compute_guidance_windows(
            _timestamps(dataset.iter_events(kinds=CATEGORY_KINDS["views"])), tz, CATEGORY_DEFAULTS["publish"]
        )[0],
        "interactions": compute_guidance_windows(
            _timestamps(dataset.iter_events(kinds=CATEGORY_KINDS["interactions"])), tz, CATEGORY_DEFAULTS["interactions"]
        )[0],
        "visits": compute_guidance_windows(
            _timestamps(dataset.iter_events(kinds=CATEGORY_KINDS["visits"])), tz, CATEGORY_DEFAULTS["visits"]
        )[0],
    }

    all_kinds = CATEGORY_KINDS["views"] | CATEGORY_KINDS["interactions"] | CATEGORY_KINDS["visits"]
    best_overall = compute_guidance_windows(_timestamps(dataset.iter_events(kinds=all_kinds)), tz)[0]

    return GuidanceReport(
        profile=sections[EntityType.PROFILE],
        offers=sections[EntityType.OFFER],
        events=sections[EntityType.EVENT],
        profile_totals=totals[EntityType.PROFILE],
        offer_totals=totals[EntityType.OFFER],
        event_totals=totals[EntityType.EVENT],
        recommended=recommended,
        best_overall=best_overall,
    )
