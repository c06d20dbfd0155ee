from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Callable, Collection, Iterable, Iterator, Optional, Sequence

from .models import VERIFIED_KINDS, CanonicalEvent, DateRange, EntityType, SourceKind, ensure_utc

TimestampPredicate = Callable[[CanonicalEvent], bool]


def in_range(date_range: DateRange) -> TimestampPredicate:
    return lambda event: date_range.contains(event.timestamp)


@dataclass
class EventDataset:
    events: Sequence[CanonicalEvent]

    def __post_init__(self) -> None:
        self.events = tuple(sorted(self.events, key=lambda event: ensure_utc(event.timestamp)))

    def iter_events(
        self,
        predicate: Optional[TimestampPredicate] = None,
        kinds: Optional[Collection[SourceKind]] = None,
        entity_type: Optional[EntityType] = None,
        entity_ids: Optional[Collection[str]] = None,
    ) -> Iterator[CanonicalEvent]:
        """
        Yield events matching every supplied filter.

        ``predicate`` is the window/interval test; ``entity_ids`` restricts to
        the entity set the caller is reporting on.
        """

        allowed_ids = None if entity_ids is None else set(entity_ids)
        for event in self.events:
            if kinds is not None and event.source_kind not in kinds:
                continue
            if entity_type is not None and event.entity_type != entity_type:
                continue
            if allowed_ids is not None and event.entity_id not in allowed_ids:
                continue
            if predicate is not None and not predicate(event):
                continue
            yield event

    def count(self, **filters) -> int:
        return sum(1 for _ in self.iter_events(**filters))

    def verified_visits(
        self,
        predicate: Optional[TimestampPredicate] = None,
        entity_type: Optional[EntityType] = None,
        entity_ids: Optional[Collection[str]] = None,
    ) -> Iterator[CanonicalEvent]:
        return self.iter_events(predicate=predicate, kinds=VERIFIED_KINDS, entity_type=entity_type, entity_ids=entity_ids)

    def customer_frequencies(
        self,
        predicate: Optional[TimestampPredicate] = None,
        entity_type: Optional[EntityType] = None,
        entity_ids: Optional[Collection[str]] = None,
    ) -> Counter:
        """
        Combined multiset of user ids over every verified-visit source.

        Unique and repeat customer counts are both read from this one counter
        so they can never disagree.
        """

        return Counter(
            event.user_id
            for event in self.verified_visits(predicate=predicate, entity_type=entity_type, entity_ids=entity_ids)
            if event.user_id is not None
        )

    @classmethod
    def from_events(cls, events: Iterable[CanonicalEvent]) -> "EventDataset":
        return cls(events=tuple(events))
