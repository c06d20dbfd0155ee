from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from fomo_analytics.models import CanonicalEvent, EntityType, RawSource, SourceKind
from fomo_analytics.revenue import effective_percent, round_half_up, split_commission, summarize_revenue


def _sale(amount_cents, commission_percent=None) -> CanonicalEvent:
    return CanonicalEvent(
        timestamp=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        source_kind=SourceKind.REDEMPTION,
        entity_id="offer-1",
        entity_type=EntityType.OFFER,
        source=RawSource.OFFER_REDEMPTION,
        amount_cents=amount_cents,
        commission_percent=commission_percent,
    )


def test_round_half_up_rounds_ties_away_from_zero():
    assert round_half_up(Decimal("0.5")) == 1
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("2.49")) == 2


def test_split_commission_rounds_per_unit():
    assert split_commission(105, 10) == (11, 94)
    assert split_commission(5, 10) == (1, 4)
    assert split_commission(0, 12) == (0, 0)


def test_gross_equals_net_plus_commission():
    amounts = [1, 5, 99, 105, 333, 12345, 7, 250]
    summary = summarize_revenue([_sale(amount) for amount in amounts], business_percent=12)

    assert summary.gross_cents == sum(amounts)
    assert summary.gross_cents == summary.net_cents + summary.commission_cents


def test_frozen_order_rate_overrides_business_rate():
    event = _sale(1000, commission_percent=6)

    assert effective_percent(event, 12) == 6
    assert effective_percent(_sale(1000), 12) == 12

    summary = summarize_revenue([event, _sale(1000)], business_percent=12)
    assert summary.commission_cents == 60 + 120
    assert summary.effective_percent == 9


def test_non_monetary_events_are_ignored():
    summary = summarize_revenue([_sale(None), _sale(2000)], business_percent=10)

    assert summary.gross_cents == 2000
    assert summary.commission_cents == 200


def test_empty_period_reports_business_rate():
    summary = summarize_revenue([], business_percent=8)

    assert summary.gross_cents == 0
    assert summary.effective_percent == 8
    assert summary.as_dict() == {"grossCents": 0, "commissionCents": 0, "netCents": 0, "effectivePercent": 8}
