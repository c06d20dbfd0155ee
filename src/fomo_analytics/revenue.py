from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

from .models import CanonicalEvent, RevenueSummary


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_commission(amount_cents: int, commission_percent: int) -> Tuple[int, int]:
    """
    Return ``(commission_cents, net_cents)`` for a single priced unit.

    Rounding happens per unit, so ``amount == commission + net`` holds for
    every event and therefore for any aggregate.
    """

    commission = round_half_up(Decimal(amount_cents) * Decimal(commission_percent) / Decimal(100))
    return commission, amount_cents - commission


def effective_percent(event: CanonicalEvent, business_percent: int) -> int:
    """Orders freeze the rate in effect at purchase time."""
    if event.commission_percent is not None:
        return event.commission_percent
    return business_percent


def summarize_revenue(
    events: Iterable[CanonicalEvent],
    business_percent: int,
) -> RevenueSummary:
    """
    Aggregate gross/commission/net over the monetary events in ``events``.

    Events without ``amount_cents`` are not monetary and are
    skipped. A zero-revenue period reports ``business_percent`` as its
    blended rate.
    """

    gross = 0
    commission_total = 0
    net = 0
    for event in events:
        if event.amount_cents is None:
            continue
        percent = effective_percent(event, business_percent)
        commission, net_cents = split_commission(event.amount_cents, percent)
        gross += event.amount_cents
        commission_total += commission
        net += net_cents

    if gross > 0:
        blended = round_half_up(Decimal(commission_total) / Decimal(gross) * Decimal(100))
    else:
        blended = business_percent

    return RevenueSummary(
        gross_cents=gross,
        commission_cents=commission_total,
        net_cents=net,
        effective_percent=blended,
    )
