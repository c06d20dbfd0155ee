"""
Commission rate resolution.

The rate for a business comes from the first strategy that produces one:

1. the live commission service
2. the business's active plan mapped through ``DEFAULT_COMMISSION_BY_PLAN``
3. the free-plan rate

Rates frozen on historical orders override all of these for that order (see
``revenue.effective_percent``). A failing strategy is logged and skipped; it
never aborts the surrounding aggregation.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import httpx

from .configuration import CommissionServiceConfig
from .errors import CommissionSourceError
from .models import CommissionRate, ensure_utc
from .normalizer import coerce_timestamp

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_BY_PLAN: Dict[str, int] = {
    "free": 12,
    "basic": 10,
    "pro": 8,
    "elite": 6,
}
FREE_COMMISSION_PERCENT = DEFAULT_COMMISSION_BY_PLAN["free"]
MIN_INVOICE_AMOUNT_CENTS = 500

PlanLookup = Callable[[str], Optional[str]]


def commission_for_plan(plan_slug: Optional[str]) -> int:
    if not plan_slug:
        return FREE_COMMISSION_PERCENT
    return DEFAULT_COMMISSION_BY_PLAN.get(plan_slug, FREE_COMMISSION_PERCENT)


class CommissionStrategy(Protocol):
    name: str

    async def resolve(self, business_id: str) -> Optional[int]:
        ...


class LiveCommissionStrategy:
    """Asks the live commission service; any failure yields ``None``."""

    name = "live"

    def __init__(self, config: CommissionServiceConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._client = client

    async def resolve(self, business_id: str) -> Optional[int]:
        if not self.config.enable or not self.config.base_url:
            return None
        try:
            return await self._fetch(business_id)
        except (httpx.HTTPError, CommissionSourceError) as exc:
            logger.warning("Live commission source unavailable for business %s: %s", business_id, exc)
            return None

    async def _fetch(self, business_id: str) -> int:
        url = f"{self.config.base_url.rstrip('/')}/businesses/{business_id}/commission"
        headers = {"Authorization": f"Bearer {self.config.token}"} if self.config.token else {}
        if self._client is not None:
            response = await self._client.get(url, headers=headers, timeout=self.config.timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.get(url, headers=headers)
        response.raise_for_status()
        return _parse_percent(response)


def _parse_percent(response: httpx.Response) -> int:
    try:
        payload = response.json()
    except ValueError as exc:
        raise CommissionSourceError(f"invalid JSON from commission service: {exc}") from exc
    if not isinstance(payload, dict):
        raise CommissionSourceError("commission payload is not an object")
    raw = payload.get("commission_percent")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise CommissionSourceError(f"missing commission_percent in payload: {payload!r}")
    if isinstance(raw, float) and not raw.is_integer():
        raise CommissionSourceError(f"commission_percent must be a whole number: {raw}")
    percent = int(raw)
    if not 0 <= percent <= 100:
        raise CommissionSourceError(f"commission_percent out of range: {percent}")
    return percent


class PlanTableStrategy:
    """Maps the business's active plan slug onto the static default table."""

    name = "plan_table"

    def __init__(self, plan_lookup: PlanLookup) -> None:
        self.plan_lookup = plan_lookup

    async def resolve(self, business_id: str) -> Optional[int]:
        try:
            slug = await asyncio.to_thread(self.plan_lookup, business_id)
        except Exception as exc:
            logger.warning("Active plan lookup failed for business %s: %s", business_id, exc)
            return None
        return commission_for_plan(slug)


class StaticDefaultStrategy:
    name = "default"

    async def resolve(self, business_id: str) -> Optional[int]:
        return FREE_COMMISSION_PERCENT


class CommissionResolver:
    def __init__(self, strategies: Sequence[CommissionStrategy]) -> None:
        self.strategies = list(strategies)

    async def resolve(self, business_id: str) -> CommissionRate:
        for strategy in self.strategies:
            try:
                percent = await strategy.resolve(business_id)
            except Exception as exc:
                logger.warning("Commission strategy %s failed for business %s: %s", strategy.name, business_id, exc)
                continue
            if percent is not None:
                return CommissionRate(percent=percent, source=strategy.name)
        logger.warning("No commission strategy produced a rate for business %s; using free rate", business_id)
        return CommissionRate(percent=FREE_COMMISSION_PERCENT, source=StaticDefaultStrategy.name)

    async def resolve_percent(self, business_id: str) -> int:
        rate = await self.resolve(business_id)
        return rate.percent


def build_commission_resolver(
    config: CommissionServiceConfig,
    plan_lookup: Optional[PlanLookup] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> CommissionResolver:
    strategies: List[CommissionStrategy] = [LiveCommissionStrategy(config, client=client)]
    if plan_lookup is not None:
        strategies.append(PlanTableStrategy(plan_lookup))
    strategies.append(StaticDefaultStrategy())
    return CommissionResolver(strategies)


@dataclass(frozen=True)
class CommissionInvoice:
    business_id: str
    period_start: datetime
    period_end: datetime
    total_cents: int
    ledger_entry_ids: Sequence[str]


def invoice_commission_ledger(
    entries: Iterable[Mapping[str, Any]],
    period_start: datetime,
    period_end: datetime,
    minimum_cents: int = MIN_INVOICE_AMOUNT_CENTS,
) -> List[CommissionInvoice]:
    """
    Group pending ledger entries redeemed in ``[period_start, period_end)`` into
    one invoice per business, skipping businesses below ``minimum_cents``.
    """

    start = ensure_utc(period_start)
    end = ensure_utc(period_end)
    totals: Dict[str, int] = defaultdict(int)
    entry_ids: Dict[str, List[str]] = defaultdict(list)

    for entry in entries:
        if entry.get("status", "pending") != "pending":
            continue
        redeemed_at = coerce_timestamp(entry.get("redeemed_at"))
        if redeemed_at is None or not (start <= redeemed_at < end):
            continue
        business_id = str(entry["business_id"])
        totals[business_id] += int(entry.get("commission_amount_cents") or 0)
        entry_ids[business_id].append(str(entry.get("id")))

    invoices = []
    for business_id, total in sorted(totals.items()):
        if total < minimum_cents:
            logger.debug("Skipping invoice for business %s below minimum (%s < %s)", business_id, total, minimum_cents)
            continue
        invoices.append(
            CommissionInvoice(
                business_id=business_id,
                period_start=start,
                period_end=end,
                total_cents=total,
                ledger_entry_ids=tuple(entry_ids[business_id]),
            )
        )
    return invoices
