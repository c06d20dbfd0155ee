"""
Runtime configuration for the analytics engine.
"""

from __future__ import annotations

import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel


class DatabaseConfig(BaseModel):
    url: Optional[str] = None
    """SQLAlchemy URL of the marketplace database holding the raw event rows."""


class CommissionServiceConfig(BaseModel):
    enable: bool = True
    base_url: Optional[str] = None
    token: Optional[str] = None
    timeout_seconds: float = 2.0
    """Kept short: the live rate must not hold up the rest of the aggregation."""


class GuidanceConfig(BaseModel):
    timezone: str = "Europe/Nicosia"
    """Local timezone used for day-of-week / two-hour slot bucketing."""

    lookback_days: int = 30


class AnalyticsConfig(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    commission: CommissionServiceConfig = CommissionServiceConfig()
    guidance: GuidanceConfig = GuidanceConfig()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def coerce_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def load_analytics_config(use_dotenv: bool = True) -> AnalyticsConfig:
    if use_dotenv:
        load_dotenv()

    cfg = AnalyticsConfig()
    cfg.database = DatabaseConfig(url=os.getenv("FOMO_ANALYTICS_DATABASE_URL", cfg.database.url))
    cfg.commission = CommissionServiceConfig(
        enable=_env_bool("COMMISSION_SERVICE_ENABLE", cfg.commission.enable),
        base_url=os.getenv("COMMISSION_SERVICE_URL", cfg.commission.base_url),
        token=os.getenv("COMMISSION_SERVICE_TOKEN", cfg.commission.token),
        timeout_seconds=_env_float("COMMISSION_SERVICE_TIMEOUT_SECONDS", cfg.commission.timeout_seconds),
    )
    cfg.guidance = GuidanceConfig(
        timezone=os.getenv("GUIDANCE_TIMEZONE", cfg.guidance.timezone),
        lookback_days=_env_int("GUIDANCE_LOOKBACK_DAYS", cfg.guidance.lookback_days),
    )
    return cfg
