from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, validator

from .aggregator import compute_attribution
from .commission import FREE_COMMISSION_PERCENT
from .configuration import AnalyticsConfig, coerce_timezone, load_analytics_config
from .errors import DataSourceUnavailable, InvalidDateRange
from .guidance import compute_guidance_windows
from .models import (
    Campaign,
    CampaignStatus,
    CanonicalEvent,
    DateRange,
    DurationMode,
    EntityType,
    RawSource,
    SourceKind,
    TargetType,
    serialize,
)
from .normalizer import coerce_date_like
from .repository import AnalyticsRepository, RepositoryConfig, build_repository_from_env
from .service import AnalyticsService

app = FastAPI(title="FOMO Analytics API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
config: AnalyticsConfig = load_analytics_config()
repository: Optional[AnalyticsRepository] = build_repository_from_env(RepositoryConfig(database_url=config.database.url))


class EventPayload(BaseModel):
    timestamp: datetime
    source_kind: SourceKind
    entity_id: str
    entity_type: EntityType
    source: RawSource
    user_id: Optional[str] = None
    amount_cents: Optional[int] = None
    record_id: Optional[str] = None
    commission_percent: Optional[int] = Field(default=None, ge=0, le=100)


class CampaignPayload(BaseModel):
    id: str
    target_type: TargetType
    target_id: str
    business_id: str
    created_at: datetime
    duration_mode: DurationMode = DurationMode.DAILY
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    duration_hours: Optional[int] = None
    status: CampaignStatus = CampaignStatus.ACTIVE
    total_cost_cents: int = 0
    deactivated_at: Optional[datetime] = None


class AttributionRequest(BaseModel):
    business_id: str
    start: datetime
    end: datetime
    commission_percent: Optional[int] = Field(default=None, ge=0, le=100)
    campaigns: Optional[List[CampaignPayload]] = None
    events: Optional[List[EventPayload]] = None

    @validator("end")
    def _validate_range(cls, end: datetime, values: Dict[str, Any]) -> datetime:
        start = values.get("start")
        if start and end <= start:
            raise ValueError("end must be greater than start")
        return end


class GuidanceWindowsRequest(BaseModel):
    timestamps: List[datetime] = Field(default_factory=list)
    timezone: Optional[str] = None


class AnalyticsResponse(BaseModel):
    data: Any
    source: str


def get_service() -> Optional[AnalyticsService]:
    if repository is None:
        return None
    return AnalyticsService(repository, config=config)


def _require(service: Optional[AnalyticsService]) -> AnalyticsService:
    if service is None:
        raise HTTPException(
            status_code=500,
            detail=(
                "FOMO_ANALYTICS_DATABASE_URL is not configured; "
                "supply campaigns+events in the request body for ad-hoc attribution."
            ),
        )
    return service


def _date_range(start: datetime, end: datetime) -> DateRange:
    try:
        return DateRange(start=start, end=end)
    except InvalidDateRange as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.exception_handler(DataSourceUnavailable)
async def _data_source_unavailable(request: Request, exc: DataSourceUnavailable) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "Analytics data is unavailable; try again later.", "source": exc.source},
    )


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/attribution", response_model=AnalyticsResponse)
async def attribution_endpoint(
    request: AttributionRequest,
    service: Optional[AnalyticsService] = Depends(get_service),
) -> AnalyticsResponse:
    date_range = _date_range(request.start, request.end)

    if request.campaigns is not None and request.events is not None:
        results = compute_attribution(
            request.business_id,
            date_range,
            [_convert_campaign_payload(payload) for payload in request.campaigns],
            [_convert_event_payload(payload) for payload in request.events],
            commission_percent=(
                FREE_COMMISSION_PERCENT if request.commission_percent is None else request.commission_percent
            ),
        )
        return AnalyticsResponse(data=[result.as_dict() for result in results], source="inline")

    results = await _require(service).attribute_campaigns(request.business_id, date_range)
    return AnalyticsResponse(data=[result.as_dict() for result in results], source="database")


@app.get("/businesses/{business_id}/overview", response_model=AnalyticsResponse)
async def overview_endpoint(
    business_id: str,
    start: datetime,
    end: datetime,
    service: Optional[AnalyticsService] = Depends(get_service),
) -> AnalyticsResponse:
    metrics = await _require(service).compute_overview_metrics(business_id, _date_range(start, end))
    return AnalyticsResponse(data=metrics.as_dict(), source="database")


@app.get("/businesses/{business_id}/guidance", response_model=AnalyticsResponse)
async def guidance_endpoint(
    business_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: Optional[AnalyticsService] = Depends(get_service),
) -> AnalyticsResponse:
    service = _require(service)
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=service.config.guidance.lookback_days)
    report = await service.guidance_report(business_id, _date_range(start, end))
    return AnalyticsResponse(data=serialize(report), source="database")


@app.get("/businesses/{business_id}/comparison", response_model=AnalyticsResponse)
async def comparison_endpoint(
    business_id: str,
    start: datetime,
    end: datetime,
    service: Optional[AnalyticsService] = Depends(get_service),
) -> AnalyticsResponse:
    comparison = await _require(service).boost_comparison(business_id, _date_range(start, end))
    return AnalyticsResponse(data=serialize(comparison), source="database")


@app.get("/businesses/{business_id}/commission", response_model=AnalyticsResponse)
async def commission_endpoint(
    business_id: str,
    service: Optional[AnalyticsService] = Depends(get_service),
) -> AnalyticsResponse:
    rate = await _require(service).commission_resolver.resolve(business_id)
    return AnalyticsResponse(
        data={"businessId": business_id, "commissionPercent": rate.percent},
        source=rate.source,
    )


@app.post("/guidance/windows", response_model=AnalyticsResponse)
async def guidance_windows_endpoint(request: GuidanceWindowsRequest) -> AnalyticsResponse:
    tz = coerce_timezone(request.timezone or config.guidance.timezone)
    windows = compute_guidance_windows(request.timestamps, tz)
    return AnalyticsResponse(data=serialize(windows), source="inline")


def _convert_event_payload(payload: EventPayload) -> CanonicalEvent:
    return CanonicalEvent(
        timestamp=payload.timestamp,
        source_kind=payload.source_kind,
        entity_id=payload.entity_id,
        entity_type=payload.entity_type,
        source=payload.source,
        user_id=payload.user_id,
        amount_cents=payload.amount_cents,
        record_id=payload.record_id,
        commission_percent=payload.commission_percent,
    )


def _convert_campaign_payload(payload: CampaignPayload) -> Campaign:
    return Campaign(
        id=payload.id,
        target_type=payload.target_type,
        target_id=payload.target_id,
        business_id=payload.business_id,
        created_at=payload.created_at,
        duration_mode=payload.duration_mode,
        start_date=coerce_date_like(payload.start_date),
        end_date=coerce_date_like(payload.end_date),
        duration_hours=payload.duration_hours,
        status=payload.status,
        total_cost_cents=payload.total_cost_cents,
        deactivated_at=payload.deactivated_at,
    )
