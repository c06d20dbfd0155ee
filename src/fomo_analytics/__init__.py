"""
Attribution and metrics engine for the FOMO marketplace dashboards.

This package resolves boost windows and plan history into half-open intervals,
normalizes the raw engagement/visit sources into canonical events and emits the
overview, attribution, comparison and best-time figures the business dashboards
render.
"""

from .aggregator import (  # noqa: F401
    calculate_change,
    compare_boosted,
    compute_attribution,
    compute_overview,
    count_new_customers,
    section_totals,
)
from .commission import (  # noqa: F401
    DEFAULT_COMMISSION_BY_PLAN,
    CommissionResolver,
    build_commission_resolver,
    invoice_commission_ledger,
)
from .errors import AnalyticsError, CommissionSourceError, DataSourceUnavailable, InvalidDateRange  # noqa: F401
from .guidance import build_guidance_report, compute_guidance_windows  # noqa: F401
from .intervals import first_paid_start, partition_by_plan, within_plan_history, within_window  # noqa: F401
from .models import (  # noqa: F401
    AttributionResult,
    Campaign,
    CanonicalEvent,
    DateRange,
    EntityType,
    GuidanceWindow,
    OverviewMetrics,
    PlanInterval,
    ResolvedWindow,
    SourceKind,
)
from .normalizer import RawEventBundle, normalize_all  # noqa: F401
from .repository import (  # noqa: F401
    AnalyticsRepository,
    InMemoryRepository,
    RepositoryConfig,
    SQLAnalyticsRepository,
    build_repository_from_env,
)
from .service import AnalyticsService  # noqa: F401
from .windows import currently_boosted_ids, is_campaign_running, resolve_window  # noqa: F401
