"""Analytics API endpoints: event tracking, seller dashboards and maintenance."""

from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from market_experiments.api.v1.dependencies import (
    AppSettings,
    Ingestor,
    Operator,
    Store,
)
from market_experiments.models.domain.analytics import (
    ConversionFunnel,
    DisplayPerformance,
    RetentionJob,
    SellerDashboard,
    TopAddOn,
)
from market_experiments.models.domain.event import (
    EventCreate,
    EventFilter,
    EventRead,
    IngestionStatus,
)
from market_experiments.services.analytics_service import AnalyticsService
from market_experiments.workers.maintenance_worker import queue_retention_cleanup

router = APIRouter()


def get_analytics_service(store: Store, settings: AppSettings) -> AnalyticsService:
    """Get analytics service instance."""
    return AnalyticsService(store, settings)


AnalyticsSvc = Annotated[AnalyticsService, Depends(get_analytics_service)]


def event_filters(
    from_date: datetime | None = Query(None, description="Start of range (inclusive)"),
    to_date: datetime | None = Query(None, description="End of range (exclusive)"),
    product_id: str | None = Query(None),
    seller_id: str | None = Query(None),
    addon_id: str | None = Query(None),
) -> EventFilter:
    """Common report filters."""
    return EventFilter(
        product_id=product_id,
        seller_id=seller_id,
        addon_id=addon_id,
        from_timestamp=from_date,
        to_timestamp=to_date,
    )


Filters = Annotated[EventFilter, Depends(event_filters)]


@router.post("/events", status_code=202)
async def track_event(
    ingestor: Ingestor,
    data: EventCreate,
) -> dict[str, str]:
    """Accept an interaction event for buffered ingestion.

    The kind is validated immediately; the write happens on the next flush.
    """
    record = await ingestor.submit(data)
    return {"status": "accepted", "received_at": record.created_at.isoformat()}


@router.get("/events", response_model=list[EventRead])
async def query_events(
    _auth: Operator,
    store: Store,
    filters: Filters,
    event_kind: str | None = Query(None, description="Filter by event kind"),
    user_id: str | None = Query(None),
    session_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> list[EventRead]:
    """Raw event query, newest first."""
    return await store.query(
        filters.model_copy(
            update={
                "event_kind": event_kind,
                "user_id": user_id,
                "session_id": session_id,
            }
        ),
        limit=limit,
        offset=offset,
    )


@router.get("/conversions", response_model=list[ConversionFunnel])
async def get_conversion_funnel(
    _auth: Operator,
    service: AnalyticsSvc,
    filters: Filters,
) -> list[ConversionFunnel]:
    """Views, clicks, add-to-carts and purchases per product and add-on."""
    return await service.get_conversion_funnel(filters)


@router.get("/display-performance", response_model=list[DisplayPerformance])
async def get_display_performance(
    _auth: Operator,
    service: AnalyticsSvc,
    filters: Filters,
) -> list[DisplayPerformance]:
    """How often each display strategy was shown, per product."""
    return await service.get_display_performance(filters)


@router.get("/top-addons", response_model=list[TopAddOn])
async def get_top_addons(
    _auth: Operator,
    service: AnalyticsSvc,
    filters: Filters,
    limit: int = Query(10, ge=1, le=100),
) -> list[TopAddOn]:
    """Add-ons ranked by clicks plus five times purchases."""
    return await service.get_top_addons(filters, limit=limit)


@router.get("/dashboard/{seller_id}", response_model=SellerDashboard)
async def get_seller_dashboard(
    _auth: Operator,
    service: AnalyticsSvc,
    seller_id: str,
    days: int = Query(30, ge=1, le=365, description="Days to look back"),
) -> SellerDashboard:
    """Seller dashboard: funnel, display performance and top add-ons."""
    return await service.get_seller_dashboard(seller_id, days=days)


@router.get("/ingestion", response_model=IngestionStatus)
async def get_ingestion_status(
    _auth: Operator,
    ingestor: Ingestor,
    store: Store,
) -> IngestionStatus:
    """Pending buffer size and events stored in the last 24 hours."""
    since = datetime.now(UTC) - timedelta(hours=24)
    return IngestionStatus(
        pending_events=ingestor.pending_count,
        batch_size=ingestor.batch_size,
        flush_interval_seconds=ingestor.flush_interval,
        recent_events_24h=await store.count(EventFilter(from_timestamp=since)),
    )


@router.post("/retention", response_model=RetentionJob, status_code=202)
async def queue_retention(
    _auth: Operator,
    settings: AppSettings,
    days_to_keep: int | None = Query(None, ge=1, description="Defaults to configured retention"),
) -> RetentionJob:
    """Queue deletion of events older than ``days_to_keep`` days."""
    days = days_to_keep or settings.event_retention_days
    job_id = queue_retention_cleanup(days, settings=settings)
    return RetentionJob(job_id=job_id, days_to_keep=days)
