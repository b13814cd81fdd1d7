"""Analytics response schemas for seller dashboards."""

from datetime import datetime

from pydantic import BaseModel, Field


class ConversionFunnel(BaseModel):
    """Interaction funnel for one (product, add-on) pair."""

    product_id: str | None
    addon_id: str | None
    views: int
    clicks: int
    add_to_carts: int
    purchases: int
    click_through_rate: float
    conversion_rate: float


class DisplayTypeBreakdown(BaseModel):
    """How often one display type was served for a product."""

    display_type: str | None
    count: int
    avg_items_shown: float | None


class DisplayPerformance(BaseModel):
    """Display-strategy exposure for one product."""

    product_id: str | None
    display_types: list[DisplayTypeBreakdown]
    total_shows: int


class TopAddOn(BaseModel):
    """Add-on ranked by engagement score (clicks + 5 x purchases)."""

    addon_id: str
    clicks: int
    purchases: int
    conversion_rate: float
    score: int


class DashboardPeriod(BaseModel):
    """Time window a dashboard covers."""

    start_date: datetime
    end_date: datetime
    days: int


class DashboardSummary(BaseModel):
    """Headline numbers for a dashboard."""

    total_conversions: int
    avg_conversion_rate: float
    total_displays_shown: int


class SellerDashboard(BaseModel):
    """Everything a seller sees on the analytics dashboard."""

    seller_id: str
    period: DashboardPeriod
    conversions: list[ConversionFunnel]
    display_performance: list[DisplayPerformance]
    top_addons: list[TopAddOn]
    summary: DashboardSummary


class RetentionJob(BaseModel):
    """Handle for a queued retention cleanup."""

    job_id: str
    days_to_keep: int = Field(..., ge=1)
