"""Experiment Pydantic schemas for A/B testing."""

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ExperimentStatus(StrEnum):
    """Lifecycle status of an experiment."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ExperimentMetric(StrEnum):
    """Metrics an experiment may optimise for."""

    CONVERSION_RATE = "conversion_rate"
    CLICK_THROUGH_RATE = "click_through_rate"
    REVENUE_PER_USER = "revenue_per_user"
    ADDON_ATTACHMENT_RATE = "addon_attachment_rate"


class ExperimentType(StrEnum):
    """What part of the storefront an experiment changes."""

    DISPLAYADDONS_ALGORITHM = "displayaddons_algorithm"
    UI_LAYOUT = "ui_layout"
    PRICING_STRATEGY = "pricing_strategy"
    RECOMMENDATION_COUNT = "recommendation_count"


class VariantDefinition(BaseModel):
    """One arm of an experiment. ``config`` is stored and returned untouched."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    traffic_percentage: float = Field(..., ge=0, le=100)


class TargetingRules(BaseModel):
    """Audience restrictions. Empty lists and unset bounds mean "no restriction"."""

    user_segments: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    sellers: list[str] = Field(default_factory=list)
    min_order_value: float | None = None
    max_order_value: float | None = None


class TargetingAttributes(BaseModel):
    """Caller-supplied attributes for targeting and assignment metadata."""

    segment: str | None = None
    category: str | None = None
    seller_id: str | None = None
    order_value: float | None = None
    user_agent: str | None = None
    origin: str | None = None
    referrer: str | None = None

    def request_metadata(self) -> dict[str, Any]:
        """The subset persisted alongside an assignment."""
        return self.model_dump(
            include={"user_agent", "origin", "referrer"}, exclude_none=True
        )


class ExperimentCreate(BaseModel):
    """Schema for creating an experiment."""

    name: str = Field(..., min_length=1, max_length=255, description="Unique experiment name")
    description: str | None = Field(None, description="Experiment description")
    experiment_type: ExperimentType | None = Field(None, description="Experiment category")
    variants: list[VariantDefinition] = Field(
        ..., description="Ordered variant definitions; shares must sum to 100"
    )
    targeting_rules: TargetingRules | None = Field(
        None, description="Audience restrictions"
    )
    primary_metric: str = Field(
        ExperimentMetric.CONVERSION_RATE, description="Metric the experiment optimises"
    )
    secondary_metrics: list[str] = Field(default_factory=list)
    min_sample_size: int = Field(1000, ge=1)
    confidence_level: float = Field(0.95, description="0.95 or 0.99")
    end_date: datetime | None = Field(None, description="Planned end; triggers auto-completion")


class ExperimentUpdate(BaseModel):
    """Schema for updating a non-active experiment."""

    description: str | None = None
    experiment_type: ExperimentType | None = None
    variants: list[VariantDefinition] | None = None
    targeting_rules: TargetingRules | None = None
    primary_metric: str | None = None
    secondary_metrics: list[str] | None = None
    min_sample_size: int | None = Field(None, ge=1)
    confidence_level: float | None = None
    end_date: datetime | None = None


class ConfidenceInterval(BaseModel):
    """Normal-approximation interval around a conversion rate."""

    rate: float
    lower: float
    upper: float
    margin: float


class VariantResult(BaseModel):
    """Measured outcome for one variant."""

    variant: str
    sample_size: int
    conversions: int
    conversion_rate: float
    confidence: ConfidenceInterval | None = None


class ResultSet(BaseModel):
    """Frozen outcome attached to a completed experiment."""

    winner: str | None
    statistical_significance: bool
    variant_results: list[VariantResult]
    completed_at: datetime


class ExperimentRead(BaseModel):
    """Schema for reading an experiment."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    experiment_type: str | None
    status: ExperimentStatus
    variants: list[VariantDefinition]
    targeting_rules: TargetingRules | None
    primary_metric: str
    secondary_metrics: list[str]
    min_sample_size: int
    confidence_level: float
    started_at: datetime | None
    end_date: datetime | None
    ended_at: datetime | None
    results: ResultSet | None
    created_at: datetime
    updated_at: datetime


class ExperimentDetail(BaseModel):
    """Experiment plus live assignment counts per variant."""

    experiment: ExperimentRead
    assignment_counts: dict[str, int]


class ExperimentResults(BaseModel):
    """Statistical analysis of a (running or finished) experiment."""

    experiment_id: UUID
    experiment_name: str
    status: ExperimentStatus
    confidence_level: float
    variant_results: list[VariantResult]
    winner: str | None
    statistical_significance: bool
    total_sample_size: int
    should_complete: bool


class VariantAssignment(BaseModel):
    """A unit's variant and its configuration."""

    experiment_name: str
    variant: str
    config: dict[str, Any] = Field(default_factory=dict)


class VariantLookup(BaseModel):
    """Response for a variant request; ``variant`` is None when not assigned."""

    experiment_name: str
    assigned: bool
    variant: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class DisplayConfig(BaseModel):
    """Product display strategy. Extra keys from a variant config pass through."""

    model_config = ConfigDict(extra="allow")

    strategy: str = "hybrid"
    max_items: int = 4
    prioritize_revenue: bool = True
    show_related_products: bool = True
    variant: str = "control"


class ConversionCreate(BaseModel):
    """Schema for submitting an experiment conversion."""

    experiment_name: str = Field(..., min_length=1, max_length=255)
    user_id: str | None = Field(None, max_length=255)
    session_id: str | None = Field(None, max_length=255)
    conversion_data: dict[str, Any] = Field(default_factory=dict)
