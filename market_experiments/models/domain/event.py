"""Interaction event Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EventMetadata(BaseModel):
    """Free-form metadata bag. The named fields are the common ones; any extra
    key is kept as-is."""

    model_config = ConfigDict(extra="allow")

    category: str | None = None
    price: float | None = None
    search_query: str | None = None
    display_type: str | None = None
    position: int | None = None
    source: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None


class EventCreate(BaseModel):
    """Schema for submitting an interaction event."""

    event_kind: str = Field(..., min_length=1, max_length=64, description="Event kind (e.g. 'addon_click')")
    user_id: str | None = Field(None, max_length=255, description="Authenticated user")
    session_id: str | None = Field(None, max_length=255, description="Anonymous session")
    product_id: str | None = Field(None, max_length=255)
    seller_id: str | None = Field(None, max_length=255)
    addon_id: str | None = Field(None, max_length=255)
    metadata: EventMetadata = Field(default_factory=EventMetadata)


class EventRecord(BaseModel):
    """A validated, server-stamped event waiting to be written."""

    model_config = ConfigDict(frozen=True)

    event_kind: str
    user_id: str | None = None
    session_id: str | None = None
    product_id: str | None = None
    seller_id: str | None = None
    addon_id: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class EventRead(BaseModel):
    """Schema for reading a stored event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_kind: str
    user_id: str | None
    session_id: str | None
    product_id: str | None
    seller_id: str | None
    addon_id: str | None
    properties: dict[str, Any]
    created_at: datetime


class EventFilter(BaseModel):
    """Filters for event queries. The time range is half-open: [from, to)."""

    event_kind: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    product_id: str | None = None
    seller_id: str | None = None
    addon_id: str | None = None
    from_timestamp: datetime | None = None
    to_timestamp: datetime | None = None


class IngestionStatus(BaseModel):
    """Operator view of the ingestion pipeline."""

    pending_events: int
    batch_size: int
    flush_interval_seconds: float
    recent_events_24h: int
