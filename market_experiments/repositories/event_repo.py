"""Repository for interaction event operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Float, and_, case, delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.models.db.event import InteractionEvent
from market_experiments.models.domain.event import EventFilter


def _filter_conditions(filters: EventFilter) -> list[Any]:
    conditions: list[Any] = []
    if filters.event_kind is not None:
        conditions.append(InteractionEvent.event_kind == filters.event_kind)
    if filters.user_id is not None:
        conditions.append(InteractionEvent.user_id == filters.user_id)
    if filters.session_id is not None:
        conditions.append(InteractionEvent.session_id == filters.session_id)
    if filters.product_id is not None:
        conditions.append(InteractionEvent.product_id == filters.product_id)
    if filters.seller_id is not None:
        conditions.append(InteractionEvent.seller_id == filters.seller_id)
    if filters.addon_id is not None:
        conditions.append(InteractionEvent.addon_id == filters.addon_id)
    if filters.from_timestamp is not None:
        conditions.append(InteractionEvent.created_at >= filters.from_timestamp)
    if filters.to_timestamp is not None:
        conditions.append(InteractionEvent.created_at < filters.to_timestamp)
    return conditions


class EventRepository:
    """Repository for the append-only interaction event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, event: InteractionEvent) -> InteractionEvent:
        """Insert a single event."""
        self.session.add(event)
        await self.session.flush()
        return event

    async def create_batch(self, events: list[InteractionEvent]) -> list[InteractionEvent]:
        """Insert multiple events in one flush."""
        self.session.add_all(events)
        await self.session.flush()
        return events

    async def query(
        self,
        filters: EventFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[InteractionEvent]:
        """Query events with filters, newest first."""
        stmt = select(InteractionEvent)
        conditions = _filter_conditions(filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = (
            stmt.order_by(InteractionEvent.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, filters: EventFilter) -> int:
        """Count events matching the filters."""
        stmt = select(func.count()).select_from(InteractionEvent)
        conditions = _filter_conditions(filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete every event created before the cutoff."""
        result = await self.session.execute(
            delete(InteractionEvent).where(InteractionEvent.created_at < cutoff)
        )
        return result.rowcount or 0

    async def count_converted_units_by_variant(
        self,
        experiment_name: str,
        event_kind: str,
        from_timestamp: datetime | None,
        to_timestamp: datetime | None,
    ) -> dict[str, int]:
        """Distinct converting units per variant for one experiment.

        Units are counted once regardless of how many conversion events they
        produced, which also absorbs duplicates from at-least-once ingestion.
        """
        variant_expr = InteractionEvent.properties["experiment_variant"].astext
        unit_expr = func.coalesce(InteractionEvent.user_id, InteractionEvent.session_id)
        conditions = _filter_conditions(
            EventFilter(
                event_kind=event_kind,
                from_timestamp=from_timestamp,
                to_timestamp=to_timestamp,
            )
        )
        conditions.append(
            InteractionEvent.properties["experiment_name"].astext == experiment_name
        )

        stmt = (
            select(variant_expr.label("variant"), func.count(distinct(unit_expr)))
            .where(and_(*conditions))
            .group_by(variant_expr)
        )
        result = await self.session.execute(stmt)
        return {row[0]: int(row[1]) for row in result.all() if row[0] is not None}

    async def count_by_product_addon_kind(
        self, filters: EventFilter
    ) -> list[tuple[str | None, str | None, str, int]]:
        """Event counts grouped by (product, add-on, kind)."""
        conditions = _filter_conditions(filters)
        stmt = select(
            InteractionEvent.product_id,
            InteractionEvent.addon_id,
            InteractionEvent.event_kind,
            func.count().label("count"),
        )
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.group_by(
            InteractionEvent.product_id,
            InteractionEvent.addon_id,
            InteractionEvent.event_kind,
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1], row[2], int(row[3])) for row in result.all()]

    async def count_displays_by_product(
        self, filters: EventFilter
    ) -> list[tuple[str | None, str | None, int, float | None]]:
        """Display events grouped by (product, display type) with average items shown."""
        display_type = InteractionEvent.properties["display_type"].astext
        items_shown = InteractionEvent.properties["items_shown"].astext.cast(Float)
        conditions = _filter_conditions(filters)
        stmt = select(
            InteractionEvent.product_id,
            display_type.label("display_type"),
            func.count().label("count"),
            func.avg(items_shown).label("avg_items"),
        )
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.group_by(InteractionEvent.product_id, display_type)
        result = await self.session.execute(stmt)
        return [
            (row[0], row[1], int(row[2]), float(row[3]) if row[3] is not None else None)
            for row in result.all()
        ]

    async def top_addons(
        self,
        filters: EventFilter,
        click_kind: str,
        purchase_kind: str,
        limit: int = 10,
    ) -> list[tuple[str, int, int]]:
        """Add-ons ordered by clicks + 5 x purchases. Returns (addon, clicks, purchases)."""
        clicks = func.sum(case((InteractionEvent.event_kind == click_kind, 1), else_=0))
        purchases = func.sum(
            case((InteractionEvent.event_kind == purchase_kind, 1), else_=0)
        )
        conditions = _filter_conditions(filters)
        conditions.append(InteractionEvent.event_kind.in_([click_kind, purchase_kind]))
        conditions.append(InteractionEvent.addon_id.is_not(None))

        stmt = (
            select(
                InteractionEvent.addon_id,
                clicks.label("clicks"),
                purchases.label("purchases"),
            )
            .where(and_(*conditions))
            .group_by(InteractionEvent.addon_id)
            .order_by((clicks + purchases * 5).desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [(row[0], int(row[1]), int(row[2])) for row in result.all()]
