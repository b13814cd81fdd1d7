"""Analytics service for seller dashboards and reporting queries."""

from __future__ import annotations

from collections import defaultdict
from datetime import UTC, datetime, timedelta

from market_experiments.core.config import Settings, get_settings
from market_experiments.models.domain.analytics import (
    ConversionFunnel,
    DashboardPeriod,
    DashboardSummary,
    DisplayPerformance,
    DisplayTypeBreakdown,
    SellerDashboard,
    TopAddOn,
)
from market_experiments.models.domain.event import EventFilter
from market_experiments.services.event_store import EventStore

DASHBOARD_TOP_ADDONS = 5


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


class AnalyticsService:
    """Aggregations over the interaction event log.

    Report queries are time-bounded by the event store; a query that times
    out contributes an empty section instead of failing the whole report.
    """

    def __init__(
        self,
        event_store: EventStore,
        settings: Settings | None = None,
    ) -> None:
        self._store = event_store
        settings = settings or get_settings()
        self._view_kind = settings.view_event_kind
        self._click_kind = settings.click_event_kind
        self._cart_kind = settings.add_to_cart_event_kind
        self._purchase_kind = settings.conversion_event_kind
        self._display_kind = settings.display_event_kind

    @property
    def funnel_kinds(self) -> tuple[str, ...]:
        return (
            self._view_kind,
            self._click_kind,
            self._cart_kind,
            self._purchase_kind,
        )

    async def get_conversion_funnel(self, filters: EventFilter) -> list[ConversionFunnel]:
        """Views, clicks, add-to-carts and purchases per (product, add-on)."""
        rows = await self._store.count_by_product_addon_kind(
            filters.model_copy(update={"event_kind": None})
        )

        funnel_kinds = self.funnel_kinds
        counts: dict[tuple[str | None, str | None], dict[str, int]] = defaultdict(
            lambda: dict.fromkeys(funnel_kinds, 0)
        )
        for product_id, addon_id, kind, count in rows:
            if kind in funnel_kinds:
                counts[(product_id, addon_id)][kind] += count

        funnels = [
            ConversionFunnel(
                product_id=product_id,
                addon_id=addon_id,
                views=c[self._view_kind],
                clicks=c[self._click_kind],
                add_to_carts=c[self._cart_kind],
                purchases=c[self._purchase_kind],
                click_through_rate=_ratio(c[self._click_kind], c[self._view_kind]),
                conversion_rate=_ratio(c[self._purchase_kind], c[self._click_kind]),
            )
            for (product_id, addon_id), c in counts.items()
        ]
        funnels.sort(key=lambda f: f.conversion_rate, reverse=True)
        return funnels

    async def get_display_performance(
        self, filters: EventFilter
    ) -> list[DisplayPerformance]:
        """Display-strategy exposure per product, most shown first."""
        rows = await self._store.count_displays_by_product(
            filters.model_copy(update={"event_kind": self._display_kind})
        )

        by_product: dict[str | None, list[DisplayTypeBreakdown]] = defaultdict(list)
        for product_id, display_type, count, avg_items in rows:
            by_product[product_id].append(
                DisplayTypeBreakdown(
                    display_type=display_type,
                    count=count,
                    avg_items_shown=avg_items,
                )
            )

        performance = [
            DisplayPerformance(
                product_id=product_id,
                display_types=breakdown,
                total_shows=sum(b.count for b in breakdown),
            )
            for product_id, breakdown in by_product.items()
        ]
        performance.sort(key=lambda p: p.total_shows, reverse=True)
        return performance

    async def get_top_addons(
        self, filters: EventFilter, limit: int = 10
    ) -> list[TopAddOn]:
        """Add-ons ranked by clicks + 5 x purchases."""
        rows = await self._store.top_addons(
            filters.model_copy(update={"event_kind": None}),
            click_kind=self._click_kind,
            purchase_kind=self._purchase_kind,
            limit=limit,
        )
        return [
            TopAddOn(
                addon_id=addon_id,
                clicks=clicks,
                purchases=purchases,
                conversion_rate=_ratio(purchases, clicks),
                score=clicks + purchases * 5,
            )
            for addon_id, clicks, purchases in rows
        ]

    async def get_seller_dashboard(
        self,
        seller_id: str,
        days: int = 30,
        now: datetime | None = None,
    ) -> SellerDashboard:
        """Funnel, display performance and top add-ons for the last ``days`` days."""
        end_date = now or datetime.now(UTC)
        start_date = end_date - timedelta(days=days)
        filters = EventFilter(
            seller_id=seller_id,
            from_timestamp=start_date,
            to_timestamp=end_date,
        )

        conversions = await self.get_conversion_funnel(filters)
        display_performance = await self.get_display_performance(filters)
        top_addons = await self.get_top_addons(filters, limit=DASHBOARD_TOP_ADDONS)

        avg_rate = (
            sum(f.conversion_rate for f in conversions) / len(conversions)
            if conversions
            else 0.0
        )
        return SellerDashboard(
            seller_id=seller_id,
            period=DashboardPeriod(start_date=start_date, end_date=end_date, days=days),
            conversions=conversions,
            display_performance=display_performance,
            top_addons=top_addons,
            summary=DashboardSummary(
                total_conversions=sum(f.purchases for f in conversions),
                avg_conversion_rate=avg_rate,
                total_displays_shown=sum(p.total_shows for p in display_performance),
            ),
        )
