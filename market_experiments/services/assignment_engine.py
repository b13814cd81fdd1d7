"""Sticky, deterministic variant assignment for storefront requests."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.core.config import Settings, get_settings
from market_experiments.models.db.experiment import ExperimentAssignment
from market_experiments.models.domain.event import EventCreate, EventMetadata
from market_experiments.models.domain.experiment import (
    DisplayConfig,
    TargetingAttributes,
    TargetingRules,
    VariantAssignment,
)
from market_experiments.repositories.experiment_repo import ExperimentRepository
from market_experiments.services.batch_ingestor import BatchIngestor
from market_experiments.services.experiment_registry import (
    ActiveExperiment,
    ActiveExperimentCache,
    VariantSpec,
)

logger = logging.getLogger(__name__)

# Event columns that may be supplied inside conversion data
_EVENT_ID_FIELDS = ("product_id", "seller_id", "addon_id")


def bucket_for(unit_key: str) -> int:
    """Map a unit key to a bucket in [0, 100).

    Classic 31-multiplier string hash over UTF-16 code units, wrapped to a
    signed 32-bit integer. Existing assignments depend on these exact values.
    """
    data = unit_key.encode("utf-16-be")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + ((data[i] << 8) | data[i + 1])) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % 100


def select_variant(variants: Sequence[VariantSpec], bucket: int) -> VariantSpec:
    """First variant whose cumulative share exceeds the bucket."""
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_percentage
        if bucket < cumulative:
            return variant
    return variants[0]


def matches_targeting(
    rules: TargetingRules | None, attributes: TargetingAttributes
) -> bool:
    """Whether the caller's attributes satisfy the experiment's audience rules.

    Category and seller only exclude when the caller supplied a value;
    a missing segment counts as "unknown" and a missing order value as 0.
    """
    if rules is None:
        return True

    if rules.user_segments:
        segment = attributes.segment or "unknown"
        if "all" not in rules.user_segments and segment not in rules.user_segments:
            return False

    if rules.categories and attributes.category:
        if attributes.category not in rules.categories:
            return False

    if rules.sellers and attributes.seller_id:
        if attributes.seller_id not in rules.sellers:
            return False

    order_value = attributes.order_value or 0
    if rules.min_order_value is not None and order_value < rules.min_order_value:
        return False
    if rules.max_order_value is not None and order_value > rules.max_order_value:
        return False

    return True


class AssignmentEngine:
    """Assigns units to variants and records exposures and conversions.

    Advisory: every public method degrades to "no assignment" (or the default
    display configuration) instead of raising, so storefront requests are
    never broken by experimentation.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        cache: ActiveExperimentCache,
        ingestor: BatchIngestor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._repo = ExperimentRepository(db_session)
        self._cache = cache
        self._ingestor = ingestor
        self._settings = settings or get_settings()

    async def get_variant(
        self,
        experiment_name: str,
        user_id: str | None = None,
        session_id: str | None = None,
        attributes: TargetingAttributes | None = None,
    ) -> VariantAssignment | None:
        """Return the unit's variant, assigning one on first contact.

        Exactly one of ``user_id`` / ``session_id`` identifies the unit.
        Returns None when the experiment is not active, the unit is outside
        the audience, or anything goes wrong.
        """
        if (user_id is None) == (session_id is None):
            return None

        experiment = self._cache.get(experiment_name)
        if experiment is None:
            return None

        try:
            return await self._assign(
                experiment, user_id, session_id, attributes or TargetingAttributes()
            )
        except Exception:
            logger.warning(
                "Variant assignment failed for experiment %s",
                experiment_name,
                exc_info=True,
            )
            return None

    async def get_display_config(
        self,
        product_id: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        attributes: TargetingAttributes | None = None,
    ) -> DisplayConfig:
        """Display strategy for a product page.

        Falls back to the default strategy when the unit is not in the
        display experiment. Assigned units also produce a display event.
        """
        assignment = await self.get_variant(
            self._settings.display_experiment_name, user_id, session_id, attributes
        )
        if assignment is None:
            return DisplayConfig()

        try:
            config = DisplayConfig.model_validate(
                {**assignment.config, "variant": assignment.variant}
            )
        except PydanticValidationError:
            logger.warning(
                "Variant %s has an invalid display config, using defaults",
                assignment.variant,
                exc_info=True,
            )
            return DisplayConfig()

        await self._emit(
            EventCreate(
                event_kind=self._settings.display_event_kind,
                user_id=user_id,
                session_id=session_id,
                product_id=product_id,
                seller_id=attributes.seller_id if attributes else None,
                metadata=EventMetadata.model_validate(
                    {
                        "display_type": config.strategy,
                        "items_shown": config.max_items,
                        "experiment_name": assignment.experiment_name,
                        "experiment_variant": assignment.variant,
                    }
                ),
            )
        )
        return config

    async def track_conversion(
        self,
        experiment_name: str,
        user_id: str | None = None,
        session_id: str | None = None,
        conversion_data: dict[str, Any] | None = None,
    ) -> bool:
        """Record a conversion for a unit that already has an assignment.

        Returns True when a conversion event was submitted. Units without an
        assignment are ignored.
        """
        if (user_id is None) == (session_id is None):
            return False

        try:
            experiment = await self._repo.get_by_name(experiment_name)
            if experiment is None:
                return False
            assignment = await self._repo.get_assignment(
                experiment.id, user_id, session_id
            )
            if assignment is None:
                return False

            data = dict(conversion_data or {})
            ids = {
                key: str(data.pop(key))
                for key in _EVENT_ID_FIELDS
                if data.get(key) is not None
            }
            event = EventCreate(
                event_kind=self._settings.conversion_event_kind,
                user_id=user_id,
                session_id=session_id,
                metadata=EventMetadata.model_validate(
                    {
                        **data,
                        "experiment_name": experiment_name,
                        "experiment_variant": assignment.variant,
                    }
                ),
                **ids,
            )
        except Exception:
            logger.warning(
                "Conversion tracking failed for experiment %s",
                experiment_name,
                exc_info=True,
            )
            return False

        return await self._emit(event)

    async def _assign(
        self,
        experiment: ActiveExperiment,
        user_id: str | None,
        session_id: str | None,
        attributes: TargetingAttributes,
    ) -> VariantAssignment | None:
        existing = await self._repo.get_assignment(experiment.id, user_id, session_id)
        if existing is not None:
            return self._to_assignment(experiment, existing.variant)

        if not matches_targeting(experiment.targeting_rules, attributes):
            return None

        unit_key = user_id if user_id is not None else (session_id or "")
        variant = select_variant(experiment.variants, bucket_for(unit_key))

        assignment = ExperimentAssignment(
            experiment_id=experiment.id,
            user_id=user_id,
            session_id=session_id,
            variant=variant.name,
            request_metadata=attributes.request_metadata() or None,
            assigned_at=datetime.now(UTC),
        )
        if await self._repo.insert_assignment(assignment):
            logger.debug(
                "Assigned unit to variant",
                extra={"experiment_name": experiment.name, "variant": variant.name},
            )
            return self._to_assignment(experiment, variant.name)

        # A concurrent request stored this unit's assignment first
        winner = await self._repo.get_assignment(experiment.id, user_id, session_id)
        if winner is None:
            return None
        return self._to_assignment(experiment, winner.variant)

    @staticmethod
    def _to_assignment(
        experiment: ActiveExperiment, variant_name: str
    ) -> VariantAssignment:
        return VariantAssignment(
            experiment_name=experiment.name,
            variant=variant_name,
            config=experiment.variant_config(variant_name),
        )

    async def _emit(self, event: EventCreate) -> bool:
        if self._ingestor is None:
            return False
        try:
            await self._ingestor.submit(event)
        except Exception:
            logger.warning(
                "Failed to submit %s event", event.event_kind, exc_info=True
            )
            return False
        return True
