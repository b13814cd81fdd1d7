"""Experiment definitions, lifecycle transitions and the active-experiment snapshot."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.core.database import SessionFactory, session_scope
from market_experiments.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from market_experiments.core.pagination import (
    CursorPage,
    create_cursor_page,
    decode_cursor,
)
from market_experiments.models.db.experiment import (
    Experiment,
    ExperimentStatus,
)
from market_experiments.models.domain.experiment import (
    ExperimentCreate,
    ExperimentDetail,
    ExperimentMetric,
    ExperimentRead,
    ExperimentType,
    ExperimentUpdate,
    ResultSet,
    TargetingRules,
    VariantDefinition,
)
from market_experiments.repositories.experiment_repo import ExperimentRepository

logger = logging.getLogger(__name__)

SUPPORTED_CONFIDENCE_LEVELS = (0.95, 0.99)
TRAFFIC_TOLERANCE = 0.01

# Patchable columns that may be changed but never cleared
NON_NULLABLE_UPDATE_FIELDS = (
    "variants",
    "primary_metric",
    "secondary_metrics",
    "min_sample_size",
    "confidence_level",
)


# --- Active experiment snapshot ---


@dataclass(frozen=True)
class VariantSpec:
    """Immutable view of one variant, as used for bucketing."""

    name: str
    traffic_percentage: float
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActiveExperiment:
    """Immutable view of an active experiment."""

    id: uuid.UUID
    name: str
    variants: tuple[VariantSpec, ...]
    targeting_rules: TargetingRules | None = None

    @classmethod
    def from_model(cls, experiment: Experiment) -> ActiveExperiment:
        variants = tuple(
            VariantSpec(
                name=v["name"],
                traffic_percentage=float(v.get("traffic_percentage", 0)),
                config=MappingProxyType(dict(v.get("config") or {})),
            )
            for v in experiment.variants
        )
        rules = (
            TargetingRules.model_validate(experiment.targeting_rules)
            if experiment.targeting_rules
            else None
        )
        return cls(
            id=experiment.id,
            name=experiment.name,
            variants=variants,
            targeting_rules=rules,
        )

    def variant_config(self, variant_name: str) -> dict[str, Any]:
        for variant in self.variants:
            if variant.name == variant_name:
                return dict(variant.config)
        return {}


class ActiveExperimentCache:
    """In-memory snapshot of active experiments keyed by name.

    Readers never lock: every change builds a new mapping and replaces the
    reference in one assignment, so a reader sees either the old or the new
    snapshot in full.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        refresh_interval: float = 300.0,
    ) -> None:
        self._session_factory = session_factory
        self._refresh_interval = refresh_interval
        self._snapshot: Mapping[str, ActiveExperiment] = MappingProxyType({})
        self._task: asyncio.Task[None] | None = None
        self.last_refreshed_at: datetime | None = None

    def get(self, name: str) -> ActiveExperiment | None:
        return self._snapshot.get(name)

    def names(self) -> list[str]:
        return list(self._snapshot)

    def __len__(self) -> int:
        return len(self._snapshot)

    def replace(self, experiments: Iterable[ActiveExperiment]) -> None:
        """Swap in a new snapshot."""
        self._snapshot = MappingProxyType({e.name: e for e in experiments})

    def upsert(self, experiment: Experiment) -> None:
        """Reflect one experiment's current status without waiting for a refresh."""
        snapshot = dict(self._snapshot)
        if experiment.status == ExperimentStatus.ACTIVE:
            snapshot[experiment.name] = ActiveExperiment.from_model(experiment)
        else:
            snapshot.pop(experiment.name, None)
        self._snapshot = MappingProxyType(snapshot)

    def evict(self, name: str) -> None:
        if name in self._snapshot:
            snapshot = dict(self._snapshot)
            snapshot.pop(name, None)
            self._snapshot = MappingProxyType(snapshot)

    async def refresh(self) -> int:
        """Re-read all active experiments and swap the snapshot. Returns its size."""
        async with session_scope(self._session_factory) as session:
            experiments = await ExperimentRepository(session).list_by_status(
                ExperimentStatus.ACTIVE
            )
            fresh = [ActiveExperiment.from_model(e) for e in experiments]

        self.replace(fresh)
        self.last_refreshed_at = datetime.now(UTC)
        logger.info(
            "Refreshed active experiment snapshot", extra={"active": len(fresh)}
        )
        return len(fresh)

    def start(self) -> None:
        """Start the periodic refresh loop on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="experiment-refresh-loop")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                await self.refresh()
            except Exception:
                # Keep serving the previous snapshot
                logger.warning("Experiment snapshot refresh failed", exc_info=True)


# --- Registry ---


def display_strategy_template(name: str) -> ExperimentCreate:
    """Ready-to-customise four-arm experiment for the product display strategy."""

    def variant(
        variant_name: str, description: str, strategy: str, max_items: int, prioritize: bool
    ) -> VariantDefinition:
        return VariantDefinition(
            name=variant_name,
            description=description,
            traffic_percentage=25,
            config={
                "strategy": strategy,
                "max_items": max_items,
                "prioritize_revenue": prioritize,
                "show_related_products": True,
            },
        )

    return ExperimentCreate(
        name=name,
        description="Optimize the add-on display algorithm for better conversions",
        experiment_type=ExperimentType.DISPLAYADDONS_ALGORITHM,
        variants=[
            variant("control", "Default hybrid algorithm", "hybrid", 4, True),
            variant(
                "revenue_first", "Prioritize highest-priced add-ons", "revenue_first", 4, True
            ),
            variant(
                "popularity_first",
                "Show most popular add-ons first",
                "popularity_first",
                4,
                False,
            ),
            variant("more_addons", "Show six add-ons instead of four", "hybrid", 6, True),
        ],
        targeting_rules=TargetingRules(user_segments=["all"]),
        primary_metric=ExperimentMetric.CONVERSION_RATE.value,
        secondary_metrics=[
            ExperimentMetric.CLICK_THROUGH_RATE.value,
            ExperimentMetric.REVENUE_PER_USER.value,
        ],
        min_sample_size=1000,
        confidence_level=0.95,
    )


def validate_definition(
    variants: list[VariantDefinition],
    primary_metric: str,
    confidence_level: float,
) -> None:
    """Check a full experiment definition.

    Raises:
        ValidationError: Listing every offending field.
    """
    errors: list[dict[str, Any]] = []

    if len(variants) < 2:
        errors.append(
            {"loc": ["variants"], "msg": "Experiment must have at least 2 variants"}
        )

    seen: set[str] = set()
    for index, variant in enumerate(variants):
        if variant.name in seen:
            errors.append(
                {
                    "loc": ["variants", index, "name"],
                    "msg": f"Duplicate variant name '{variant.name}'",
                }
            )
        seen.add(variant.name)

    total = sum(v.traffic_percentage for v in variants)
    if variants and abs(total - 100) > TRAFFIC_TOLERANCE:
        errors.append(
            {
                "loc": ["variants", "traffic_percentage"],
                "msg": f"Variant traffic percentages must sum to 100 (got {total:g})",
            }
        )

    if primary_metric not in {m.value for m in ExperimentMetric}:
        errors.append(
            {
                "loc": ["primary_metric"],
                "msg": f"Unknown metric '{primary_metric}'",
            }
        )

    if confidence_level not in SUPPORTED_CONFIDENCE_LEVELS:
        errors.append(
            {
                "loc": ["confidence_level"],
                "msg": "Confidence level must be 0.95 or 0.99",
            }
        )

    if errors:
        raise ValidationError("Invalid experiment definition", errors=errors)


class ExperimentRegistry:
    """Owns experiment definitions and their lifecycle.

    draft -> active <-> paused -> completed. Active experiments cannot be
    edited or deleted; completed ones are frozen.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        cache: ActiveExperimentCache | None = None,
    ) -> None:
        self._repo = ExperimentRepository(db_session)
        self._cache = cache

    async def create(self, data: ExperimentCreate) -> ExperimentRead:
        """Validate and persist a new experiment as a draft."""
        validate_definition(data.variants, data.primary_metric, data.confidence_level)

        if await self._repo.get_by_name(data.name) is not None:
            raise ConflictError(f"Experiment '{data.name}' already exists")

        experiment = Experiment(
            name=data.name,
            description=data.description,
            experiment_type=data.experiment_type,
            status=ExperimentStatus.DRAFT,
            variants=[v.model_dump(mode="json") for v in data.variants],
            targeting_rules=(
                data.targeting_rules.model_dump(mode="json")
                if data.targeting_rules
                else None
            ),
            primary_metric=data.primary_metric,
            secondary_metrics=list(data.secondary_metrics),
            min_sample_size=data.min_sample_size,
            confidence_level=data.confidence_level,
            end_date=data.end_date,
        )
        try:
            created = await self._repo.create(experiment)
        except IntegrityError as e:
            raise ConflictError(f"Experiment '{data.name}' already exists") from e

        logger.info(
            "Created experiment",
            extra={"experiment_id": str(created.id), "experiment_name": created.name},
        )
        return ExperimentRead.model_validate(created)

    async def get(self, experiment_id: uuid.UUID) -> ExperimentRead:
        return ExperimentRead.model_validate(await self._get_or_404(experiment_id))

    async def get_detail(self, experiment_id: uuid.UUID) -> ExperimentDetail:
        """Experiment plus current assignment counts per variant."""
        experiment = await self._get_or_404(experiment_id)
        counts = await self._repo.count_assignments_by_variant(experiment_id)
        return ExperimentDetail(
            experiment=ExperimentRead.model_validate(experiment),
            assignment_counts={
                v["name"]: counts.get(v["name"], 0) for v in experiment.variants
            },
        )

    async def list_page(
        self,
        cursor: str | None = None,
        limit: int = 20,
        status: ExperimentStatus | None = None,
        experiment_type: str | None = None,
    ) -> CursorPage[ExperimentRead]:
        """List experiments newest first."""
        after = decode_cursor(cursor).as_key() if cursor else None
        rows = await self._repo.list_page(
            status=status,
            experiment_type=experiment_type,
            after=after,
            limit=limit,
        )
        return create_cursor_page(rows, limit, ExperimentRead.model_validate)

    async def update(
        self, experiment_id: uuid.UUID, data: ExperimentUpdate
    ) -> ExperimentRead:
        """Patch a draft or paused experiment."""
        experiment = await self._get_or_404(experiment_id)
        if experiment.status == ExperimentStatus.ACTIVE:
            raise ConflictError("Cannot modify an active experiment; pause it first")
        if experiment.status == ExperimentStatus.COMPLETED:
            raise ConflictError("Cannot modify a completed experiment")

        changes = data.model_dump(exclude_unset=True)
        cleared = [
            {"loc": [attr], "msg": "Field cannot be null"}
            for attr in NON_NULLABLE_UPDATE_FIELDS
            if attr in changes and changes[attr] is None
        ]
        if cleared:
            raise ValidationError("Invalid experiment update", errors=cleared)

        variants = (
            data.variants
            if data.variants is not None
            else [VariantDefinition.model_validate(v) for v in experiment.variants]
        )
        validate_definition(
            variants,
            changes.get("primary_metric") or experiment.primary_metric,
            changes.get("confidence_level") or experiment.confidence_level,
        )

        if data.variants is not None:
            experiment.variants = [v.model_dump(mode="json") for v in data.variants]
        if "targeting_rules" in changes:
            experiment.targeting_rules = (
                data.targeting_rules.model_dump(mode="json")
                if data.targeting_rules
                else None
            )
        for attr in (
            "description",
            "experiment_type",
            "primary_metric",
            "secondary_metrics",
            "min_sample_size",
            "confidence_level",
            "end_date",
        ):
            if attr in changes:
                setattr(experiment, attr, getattr(data, attr))

        await self._repo.session.flush()
        await self._repo.session.refresh(experiment)
        return ExperimentRead.model_validate(experiment)

    async def start(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Move a draft or paused experiment to active."""
        experiment = await self._get_or_404(experiment_id)
        if experiment.status == ExperimentStatus.ACTIVE:
            raise ConflictError("Experiment is already active")
        if experiment.status == ExperimentStatus.COMPLETED:
            raise ConflictError("Cannot restart a completed experiment")

        experiment.status = ExperimentStatus.ACTIVE
        if experiment.started_at is None:
            experiment.started_at = datetime.now(UTC)
        await self._repo.session.flush()
        await self._repo.session.refresh(experiment)

        if self._cache is not None:
            self._cache.upsert(experiment)
        logger.info("Started experiment", extra={"experiment_name": experiment.name})
        return ExperimentRead.model_validate(experiment)

    async def pause(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Move an active experiment to paused."""
        experiment = await self._get_or_404(experiment_id)
        if experiment.status != ExperimentStatus.ACTIVE:
            raise ConflictError("Only active experiments can be paused")

        experiment.status = ExperimentStatus.PAUSED
        await self._repo.session.flush()
        await self._repo.session.refresh(experiment)

        if self._cache is not None:
            self._cache.evict(experiment.name)
        logger.info("Paused experiment", extra={"experiment_name": experiment.name})
        return ExperimentRead.model_validate(experiment)

    async def complete(
        self, experiment_id: uuid.UUID, result_set: ResultSet | None
    ) -> ExperimentRead:
        """Freeze an active or paused experiment with its results."""
        if result_set is None:
            raise ValidationError(
                "A result set is required to complete an experiment",
                errors=[{"loc": ["results"], "msg": "Field required"}],
            )

        experiment = await self._get_or_404(experiment_id)
        if experiment.status not in (ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED):
            raise ConflictError(
                f"Cannot complete an experiment in status '{experiment.status}'"
            )

        completed = await self._repo.mark_completed(
            experiment_id,
            results=result_set.model_dump(mode="json"),
            ended_at=result_set.completed_at,
        )
        if completed is None:
            # Lost a race with another transition
            raise ConflictError("Experiment changed state during completion")

        if self._cache is not None:
            self._cache.evict(completed.name)
        logger.info(
            "Completed experiment",
            extra={"experiment_name": completed.name, "winner": result_set.winner},
        )
        return ExperimentRead.model_validate(completed)

    async def delete(self, experiment_id: uuid.UUID) -> None:
        """Delete a non-active experiment and all of its assignments."""
        experiment = await self._get_or_404(experiment_id)
        if experiment.status == ExperimentStatus.ACTIVE:
            raise ConflictError("Cannot delete an active experiment; pause it first")

        name = experiment.name
        removed = await self._repo.delete(experiment)
        if self._cache is not None:
            self._cache.evict(name)
        logger.info(
            "Deleted experiment",
            extra={"experiment_name": name, "assignments_removed": removed},
        )

    async def _get_or_404(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self._repo.get_by_id(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))
        return experiment
