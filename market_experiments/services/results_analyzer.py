"""Conversion statistics, winner selection and experiment completion."""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.core.config import Settings, get_settings
from market_experiments.core.exceptions import ConflictError, NotFoundError
from market_experiments.models.db.experiment import Experiment, ExperimentStatus
from market_experiments.models.domain.experiment import (
    ConfidenceInterval,
    ExperimentRead,
    ExperimentResults,
    ResultSet,
    VariantResult,
)
from market_experiments.repositories.experiment_repo import ExperimentRepository
from market_experiments.services.event_store import EventStore
from market_experiments.services.experiment_registry import (
    ActiveExperimentCache,
    ExperimentRegistry,
)

logger = logging.getLogger(__name__)

# Two-sided z-scores for the supported confidence levels
Z_SCORES = {0.95: 1.96, 0.99: 2.58}
DEFAULT_Z_SCORE = 1.96


def confidence_interval(
    conversions: int, sample_size: int, z_score: float
) -> ConfidenceInterval | None:
    """Normal-approximation interval around ``conversions / sample_size``.

    Bounds are clamped to [0, 1]. Returns None for an empty sample.
    """
    if sample_size <= 0:
        return None
    rate = conversions / sample_size
    margin = z_score * math.sqrt(rate * (1 - rate) / sample_size)
    return ConfidenceInterval(
        rate=rate,
        lower=max(0.0, rate - margin),
        upper=min(1.0, rate + margin),
        margin=margin,
    )


def determine_winner(results: Sequence[VariantResult]) -> str | None:
    """Variant with the highest conversion rate; ties go to the earlier variant."""
    if not results:
        return None
    best = results[0]
    for result in results[1:]:
        if result.conversion_rate > best.conversion_rate:
            best = result
    return best.variant


def check_significance(results: Sequence[VariantResult]) -> bool:
    """Whether the best variant's interval sits entirely above the runner-up's.

    This is a non-overlapping-interval heuristic, not a two-proportion
    z-test: it is conservative and ignores every variant past the top two.
    """
    if len(results) < 2:
        return False
    ranked = sorted(results, key=lambda r: r.conversion_rate, reverse=True)
    best, second = ranked[0].confidence, ranked[1].confidence
    if best is None or second is None:
        return False
    return best.lower > second.upper


def should_auto_complete(
    total_sample_size: int,
    min_sample_size: int,
    significant: bool,
    end_date: datetime | None,
    now: datetime | None = None,
) -> bool:
    """Enough data and a significant result, or the planned end date has passed."""
    now = now or datetime.now(UTC)
    if end_date is not None and end_date < now:
        return True
    return total_sample_size >= min_sample_size and significant


class ResultsAnalyzer:
    """Computes per-variant results and completes experiments."""

    def __init__(
        self,
        db_session: AsyncSession,
        event_store: EventStore,
        cache: ActiveExperimentCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = db_session
        self._repo = ExperimentRepository(db_session)
        self._registry = ExperimentRegistry(db_session, cache)
        self._event_store = event_store
        self._settings = settings or get_settings()

    async def compute_results(self, experiment_id: uuid.UUID) -> ExperimentResults:
        """Current results for an experiment in any status."""
        experiment = await self._get_or_404(experiment_id)
        return await self._analyze(experiment)

    async def complete_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Compute final results and freeze the experiment in one write."""
        experiment = await self._get_or_404(experiment_id)
        if experiment.status not in (ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED):
            raise ConflictError(
                f"Cannot complete an experiment in status '{experiment.status}'"
            )

        analysis = await self._analyze(experiment)
        result_set = ResultSet(
            winner=analysis.winner,
            statistical_significance=analysis.statistical_significance,
            variant_results=analysis.variant_results,
            completed_at=datetime.now(UTC),
        )
        return await self._registry.complete(experiment.id, result_set)

    async def auto_complete_due(self) -> list[str]:
        """Complete every active experiment that meets its stopping rule.

        Returns the names of completed experiments. Each experiment runs in
        its own savepoint, so a failure on one is logged, rolled back and
        does not stop the sweep or undo earlier completions.
        """
        completed: list[str] = []
        for experiment in await self._repo.list_by_status(ExperimentStatus.ACTIVE):
            # Read before the savepoint; a rollback expires the instance
            experiment_id, name = experiment.id, experiment.name
            try:
                async with self._session.begin_nested():
                    analysis = await self._analyze(experiment)
                    if not analysis.should_complete:
                        continue
                    await self.complete_experiment(experiment_id)
            except Exception:
                logger.exception("Auto-completion failed for experiment %s", name)
                continue
            completed.append(name)

        if completed:
            logger.info("Auto-completed experiments", extra={"experiments": completed})
        return completed

    async def _analyze(self, experiment: Experiment) -> ExperimentResults:
        z_score = Z_SCORES.get(experiment.confidence_level, DEFAULT_Z_SCORE)
        assignments = await self._repo.count_assignments_by_variant(experiment.id)
        conversions = await self._event_store.count_converted_units_by_variant(
            experiment.name,
            self._settings.conversion_event_kind,
            from_timestamp=experiment.started_at or experiment.created_at,
            to_timestamp=experiment.ended_at,
        )

        variant_results: list[VariantResult] = []
        for variant in experiment.variants:
            name = variant["name"]
            sample_size = assignments.get(name, 0)
            # Only assigned units can convert
            converted = min(conversions.get(name, 0), sample_size)
            variant_results.append(
                VariantResult(
                    variant=name,
                    sample_size=sample_size,
                    conversions=converted,
                    conversion_rate=converted / sample_size if sample_size else 0.0,
                    confidence=confidence_interval(converted, sample_size, z_score),
                )
            )

        significant = check_significance(variant_results)
        total = sum(r.sample_size for r in variant_results)
        running = experiment.status in (ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED)

        return ExperimentResults(
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            status=experiment.status,
            confidence_level=experiment.confidence_level,
            variant_results=variant_results,
            winner=determine_winner(variant_results),
            statistical_significance=significant,
            total_sample_size=total,
            should_complete=running
            and should_auto_complete(
                total, experiment.min_sample_size, significant, experiment.end_date
            ),
        )

    async def _get_or_404(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self._repo.get_by_id(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))
        return experiment
