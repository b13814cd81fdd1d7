"""End-to-end experiment flow against a real database.

These tests require a running PostgreSQL database.
"""

from datetime import UTC, datetime, timedelta

import pytest

from market_experiments.core.config import Settings
from market_experiments.core.database import SessionFactory, session_scope
from market_experiments.models.db.experiment import ExperimentStatus
from market_experiments.models.domain.event import EventCreate, EventFilter
from market_experiments.models.domain.experiment import (
    ExperimentCreate,
    ExperimentRead,
    VariantDefinition,
)
from market_experiments.repositories.experiment_repo import ExperimentRepository
from market_experiments.services.assignment_engine import AssignmentEngine
from market_experiments.services.batch_ingestor import BatchIngestor
from market_experiments.services.event_store import EventStore
from market_experiments.services.experiment_registry import (
    ActiveExperimentCache,
    ExperimentRegistry,
)
from market_experiments.services.results_analyzer import ResultsAnalyzer


async def start_experiment(
    session_factory: SessionFactory,
    cache: ActiveExperimentCache,
    min_sample_size: int = 1000,
) -> ExperimentRead:
    async with session_scope(session_factory) as session:
        registry = ExperimentRegistry(session, cache)
        created = await registry.create(
            ExperimentCreate(
                name="checkout_flow",
                variants=[
                    VariantDefinition(name="A", traffic_percentage=60, config={"layout": "grid"}),
                    VariantDefinition(name="B", traffic_percentage=40, config={"layout": "list"}),
                ],
                min_sample_size=min_sample_size,
            )
        )
        return await registry.start(created.id)


@pytest.mark.integration
class TestAssignment:
    """Sticky assignment backed by the assignments table."""

    async def test_assignment_is_sticky_and_persisted(
        self,
        session_factory: SessionFactory,
        experiment_cache: ActiveExperimentCache,
        ingestor: BatchIngestor,
        settings: Settings,
    ) -> None:
        experiment = await start_experiment(session_factory, experiment_cache)

        async with session_scope(session_factory) as session:
            engine = AssignmentEngine(session, experiment_cache, ingestor, settings)
            first = await engine.get_variant("checkout_flow", user_id="user-42")
            other = await engine.get_variant("checkout_flow", user_id="user-123")

        async with session_scope(session_factory) as session:
            engine = AssignmentEngine(session, experiment_cache, ingestor, settings)
            again = await engine.get_variant("checkout_flow", user_id="user-42")
            counts = await ExperimentRepository(session).count_assignments_by_variant(
                experiment.id
            )

        assert first is not None and again is not None and other is not None
        assert first.variant == "A"
        assert first.config == {"layout": "grid"}
        assert other.variant == "B"
        assert again.variant == first.variant
        assert counts == {"A": 1, "B": 1}

    async def test_snapshot_refresh_sees_committed_experiments(
        self,
        session_factory: SessionFactory,
        experiment_cache: ActiveExperimentCache,
    ) -> None:
        await start_experiment(session_factory, experiment_cache)

        fresh = ActiveExperimentCache(session_factory)
        assert await fresh.refresh() == 1
        assert fresh.get("checkout_flow") is not None

    async def test_paused_experiment_assigns_nothing(
        self,
        session_factory: SessionFactory,
        experiment_cache: ActiveExperimentCache,
        settings: Settings,
    ) -> None:
        experiment = await start_experiment(session_factory, experiment_cache)

        async with session_scope(session_factory) as session:
            await ExperimentRegistry(session, experiment_cache).pause(experiment.id)

        async with session_scope(session_factory) as session:
            engine = AssignmentEngine(session, experiment_cache, settings=settings)
            assert await engine.get_variant("checkout_flow", user_id="user-42") is None


@pytest.mark.integration
class TestResults:
    """Conversions flow through the ingestor into experiment results."""

    async def test_results_and_completion(
        self,
        session_factory: SessionFactory,
        experiment_cache: ActiveExperimentCache,
        event_store: EventStore,
        ingestor: BatchIngestor,
        settings: Settings,
    ) -> None:
        experiment = await start_experiment(session_factory, experiment_cache)
        users = [f"user-{i}" for i in range(40)]

        async with session_scope(session_factory) as session:
            engine = AssignmentEngine(session, experiment_cache, ingestor, settings)
            for user in users:
                assert await engine.get_variant("checkout_flow", user_id=user) is not None

            for user in users[:10]:
                assert await engine.track_conversion(
                    "checkout_flow", user_id=user, conversion_data={"addon_id": "warranty"}
                )
            # Repeat purchases count once per unit
            assert await engine.track_conversion("checkout_flow", user_id=users[0])
            assert not await engine.track_conversion("checkout_flow", user_id="stranger")

        assert await ingestor.flush() == 11

        async with session_scope(session_factory) as session:
            analyzer = ResultsAnalyzer(session, event_store, experiment_cache, settings)
            results = await analyzer.compute_results(experiment.id)

        assert results.total_sample_size == 40
        assert sum(r.conversions for r in results.variant_results) == 10
        assert [r.variant for r in results.variant_results] == ["A", "B"]
        assert results.should_complete is False

        async with session_scope(session_factory) as session:
            analyzer = ResultsAnalyzer(session, event_store, experiment_cache, settings)
            completed = await analyzer.complete_experiment(experiment.id)

        assert completed.status == ExperimentStatus.COMPLETED
        assert completed.results is not None
        assert completed.ended_at is not None
        assert experiment_cache.get("checkout_flow") is None

    async def test_auto_complete_due(
        self,
        session_factory: SessionFactory,
        experiment_cache: ActiveExperimentCache,
        event_store: EventStore,
        ingestor: BatchIngestor,
        settings: Settings,
    ) -> None:
        await start_experiment(session_factory, experiment_cache, min_sample_size=20)
        async with session_scope(session_factory) as session:
            registry = ExperimentRegistry(session, experiment_cache)
            overdue = await registry.create(
                ExperimentCreate(
                    name="overdue_layout",
                    variants=[
                        VariantDefinition(name="control", traffic_percentage=50),
                        VariantDefinition(name="grid", traffic_percentage=50),
                    ],
                    end_date=datetime.now(UTC) - timedelta(days=1),
                )
            )
            await registry.start(overdue.id)

        async with session_scope(session_factory) as session:
            engine = AssignmentEngine(session, experiment_cache, ingestor, settings)
            for i in range(30):
                await engine.get_variant("checkout_flow", user_id=f"user-{i}")

        async with session_scope(session_factory) as session:
            analyzer = ResultsAnalyzer(session, event_store, experiment_cache, settings)
            # No conversions anywhere, so only the passed end date stops an experiment
            assert await analyzer.auto_complete_due() == ["overdue_layout"]

        assert experiment_cache.names() == ["checkout_flow"]


@pytest.mark.integration
class TestEventStore:
    """Event persistence and maintenance."""

    async def test_append_query_and_retention(self, event_store: EventStore) -> None:
        await event_store.append(
            EventCreate(event_kind="addon_view", user_id="user-1", product_id="p1")
        )
        await event_store.append(
            EventCreate(event_kind="addon_click", user_id="user-1", addon_id="warranty")
        )

        views = await event_store.query(EventFilter(event_kind="addon_view"))
        assert [e.product_id for e in views] == ["p1"]
        assert await event_store.count(EventFilter(user_id="user-1")) == 2

        deleted = await event_store.delete_older_than(
            datetime.now(UTC) + timedelta(minutes=1)
        )
        assert deleted == 2
        assert await event_store.count(EventFilter()) == 0
