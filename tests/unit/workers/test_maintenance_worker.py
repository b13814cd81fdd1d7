"""Tests for the maintenance worker."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from market_experiments.core.config import Settings
from market_experiments.workers.maintenance_worker import (
    QUEUE_NAME,
    process_auto_complete_job,
    process_retention_job,
    queue_auto_complete,
    queue_retention_cleanup,
)

MODULE = "market_experiments.workers.maintenance_worker"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, event_retention_days=30)


class TestQueueJobs:
    """Tests for enqueueing."""

    def test_queue_retention_uses_configured_days(self, settings: Settings) -> None:
        with patch(f"{MODULE}.Redis"), patch(f"{MODULE}.Queue") as mock_queue:
            mock_queue.return_value.enqueue.return_value = MagicMock(id="job-1")

            job_id = queue_retention_cleanup(settings=settings)

        assert job_id == "job-1"
        assert mock_queue.call_args.args[0] == QUEUE_NAME
        args = mock_queue.return_value.enqueue.call_args.args
        assert args == (f"{MODULE}.process_retention_job_sync", 30)

    def test_queue_retention_explicit_days(self, settings: Settings) -> None:
        with patch(f"{MODULE}.Redis"), patch(f"{MODULE}.Queue") as mock_queue:
            mock_queue.return_value.enqueue.return_value = MagicMock(id="job-2")

            queue_retention_cleanup(7, settings=settings)

        assert mock_queue.return_value.enqueue.call_args.args[1] == 7

    def test_queue_auto_complete(self, settings: Settings) -> None:
        with patch(f"{MODULE}.Redis"), patch(f"{MODULE}.Queue") as mock_queue:
            mock_queue.return_value.enqueue.return_value = MagicMock(id="job-3")

            job_id = queue_auto_complete(settings=settings)

        assert job_id == "job-3"
        call = mock_queue.return_value.enqueue.call_args
        assert call.args == (f"{MODULE}.process_auto_complete_job_sync",)
        assert call.kwargs["job_timeout"] == "10m"


class TestProcessJobs:
    """Tests for job bodies."""

    @pytest.mark.asyncio
    async def test_retention_deletes_before_cutoff(self) -> None:
        store = MagicMock()
        store.delete_older_than = AsyncMock(return_value=12)

        with (
            patch(f"{MODULE}.init_database") as mock_init,
            patch(f"{MODULE}.close_database", new_callable=AsyncMock) as mock_close,
            patch(f"{MODULE}.EventStore", return_value=store),
        ):
            result = await process_retention_job(30)

        assert result["deleted"] == 12
        assert result["status"] == "completed"
        cutoff = store.delete_older_than.call_args.args[0]
        expected = datetime.now(UTC) - timedelta(days=30)
        assert abs((cutoff - expected).total_seconds()) < 5
        mock_init.assert_called_once()
        mock_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retention_closes_database_on_failure(self) -> None:
        store = MagicMock()
        store.delete_older_than = AsyncMock(side_effect=RuntimeError("boom"))

        with (
            patch(f"{MODULE}.init_database"),
            patch(f"{MODULE}.close_database", new_callable=AsyncMock) as mock_close,
            patch(f"{MODULE}.EventStore", return_value=store),
            pytest.raises(RuntimeError),
        ):
            await process_retention_job(30)

        mock_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_auto_complete_job(self) -> None:
        analyzer = MagicMock()
        analyzer.auto_complete_due = AsyncMock(return_value=["checkout_flow"])

        @asynccontextmanager
        async def fake_scope(factory: object) -> AsyncIterator[MagicMock]:  # noqa: ARG001
            yield MagicMock()

        with (
            patch(f"{MODULE}.init_database"),
            patch(f"{MODULE}.close_database", new_callable=AsyncMock),
            patch(f"{MODULE}.EventStore"),
            patch(f"{MODULE}.session_scope", fake_scope),
            patch(f"{MODULE}.ResultsAnalyzer", return_value=analyzer),
        ):
            result = await process_auto_complete_job()

        assert result == {"completed": ["checkout_flow"], "status": "completed"}
