"""Maintenance worker: event retention cleanup and experiment auto-completion."""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from redis import Redis
from rq import Queue

from market_experiments.core.config import Settings, get_settings
from market_experiments.core.database import close_database, init_database, session_scope
from market_experiments.services.event_store import EventStore
from market_experiments.services.results_analyzer import ResultsAnalyzer

logger = logging.getLogger(__name__)

QUEUE_NAME = "maintenance"


def get_redis_connection(settings: Settings | None = None) -> Redis:  # type: ignore[type-arg]
    """Get Redis connection."""
    settings = settings or get_settings()
    return Redis.from_url(str(settings.redis_url))


def get_maintenance_queue(
    settings: Settings | None = None,
    queue_name: str = QUEUE_NAME,
) -> Queue:
    """Get the maintenance job queue."""
    conn = get_redis_connection(settings)
    return Queue(queue_name, connection=conn)


async def process_retention_job(days_to_keep: int) -> dict[str, Any]:
    """Delete interaction events older than ``days_to_keep`` days.

    Each job gets its own engine: RQ runs every job in a fresh event loop
    and pooled asyncpg connections cannot cross loops.
    """
    settings = get_settings()
    cutoff = datetime.now(UTC) - timedelta(days=days_to_keep)
    logger.info(
        "Starting retention cleanup",
        extra={"days_to_keep": days_to_keep, "cutoff": cutoff.isoformat()},
    )

    session_factory = init_database(settings)
    try:
        store = EventStore(
            session_factory,
            settings.event_kinds_set,
            query_timeout=settings.report_query_timeout_seconds,
        )
        deleted = await store.delete_older_than(cutoff)
    finally:
        await close_database()

    return {
        "days_to_keep": days_to_keep,
        "cutoff": cutoff.isoformat(),
        "deleted": deleted,
        "status": "completed",
    }


async def process_auto_complete_job() -> dict[str, Any]:
    """Complete every active experiment whose stopping rule is met."""
    settings = get_settings()
    session_factory = init_database(settings)
    try:
        store = EventStore(
            session_factory,
            settings.event_kinds_set,
            query_timeout=settings.report_query_timeout_seconds,
        )
        async with session_scope(session_factory) as db_session:
            analyzer = ResultsAnalyzer(db_session, store, settings=settings)
            completed = await analyzer.auto_complete_due()
    finally:
        await close_database()

    return {"completed": completed, "status": "completed"}


def queue_retention_cleanup(
    days_to_keep: int | None = None,
    settings: Settings | None = None,
    queue_name: str = QUEUE_NAME,
) -> str:
    """Queue a retention cleanup job. Returns the RQ job ID."""
    settings = settings or get_settings()
    days = days_to_keep if days_to_keep is not None else settings.event_retention_days
    queue = get_maintenance_queue(settings, queue_name)

    rq_job = queue.enqueue(
        "market_experiments.workers.maintenance_worker.process_retention_job_sync",
        days,
        job_timeout="30m",  # Large purges on a cold table
        result_ttl=86400,
        failure_ttl=86400,
    )
    logger.info(
        "Queued retention cleanup", extra={"job_id": rq_job.id, "days_to_keep": days}
    )
    return str(rq_job.id)


def queue_auto_complete(
    settings: Settings | None = None,
    queue_name: str = QUEUE_NAME,
) -> str:
    """Queue an auto-completion sweep. Returns the RQ job ID."""
    queue = get_maintenance_queue(settings, queue_name)
    rq_job = queue.enqueue(
        "market_experiments.workers.maintenance_worker.process_auto_complete_job_sync",
        job_timeout="10m",
        result_ttl=86400,
        failure_ttl=86400,
    )
    logger.info("Queued auto-complete sweep", extra={"job_id": rq_job.id})
    return str(rq_job.id)


def process_retention_job_sync(days_to_keep: int) -> dict[str, Any]:
    """Synchronous entry point for RQ, which does not run coroutines."""
    return asyncio.run(process_retention_job(days_to_keep))


def process_auto_complete_job_sync() -> dict[str, Any]:
    """Synchronous entry point for RQ, which does not run coroutines."""
    return asyncio.run(process_auto_complete_job())
