"""Health checks for the database, Redis and the in-process pipelines."""

import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from redis import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.core.config import Settings, get_settings

if TYPE_CHECKING:
    from market_experiments.services.batch_ingestor import BatchIngestor
    from market_experiments.services.experiment_registry import ActiveExperimentCache

logger = logging.getLogger(__name__)

# Backlog, in multiples of the batch size, at which ingestion counts as degraded
INGESTION_BACKLOG_FACTOR = 10

CRITICAL_COMPONENTS = {"database"}


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a single component."""

    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None


@dataclass
class HealthCheckResult:
    """Overall health check result."""

    status: HealthStatus
    components: list[ComponentHealth]
    version: str = "0.1.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "components": {
                c.name: {
                    "status": c.status.value,
                    "message": c.message,
                    "latency_ms": c.latency_ms,
                }
                for c in self.components
            },
        }


class HealthCheckService:
    """Checks the application's dependencies.

    The ingestion and snapshot checks only run when the corresponding
    component is passed in; readiness only depends on storage.
    """

    def __init__(
        self,
        db_session: AsyncSession | None = None,
        settings: Settings | None = None,
        ingestor: "BatchIngestor | None" = None,
        cache: "ActiveExperimentCache | None" = None,
    ) -> None:
        self.db_session = db_session
        self.settings = settings or get_settings()
        self.ingestor = ingestor
        self.cache = cache

    async def check_database(self) -> ComponentHealth:
        if self.db_session is None:
            return ComponentHealth(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message="No database session available",
            )

        start = time.perf_counter()
        try:
            result = await self.db_session.execute(text("SELECT 1"))
            result.scalar()
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            return ComponentHealth(
                name="database", status=HealthStatus.UNHEALTHY, message=str(e)
            )

        return ComponentHealth(
            name="database",
            status=HealthStatus.HEALTHY,
            message="Connected",
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def check_redis(self) -> ComponentHealth:
        """Redis backs the maintenance queue; losing it degrades, not breaks."""
        start = time.perf_counter()
        try:
            redis_client: Redis = Redis.from_url(  # type: ignore[type-arg]
                str(self.settings.redis_url),
                socket_timeout=5,
            )
            redis_client.ping()
            redis_client.close()
        except Exception as e:
            logger.warning("Redis health check failed: %s", e)
            return ComponentHealth(
                name="redis", status=HealthStatus.UNHEALTHY, message=str(e)
            )

        return ComponentHealth(
            name="redis",
            status=HealthStatus.HEALTHY,
            message="Connected",
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    def check_ingestion(self, ingestor: "BatchIngestor") -> ComponentHealth:
        """Degraded when the pending buffer keeps growing past several batches."""
        pending = ingestor.pending_count
        threshold = ingestor.batch_size * INGESTION_BACKLOG_FACTOR
        if pending >= threshold:
            return ComponentHealth(
                name="ingestion",
                status=HealthStatus.DEGRADED,
                message=f"{pending} events pending (flushes failing?)",
            )
        return ComponentHealth(
            name="ingestion",
            status=HealthStatus.HEALTHY,
            message=f"{pending} events pending",
        )

    def check_experiment_cache(self, cache: "ActiveExperimentCache") -> ComponentHealth:
        if cache.last_refreshed_at is None:
            return ComponentHealth(
                name="experiment_cache",
                status=HealthStatus.DEGRADED,
                message="Snapshot never refreshed",
            )
        return ComponentHealth(
            name="experiment_cache",
            status=HealthStatus.HEALTHY,
            message=(
                f"{len(cache)} active experiments, refreshed "
                f"{cache.last_refreshed_at.isoformat()}"
            ),
        )

    async def check_all(self) -> HealthCheckResult:
        components = [await self.check_database(), await self.check_redis()]
        if self.ingestor is not None:
            components.append(self.check_ingestion(self.ingestor))
        if self.cache is not None:
            components.append(self.check_experiment_cache(self.cache))
        return HealthCheckResult(
            status=_overall_status(components), components=components
        )

    async def check_liveness(self) -> ComponentHealth:
        return ComponentHealth(
            name="liveness",
            status=HealthStatus.HEALTHY,
            message="Application is running",
        )

    async def check_readiness(self) -> HealthCheckResult:
        components = [await self.check_database()]
        return HealthCheckResult(
            status=_overall_status(components), components=components
        )


def _overall_status(components: list[ComponentHealth]) -> HealthStatus:
    if all(c.status == HealthStatus.HEALTHY for c in components):
        return HealthStatus.HEALTHY
    if any(
        c.status == HealthStatus.UNHEALTHY and c.name in CRITICAL_COMPONENTS
        for c in components
    ):
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED
