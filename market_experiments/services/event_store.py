"""Durable, append-only store for shopper interaction events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError

from market_experiments.core.database import SessionFactory, session_scope
from market_experiments.core.exceptions import TransientStorageError, ValidationError
from market_experiments.models.db.event import InteractionEvent
from market_experiments.models.domain.event import (
    EventCreate,
    EventFilter,
    EventRead,
    EventRecord,
)
from market_experiments.repositories.event_repo import EventRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth one more attempt: driver/pool failures and dropped connections
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError)


class EventStore:
    """Append-only event log backed by PostgreSQL.

    Every operation opens its own short unit of work, so the store can be
    shared by the request path, the ingestion flush loop and RQ jobs.

    Read paths are bounded by ``query_timeout``: report queries degrade to an
    empty result when they run out of time, and transient storage failures
    are retried once before surfacing as ``TransientStorageError``.
    """

    MAX_READ_ATTEMPTS = 2

    def __init__(
        self,
        session_factory: SessionFactory,
        event_kinds: Iterable[str],
        query_timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._event_kinds = frozenset(event_kinds)
        self._query_timeout = query_timeout

    @property
    def event_kinds(self) -> frozenset[str]:
        """Accepted event kinds."""
        return self._event_kinds

    def validate(self, event: EventCreate) -> EventRecord:
        """Check the kind against the vocabulary and stamp the creation time.

        Raises:
            ValidationError: If the kind is missing or not in the vocabulary.
        """
        kind = event.event_kind.strip() if event.event_kind else ""
        if not kind:
            raise ValidationError(
                "Event kind is required",
                errors=[{"loc": ["event_kind"], "msg": "Field required"}],
            )
        if kind not in self._event_kinds:
            raise ValidationError(
                f"Unknown event kind '{kind}'",
                errors=[
                    {
                        "loc": ["event_kind"],
                        "msg": f"Must be one of: {', '.join(sorted(self._event_kinds))}",
                    }
                ],
            )

        return EventRecord(
            event_kind=kind,
            user_id=event.user_id,
            session_id=event.session_id,
            product_id=event.product_id,
            seller_id=event.seller_id,
            addon_id=event.addon_id,
            properties=event.metadata.model_dump(exclude_none=True),
            created_at=datetime.now(UTC),
        )

    async def append(self, event: EventCreate) -> EventRecord:
        """Validate and persist a single event immediately."""
        record = self.validate(event)
        await self.append_batch([record])
        return record

    async def append_batch(self, records: Sequence[EventRecord]) -> int:
        """Persist records in one bulk insert.

        Raises:
            TransientStorageError: If the insert fails. Nothing is written.
        """
        if not records:
            return 0

        rows = [
            InteractionEvent(
                event_kind=record.event_kind,
                user_id=record.user_id,
                session_id=record.session_id,
                product_id=record.product_id,
                seller_id=record.seller_id,
                addon_id=record.addon_id,
                properties=dict(record.properties),
                created_at=record.created_at,
            )
            for record in records
        ]
        try:
            async with session_scope(self._session_factory) as session:
                await EventRepository(session).create_batch(rows)
        except RETRYABLE_ERRORS as e:
            raise TransientStorageError(
                f"Failed to persist {len(records)} events: {e}"
            ) from e

        logger.debug("Persisted %d events", len(records))
        return len(records)

    async def query(
        self,
        filters: EventFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EventRead]:
        """Events matching the filters, newest first."""

        async def run(repo: EventRepository) -> list[EventRead]:
            rows = await repo.query(filters, limit=limit, offset=offset)
            return [EventRead.model_validate(row) for row in rows]

        return await self._read("event query", run, default=[])

    async def count(self, filters: EventFilter) -> int:
        """Number of events matching the filters."""
        return await self._read(
            "event count", lambda repo: repo.count(filters), default=0
        )

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Purge events created strictly before ``cutoff``. Returns the count."""
        try:
            async with session_scope(self._session_factory) as session:
                deleted = await EventRepository(session).delete_older_than(cutoff)
        except RETRYABLE_ERRORS as e:
            raise TransientStorageError(f"Retention cleanup failed: {e}") from e

        logger.info(
            "Deleted events older than cutoff",
            extra={"cutoff": cutoff.isoformat(), "deleted": deleted},
        )
        return deleted

    async def count_converted_units_by_variant(
        self,
        experiment_name: str,
        event_kind: str,
        from_timestamp: datetime | None = None,
        to_timestamp: datetime | None = None,
    ) -> dict[str, int]:
        """Distinct converting units per variant in ``[from, to)``.

        Unlike report queries this never degrades to an empty result: a
        partial count would silently skew experiment results.
        """
        return await self._read(
            "conversion count",
            lambda repo: repo.count_converted_units_by_variant(
                experiment_name, event_kind, from_timestamp, to_timestamp
            ),
        )

    async def count_by_product_addon_kind(
        self, filters: EventFilter
    ) -> list[tuple[str | None, str | None, str, int]]:
        """Report query: event counts per (product, add-on, kind)."""
        return await self._read(
            "funnel report",
            lambda repo: repo.count_by_product_addon_kind(filters),
            default=[],
        )

    async def count_displays_by_product(
        self, filters: EventFilter
    ) -> list[tuple[str | None, str | None, int, float | None]]:
        """Report query: display events per (product, display type)."""
        return await self._read(
            "display report",
            lambda repo: repo.count_displays_by_product(filters),
            default=[],
        )

    async def top_addons(
        self,
        filters: EventFilter,
        click_kind: str,
        purchase_kind: str,
        limit: int = 10,
    ) -> list[tuple[str, int, int]]:
        """Report query: add-ons ranked by clicks + 5 x purchases."""
        return await self._read(
            "top add-ons report",
            lambda repo: repo.top_addons(filters, click_kind, purchase_kind, limit),
            default=[],
        )

    async def _read(
        self,
        description: str,
        operation: Callable[[EventRepository], Awaitable[T]],
        default: T | None = None,
    ) -> T:
        """Run a read under the query timeout, retrying once on storage errors.

        On timeout, returns ``default`` when one is given and raises
        ``TransientStorageError`` otherwise.
        """

        async def run() -> T:
            async with session_scope(self._session_factory) as session:
                return await operation(EventRepository(session))

        last_error: Exception | None = None
        for attempt in range(self.MAX_READ_ATTEMPTS):
            try:
                return await asyncio.wait_for(run(), timeout=self._query_timeout)
            except TimeoutError as e:
                logger.warning(
                    "%s timed out after %.1fs", description, self._query_timeout
                )
                if default is None:
                    raise TransientStorageError(f"{description} timed out") from e
                return default
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    description,
                    attempt + 1,
                    self.MAX_READ_ATTEMPTS,
                    e,
                )

        raise TransientStorageError(
            f"{description} failed after {self.MAX_READ_ATTEMPTS} attempts: {last_error}"
        ) from last_error
