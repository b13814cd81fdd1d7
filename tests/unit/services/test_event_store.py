"""Tests for EventStore."""

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from market_experiments.core.exceptions import TransientStorageError, ValidationError
from market_experiments.models.domain.event import EventCreate, EventFilter
from market_experiments.services.event_store import EventStore

KINDS = {"addon_view", "addon_click", "addon_purchase"}


@pytest.fixture
def mock_repo() -> MagicMock:
    return MagicMock()


@pytest.fixture
def store(mock_repo: MagicMock) -> Iterator[EventStore]:
    session = AsyncMock()

    @asynccontextmanager
    async def fake_scope(factory: object) -> AsyncIterator[AsyncMock]:  # noqa: ARG001
        yield session

    with (
        patch("market_experiments.services.event_store.session_scope", fake_scope),
        patch(
            "market_experiments.services.event_store.EventRepository",
            return_value=mock_repo,
        ),
    ):
        yield EventStore(MagicMock(), KINDS, query_timeout=0.5)


class TestValidate:
    """Tests for event validation."""

    def test_accepts_known_kind_and_stamps_time(self, store: EventStore) -> None:
        before = datetime.now(UTC)

        record = store.validate(
            EventCreate(
                event_kind="addon_click",
                user_id="user-1",
                addon_id="warranty",
                metadata={"price": 9.99, "position": 2},
            )
        )

        assert record.event_kind == "addon_click"
        assert record.addon_id == "warranty"
        assert record.properties == {"price": 9.99, "position": 2}
        assert record.created_at >= before

    def test_rejects_unknown_kind(self, store: EventStore) -> None:
        with pytest.raises(ValidationError) as exc_info:
            store.validate(EventCreate(event_kind="teleport"))

        assert exc_info.value.errors[0]["loc"] == ["event_kind"]

    def test_rejects_blank_kind(self, store: EventStore) -> None:
        with pytest.raises(ValidationError):
            store.validate(EventCreate(event_kind="   "))


class TestAppend:
    """Tests for writes."""

    @pytest.mark.asyncio
    async def test_append_batch_writes_rows(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.create_batch = AsyncMock()
        records = [
            store.validate(EventCreate(event_kind="addon_view", product_id="p1")),
            store.validate(EventCreate(event_kind="addon_click", product_id="p1")),
        ]

        written = await store.append_batch(records)

        assert written == 2
        rows = mock_repo.create_batch.call_args.args[0]
        assert [row.event_kind for row in rows] == ["addon_view", "addon_click"]
        assert rows[0].created_at == records[0].created_at

    @pytest.mark.asyncio
    async def test_append_batch_empty_is_noop(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.create_batch = AsyncMock()

        assert await store.append_batch([]) == 0
        mock_repo.create_batch.assert_not_called()

    @pytest.mark.asyncio
    async def test_append_failure_is_transient(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.create_batch = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("connection lost"))
        )

        with pytest.raises(TransientStorageError):
            await store.append(EventCreate(event_kind="addon_view"))

    @pytest.mark.asyncio
    async def test_append_validates_first(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.create_batch = AsyncMock()

        with pytest.raises(ValidationError):
            await store.append(EventCreate(event_kind="teleport"))

        mock_repo.create_batch.assert_not_called()


class TestReads:
    """Tests for bounded reads."""

    @pytest.mark.asyncio
    async def test_count(self, store: EventStore, mock_repo: MagicMock) -> None:
        mock_repo.count = AsyncMock(return_value=7)

        assert await store.count(EventFilter(event_kind="addon_view")) == 7

    @pytest.mark.asyncio
    async def test_read_retries_once(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.count = AsyncMock(
            side_effect=[OperationalError("SELECT", {}, Exception("reset")), 3]
        )

        assert await store.count(EventFilter()) == 3
        assert mock_repo.count.await_count == 2

    @pytest.mark.asyncio
    async def test_read_gives_up_after_two_attempts(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.count = AsyncMock(side_effect=OSError("network unreachable"))

        with pytest.raises(TransientStorageError):
            await store.count(EventFilter())

        assert mock_repo.count.await_count == 2

    @pytest.mark.asyncio
    async def test_report_timeout_returns_default(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        async def slow(*args: object) -> list[tuple[str, int, int]]:
            await asyncio.sleep(5)
            return [("warranty", 1, 1)]

        mock_repo.top_addons = slow

        result = await store.top_addons(EventFilter(), "addon_click", "addon_purchase")

        assert result == []

    @pytest.mark.asyncio
    async def test_conversion_count_timeout_raises(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        async def slow(*args: object) -> dict[str, int]:
            await asyncio.sleep(5)
            return {"A": 1}

        mock_repo.count_converted_units_by_variant = slow

        with pytest.raises(TransientStorageError):
            await store.count_converted_units_by_variant("checkout_flow", "addon_purchase")

    @pytest.mark.asyncio
    async def test_delete_older_than(
        self, store: EventStore, mock_repo: MagicMock
    ) -> None:
        mock_repo.delete_older_than = AsyncMock(return_value=42)
        cutoff = datetime(2026, 1, 1, tzinfo=UTC)

        assert await store.delete_older_than(cutoff) == 42
        mock_repo.delete_older_than.assert_awaited_once_with(cutoff)
