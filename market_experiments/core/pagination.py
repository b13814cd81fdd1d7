"""Keyset (cursor) pagination over ``(created_at, id)``."""

import base64
import json
from collections.abc import Callable
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from market_experiments.core.exceptions import ValidationError

T = TypeVar("T")


class CursorData(BaseModel):
    """Position of the last item on a page, newest-first ordering."""

    created_at: datetime
    id: UUID

    def as_key(self) -> tuple[datetime, UUID]:
        return self.created_at, self.id


def encode_cursor(created_at: datetime, id_value: UUID) -> str:
    """Encode a page position as an opaque URL-safe string."""
    data = CursorData(created_at=created_at, id=id_value)
    return base64.urlsafe_b64encode(data.model_dump_json().encode()).decode()


def decode_cursor(cursor: str) -> CursorData:
    """Decode a cursor produced by ``encode_cursor``.

    Raises:
        ValidationError: If the cursor is malformed.
    """
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode()).decode())
        return CursorData.model_validate(payload)
    except Exception as e:
        raise ValidationError(
            "Invalid pagination cursor",
            errors=[{"loc": ["query", "cursor"], "msg": str(e)}],
        ) from e


class CursorPage(BaseModel, Generic[T]):
    """A page of results with cursor pagination."""

    items: list[T] = Field(..., description="The items in this page")
    next_cursor: str | None = Field(
        None, description="Cursor for the next page, null if no more results"
    )
    has_more: bool = Field(..., description="Whether there are more results")


def create_cursor_page(
    rows: list[Any],
    limit: int,
    to_item: Callable[[Any], T],
) -> CursorPage[T]:
    """Build a page from ``limit + 1`` rows ordered newest first.

    The extra row only signals that another page exists; the cursor points
    at the last row that is returned.
    """
    has_more = len(rows) > limit
    page_rows = rows[:limit]

    next_cursor = None
    if has_more and page_rows:
        last = page_rows[-1]
        next_cursor = encode_cursor(last.created_at, last.id)

    return CursorPage(
        items=[to_item(row) for row in page_rows],
        next_cursor=next_cursor,
        has_more=has_more,
    )
