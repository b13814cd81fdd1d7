"""Interaction event database model."""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from market_experiments.models.db.base import Base


class InteractionEvent(Base):
    """Append-only record of a shopper interaction.

    Entity ids are opaque strings owned by the surrounding marketplace
    (catalog, sellers, add-ons); nothing here references those tables.
    ``event_kind`` is validated against the configured vocabulary on the way
    in, so it is a plain string column rather than a database enum.
    """

    __tablename__ = "interaction_events"

    event_kind: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    session_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    product_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    seller_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    addon_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    properties: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_events_kind_created", "event_kind", "created_at"),
        Index("ix_events_product_kind_created", "product_id", "event_kind", "created_at"),
        Index("ix_events_seller_kind_created", "seller_id", "event_kind", "created_at"),
        Index("ix_events_user_created", "user_id", "created_at"),
        Index("ix_events_created", "created_at"),
    )
