"""Experiment database models for A/B testing."""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from market_experiments.models.db.base import Base, TimestampMixin


class ExperimentStatus(enum.StrEnum):
    """Lifecycle status of an experiment."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Experiment(Base, TimestampMixin):
    """A/B test experiment definition.

    ``variants`` is an ordered list of ``{name, description, config,
    traffic_percentage}`` objects; order matters for bucket assignment.
    ``results`` is only set together with status COMPLETED.
    """

    __tablename__ = "experiments"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    experiment_type: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(
            ExperimentStatus,
            name="experiment_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=ExperimentStatus.DRAFT,
        index=True,
    )
    variants: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    targeting_rules: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB(none_as_null=True),
        nullable=True,
    )
    primary_metric: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    secondary_metrics: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    min_sample_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1000,
    )
    confidence_level: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.95,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    results: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB(none_as_null=True),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint(
            "(status = 'completed') = (results IS NOT NULL)",
            name="ck_experiments_results_iff_completed",
        ),
        Index("ix_experiments_status_created", "status", "created_at"),
    )


class ExperimentAssignment(Base, TimestampMixin):
    """Sticky variant assignment for one unit (user or session).

    Exactly one of user_id / session_id is set. Each key is unique per
    experiment, which is what makes first assignment exactly-once.
    """

    __tablename__ = "experiment_assignments"

    experiment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("experiments.id", ondelete="CASCADE"),
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
    variant: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    request_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB(none_as_null=True),
        nullable=True,
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_assignments_single_unit",
        ),
        Index(
            "uq_assignments_experiment_user",
            "experiment_id",
            "user_id",
            unique=True,
            postgresql_where="user_id IS NOT NULL",
        ),
        Index(
            "uq_assignments_experiment_session",
            "experiment_id",
            "session_id",
            unique=True,
            postgresql_where="session_id IS NOT NULL",
        ),
        Index("ix_assignments_experiment_variant", "experiment_id", "variant"),
    )
