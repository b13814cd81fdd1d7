"""Repository for experiment and assignment operations."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.models.db.experiment import (
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
)


class ExperimentRepository:
    """Database operations for experiments and their assignments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Experiments ---

    async def create(self, experiment: Experiment) -> Experiment:
        """Create a new experiment."""
        self.session.add(experiment)
        await self.session.flush()
        await self.session.refresh(experiment)
        return experiment

    async def get_by_id(self, experiment_id: uuid.UUID) -> Experiment | None:
        """Get experiment by ID."""
        result = await self.session.execute(
            select(Experiment).where(Experiment.id == experiment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Experiment | None:
        """Get experiment by its unique name."""
        result = await self.session.execute(
            select(Experiment).where(Experiment.name == name)
        )
        return result.scalar_one_or_none()

    async def list_page(
        self,
        status: ExperimentStatus | None = None,
        experiment_type: str | None = None,
        after: tuple[datetime, uuid.UUID] | None = None,
        limit: int = 20,
    ) -> list[Experiment]:
        """List experiments newest first using keyset pagination.

        Returns up to ``limit + 1`` rows so the caller can tell whether
        another page exists.
        """
        conditions: list[Any] = []
        if status is not None:
            conditions.append(Experiment.status == status)
        if experiment_type is not None:
            conditions.append(Experiment.experiment_type == experiment_type)
        if after is not None:
            created_at, last_id = after
            conditions.append(
                or_(
                    Experiment.created_at < created_at,
                    and_(Experiment.created_at == created_at, Experiment.id < last_id),
                )
            )

        stmt = select(Experiment)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(Experiment.created_at.desc(), Experiment.id.desc()).limit(
            limit + 1
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, status: ExperimentStatus) -> list[Experiment]:
        """All experiments in the given status."""
        result = await self.session.execute(
            select(Experiment).where(Experiment.status == status)
        )
        return list(result.scalars().all())

    async def mark_completed(
        self,
        experiment_id: uuid.UUID,
        results: dict[str, Any],
        ended_at: datetime,
    ) -> Experiment | None:
        """Set status and results in one guarded UPDATE.

        Returns None when the experiment does not exist or is not in a
        completable state.
        """
        stmt = (
            update(Experiment)
            .where(
                and_(
                    Experiment.id == experiment_id,
                    Experiment.status.in_(
                        [ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED]
                    ),
                )
            )
            .values(
                status=ExperimentStatus.COMPLETED,
                results=results,
                ended_at=ended_at,
            )
            .returning(Experiment)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, experiment: Experiment) -> int:
        """Delete an experiment and its assignments. Returns assignments removed."""
        result = await self.session.execute(
            delete(ExperimentAssignment).where(
                ExperimentAssignment.experiment_id == experiment.id
            )
        )
        await self.session.delete(experiment)
        await self.session.flush()
        return result.rowcount or 0

    # --- Assignments ---

    async def get_assignment(
        self,
        experiment_id: uuid.UUID,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ExperimentAssignment | None:
        """Find a unit's assignment. The user key wins when both are given."""
        if user_id is not None:
            unit_condition = ExperimentAssignment.user_id == user_id
        elif session_id is not None:
            unit_condition = ExperimentAssignment.session_id == session_id
        else:
            return None

        result = await self.session.execute(
            select(ExperimentAssignment).where(
                and_(
                    ExperimentAssignment.experiment_id == experiment_id,
                    unit_condition,
                )
            )
        )
        return result.scalar_one_or_none()

    async def insert_assignment(self, assignment: ExperimentAssignment) -> bool:
        """Insert an assignment inside a savepoint.

        Returns False when a concurrent request already stored an assignment
        for the same unit; the surrounding transaction stays usable.
        """
        try:
            async with self.session.begin_nested():
                self.session.add(assignment)
        except IntegrityError:
            return False
        return True

    async def count_assignments_by_variant(
        self, experiment_id: uuid.UUID
    ) -> dict[str, int]:
        """Count assignments per variant for an experiment."""
        stmt = (
            select(
                ExperimentAssignment.variant,
                func.count().label("count"),
            )
            .where(ExperimentAssignment.experiment_id == experiment_id)
            .group_by(ExperimentAssignment.variant)
        )
        result = await self.session.execute(stmt)
        return {row[0]: row[1] for row in result.all()}
