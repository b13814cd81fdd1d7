"""Database models package."""

from market_experiments.models.db.base import Base, TimestampMixin
from market_experiments.models.db.event import InteractionEvent
from market_experiments.models.db.experiment import (
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
)

__all__ = [
    "Base",
    "Experiment",
    "ExperimentAssignment",
    "ExperimentStatus",
    "InteractionEvent",
    "TimestampMixin",
]
