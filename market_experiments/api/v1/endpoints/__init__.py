"""API v1 endpoints package."""

from market_experiments.api.v1.endpoints import analytics, experiments

__all__ = ["analytics", "experiments"]
