"""API v1 router configuration."""

from fastapi import APIRouter

from market_experiments.api.v1.endpoints import analytics, experiments

router = APIRouter(prefix="/api/v1")

router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
