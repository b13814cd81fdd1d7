"""Experiment API endpoints: lifecycle management, assignment and results."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from market_experiments.api.v1.dependencies import (
    AppSettings,
    ClientMetadata,
    ExperimentCache,
    Ingestor,
    Operator,
    Store,
    targeting_attributes,
)
from market_experiments.core.database import DbSession
from market_experiments.core.exceptions import ValidationError
from market_experiments.core.pagination import CursorPage
from market_experiments.models.db.experiment import ExperimentStatus
from market_experiments.models.domain.experiment import (
    ConversionCreate,
    DisplayConfig,
    ExperimentCreate,
    ExperimentDetail,
    ExperimentRead,
    ExperimentResults,
    ExperimentType,
    ExperimentUpdate,
    VariantLookup,
)
from market_experiments.services.assignment_engine import AssignmentEngine
from market_experiments.services.experiment_registry import (
    ExperimentRegistry,
    display_strategy_template,
)
from market_experiments.services.results_analyzer import ResultsAnalyzer
from market_experiments.workers.maintenance_worker import queue_auto_complete

router = APIRouter()


def get_experiment_registry(
    session: DbSession, cache: ExperimentCache
) -> ExperimentRegistry:
    """Get experiment registry instance."""
    return ExperimentRegistry(session, cache)


def get_assignment_engine(
    session: DbSession,
    cache: ExperimentCache,
    ingestor: Ingestor,
    settings: AppSettings,
) -> AssignmentEngine:
    """Get assignment engine instance."""
    return AssignmentEngine(session, cache, ingestor, settings)


def get_results_analyzer(
    session: DbSession,
    store: Store,
    cache: ExperimentCache,
    settings: AppSettings,
) -> ResultsAnalyzer:
    """Get results analyzer instance."""
    return ResultsAnalyzer(session, store, cache, settings)


Registry = Annotated[ExperimentRegistry, Depends(get_experiment_registry)]
Engine = Annotated[AssignmentEngine, Depends(get_assignment_engine)]
Analyzer = Annotated[ResultsAnalyzer, Depends(get_results_analyzer)]


def _require_single_unit(user_id: str | None, session_id: str | None) -> None:
    if (user_id is None) == (session_id is None):
        raise ValidationError(
            "Provide exactly one of user_id or session_id",
            errors=[
                {"loc": ["user_id"], "msg": "Exactly one unit identifier is required"},
                {"loc": ["session_id"], "msg": "Exactly one unit identifier is required"},
            ],
        )


# --- Operator endpoints (collection) ---


@router.post("", response_model=ExperimentRead, status_code=201)
async def create_experiment(
    _auth: Operator,
    registry: Registry,
    data: ExperimentCreate,
) -> ExperimentRead:
    """Create a new experiment in draft status."""
    return await registry.create(data)


@router.get("", response_model=CursorPage[ExperimentRead])
async def list_experiments(
    _auth: Operator,
    registry: Registry,
    cursor: str | None = Query(None, description="Cursor from a previous page"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    status: ExperimentStatus | None = Query(None, description="Filter by status"),
    experiment_type: ExperimentType | None = Query(None, description="Filter by type"),
) -> CursorPage[ExperimentRead]:
    """List experiments, newest first."""
    return await registry.list_page(
        cursor=cursor,
        limit=limit,
        status=status,
        experiment_type=experiment_type,
    )


@router.get("/templates/display-strategy", response_model=ExperimentCreate)
async def get_display_strategy_template(
    _auth: Operator,
    settings: AppSettings,
) -> ExperimentCreate:
    """Four-variant display-strategy experiment, ready to customise and create."""
    return display_strategy_template(settings.display_experiment_name)


@router.post("/auto-complete", status_code=202)
async def queue_auto_complete_sweep(
    _auth: Operator,
    settings: AppSettings,
) -> dict[str, str]:
    """Queue a sweep that completes experiments whose stopping rule is met."""
    return {"job_id": queue_auto_complete(settings=settings)}


# --- Storefront endpoints (no operator key) ---


@router.get("/variant/{experiment_name}", response_model=VariantLookup)
async def get_variant(
    engine: Engine,
    client_metadata: ClientMetadata,
    experiment_name: str,
    user_id: str | None = Query(None, max_length=255),
    session_id: str | None = Query(None, max_length=255),
    segment: str | None = Query(None, description="User segment for targeting"),
    category: str | None = Query(None, description="Product category for targeting"),
    seller_id: str | None = Query(None, description="Seller for targeting"),
    order_value: float | None = Query(None, description="Order value for targeting"),
) -> VariantLookup:
    """Get (or make) the caller's assignment.

    An inactive experiment, a unit outside the audience, or an internal
    failure all produce an unassigned response rather than an error.
    """
    _require_single_unit(user_id, session_id)
    assignment = await engine.get_variant(
        experiment_name,
        user_id=user_id,
        session_id=session_id,
        attributes=targeting_attributes(
            client_metadata, segment, category, seller_id, order_value
        ),
    )
    if assignment is None:
        return VariantLookup(experiment_name=experiment_name, assigned=False)
    return VariantLookup(
        experiment_name=experiment_name,
        assigned=True,
        variant=assignment.variant,
        config=assignment.config,
    )


@router.get("/display-config", response_model=DisplayConfig)
async def get_display_config(
    engine: Engine,
    client_metadata: ClientMetadata,
    product_id: str | None = Query(None, max_length=255),
    user_id: str | None = Query(None, max_length=255),
    session_id: str | None = Query(None, max_length=255),
    segment: str | None = Query(None),
    category: str | None = Query(None),
    seller_id: str | None = Query(None),
) -> DisplayConfig:
    """Product display strategy for the caller; the default when not in the experiment."""
    return await engine.get_display_config(
        product_id=product_id,
        user_id=user_id,
        session_id=session_id,
        attributes=targeting_attributes(client_metadata, segment, category, seller_id),
    )


@router.post("/conversions", status_code=202)
async def track_conversion(
    engine: Engine,
    data: ConversionCreate,
) -> dict[str, bool]:
    """Record a conversion for an assigned unit. Unassigned units are ignored."""
    _require_single_unit(data.user_id, data.session_id)
    tracked = await engine.track_conversion(
        data.experiment_name,
        user_id=data.user_id,
        session_id=data.session_id,
        conversion_data=data.conversion_data,
    )
    return {"tracked": tracked}


# --- Operator endpoints (single experiment) ---


@router.get("/{experiment_id}", response_model=ExperimentDetail)
async def get_experiment(
    _auth: Operator,
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentDetail:
    """Get an experiment with assignment counts per variant."""
    return await registry.get_detail(experiment_id)


@router.patch("/{experiment_id}", response_model=ExperimentRead)
async def update_experiment(
    _auth: Operator,
    registry: Registry,
    experiment_id: uuid.UUID,
    data: ExperimentUpdate,
) -> ExperimentRead:
    """Update a draft or paused experiment."""
    return await registry.update(experiment_id, data)


@router.post("/{experiment_id}/start", response_model=ExperimentRead)
async def start_experiment(
    _auth: Operator,
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Start a draft experiment or resume a paused one."""
    return await registry.start(experiment_id)


@router.post("/{experiment_id}/pause", response_model=ExperimentRead)
async def pause_experiment(
    _auth: Operator,
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Pause an active experiment."""
    return await registry.pause(experiment_id)


@router.post("/{experiment_id}/complete", response_model=ExperimentRead)
async def complete_experiment(
    _auth: Operator,
    analyzer: Analyzer,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Compute final results and complete the experiment."""
    return await analyzer.complete_experiment(experiment_id)


@router.delete("/{experiment_id}", status_code=204)
async def delete_experiment(
    _auth: Operator,
    registry: Registry,
    experiment_id: uuid.UUID,
) -> Response:
    """Delete a non-active experiment and its assignments."""
    await registry.delete(experiment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{experiment_id}/results", response_model=ExperimentResults)
async def get_results(
    _auth: Operator,
    analyzer: Analyzer,
    experiment_id: uuid.UUID,
) -> ExperimentResults:
    """Per-variant conversion results with confidence intervals."""
    return await analyzer.compute_results(experiment_id)
