"""FastAPI dependencies for API v1."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, Request

from market_experiments.core.config import Settings, get_settings
from market_experiments.core.exceptions import UnauthorizedError
from market_experiments.core.security import is_valid_api_key_format, verify_api_key
from market_experiments.models.domain.experiment import TargetingAttributes
from market_experiments.services.batch_ingestor import BatchIngestor
from market_experiments.services.event_store import EventStore
from market_experiments.services.experiment_registry import ActiveExperimentCache


@dataclass
class OperatorContext:
    """Authenticated operator. Only the key prefix is kept for audit logs."""

    key_prefix: str


AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_operator_auth(
    settings: AppSettings,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> OperatorContext:
    """Validate the operator API key.

    Raises:
        UnauthorizedError: If the key is missing, malformed or wrong.
    """
    if not x_api_key:
        raise UnauthorizedError("API key required. Provide X-API-Key header.")
    if not is_valid_api_key_format(x_api_key):
        raise UnauthorizedError("Invalid API key format.")
    if not verify_api_key(x_api_key, settings.operator_api_key_hash):
        raise UnauthorizedError("Invalid API key.")
    return OperatorContext(key_prefix=x_api_key[:12])


def get_event_store(request: Request) -> EventStore:
    """Process-wide event store created in the app lifespan."""
    return request.app.state.event_store


def get_ingestor(request: Request) -> BatchIngestor:
    return request.app.state.ingestor


def get_experiment_cache(request: Request) -> ActiveExperimentCache:
    return request.app.state.experiment_cache


def get_client_metadata(request: Request) -> dict[str, str]:
    """Client headers captured by ``RequestContextMiddleware``."""
    return getattr(request.state, "client_metadata", {})


def targeting_attributes(
    client_metadata: dict[str, str],
    segment: str | None = None,
    category: str | None = None,
    seller_id: str | None = None,
    order_value: float | None = None,
) -> TargetingAttributes:
    """Combine caller-supplied targeting inputs with request metadata."""
    return TargetingAttributes(
        segment=segment,
        category=category,
        seller_id=seller_id,
        order_value=order_value,
        **client_metadata,
    )


# Type aliases for dependency injection
Operator = Annotated[OperatorContext, Depends(get_operator_auth)]
Store = Annotated[EventStore, Depends(get_event_store)]
Ingestor = Annotated[BatchIngestor, Depends(get_ingestor)]
ExperimentCache = Annotated[ActiveExperimentCache, Depends(get_experiment_cache)]
ClientMetadata = Annotated[dict[str, str], Depends(get_client_metadata)]
