"""Unit tests for Experiment API endpoints."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from market_experiments.api.v1.dependencies import OperatorContext, get_operator_auth
from market_experiments.api.v1.endpoints.experiments import (
    get_assignment_engine,
    get_experiment_registry,
    get_results_analyzer,
    router,
)
from market_experiments.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
    setup_exception_handlers,
)
from market_experiments.core.pagination import CursorPage
from market_experiments.models.db.experiment import ExperimentStatus
from market_experiments.models.domain.experiment import (
    DisplayConfig,
    ExperimentDetail,
    ExperimentRead,
    ExperimentResults,
    ResultSet,
    VariantAssignment,
)
from market_experiments.services.experiment_registry import ExperimentRegistry


@pytest.fixture
def mock_registry() -> MagicMock:
    return MagicMock()


@pytest.fixture
def mock_engine() -> MagicMock:
    return MagicMock()


@pytest.fixture
def mock_analyzer() -> MagicMock:
    return MagicMock()


@pytest.fixture
def app(
    mock_registry: MagicMock, mock_engine: MagicMock, mock_analyzer: MagicMock
) -> FastAPI:
    test_app = FastAPI()
    setup_exception_handlers(test_app)
    test_app.include_router(router, prefix="/experiments")

    test_app.dependency_overrides[get_operator_auth] = lambda: OperatorContext(
        key_prefix="mexp_test"
    )
    test_app.dependency_overrides[get_experiment_registry] = lambda: mock_registry
    test_app.dependency_overrides[get_assignment_engine] = lambda: mock_engine
    test_app.dependency_overrides[get_results_analyzer] = lambda: mock_analyzer

    return test_app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


def _make_experiment_read(name: str = "checkout_flow", status: str = "draft") -> ExperimentRead:
    now = datetime.now(UTC)
    return ExperimentRead(
        id=uuid.uuid4(),
        name=name,
        description="Button color test",
        experiment_type=None,
        status=status,
        variants=[
            {"name": "A", "traffic_percentage": 50, "config": {}},
            {"name": "B", "traffic_percentage": 50, "config": {"color": "green"}},
        ],
        targeting_rules=None,
        primary_metric="conversion_rate",
        secondary_metrics=[],
        min_sample_size=1000,
        confidence_level=0.95,
        started_at=None,
        end_date=None,
        ended_at=None,
        results=None,
        created_at=now,
        updated_at=now,
    )


class TestCreateExperiment:
    """Tests for POST /experiments."""

    def test_create_experiment(
        self, client: TestClient, mock_registry: MagicMock
    ) -> None:
        mock_registry.create = AsyncMock(return_value=_make_experiment_read())

        response = client.post(
            "/experiments",
            json={
                "name": "checkout_flow",
                "variants": [
                    {"name": "A", "traffic_percentage": 50},
                    {"name": "B", "traffic_percentage": 50},
                ],
            },
        )

        assert response.status_code == 201
        assert response.json()["status"] == "draft"
        data = mock_registry.create.call_args.args[0]
        assert [v.name for v in data.variants] == ["A", "B"]

    def test_create_invalid_shares(
        self, client: TestClient, mock_registry: MagicMock
    ) -> None:
        mock_registry.create = AsyncMock(
            side_effect=ValidationError(
                "Invalid experiment definition",
                errors=[
                    {
                        "loc": ["variants", "traffic_percentage"],
                        "msg": "Variant traffic percentages must sum to 100 (got 99)",
                    }
                ],
            )
        )

        response = client.post(
            "/experiments",
            json={
                "name": "checkout_flow",
                "variants": [
                    {"name": "A", "traffic_percentage": 50},
                    {"name": "B", "traffic_percentage": 49},
                ],
            },
        )

        assert response.status_code == 400
        assert response.json()["errors"][0]["loc"] == ["variants", "traffic_percentage"]

    def test_create_missing_variants(self, client: TestClient) -> None:
        response = client.post("/experiments", json={"name": "checkout_flow"})

        assert response.status_code == 400


class TestListExperiments:
    """Tests for GET /experiments."""

    def test_list_experiments(
        self, client: TestClient, mock_registry: MagicMock
    ) -> None:
        mock_registry.list_page = AsyncMock(
            return_value=CursorPage(
                items=[_make_experiment_read()], next_cursor="abc", has_more=True
            )
        )

        response = client.get("/experiments?status=active&limit=5")

        assert response.status_code == 200
        body = response.json()
        assert body["has_more"] is True
        assert body["next_cursor"] == "abc"
        kwargs = mock_registry.list_page.call_args.kwargs
        assert kwargs["status"] == "active"
        assert kwargs["limit"] == 5

    def test_list_limit_bounds(self, client: TestClient) -> None:
        assert client.get("/experiments?limit=0").status_code == 400
        assert client.get("/experiments?limit=101").status_code == 400


class TestLifecycleEndpoints:
    """Tests for start/pause/complete/delete."""

    def test_start(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.start = AsyncMock(return_value=_make_experiment_read(status="active"))

        response = client.post(f"/experiments/{uuid.uuid4()}/start")

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_start_conflict(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.start = AsyncMock(
            side_effect=ConflictError("Experiment is already active")
        )

        response = client.post(f"/experiments/{uuid.uuid4()}/start")

        assert response.status_code == 409

    def test_pause(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.pause = AsyncMock(return_value=_make_experiment_read(status="paused"))

        response = client.post(f"/experiments/{uuid.uuid4()}/pause")

        assert response.json()["status"] == "paused"

    def test_complete_uses_analyzer(
        self, client: TestClient, mock_analyzer: MagicMock
    ) -> None:
        experiment_id = uuid.uuid4()
        completed = _make_experiment_read(status="completed").model_copy(
            update={
                "results": ResultSet(
                    winner="B",
                    statistical_significance=True,
                    variant_results=[],
                    completed_at=datetime.now(UTC),
                )
            }
        )
        mock_analyzer.complete_experiment = AsyncMock(return_value=completed)

        response = client.post(f"/experiments/{experiment_id}/complete")

        assert response.status_code == 200
        assert response.json()["results"]["winner"] == "B"
        mock_analyzer.complete_experiment.assert_awaited_once_with(experiment_id)

    def test_delete(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.delete = AsyncMock(return_value=None)

        response = client.delete(f"/experiments/{uuid.uuid4()}")

        assert response.status_code == 204

    def test_delete_active_conflict(
        self, client: TestClient, mock_registry: MagicMock
    ) -> None:
        mock_registry.delete = AsyncMock(
            side_effect=ConflictError("Cannot delete an active experiment; pause it first")
        )

        response = client.delete(f"/experiments/{uuid.uuid4()}")

        assert response.status_code == 409

    @pytest.mark.parametrize("field", ["min_sample_size", "primary_metric", "confidence_level"])
    def test_update_null_required_field_is_bad_request(
        self, app: FastAPI, field: str
    ) -> None:
        registry = ExperimentRegistry(MagicMock())
        registry._repo = AsyncMock()
        registry._repo.get_by_id.return_value = MagicMock(status=ExperimentStatus.PAUSED)
        app.dependency_overrides[get_experiment_registry] = lambda: registry

        response = TestClient(app).patch(f"/experiments/{uuid.uuid4()}", json={field: None})

        assert response.status_code == 400
        assert response.json()["errors"] == [{"loc": [field], "msg": "Field cannot be null"}]
        registry._repo.session.flush.assert_not_called()

    def test_get_not_found(self, client: TestClient, mock_registry: MagicMock) -> None:
        experiment_id = uuid.uuid4()
        mock_registry.get_detail = AsyncMock(
            side_effect=NotFoundError("Experiment", str(experiment_id))
        )

        response = client.get(f"/experiments/{experiment_id}")

        assert response.status_code == 404

    def test_get_detail(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.get_detail = AsyncMock(
            return_value=ExperimentDetail(
                experiment=_make_experiment_read(status="active"),
                assignment_counts={"A": 3, "B": 4},
            )
        )

        response = client.get(f"/experiments/{uuid.uuid4()}")

        assert response.json()["assignment_counts"] == {"A": 3, "B": 4}

    def test_results(self, client: TestClient, mock_analyzer: MagicMock) -> None:
        experiment_id = uuid.uuid4()
        mock_analyzer.compute_results = AsyncMock(
            return_value=ExperimentResults(
                experiment_id=experiment_id,
                experiment_name="checkout_flow",
                status="active",
                confidence_level=0.95,
                variant_results=[],
                winner=None,
                statistical_significance=False,
                total_sample_size=0,
                should_complete=False,
            )
        )

        response = client.get(f"/experiments/{experiment_id}/results")

        assert response.status_code == 200
        assert response.json()["should_complete"] is False


class TestTemplatesAndJobs:
    """Tests for the template and auto-complete endpoints."""

    def test_display_strategy_template(self, client: TestClient) -> None:
        response = client.get("/experiments/templates/display-strategy")

        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "displayaddons_optimization"
        assert len(body["variants"]) == 4

    def test_queue_auto_complete(self, client: TestClient) -> None:
        with patch(
            "market_experiments.api.v1.endpoints.experiments.queue_auto_complete",
            return_value="job-9",
        ):
            response = client.post("/experiments/auto-complete")

        assert response.status_code == 202
        assert response.json() == {"job_id": "job-9"}


class TestStorefrontEndpoints:
    """Tests for assignment, display config and conversions."""

    def test_get_variant_assigned(
        self, client: TestClient, mock_engine: MagicMock
    ) -> None:
        mock_engine.get_variant = AsyncMock(
            return_value=VariantAssignment(
                experiment_name="checkout_flow", variant="B", config={"color": "green"}
            )
        )

        response = client.get(
            "/experiments/variant/checkout_flow?user_id=user-42&segment=premium"
        )

        assert response.status_code == 200
        assert response.json() == {
            "experiment_name": "checkout_flow",
            "assigned": True,
            "variant": "B",
            "config": {"color": "green"},
        }
        attributes = mock_engine.get_variant.call_args.kwargs["attributes"]
        assert attributes.segment == "premium"

    def test_get_variant_not_assigned(
        self, client: TestClient, mock_engine: MagicMock
    ) -> None:
        mock_engine.get_variant = AsyncMock(return_value=None)

        response = client.get("/experiments/variant/unknown?session_id=s-1")

        assert response.status_code == 200
        assert response.json()["assigned"] is False
        assert response.json()["variant"] is None

    @pytest.mark.parametrize(
        "query", ["", "?user_id=u&session_id=s"]
    )
    def test_get_variant_requires_one_unit(
        self, client: TestClient, mock_engine: MagicMock, query: str
    ) -> None:
        mock_engine.get_variant = AsyncMock()

        response = client.get(f"/experiments/variant/checkout_flow{query}")

        assert response.status_code == 400
        mock_engine.get_variant.assert_not_called()

    def test_display_config(self, client: TestClient, mock_engine: MagicMock) -> None:
        mock_engine.get_display_config = AsyncMock(
            return_value=DisplayConfig(strategy="revenue_first", variant="revenue_first")
        )

        response = client.get("/experiments/display-config?product_id=p1&user_id=u1")

        assert response.status_code == 200
        assert response.json()["strategy"] == "revenue_first"
        assert mock_engine.get_display_config.call_args.kwargs["product_id"] == "p1"

    def test_track_conversion(self, client: TestClient, mock_engine: MagicMock) -> None:
        mock_engine.track_conversion = AsyncMock(return_value=True)

        response = client.post(
            "/experiments/conversions",
            json={
                "experiment_name": "checkout_flow",
                "user_id": "user-42",
                "conversion_data": {"addon_id": "warranty"},
            },
        )

        assert response.status_code == 202
        assert response.json() == {"tracked": True}
        kwargs = mock_engine.track_conversion.call_args.kwargs
        assert kwargs["conversion_data"] == {"addon_id": "warranty"}

    def test_track_conversion_requires_one_unit(
        self, client: TestClient, mock_engine: MagicMock
    ) -> None:
        mock_engine.track_conversion = AsyncMock()

        response = client.post(
            "/experiments/conversions", json={"experiment_name": "checkout_flow"}
        )

        assert response.status_code == 400


class TestOperatorAuth:
    """Operator endpoints require the API key."""

    def test_missing_key_rejected(
        self, app: FastAPI, mock_registry: MagicMock
    ) -> None:
        app.dependency_overrides.pop(get_operator_auth)
        mock_registry.list_page = AsyncMock()

        response = TestClient(app).get("/experiments")

        assert response.status_code == 401
        mock_registry.list_page.assert_not_called()

    def test_storefront_needs_no_key(
        self, app: FastAPI, mock_engine: MagicMock
    ) -> None:
        app.dependency_overrides.pop(get_operator_auth)
        mock_engine.get_variant = AsyncMock(return_value=None)

        response = TestClient(app).get("/experiments/variant/x?user_id=u")

        assert response.status_code == 200
