"""Test configuration and fixtures."""

import copy
from typing import Any, AsyncGenerator, Generator, Protocol
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from src.clients.event_channel import get_event_channel
from src.clients.fhir_datastore import get_fhir_datastore_service
from src.clients.mpi import get_mdm_mpi_service, get_mpi_service
from src.main import app
from src.services.event_channel import EventChannel
from src.services.fhir_datastore_service import FHIRDatastoreService
from src.services.mpi_service import MPIService
from src.services.upstream import UpstreamResponse

MPI_URL = "http://santedb-mpi:8080"
DATASTORE_URL = "http://hapi-fhir:8080"


def upstream_response(
    status: int,
    body: Any = None,
    method: str = "GET",
    url: str = f"{DATASTORE_URL}/fhir",
    request_body: Any = None,
) -> UpstreamResponse:
    """Build an UpstreamResponse as returned by the HTTP services."""
    return UpstreamResponse(
        method=method,
        url=url,
        status=status,
        body=body,
        request_body=request_body,
    )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Configure pytest-anyio to use asyncio."""
    return "asyncio"


@pytest.fixture
def mock_datastore_service() -> AsyncMock:
    """Mock FHIR datastore service for testing."""
    mock = AsyncMock(spec=FHIRDatastoreService)

    # Default: bundle valid, no stored stubs, persistence succeeds
    mock.validate_bundle.return_value = upstream_response(
        200, {"resourceType": "OperationOutcome", "issue": []}, method="POST"
    )
    mock.get_patient.return_value = upstream_response(
        404, {"resourceType": "OperationOutcome"}
    )
    mock.persist_bundle.return_value = upstream_response(
        200,
        {"resourceType": "Bundle", "type": "transaction-response", "entry": []},
        method="POST",
    )
    mock.search.return_value = upstream_response(
        200, {"resourceType": "Bundle", "type": "searchset", "entry": []}
    )
    mock.health_check.return_value = True
    return mock


@pytest.fixture
def mock_mpi_service() -> AsyncMock:
    """Mock MPI service for testing."""
    mock = AsyncMock(spec=MPIService)
    mock.patient_url.side_effect = lambda patient_id: (
        f"{MPI_URL}/fhir/Patient/{patient_id}"
    )

    # Default: every registration is assigned id "mpi-1"
    mock.create_patient.return_value = upstream_response(
        201,
        {"resourceType": "Patient", "id": "mpi-1"},
        method="POST",
        url=f"{MPI_URL}/fhir/Patient",
    )
    mock.health_check.return_value = True
    return mock


@pytest.fixture
def mock_event_channel() -> AsyncMock:
    """Mock Kafka event channel for testing."""
    return AsyncMock(spec=EventChannel)


class ClientFactory(Protocol):
    """Protocol for client factory fixture."""

    def __call__(self) -> AsyncClient: ...


@pytest.fixture
def client_factory(
    mock_datastore_service: AsyncMock,
    mock_mpi_service: AsyncMock,
    mock_event_channel: AsyncMock,
) -> Generator[ClientFactory, None, None]:
    """Factory for creating test clients with mocked dependencies."""

    def _create_client() -> AsyncClient:
        app.dependency_overrides[get_fhir_datastore_service] = (
            lambda: mock_datastore_service
        )
        app.dependency_overrides[get_mpi_service] = lambda: mock_mpi_service
        app.dependency_overrides[get_mdm_mpi_service] = lambda: mock_mpi_service
        app.dependency_overrides[get_event_channel] = lambda: mock_event_channel

        transport = ASGITransport(app=app)
        return AsyncClient(transport=transport, base_url="http://testserver")

    yield _create_client

    app.dependency_overrides.clear()


@pytest.fixture
async def client(
    client_factory: ClientFactory,
) -> AsyncGenerator[AsyncClient, None]:
    """Async client for testing endpoints."""
    async with client_factory() as c:
        yield c


# Sample bundles for testing
SAMPLE_PATIENT = {
    "resourceType": "Patient",
    "id": "patient-1",
    "identifier": [{"system": "http://example.org/nid", "value": "1234"}],
    "name": [{"family": "Test", "given": ["John"]}],
    "gender": "male",
    "birthDate": "1980-01-01",
    "extension": [
        {"url": "http://example.org/ext/religion", "valueString": "none"},
    ],
    "managingOrganization": {"reference": "Organization/org-1"},
}

SAMPLE_PATIENT_BUNDLE = {
    "resourceType": "Bundle",
    "type": "document",
    "entry": [
        {
            "fullUrl": "Patient/patient-1",
            "resource": SAMPLE_PATIENT,
        },
        {
            "fullUrl": "Encounter/encounter-1",
            "resource": {
                "resourceType": "Encounter",
                "id": "encounter-1",
                "status": "finished",
                "subject": {"reference": "Patient/patient-1"},
            },
        },
    ],
}

SAMPLE_OBSERVATION_BUNDLE = {
    "resourceType": "Bundle",
    "type": "transaction",
    "entry": [
        {
            "fullUrl": "Observation/obs-1",
            "resource": {
                "resourceType": "Observation",
                "id": "obs-1",
                "status": "final",
                "code": {"text": "Weight"},
            },
        },
    ],
}


@pytest.fixture
def patient_bundle() -> dict[str, Any]:
    """Document bundle with one Patient and an Encounter referencing it."""
    return copy.deepcopy(SAMPLE_PATIENT_BUNDLE)


@pytest.fixture
def observation_bundle() -> dict[str, Any]:
    """Transaction bundle without any patient."""
    return copy.deepcopy(SAMPLE_OBSERVATION_BUNDLE)
