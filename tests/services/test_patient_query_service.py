"""Tests for patient queries across the MPI and the datastore."""

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.exceptions import UpstreamError
from src.schemas.mediator import HandlerResult
from src.services.link_resolver import LinkResolver
from src.services.patient_query_service import PatientQueryService
from tests.conftest import MPI_URL, upstream_response

STUB = {
    "resourceType": "Patient",
    "id": "patient-1",
    "link": [{"type": "refer", "other": {"reference": "Patient/mpi-1"}}],
}

MPI_PATIENT = {
    "resourceType": "Patient",
    "id": "mpi-1",
    "name": [{"family": "Test", "given": ["John"]}],
    "gender": "male",
    "telecom": [{"system": "phone", "value": "555-0100"}],
}


@pytest.fixture
def mock_link_resolver() -> AsyncMock:
    """Mock link resolver expanding every patient to a three-member set."""
    resolver = AsyncMock(spec=LinkResolver)
    resolver.resolve_links.side_effect = lambda ref: [ref, "Patient/2", "Patient/3"]
    return resolver


@pytest.fixture
def queries(
    mock_datastore_service: AsyncMock,
    mock_mpi_service: AsyncMock,
    mock_link_resolver: AsyncMock,
) -> PatientQueryService:
    return PatientQueryService(
        mock_datastore_service,
        mock_mpi_service,
        mock_link_resolver,
        patient_resources=["Encounter", "Observation"],
    )


def body_of(result: HandlerResult) -> Any:
    return json.loads(result.body.response.body)


def searchset(*entries: dict[str, Any]) -> dict[str, Any]:
    return {"resourceType": "Bundle", "type": "searchset", "entry": list(entries)}


class TestFetchPatientById:
    """Tests for fetch_patient_by_id."""

    @pytest.mark.anyio
    async def test_stub_is_swapped_for_mpi_patient(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_mpi_service: AsyncMock,
    ) -> None:
        mock_datastore_service.get_patient.return_value = upstream_response(200, STUB)
        mock_mpi_service.get_patient.return_value = upstream_response(
            200, MPI_PATIENT, url=f"{MPI_URL}/fhir/Patient/mpi-1"
        )

        result = await queries.fetch_patient_by_id("patient-1")

        mock_mpi_service.get_patient.assert_awaited_once_with("mpi-1")
        assert result.status == 200
        assert result.body.status == "Successful"
        assert body_of(result) == {**MPI_PATIENT, "id": "patient-1"}
        assert [o.name for o in result.body.orchestrations] == [
            "Get gutted patient",
            "Get full patient",
        ]

    @pytest.mark.anyio
    async def test_partial_projection(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_mpi_service: AsyncMock,
    ) -> None:
        mock_datastore_service.get_patient.return_value = upstream_response(200, STUB)
        mock_mpi_service.get_patient.return_value = upstream_response(200, MPI_PATIENT)

        result = await queries.fetch_patient_by_id("patient-1", "partial")

        assert "telecom" not in body_of(result)
        assert body_of(result)["id"] == "patient-1"

    @pytest.mark.anyio
    async def test_missing_stub_fails_with_datastore_status(
        self,
        queries: PatientQueryService,
        mock_mpi_service: AsyncMock,
    ) -> None:
        result = await queries.fetch_patient_by_id("unknown")

        assert result.status == 404
        assert result.failed
        mock_mpi_service.get_patient.assert_not_awaited()

    @pytest.mark.anyio
    async def test_unreachable_mpi_fails_with_502(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_mpi_service: AsyncMock,
    ) -> None:
        mock_datastore_service.get_patient.return_value = upstream_response(200, STUB)
        mock_mpi_service.get_patient.side_effect = UpstreamError("refused")

        result = await queries.fetch_patient_by_id("patient-1")

        assert result.status == 502
        assert result.failed


class TestFetchPatientByQuery:
    """Tests for fetch_patient_by_query."""

    @pytest.mark.anyio
    async def test_matches_are_linked_to_datastore_stubs(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_mpi_service: AsyncMock,
    ) -> None:
        mock_mpi_service.search_patients.return_value = upstream_response(
            200, searchset({"fullUrl": "Patient/mpi-1", "resource": MPI_PATIENT})
        )
        mock_datastore_service.search.return_value = upstream_response(
            200, searchset({"resource": STUB})
        )

        result = await queries.fetch_patient_by_query([("family", "Test")])

        mock_mpi_service.search_patients.assert_awaited_once_with([("family", "Test")])
        mock_datastore_service.search.assert_awaited_once_with(
            "Patient", [("link", "Patient/mpi-1")]
        )
        bundle = body_of(result)
        assert bundle["total"] == 1
        assert bundle["entry"][0]["resource"]["link"] == [
            {"type": "refer", "other": {"reference": "Patient/patient-1"}}
        ]

    @pytest.mark.anyio
    async def test_mpi_failure_is_returned(
        self,
        queries: PatientQueryService,
        mock_mpi_service: AsyncMock,
    ) -> None:
        mock_mpi_service.search_patients.return_value = upstream_response(400, {"error": "bad"})

        result = await queries.fetch_patient_by_query([("bogus", "x")])

        assert result.status == 400
        assert result.failed


class TestFetchEverything:
    """Tests for fetch_everything."""

    @pytest.mark.anyio
    async def test_resources_are_merged(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_link_resolver: AsyncMock,
    ) -> None:
        mock_datastore_service.search_patient_resources.side_effect = [
            upstream_response(200, searchset({"fullUrl": "Encounter/1"})),
            upstream_response(200, searchset({"fullUrl": "Observation/1"}, {"fullUrl": "Observation/2"})),
        ]

        result = await queries.fetch_everything("1")

        mock_link_resolver.resolve_links.assert_not_awaited()
        assert mock_datastore_service.search_patient_resources.await_args_list[0].args == (
            "Encounter",
            ["Patient/1"],
        )
        bundle = body_of(result)
        assert bundle["total"] == 3
        assert [entry["fullUrl"] for entry in bundle["entry"]] == [
            "Encounter/1",
            "Observation/1",
            "Observation/2",
        ]

    @pytest.mark.anyio
    async def test_mdm_expands_the_link_set(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
    ) -> None:
        mock_datastore_service.search_patient_resources.return_value = upstream_response(
            200, searchset()
        )

        result = await queries.fetch_everything("1", mdm=True)

        assert result.status == 200
        for call in mock_datastore_service.search_patient_resources.await_args_list:
            assert call.args[1] == ["Patient/1", "Patient/2", "Patient/3"]

    @pytest.mark.anyio
    async def test_any_failed_search_fails_the_request(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
    ) -> None:
        mock_datastore_service.search_patient_resources.side_effect = [
            upstream_response(200, searchset()),
            upstream_response(500, {"error": "boom"}),
        ]

        result = await queries.fetch_everything("1")

        assert result.failed
        assert result.status == 500
        assert body_of(result) == {"error": "boom"}


class TestFetchSummaries:
    """Tests for fetch_summaries."""

    @pytest.mark.anyio
    async def test_summaries_are_merged_as_document_with_mpi_demographics(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_mpi_service: AsyncMock,
    ) -> None:
        async def get_patient(patient_id: str) -> Any:
            if patient_id == "1":
                return upstream_response(200, {**STUB, "id": "1"})
            return upstream_response(404, {"resourceType": "OperationOutcome"})

        async def get_summary(patient_id: str, params: Any) -> Any:
            if patient_id == "3":
                return upstream_response(404, {"resourceType": "OperationOutcome"})
            return upstream_response(
                200,
                {
                    "resourceType": "Bundle",
                    "type": "document",
                    "entry": [
                        {"resource": {"resourceType": "Composition", "id": f"c{patient_id}"}},
                        {"resource": {"resourceType": "Patient", "id": patient_id}},
                    ],
                },
            )

        mock_datastore_service.get_patient.side_effect = get_patient
        mock_datastore_service.get_patient_summary.side_effect = get_summary
        mock_mpi_service.get_patient.return_value = upstream_response(200, MPI_PATIENT)

        result = await queries.fetch_summaries("1", [("_format", "json")], mdm=True)

        assert result.status == 200
        bundle = body_of(result)
        assert bundle["type"] == "document"
        # Patient/3 has no summary and is skipped
        assert bundle["total"] == 4
        patients = [
            entry["resource"]
            for entry in bundle["entry"]
            if entry["resource"]["resourceType"] == "Patient"
        ]
        assert patients[0] == {**MPI_PATIENT, "id": "1"}
        assert patients[1] == {"resourceType": "Patient", "id": "2"}
        mock_datastore_service.get_patient_summary.assert_any_await("1", [("_format", "json")])

    @pytest.mark.anyio
    async def test_failed_summary_fails_the_request(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
    ) -> None:
        mock_datastore_service.get_patient_summary.return_value = upstream_response(
            500, {"error": "boom"}
        )

        result = await queries.fetch_summaries("1")

        assert result.failed
        assert result.status == 500
        # The failing call is kept in the envelope
        assert [o.name for o in result.body.orchestrations] == [
            "Get gutted patient",
            "Get summary",
        ]
        assert result.body.orchestrations[-1].response.status == 500


class TestSearch:
    """Tests for MDM query expansion and search forwarding."""

    @pytest.mark.anyio
    async def test_mdm_param_is_expanded(
        self,
        queries: PatientQueryService,
        mock_link_resolver: AsyncMock,
    ) -> None:
        expanded = await queries.expand_mdm_query(
            [("subject:mdm", "Patient/1"), ("_count", "10")]
        )

        mock_link_resolver.resolve_links.assert_awaited_once_with("Patient/1")
        assert expanded == [
            ("subject", "Patient/1,Patient/2,Patient/3"),
            ("_count", "10"),
        ]

    @pytest.mark.anyio
    async def test_plain_params_pass_through(
        self,
        queries: PatientQueryService,
        mock_link_resolver: AsyncMock,
    ) -> None:
        params = [("subject", "Patient/1")]

        assert await queries.expand_mdm_query(params) == params
        mock_link_resolver.resolve_links.assert_not_awaited()

    @pytest.mark.anyio
    async def test_search_forwards_expanded_query(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
    ) -> None:
        result = await queries.search("Observation", [("subject:mdm", "Patient/1")])

        mock_datastore_service.search.assert_awaited_once_with(
            "Observation", [("subject", "Patient/1,Patient/2,Patient/3")]
        )
        assert result.status == 200
        assert result.body.status == "Successful"

    @pytest.mark.anyio
    async def test_expansion_failure_fails_the_search(
        self,
        queries: PatientQueryService,
        mock_datastore_service: AsyncMock,
        mock_link_resolver: AsyncMock,
    ) -> None:
        mock_link_resolver.resolve_links.side_effect = UpstreamError("MPI unreachable")

        result = await queries.search("Observation", [("subject:mdm", "Patient/1")])

        assert result.failed
        assert result.status == 502
        mock_datastore_service.search.assert_not_awaited()
