"""Tests for bundle submission endpoints."""

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.exceptions import AuthError, PublishError
from tests.conftest import ClientFactory, upstream_response

OPENHIM_JSON = "application/openhim+json"


class TestValidateEndpoint:
    """Tests for POST /fhir/validate."""

    @pytest.mark.anyio
    async def test_valid_bundle(
        self,
        client_factory: ClientFactory,
        observation_bundle: dict[str, Any],
    ) -> None:
        async with client_factory() as client:
            response = await client.post("/fhir/validate", json=observation_bundle)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(OPENHIM_JSON)
        envelope = response.json()
        assert envelope["x-mediator-urn"] == "urn:mediator:mpi-mediator"
        assert envelope["status"] == "Success"
        assert envelope["response"]["status"] == 200

    @pytest.mark.anyio
    async def test_invalid_bundle_mirrors_status(
        self,
        client_factory: ClientFactory,
        mock_datastore_service: AsyncMock,
        observation_bundle: dict[str, Any],
    ) -> None:
        mock_datastore_service.validate_bundle.return_value = upstream_response(
            412, {"resourceType": "OperationOutcome"}, method="POST"
        )

        async with client_factory() as client:
            response = await client.post("/fhir/validate", json=observation_bundle)

        assert response.status_code == 412
        assert response.json()["status"] == "Failed"

    @pytest.mark.anyio
    async def test_non_bundle_body_is_rejected(
        self,
        client_factory: ClientFactory,
        mock_datastore_service: AsyncMock,
    ) -> None:
        async with client_factory() as client:
            response = await client.post(
                "/fhir/validate", json={"resourceType": "Patient"}
            )

        assert response.status_code == 400
        mock_datastore_service.validate_bundle.assert_not_awaited()


class TestSyncMatchEndpoint:
    """Tests for POST /fhir."""

    @pytest.mark.anyio
    async def test_patient_bundle_is_matched(
        self,
        client_factory: ClientFactory,
        mock_event_channel: AsyncMock,
        patient_bundle: dict[str, Any],
    ) -> None:
        async with client_factory() as client:
            response = await client.post(
                "/fhir",
                content=json.dumps(patient_bundle),
                headers={"Content-Type": "application/fhir+json"},
            )

        assert response.status_code == 200
        envelope = response.json()
        assert envelope["status"] == "Success"
        assert [o["name"] for o in envelope["orchestrations"]] == [
            "Validate bundle",
            "Lookup patient",
            "Register patient",
            "Persist bundle",
            "Publish bundle",
        ]
        mock_event_channel.publish.assert_awaited_once()

    @pytest.mark.anyio
    async def test_publish_failure_answers_500(
        self,
        client_factory: ClientFactory,
        mock_event_channel: AsyncMock,
        observation_bundle: dict[str, Any],
    ) -> None:
        mock_event_channel.publish.side_effect = PublishError("broker unavailable")

        async with client_factory() as client:
            response = await client.post("/fhir", json=observation_bundle)

        assert response.status_code == 500
        envelope = response.json()
        assert envelope["status"] == "Failed"
        assert json.loads(envelope["response"]["body"]) == {
            "kafkaResponseError": "broker unavailable"
        }

    @pytest.mark.anyio
    async def test_mpi_auth_failure_is_wrapped(
        self,
        client_factory: ClientFactory,
        mock_mpi_service: AsyncMock,
        patient_bundle: dict[str, Any],
    ) -> None:
        """Token failures are reported in the envelope with the endpoint status."""
        mock_mpi_service.create_patient.side_effect = AuthError(
            "invalid_client", status=401, body={"error": "invalid_client"}
        )

        async with client_factory() as client:
            response = await client.post("/fhir", json=patient_bundle)

        assert response.status_code == 401
        body = json.loads(response.json()["response"]["body"])
        assert body == {"errors": [{"error": "invalid_client"}]}


class TestAsyncMatchEndpoint:
    """Tests for POST /async/fhir."""

    @pytest.mark.anyio
    async def test_bundle_is_queued(
        self,
        client_factory: ClientFactory,
        mock_event_channel: AsyncMock,
        patient_bundle: dict[str, Any],
    ) -> None:
        async with client_factory() as client:
            response = await client.post("/async/fhir", json=patient_bundle)

        assert response.status_code == 204
        assert response.content == b""
        mock_event_channel.publish.assert_awaited_once_with("2xx-async", patient_bundle)

    @pytest.mark.anyio
    async def test_invalid_bundle_is_not_queued(
        self,
        client_factory: ClientFactory,
        mock_datastore_service: AsyncMock,
        mock_event_channel: AsyncMock,
        patient_bundle: dict[str, Any],
    ) -> None:
        mock_datastore_service.validate_bundle.return_value = upstream_response(
            400, {"resourceType": "OperationOutcome"}, method="POST"
        )

        async with client_factory() as client:
            response = await client.post("/async/fhir", json=patient_bundle)

        assert response.status_code == 400
        mock_event_channel.publish.assert_not_awaited()
