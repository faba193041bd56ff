"""
Patient matching pipeline.

A bundle moves through these states:

    RECEIVED -> VALIDATED -> NO_PATIENT | PATIENT_RESOLVED -> PERSISTED
             -> PUBLISHED -> DONE

FAILED is absorbing. Every upstream exchange is recorded as a named
orchestration, and a failed outcome names the stage that failed.

Persistence and publication are not transactional: a bundle persisted to the
datastore stays persisted when the publish fails.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.exceptions import (
    MediatorError,
    MissingIdError,
    PublishError,
    ValidationError,
    error_body,
    error_status,
)
from src.schemas.mediator import HandlerResult, Orchestration, TransactionStatus
from src.services.event_channel import EventChannel
from src.services.fhir_datastore_service import FHIRDatastoreService
from src.services.link_resolver import linked_references
from src.services.mpi_service import MPIService
from src.services.upstream import UpstreamResponse
from src.transform.bundle import (
    extract_patient_entries,
    extract_patient_references,
    modify_bundle,
    restore_patient_entries,
    rewrite_references,
)
from src.transform.patient import (
    PatientTransformRecord,
    project_patient_for_mpi,
    restore_patient_resource,
)

logger = logging.getLogger(__name__)

VALIDATE_BUNDLE = "Validate bundle"
LOOKUP_PATIENT = "Lookup patient"
REGISTER_PATIENT = "Register patient"
UPDATE_PATIENT = "Update patient"
PERSIST_BUNDLE = "Persist bundle"
PUBLISH_BUNDLE = "Publish bundle"

MISSING_FULL_URL = 'Patient entry in bundle is missing the "fullUrl"!'


class PipelineState(str, Enum):
    """Lifecycle of one bundle through the pipeline."""

    RECEIVED = "received"
    VALIDATED = "validated"
    NO_PATIENT = "no_patient"
    PATIENT_RESOLVED = "patient_resolved"
    PERSISTED = "persisted"
    PUBLISHED = "published"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PipelineOutcome:
    """Final state of a pipeline run plus the response for the caller."""

    state: PipelineState
    result: HandlerResult
    failed_stage: str | None = None

    @property
    def failed(self) -> bool:
        return self.state == PipelineState.FAILED

    @property
    def orchestrations(self) -> list[Orchestration]:
        return self.result.body.orchestrations


@dataclass
class _Failure:
    stage: str
    status: int
    body: Any


@dataclass
class _StageResult:
    """Result of one per-patient task: records and any failure."""

    orchestrations: list[Orchestration] = field(default_factory=list)
    record: PatientTransformRecord | None = None
    failure: _Failure | None = None


def _aggregate(failures: list[_Failure]) -> _Failure:
    """Combine several failures into one, keeping the first failure's status."""
    return _Failure(
        stage=failures[0].stage,
        status=failures[0].status,
        body={"errors": [failure.body for failure in failures]},
    )


class MatchingPipeline:
    """Validates, matches, persists and publishes clinical bundles."""

    def __init__(
        self,
        datastore: FHIRDatastoreService,
        mpi: MPIService,
        events: EventChannel,
        bundle_topic: str,
        async_bundle_topic: str,
        stub_profile: str | None = None,
    ):
        self._datastore = datastore
        self._mpi = mpi
        self._events = events
        self._bundle_topic = bundle_topic
        self._async_bundle_topic = async_bundle_topic
        self._stub_profile = stub_profile

    def _failed(
        self,
        failure: _Failure,
        orchestrations: list[Orchestration],
    ) -> PipelineOutcome:
        logger.error("%s failed with status %d", failure.stage, failure.status)
        return PipelineOutcome(
            state=PipelineState.FAILED,
            result=HandlerResult.build(
                TransactionStatus.FAILED,
                failure.status,
                failure.body,
                orchestrations,
            ),
            failed_stage=failure.stage,
        )

    async def validate(self, bundle: dict[str, Any]) -> PipelineOutcome:
        """
        Validate a bundle against the datastore.

        Returns:
            VALIDATED outcome on a 200 answer, otherwise FAILED carrying the
            datastore's status and body
        """
        logger.info("Validating FHIR resources")
        orchestrations: list[Orchestration] = []
        try:
            response = await self._datastore.validate_bundle(bundle)
        except MediatorError as e:
            return self._failed(
                _Failure(VALIDATE_BUNDLE, error_status(e), error_body(e)),
                orchestrations,
            )

        orchestrations.append(Orchestration.from_upstream(VALIDATE_BUNDLE, response))
        if response.status != 200:
            error = ValidationError(
                f"Bundle rejected by the datastore with status {response.status}",
                status=response.status,
                body=response.body,
            )
            logger.error("%s", error)
            return self._failed(
                _Failure(VALIDATE_BUNDLE, error_status(error), error_body(error)),
                orchestrations,
            )

        logger.info("Successfully validated bundle")
        return PipelineOutcome(
            state=PipelineState.VALIDATED,
            result=HandlerResult.build(
                TransactionStatus.SUCCESS,
                response.status,
                response.body,
                orchestrations,
            ),
        )

    async def match_sync(self, bundle: dict[str, Any]) -> PipelineOutcome:
        """Validate then run the full pipeline for a bundle."""
        logger.info("FHIR bundle received for synchronous matching of the patient")
        validated = await self.validate(bundle)
        if validated.failed:
            return validated
        return await self.process_bundle(bundle, list(validated.orchestrations))

    async def match_async(self, bundle: dict[str, Any]) -> PipelineOutcome:
        """
        Validate a bundle and queue it for asynchronous matching.

        Returns:
            The validation failure, a 500 FAILED outcome when the bundle cannot
            be queued, or a 204 outcome once it is queued
        """
        logger.info("FHIR bundle received for asynchronous matching of the patient")
        validated = await self.validate(bundle)
        if validated.failed:
            return validated

        orchestrations = list(validated.orchestrations)
        try:
            await self._events.publish(self._async_bundle_topic, bundle)
        except PublishError as e:
            orchestrations.append(
                Orchestration.for_publish(
                    PUBLISH_BUNDLE, self._async_bundle_topic, 500, {"error": str(e)}
                )
            )
            return self._failed(
                _Failure(PUBLISH_BUNDLE, 500, {"error": str(e)}), orchestrations
            )

        orchestrations.append(
            Orchestration.for_publish(PUBLISH_BUNDLE, self._async_bundle_topic, 204, {})
        )
        return PipelineOutcome(
            state=PipelineState.PUBLISHED,
            result=HandlerResult.build(TransactionStatus.SUCCESS, 204, {}, orchestrations),
        )

    async def process_bundle(
        self,
        bundle: dict[str, Any],
        orchestrations: list[Orchestration] | None = None,
    ) -> PipelineOutcome:
        """
        Resolve patients, persist and publish an already validated bundle.

        Args:
            bundle: The clinical bundle
            orchestrations: Records from earlier stages to carry forward

        Returns:
            DONE outcome mirroring the datastore's answer, or FAILED
        """
        orchestrations = orchestrations or []
        patient_map: dict[str, PatientTransformRecord] = {}

        patient_entries = extract_patient_entries(bundle)
        if patient_entries:
            failure = await self._register_patients(
                patient_entries, patient_map, orchestrations
            )
            state = PipelineState.PATIENT_RESOLVED
        elif refs := extract_patient_references(bundle):
            bundle, failure = await self._lookup_references(bundle, refs, orchestrations)
            state = PipelineState.PATIENT_RESOLVED
        else:
            logger.info(
                "No patient found in FHIR bundle, sending directly to the datastore"
            )
            failure = None
            state = PipelineState.NO_PATIENT

        if failure is not None:
            return self._failed(failure, orchestrations)
        logger.debug("Pipeline state: %s", state.value)

        try:
            modified = modify_bundle(bundle, patient_map, self._stub_profile)
        except MissingIdError as e:
            return self._failed(
                _Failure(REGISTER_PATIENT, 500, {"error": str(e)}), orchestrations
            )
        for record in patient_map.values():
            restore_patient_resource(record)

        return await self._persist_and_publish(modified, patient_map, orchestrations)

    async def _register_patients(
        self,
        entries: list[dict[str, Any]],
        patient_map: dict[str, PatientTransformRecord],
        orchestrations: list[Orchestration],
    ) -> _Failure | None:
        """Register every patient entry with the MPI, collecting all results."""
        results = await asyncio.gather(*(self._register_patient(e) for e in entries))

        failures: list[_Failure] = []
        for entry, result in zip(entries, results):
            orchestrations.extend(result.orchestrations)
            if result.failure is not None:
                failures.append(result.failure)
            elif result.record is not None:
                patient_map[entry["fullUrl"]] = result.record

        if failures:
            logger.error(
                "Patient resource creation in the MPI failed for %d of %d entries",
                len(failures),
                len(entries),
            )
            return _aggregate(failures)
        return None

    async def _register_patient(self, entry: dict[str, Any]) -> _StageResult:
        full_url = entry.get("fullUrl")
        if not full_url:
            logger.error(MISSING_FULL_URL)
            return _StageResult(
                failure=_Failure(REGISTER_PATIENT, 400, {"error": MISSING_FULL_URL})
            )

        result = _StageResult()
        transform = project_patient_for_mpi(entry.get("resource") or {})
        stage = REGISTER_PATIENT
        try:
            mpi_id = await self._linked_mpi_id(entry, result)
            if mpi_id:
                stage = UPDATE_PATIENT
                response = await self._mpi.update_patient(mpi_id, transform.patient)
            else:
                response = await self._mpi.create_patient(transform.patient)
        except MediatorError as e:
            result.failure = _Failure(stage, error_status(e), error_body(e))
            return result

        result.orchestrations.append(Orchestration.from_upstream(stage, response))
        if not response.ok:
            result.failure = _Failure(stage, response.status, response.body)
            return result

        result.record = PatientTransformRecord(
            mpi_transform_result=transform,
            mpi_response_patient=(
                response.body if isinstance(response.body, dict) else {}
            ),
        )
        return result

    async def _linked_mpi_id(
        self, entry: dict[str, Any], result: _StageResult
    ) -> str | None:
        """Return the MPI id a stored stub for this entry links to, if any."""
        resource = entry.get("resource") or {}
        patient_id = resource.get("id") or entry["fullUrl"].rstrip("/").split("/")[-1]

        response = await self._datastore.get_patient(patient_id)
        result.orchestrations.append(Orchestration.from_upstream(LOOKUP_PATIENT, response))
        if not response.ok or not isinstance(response.body, dict):
            return None

        links = linked_references(response.body)
        if not links:
            return None
        logger.info("Patient %s already linked to %s, updating", patient_id, links[0])
        return links[0].split("/")[-1]

    async def _lookup_references(
        self,
        bundle: dict[str, Any],
        refs: list[str],
        orchestrations: list[Orchestration],
    ) -> tuple[dict[str, Any], _Failure | None]:
        """Check bare patient references against the MPI and canonicalize them."""

        async def lookup(ref: str) -> UpstreamResponse | _Failure:
            try:
                return await self._mpi.get_patient(ref.split("/")[-1])
            except MediatorError as e:
                return _Failure(LOOKUP_PATIENT, error_status(e), error_body(e))

        results = await asyncio.gather(*(lookup(ref) for ref in refs))

        failures: list[_Failure] = []
        for ref, response in zip(refs, results):
            if isinstance(response, _Failure):
                failures.append(response)
                continue
            orchestrations.append(Orchestration.from_upstream(LOOKUP_PATIENT, response))
            if not response.ok:
                failures.append(_Failure(LOOKUP_PATIENT, response.status, response.body))
                continue
            bundle = rewrite_references(
                bundle, ref, self._mpi.patient_url(ref.split("/")[-1])
            )

        if failures:
            return bundle, _aggregate(failures)
        return bundle, None

    async def _persist_and_publish(
        self,
        bundle: dict[str, Any],
        patient_map: dict[str, PatientTransformRecord],
        orchestrations: list[Orchestration],
    ) -> PipelineOutcome:
        try:
            response = await self._datastore.persist_bundle(bundle)
        except MediatorError as e:
            return self._failed(
                _Failure(PERSIST_BUNDLE, error_status(e), error_body(e)),
                orchestrations,
            )

        orchestrations.append(Orchestration.from_upstream(PERSIST_BUNDLE, response))
        if not response.ok:
            logger.error("Error sending FHIR bundle to the datastore: %s", response.body)
            return self._failed(
                _Failure(PERSIST_BUNDLE, response.status, response.body),
                orchestrations,
            )
        logger.info("Successfully sent FHIR bundle to the datastore")

        full_bundle = restore_patient_entries(bundle, patient_map)
        try:
            await self._events.publish(self._bundle_topic, full_bundle)
        except PublishError as e:
            body = {"kafkaResponseError": str(e)}
            orchestrations.append(
                Orchestration.for_publish(PUBLISH_BUNDLE, self._bundle_topic, 500, body)
            )
            return self._failed(_Failure(PUBLISH_BUNDLE, 500, body), orchestrations)

        logger.info("Successfully sent FHIR bundle to %s", self._bundle_topic)
        orchestrations.append(
            Orchestration.for_publish(
                PUBLISH_BUNDLE, self._bundle_topic, 200, {"topic": self._bundle_topic}
            )
        )
        return PipelineOutcome(
            state=PipelineState.DONE,
            result=HandlerResult.build(
                TransactionStatus.SUCCESS,
                response.status,
                response.body,
                orchestrations,
            ),
        )
