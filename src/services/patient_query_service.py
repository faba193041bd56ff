"""
Patient queries across the MPI and the datastore.

Patient demographics live in the MPI while clinical data lives in the
datastore under gutted stub patients. These queries stitch the two together
and, when asked to, expand a patient into its whole golden-id link set
before querying.
"""

import asyncio
import json
import logging
from typing import Any

from src.exceptions import MediatorError, UpstreamError, error_body, error_status
from src.schemas.mediator import HandlerResult, Orchestration, TransactionStatus
from src.services.fhir_datastore_service import FHIRDatastoreService
from src.services.link_resolver import LinkResolver, linked_references
from src.services.mpi_service import MPIService, relative_patient_ref
from src.services.upstream import FHIR_JSON, UpstreamResponse
from src.transform.bundle import merge_bundles
from src.transform.patient import patient_projector

logger = logging.getLogger(__name__)

MDM_SUFFIX = ":mdm"

QueryParams = list[tuple[str, str]]


def _patient_id(ref: str) -> str:
    return relative_patient_ref(ref).split("/")[-1]


def _decode_patient(result: HandlerResult) -> dict[str, Any]:
    return json.loads(result.body.response.body)


def _raise_for_status(response: UpstreamResponse, allow_not_found: bool = False) -> None:
    if response.ok or (allow_not_found and response.status == 404):
        return
    raise UpstreamError(
        f"{response.method} {response.url} answered {response.status}",
        status=response.status,
        body=response.body,
    )


class PatientQueryService:
    """Read-side queries joining MPI identities with datastore records."""

    def __init__(
        self,
        datastore: FHIRDatastoreService,
        mpi: MPIService,
        link_resolver: LinkResolver,
        patient_resources: list[str],
    ):
        self._datastore = datastore
        self._mpi = mpi
        self._link_resolver = link_resolver
        self._patient_resources = patient_resources

    @staticmethod
    def _failed(
        error: MediatorError, orchestrations: list[Orchestration]
    ) -> HandlerResult:
        return HandlerResult.build(
            TransactionStatus.FAILED,
            error_status(error),
            error_body(error),
            orchestrations,
            content_type=FHIR_JSON,
        )

    async def _link_set(self, patient_id: str, mdm: bool) -> list[str]:
        root = f"Patient/{patient_id}"
        if not mdm:
            return [root]
        return await self._link_resolver.resolve_links(root)

    async def fetch_patient_by_id(
        self, requested_id: str, projection: str | None = None
    ) -> HandlerResult:
        """
        Fetch the full patient behind a datastore patient id.

        The datastore holds a gutted stub whose link points at the MPI
        patient; the MPI patient is returned under the requested id.

        Args:
            requested_id: Patient id as known to the datastore
            projection: ``partial`` to return demographics only
        """
        orchestrations: list[Orchestration] = []
        try:
            stub = await self._datastore.get_patient(requested_id)
            orchestrations.append(Orchestration.from_upstream("Get gutted patient", stub))
            if stub.status != 200:
                return HandlerResult.build(
                    TransactionStatus.FAILED,
                    stub.status,
                    stub.body,
                    orchestrations,
                    content_type=FHIR_JSON,
                )

            upstream_id = requested_id
            links = linked_references(stub.body if isinstance(stub.body, dict) else None)
            if links:
                upstream_id = _patient_id(links[0])
                logger.debug(
                    "Swapping source id %s for MPI id %s", requested_id, upstream_id
                )

            response = await self._mpi.get_patient(upstream_id)
            orchestrations.append(Orchestration.from_upstream("Get full patient", response))
        except MediatorError as e:
            return self._failed(e, orchestrations)

        if response.status != 200 or not isinstance(response.body, dict):
            return HandlerResult.build(
                TransactionStatus.FAILED,
                response.status,
                response.body,
                orchestrations,
                content_type=FHIR_JSON,
            )

        patient = {**response.body, "id": requested_id}
        if projection == "partial":
            patient = patient_projector(patient)
        return HandlerResult.build(
            TransactionStatus.SUCCESSFUL,
            200,
            patient,
            orchestrations,
            content_type=FHIR_JSON,
        )

    async def fetch_patient_by_query(self, params: QueryParams) -> HandlerResult:
        """
        Search the MPI and attach, to each match, links to the datastore
        stubs that refer to it.
        """
        orchestrations: list[Orchestration] = []
        try:
            response = await self._mpi.search_patients(params)
            orchestrations.append(Orchestration.from_upstream("Match by query", response))
            if not response.ok:
                return HandlerResult.build(
                    TransactionStatus.FAILED,
                    response.status,
                    response.body,
                    orchestrations,
                    content_type=FHIR_JSON,
                )

            matches = (response.body or {}).get("entry") or []
            results = await asyncio.gather(
                *(self._with_datastore_links(match) for match in matches)
            )
        except MediatorError as e:
            logger.error("Failed to retrieve patient links: %s", e)
            return self._failed(e, orchestrations)

        entries: list[dict[str, Any]] = []
        for entry, entry_orchestrations in results:
            orchestrations.extend(entry_orchestrations)
            entries.append(entry)

        return HandlerResult.build(
            TransactionStatus.SUCCESSFUL,
            200,
            merge_bundles([{"entry": entries}]),
            orchestrations,
            content_type=FHIR_JSON,
        )

    async def _with_datastore_links(
        self, match: dict[str, Any]
    ) -> tuple[dict[str, Any], list[Orchestration]]:
        resource = match.get("resource") or {}
        refs = [f"Patient/{resource.get('id', '')}", *linked_references(resource)]

        response = await self._datastore.search("Patient", [("link", ",".join(refs))])
        orchestrations = [Orchestration.from_upstream("Get patient links", response)]
        _raise_for_status(response)

        stubs = (response.body or {}).get("entry") or []
        links = [
            {
                "type": "refer",
                "other": {"reference": f"Patient/{(stub.get('resource') or {}).get('id', '')}"},
            }
            for stub in stubs
        ]
        return {**match, "resource": {**resource, "link": links}}, orchestrations

    async def fetch_everything(self, patient_id: str, mdm: bool = False) -> HandlerResult:
        """
        Fetch every configured resource type for a patient.

        Args:
            patient_id: Patient id
            mdm: Expand the patient into its golden-id link set first
        """
        logger.info("Fetching resources for Patient/%s (mdm=%s)", patient_id, mdm)
        orchestrations: list[Orchestration] = []
        try:
            refs = await self._link_set(patient_id, mdm)
            responses = await asyncio.gather(
                *(
                    self._datastore.search_patient_resources(resource_type, refs)
                    for resource_type in self._patient_resources
                )
            )
            for response in responses:
                orchestrations.append(
                    Orchestration.from_upstream("Get patient resources", response)
                )
            for response in responses:
                _raise_for_status(response)
        except MediatorError as e:
            logger.error("Unable to fetch all linked patient resources: %s", e)
            return self._failed(e, orchestrations)

        bundle = merge_bundles([response.body or {} for response in responses])
        logger.info("Fetched %d resources for Patient/%s", bundle["total"], patient_id)
        return HandlerResult.build(
            TransactionStatus.SUCCESSFUL,
            200,
            bundle,
            orchestrations,
            content_type=FHIR_JSON,
        )

    async def fetch_summaries(
        self,
        patient_id: str,
        params: QueryParams | None = None,
        mdm: bool = False,
    ) -> HandlerResult:
        """
        Fetch the $summary of a patient, or of its whole link set, merged into
        one document bundle.

        Patients missing from the datastore (404) are skipped; each summary's
        Patient entry is replaced with the full MPI patient.
        """
        orchestrations: list[Orchestration] = []
        try:
            refs = await self._link_set(patient_id, mdm)
            ids = list(dict.fromkeys(_patient_id(ref) for ref in refs))
            results = await asyncio.gather(
                *(self._summary(ref_id, params) for ref_id in ids)
            )
        except MediatorError as e:
            return self._failed(e, orchestrations)

        bundles: list[dict[str, Any]] = []
        errors: list[MediatorError] = []
        for summary, summary_orchestrations, error in results:
            orchestrations.extend(summary_orchestrations)
            if error is not None:
                errors.append(error)
            elif summary is not None:
                bundles.append(summary)

        if errors:
            logger.error("Unable to fetch patient summaries for %s", patient_id)
            return self._failed(errors[0], orchestrations)

        logger.info("Fetched %d patient summaries for %s", len(bundles), patient_id)
        return HandlerResult.build(
            TransactionStatus.SUCCESSFUL,
            200,
            merge_bundles(bundles, "document"),
            orchestrations,
            content_type=FHIR_JSON,
        )

    async def _summary(
        self, patient_id: str, params: QueryParams | None
    ) -> tuple[dict[str, Any] | None, list[Orchestration], MediatorError | None]:
        """Summarize one patient, returning the calls made and any error."""
        full_patient = await self.fetch_patient_by_id(patient_id)
        orchestrations = list(full_patient.body.orchestrations)
        if full_patient.failed and full_patient.status != 404:
            error = UpstreamError(
                f"Unable to fetch Patient/{patient_id}",
                status=full_patient.status,
                body=full_patient.body.response.body,
            )
            return None, orchestrations, error

        try:
            response = await self._datastore.get_patient_summary(patient_id, params)
            orchestrations.append(Orchestration.from_upstream("Get summary", response))
            _raise_for_status(response, allow_not_found=True)
        except MediatorError as e:
            return None, orchestrations, e
        if not response.ok or not isinstance(response.body, dict):
            return None, orchestrations, None

        bundle = response.body
        if not full_patient.failed:
            patient = _decode_patient(full_patient)
            bundle = {
                **bundle,
                "entry": [
                    {**entry, "resource": patient}
                    if (entry.get("resource") or {}).get("resourceType") == "Patient"
                    else entry
                    for entry in bundle.get("entry") or []
                ],
            }
        return bundle, orchestrations, None

    async def expand_mdm_query(self, params: QueryParams) -> QueryParams:
        """
        Expand a ``<param>:mdm=Patient/1`` search parameter.

        ``subject:mdm=Patient/1`` becomes ``subject=Patient/1,Patient/2,...``
        where the list is the link set of Patient/1. Parameters without the
        suffix pass through unchanged.
        """
        expanded: QueryParams = []
        for key, value in params:
            if not key.endswith(MDM_SUFFIX):
                expanded.append((key, value))
                continue
            search_param = key.removesuffix(MDM_SUFFIX)
            refs = await self._link_resolver.resolve_links(value)
            logger.debug("MDM expanded %s=%s", search_param, ",".join(refs))
            expanded.append((search_param, ",".join(refs)))
        return expanded

    async def search(self, resource_type: str, params: QueryParams) -> HandlerResult:
        """Forward a search to the datastore after MDM expansion."""
        orchestrations: list[Orchestration] = []
        try:
            expanded = await self.expand_mdm_query(params)
            response = await self._datastore.search(resource_type, expanded)
        except MediatorError as e:
            logger.error("Unable to perform an MDM expansion request: %s", e)
            return self._failed(e, orchestrations)

        orchestrations.append(Orchestration.from_upstream(f"Search {resource_type}", response))
        return HandlerResult.build(
            TransactionStatus.SUCCESSFUL if response.ok else TransactionStatus.FAILED,
            response.status,
            response.body,
            orchestrations,
            content_type=FHIR_JSON,
        )
