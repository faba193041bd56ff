"""
FHIR datastore service.

The datastore holds clinical data only: patients are stored as gutted stubs
linking to their MPI identity, and transaction bundles are submitted as-is
after the pipeline has rewritten them.
"""

import logging
from typing import Any

from src.services.upstream import FHIRUpstreamService, UpstreamResponse

logger = logging.getLogger(__name__)

# Search parameter linking each resource type to its patient
PATIENT_RESOURCES: dict[str, str] = {
    "Encounter": "subject",
    "Observation": "subject",
    "Condition": "subject",
    "Procedure": "subject",
    "DiagnosticReport": "subject",
    "MedicationRequest": "subject",
    "MedicationStatement": "subject",
    "Immunization": "patient",
    "AllergyIntolerance": "patient",
    "Appointment": "patient",
    "CarePlan": "subject",
    "Composition": "subject",
    "ServiceRequest": "subject",
}


class FHIRDatastoreService(FHIRUpstreamService):
    """HTTP client for the clinical FHIR datastore."""

    async def validate_bundle(self, bundle: dict[str, Any]) -> UpstreamResponse:
        """Run the datastore's $validate operation on a bundle."""
        logger.info(
            "Validating FHIR bundle with %d entries", len(bundle.get("entry") or [])
        )
        return await self.post("/fhir/Bundle/$validate", bundle)

    async def persist_bundle(self, bundle: dict[str, Any]) -> UpstreamResponse:
        """Submit a transaction bundle."""
        logger.info(
            "Persisting transaction bundle with %d entries",
            len(bundle.get("entry") or []),
        )
        return await self.post("/fhir", bundle)

    async def get_patient(self, patient_id: str) -> UpstreamResponse:
        return await self.get(f"/fhir/Patient/{patient_id}")

    async def search(
        self,
        resource_type: str,
        params: list[tuple[str, str]] | None = None,
    ) -> UpstreamResponse:
        """Search a resource type with the given query parameters."""
        return await self.get(f"/fhir/{resource_type}", params=params)

    async def search_patient_resources(
        self, resource_type: str, patient_refs: list[str]
    ) -> UpstreamResponse:
        """Search one resource type for any of the given patient references."""
        param = PATIENT_RESOURCES.get(resource_type, "subject")
        return await self.search(resource_type, [(param, ",".join(patient_refs))])

    async def get_patient_summary(
        self, patient_id: str, params: list[tuple[str, str]] | None = None
    ) -> UpstreamResponse:
        """Run the $summary operation for a patient."""
        return await self.get(f"/fhir/Patient/{patient_id}/$summary", params=params)
