"""
Master Patient Index client.

The same client serves the primary MPI and the secondary MPI; they differ only
in base URL and in whether a TokenCache is attached.
"""

import logging
from typing import Any

from src.exceptions import UpstreamError
from src.services.upstream import FHIRUpstreamService, UpstreamResponse

logger = logging.getLogger(__name__)


def relative_patient_ref(ref: str) -> str:
    """Reduce an absolute or relative patient reference to ``Patient/<id>``."""
    parts = [part for part in ref.split("/") if part]
    if len(parts) >= 2 and parts[-2] == "Patient":
        return f"Patient/{parts[-1]}"
    return ref


class MPIService(FHIRUpstreamService):
    """HTTP client for a FHIR-speaking Master Patient Index."""

    def patient_url(self, patient_id: str) -> str:
        """Canonical absolute URL of an MPI patient, used in rewritten bundles."""
        return f"{self.base_url}/fhir/Patient/{patient_id}"

    async def get_patient(self, patient_id: str) -> UpstreamResponse:
        return await self.get(f"/fhir/Patient/{patient_id}")

    async def create_patient(self, patient: dict[str, Any]) -> UpstreamResponse:
        return await self.post("/fhir/Patient", patient)

    async def update_patient(
        self, patient_id: str, patient: dict[str, Any]
    ) -> UpstreamResponse:
        return await self.put(f"/fhir/Patient/{patient_id}", patient)

    async def search_patients(
        self, params: list[tuple[str, str]]
    ) -> UpstreamResponse:
        return await self.get("/fhir/Patient", params=params)

    async def fetch_resource(self, ref: str) -> dict[str, Any] | None:
        """
        Fetch a resource by reference.

        Args:
            ref: Reference such as ``Patient/1``

        Returns:
            The resource, or None when the MPI does not answer 200

        Raises:
            UpstreamError: On transport errors or an unparseable body
        """
        response = await self.get(f"/fhir/{relative_patient_ref(ref)}")
        if response.status != 200:
            if response.status != 404:
                logger.warning(
                    "MPI answered %d for %s, treating as unlinked", response.status, ref
                )
            return None
        if not isinstance(response.body, dict):
            raise UpstreamError(
                f"MPI returned a non-JSON body for {ref}",
                status=response.status,
                body=response.body,
            )
        return response.body
