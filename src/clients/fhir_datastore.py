"""Dependency provider for the FHIR datastore service."""

from functools import lru_cache

from src.services.fhir_datastore_service import FHIRDatastoreService
from src.settings import settings


@lru_cache(maxsize=1)
def get_fhir_datastore_service() -> FHIRDatastoreService:
    """Get singleton FHIRDatastoreService instance."""
    return FHIRDatastoreService(
        settings.fhir_datastore_url, settings.fhir_datastore_timeout
    )


async def close_fhir_datastore_service() -> None:
    """Close the datastore HTTP client if one was created."""
    if get_fhir_datastore_service.cache_info().currsize:
        await get_fhir_datastore_service().close()
    get_fhir_datastore_service.cache_clear()
