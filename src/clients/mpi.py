"""Dependency providers for the MPI services."""

from functools import lru_cache

from src.core.auth import TokenCache
from src.services.mpi_service import MPIService
from src.settings import settings


def _token_cache(base_url: str, client_id: str, client_secret: str) -> TokenCache:
    return TokenCache(
        base_url,
        client_id,
        client_secret,
        scopes=settings.token_scopes,
        timeout=settings.mpi_timeout,
    )


@lru_cache(maxsize=1)
def get_mpi_service() -> MPIService:
    """Get singleton MPIService for the primary MPI."""
    token_cache = None
    if settings.mpi_auth_enabled:
        token_cache = _token_cache(
            settings.mpi_url, settings.mpi_client_id, settings.mpi_client_secret
        )
    return MPIService(settings.mpi_url, settings.mpi_timeout, token_cache=token_cache)


@lru_cache(maxsize=1)
def get_secondary_mpi_service() -> MPIService:
    """Get singleton MPIService for the secondary MPI, which always authenticates."""
    token_cache = _token_cache(
        settings.secondary_mpi_url,
        settings.secondary_mpi_client_id,
        settings.secondary_mpi_client_secret,
    )
    return MPIService(
        settings.secondary_mpi_url,
        settings.secondary_mpi_timeout,
        token_cache=token_cache,
    )


def get_mdm_mpi_service() -> MPIService:
    """Get the MPI consulted for golden-id link expansion."""
    if settings.mdm_registry == "secondary_mpi":
        return get_secondary_mpi_service()
    return get_mpi_service()


async def close_mpi_services() -> None:
    """Close the HTTP clients of any MPI service created so far."""
    for provider in (get_mpi_service, get_secondary_mpi_service):
        if provider.cache_info().currsize:
            await provider().close()
        provider.cache_clear()
