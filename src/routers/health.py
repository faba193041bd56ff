"""Health check endpoint."""

import asyncio

from fastapi import APIRouter

from src.routers.deps import FHIRDatastoreServiceDep, MPIServiceDep
from src.schemas.health import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    datastore: FHIRDatastoreServiceDep,
    mpi: MPIServiceDep,
) -> HealthResponse:
    """Check service health including datastore and MPI connectivity."""
    datastore_healthy, mpi_healthy = await asyncio.gather(
        datastore.health_check(), mpi.health_check()
    )

    return HealthResponse(
        status="healthy" if datastore_healthy and mpi_healthy else "degraded",
        fhir_datastore=datastore_healthy,
        mpi=mpi_healthy,
    )
