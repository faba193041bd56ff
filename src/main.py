"""MPI Mediator - patient identity matching for clinical data submissions."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.clients.event_channel import (
    close_event_channel,
    create_bundle_consumer,
    get_event_channel,
)
from src.clients.fhir_datastore import (
    close_fhir_datastore_service,
    get_fhir_datastore_service,
)
from src.clients.mpi import close_mpi_services, get_mpi_service
from src.exceptions import (
    AuthError,
    ConfigError,
    UpstreamError,
    error_body,
    error_status,
)
from src.routers import fhir_routes, health, patient_routes
from src.routers.deps import get_matching_pipeline
from src.schemas.mediator import OPENHIM_JSON, TransactionStatus, build_mediator_response
from src.settings import settings

logger = logging.getLogger(__name__)


def _start_consumer() -> asyncio.Task[None]:
    pipeline = get_matching_pipeline(
        get_fhir_datastore_service(), get_mpi_service(), get_event_channel()
    )
    consumer = create_bundle_consumer(pipeline.process_bundle)
    task = asyncio.create_task(consumer.run(), name="bundle-consumer")
    task.add_done_callback(_log_consumer_exit)
    return task


def _log_consumer_exit(task: asyncio.Task[None]) -> None:
    """Report a consumer that ended on its own, halting asynchronous intake."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "Bundle consumer stopped, asynchronous matching is halted",
            exc_info=error,
        )


async def _stop_consumer(task: asyncio.Task[None]) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning("Bundle consumer had stopped: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan management."""
    # Startup
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("aiokafka").setLevel(logging.WARNING)

    consumer_task = None
    if settings.kafka_consumer_enabled:
        consumer_task = _start_consumer()

    yield

    # Shutdown
    if consumer_task is not None:
        await _stop_consumer(consumer_task)
    await close_event_channel()
    await close_fhir_datastore_service()
    await close_mpi_services()


app = FastAPI(
    title="MPI Mediator",
    description="Links clinical data submissions to patient identities held in a Master Patient Index",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_response(http_status: int, body: object) -> JSONResponse:
    envelope = build_mediator_response(TransactionStatus.FAILED, http_status, body)
    return JSONResponse(
        status_code=http_status,
        content=envelope.dump(),
        media_type=OPENHIM_JSON,
    )


@app.exception_handler(AuthError)
async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
    """Handle token exchange failures against an MPI."""
    logger.error("MPI authentication failed: %s", exc)
    return _error_response(error_status(exc), error_body(exc))


@app.exception_handler(ConfigError)
async def handle_config_error(request: Request, exc: ConfigError) -> JSONResponse:
    """Handle missing or invalid configuration."""
    logger.error("Configuration error: %s", exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": str(exc)})


@app.exception_handler(UpstreamError)
async def handle_upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
    """Handle network/connection errors and unexpected upstream answers."""
    logger.error("Upstream request failed: %s", exc)
    return _error_response(error_status(exc), error_body(exc))


@app.exception_handler(Exception)
async def handle_unhandled_exceptions(request: Request, exc: Exception) -> JSONResponse:
    """Catch and log all unhandled exceptions."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": "Internal server error"}
    )


# Register routers; patient routes precede the generic resource search
app.include_router(health.router)
app.include_router(fhir_routes.router)
app.include_router(patient_routes.router)


@app.get("/")
def root() -> dict[str, str]:
    """Root endpoint."""
    return {"service": "mpi-mediator", "version": "0.1.0"}
