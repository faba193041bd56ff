"""Bundle submission endpoints."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, HTTPException, Response, status

from src.routers.deps import MatchingPipelineDep
from src.routers.responses import mediator_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["FHIR"])

BundleBody = Annotated[dict[str, Any], Body(media_type="application/fhir+json")]


def _require_bundle(bundle: dict[str, Any]) -> None:
    if bundle.get("resourceType") != "Bundle":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be a FHIR Bundle",
        )


@router.post("/fhir/validate")
async def validate_bundle(
    bundle: BundleBody,
    pipeline: MatchingPipelineDep,
) -> Response:
    """Validate a bundle against the datastore without persisting it."""
    _require_bundle(bundle)
    outcome = await pipeline.validate(bundle)
    return mediator_response(outcome.result)


@router.post("/fhir")
async def match_bundle(
    bundle: BundleBody,
    pipeline: MatchingPipelineDep,
) -> Response:
    """
    Synchronously match and store a bundle.

    The bundle is validated, its patients are registered with the MPI, the
    gutted bundle is persisted to the datastore and the full bundle is
    published to the bundle topic.
    """
    _require_bundle(bundle)
    outcome = await pipeline.match_sync(bundle)
    if outcome.failed:
        logger.warning("Synchronous matching failed at %s", outcome.failed_stage)
    return mediator_response(outcome.result)


@router.post("/async/fhir")
async def match_bundle_async(
    bundle: BundleBody,
    pipeline: MatchingPipelineDep,
) -> Response:
    """
    Validate a bundle and queue it for asynchronous matching.

    Answers 204 once the bundle is queued; processing failures are only
    visible on the error topic.
    """
    _require_bundle(bundle)
    outcome = await pipeline.match_async(bundle)
    return mediator_response(outcome.result)
