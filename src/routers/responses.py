"""Rendering of mediator envelopes as HTTP responses."""

from fastapi import Response, status
from fastapi.responses import JSONResponse

from src.schemas.mediator import OPENHIM_JSON, HandlerResult


def mediator_response(result: HandlerResult) -> Response:
    """Render a handler result, mirroring the envelope's status."""
    if result.status == status.HTTP_204_NO_CONTENT:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return JSONResponse(
        status_code=result.status,
        content=result.body.dump(),
        media_type=OPENHIM_JSON,
    )
