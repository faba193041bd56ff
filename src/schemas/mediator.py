"""Schemas for the mediator response envelope and orchestration records."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from httpx import URL
from pydantic import BaseModel, ConfigDict, Field

from src.services.upstream import UpstreamResponse
from src.settings import settings

OPENHIM_JSON = "application/openhim+json"


class TransactionStatus(str, Enum):
    """Overall status reported in the envelope."""

    SUCCESS = "Success"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


def timestamp() -> str:
    """Current time as an ISO-8601 string with milliseconds and offset."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def encode_body(body: Any) -> str:
    """Serialize a response body to the string form used in the envelope."""
    if isinstance(body, str):
        return body
    return json.dumps(body if body is not None else {}, default=str)


class ResponseSnapshot(BaseModel):
    """Response part of an envelope or orchestration."""

    status: int
    headers: dict[str, str] = {"content-type": "application/json"}
    body: str = "{}"
    timestamp: str = Field(default_factory=timestamp)


class RequestSnapshot(BaseModel):
    """Request part of an orchestration."""

    host: str | None = None
    port: int | None = None
    path: str
    method: str
    headers: dict[str, str] = {}
    body: str | None = None
    timestamp: str = Field(default_factory=timestamp)


class Orchestration(BaseModel):
    """One sub-request performed while handling a caller's request."""

    name: str
    request: RequestSnapshot
    response: ResponseSnapshot | None = None

    @classmethod
    def from_upstream(cls, name: str, response: UpstreamResponse) -> "Orchestration":
        """Record an upstream HTTP exchange."""
        url = URL(response.url)
        path = url.raw_path.decode("ascii")
        return cls(
            name=name,
            request=RequestSnapshot(
                host=url.host,
                port=url.port,
                path=path,
                method=response.method,
                headers={"content-type": "application/fhir+json"},
                body=(
                    encode_body(response.request_body)
                    if response.request_body is not None
                    else None
                ),
                timestamp=response.requested_at.isoformat(timespec="milliseconds"),
            ),
            response=ResponseSnapshot(
                status=response.status,
                headers=response.headers or {"content-type": "application/fhir+json"},
                body=encode_body(response.body),
                timestamp=response.responded_at.isoformat(timespec="milliseconds"),
            ),
        )

    @classmethod
    def for_publish(cls, name: str, topic: str, status: int, body: Any) -> "Orchestration":
        """Record a publish to an event topic."""
        return cls(
            name=name,
            request=RequestSnapshot(path=topic, method="PUBLISH"),
            response=ResponseSnapshot(status=status, body=encode_body(body)),
        )


class MediatorResponse(BaseModel):
    """Response envelope returned to HTTP callers."""

    model_config = ConfigDict(populate_by_name=True)

    mediator_urn: str = Field(alias="x-mediator-urn")
    status: TransactionStatus
    response: ResponseSnapshot
    orchestrations: list[Orchestration] = []

    def dump(self) -> dict[str, Any]:
        """Serialize with the wire field names."""
        return self.model_dump(mode="json", by_alias=True)


def build_mediator_response(
    transaction_status: TransactionStatus,
    http_status: int,
    body: Any,
    content_type: str = "application/json",
    orchestrations: list[Orchestration] | None = None,
) -> MediatorResponse:
    """Wrap a response body in the mediator envelope."""
    return MediatorResponse(
        mediator_urn=settings.mediator_urn,
        status=transaction_status,
        response=ResponseSnapshot(
            status=http_status,
            headers={"content-type": content_type},
            body=encode_body(body),
        ),
        orchestrations=orchestrations or [],
    )


class HandlerResult(BaseModel):
    """Envelope plus the HTTP status mirrored to the caller."""

    status: int
    body: MediatorResponse

    @property
    def failed(self) -> bool:
        return self.body.status == TransactionStatus.FAILED

    @classmethod
    def build(
        cls,
        transaction_status: TransactionStatus,
        http_status: int,
        body: Any,
        orchestrations: list[Orchestration] | None = None,
        content_type: str = "application/json",
    ) -> "HandlerResult":
        return cls(
            status=http_status,
            body=build_mediator_response(
                transaction_status, http_status, body, content_type, orchestrations
            ),
        )
