"""
Shared HTTP plumbing for the FHIR-speaking upstreams (MPI and datastore).

Every call returns an UpstreamResponse, a typed snapshot of the exchange that
the pipeline uses both for control flow and for orchestration records.
Transport failures and timeouts raise UpstreamError instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from src.core.auth import TokenCache
from src.exceptions import UpstreamError

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


def is_http_status_ok(status: int) -> bool:
    """Check whether an HTTP status is in the 2xx range."""
    return 200 <= status < 300


@dataclass
class UpstreamResponse:
    """Result of a single upstream HTTP exchange."""

    method: str
    url: str
    status: int
    body: Any
    request_body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    responded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return is_http_status_ok(self.status)


class FHIRUpstreamService:
    """Base async client for a FHIR server reachable under ``<base_url>/fhir``."""

    def __init__(
        self,
        base_url: str,
        timeout: float,
        token_cache: TokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token_cache = token_cache
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={"Content-Type": FHIR_JSON, "Accept": FHIR_JSON},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self.token_cache is not None:
            await self.token_cache.close()

    async def _auth_headers(self) -> dict[str, str]:
        if self.token_cache is None:
            return {}
        token = await self.token_cache.get_token()
        return self.token_cache.auth_header(token)

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, str] | list[tuple[str, str]] | None = None,
    ) -> UpstreamResponse:
        """
        Send a request to the upstream and capture the exchange.

        Args:
            method: HTTP method
            path: Path relative to the base URL (e.g. ``/fhir/Patient/1``)
            json: Optional JSON body
            params: Optional query parameters

        Returns:
            UpstreamResponse with the decoded JSON body (or raw text)

        Raises:
            UpstreamError: On transport errors or timeouts
            AuthError: If a bearer token cannot be obtained
        """
        client = await self._get_client()
        headers = await self._auth_headers()
        requested_at = datetime.now(timezone.utc)

        try:
            response = await client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.error("%s %s%s timed out", method, self.base_url, path)
            raise UpstreamError(f"Request to {self.base_url}{path} timed out") from e
        except httpx.HTTPError as e:
            logger.error("%s %s%s failed: %s", method, self.base_url, path, e)
            raise UpstreamError(f"Request to {self.base_url}{path} failed: {e}") from e

        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = response.text

        return UpstreamResponse(
            method=method,
            url=str(response.request.url),
            status=response.status_code,
            body=body,
            request_body=json,
            headers={"content-type": response.headers.get("content-type", FHIR_JSON)},
            requested_at=requested_at,
            responded_at=datetime.now(timezone.utc),
        )

    async def get(
        self, path: str, params: dict[str, str] | list[tuple[str, str]] | None = None
    ) -> UpstreamResponse:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any) -> UpstreamResponse:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any) -> UpstreamResponse:
        return await self.request("PUT", path, json=json)

    async def health_check(self) -> bool:
        """Check if the upstream answers its capability statement."""
        try:
            response = await self.get("/fhir/metadata")
            return response.ok
        except Exception:
            return False
