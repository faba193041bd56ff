"""
OAuth2 client-credentials tokens for authenticated upstreams.

Each upstream (MPI, secondary MPI) owns one TokenCache. The cache performs the
client-credentials exchange on first use, refreshes the token once it has
expired (falling back to a new client-credentials exchange when the refresh is
rejected), and serializes concurrent callers so only one exchange is in
flight per upstream.

Usage:
    from src.core.auth import TokenCache

    cache = TokenCache(settings.mpi_url, client_id, client_secret)
    token = await cache.get_token()
    headers = cache.auth_header(token)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from src.exceptions import AuthError, ConfigError, UpstreamError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/auth/oauth2_token"

DEFAULT_HEADERS = {
    "Accept": "application/json, application/x-www-form-urlencoded",
    "Content-Type": "application/x-www-form-urlencoded",
}

# RFC 6749 section 5.2 error codes
OAUTH2_ERROR_CODES = {
    "invalid_request",
    "invalid_client",
    "invalid_grant",
    "unauthorized_client",
    "unsupported_grant_type",
    "invalid_scope",
    "access_denied",
    "server_error",
    "temporarily_unavailable",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Token:
    """An OAuth2 access token issued by an upstream."""

    token_type: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def expired(self, now: datetime) -> bool:
        """Check whether the token has expired. Tokens without expiry never do."""
        return self.expires_at is not None and now > self.expires_at

    @classmethod
    def from_response(cls, data: dict[str, Any], now: datetime) -> "Token":
        """Build a token from a token endpoint response body."""
        expires_at = None
        if data.get("expires_in") is not None:
            expires_at = now + timedelta(seconds=float(data["expires_in"]))
        return cls(
            token_type=str(data.get("token_type", "bearer")).lower(),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )


class OAuth2Client:
    """Performs token endpoint exchanges against one upstream."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def client_credentials(self) -> dict[str, Any]:
        """Request a new access token with the client credentials grant."""
        body = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.scopes is not None:
            body["scope"] = " ".join(self.scopes)
        return await self._request(body)

    async def refresh(self, refresh_token: str | None) -> dict[str, Any]:
        """Exchange a refresh token for a new access token."""
        if not refresh_token:
            raise AuthError("No refresh token")
        return await self._request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )

    async def _request(self, body: dict[str, str]) -> dict[str, Any]:
        """
        POST a form-encoded body to the token endpoint.

        Raises:
            AuthError: If the endpoint answers non-2xx or with an OAuth2 error
            UpstreamError: If the endpoint cannot be reached
        """
        client = await self._get_client()
        try:
            response = await client.post(
                self.token_url, data=body, headers=DEFAULT_HEADERS
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Token endpoint unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = (
                error
                if error in OAUTH2_ERROR_CODES
                else data.get("error_description", error)
            )
            raise AuthError(str(message), status=response.status_code, body=data)

        if not response.is_success:
            raise AuthError(
                f"HTTP status {response.status_code}",
                status=response.status_code,
                body=data,
            )

        if not isinstance(data, dict) or "access_token" not in data:
            raise AuthError(
                "Token endpoint response has no access_token",
                status=response.status_code,
                body=data,
            )
        return data


class TokenCache:
    """Cached OAuth2 token for a single upstream identity."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = base_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._oauth = OAuth2Client(
            token_url=f"{base_url.rstrip('/')}{TOKEN_PATH}",
            client_id=client_id,
            client_secret=client_secret,
            scopes=scopes,
            timeout=timeout,
            transport=transport,
        )
        self._clock = clock
        self._token: Token | None = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> Token | None:
        """The currently cached token, if any."""
        return self._token

    async def get_token(self) -> Token:
        """
        Return a valid token, exchanging or refreshing it when required.

        Raises:
            ConfigError: If the client credentials are not configured
            AuthError: If the token endpoint rejects the exchange
        """
        if not self._client_id or not self._client_secret:
            raise ConfigError(f"Client credentials are not configured for {self.name}")

        async with self._lock:
            now = self._clock()
            if self._token is None:
                logger.debug("Requesting new access token from %s", self.name)
                data = await self._oauth.client_credentials()
                self._token = Token.from_response(data, self._clock())
            elif self._token.expired(now):
                self._token = await self._renew(self._token)
            return self._token

    async def _renew(self, token: Token) -> Token:
        """Refresh an expired token, falling back to client credentials."""
        try:
            logger.debug("Refreshing expired access token for %s", self.name)
            data = await self._oauth.refresh(token.refresh_token)
            data = {"refresh_token": token.refresh_token, **data}
        except AuthError as e:
            logger.info(
                "Token refresh failed for %s (%s), requesting a new token",
                self.name,
                e,
            )
            data = await self._oauth.client_credentials()
        return Token.from_response(data, self._clock())

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._oauth.close()

    def auth_header(self, token: Token) -> dict[str, str]:
        """Build the Authorization header for a token."""
        return {"Authorization": f"Bearer {token.access_token}"}
