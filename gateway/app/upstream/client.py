"""
Credentialed Upstream Client
============================

Thin wrapper around a shared httpx.AsyncClient that is bound to one versioned
upstream endpoint (e.g. https://graph.microsoft.com/v1.0).

The client is created once at application startup and shared by every
in-flight proxy request; httpx.AsyncClient is safe for concurrent use.

Error Model:
------------
Every non-2xx upstream response raises UpstreamServiceError carrying the
status code and the structured error payload. Transport failures
(timeouts, connection errors) propagate as the original httpx exceptions.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from .auth import MsalClientCredentialsAuth

logger = logging.getLogger(__name__)


class UpstreamServiceError(Exception):
    """
    The upstream rejected or failed a request.

    Attributes:
        status_code: HTTP status reported by the upstream
        error: Structured error detail (the upstream's "error" object)
    """

    def __init__(self, status_code: int, error: Any):
        self.status_code = status_code
        self.error = error
        super().__init__(f"Upstream returned {status_code}")

    def error_text(self) -> str:
        """Textual (JSON) form of the error detail."""
        if isinstance(self.error, str):
            return self.error
        return json.dumps(self.error, separators=(",", ":"))

    @classmethod
    def from_response(cls, response: httpx.Response) -> "UpstreamServiceError":
        """
        Build the error from a non-2xx response.

        Uses the "error" member of a JSON envelope when present, otherwise
        the whole JSON document, otherwise a code/message pair built from
        the reason phrase and raw text.
        """
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and "error" in payload:
            error = payload["error"]
        elif payload is not None:
            error = payload
        else:
            error = {
                "code": response.reason_phrase or str(response.status_code),
                "message": response.text,
            }

        return cls(response.status_code, error)


class UpstreamClient:
    """
    Authenticated HTTP client for the upstream API.

    Args:
        http_client: Shared httpx.AsyncClient (already carrying auth)
        base_url: Versioned upstream endpoint, e.g. https://graph.microsoft.com/v1.0
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str):
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> httpx.Response:
        """
        Send a request and read the whole response body.

        Args:
            method: HTTP verb
            url: Absolute target URL
            headers: Extra request headers
            content: Textual request body
            content_type: Request media type

        Returns:
            httpx.Response with its body already read

        Raises:
            UpstreamServiceError: On any non-2xx response
            httpx.TransportError: On timeouts and connection failures
        """
        request_headers = dict(headers or {})
        if content_type:
            request_headers["Content-Type"] = content_type

        request = self._http_client.build_request(
            method,
            url,
            headers=request_headers,
            content=content.encode("utf-8") if content is not None else None,
        )

        response = await self._http_client.send(request)

        if not response.is_success:
            logger.warning(
                f"Upstream error response: {response.status_code}",
                extra={"method": method, "status_code": response.status_code}
            )
            raise UpstreamServiceError.from_response(response)

        return response

    async def aclose(self) -> None:
        await self._http_client.aclose()


def build_upstream_client(settings: Settings) -> UpstreamClient:
    """
    Create the shared upstream client from settings.

    Uses MSAL client credentials when Azure AD is configured; otherwise the
    client is unauthenticated (useful against local upstream mocks).
    """
    auth = None
    if settings.has_client_credentials:
        auth = MsalClientCredentialsAuth.from_credentials(
            authority=settings.azure_authority,
            client_id=settings.AZURE_CLIENT_ID,
            client_secret=settings.AZURE_CLIENT_SECRET,
            scopes=settings.upstream_scopes_list,
        )
    else:
        logger.warning("Azure AD credentials not configured, upstream client is unauthenticated")

    timeout = httpx.Timeout(
        settings.UPSTREAM_TIMEOUT_SECONDS,
        connect=settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
    )

    http_client = httpx.AsyncClient(auth=auth, timeout=timeout)
    return UpstreamClient(http_client, settings.upstream_base_url_str)
