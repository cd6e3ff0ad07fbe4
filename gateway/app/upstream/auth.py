"""
Upstream Authentication
=======================

httpx authentication hook that attaches an app-only bearer token to every
upstream request. Tokens come from the MSAL client credentials flow; MSAL
keeps its own in-memory cache so repeated calls are served without a round
trip to Azure AD until the token is close to expiry.
"""

import asyncio
import logging
from typing import AsyncGenerator, List

import httpx
from msal import ConfidentialClientApplication

logger = logging.getLogger(__name__)


class UpstreamAuthenticationError(Exception):
    """Raised when an access token for the upstream cannot be acquired."""

    def __init__(self, error: str, description: str = ""):
        self.error = error
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)


class MsalClientCredentialsAuth(httpx.Auth):
    """
    Bearer token auth for httpx using the MSAL client credentials flow.

    Args:
        application: Configured ConfidentialClientApplication
        scopes: Scopes to request (e.g. ["https://graph.microsoft.com/.default"])
    """

    def __init__(self, application: ConfidentialClientApplication, scopes: List[str]):
        self._application = application
        self._scopes = scopes

    @classmethod
    def from_credentials(
        cls,
        authority: str,
        client_id: str,
        client_secret: str,
        scopes: List[str],
    ) -> "MsalClientCredentialsAuth":
        application = ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_secret,
            authority=authority,
        )
        return cls(application, scopes)

    def acquire_token(self) -> str:
        """
        Acquire an access token (blocking).

        Raises:
            UpstreamAuthenticationError: If Azure AD does not return a token
        """
        result = self._application.acquire_token_for_client(scopes=self._scopes)

        token = result.get("access_token") if result else None
        if not token:
            error = (result or {}).get("error", "token_unavailable")
            description = (result or {}).get("error_description", "")
            logger.error(
                "Failed to acquire upstream access token",
                extra={"error": error}
            )
            raise UpstreamAuthenticationError(error, description)

        return token

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        # MSAL performs blocking I/O on a cache miss
        token = await asyncio.to_thread(self.acquire_token)
        request.headers["Authorization"] = f"Bearer {token}"
        yield request
