"""
Upstream Package
================

Credentialed client for the upstream API the gateway forwards to.

Main Components:
----------------
- client.py: UpstreamClient, UpstreamServiceError and the client factory
- auth.py: MSAL client credentials auth hook for httpx
"""

from .auth import MsalClientCredentialsAuth, UpstreamAuthenticationError
from .client import UpstreamClient, UpstreamServiceError, build_upstream_client

__all__ = [
    "MsalClientCredentialsAuth",
    "UpstreamAuthenticationError",
    "UpstreamClient",
    "UpstreamServiceError",
    "build_upstream_client",
]
