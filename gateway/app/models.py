"""
Data Models Module

This module defines the Pydantic models that carry a single proxied request
through the gateway.

Models are organized by functional area:
- Proxy models (inbound request, outbound result, supported verbs)
- Health check models
- Error models (the JSON envelope the gateway emits for its own failures)
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


# ============================================================================
# Proxy Models
# ============================================================================

class ProxyMethod(str, Enum):
    """HTTP verbs exposed on the catch-all proxy route."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def carries_body(self) -> bool:
        return self in (ProxyMethod.POST, ProxyMethod.PUT, ProxyMethod.PATCH)


class InboundRequest(BaseModel):
    """A request received on /api/proxy/{path}, exactly as the caller sent it."""
    method: ProxyMethod = Field(..., description="Inbound HTTP verb")
    path_suffix: str = Field(default="", description="Raw path after the proxy prefix, may contain slashes")
    query_string: str = Field(default="", description="Raw query string including the leading '?'")
    content_type: Optional[str] = Field(None, description="Inbound Content-Type header")
    body: Optional[str] = Field(None, description="Textual request payload, absent for GET/DELETE")
    headers: Dict[str, List[str]] = Field(default_factory=dict, description="Inbound headers, name to values")


class OutboundResult(BaseModel):
    """The response the gateway writes back to the original caller."""
    status_code: int = Field(..., description="HTTP status code")
    content_type: str = Field(default="application/json", description="Response media type")
    headers: List[Tuple[str, str]] = Field(default_factory=list, description="Headers relayed from upstream")
    body: bytes = Field(default=b"", description="Raw response payload")


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    upstream: str = Field(..., description="Upstream base URL requests are forwarded to")


# ============================================================================
# Error Models
# ============================================================================

class ErrorDetail(BaseModel):
    """Error code and message, shaped like the upstream's own error payload."""
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")


class ErrorResponse(BaseModel):
    """Error envelope for failures synthesized by the gateway itself."""
    error: ErrorDetail
