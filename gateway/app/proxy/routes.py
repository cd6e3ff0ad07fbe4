"""
Proxy Routes - Upstream Request Forwarding
==========================================

Catch-all endpoints under /api/proxy that forward any REST call to the
upstream API through the shared credentialed client.

Endpoints:
----------
- GET    /api/proxy/{path}
- POST   /api/proxy/{path}
- PUT    /api/proxy/{path}
- PATCH  /api/proxy/{path}
- DELETE /api/proxy/{path}

Each endpoint is a thin adapter that tags the request with its verb and
hands it to ProxyGateway.forward().
"""

import logging
from typing import Dict, List
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ..models import InboundRequest, ProxyMethod
from .gateway import ProxyGateway, write_response

logger = logging.getLogger(__name__)

PROXY_PREFIX = "/api/proxy"

# Create router
proxy_router = APIRouter()


# ============================================================================
# Dependencies
# ============================================================================

def get_proxy_gateway(request: Request) -> ProxyGateway:
    """
    Dependency to get the shared ProxyGateway from app state.

    Raises:
        HTTPException: 503 if the upstream client has not been initialized
    """
    app_state = getattr(request.app.state, "app_state", None)
    gateway = getattr(app_state, "proxy_gateway", None) if app_state else None

    if not gateway:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not available"
        )

    return gateway


# ============================================================================
# Inbound Request Extraction
# ============================================================================

# Printable ASCII left as-is, '%' included so existing escapes survive
_RAW_SAFE_CHARS = "".join(chr(code) for code in range(0x21, 0x7F))


def escape_raw_bytes(raw: bytes) -> str:
    """
    Turn raw request-target bytes into an ASCII string without re-encoding.

    Printable ASCII (existing %XX escapes included) is kept verbatim; every
    other byte becomes its own %XX escape, so unescaped UTF-8 sent by the
    caller reaches the upstream as the same octets.
    """
    return quote(raw, safe=_RAW_SAFE_CHARS)


def raw_path_suffix(request: Request, path: str) -> str:
    """
    Path after the proxy prefix, still percent-encoded as the caller sent it.

    Falls back to the decoded route parameter when the server does not
    provide raw_path.
    """
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return path

    raw = escape_raw_bytes(raw_path)
    marker = f"{PROXY_PREFIX}/"
    index = raw.find(marker)
    if index == -1:
        return path

    return raw[index + len(marker):]


def raw_query_string(request: Request) -> str:
    """Query string exactly as received, with its leading '?'."""
    query = escape_raw_bytes(request.scope.get("query_string", b""))
    return f"?{query}" if query else ""


def collect_headers(request: Request) -> Dict[str, List[str]]:
    return {name: request.headers.getlist(name) for name in request.headers.keys()}


async def read_inbound_request(request: Request, method: ProxyMethod, path: str) -> InboundRequest:
    body = None
    if method.carries_body:
        raw_body = await request.body()
        body = raw_body.decode("utf-8", errors="replace") if raw_body else None

    return InboundRequest(
        method=method,
        path_suffix=raw_path_suffix(request, path),
        query_string=raw_query_string(request),
        content_type=request.headers.get("content-type"),
        body=body,
        headers=collect_headers(request),
    )


# ============================================================================
# Proxy Handler
# ============================================================================

async def process_request(
    request: Request,
    method: ProxyMethod,
    path: str,
    gateway: ProxyGateway,
) -> Response:
    """Shared handler behind every verb endpoint."""
    inbound = await read_inbound_request(request, method, path)

    result = await gateway.forward(
        inbound.method,
        inbound.path_suffix,
        inbound.query_string,
        inbound.content_type,
        inbound.body,
        inbound.headers,
        is_disconnected=request.is_disconnected,
    )

    return write_response(result, Response())


@proxy_router.get("/{path:path}")
async def proxy_get(request: Request, path: str, gateway: ProxyGateway = Depends(get_proxy_gateway)):
    return await process_request(request, ProxyMethod.GET, path, gateway)


@proxy_router.post("/{path:path}")
async def proxy_post(request: Request, path: str, gateway: ProxyGateway = Depends(get_proxy_gateway)):
    return await process_request(request, ProxyMethod.POST, path, gateway)


@proxy_router.put("/{path:path}")
async def proxy_put(request: Request, path: str, gateway: ProxyGateway = Depends(get_proxy_gateway)):
    return await process_request(request, ProxyMethod.PUT, path, gateway)


@proxy_router.patch("/{path:path}")
async def proxy_patch(request: Request, path: str, gateway: ProxyGateway = Depends(get_proxy_gateway)):
    return await process_request(request, ProxyMethod.PATCH, path, gateway)


@proxy_router.delete("/{path:path}")
async def proxy_delete(request: Request, path: str, gateway: ProxyGateway = Depends(get_proxy_gateway)):
    return await process_request(request, ProxyMethod.DELETE, path, gateway)
