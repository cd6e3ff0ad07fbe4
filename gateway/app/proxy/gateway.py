"""
Proxy Gateway
=============

Translates one inbound REST call into one upstream call and the upstream's
answer into one outbound response.

Request Lifecycle:
------------------
    Received -> UpstreamDispatched -> UpstreamSucceeded | UpstreamFailed -> ResponseWritten

There is no retry state: a single upstream failure terminates the request
with a mapped error response. Every forward() call returns exactly one
OutboundResult, including for transport failures and callers that
disconnect mid-flight.

Header Policy:
--------------
Inbound: only If-Match and ConsistencyLevel cross to the upstream (they
drive optimistic concurrency and advanced queries). Authorization, Host,
cookies and hop-by-hop headers never leave the gateway.

Outbound: upstream headers are relayed except hop-by-hop and body-framing
headers, which no longer describe the in-memory body.
"""

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple

import httpx
from fastapi import Response, status

from ..models import ErrorDetail, ErrorResponse, OutboundResult, ProxyMethod
from ..upstream import UpstreamAuthenticationError, UpstreamClient, UpstreamServiceError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/json"

# Lower-cased inbound name -> name sent upstream
FORWARDED_REQUEST_HEADERS = {
    "if-match": "If-Match",
    "consistencylevel": "ConsistencyLevel",
}

EXCLUDED_RESPONSE_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
    "content-type",
})

# Status used when the caller hangs up before the upstream answers
CLIENT_CLOSED_REQUEST = 499

_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z-]+"
_QUOTED_STRING = r'"(?:[^"\\]|\\.)*"'
MEDIA_TYPE_PATTERN = re.compile(
    rf"{_TOKEN}/{_TOKEN}(?:[ \t]*;[ \t]*{_TOKEN}=(?:{_TOKEN}|{_QUOTED_STRING}))*[ \t]*"
)

DisconnectProbe = Callable[[], Awaitable[bool]]


class ClientDisconnected(Exception):
    """The inbound caller went away while the upstream call was in flight."""


# ============================================================================
# Helpers
# ============================================================================

def strip_version_segment(base_url: str) -> str:
    """
    Remove the final path segment (the API version) from the upstream URL.

    Example:
        >>> strip_version_segment("https://graph.microsoft.com/v1.0")
        'https://graph.microsoft.com'
    """
    return base_url[:base_url.rfind("/")]


def build_target_url(upstream_base: str, path_suffix: str, query_string: str) -> str:
    """Concatenate base, path and query verbatim; nothing is parsed or re-encoded."""
    return f"{upstream_base}/{path_suffix}{query_string}"


def select_forwarded_headers(headers: Mapping[str, Sequence[str]]) -> dict:
    """
    Pick the whitelisted headers out of the inbound header set.

    Matching is case-insensitive; multiple values are joined with ','.
    """
    forwarded = {}
    for name, values in headers.items():
        upstream_name = FORWARDED_REQUEST_HEADERS.get(name.lower())
        if upstream_name is None:
            continue
        if isinstance(values, str):
            values = [values]
        forwarded[upstream_name] = ",".join(values)
    return forwarded


def normalize_content_type(value: Optional[str]) -> str:
    """
    Return value if it is a well-formed media type, else application/json.

    Accepts "type/subtype" with optional ";name=value" parameters.
    """
    if value is None:
        return DEFAULT_CONTENT_TYPE

    candidate = value.strip()
    if not MEDIA_TYPE_PATTERN.fullmatch(candidate):
        logger.warning(
            "Malformed content type, falling back to application/json",
            extra={"content_type": value[:100]}
        )
        return DEFAULT_CONTENT_TYPE

    return candidate


def relayable_headers(headers: httpx.Headers) -> List[Tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in EXCLUDED_RESPONSE_HEADERS
    ]


def error_result(status_code: int, code: str, message: str) -> OutboundResult:
    """Synthesize an OutboundResult for a failure the gateway detected itself."""
    payload = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return OutboundResult(
        status_code=status_code,
        content_type=DEFAULT_CONTENT_TYPE,
        body=payload.model_dump_json().encode("utf-8"),
    )


# ============================================================================
# Gateway
# ============================================================================

class ProxyGateway:
    """
    Request-forwarding gateway bound to one credentialed upstream client.

    Holds no per-request state, so a single instance serves all concurrent
    requests.

    Args:
        upstream_client: Shared client bound to the versioned upstream endpoint
        disconnect_poll_seconds: How often to check whether the caller is gone
    """

    def __init__(self, upstream_client: UpstreamClient, disconnect_poll_seconds: float = 0.5):
        self._upstream_client = upstream_client
        self._disconnect_poll_seconds = disconnect_poll_seconds
        self.upstream_base = strip_version_segment(upstream_client.base_url)

    async def forward(
        self,
        method: ProxyMethod,
        path_suffix: str,
        query_string: str,
        content_type: Optional[str],
        body: Optional[str],
        headers: Mapping[str, Sequence[str]],
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> OutboundResult:
        """
        Forward one request upstream and translate the answer.

        Args:
            method: Inbound verb, reused for the upstream call
            path_suffix: Raw path after the proxy prefix
            query_string: Raw query string including the leading '?'
            content_type: Inbound Content-Type
            body: Textual payload (ignored for GET/DELETE)
            headers: Inbound headers, name to list of values
            is_disconnected: Optional probe; when it reports True the
                upstream call is cancelled

        Returns:
            OutboundResult, always; upstream and transport failures are
            mapped to error results rather than raised.
        """
        started = time.perf_counter()
        target_url = build_target_url(self.upstream_base, path_suffix, query_string)
        forwarded_headers = select_forwarded_headers(headers)
        content = body if method.carries_body and body else None

        log_context = {"method": method.value, "target_url": target_url}
        logger.debug("Proxy request received", extra=log_context)

        result_content_type = DEFAULT_CONTENT_TYPE

        try:
            logger.debug("Dispatching proxy request upstream", extra=log_context)
            response = await self._dispatch(
                self._upstream_client.send(
                    method.value,
                    target_url,
                    headers=forwarded_headers,
                    content=content,
                    content_type=content_type,
                ),
                is_disconnected,
            )

            result_content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
            result = OutboundResult(
                status_code=response.status_code,
                content_type=result_content_type,
                headers=relayable_headers(response.headers),
                body=response.content,
            )
            logger.debug("Upstream request succeeded", extra=log_context)

        except UpstreamServiceError as e:
            logger.warning(
                f"Upstream request failed: {e.status_code}",
                extra={**log_context, "status_code": e.status_code}
            )
            result = OutboundResult(
                status_code=e.status_code,
                content_type=result_content_type,
                body=e.error_text().encode("utf-8"),
            )

        except UpstreamAuthenticationError as e:
            logger.error(f"Upstream authentication failed: {e.error}", extra=log_context)
            result = error_result(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "upstreamAuthenticationFailed",
                "Could not authenticate against the upstream service",
            )

        except httpx.TimeoutException:
            logger.error("Upstream request timeout", extra=log_context)
            result = error_result(
                status.HTTP_504_GATEWAY_TIMEOUT,
                "upstreamTimeout",
                "Upstream service timeout - please try again",
            )

        except httpx.TransportError as e:
            logger.error(f"Upstream transport error: {e}", extra=log_context)
            result = error_result(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "upstreamUnavailable",
                "Cannot reach upstream service",
            )

        except ClientDisconnected:
            logger.info("Caller disconnected, upstream request cancelled", extra=log_context)
            result = error_result(
                CLIENT_CLOSED_REQUEST,
                "clientClosedRequest",
                "Caller disconnected before the upstream responded",
            )

        result.content_type = normalize_content_type(result.content_type)

        logger.info(
            f"Proxied {method.value} request: {result.status_code}",
            extra={
                **log_context,
                "status_code": result.status_code,
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
            }
        )
        return result

    async def _dispatch(
        self,
        call: Awaitable[httpx.Response],
        is_disconnected: Optional[DisconnectProbe],
    ) -> httpx.Response:
        """
        Await the upstream call, cancelling it if the caller disconnects.

        Raises:
            ClientDisconnected: If the probe reports the caller is gone
        """
        if is_disconnected is None:
            return await call

        task = asyncio.ensure_future(call)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self._disconnect_poll_seconds)
                if done:
                    return task.result()
                if await is_disconnected():
                    raise ClientDisconnected()
        finally:
            if not task.done():
                task.cancel()


# ============================================================================
# Response Writing
# ============================================================================

def write_response(result: OutboundResult, destination: Response) -> Response:
    """
    Copy an OutboundResult onto a response object.

    Order: status, relayed headers (only names not already present on the
    destination), content type, body. Content type goes after the generic
    headers so a duplicate key cannot overwrite it.

    Returns:
        The destination, ready to be sent
    """
    destination.status_code = result.status_code

    existing = {name.lower() for name in destination.headers.keys()}
    for name, value in result.headers:
        if name.lower() not in existing:
            destination.headers.append(name, value)

    destination.headers["content-type"] = normalize_content_type(result.content_type)

    destination.body = result.body
    if result.status_code < 200 or result.status_code in (204, 304):
        if "content-length" in destination.headers:
            del destination.headers["content-length"]
    else:
        destination.headers["content-length"] = str(len(result.body))

    return destination
