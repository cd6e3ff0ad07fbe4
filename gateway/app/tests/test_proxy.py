"""
Unit Tests for Proxy Routes
============================

Tests for gateway/app/proxy/routes.py

Test Coverage:
--------------
1. Upstream URL construction for every verb (path and query verbatim)
2. Header whitelisting (only If-Match / ConsistencyLevel forwarded)
3. Body forwarding for POST/PUT/PATCH, none for GET/DELETE
4. Response pass-through (status, content type, body, headers)
5. Error mapping (upstream errors, timeouts, network errors)
6. Gateway not initialized

Run tests:
----------
    pytest gateway/app/tests/test_proxy.py -v
    pytest gateway/app/tests/test_proxy.py -v --cov=gateway.app.proxy
"""

from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from fastapi import Request, status
from fastapi.testclient import TestClient

from gateway.app.main import AppState, create_app
from gateway.app.models import ProxyMethod
from gateway.app.proxy import ProxyGateway
from gateway.app.proxy.routes import escape_raw_bytes, read_inbound_request
from gateway.app.upstream import UpstreamClient, UpstreamServiceError


UPSTREAM_URL = "https://graph.microsoft.com/v1.0"
UPSTREAM_BASE = "https://graph.microsoft.com"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_upstream_client():
    """Create mock credentialed upstream client"""
    client = Mock()
    client.base_url = UPSTREAM_URL
    client.send = AsyncMock(
        return_value=httpx.Response(
            200,
            headers={"content-type": "application/json"},
            content=b'{"value":1}',
        )
    )
    return client


@pytest.fixture
def app(mock_upstream_client):
    """Create test FastAPI application with the gateway wired to the mock client"""
    app = create_app()

    app_state = AppState()
    app_state.upstream_client = mock_upstream_client
    app_state.proxy_gateway = ProxyGateway(mock_upstream_client, disconnect_poll_seconds=0.05)
    app.state.app_state = app_state

    return app


@pytest.fixture
def client(app):
    """Create test client"""
    return TestClient(app)


def sent_call(mock_upstream_client):
    """Return (method, url, kwargs) of the single upstream call"""
    mock_upstream_client.send.assert_called_once()
    call_args = mock_upstream_client.send.call_args
    return call_args.args[0], call_args.args[1], call_args.kwargs


# ============================================================================
# URL Construction Tests
# ============================================================================

@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "PATCH", "DELETE"])
def test_target_url_is_base_plus_path_plus_query(client, mock_upstream_client, method):
    """Test that every verb forwards to base + '/' + path + query"""
    response = client.request(
        method,
        "/api/proxy/me/messages?$top=5&$select=subject",
        content=b'{"a":1}' if method in ("POST", "PUT", "PATCH") else None,
    )

    assert response.status_code == status.HTTP_200_OK

    sent_method, sent_url, _ = sent_call(mock_upstream_client)
    assert sent_method == method
    assert sent_url == f"{UPSTREAM_BASE}/me/messages?$top=5&$select=subject"


def test_escaped_path_sequences_are_not_decoded(client, mock_upstream_client):
    """Test that already-escaped path characters reach the upstream untouched"""
    client.get("/api/proxy/users/adele%40contoso.com/photo/%24value")

    _, sent_url, _ = sent_call(mock_upstream_client)
    assert sent_url == f"{UPSTREAM_BASE}/users/adele%40contoso.com/photo/%24value"


# ============================================================================
# Wire URL Tests (real UpstreamClient on httpx.MockTransport)
# ============================================================================

def make_wired_app(handler):
    """Create app whose gateway sends through a real UpstreamClient"""
    upstream_client = UpstreamClient(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        UPSTREAM_URL,
    )
    app = create_app()

    app_state = AppState()
    app_state.upstream_client = upstream_client
    app_state.proxy_gateway = ProxyGateway(upstream_client, disconnect_poll_seconds=0.05)
    app.state.app_state = app_state

    return app


def http_scope(raw_path: bytes, query_string: bytes = b"") -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": raw_path.decode("utf-8"),
        "raw_path": raw_path,
        "query_string": query_string,
        "root_path": "",
        "headers": [(b"host", b"testserver")],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }


def test_escape_raw_bytes_keeps_ascii_and_escapes_utf8():
    assert escape_raw_bytes(b"/users/adele%40contoso.com/$value") == "/users/adele%40contoso.com/$value"
    assert escape_raw_bytes(b"caf\xc3\xa9 bar") == "caf%C3%A9%20bar"


def test_escaped_request_target_reaches_upstream_unchanged():
    """Test the wire URL seen by the upstream for an already-escaped target"""
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["raw_path"] = request.url.raw_path
        return httpx.Response(200, json={"value": []})

    client = TestClient(make_wired_app(handler))
    response = client.get("/api/proxy/drive/root:/caf%C3%A9.txt?$filter=name%20eq%20%27a%27")

    assert response.status_code == status.HTTP_200_OK
    assert captured["raw_path"] == b"/drive/root:/caf%C3%A9.txt?$filter=name%20eq%20%27a%27"


@pytest.mark.asyncio
async def test_unescaped_utf8_request_target_forwarded_as_utf8_escapes():
    """Test that raw UTF-8 bytes in path and query keep their octets upstream"""
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["raw_path"] = request.url.raw_path
        return httpx.Response(200, json={})

    app = make_wired_app(handler)
    messages = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        messages.append(message)

    await app(http_scope(b"/api/proxy/drive/caf\xc3\xa9", b"q=caf\xc3\xa9"), receive, send)

    assert messages[0]["status"] == status.HTTP_200_OK
    assert captured["raw_path"] == b"/drive/caf%C3%A9?q=caf%C3%A9"


@pytest.mark.asyncio
async def test_read_inbound_request_escapes_non_ascii_bytes():
    request = Request(http_scope(b"/api/proxy/drive/caf\xc3\xa9", b"q=caf\xc3\xa9"))

    inbound = await read_inbound_request(request, ProxyMethod.GET, "drive/café")

    assert inbound.path_suffix == "drive/caf%C3%A9"
    assert inbound.query_string == "?q=caf%C3%A9"


def test_empty_path_and_no_query(client, mock_upstream_client):
    """Test that the bare proxy root maps to the upstream base with a trailing slash"""
    client.get("/api/proxy/")

    _, sent_url, _ = sent_call(mock_upstream_client)
    assert sent_url == f"{UPSTREAM_BASE}/"


def test_versioned_path_can_be_addressed(client, mock_upstream_client):
    """Test that callers choose the API version through the path"""
    client.get("/api/proxy/beta/me?$select=id,displayName")

    _, sent_url, _ = sent_call(mock_upstream_client)
    assert sent_url == f"{UPSTREAM_BASE}/beta/me?$select=id,displayName"


# ============================================================================
# Header Security Tests
# ============================================================================

def test_only_whitelisted_headers_forwarded(client, mock_upstream_client):
    """Test that Authorization is dropped and If-Match is forwarded"""
    client.get(
        "/api/proxy/me",
        headers={"Authorization": "x", "If-Match": "abc"}
    )

    _, _, kwargs = sent_call(mock_upstream_client)
    assert kwargs["headers"] == {"If-Match": "abc"}


def test_consistency_level_matched_case_insensitively(client, mock_upstream_client):
    """Test that a lower-case consistencylevel header is forwarded"""
    client.get(
        "/api/proxy/users/$count",
        headers={"consistencylevel": "eventual", "X-Custom": "drop-me"}
    )

    _, _, kwargs = sent_call(mock_upstream_client)
    assert kwargs["headers"] == {"ConsistencyLevel": "eventual"}


def test_no_headers_forwarded_when_none_whitelisted(client, mock_upstream_client):
    """Test that cookies and host never leak upstream"""
    client.get("/api/proxy/me", headers={"Cookie": "session=1"})

    _, _, kwargs = sent_call(mock_upstream_client)
    assert kwargs["headers"] == {}


# ============================================================================
# Body Forwarding Tests
# ============================================================================

def test_post_forwards_body_and_content_type(client, mock_upstream_client):
    """Test that the POST payload is forwarded as text with its content type"""
    mock_upstream_client.send = AsyncMock(
        return_value=httpx.Response(
            201,
            headers={"content-type": "application/json"},
            content=b'{"id":"1"}',
        )
    )

    response = client.post(
        "/api/proxy/me/events",
        content=b'{"subject":"Standup"}',
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == status.HTTP_201_CREATED
    assert response.content == b'{"id":"1"}'

    _, _, kwargs = sent_call(mock_upstream_client)
    assert kwargs["content"] == '{"subject":"Standup"}'
    assert kwargs["content_type"] == "application/json"


def test_payload_is_not_validated(client, mock_upstream_client):
    """Test that a non-JSON payload is passed through as-is"""
    client.patch(
        "/api/proxy/me",
        content=b"not json at all",
        headers={"Content-Type": "text/plain"},
    )

    _, _, kwargs = sent_call(mock_upstream_client)
    assert kwargs["content"] == "not json at all"
    assert kwargs["content_type"] == "text/plain"


def test_delete_sends_no_body(client, mock_upstream_client):
    """Test that DELETE never carries a body upstream"""
    mock_upstream_client.send = AsyncMock(return_value=httpx.Response(204))

    response = client.delete("/api/proxy/me/events/1", headers={"If-Match": 'W/"etag"'})

    assert response.status_code == status.HTTP_204_NO_CONTENT
    assert response.content == b""

    _, _, kwargs = sent_call(mock_upstream_client)
    assert kwargs["content"] is None
    assert kwargs["headers"] == {"If-Match": 'W/"etag"'}


# ============================================================================
# Response Pass-Through Tests
# ============================================================================

def test_successful_response_relayed_byte_identical(client):
    """Test status, content type and body of a successful upstream response"""
    response = client.get("/api/proxy/me")

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["content-type"] == "application/json"
    assert response.content == b'{"value":1}'


def test_upstream_headers_relayed(client, mock_upstream_client):
    """Test that upstream headers are copied but framing headers are not"""
    mock_upstream_client.send = AsyncMock(
        return_value=httpx.Response(
            200,
            headers={
                "content-type": "application/json; odata.metadata=minimal",
                "request-id": "7d3c-req",
                "ETag": 'W/"abc"',
                "Connection": "keep-alive",
            },
            content=b"{}",
        )
    )

    response = client.get("/api/proxy/me")

    assert response.headers["request-id"] == "7d3c-req"
    assert response.headers["etag"] == 'W/"abc"'
    assert response.headers["content-type"] == "application/json; odata.metadata=minimal"
    assert response.headers["content-length"] == "2"


def test_missing_content_type_defaults_to_json(client, mock_upstream_client):
    """Test that a response without content type is labelled application/json"""
    mock_upstream_client.send = AsyncMock(return_value=httpx.Response(200, content=b"raw"))

    response = client.get("/api/proxy/me/photo/$value")

    assert response.headers["content-type"] == "application/json"
    assert response.content == b"raw"


@pytest.mark.parametrize("bad_content_type", ["", "not a media type", "text/", "application/json; charset"])
def test_malformed_content_type_falls_back_to_json(client, mock_upstream_client, bad_content_type):
    """Test that malformed upstream content types do not fail the request"""
    mock_upstream_client.send = AsyncMock(
        return_value=httpx.Response(
            200,
            headers={"content-type": bad_content_type},
            content=b"{}",
        )
    )

    response = client.get("/api/proxy/me")

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["content-type"] == "application/json"


def test_binary_body_relayed(client, mock_upstream_client):
    """Test that binary payloads survive unchanged"""
    png = b"\x89PNG\r\n\x1a\n\x00\x00"
    mock_upstream_client.send = AsyncMock(
        return_value=httpx.Response(200, headers={"content-type": "image/png"}, content=png)
    )

    response = client.get("/api/proxy/me/photo/$value")

    assert response.headers["content-type"] == "image/png"
    assert response.content == png


def test_identical_gets_yield_identical_results(client):
    """Test that repeating a GET against an idempotent upstream is stable"""
    first = client.get("/api/proxy/me?$select=id")
    second = client.get("/api/proxy/me?$select=id")

    assert first.status_code == second.status_code
    assert first.headers["content-type"] == second.headers["content-type"]
    assert first.content == second.content


# ============================================================================
# Error Mapping Tests
# ============================================================================

def test_upstream_error_status_and_detail_replayed(client, mock_upstream_client):
    """Test that an upstream 404 is replayed with its error detail"""
    mock_upstream_client.send = AsyncMock(
        side_effect=UpstreamServiceError(404, {"code": "NotFound"})
    )

    response = client.get("/api/proxy/users/missing")

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"code": "NotFound"}


def test_upstream_412_precondition_failed(client, mock_upstream_client):
    """Test that optimistic-concurrency failures reach the caller"""
    mock_upstream_client.send = AsyncMock(
        side_effect=UpstreamServiceError(
            412, {"code": "PreconditionFailed", "message": "ETag mismatch"}
        )
    )

    response = client.patch("/api/proxy/me/events/1", content=b"{}", headers={"If-Match": "old"})

    assert response.status_code == status.HTTP_412_PRECONDITION_FAILED
    assert response.json()["code"] == "PreconditionFailed"


def test_upstream_timeout_handling(client, mock_upstream_client):
    """Test handling of upstream timeout errors"""
    mock_upstream_client.send = AsyncMock(side_effect=httpx.ReadTimeout("Timeout"))

    response = client.get("/api/proxy/me")

    assert response.status_code == status.HTTP_504_GATEWAY_TIMEOUT
    assert response.json()["error"]["code"] == "upstreamTimeout"


def test_upstream_network_error_handling(client, mock_upstream_client):
    """Test handling of upstream network errors"""
    mock_upstream_client.send = AsyncMock(side_effect=httpx.ConnectError("Connection failed"))

    response = client.get("/api/proxy/me")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert "upstream" in response.json()["error"]["message"].lower()


def test_upstream_errors_are_not_retried(client, mock_upstream_client):
    """Test that a single failure terminates the request"""
    mock_upstream_client.send = AsyncMock(
        side_effect=UpstreamServiceError(503, {"code": "serviceNotAvailable"})
    )

    response = client.get("/api/proxy/me")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert mock_upstream_client.send.call_count == 1


def test_gateway_not_initialized_returns_503():
    """Test that requests before startup completes are rejected"""
    app = create_app()
    app.state.app_state = AppState()

    response = TestClient(app).get("/api/proxy/me")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert "not available" in response.json()["detail"].lower()


# ============================================================================
# System Endpoint Tests
# ============================================================================

def test_health_check(client):
    """Test that /health reports the upstream"""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "ok"
    assert response.json()["upstream"].startswith("http")
