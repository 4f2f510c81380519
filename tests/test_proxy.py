"""Tests for the transparent proxy: wake-on-demand, forwarding and error mapping."""

import errno
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from wakegate.config import AppConfig, ProxySettings
from wakegate.main import create_app
from wakegate.models import PowerResult, ReadinessResult
from wakegate.proxy import ProxyGateway, is_internal_path

NOT_READY = ReadinessResult(ready=False, error="timed out", error_kind="timeout")
REFUSED = ReadinessResult(ready=False, error="All connection attempts failed", error_kind="connection_refused")


class UpstreamBody(httpx.AsyncByteStream):
    """Response body that is only read when the proxy streams it."""

    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


class Upstream:
    """MockTransport handler recording every forwarded request."""

    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b'{"models": []}',
        headers: dict[str, str] | None = None,
        error: type[Exception] | None = None,
    ):
        self.status_code = status_code
        self.body = body
        self.headers = {"content-type": "application/json", **(headers or {})}
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is httpx.ConnectError:
            try:
                raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
            except ConnectionRefusedError as e:
                raise httpx.ConnectError("All connection attempts failed", request=request) from e
        if self.error is not None:
            raise self.error("timed out", request=request)
        # Split in two chunks so the body really arrives as a stream
        middle = len(self.body) // 2
        return httpx.Response(
            self.status_code, headers=self.headers, stream=UpstreamBody([self.body[:middle], self.body[middle:]])
        )


@pytest.fixture
def settings() -> AppConfig:
    return AppConfig()


@pytest.fixture
def activity_monitor() -> MagicMock:
    return MagicMock()


@pytest.fixture
def ping() -> AsyncMock:
    return AsyncMock(return_value=(True, 0.5))


@pytest.fixture
def settle() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def make_gateway(settings, power, probe, activity_monitor, ping, settle):
    def _make(upstream: Upstream, proxy: ProxySettings | None = None) -> ProxyGateway:
        return ProxyGateway(
            settings.target,
            settings.health_check,
            proxy or settings.proxy,
            power,
            probe,
            activity_monitor,
            client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            ping=ping,
            sleep=settle,
        )

    return _make


@pytest.fixture
def make_client(settings, executor, power, probe, activity_monitor, make_gateway):
    def _make(upstream: Upstream, proxy: ProxySettings | None = None) -> TestClient:
        gateway = make_gateway(upstream, proxy)
        app = create_app(
            settings, executor=executor, power=power, probe=probe, monitor=activity_monitor, gateway=gateway
        )
        return TestClient(app)

    return _make


def test_internal_paths():
    assert is_internal_path("/api/status")
    assert is_internal_path("/health")
    assert not is_internal_path("/api/generate")
    assert not is_internal_path("/api/status/extra")


# ---------------------------------------------------------------------------
# Forwarding
# ---------------------------------------------------------------------------


def test_ready_target_is_forwarded_without_wake(make_client, power, settle, activity_monitor):
    upstream = Upstream(201, b'{"ok": true}', headers={"x-upstream": "yes"})
    client = make_client(upstream)

    response = client.get("/api/tags?limit=5&name=llama", headers={"x-custom": "abc"})

    assert response.status_code == 201
    assert response.json() == {"ok": True}
    assert response.headers["x-upstream"] == "yes"
    forwarded = upstream.requests[0]
    assert forwarded.method == "GET"
    assert forwarded.url.path == "/api/tags"
    assert forwarded.url.query == b"limit=5&name=llama"
    assert forwarded.headers["host"] == "192.168.1.100:11434"
    assert forwarded.headers["x-custom"] == "abc"
    power.wake.assert_not_called()
    settle.assert_awaited_once_with(1.0)
    activity_monitor.record_activity.assert_called_once()


def test_request_body_is_forwarded(make_client):
    upstream = Upstream()
    client = make_client(upstream)

    payload = b'{"model": "llama3", "prompt": "hi"}'
    client.post("/api/generate", content=payload, headers={"content-type": "application/json"})

    forwarded = upstream.requests[0]
    assert forwarded.method == "POST"
    assert forwarded.content == payload
    assert forwarded.headers["content-type"] == "application/json"


def test_hop_by_hop_headers_are_not_forwarded(make_client):
    upstream = Upstream()
    client = make_client(upstream)

    client.get("/api/tags", headers={"proxy-authorization": "secret", "te": "trailers"})

    forwarded = upstream.requests[0]
    assert "proxy-authorization" not in forwarded.headers
    assert "te" not in forwarded.headers


def test_settle_delay_uses_configured_buffer(make_client, settle):
    client = make_client(Upstream(), ProxySettings(readiness_buffer_ms=250))

    response = client.get("/api/tags")

    assert response.status_code == 200
    settle.assert_awaited_once_with(0.25)


def test_zero_buffer_skips_settle_delay(make_client, settle):
    client = make_client(Upstream(), ProxySettings(readiness_buffer_ms=0))

    response = client.get("/api/tags")

    assert response.status_code == 200
    settle.assert_not_called()


def test_encoded_path_is_forwarded_unchanged(make_client):
    upstream = Upstream()
    client = make_client(upstream)

    response = client.get("/files/a%3Fb/c%2Fd?q=1")

    assert response.status_code == 200
    forwarded = upstream.requests[0]
    assert forwarded.url.raw_path == b"/files/a%3Fb/c%2Fd?q=1"
    assert forwarded.url.query == b"q=1"


async def test_bodyless_request_drops_content_length(make_gateway):
    upstream = Upstream()
    gateway = make_gateway(upstream)
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/api/tags",
            "raw_path": b"/api/tags",
            "query_string": b"",
            "headers": [(b"host", b"gateway:3000"), (b"content-length", b"12"), (b"x-custom", b"abc")],
        }
    )

    response = await gateway.forward(request)
    body = b"".join([chunk async for chunk in response.body_iterator])

    assert body == b'{"models": []}'
    forwarded = upstream.requests[0]
    assert "content-length" not in forwarded.headers
    assert forwarded.headers["x-custom"] == "abc"
    assert forwarded.headers["host"] == "192.168.1.100:11434"


def test_offline_target_is_woken_then_forwarded(make_client, probe, ping, power, settle):
    probe.check.return_value = NOT_READY
    ping.return_value = (False, None)
    upstream = Upstream()
    client = make_client(upstream)

    response = client.get("/api/tags")

    assert response.status_code == 200
    power.wake.assert_awaited_once()
    probe.wait_until_ready.assert_awaited_once()
    assert probe.wait_until_ready.call_args.args[3] == 180
    settle.assert_awaited_once_with(1.0)
    assert len(upstream.requests) == 1


def test_online_target_with_starting_service_is_not_woken(make_client, probe, power):
    probe.check.return_value = NOT_READY
    client = make_client(Upstream())

    response = client.get("/api/tags")

    assert response.status_code == 200
    power.wake.assert_not_called()
    probe.wait_until_ready.assert_awaited_once()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def test_readiness_timeout_is_504_with_suggestion(make_client, probe, ping):
    probe.check.return_value = NOT_READY
    probe.wait_until_ready.return_value = False
    ping.return_value = (False, None)
    upstream = Upstream()
    client = make_client(upstream)

    response = client.get("/api/tags")

    assert response.status_code == 504
    body = response.json()
    assert body["error"] == "Server failed to become ready in time"
    assert "Current wake timeout: 180s" in body["suggestion"]
    assert body["target"] == "192.168.1.100:11434"
    assert body["health_check"] == "HEAD /"
    assert set(body) == {"error", "details", "target", "health_check", "timestamp", "suggestion"}
    assert upstream.requests == []


def test_wake_failure_is_500(make_client, probe, ping, power):
    probe.check.return_value = NOT_READY
    ping.return_value = (False, None)
    power.wake.return_value = PowerResult(success=False, message="all methods failed")
    client = make_client(Upstream())

    response = client.get("/api/tags")

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to wake target server"
    assert "all methods failed" in response.json()["details"]
    probe.wait_until_ready.assert_not_called()


def test_online_host_refusing_connections_is_502(make_client, probe, power):
    probe.check.return_value = REFUSED
    probe.wait_until_ready.return_value = False
    client = make_client(Upstream())

    response = client.get("/api/tags")

    assert response.status_code == 502
    assert response.json()["error"] == "Target server refused connection"
    power.wake.assert_not_called()


def test_refused_forward_is_502(make_client):
    client = make_client(Upstream(error=httpx.ConnectError))

    response = client.post("/api/generate", json={"prompt": "hi"})

    assert response.status_code == 502
    assert response.json()["suggestion"] is None


def test_forward_timeout_is_504(make_client):
    client = make_client(Upstream(error=httpx.ReadTimeout))

    response = client.post("/api/generate", json={"prompt": "hi"})

    assert response.status_code == 504
    body = response.json()
    assert body["error"].startswith("Request timed out after 300 seconds")
    assert "Current timeout: 300s" in body["suggestion"]


def test_unexpected_error_is_500(make_client, probe):
    probe.check.side_effect = RuntimeError("unexpected")
    client = make_client(Upstream())

    response = client.get("/api/tags")

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to process request through proxy"


def test_internal_path_with_wrong_method_is_not_proxied(make_client, activity_monitor):
    upstream = Upstream()
    client = make_client(upstream)

    response = client.put("/api/wake")

    assert response.status_code == 405
    assert upstream.requests == []
    activity_monitor.record_activity.assert_not_called()
