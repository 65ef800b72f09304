"""Tests for the streaming relay.

The upstream API is replaced by an httpx.MockTransport; the proxy itself is
exercised through Starlette's TestClient, through httpx.ASGITransport for
concurrent scenarios, and by driving RelayResponse with hand-written ASGI
callables where the exact message sequence matters.
"""

import asyncio
import json
import logging
import os
import threading

import httpx
import pytest
import uvicorn
from fastapi.testclient import TestClient
from starlette.requests import Request

from gauge.proxy.headers import HOP_BY_HOP_HEADERS
from gauge.proxy.limiter import ConnectionLimiter
from gauge.proxy.ratelimit import HEADER_5H_UTILIZATION, HEADER_7D_UTILIZATION, RateLimitCache
from gauge.proxy.server import (
    BoundedBody,
    ClientClosedResponse,
    GaugeServer,
    ProxyStats,
    RelayResponse,
    create_app,
    is_valid_target,
    request_target,
)

# =============================================================================
# Helpers
# =============================================================================


class StubUpstream:
    """Records forwarded requests and answers with a canned response."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.headers: list[tuple[str, str]] | dict[str, str] = {"content-type": "application/json"}
        self.content = b'{"ok":true}'
        self.fail = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail is not None:
            raise self.fail(request)
        self.requests.append(request)
        return httpx.Response(
            self.status_code, headers=self.headers, stream=ScriptedStream([self.content])
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class ScriptedStream(httpx.AsyncByteStream):
    """Upstream body that yields chunks, then optionally fails or hangs."""

    def __init__(self, chunks, error=None, hang=False):
        self.chunks = chunks
        self.error = error
        self.hang = hang
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class StalledUpstream:
    """Async upstream handler that never answers; notes when it is cancelled."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.cancelled = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.entered.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.set()
            raise


async def never_disconnect():
    await asyncio.Event().wait()


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def http_scope(raw_path: bytes, method: str = "GET", query: bytes = b"", headers=None) -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": raw_path.decode("latin-1"),
        "raw_path": raw_path,
        "query_string": query,
        "headers": headers or [(b"host", b"127.0.0.1:3456")],
        "client": ("127.0.0.1", 50000),
        "server": ("127.0.0.1", 3456),
        "root_path": "",
    }


@pytest.fixture
def upstream():
    return StubUpstream()


@pytest.fixture
def app(proxy_config, upstream):
    return create_app(proxy_config, transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


# =============================================================================
# Target validation
# =============================================================================


class TestRequestTarget:
    """Tests for request target extraction and validation."""

    def test_raw_path_and_query(self):
        scope = http_scope(b"/v1/messages", query=b"beta=true")
        assert request_target(scope) == "/v1/messages?beta=true"

    def test_percent_encoding_preserved(self):
        scope = http_scope(b"/v1/files/a%20b")
        assert request_target(scope) == "/v1/files/a%20b"

    def test_falls_back_to_path(self):
        scope = http_scope(b"/x")
        del scope["raw_path"]
        assert request_target(scope) == "/x"

    @pytest.mark.parametrize(
        "target",
        ["/v1/messages", "/", "/v1/models?limit=20", "//double/slash"],
    )
    def test_valid_targets(self, target):
        assert is_valid_target(target)

    @pytest.mark.parametrize(
        "target",
        ["", "v1/messages", "http://evil.example/v1", "*", "/a\x00b", "/a\r\nb", "/caf\xe9"],
    )
    def test_invalid_targets(self, target):
        assert not is_valid_target(target)


# =============================================================================
# Forwarding
# =============================================================================


class TestForwarding:
    """Requests are relayed to the fixed upstream host."""

    def test_relays_status_and_body(self, client, upstream):
        upstream.status_code = 529
        upstream.content = b'{"type":"error","error":{"type":"overloaded_error"}}'

        response = client.post("/v1/messages", content=b'{"model":"x"}')

        assert response.status_code == 529
        assert response.content == upstream.content
        assert upstream.last.method == "POST"
        assert upstream.last.content == b'{"model":"x"}'

    def test_targets_upstream_over_tls(self, client, upstream):
        client.get("/v1/models?limit=5")

        url = upstream.last.url
        assert url.scheme == "https"
        assert url.host == "api.anthropic.com"
        assert url.path == "/v1/models"
        assert url.query == b"limit=5"

    def test_host_header_rewritten(self, client, upstream):
        client.get("/v1/models", headers={"Host": "127.0.0.1:3456"})
        assert upstream.last.headers.get_list("host") == ["api.anthropic.com"]

    def test_request_hop_by_hop_headers_stripped(self, client, upstream):
        client.post(
            "/v1/messages",
            content=b"{}",
            headers={
                "Connection": "keep-alive",
                "Keep-Alive": "timeout=5",
                "Proxy-Authorization": "Basic Zm9vOmJhcg==",
                "TE": "trailers",
                "x-api-key": "sk-test",
                "anthropic-version": "2023-06-01",
            },
        )

        forwarded = upstream.last.headers
        for name in HOP_BY_HOP_HEADERS - {"transfer-encoding"}:
            assert name not in forwarded
        assert forwarded["x-api-key"] == "sk-test"
        assert forwarded["anthropic-version"] == "2023-06-01"
        assert forwarded["content-length"] == "2"

    def test_response_hop_by_hop_headers_stripped(self, client, upstream):
        upstream.headers = [
            ("content-type", "application/json"),
            ("connection", "keep-alive"),
            ("keep-alive", "timeout=5"),
            ("proxy-authenticate", "Basic"),
            ("upgrade", "h2c"),
            ("request-id", "req_123"),
        ]

        response = client.get("/v1/models")

        assert response.headers["request-id"] == "req_123"
        for name in ("keep-alive", "proxy-authenticate", "upgrade", "connection"):
            assert name not in response.headers

    def test_repeated_response_headers_preserved(self, client, upstream):
        upstream.headers = [("set-cookie", "a=1"), ("set-cookie", "b=2")]
        response = client.get("/v1/models")
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]

    @pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE", "OPTIONS"])
    def test_all_methods_relayed(self, client, upstream, method):
        response = client.request(method, "/v1/files/file_1")
        assert response.status_code == 200
        assert upstream.last.method == method

    def test_bodyless_request_has_no_body(self, client, upstream):
        client.get("/v1/models")
        assert upstream.last.content == b""
        assert "transfer-encoding" not in upstream.last.headers

    def test_stats_and_lease_after_success(self, app, client):
        client.post("/v1/messages", content=b"12345")

        proxy = app.state.proxy
        assert proxy.limiter.active == 0
        assert proxy.stats.requests_forwarded == 1
        assert proxy.stats.bytes_in == 5
        assert proxy.stats.bytes_out == len(b'{"ok":true}')
        assert proxy.stats.streams_aborted == 0


class TestRateLimitHarvest:
    """Rate-limit headers are cached for messages-endpoint responses only."""

    def test_messages_response_written(self, client, upstream, proxy_config, app):
        upstream.headers = {HEADER_5H_UTILIZATION: "0.42", HEADER_7D_UTILIZATION: "0.13"}

        client.post("/v1/messages?beta=true", content=b"{}")

        data = json.loads(proxy_config.paths.cache_file.read_text())
        assert data["5h"] == 0.42
        assert data["7d"] == 0.13
        assert app.state.proxy.stats.cache_writes == 1

    def test_error_responses_still_harvested(self, client, upstream, proxy_config):
        upstream.status_code = 429
        upstream.headers = {HEADER_5H_UTILIZATION: "1.0"}

        client.post("/v1/messages", content=b"{}")

        assert json.loads(proxy_config.paths.cache_file.read_text())["5h"] == 1.0

    def test_other_endpoints_ignored(self, client, upstream, proxy_config):
        upstream.headers = {HEADER_5H_UTILIZATION: "0.42"}
        client.get("/v1/models")
        assert not proxy_config.paths.cache_file.exists()

    def test_responses_without_headers_ignored(self, client, proxy_config):
        client.post("/v1/messages", content=b"{}")
        assert not proxy_config.paths.cache_file.exists()

    def test_relay_unaffected_by_unwritable_cache(self, tmp_path, upstream):
        from gauge.config import GaugePaths, ProxyConfig

        blocker = tmp_path / "blocker"
        blocker.write_text("")
        config = ProxyConfig(supervised=False, paths=GaugePaths(state_dir=blocker / "state"))
        upstream.headers = {HEADER_5H_UTILIZATION: "0.5"}

        with TestClient(create_app(config, transport=httpx.MockTransport(upstream))) as client:
            response = client.post("/v1/messages", content=b"{}")

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_cache_written_off_the_event_loop(self, proxy_config):
        threads = {}

        class RecordingCache(RateLimitCache):
            def record(self, headers):
                threads["cache"] = threading.get_ident()
                return super().record(headers)

        def handler(request):
            threads["loop"] = threading.get_ident()
            return httpx.Response(
                200, headers={HEADER_5H_UTILIZATION: "0.3"}, stream=ScriptedStream([])
            )

        app = create_app(proxy_config, transport=httpx.MockTransport(handler))
        app.state.proxy.rate_limit_cache = RecordingCache(proxy_config.paths.cache_file)
        with TestClient(app) as client:
            client.post("/v1/messages", content=b"{}")

        assert threads["cache"] != threads["loop"]
        assert json.loads(proxy_config.paths.cache_file.read_text())["5h"] == 0.3
        assert app.state.proxy.stats.cache_writes == 1


# =============================================================================
# Rejections and upstream failures
# =============================================================================


class TestRejections:
    """Requests refused before or during forwarding."""

    def test_declared_body_over_limit(self, app, client, upstream):
        response = client.post("/v1/messages", content=b"x" * 2048)

        assert response.status_code == 413
        assert response.json() == {"error": "payload_too_large"}
        assert response.headers["connection"] == "close"
        assert upstream.requests == []
        assert app.state.proxy.limiter.active == 0

    def test_body_at_limit_is_forwarded(self, client, upstream):
        response = client.post("/v1/messages", content=b"x" * 1024)
        assert response.status_code == 200
        assert len(upstream.last.content) == 1024

    @pytest.mark.asyncio
    async def test_streamed_body_over_limit(self, app, upstream):
        proxy = app.state.proxy

        async def chunks():
            for _ in range(8):
                yield b"x" * 512

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.post("/v1/messages", content=chunks())

        assert response.status_code == 413
        assert response.json() == {"error": "payload_too_large"}
        assert upstream.requests == []
        assert proxy.stats.requests_rejected["payload_too_large"] == 1
        assert proxy.stats.bytes_in <= 1024 + 512
        assert proxy.limiter.active == 0

    @pytest.mark.parametrize(
        "raw_path",
        [b"", b"http://evil.example/v1/messages", b"/v1/\x01messages"],
    )
    @pytest.mark.asyncio
    async def test_malformed_target(self, app, upstream, raw_path):
        proxy = app.state.proxy

        response = await proxy.handle(Request(http_scope(raw_path)))

        assert response.status_code == 400
        assert json.loads(response.body) == {"error": "bad_request"}
        assert upstream.requests == []
        assert proxy.limiter.active == 0

    @pytest.mark.asyncio
    async def test_double_slash_target_stays_on_upstream_host(self, app, upstream):
        proxy = app.state.proxy
        sent = []

        async def send(message):
            sent.append(message)

        response = await proxy.handle(
            Request(http_scope(b"//evil.example/v1/messages"), never_disconnect)
        )
        await response(http_scope(b"//evil.example/v1/messages"), never_disconnect, send)

        assert upstream.last.url.host == "api.anthropic.com"
        assert upstream.last.url.raw_path == b"//evil.example/v1/messages"
        assert proxy.limiter.active == 0

    @pytest.mark.parametrize(
        "fail",
        [
            lambda request: httpx.ConnectError("connection refused", request=request),
            lambda request: httpx.ReadTimeout("timed out", request=request),
            lambda request: httpx.RemoteProtocolError("bad frame", request=request),
        ],
        ids=["connect", "timeout", "protocol"],
    )
    def test_upstream_failure_is_502(self, app, client, upstream, fail):
        upstream.fail = fail

        response = client.post("/v1/messages", content=b"{}")

        assert response.status_code == 502
        assert response.json() == {"error": "proxy_error"}
        assert app.state.proxy.stats.upstream_errors == 1
        assert app.state.proxy.limiter.active == 0

    def test_unexpected_error_is_502_and_logged(self, app, client, upstream, caplog):
        upstream.fail = lambda request: RuntimeError("bug")

        with caplog.at_level(logging.ERROR, logger="gauge.proxy"):
            response = client.get("/v1/models")

        assert response.status_code == 502
        assert "unexpected proxy error" in caplog.text

    def test_proxy_keeps_serving_after_failure(self, client, upstream):
        upstream.fail = lambda request: httpx.ConnectError("down", request=request)
        assert client.get("/v1/models").status_code == 502

        upstream.fail = None
        assert client.get("/v1/models").status_code == 200


class TestConnectionLimit:
    """The limiter caps concurrently relayed requests."""

    @pytest.mark.asyncio
    async def test_rejects_over_limit_then_recovers(self, proxy_config):
        gate = asyncio.Event()

        async def slow_upstream(request):
            await gate.wait()
            return httpx.Response(200, stream=ScriptedStream([b"done"]))

        app = create_app(proxy_config, transport=httpx.MockTransport(slow_upstream))
        proxy = app.state.proxy
        transport = httpx.ASGITransport(app=app)

        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            held = [asyncio.create_task(client.get("/v1/models")) for _ in range(3)]
            await wait_until(lambda: proxy.limiter.active == 3)

            rejected = await client.get("/v1/models")
            assert rejected.status_code == 429
            assert rejected.json() == {"error": "too_many_connections"}

            gate.set()
            responses = await asyncio.gather(*held)
            assert [r.status_code for r in responses] == [200, 200, 200]
            assert proxy.limiter.active == 0

            assert (await client.get("/v1/models")).status_code == 200

        assert proxy.stats.requests_rejected["too_many_connections"] == 1
        assert proxy.limiter.peak == 3

    @pytest.mark.asyncio
    async def test_client_gone_before_upstream_answers(self, proxy_config):
        upstream = StalledUpstream()
        app = create_app(proxy_config, transport=httpx.MockTransport(upstream))
        proxy = app.state.proxy
        pending = [{"type": "http.request", "body": b"{}", "more_body": False}]

        async def receive():
            if pending:
                return pending.pop(0)
            await upstream.entered.wait()
            return {"type": "http.disconnect"}

        sent = []

        async def send(message):
            sent.append(message)

        scope = http_scope(
            b"/v1/messages",
            method="POST",
            headers=[(b"host", b"127.0.0.1:3456"), (b"content-length", b"2")],
        )
        response = await asyncio.wait_for(proxy.handle(Request(scope, receive)), 2.0)
        await response(scope, receive, send)

        assert isinstance(response, ClientClosedResponse)
        assert sent == []
        assert upstream.cancelled.is_set()
        assert proxy.limiter.active == 0
        assert proxy.stats.client_aborts == 1
        assert proxy.stats.requests_forwarded == 0
        assert proxy.stats.bytes_in == 2

    @pytest.mark.asyncio
    async def test_summary_reports_peak_connections(self, app, caplog):
        proxy = app.state.proxy
        leases = [proxy.limiter.acquire() for _ in range(2)]
        for lease in leases:
            lease.release()

        with caplog.at_level(logging.INFO, logger="gauge.proxy"):
            await proxy.shutdown()

        assert "peak 2/3 connections" in caplog.text


# =============================================================================
# RelayResponse
# =============================================================================


class TestRelayResponse:
    """Exact ASGI message sequences for the streaming relay."""

    def make_relay(self, stream, headers=None):
        limiter = ConnectionLimiter(max_connections=1)
        lease = limiter.acquire()
        upstream = httpx.Response(
            200,
            headers=headers or {"content-type": "text/event-stream", "transfer-encoding": "chunked"},
            stream=stream,
        )
        relay = RelayResponse(upstream, lease, ProxyStats(), request_id="gp_test")
        return relay, limiter

    @pytest.mark.asyncio
    async def test_streams_chunks_in_order(self):
        stream = ScriptedStream([b"event: a\n\n", b"event: b\n\n"])
        relay, limiter = self.make_relay(stream)
        sent = []

        async def send(message):
            sent.append(message)

        await relay(http_scope(b"/v1/messages"), never_disconnect, send)

        assert sent[0]["type"] == "http.response.start"
        assert sent[0]["headers"] == [(b"content-type", b"text/event-stream")]
        assert [m["body"] for m in sent[1:]] == [b"event: a\n\n", b"event: b\n\n", b""]
        assert sent[-1]["more_body"] is False
        assert relay.completed
        assert relay.stats.bytes_out == 20
        assert stream.closed
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_upstream_error_mid_stream_truncates(self):
        stream = ScriptedStream([b"event: a\n\n"], error=httpx.ReadError("connection reset"))
        relay, limiter = self.make_relay(stream)
        sent = []

        async def send(message):
            sent.append(message)

        await relay(http_scope(b"/v1/messages"), never_disconnect, send)

        bodies = [m for m in sent if m["type"] == "http.response.body"]
        assert [m["body"] for m in bodies] == [b"event: a\n\n"]
        assert all(m["more_body"] for m in bodies)
        assert not relay.completed
        assert relay.stats.streams_aborted == 1
        assert stream.closed
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_client_disconnect_closes_upstream(self):
        stream = ScriptedStream([b"event: a\n\n"], hang=True)
        relay, limiter = self.make_relay(stream)
        first_chunk = asyncio.Event()

        async def send(message):
            if message["type"] == "http.response.body":
                first_chunk.set()

        async def receive():
            await first_chunk.wait()
            return {"type": "http.disconnect"}

        await asyncio.wait_for(relay(http_scope(b"/v1/messages"), receive, send), 2.0)

        assert stream.closed
        assert not relay.completed
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_failed_client_write_releases_lease(self):
        stream = ScriptedStream([b"a", b"b"])
        relay, limiter = self.make_relay(stream)

        async def send(message):
            if message["type"] == "http.response.body":
                raise OSError("broken pipe")

        await relay(http_scope(b"/v1/messages"), never_disconnect, send)

        assert stream.closed
        assert limiter.active == 0


class TestBoundedBody:
    """Tests for the size-capped body iterator."""

    @pytest.mark.asyncio
    async def test_passes_through_under_limit(self):
        async def chunks():
            yield b"abc"
            yield b"def"

        body = BoundedBody(chunks(), limit=6)
        assert [c async for c in body] == [b"abc", b"def"]
        assert body.received == 6
        assert not body.exceeded

    @pytest.mark.asyncio
    async def test_raises_on_first_chunk_over_limit(self):
        from gauge.exceptions import PayloadTooLargeError

        consumed = []

        async def chunks():
            for chunk in (b"aaaa", b"bbbb", b"cccc"):
                consumed.append(chunk)
                yield chunk

        body = BoundedBody(chunks(), limit=6)
        with pytest.raises(PayloadTooLargeError) as exc_info:
            async for _ in body:
                pass

        assert body.exceeded
        assert exc_info.value.received == 8
        assert consumed == [b"aaaa", b"bbbb"]


# =============================================================================
# Server
# =============================================================================


class TestGaugeServer:
    """End-to-end over a real loopback socket."""

    @pytest.mark.asyncio
    async def test_streams_and_manages_pid_file(self, proxy_config, free_port):
        proxy_config.port = free_port

        async def sse_body():
            yield b"event: message_start\ndata: {}\n\n"
            yield b"event: message_stop\ndata: {}\n\n"

        def sse_upstream(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream", HEADER_5H_UTILIZATION: "0.2"},
                content=sse_body(),
            )

        app = create_app(proxy_config, transport=httpx.MockTransport(sse_upstream))
        server = GaugeServer(
            uvicorn.Config(app, host="127.0.0.1", port=free_port, log_level="warning"),
            proxy_config,
        )
        task = asyncio.create_task(server.serve())
        try:
            await wait_until(lambda: server.started, timeout=5.0)
            assert proxy_config.paths.pid_file.read_text().strip() == str(os.getpid())

            async with httpx.AsyncClient(
                base_url=f"http://127.0.0.1:{free_port}", trust_env=False
            ) as client:
                async with client.stream("POST", "/v1/messages", content=b"{}") as response:
                    chunks = [chunk async for chunk in response.aiter_text()]

            assert response.status_code == 200
            assert response.headers["content-type"] == "text/event-stream"
            assert "".join(chunks).count("event:") == 2
            assert json.loads(proxy_config.paths.cache_file.read_text())["5h"] == 0.2
        finally:
            server.should_exit = True
            await asyncio.wait_for(task, 10.0)

        assert not proxy_config.paths.pid_file.exists()

    @pytest.mark.asyncio
    async def test_supervised_server_leaves_pid_file_alone(self, proxy_config, free_port):
        proxy_config.port = free_port
        proxy_config.supervised = True
        proxy_config.paths.pid_file.write_text("999999\n")

        app = create_app(proxy_config, transport=httpx.MockTransport(StubUpstream()))
        server = GaugeServer(
            uvicorn.Config(app, host="127.0.0.1", port=free_port, log_level="warning"),
            proxy_config,
        )
        task = asyncio.create_task(server.serve())
        try:
            await wait_until(lambda: server.started, timeout=5.0)
        finally:
            server.should_exit = True
            await asyncio.wait_for(task, 10.0)

        assert proxy_config.paths.pid_file.read_text() == "999999\n"

    @pytest.mark.asyncio
    async def test_client_leaving_before_headers_cancels_upstream(self, proxy_config, free_port):
        proxy_config.port = free_port
        upstream = StalledUpstream()
        app = create_app(proxy_config, transport=httpx.MockTransport(upstream))
        proxy = app.state.proxy
        server = GaugeServer(
            uvicorn.Config(app, host="127.0.0.1", port=free_port, log_level="warning"),
            proxy_config,
        )
        task = asyncio.create_task(server.serve())
        try:
            await wait_until(lambda: server.started, timeout=5.0)

            _, writer = await asyncio.open_connection("127.0.0.1", free_port)
            writer.write(b"GET /v1/models HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n")
            await writer.drain()
            await asyncio.wait_for(upstream.entered.wait(), 2.0)
            assert proxy.limiter.active == 1

            writer.close()
            await writer.wait_closed()

            await asyncio.wait_for(upstream.cancelled.wait(), 5.0)
            await wait_until(lambda: proxy.limiter.active == 0, timeout=5.0)
            assert proxy.stats.client_aborts == 1
            assert proxy.stats.requests_forwarded == 0
        finally:
            server.should_exit = True
            await asyncio.wait_for(task, 10.0)
