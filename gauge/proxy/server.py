"""gauge proxy server.

A local, loopback-only HTTP proxy that relays every request to the fixed
upstream API host over TLS and streams the response back unchanged apart
from hop-by-hop header filtering. Responses to the messages endpoint carry
rate-limit utilization headers; those are written to the rate-limit cache
for the statusline to read.

Features:
- Streaming in both directions (SSE responses are never buffered)
- Connection cap and request body size cap
- 300s upstream inactivity timeout
- Rate-limit telemetry harvesting with zero-reading suppression

Usage:
    python -m gauge.proxy.server 3456

    # With Claude Code:
    ANTHROPIC_BASE_URL=http://127.0.0.1:3456 claude
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import time
from collections import defaultdict
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from gauge.config import ProxyConfig, configure_logging, resolve_port
from gauge.exceptions import PayloadTooLargeError
from gauge.lifecycle import PidFile
from gauge.proxy.headers import filter_header_items
from gauge.proxy.limiter import ConnectionLease, ConnectionLimiter
from gauge.proxy.ratelimit import RateLimitCache

logger = logging.getLogger("gauge.proxy")

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


# =============================================================================
# Statistics
# =============================================================================


class ProxyStats:
    """Session counters, logged as a summary on shutdown."""

    def __init__(self):
        self.requests_total = 0
        self.requests_forwarded = 0
        self.requests_rejected: dict[str, int] = defaultdict(int)
        self.upstream_errors = 0
        self.streams_aborted = 0
        self.client_aborts = 0
        self.bytes_in = 0
        self.bytes_out = 0
        self.cache_writes = 0

    def record_rejected(self, reason: str):
        self.requests_rejected[reason] += 1

    def export(self) -> dict[str, Any]:
        return {
            "requests_total": self.requests_total,
            "requests_forwarded": self.requests_forwarded,
            "requests_rejected": dict(self.requests_rejected),
            "upstream_errors": self.upstream_errors,
            "streams_aborted": self.streams_aborted,
            "client_aborts": self.client_aborts,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "cache_writes": self.cache_writes,
        }


# =============================================================================
# Request helpers
# =============================================================================


def request_target(scope: Scope) -> str:
    """Raw request target (path plus query) exactly as the client sent it."""
    raw_path = scope.get("raw_path")
    if raw_path is None:
        target = scope.get("path", "")
    else:
        target = raw_path.decode("latin-1")
    query = scope.get("query_string", b"")
    if query:
        target = f"{target}?{query.decode('latin-1')}"
    return target


def is_valid_target(target: str) -> bool:
    """Reject empty targets, absolute-form URLs and control characters."""
    if not target or not target.startswith("/"):
        return False
    if not target.isascii():
        return False
    return _CONTROL_CHARS.search(target) is None


def declared_content_length(headers: Any) -> int | None:
    value = headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def error_response(status_code: int, error: str, headers: dict[str, str] | None = None) -> Response:
    return JSONResponse({"error": error}, status_code=status_code, headers=headers)


def payload_too_large_response() -> Response:
    return error_response(413, "payload_too_large", headers={"connection": "close"})


class BoundedBody:
    """Async iterator over the client body that enforces the size cap.

    Raises PayloadTooLargeError from inside the upstream client's body read
    as soon as the running total passes ``limit``, which aborts the
    outbound request after at most one extra chunk.
    """

    def __init__(self, chunks, limit: int):
        self._chunks = chunks
        self.limit = limit
        self.received = 0
        self.exceeded = False
        self.finished = asyncio.Event()

    async def __aiter__(self):
        async for chunk in self._chunks:
            self.received += len(chunk)
            if self.received > self.limit:
                self.exceeded = True
                raise PayloadTooLargeError(self.received, self.limit)
            yield chunk
        self.finished.set()


class ClientClosedResponse(Response):
    """Returned when the client hung up before an upstream response existed.

    Sends nothing; the server already knows the connection is gone.
    """

    def __init__(self):
        self.status_code = 499
        self.media_type = None
        self.background = None
        self.raw_headers = []

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        return None


async def wait_for_disconnect(receive: Receive, body: BoundedBody | None = None) -> None:
    """Return once the client connection closes.

    When the request has a body, ``receive`` belongs to the body reader until
    the body has been fully forwarded.
    """
    if body is not None:
        await body.finished.wait()
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


# =============================================================================
# Streaming response
# =============================================================================


class RelayResponse(Response):
    """Streams an upstream httpx response to the client.

    Owns the upstream response and the connection lease from the moment it
    is returned by the route: both are closed/released exactly once when the
    relay finishes, the client disconnects, or the upstream stream fails.
    An upstream failure after headers were sent ends the ASGI call without
    the final body message, which makes the server drop the connection.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        lease: ConnectionLease,
        stats: ProxyStats,
        request_id: str,
    ):
        self.status_code = upstream.status_code
        self.media_type = None
        self.background = None
        self.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in filter_header_items(
                (k.decode("latin-1"), v.decode("latin-1")) for k, v in upstream.headers.raw
            )
        ]
        self.upstream = upstream
        self.lease = lease
        self.stats = stats
        self.request_id = request_id
        self.bytes_sent = 0
        self.completed = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        relay = asyncio.ensure_future(self._relay(send))
        disconnect = asyncio.ensure_future(wait_for_disconnect(receive))
        try:
            await asyncio.wait({relay, disconnect}, return_when=asyncio.FIRST_COMPLETED)
            if relay.done():
                relay.result()
            else:
                logger.debug(f"[{self.request_id}] client disconnected mid-stream")
        finally:
            for task in (relay, disconnect):
                task.cancel()
            await asyncio.gather(relay, disconnect, return_exceptions=True)
            await self.upstream.aclose()
            self.stats.bytes_out += self.bytes_sent
            if not self.completed:
                self.stats.streams_aborted += 1
            self.lease.release()

    async def _relay(self, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        try:
            async for chunk in self.upstream.aiter_raw():
                self.bytes_sent += len(chunk)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
        except httpx.HTTPError as e:
            logger.warning(f"[{self.request_id}] upstream stream error: {e!r}")
            return
        except OSError as e:
            logger.debug(f"[{self.request_id}] client stream error: {e!r}")
            return

        await send({"type": "http.response.body", "body": b"", "more_body": False})
        self.completed = True


# =============================================================================
# Main Proxy
# =============================================================================


class GaugeProxy:
    """Streaming relay to the upstream API host."""

    def __init__(
        self,
        config: ProxyConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limit_cache: RateLimitCache | None = None,
    ):
        self.config = config
        self.limiter = ConnectionLimiter(config.max_connections)
        self.stats = ProxyStats()
        self.rate_limit_cache = rate_limit_cache or RateLimitCache(
            config.paths.cache_file,
            zero_suppression_window_seconds=config.zero_suppression_window_seconds,
        )
        self.upstream_url = httpx.URL(config.upstream_url)
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream_timeout_seconds),
            follow_redirects=False,
            transport=transport,
        )
        self._request_counter = 0

    async def startup(self):
        logger.info(
            f"gauge proxy relaying to {self.upstream_url} "
            f"(max {self.config.max_connections} connections, "
            f"{self.config.max_body_bytes // (1024 * 1024)} MB body cap)"
        )

    async def shutdown(self):
        await self.http_client.aclose()
        self._log_summary()

    def _log_summary(self):
        s = self.stats
        connections = self.limiter.stats()
        rejected = sum(s.requests_rejected.values())
        logger.info(
            f"Session: {s.requests_total} requests, {s.requests_forwarded} forwarded, "
            f"{rejected} rejected, {s.upstream_errors} upstream errors, "
            f"{s.streams_aborted} aborted streams, {s.client_aborts} early disconnects, "
            f"{s.cache_writes} cache writes, "
            f"{s.bytes_in:,} bytes in, {s.bytes_out:,} bytes out, "
            f"peak {connections['peak']}/{connections['max_connections']} connections"
        )

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"gp_{int(time.time())}_{self._request_counter:06d}"

    async def handle(self, request: Request) -> Response:
        """Validate, admit and forward one client request."""
        request_id = self._next_request_id()
        self.stats.requests_total += 1

        target = request_target(request.scope)
        if not is_valid_target(target):
            self.stats.record_rejected("bad_request")
            logger.warning(f"[{request_id}] rejected malformed target {target!r}")
            return error_response(400, "bad_request")

        lease = self.limiter.acquire()
        if lease is None:
            self.stats.record_rejected("too_many_connections")
            logger.warning(
                f"[{request_id}] rejected: {self.limiter.active} active connections"
            )
            return error_response(429, "too_many_connections")

        handed_off = False
        try:
            declared = declared_content_length(request.headers)
            if declared is not None and declared > self.config.max_body_bytes:
                self.stats.record_rejected("payload_too_large")
                logger.warning(f"[{request_id}] rejected: content-length {declared}")
                return payload_too_large_response()

            response = await self._forward(request, target, lease, request_id)
            handed_off = isinstance(response, RelayResponse)
            return response
        finally:
            if not handed_off:
                lease.release()

    def _upstream_headers(self, request: Request) -> list[tuple[bytes, bytes]]:
        items = filter_header_items(
            (k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw
        )
        headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in items
            if name.lower() != "host"
        ]
        headers.append((b"host", self.config.upstream_host.encode("ascii")))
        return headers

    async def _forward(
        self,
        request: Request,
        target: str,
        lease: ConnectionLease,
        request_id: str,
    ) -> Response:
        body = None
        if "content-length" in request.headers or "transfer-encoding" in request.headers:
            body = BoundedBody(request.stream(), self.config.max_body_bytes)

        # Built directly rather than via build_request() so the client's
        # default headers and cookie jar are never merged in.
        url = self.upstream_url.copy_with(raw_path=target.encode("ascii"))
        upstream_request = httpx.Request(
            request.method,
            url,
            headers=self._upstream_headers(request),
            content=body,
        )

        try:
            upstream = await self._send_unless_disconnected(
                request.receive, upstream_request, body
            )
        except ClientDisconnect:
            upstream = None
        except Exception as e:
            if body is not None and body.exceeded:
                self.stats.record_rejected("payload_too_large")
                logger.warning(
                    f"[{request_id}] aborted: body exceeded {self.config.max_body_bytes} bytes"
                )
                return payload_too_large_response()

            self.stats.upstream_errors += 1
            if isinstance(e, httpx.HTTPError):
                logger.warning(f"[{request_id}] upstream error: {e!r}")
            else:
                logger.exception(f"[{request_id}] unexpected proxy error")
            return error_response(502, "proxy_error")
        finally:
            if body is not None:
                self.stats.bytes_in += body.received

        if upstream is None:
            self.stats.client_aborts += 1
            logger.info(f"[{request_id}] client disconnected before upstream responded")
            return ClientClosedResponse()

        self.stats.requests_forwarded += 1
        if target.startswith(self.config.rate_limit_path_prefix):
            if await asyncio.to_thread(self.rate_limit_cache.record, upstream.headers):
                self.stats.cache_writes += 1

        return RelayResponse(upstream, lease, self.stats, request_id)

    async def _send_unless_disconnected(
        self,
        receive: Receive,
        upstream_request: httpx.Request,
        body: BoundedBody | None,
    ) -> httpx.Response | None:
        """Send upstream, giving up if the client leaves first.

        Returns None when the client disconnected before response headers
        arrived; the in-flight upstream request is cancelled.
        """
        sending = asyncio.ensure_future(
            self.http_client.send(upstream_request, stream=True)
        )
        disconnect = asyncio.ensure_future(wait_for_disconnect(receive, body))
        try:
            await asyncio.wait({sending, disconnect}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sending, disconnect):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sending, disconnect, return_exceptions=True)

        if sending.cancelled():
            return None
        return sending.result()


# =============================================================================
# FastAPI App
# =============================================================================


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Last-resort handler: log and keep serving."""
    exc = context.get("exception")
    message = context.get("message", "unhandled error")
    if exc is not None:
        logger.error(f"uncaught: {message}: {exc!r}")
    else:
        logger.error(f"uncaught: {message}")


def create_app(
    config: ProxyConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the FastAPI application wrapping a GaugeProxy."""
    config = config or ProxyConfig()

    app = FastAPI(
        title="gauge proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    proxy = GaugeProxy(config, transport=transport)
    app.state.proxy = proxy

    @app.on_event("startup")
    async def startup():
        asyncio.get_running_loop().set_exception_handler(_log_unhandled)
        await proxy.startup()

    @app.on_event("shutdown")
    async def shutdown():
        await proxy.shutdown()

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def relay(request: Request, path: str):
        return await proxy.handle(request)

    return app


class GaugeServer(uvicorn.Server):
    """uvicorn server that manages the PID file around the bound socket.

    When the proxy runs unsupervised it owns the PID file: it is written only
    once the listening socket is bound and removed on shutdown. Supervised
    proxies leave the file to the supervisor's controller.
    """

    def __init__(self, config: uvicorn.Config, proxy_config: ProxyConfig):
        super().__init__(config)
        self.proxy_config = proxy_config
        self.pid_file = PidFile(proxy_config.paths.pid_file)
        self.owns_pid_file = False

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.should_exit:
            return
        logger.info(
            f"listening on {self.proxy_config.host}:{self.proxy_config.port} "
            f"-> {self.proxy_config.upstream_host}"
        )
        if not self.proxy_config.supervised:
            self.owns_pid_file = self.pid_file.write(os.getpid())

    async def shutdown(self, sockets=None) -> None:
        try:
            await super().shutdown(sockets=sockets)
        finally:
            self.release_pid_file()

    def release_pid_file(self) -> None:
        if self.owns_pid_file and self.pid_file.read() == os.getpid():
            self.pid_file.remove()
        self.owns_pid_file = False


def run_server(config: ProxyConfig | None = None):
    """Run the proxy server until signalled."""
    configure_logging()
    config = config or ProxyConfig()
    config.paths.ensure()

    app = create_app(config)
    server = GaugeServer(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level="warning",
            timeout_graceful_shutdown=config.graceful_shutdown_seconds,
        ),
        config,
    )
    try:
        server.run()
    except SystemExit as e:
        # uvicorn exits this way when the port cannot be bound
        if e.code:
            logger.error(f"server error: could not listen on {config.host}:{config.port}")
        raise
    finally:
        server.release_pid_file()


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="gauge proxy server")
    parser.add_argument("port", nargs="?", default=None, help="Listen port")
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args(argv)

    run_server(ProxyConfig(host=args.host, port=resolve_port(args.port)))


if __name__ == "__main__":
    main()
