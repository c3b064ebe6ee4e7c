"""Edge routing proxy for customer domains.

Requests arrive for arbitrary tenant hostnames. The proxy checks the Host
header against the configured allow-list and streams the request to the
origin, then streams the origin's response back unchanged.

Routes:
    GET /_health  always 200, even when configuration is broken
    *   /*        proxied, 403 (host not allowed), 500 (configuration or
                  internal error), 502 (origin unreachable), 504 (origin timeout)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime

import httpx
import structlog
from aiohttp import web

from domainedge.core.config import ProxyConfig, ProxySettings, parse_config
from domainedge.errors import ConfigError, ErrorKind
from domainedge.observability.metrics import (
    PROXY_REQUEST_DURATION,
    PROXY_REQUESTS,
    UPSTREAM_ERRORS,
    bucket_status,
    generate_metrics,
    get_content_type,
)

logger = structlog.get_logger()

WORKER_NAME = "custom-domain-proxy"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def strip_port(host: str) -> str:
    """Lowercase a Host header value and drop any port.

    Examples:
        >>> strip_port("Shop.Example.com:8443")
        'shop.example.com'
        >>> strip_port("[::1]:8080")
        '::1'
    """
    host = host.strip().lower()
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def _connection_tokens(value: str | None) -> set[str]:
    value = value or ""
    return {token.strip().lower() for token in value.split(",") if token.strip()}


def build_upstream_headers(request: web.Request) -> list[tuple[str, str]]:
    """Headers forwarded to the origin.

    Hop-by-hop headers and Host are dropped; X-Forwarded-Host/Proto/For are
    added so the origin can see the tenant hostname.
    """
    skip = HOP_BY_HOP_HEADERS | _connection_tokens(request.headers.get("Connection")) | {
        "host",
        "x-forwarded-host",
        "x-forwarded-proto",
        "x-forwarded-for",
    }
    headers = [(key, value) for key, value in request.headers.items() if key.lower() not in skip]

    original_host = request.headers.get("Host", request.host)
    forwarded_for = request.headers.get("X-Forwarded-For")
    client_ip = request.remote or "unknown"
    headers.append(("X-Forwarded-Host", original_host))
    headers.append(("X-Forwarded-Proto", request.headers.get("X-Forwarded-Proto", request.scheme)))
    headers.append(
        ("X-Forwarded-For", f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip)
    )
    return headers


def create_http_client(settings: ProxySettings) -> httpx.AsyncClient:
    """Create the pooled HTTP client used to reach the origin."""
    timeout = httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout)
    limits = httpx.Limits(
        max_connections=settings.max_connections,
        max_keepalive_connections=settings.max_keepalive,
    )
    # Redirects go back to the browser untouched
    client = httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=False)
    # Forward only what the caller sent; no client-added Accept-Encoding or User-Agent
    for name in list(client.headers.keys()):
        del client.headers[name]
    return client


def _json_error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


class ProxyServer:
    """Routes customer-domain traffic to the origin."""

    def __init__(
        self,
        config: ProxyConfig | None,
        settings: ProxySettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        config_error: ConfigError | None = None,
    ) -> None:
        """Initialize the proxy.

        Args:
            config: Validated routing configuration, or None when it failed
                to parse (then ``config_error`` says why).
            settings: Runtime tuning. Defaults are read from the environment.
            http_client: Client for the origin. Created from settings when
                omitted and closed on shutdown.
            config_error: Configuration failure reported on proxied paths.
        """
        if config is None and config_error is None:
            raise ValueError("Either config or config_error is required")
        self.config = config
        self.config_error = config_error
        self.settings = settings or ProxySettings()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._http_runner: web.AppRunner | None = None
        self._control_runner: web.AppRunner | None = None

    @classmethod
    def from_environment(
        cls,
        env: dict[str, str] | None = None,
        settings: ProxySettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> ProxyServer:
        """Parse configuration once; a failure is kept and served as 500s."""
        try:
            return cls(parse_config(env), settings, http_client)
        except ConfigError as e:
            logger.error("Proxy configuration invalid", error=str(e))
            return cls(None, settings, http_client, config_error=e)

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = create_http_client(self.settings)
        return self._http_client

    def create_app(self) -> web.Application:
        """Build the customer-facing application."""
        app = web.Application(client_max_size=self.settings.client_max_size)
        app.router.add_get("/_health", self._handle_health)
        app.router.add_route("*", "/{path:.*}", self._handle_proxy)
        app.on_cleanup.append(self._close_client)
        return app

    def create_control_app(self) -> web.Application:
        """Build the operator application serving /metrics and /health."""
        app = web.Application()
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/health", self._handle_health)
        return app

    async def _close_client(self, app: web.Application) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _parse_bind(self, bind: str) -> tuple[str, int]:
        """Parse bind address into host and port."""
        if ":" in bind:
            host, port = bind.rsplit(":", 1)
            return host, int(port)
        return "0.0.0.0", int(bind)

    async def start(self) -> None:
        """Start serving customer traffic, and metrics when configured."""
        # A client disconnect cancels the handler and with it the upstream request
        self._http_runner = web.AppRunner(self.create_app(), handler_cancellation=True)
        await self._http_runner.setup()
        host, port = self._parse_bind(self.settings.bind)
        await web.TCPSite(self._http_runner, host, port).start()
        logger.info(
            "Proxy started",
            host=host,
            port=port,
            environment=self.config.environment if self.config else None,
            configured=self.config_error is None,
        )

        if self.settings.metrics_bind:
            self._control_runner = web.AppRunner(self.create_control_app())
            await self._control_runner.setup()
            control_host, control_port = self._parse_bind(self.settings.metrics_bind)
            await web.TCPSite(self._control_runner, control_host, control_port).start()
            logger.info("Metrics endpoint started", host=control_host, port=control_port)

    async def stop(self) -> None:
        """Stop the proxy gracefully."""
        logger.info("Stopping proxy...")
        if self._control_runner:
            await self._control_runner.cleanup()
            self._control_runner = None
        if self._http_runner:
            await self._http_runner.cleanup()
            self._http_runner = None
        logger.info("Proxy stopped")

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Liveness check. Answers 200 whether or not configuration parsed."""
        return web.json_response(
            {
                "status": "healthy",
                "worker": WORKER_NAME,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        # The exposition content type carries a charset, which content_type= rejects
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})

    def _record(self, request: web.Request, status: int, started: float) -> None:
        PROXY_REQUEST_DURATION.observe(time.time() - started)
        PROXY_REQUESTS.labels(method=request.method, status=bucket_status(status)).inc()

    def _finish(
        self, request: web.Request, response: web.StreamResponse, started: float
    ) -> web.StreamResponse:
        self._record(request, response.status, started)
        return response

    async def _handle_proxy(self, request: web.Request) -> web.StreamResponse:
        """Check the Host header and forward the request to the origin."""
        started = time.time()

        if self.config is None:
            logger.error("Request rejected: proxy misconfigured", error=str(self.config_error))
            return self._finish(
                request,
                _json_error(500, "Configuration error", str(self.config_error)),
                started,
            )

        host = strip_port(request.headers.get("Host", request.host))
        if not self.config.is_host_allowed(host):
            logger.warning(
                "Host not allowed",
                host=host,
                kind=ErrorKind.DOMAIN_NOT_ALLOWED.value,
            )
            return self._finish(request, _json_error(403, "Forbidden", "Domain not allowed"), started)

        url = self.config.origin_base + request.raw_path
        content = request.content.iter_any() if request.body_exists else None

        try:
            upstream = await self.http_client.send(
                self.http_client.build_request(
                    request.method,
                    url,
                    headers=build_upstream_headers(request),
                    content=content,
                ),
                stream=True,
            )
        except httpx.TimeoutException as e:
            UPSTREAM_ERRORS.labels(kind=ErrorKind.UPSTREAM_TIMEOUT.value).inc()
            logger.warning(
                "Origin timed out",
                host=host,
                path=request.path,
                kind=ErrorKind.UPSTREAM_TIMEOUT.value,
                error=str(e),
            )
            return self._finish(
                request,
                _json_error(504, "Gateway timeout", "Origin did not respond in time"),
                started,
            )
        except httpx.TransportError as e:
            UPSTREAM_ERRORS.labels(kind=ErrorKind.UPSTREAM_ERROR.value).inc()
            logger.warning(
                "Origin unreachable",
                host=host,
                path=request.path,
                kind=ErrorKind.UPSTREAM_ERROR.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._finish(
                request, _json_error(502, "Bad gateway", "Origin unreachable"), started
            )
        except Exception as e:
            UPSTREAM_ERRORS.labels(kind="internal").inc()
            logger.exception(
                "Request forwarding failed",
                host=host,
                path=request.path,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._finish(
                request,
                _json_error(500, "Internal server error", "Failed to forward request"),
                started,
            )

        response: web.StreamResponse | None = None
        try:
            response = await self._relay(request, upstream)
        finally:
            await upstream.aclose()
            if response is None:
                # Cut mid-body or cancelled; the origin status already went out
                self._record(request, upstream.status_code, started)

        logger.info(
            "Proxied request",
            method=request.method,
            host=host,
            path=request.path,
            status=response.status,
            duration_ms=int((time.time() - started) * 1000),
        )
        return self._finish(request, response, started)

    async def _relay(self, request: web.Request, upstream: httpx.Response) -> web.StreamResponse:
        """Stream the origin's status, headers and body back to the caller."""
        response = web.StreamResponse(status=upstream.status_code, reason=upstream.reason_phrase)
        skip = HOP_BY_HOP_HEADERS | _connection_tokens(upstream.headers.get("Connection"))
        for key, value in upstream.headers.multi_items():
            if key.lower() not in skip:
                response.headers.add(key, value)

        await response.prepare(request)
        try:
            async for chunk in upstream.aiter_raw():
                await response.write(chunk)
        except httpx.HTTPError as e:
            # Headers are already out; the only signal left is a cut connection
            UPSTREAM_ERRORS.labels(kind=ErrorKind.UPSTREAM_ERROR.value).inc()
            logger.warning("Origin stream interrupted", path=request.path, error=str(e))
            raise
        await response.write_eof()
        return response
