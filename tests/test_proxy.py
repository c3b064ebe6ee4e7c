"""Tests for the edge routing proxy."""

from __future__ import annotations

from contextlib import asynccontextmanager

import aiohttp
import httpx
import pytest
from aiohttp import test_utils
from prometheus_client import REGISTRY

from domainedge.core.config import ProxySettings
from domainedge.server import ProxyServer, build_upstream_headers, create_http_client, strip_port

ORIGIN = "https://origin.example.com"


def _proxy(handler, **env) -> ProxyServer:
    """Proxy whose origin is answered in-process by ``handler``."""
    env = {
        "ORIGIN_ENDPOINT": ORIGIN,
        "ALLOWED_DOMAINS": '["allowed.com", "eu.brand.example"]',
        **env,
    }
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return ProxyServer.from_environment(env, ProxySettings(_env_file=None), http_client=client)


@asynccontextmanager
async def _serve(app):
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


async def _stream(*chunks: bytes):
    """Origin body delivered chunk by chunk, as a real connection would."""
    for chunk in chunks:
        yield chunk


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=_stream(b"origin says ", b"hi"))


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self):
        proxy = _proxy(_ok)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/_health", headers={"Host": "denied.com"})
            data = await resp.json()

        assert resp.status == 200
        assert data["status"] == "healthy"
        assert data["worker"] == "custom-domain-proxy"
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_health_with_broken_config(self):
        proxy = _proxy(_ok, ORIGIN_ENDPOINT="http://insecure.example.com")

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/_health")

        assert resp.status == 200


class TestConfigErrors:
    @pytest.mark.asyncio
    async def test_missing_origin_is_500(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        proxy = ProxyServer.from_environment(
            {},
            ProxySettings(_env_file=None),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/anything", headers={"Host": "allowed.com"})
            data = await resp.json()

        assert resp.status == 500
        assert data["error"] == "Configuration error"
        assert "ORIGIN_ENDPOINT" in data["message"]
        assert seen == []

    @pytest.mark.asyncio
    async def test_malformed_allow_list_is_500(self):
        proxy = _proxy(_ok, ALLOWED_DOMAINS="not json")

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": "allowed.com"})

        assert resp.status == 500

    def test_requires_config_or_error(self):
        with pytest.raises(ValueError):
            ProxyServer(None)


class TestHostFilter:
    """Tests for allow-list enforcement."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "host,status",
        [
            ("allowed.com", 200),
            ("ALLOWED.com:8443", 200),
            ("eu.brand.example", 200),
            ("denied.com", 403),
            ("sub.allowed.com", 403),
            ("brand.example", 403),
        ],
    )
    async def test_allow_list(self, host, status):
        proxy = _proxy(_ok)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": host})
            body = await resp.json() if status == 403 else await resp.text()

        assert resp.status == status
        if status == 403:
            assert body == {"error": "Forbidden", "message": "Domain not allowed"}
        else:
            assert body == "origin says hi"

    @pytest.mark.asyncio
    async def test_no_allow_list_forwards_any_host(self):
        proxy = _proxy(_ok, ALLOWED_DOMAINS="")

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": "whatever.example.org"})

        assert resp.status == 200

    @pytest.mark.asyncio
    async def test_empty_allow_list_denies_all(self):
        proxy = _proxy(_ok, ALLOWED_DOMAINS="[]")

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": "allowed.com"})

        assert resp.status == 403


class TestForwarding:
    """Tests for what reaches the origin and what comes back."""

    @pytest.mark.asyncio
    async def test_request_forwarded_verbatim(self):
        seen = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = await request.aread()
            return httpx.Response(201, content=_stream(b"created"))

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.post(
                "/api/items?page=2&sort=desc",
                data=b'{"name": "widget"}',
                headers={
                    "Host": "allowed.com",
                    "Content-Type": "application/json",
                    "X-Custom": "kept",
                    "X-Forwarded-For": "203.0.113.7",
                },
            )
            body = await resp.read()

        assert resp.status == 201
        assert body == b"created"
        assert seen["method"] == "POST"
        assert seen["url"] == f"{ORIGIN}/api/items?page=2&sort=desc"
        assert seen["body"] == b'{"name": "widget"}'
        assert seen["headers"]["host"] == "origin.example.com"
        assert seen["headers"]["x-forwarded-host"] == "allowed.com"
        assert seen["headers"]["x-forwarded-proto"] == "http"
        assert seen["headers"]["x-forwarded-for"] == "203.0.113.7, 127.0.0.1"
        assert seen["headers"]["x-custom"] == "kept"
        assert seen["headers"]["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_response_relayed_verbatim(self):
        def handler(request):
            return httpx.Response(
                404,
                headers=[
                    ("X-Origin", "yes"),
                    ("Set-Cookie", "a=1"),
                    ("Set-Cookie", "b=2"),
                ],
                content=_stream(b"not ", b"here"),
            )

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/missing", headers={"Host": "allowed.com"})
            body = await resp.read()

        assert resp.status == 404
        assert body == b"not here"
        assert resp.headers["X-Origin"] == "yes"
        assert resp.headers.getall("Set-Cookie") == ["a=1", "b=2"]

    @pytest.mark.asyncio
    async def test_redirects_not_followed(self):
        def handler(request):
            return httpx.Response(
                302, headers={"Location": "https://allowed.com/login"}, content=_stream()
            )

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get(
                "/account", headers={"Host": "allowed.com"}, allow_redirects=False
            )

        assert resp.status == 302
        assert resp.headers["Location"] == "https://allowed.com/login"

    @pytest.mark.asyncio
    async def test_large_body_streamed(self):
        payload = b"x" * (1024 * 1024)

        async def handler(request):
            body = await request.aread()
            chunks = [body[i : i + 65536] for i in range(0, len(body), 65536)]
            return httpx.Response(200, content=_stream(*chunks))

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.put("/upload", data=payload, headers={"Host": "allowed.com"})
            body = await resp.read()

        assert body == payload


class TestUpstreamFailures:
    """Tests for origin failures mapped to gateway errors."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc_type",
        [httpx.ReadTimeout, httpx.ConnectTimeout, httpx.PoolTimeout],
    )
    async def test_timeout_is_504(self, exc_type):
        def handler(request):
            raise exc_type("too slow", request=request)

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": "allowed.com"})
            data = await resp.json()

        assert resp.status == 504
        assert data == {"error": "Gateway timeout", "message": "Origin did not respond in time"}

    @pytest.mark.asyncio
    async def test_connect_error_is_502(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": "allowed.com"})
            data = await resp.json()

        assert resp.status == 502
        assert data == {"error": "Bad gateway", "message": "Origin unreachable"}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self):
        def handler(request):
            raise RuntimeError("boom")

        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.get("/", headers={"Host": "allowed.com"})
            data = await resp.json()

        assert resp.status == 500
        assert data["error"] == "Internal server error"
        assert "boom" not in data["message"]


    @pytest.mark.asyncio
    async def test_stream_cut_mid_body_still_counted(self):
        async def broken_body():
            yield b"partial"
            raise httpx.ReadError("connection reset by origin")

        def handler(request):
            return httpx.Response(200, content=broken_body())

        labels = {"method": "PATCH", "status": "2xx"}
        before = REGISTRY.get_sample_value("domainedge_proxy_requests_total", labels) or 0.0
        proxy = _proxy(handler)

        async with _serve(proxy.create_app()) as client:
            resp = await client.patch("/", headers={"Host": "allowed.com"})
            assert resp.status == 200
            with pytest.raises(aiohttp.ClientError):
                await resp.read()

        after = REGISTRY.get_sample_value("domainedge_proxy_requests_total", labels)
        assert after == before + 1


class TestControlApp:
    @pytest.mark.asyncio
    async def test_metrics(self):
        proxy = _proxy(_ok)

        async with _serve(proxy.create_app()) as client:
            await client.get("/", headers={"Host": "denied.com"})

        async with _serve(proxy.create_control_app()) as client:
            resp = await client.get("/metrics")
            text = await resp.text()
            health = await client.get("/health")

        assert resp.status == 200
        assert "domainedge_proxy_requests_total" in text
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert health.status == 200


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Shop.Example.com", "shop.example.com"),
            ("shop.example.com:8443", "shop.example.com"),
            ("shop.example.com.", "shop.example.com"),
            ("[2001:db8::1]:443", "2001:db8::1"),
        ],
    )
    def test_strip_port(self, raw, expected):
        assert strip_port(raw) == expected

    def test_build_upstream_headers_drops_hop_by_hop(self):
        request = test_utils.make_mocked_request(
            "GET",
            "/",
            headers={
                "Host": "allowed.com",
                "Connection": "keep-alive, X-Internal",
                "X-Internal": "secret",
                "Keep-Alive": "timeout=5",
                "Upgrade": "h2c",
                "Accept": "text/html",
            },
        )

        headers = dict(build_upstream_headers(request))

        assert "Host" not in headers
        assert "Connection" not in headers
        assert "X-Internal" not in headers
        assert "Keep-Alive" not in headers
        assert "Upgrade" not in headers
        assert headers["Accept"] == "text/html"
        assert headers["X-Forwarded-Host"] == "allowed.com"

    @pytest.mark.asyncio
    async def test_http_client_sends_no_default_headers(self):
        client = create_http_client(ProxySettings(_env_file=None))
        try:
            assert len(client.headers) == 0
            assert client.follow_redirects is False
        finally:
            await client.aclose()
