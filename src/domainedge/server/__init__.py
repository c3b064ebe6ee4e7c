from domainedge.server.proxy import ProxyServer, build_upstream_headers, create_http_client, strip_port

__all__ = [
    "ProxyServer",
    "build_upstream_headers",
    "create_http_client",
    "strip_port",
]
