"""domainedge edge proxy - Main entry point."""

import asyncio
import sys

import click
from rich.console import Console

from domainedge.core.config import ProxyConfig, ProxySettings, parse_config
from domainedge.errors import ConfigError
from domainedge.observability.logging import configure_logging
from domainedge.server.proxy import ProxyServer

console = Console()

BANNER = """
     _                       _                _
  __| | ___  _ __ ___   __ _(_)_ __   ___  __| | __ _  ___
 / _` |/ _ \\| '_ ` _ \\ / _` | | '_ \\ / _ \\/ _` |/ _` |/ _ \\
| (_| | (_) | | | | | | (_| | | | | |  __/ (_| | (_| |  __/
 \\__,_|\\___/|_| |_| |_|\\__,_|_|_| |_|\\___|\\__,_|\\__, |\\___|
                                                 |___/
                       CUSTOM DOMAIN PROXY
"""


@click.command()
@click.option("--bind", envvar="DOMAINEDGE_BIND", default="0.0.0.0:8080", help="Proxy bind address")
@click.option(
    "--metrics-bind",
    envvar="DOMAINEDGE_METRICS_BIND",
    default=None,
    help="Bind address for /metrics and /health (disabled when unset)",
)
@click.option(
    "--request-timeout",
    envvar="DOMAINEDGE_REQUEST_TIMEOUT",
    type=float,
    default=30.0,
    help="Upstream request timeout in seconds. Default: 30s",
)
@click.option(
    "--connect-timeout",
    envvar="DOMAINEDGE_CONNECT_TIMEOUT",
    type=float,
    default=10.0,
    help="Upstream connect timeout in seconds. Default: 10s",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Log level",
)
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
def main(
    bind: str,
    metrics_bind: str | None,
    request_timeout: float,
    connect_timeout: float,
    log_level: str,
    json_logs: bool,
):
    """Run the domainedge custom domain proxy.

    Routing comes from ORIGIN_ENDPOINT, ALLOWED_DOMAINS and ENVIRONMENT.
    """
    configure_logging(log_level, json_output=json_logs)
    console.print(BANNER, style="cyan")

    try:
        config = parse_config()
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)

    settings = ProxySettings(
        bind=bind,
        metrics_bind=metrics_bind,
        request_timeout=request_timeout,
        connect_timeout=connect_timeout,
    )

    console.print(f"Origin: {config.origin_endpoint}", style="yellow")
    console.print(f"Environment: {config.environment}", style="dim")
    console.print(f"Proxy: {settings.bind}", style="dim")
    if config.allowed_domains is None:
        console.print("Allowed domains: any", style="dim")
    else:
        console.print(f"Allowed domains: {len(config.allowed_domains)}", style="dim")
    if settings.metrics_bind:
        console.print(f"Metrics: {settings.metrics_bind}", style="dim")
    console.print(
        f"Timeouts: {settings.request_timeout}s request, {settings.connect_timeout}s connect",
        style="dim",
    )

    asyncio.run(run_server(config, settings))


async def run_server(config: ProxyConfig, settings: ProxySettings):
    """Run the proxy until interrupted."""
    server = ProxyServer(config, settings)

    try:
        await server.start()
        console.print("Proxy started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
