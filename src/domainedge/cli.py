"""domainedge CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import UTC, datetime

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from domainedge.observability.logging import configure_logging

console = Console()

BANNER = """
     _                       _                _
  __| | ___  _ __ ___   __ _(_)_ __   ___  __| | __ _  ___
 / _` |/ _ \\| '_ ` _ \\ / _` | | '_ \\ / _ \\/ _` |/ _` |/ _ \\
| (_| | (_) | | | | | | (_| | | | | |  __/ (_| | (_| |  __/
 \\__,_|\\___/|_| |_| |_|\\__,_|_|_| |_|\\___|\\__,_|\\__, |\\___|
                                                 |___/
           Custom domains for hosted sites
"""

STATUS_COLORS = {
    "not_started": "dim",
    "pending_verification": "yellow",
    "verified": "green",
    "failed": "red",
    "disconnected": "dim",
}

STATUS_CHOICES = list(STATUS_COLORS)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    help="Log level",
)
def main(log_level: str):
    """domainedge - attach custom domains to hosted sites.

    Use 'domainedge COMMAND --help' for more info on specific commands.
    """
    configure_logging(log_level)


@main.command()
def version():
    """Show version information."""
    from domainedge import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """View and validate configuration settings.

    Proxy routing comes from ORIGIN_ENDPOINT, ALLOWED_DOMAINS and
    ENVIRONMENT. Tuning settings use the DOMAINEDGE_ prefix.

    Examples:

        domainedge config show            # Show all config settings

        domainedge config validate        # Validate current config
    """
    pass


def _routing_display() -> dict[str, object]:
    from domainedge.core.config import parse_config
    from domainedge.errors import ConfigError

    try:
        proxy_config = parse_config()
    except ConfigError as e:
        return {"error": str(e)}
    return {
        "origin_endpoint": proxy_config.origin_endpoint,
        "allowed_domains": list(proxy_config.allowed_domains)
        if proxy_config.allowed_domains is not None
        else None,
        "environment": proxy_config.environment,
    }


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(json_output: bool):
    """Show current configuration settings.

    Values come from environment variables, a .env file, or defaults.
    """
    from domainedge.core.config import DomainSettings, ProxySettings

    display = {
        "routing": _routing_display(),
        "proxy": ProxySettings().model_dump(),
        "domains": DomainSettings().to_display_dict(),
    }

    if json_output:
        click.echo(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            env_var = key.upper() if section_name == "routing" else f"DOMAINEDGE_{key.upper()}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, env_var)

        console.print(table)
        console.print()


@config.command("validate")
def config_validate():
    """Validate current configuration.

    Fails when the proxy could not serve traffic with these values.
    """
    from pydantic import ValidationError

    from domainedge.core.config import DomainSettings, ProxySettings, parse_config
    from domainedge.errors import ConfigError

    errors: list[str] = []
    warnings: list[str] = []

    try:
        proxy_config = parse_config()
    except ConfigError as e:
        errors.append(str(e))
        proxy_config = None

    try:
        ProxySettings()
        domain_settings = DomainSettings()
    except ValidationError as e:
        errors.append(str(e))
        domain_settings = None

    if proxy_config is not None:
        if proxy_config.allowed_domains is None:
            warnings.append("ALLOWED_DOMAINS is not set; requests for any host are proxied")
        elif not proxy_config.allowed_domains:
            warnings.append("ALLOWED_DOMAINS is empty; every proxied request is refused")

    if domain_settings is not None and domain_settings.check_window < 10:
        warnings.append(
            f"check_window ({domain_settings.check_window}s) is very short, may hammer resolvers"
        )

    if errors:
        console.print("[red bold]Configuration Errors:[/red bold]")
        for error in errors:
            console.print(f"  [red]x[/red] {error}")
        console.print()

    if warnings:
        console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
        for warning in warnings:
            console.print(f"  [yellow]![/yellow] {warning}")
        console.print()

    if not errors and not warnings:
        console.print("[green]OK - Configuration is valid[/green]")
    elif not errors:
        console.print("[green]OK - Configuration is valid (with warnings)[/green]")
    else:
        console.print("[red]ERROR - Configuration has errors[/red]")
        sys.exit(1)


@main.group()
def domain():
    """Manage custom domains for sites.

    A site's domain goes from not_started to pending_verification when
    initiated, and to verified once its CNAME and TXT records check out.

    Examples:

        domainedge domain init site-123 shop.example.com

        domainedge domain check site-123

        domainedge domain status site-123

        domainedge domain list --status pending_verification

        domainedge domain disconnect site-123
    """
    pass


def storage_option(f):
    return click.option("--storage", default=None, help="Path to site storage file")(f)


def config_option(f):
    return click.option(
        "--config",
        "config_path",
        type=click.Path(dir_okay=False),
        default=None,
        help="YAML or TOML settings file",
    )(f)


def _build_manager(storage: str | None, config_path: str | None):
    from domainedge.core.config import load_domain_settings
    from domainedge.domains import DNSVerifier, DomainLifecycleManager, JsonSiteStore

    try:
        settings = load_domain_settings(config_path, storage_path=storage)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    store = JsonSiteStore(settings.storage_path)
    return DomainLifecycleManager(
        store,
        DNSVerifier(timeout=settings.dns_timeout),
        proxy_hostname=settings.proxy_hostname,
        verification_prefix=settings.verification_prefix,
        record_ttl=settings.record_ttl,
        check_window=settings.check_window,
        recheck_concurrency=settings.recheck_concurrency,
    )


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "N/A"


def _status_content(result) -> str:
    status = result.status.value
    color = STATUS_COLORS.get(status, "white")
    content = (
        f"[bold]Site:[/bold] {result.site_id}\n"
        f"[bold]Domain:[/bold] {result.domain or 'N/A'}\n"
        f"[bold]Status:[/bold] [{color}]{status}[/{color}]\n"
        f"[bold]Last Check:[/bold] {_fmt_time(result.last_dns_check_at)}"
    )
    if result.verified_at:
        content += f"\n[bold]Verified At:[/bold] {_fmt_time(result.verified_at)}"
    if result.next_check_available:
        content += f"\n[bold]Next Check:[/bold] {_fmt_time(result.next_check_available)}"
    if result.error:
        content += f"\n\n[red]Error:[/red] {result.error}"
    return content


@domain.command("init")
@click.argument("site_id")
@click.argument("domain_name")
@storage_option
@config_option
def domain_init(site_id: str, domain_name: str, storage: str | None, config_path: str | None):
    """Start attaching a domain to a site.

    Prints the DNS records the site owner must publish.
    """
    asyncio.run(_domain_init_async(site_id, domain_name, storage, config_path))


async def _domain_init_async(
    site_id: str, domain_name: str, storage: str | None, config_path: str | None
):
    """Async implementation of domain init command."""
    from domainedge.errors import DomainEdgeError

    manager = _build_manager(storage, config_path)

    try:
        await manager.store.create_site(site_id)
        result = await manager.initiate_domain(site_id, domain_name)
        record = await manager.store.get(site_id)
    except DomainEdgeError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    headline = (
        "[yellow]Verification already in progress[/yellow]"
        if result.reused
        else "[green]Domain attachment started![/green]"
    )
    console.print(
        Panel(
            f"{headline}\n\n"
            f"[bold]Site:[/bold] {result.site_id}\n"
            f"[bold]Domain:[/bold] {result.domain}\n"
            f"[bold]Status:[/bold] {result.status.value}\n\n"
            f"{manager.dns_instructions(record)}",
            title="Domain Setup",
            border_style="green",
        )
    )


@domain.command("check")
@click.argument("site_id")
@storage_option
@config_option
def domain_check(site_id: str, storage: str | None, config_path: str | None):
    """Check a site's DNS records now (at most once per window)."""
    asyncio.run(_domain_check_async(site_id, storage, config_path))


async def _domain_check_async(site_id: str, storage: str | None, config_path: str | None):
    """Async implementation of domain check command."""
    from domainedge.errors import DomainEdgeError

    manager = _build_manager(storage, config_path)

    try:
        console.print(f"Checking DNS records for site [cyan]{site_id}[/cyan]...", style="yellow")
        result = await manager.check_domain(site_id)
    except DomainEdgeError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if result.verified:
        console.print(
            Panel(
                f"[green]Domain verified![/green]\n\n{_status_content(result)}",
                title="Verification Successful",
                border_style="green",
            )
        )
        return

    if result.rate_limited:
        wait = int(result.seconds_until_next_check(datetime.now(UTC))) + 1
        console.print(
            Panel(
                f"[yellow]Checked too recently, try again in {wait}s[/yellow]\n\n"
                f"{_status_content(result)}",
                title="Rate Limited",
                border_style="yellow",
            )
        )
        sys.exit(1)

    content = _status_content(result)
    if result.verification is not None:
        verification = result.verification
        cname_status = "[green]Valid[/green]" if verification.cname_valid else "[red]Invalid[/red]"
        txt_status = "[green]Valid[/green]" if verification.txt_valid else "[red]Invalid[/red]"
        content += f"\n\n[bold]CNAME:[/bold] {cname_status}\n[bold]TXT:[/bold] {txt_status}"
        for message in verification.errors:
            content += f"\n  [red]x[/red] {message}"

    console.print(Panel(content, title="Verification Status", border_style="yellow"))
    sys.exit(1)


@domain.command("status")
@click.argument("site_id")
@storage_option
@config_option
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def domain_status(site_id: str, storage: str | None, config_path: str | None, json_output: bool):
    """Show the stored status of a site's domain (no DNS lookups)."""
    asyncio.run(_domain_status_async(site_id, storage, config_path, json_output))


async def _domain_status_async(
    site_id: str, storage: str | None, config_path: str | None, json_output: bool
):
    """Async implementation of domain status command."""
    from domainedge.domains import DomainStatus
    from domainedge.errors import DomainEdgeError

    manager = _build_manager(storage, config_path)

    try:
        result = await manager.get_domain_status(site_id)
    except DomainEdgeError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    content = _status_content(result)
    if result.status in (DomainStatus.PENDING_VERIFICATION, DomainStatus.FAILED):
        record = await manager.store.get(site_id)
        content += f"\n\n[yellow]DNS Setup Required:[/yellow]\n{manager.dns_instructions(record)}"

    color = STATUS_COLORS.get(result.status.value, "white")
    console.print(Panel(content, title=f"Domain Status: {site_id}", border_style=color))


@domain.command("list")
@storage_option
@config_option
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Filter by status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def domain_list(storage: str | None, config_path: str | None, status: str | None, json_output: bool):
    """List site domain records."""
    asyncio.run(_domain_list_async(storage, config_path, status, json_output))


async def _domain_list_async(
    storage: str | None, config_path: str | None, status: str | None, json_output: bool
):
    """Async implementation of domain list command."""
    from domainedge.domains import DomainStatus

    manager = _build_manager(storage, config_path)
    records = await manager.list_domains(DomainStatus(status) if status else None)

    if json_output:
        click.echo(json.dumps([record.to_dict() for record in records], indent=2))
        return

    if not records:
        console.print("[dim]No sites found[/dim]")
        return

    table = Table(title="Site Domains")
    table.add_column("Site", style="dim")
    table.add_column("Domain", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Provider")
    table.add_column("Last Check")

    for record in records:
        color = STATUS_COLORS.get(record.status.value, "white")
        table.add_row(
            record.site_id,
            record.custom_domain or "-",
            f"[{color}]{record.status.value}[/{color}]",
            record.dns_provider or "-",
            _fmt_time(record.last_dns_check_at),
        )

    console.print(table)


@domain.command("disconnect")
@click.argument("site_id")
@storage_option
@config_option
@click.option("--reason", default=None, help="Reason recorded in the log")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def domain_disconnect(
    site_id: str, storage: str | None, config_path: str | None, reason: str | None, yes: bool
):
    """Detach a site's domain."""
    if not yes and not click.confirm(f"Are you sure you want to disconnect the domain of '{site_id}'?"):
        console.print("[dim]Cancelled[/dim]")
        return

    asyncio.run(_domain_disconnect_async(site_id, storage, config_path, reason))


async def _domain_disconnect_async(
    site_id: str, storage: str | None, config_path: str | None, reason: str | None
):
    """Async implementation of domain disconnect command."""
    from domainedge.errors import DomainEdgeError

    manager = _build_manager(storage, config_path)

    try:
        record = await manager.disconnect_domain(site_id, reason=reason)
    except DomainEdgeError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]Domain disconnected:[/green] {record.custom_domain or site_id}")


@domain.command("recheck")
@storage_option
@config_option
@click.option("--concurrency", type=int, default=None, help="Parallel checks")
def domain_recheck(storage: str | None, config_path: str | None, concurrency: int | None):
    """Check every pending or failed site (for cron jobs)."""
    asyncio.run(_domain_recheck_async(storage, config_path, concurrency))


async def _domain_recheck_async(
    storage: str | None, config_path: str | None, concurrency: int | None
):
    """Async implementation of domain recheck command."""
    manager = _build_manager(storage, config_path)
    results = await manager.recheck_pending(concurrency)

    if not results:
        console.print("[dim]No sites awaiting verification[/dim]")
        return

    table = Table(title="Re-check Results")
    table.add_column("Site", style="dim")
    table.add_column("Domain", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Detail")

    for result in results:
        color = STATUS_COLORS.get(result.status.value, "white")
        detail = "rate limited" if result.rate_limited else (result.error or "")
        table.add_row(
            result.site_id,
            result.domain or "-",
            f"[{color}]{result.status.value}[/{color}]",
            detail,
        )

    console.print(table)


if __name__ == "__main__":
    main()
