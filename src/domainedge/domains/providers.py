"""Best-effort DNS host detection from nameservers.

Used only to pick registrar-specific setup guidance for the tenant. The
result is advisory and never influences verification.
"""

from __future__ import annotations

from collections.abc import Iterable

OTHER_PROVIDER = "other"

# provider id -> nameserver suffixes (or fragments, for Route 53's awsdns-NN hosts)
NAMESERVER_PROVIDERS: dict[str, tuple[str, ...]] = {
    "cloudflare": ("ns.cloudflare.com",),
    "godaddy": ("domaincontrol.com",),
    "namecheap": ("registrar-servers.com",),
    "route53": ("awsdns-",),
    "google": ("googledomains.com", "ns-cloud-"),
    "digitalocean": ("digitalocean.com",),
    "squarespace": ("squarespacedns.com",),
    "wix": ("wixdns.net",),
}

PROVIDER_NAMES: dict[str, str] = {
    "cloudflare": "Cloudflare",
    "godaddy": "GoDaddy",
    "namecheap": "Namecheap",
    "route53": "AWS Route 53",
    "google": "Google Domains",
    "digitalocean": "DigitalOcean",
    "squarespace": "Squarespace",
    "wix": "Wix",
    OTHER_PROVIDER: "Other Provider",
}


def match_provider(nameservers: Iterable[str]) -> str | None:
    """Map a set of nameserver hostnames to a provider id.

    Returns:
        The provider id, "other" when nameservers exist but none match,
        or None when no nameservers were given.

    Examples:
        >>> match_provider(["amy.ns.cloudflare.com.", "bob.ns.cloudflare.com."])
        'cloudflare'
        >>> match_provider(["ns-1234.awsdns-12.org"])
        'route53'
        >>> match_provider(["ns1.example-dns.net"])
        'other'
    """
    hosts = [ns.lower().rstrip(".") for ns in nameservers if ns]
    if not hosts:
        return None

    for provider, fragments in NAMESERVER_PROVIDERS.items():
        if any(_matches(host, fragment) for host in hosts for fragment in fragments):
            return provider
    return OTHER_PROVIDER


def _matches(host: str, fragment: str) -> bool:
    if fragment.endswith("-"):
        return fragment in host
    return host == fragment or host.endswith(f".{fragment}")


def provider_display_name(provider: str | None) -> str:
    return PROVIDER_NAMES.get(provider or OTHER_PROVIDER, provider or PROVIDER_NAMES[OTHER_PROVIDER])
