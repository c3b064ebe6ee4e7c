"""Configuration for the edge proxy and the domain lifecycle.

The proxy's routing configuration comes from three plain environment
variables (``ORIGIN_ENDPOINT``, ``ALLOWED_DOMAINS``, ``ENVIRONMENT``) and is
parsed once into an immutable ``ProxyConfig``. Tuning knobs use the
DOMAINEDGE_ prefix.
Example: DOMAINEDGE_REQUEST_TIMEOUT=15 sets the upstream timeout to 15s.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from domainedge.domains.models import (
    DEFAULT_PROXY_HOSTNAME,
    DEFAULT_RECORD_TTL,
    DEFAULT_VERIFICATION_PREFIX,
    DNS_CHECK_RATE_LIMIT_SECONDS,
)
from domainedge.errors import ConfigError

ORIGIN_ENDPOINT_VAR = "ORIGIN_ENDPOINT"
ALLOWED_DOMAINS_VAR = "ALLOWED_DOMAINS"
ENVIRONMENT_VAR = "ENVIRONMENT"
DEFAULT_ENVIRONMENT = "development"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Allow both a flat file and one nested under a "domains" section
    section = data.get("domains")
    return section if isinstance(section, dict) else data


class ProxyConfig(BaseModel):
    """Validated routing configuration for the edge proxy."""

    model_config = ConfigDict(frozen=True)

    origin_endpoint: str
    allowed_domains: tuple[str, ...] | None = None
    environment: str = DEFAULT_ENVIRONMENT

    @property
    def origin_base(self) -> str:
        """Origin endpoint without a trailing slash, ready for path concatenation."""
        return self.origin_endpoint.rstrip("/")

    def is_host_allowed(self, host: str) -> bool:
        """Check a request host against the allow-list.

        No allow-list means every host is accepted. Otherwise the host must
        equal one of the listed hostnames.
        """
        if self.allowed_domains is None:
            return True
        return host.lower().rstrip(".") in self.allowed_domains


def _parse_allowed_domains(raw: str) -> tuple[str, ...]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{ALLOWED_DOMAINS_VAR} must be a JSON array of hostnames: {e.msg}") from e

    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{ALLOWED_DOMAINS_VAR} must be a JSON array of hostnames")

    domains: list[str] = []
    for item in value:
        entry = item.strip().lower().rstrip(".")
        if not entry:
            raise ConfigError(f"{ALLOWED_DOMAINS_VAR} contains an empty hostname")
        if "*" in entry:
            raise ConfigError(
                f"{ALLOWED_DOMAINS_VAR} entry {item!r}: wildcard patterns are not supported"
            )
        domains.append(entry)
    return tuple(domains)


def parse_config(env: Mapping[str, str] | None = None) -> ProxyConfig:
    """Parse and validate proxy configuration from an environment mapping.

    Args:
        env: Variables to read. Defaults to ``os.environ``.

    Returns:
        The validated ProxyConfig.

    Raises:
        ConfigError: If ORIGIN_ENDPOINT is missing, not HTTPS, or not absolute,
            or if ALLOWED_DOMAINS is not a JSON array of hostnames.
    """
    if env is None:
        env = os.environ

    origin = (env.get(ORIGIN_ENDPOINT_VAR) or "").strip()
    if not origin:
        raise ConfigError(f"{ORIGIN_ENDPOINT_VAR} is required")

    parts = urlsplit(origin)
    if parts.scheme.lower() != "https":
        raise ConfigError(f"{ORIGIN_ENDPOINT_VAR} must be HTTPS")
    if not parts.hostname:
        raise ConfigError(f"{ORIGIN_ENDPOINT_VAR} must be an absolute URL")

    allowed_raw = (env.get(ALLOWED_DOMAINS_VAR) or "").strip()
    allowed = _parse_allowed_domains(allowed_raw) if allowed_raw else None

    environment = (env.get(ENVIRONMENT_VAR) or "").strip() or DEFAULT_ENVIRONMENT

    return ProxyConfig(
        origin_endpoint=origin,
        allowed_domains=allowed,
        environment=environment,
    )


class ProxySettings(BaseSettings):
    """Runtime tuning for the edge proxy.

    All settings can be overridden via environment variables:
    - DOMAINEDGE_BIND: Address the proxy listens on
    - DOMAINEDGE_METRICS_BIND: Address for /metrics (unset disables)
    - DOMAINEDGE_REQUEST_TIMEOUT: Total upstream timeout (seconds)
    - etc.
    """

    model_config = SettingsConfigDict(
        env_prefix="DOMAINEDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bind: str = Field(
        default="0.0.0.0:8080",
        description="Bind address for proxied traffic.",
    )
    metrics_bind: str | None = Field(
        default=None,
        description="Bind address for the metrics/health control app. None disables it.",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Upstream read/write timeout for proxied requests (seconds).",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Upstream connection timeout (seconds).",
    )
    max_connections: int = Field(
        default=100,
        ge=1,
        description="Maximum concurrent upstream connections.",
    )
    max_keepalive: int = Field(
        default=20,
        ge=0,
        description="Maximum idle keepalive connections kept to the origin.",
    )
    client_max_size: int = Field(
        default=64 * 1024 * 1024,
        description="Maximum inbound request body size (bytes). Default 64MB.",
    )


class DomainSettings(BaseSettings):
    """Settings for the domain lifecycle and DNS verification."""

    model_config = SettingsConfigDict(
        env_prefix="DOMAINEDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    proxy_hostname: str = Field(
        default=DEFAULT_PROXY_HOSTNAME,
        description="Public hostname of the edge proxy; tenants CNAME to it.",
    )
    verification_prefix: str = Field(
        default=DEFAULT_VERIFICATION_PREFIX,
        description="Label used for the TXT record: _<prefix>.<domain>.",
    )
    record_ttl: int = Field(
        default=DEFAULT_RECORD_TTL,
        ge=60,
        description="TTL suggested for the published records (seconds).",
    )
    check_window: float = Field(
        default=DNS_CHECK_RATE_LIMIT_SECONDS,
        ge=0,
        description="Minimum interval between live DNS checks for one site (seconds).",
    )
    dns_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for each DNS lookup (seconds).",
    )
    storage_path: str = Field(
        default="sites.json",
        description="Path to the JSON file holding site domain records.",
    )
    recheck_concurrency: int = Field(
        default=10,
        ge=1,
        description="Maximum concurrent checks during a scheduled re-check.",
    )

    def to_display_dict(self) -> dict[str, Any]:
        """Export current settings for display."""
        return self.model_dump()


def load_domain_settings(config_path: str | Path | None = None, **overrides: Any) -> DomainSettings:
    """Build DomainSettings from environment, an optional file, and overrides.

    File values win over environment variables; explicit overrides win over both.
    """
    values: dict[str, Any] = {}
    if config_path:
        values.update(load_config_from_file(config_path))
    values.update({key: value for key, value in overrides.items() if value is not None})
    return DomainSettings(**values)
