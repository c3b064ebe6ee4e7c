"""Core."""

from .config import (
    DomainSettings,
    ProxyConfig,
    ProxySettings,
    load_config_from_file,
    load_domain_settings,
    parse_config,
)

__all__ = [
    "DomainSettings",
    "ProxyConfig",
    "ProxySettings",
    "load_config_from_file",
    "load_domain_settings",
    "parse_config",
]
