"""Configuration utilities for the payment client."""

from .loader import (
    AcrossConfig,
    AddressesConfig,
    ApiUrlsConfig,
    ChainConfig,
    ConfigError,
    DefaultsConfig,
    DomainConfig,
    FacilitatorConfig,
    ZERO_ADDRESS,
    load_config,
    parse_config,
)

__all__ = [
    "AcrossConfig",
    "AddressesConfig",
    "ApiUrlsConfig",
    "ChainConfig",
    "ConfigError",
    "DefaultsConfig",
    "DomainConfig",
    "FacilitatorConfig",
    "ZERO_ADDRESS",
    "load_config",
    "parse_config",
]
