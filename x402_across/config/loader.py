"""Config loader for the x402 Across payment client."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class ConfigError(ValueError):
    """Raised when configuration data is invalid or missing."""


def _require_keys(data: Mapping[str, Any], keys: Iterable[str], context: str) -> None:
    missing = [key for key in keys if key not in data]
    if missing:
        raise ConfigError(f"{context} missing required keys: {', '.join(missing)}")


def _to_checksum(value: str, *, field_name: str) -> str:
    try:
        return Web3.to_checksum_address(value)
    except Exception as exc:  # web3 raises ValueError for malformed inputs
        raise ConfigError(f"Invalid address for {field_name}: {value}") from exc


@dataclass(frozen=True)
class ChainConfig:
    """Deployment details for one supported network."""

    network: str
    chain_id: int
    name: str
    usdc_address: str
    proxy_address: str
    explorer: str
    rpc_url: Optional[str] = None
    spoke_pool_address: Optional[str] = None

    def ensure_rpc_url(self) -> str:
        """Return the RPC URL or raise if it is missing."""
        if not self.rpc_url:
            raise ConfigError(f"RPC URL required for {self.network} but not configured")
        return self.rpc_url


@dataclass(frozen=True)
class AddressesConfig:
    """Parties credited or referenced by every payment."""

    credited_recipient: str
    platform: str = ZERO_ADDRESS
    backend_signer: Optional[str] = None


@dataclass(frozen=True)
class FacilitatorConfig:
    """Facilitator endpoint used to verify and settle payments."""

    url: str
    resource: str
    api_key: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class ApiUrlsConfig:
    """API endpoints required for quoting logic."""

    across_quote: str


@dataclass(frozen=True)
class DefaultsConfig:
    """Default operational parameters."""

    token_decimals: int = 6
    platform_fee_bps: int = 0
    max_timeout_seconds: int = 60
    api_timeout: int = 30
    deposit_quote_time_buffer: int = 600
    fill_deadline_buffer: int = 1800
    same_chain_grace_seconds: float = 1.0
    cross_chain_grace_seconds: float = 30.0
    valid_after_skew: int = 600


@dataclass(frozen=True)
class DomainConfig:
    """EIP-712 domain name and version."""

    name: str
    version: str


@dataclass(frozen=True)
class AcrossConfig:
    """Typed wrapper around the payment client configuration."""

    chains: Mapping[str, ChainConfig]
    addresses: AddressesConfig
    facilitator: FacilitatorConfig
    api_urls: ApiUrlsConfig
    defaults: DefaultsConfig
    proxy_domain: DomainConfig
    token_domain: DomainConfig
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    def chain(self, network: str) -> ChainConfig:
        """Return the chain configured under ``network``."""
        try:
            return self.chains[network]
        except KeyError as exc:
            raise ConfigError(
                f"Unknown network {network!r}; configured: {', '.join(sorted(self.chains))}"
            ) from exc

    def network_for_chain_id(self, chain_id: int) -> str:
        """Return the network name configured for ``chain_id``."""
        for network, chain in self.chains.items():
            if chain.chain_id == chain_id:
                return network
        raise ConfigError(f"No network configured for chain id {chain_id}")

    def to_dict(self) -> Dict[str, Any]:
        """Return the original configuration mapping."""
        return dict(self.raw)


def _parse_chain(network: str, data: Mapping[str, Any]) -> ChainConfig:
    _require_keys(data, ["chain_id", "name", "usdc", "proxy", "explorer"], f"chain {network}")
    spoke = data.get("spoke_pool")
    return ChainConfig(
        network=network,
        chain_id=int(data["chain_id"]),
        name=str(data["name"]),
        usdc_address=_to_checksum(data["usdc"], field_name=f"{network} usdc"),
        proxy_address=_to_checksum(data["proxy"], field_name=f"{network} proxy"),
        explorer=str(data["explorer"]).rstrip("/"),
        rpc_url=data.get("rpc_url") or None,
        spoke_pool_address=_to_checksum(spoke, field_name=f"{network} spoke_pool") if spoke else None,
    )


def _parse_defaults(data: Mapping[str, Any]) -> DefaultsConfig:
    base = DefaultsConfig()
    defaults = DefaultsConfig(
        token_decimals=int(data.get("token_decimals", base.token_decimals)),
        platform_fee_bps=int(data.get("platform_fee_bps", base.platform_fee_bps)),
        max_timeout_seconds=int(data.get("max_timeout_seconds", base.max_timeout_seconds)),
        api_timeout=int(data.get("api_timeout", base.api_timeout)),
        deposit_quote_time_buffer=int(data.get("deposit_quote_time_buffer", base.deposit_quote_time_buffer)),
        fill_deadline_buffer=int(data.get("fill_deadline_buffer", base.fill_deadline_buffer)),
        same_chain_grace_seconds=float(data.get("same_chain_grace_seconds", base.same_chain_grace_seconds)),
        cross_chain_grace_seconds=float(data.get("cross_chain_grace_seconds", base.cross_chain_grace_seconds)),
        valid_after_skew=int(data.get("valid_after_skew", base.valid_after_skew)),
    )
    if defaults.token_decimals < 0:
        raise ConfigError("defaults.token_decimals cannot be negative")
    if not 0 <= defaults.platform_fee_bps <= 10_000:
        raise ConfigError("defaults.platform_fee_bps must be between 0 and 10000")
    for name in ("max_timeout_seconds", "api_timeout", "deposit_quote_time_buffer", "fill_deadline_buffer"):
        if getattr(defaults, name) <= 0:
            raise ConfigError(f"defaults.{name} must be positive")
    if defaults.same_chain_grace_seconds < 0 or defaults.cross_chain_grace_seconds < 0:
        raise ConfigError("defaults grace delays cannot be negative")
    return defaults


def _parse_domain(data: Optional[Mapping[str, Any]], *, name: str, version: str) -> DomainConfig:
    data = data or {}
    return DomainConfig(name=str(data.get("name", name)), version=str(data.get("version", version)))


def _load_json(path: Path) -> MutableMapping[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file contains invalid JSON: {path}") from exc


def parse_config(data: Mapping[str, Any]) -> AcrossConfig:
    """Validate an already-decoded configuration mapping."""
    _require_keys(data, ["chains", "addresses", "facilitator", "api_urls"], "config")

    chains_data = data["chains"]
    if not isinstance(chains_data, Mapping) or not chains_data:
        raise ConfigError("chains must be a non-empty mapping of network name to chain details")
    chains = {network: _parse_chain(network, details) for network, details in chains_data.items()}

    addresses = data["addresses"]
    _require_keys(addresses, ["credited_recipient"], "addresses")
    signer = addresses.get("backend_signer")
    addresses_config = AddressesConfig(
        credited_recipient=_to_checksum(addresses["credited_recipient"], field_name="credited_recipient"),
        platform=_to_checksum(addresses.get("platform") or ZERO_ADDRESS, field_name="platform"),
        backend_signer=_to_checksum(signer, field_name="backend_signer") if signer else None,
    )

    facilitator = data["facilitator"]
    _require_keys(facilitator, ["url", "resource"], "facilitator")
    facilitator_config = FacilitatorConfig(
        url=str(facilitator["url"]).rstrip("/"),
        resource=str(facilitator["resource"]),
        api_key=facilitator.get("api_key") or None,
    )

    api_urls = data["api_urls"]
    _require_keys(api_urls, ["across_quote"], "api_urls")

    return AcrossConfig(
        chains=chains,
        addresses=addresses_config,
        facilitator=facilitator_config,
        api_urls=ApiUrlsConfig(across_quote=str(api_urls["across_quote"])),
        defaults=_parse_defaults(data.get("defaults") or {}),
        proxy_domain=_parse_domain(data.get("proxy_domain"), name="X402ProxyFacilitatorV2", version="1"),
        token_domain=_parse_domain(data.get("token_domain"), name="USDC", version="2"),
        raw=data,
    )


def load_config(config_path: Optional[Path] = None) -> AcrossConfig:
    """Load and validate configuration data."""
    config_path = config_path or Path("config.json")
    return parse_config(_load_json(config_path))


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
