"""x402 payment requirement descriptors and selection."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import Field
from x402.types import PaymentRequirements

from x402_across.config import AcrossConfig, ConfigError, DomainConfig
from x402_across.core.utils import get_logger, to_base_units

LOGGER = get_logger("x402_across.requirements")

SCHEME_EXACT = "exact"
DEFAULT_MIME_TYPE = "application/json"
REQUIRED_KEYS = ("scheme", "network", "maxAmountRequired", "payTo", "asset")


class NoMatchingRequirementError(LookupError):
    """No offered requirement targets the payer's connected network."""

    def __init__(self, network: str, offered: Iterable[str]) -> None:
        self.network = network
        self.offered = sorted(set(offered))
        super().__init__(
            f"No payment requirement for network {network!r}; offered: {', '.join(self.offered) or 'none'}"
        )


class PaymentRequirement(PaymentRequirements):
    """One acceptable way to pay for a resource.

    The x402 requirement plus the proxy's ``amount`` and credited
    ``recipient``. ``network`` is any configured chain name, not only the
    ones the x402 package knows about.
    """

    network: str
    resource: str = ""
    description: str = ""
    mime_type: str = DEFAULT_MIME_TYPE
    max_timeout_seconds: int = 60
    extra: Dict[str, Any] = Field(default_factory=dict)
    amount: Optional[str] = None
    recipient: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PaymentRequirement":
        missing = [key for key in REQUIRED_KEYS if key not in data]
        if missing:
            raise ValueError(f"payment requirement missing required keys: {', '.join(missing)}")
        return cls.model_validate({key: value for key, value in data.items() if value is not None})

    def to_dict(self) -> Dict[str, Any]:
        """camelCase wire shape; unset optional fields are omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


def select_payment_requirement(
    requirements: Iterable[PaymentRequirement],
    network: str,
    scheme: str = SCHEME_EXACT,
) -> PaymentRequirement:
    """Pick the requirement for ``network``, preferring ``scheme``.

    Ties keep the order the requirements were offered in. Raises
    :class:`NoMatchingRequirementError` when nothing targets ``network``; the
    caller should ask for a network switch instead of paying elsewhere.
    """
    offered: List[PaymentRequirement] = list(requirements)
    matches = [requirement for requirement in offered if requirement.network == network]
    if not matches:
        raise NoMatchingRequirementError(network, (requirement.network for requirement in offered))
    preferred = [requirement for requirement in matches if requirement.scheme == scheme]
    selected = (preferred or matches)[0]
    if selected.scheme != scheme:
        LOGGER.warning("No %s requirement for %s, using scheme %s", scheme, network, selected.scheme)
    return selected


def parse_amount(amount: str, decimals: int) -> int:
    """Human amount to base units; must be strictly positive."""
    value = to_base_units(amount, decimals)
    if value <= 0:
        raise ValueError(f"Amount must be positive: {amount!r}")
    return value


def build_payment_requirement(
    config: AcrossConfig,
    *,
    network: str,
    value: int,
    description: str = "",
    token_domain: Optional[DomainConfig] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> PaymentRequirement:
    """Requirement paying ``value`` into the proxy on ``network``.

    ``pay_to`` is the settlement proxy; the merchant is carried separately as
    ``recipient`` and credited by the proxy.
    """
    try:
        chain = config.chain(network)
    except ConfigError as exc:
        raise NoMatchingRequirementError(network, config.chains) from exc
    domain = token_domain or config.token_domain
    merged: Dict[str, Any] = {"name": domain.name, "version": domain.version}
    merged.update(extra or {})
    return PaymentRequirement(
        scheme=SCHEME_EXACT,
        network=network,
        max_amount_required=str(value),
        amount=str(value),
        pay_to=chain.proxy_address,
        asset=chain.usdc_address,
        resource=config.facilitator.resource,
        description=description,
        max_timeout_seconds=config.defaults.max_timeout_seconds,
        recipient=config.addresses.credited_recipient,
        extra=merged,
    )


__all__ = [
    "DEFAULT_MIME_TYPE",
    "NoMatchingRequirementError",
    "PaymentRequirement",
    "SCHEME_EXACT",
    "build_payment_requirement",
    "parse_amount",
    "select_payment_requirement",
]
