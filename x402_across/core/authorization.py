"""Payment authorization construction for the x402 proxy facilitator.

A payment is one EIP-3009 ``TransferWithAuthorization`` signed by the payer
and redeemed by the facilitator, which calls ``transferWithAuthorization`` on
the proxy contract and pays gas. Same-chain payments use the 10 argument
overload; cross-chain payments use the 12 argument overload that carries the
Across deposit parameters and a backend signature over an ``AcrossMessage``.

The ``AcrossMessage`` is verified by the proxy on the destination chain once
the bridged funds arrive, so its EIP-712 domain is bound to the destination
chain id and the destination proxy even though it is assembled while the
payer is connected to the source chain.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from x402_across.config import AcrossConfig, DomainConfig
from x402_across.contracts import load_contract_abi
from x402_across.core.deadlines import DepositParams
from x402_across.core.requirements import PaymentRequirement, build_payment_requirement
from x402_across.core.utils import bytes_to_hex, get_logger, hex_to_bytes, now_seconds

LOGGER = get_logger("x402_across.authorization")

PROXY_FUNCTION = "transferWithAuthorization"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

ACROSS_MESSAGE_TYPE = [
    {"name": "originalSender", "type": "address"},
    {"name": "creditedRecipient", "type": "address"},
    {"name": "platform", "type": "address"},
    {"name": "expectedAmount", "type": "uint256"},
    {"name": "platformFeeBps", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
    {"name": "sourceChainId", "type": "uint256"},
    {"name": "destinationChainId", "type": "uint256"},
    {"name": "token", "type": "address"},
    {"name": "recipientContract", "type": "address"},
]


class AuthorizationError(ValueError):
    """Raised when an authorization would be rejected on-chain."""


def generate_nonce() -> str:
    """Fresh 32 byte nonce; never reused across attempts."""
    return bytes_to_hex(secrets.token_bytes(32))


@dataclass(frozen=True)
class Eip712Domain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class TransferAuthorization:
    """EIP-3009 transfer authorization; ``to`` is always the settlement proxy."""

    from_address: str
    to: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str

    def to_dict(self) -> Dict[str, str]:
        """x402 wire shape: integers as decimal strings."""
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }

    def message(self) -> Dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "validAfter": self.valid_after,
            "validBefore": self.valid_before,
            "nonce": hex_to_bytes(self.nonce),
        }


@dataclass(frozen=True)
class SignedAuthorization:
    authorization: TransferAuthorization
    signature: str


@dataclass(frozen=True)
class AcrossMessage:
    """Cross-chain instruction the facilitator's backend signer attests to."""

    original_sender: str
    credited_recipient: str
    platform: str
    expected_amount: int
    platform_fee_bps: int
    nonce: str
    source_chain_id: int
    destination_chain_id: int
    token: str
    recipient_contract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalSender": self.original_sender,
            "creditedRecipient": self.credited_recipient,
            "platform": self.platform,
            "expectedAmount": str(self.expected_amount),
            "platformFeeBps": self.platform_fee_bps,
            "nonce": self.nonce,
            "sourceChainId": str(self.source_chain_id),
            "destinationChainId": str(self.destination_chain_id),
            "token": self.token,
            "recipientContract": self.recipient_contract,
        }

    def message(self) -> Dict[str, Any]:
        return {
            "originalSender": self.original_sender,
            "creditedRecipient": self.credited_recipient,
            "platform": self.platform,
            "expectedAmount": self.expected_amount,
            "platformFeeBps": self.platform_fee_bps,
            "nonce": hex_to_bytes(self.nonce),
            "sourceChainId": self.source_chain_id,
            "destinationChainId": self.destination_chain_id,
            "token": self.token,
            "recipientContract": self.recipient_contract,
        }


def build_transfer_authorization(
    payer: str,
    requirement: PaymentRequirement,
    *,
    valid_after_skew: int = 600,
    now: Optional[int] = None,
    nonce: Optional[str] = None,
) -> TransferAuthorization:
    """Authorization paying ``requirement`` from ``payer`` into its ``pay_to``."""
    now = now_seconds() if now is None else now
    return TransferAuthorization(
        from_address=Web3.to_checksum_address(payer),
        to=Web3.to_checksum_address(requirement.pay_to),
        value=int(requirement.max_amount_required),
        valid_after=now - valid_after_skew,
        valid_before=now + requirement.max_timeout_seconds,
        nonce=nonce or generate_nonce(),
    )


def transfer_authorization_typed_data(
    authorization: TransferAuthorization,
    *,
    chain_id: int,
    token_address: str,
    token_name: str,
    token_version: str,
) -> Dict[str, Any]:
    """EIP-712 payload the payer signs; scoped to the token on the source chain."""
    domain = Eip712Domain(token_name, token_version, chain_id, Web3.to_checksum_address(token_address))
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": domain.to_dict(),
        "message": authorization.message(),
    }


def across_message_domain(
    destination_chain_id: int,
    destination_proxy: str,
    proxy_domain: DomainConfig,
) -> Eip712Domain:
    """Domain for the ``AcrossMessage``: destination chain, destination proxy."""
    return Eip712Domain(
        name=proxy_domain.name,
        version=proxy_domain.version,
        chain_id=int(destination_chain_id),
        verifying_contract=Web3.to_checksum_address(destination_proxy),
    )


def build_across_message(
    *,
    original_sender: str,
    credited_recipient: str,
    platform: str,
    expected_amount: int,
    platform_fee_bps: int,
    nonce: str,
    source_chain_id: int,
    destination_chain_id: int,
    token: str,
    recipient_contract: str,
) -> AcrossMessage:
    if int(source_chain_id) == int(destination_chain_id):
        raise AuthorizationError("AcrossMessage is only used for cross-chain transfers")
    return AcrossMessage(
        original_sender=Web3.to_checksum_address(original_sender),
        credited_recipient=Web3.to_checksum_address(credited_recipient),
        platform=Web3.to_checksum_address(platform),
        expected_amount=int(expected_amount),
        platform_fee_bps=int(platform_fee_bps),
        nonce=nonce,
        source_chain_id=int(source_chain_id),
        destination_chain_id=int(destination_chain_id),
        token=Web3.to_checksum_address(token),
        recipient_contract=Web3.to_checksum_address(recipient_contract),
    )


def across_message_typed_data(message: AcrossMessage, domain: Eip712Domain) -> Dict[str, Any]:
    """EIP-712 payload the backend signer signs for a cross-chain payment."""
    if domain.chain_id == message.source_chain_id:
        raise AuthorizationError(
            f"AcrossMessage domain uses source chain {domain.chain_id}; it must use the destination chain"
        )
    if domain.chain_id != message.destination_chain_id:
        raise AuthorizationError(
            f"AcrossMessage domain chain {domain.chain_id} != destination chain {message.destination_chain_id}"
        )
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "AcrossMessage": ACROSS_MESSAGE_TYPE,
        },
        "primaryType": "AcrossMessage",
        "domain": domain.to_dict(),
        "message": message.message(),
    }


def sign_typed_data(account, typed_data: Mapping[str, Any]) -> str:
    """Sign an EIP-712 payload with an ``eth_account`` local account."""
    signable = encode_typed_data(full_message=dict(typed_data))
    signed = account.sign_message(signable)
    return bytes_to_hex(signed.signature)


def recover_typed_data_signer(typed_data: Mapping[str, Any], signature: str) -> str:
    """Address that produced ``signature`` over ``typed_data``."""
    signable = encode_typed_data(full_message=dict(typed_data))
    return Account.recover_message(signable, signature=hex_to_bytes(signature))


def get_token_domain(web3: Web3, token_address: str, fallback: DomainConfig) -> DomainConfig:
    """Read the token's EIP-712 ``name``/``version``; fall back when unavailable."""
    try:
        contract = web3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=load_contract_abi("token_metadata.json"),
        )
        name = contract.functions.name().call()
        version = contract.functions.version().call()
    except Exception as exc:  # tokens without version() revert here
        LOGGER.warning("Token domain read failed for %s, using %s/%s: %s", token_address, fallback.name, fallback.version, exc)
        return fallback
    return DomainConfig(name=str(name), version=str(version))


def _abi_type(param: Mapping[str, Any]) -> str:
    if param["type"] == "tuple":
        return "(" + ",".join(_abi_type(component) for component in param["components"]) + ")"
    return param["type"]


def _proxy_overload(arg_count: int) -> List[str]:
    for entry in load_contract_abi("proxy_facilitator.json"):
        if entry.get("name") == PROXY_FUNCTION and len(entry["inputs"]) == arg_count:
            return [_abi_type(param) for param in entry["inputs"]]
    raise AuthorizationError(f"No {PROXY_FUNCTION} overload with {arg_count} arguments")


@dataclass(frozen=True)
class ProxyCall:
    """Ordered arguments of the proxy ``transferWithAuthorization`` call."""

    variant: str
    arguments: Tuple[Tuple[str, Any], ...]

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.arguments]

    @property
    def values(self) -> List[Any]:
        return [value for _, value in self.arguments]

    @property
    def signature(self) -> str:
        return f"{PROXY_FUNCTION}({','.join(_proxy_overload(len(self.arguments)))})"

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])

    def encode(self) -> bytes:
        """ABI calldata: selector followed by the encoded arguments."""
        types = _proxy_overload(len(self.arguments))
        return self.selector + abi_encode(types, self.values)


def build_proxy_call(
    authorization: TransferAuthorization,
    signature: str,
    *,
    recipient: str,
    platform: str,
    platform_fee_bps: int,
    deposit_params: Optional[DepositParams] = None,
    backend_message_sig: str = "0x",
) -> ProxyCall:
    """V1 call for same-chain payments, V2 when ``deposit_params`` is given."""
    arguments: List[Tuple[str, Any]] = [
        ("from", authorization.from_address),
        ("to", authorization.to),
        ("value", authorization.value),
        ("validAfter", authorization.valid_after),
        ("validBefore", authorization.valid_before),
        ("nonce", hex_to_bytes(authorization.nonce)),
        ("signature", hex_to_bytes(signature)),
        ("recipient", Web3.to_checksum_address(recipient)),
        ("platform", Web3.to_checksum_address(platform)),
        ("platformFeeBps", int(platform_fee_bps)),
    ]
    if deposit_params is None:
        return ProxyCall(variant="v1", arguments=tuple(arguments))
    arguments.append(("depositParams", deposit_params.as_tuple()))
    arguments.append(("backendMessageSig", hex_to_bytes(backend_message_sig)))
    return ProxyCall(variant="v2", arguments=tuple(arguments))


@dataclass(frozen=True)
class PaymentPlan:
    """Everything needed for one payment attempt, before the payer signs."""

    requirement: PaymentRequirement
    authorization: TransferAuthorization
    typed_data: Dict[str, Any]
    source_chain_id: int
    destination_chain_id: int
    deposit_params: Optional[DepositParams] = None
    across_message: Optional[AcrossMessage] = None
    across_domain: Optional[Eip712Domain] = None
    platform_fee_bps: int = 0
    platform: str = field(default="0x0000000000000000000000000000000000000000")
    backend_signer: Optional[str] = None

    @property
    def is_cross_chain(self) -> bool:
        return self.source_chain_id != self.destination_chain_id

    def across_typed_data(self) -> Optional[Dict[str, Any]]:
        if self.across_message is None or self.across_domain is None:
            return None
        return across_message_typed_data(self.across_message, self.across_domain)

    def verify_backend_signature(self, backend_message_sig: str) -> str:
        """Recover the ``AcrossMessage`` signer and check it is the backend signer."""
        typed_data = self.across_typed_data()
        if typed_data is None:
            raise AuthorizationError("Same-chain payments carry no AcrossMessage to verify")
        signer = recover_typed_data_signer(typed_data, backend_message_sig)
        if self.backend_signer and signer.lower() != self.backend_signer.lower():
            raise AuthorizationError(f"AcrossMessage signed by {signer}, expected backend signer {self.backend_signer}")
        return signer

    def proxy_call(self, signature: str, backend_message_sig: str = "0x") -> ProxyCall:
        """Call the facilitator makes once the payer has signed.

        A non-empty ``backend_message_sig`` is checked against the configured
        backend signer before it is encoded.
        """
        if self.is_cross_chain and self.backend_signer and backend_message_sig not in ("", "0x"):
            self.verify_backend_signature(backend_message_sig)
        return build_proxy_call(
            self.authorization,
            signature,
            recipient=self.requirement.recipient or self.requirement.pay_to,
            platform=self.platform,
            platform_fee_bps=self.platform_fee_bps,
            deposit_params=self.deposit_params,
            backend_message_sig=backend_message_sig,
        )


def build_payment_plan(
    config: AcrossConfig,
    *,
    payer: str,
    source_network: str,
    destination_network: str,
    value: int,
    description: str = "",
    deposit_params: Optional[DepositParams] = None,
    token_domain: Optional[DomainConfig] = None,
    now: Optional[int] = None,
) -> PaymentPlan:
    """Assemble the authorization, typed data and facilitator hints for a payment.

    A new nonce is drawn on every call, so a retried submission never reuses
    the previous authorization. Cross-chain plans require validated
    ``deposit_params``; the nonce is shared by the transfer authorization and
    the ``AcrossMessage`` so the backend signature is tied to this transfer.
    """
    source = config.chain(source_network)
    destination = config.chain(destination_network)
    cross_chain = source.chain_id != destination.chain_id
    if cross_chain and deposit_params is None:
        raise AuthorizationError("Cross-chain payments require validated deposit params")
    if cross_chain and deposit_params.destination_chain_id != destination.chain_id:
        raise AuthorizationError(
            f"Deposit params target chain {deposit_params.destination_chain_id}, expected {destination.chain_id}"
        )

    nonce = generate_nonce()
    platform = config.addresses.platform
    platform_fee_bps = config.defaults.platform_fee_bps
    extra: Dict[str, Any] = {
        "platform": platform,
        "platformFeeBps": platform_fee_bps,
        "destinationChain": destination_network,
        "isCrossChain": cross_chain,
    }

    across_message = None
    across_domain = None
    if cross_chain:
        across_domain = across_message_domain(destination.chain_id, destination.proxy_address, config.proxy_domain)
        across_message = build_across_message(
            original_sender=payer,
            credited_recipient=config.addresses.credited_recipient,
            platform=platform,
            expected_amount=deposit_params.output_amount,
            platform_fee_bps=platform_fee_bps,
            nonce=nonce,
            source_chain_id=source.chain_id,
            destination_chain_id=destination.chain_id,
            token=destination.usdc_address,
            recipient_contract=destination.proxy_address,
        )
        extra.update(
            {
                "depositParams": deposit_params.to_dict(),
                "destinationProxyAddress": destination.proxy_address,
                "eip712Domain": across_domain.to_dict(),
                "acrossMessage": across_message.to_dict(),
            }
        )

    requirement = build_payment_requirement(
        config,
        network=source_network,
        value=value,
        description=description,
        token_domain=token_domain,
        extra=extra,
    )
    authorization = build_transfer_authorization(
        payer,
        requirement,
        valid_after_skew=config.defaults.valid_after_skew,
        now=now,
        nonce=nonce,
    )
    typed_data = transfer_authorization_typed_data(
        authorization,
        chain_id=source.chain_id,
        token_address=requirement.asset,
        token_name=str(requirement.extra["name"]),
        token_version=str(requirement.extra["version"]),
    )
    LOGGER.info(
        "Built %s payment plan %s -> %s value=%s",
        "cross-chain" if cross_chain else "same-chain",
        source_network,
        destination_network,
        value,
    )
    return PaymentPlan(
        requirement=requirement,
        authorization=authorization,
        typed_data=typed_data,
        source_chain_id=source.chain_id,
        destination_chain_id=destination.chain_id,
        deposit_params=deposit_params if cross_chain else None,
        across_message=across_message,
        across_domain=across_domain,
        platform_fee_bps=platform_fee_bps,
        platform=platform,
        backend_signer=config.addresses.backend_signer,
    )


__all__ = [
    "ACROSS_MESSAGE_TYPE",
    "AcrossMessage",
    "AuthorizationError",
    "Eip712Domain",
    "PaymentPlan",
    "ProxyCall",
    "SignedAuthorization",
    "TRANSFER_WITH_AUTHORIZATION_TYPE",
    "TransferAuthorization",
    "across_message_domain",
    "across_message_typed_data",
    "build_across_message",
    "build_payment_plan",
    "build_proxy_call",
    "build_transfer_authorization",
    "generate_nonce",
    "get_token_domain",
    "recover_typed_data_signer",
    "sign_typed_data",
    "transfer_authorization_typed_data",
]
