"""CLI entrypoint for quoting, verifying and paying over the proxy facilitator."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from x402_across.config import AcrossConfig, ChainConfig, DomainConfig, load_config
from x402_across.core.authorization import SignedAuthorization, build_payment_plan, get_token_domain, sign_typed_data
from x402_across.core.deadlines import get_deposit_params
from x402_across.core.facilitator import FacilitatorClient, build_payment_payload
from x402_across.core.quotes import (
    PaymentForm,
    Quote,
    QuoteTracker,
    build_quote_request,
    create_mock_quote,
    fetch_across_quote,
    same_chain_quote,
)
from x402_across.core.requirements import parse_amount
from x402_across.core.settlement import SettlementOrchestrator, Step, TransactionStatus
from x402_across.core.utils import ensure_web3_connected, format_units, get_logger, http_web3

LOGGER = get_logger("x402_across.cli")

load_dotenv()


class LocalAccountWallet:
    """Wallet backed by a local private key; one RPC per configured chain."""

    def __init__(
        self,
        config: AcrossConfig,
        private_key: str,
        *,
        chain_id: Optional[int] = None,
        web3_factory: Callable[[str], Web3] = http_web3,
        receipt_timeout: int = 180,
    ) -> None:
        self.config = config
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self._web3_factory = web3_factory
        self._receipt_timeout = receipt_timeout
        self._chain_id = chain_id or next(iter(config.chains.values())).chain_id
        self._web3: Dict[int, Web3] = {}

    def web3_for(self, chain: ChainConfig) -> Web3:
        """Connected client for ``chain``; the RPC must report the configured chain id."""
        if chain.chain_id not in self._web3:
            web3 = self._web3_factory(chain.ensure_rpc_url())
            ensure_web3_connected(web3, expected_chain_id=chain.chain_id)
            self._web3[chain.chain_id] = web3
        return self._web3[chain.chain_id]

    async def get_chain_id(self) -> int:
        return self._chain_id

    async def switch_chain(self, chain_id: int) -> None:
        network = self.config.network_for_chain_id(chain_id)
        LOGGER.info("Switching local wallet to %s", network)
        self._chain_id = chain_id

    async def sign_typed_data(self, typed_data: Mapping[str, Any]) -> str:
        return sign_typed_data(self.account, typed_data)

    async def wait_for_receipt(self, tx_hash: str, chain_id: int) -> Mapping[str, Any]:
        chain = self.config.chain(self.config.network_for_chain_id(chain_id))
        web3 = await asyncio.to_thread(self.web3_for, chain)
        receipt = await asyncio.to_thread(
            web3.eth.wait_for_transaction_receipt,
            tx_hash,
            timeout=self._receipt_timeout,
        )
        LOGGER.info("Receipt for %s: status=%s block=%s", tx_hash, receipt["status"], receipt["blockNumber"])
        return dict(receipt)

    def token_domain(self, chain: ChainConfig) -> DomainConfig:
        """EIP-712 domain of the chain's USDC, read on-chain."""
        return get_token_domain(self.web3_for(chain), chain.usdc_address, self.config.token_domain)


def _offline_web3(rpc_url: str) -> Web3:
    raise ConnectionError(f"offline mode, not connecting to {rpc_url}")


def _form(args: argparse.Namespace) -> PaymentForm:
    return PaymentForm(
        amount=args.amount,
        source_network=args.source,
        destination_network=args.destination,
        description=args.description or "",
    )


def _quote_for(config: AcrossConfig, form: PaymentForm, *, mock: bool) -> Quote:
    value = parse_amount(form.amount, config.defaults.token_decimals)
    if not form.is_cross_chain:
        return same_chain_quote(value)
    if mock:
        return create_mock_quote(value)
    return fetch_across_quote(config=config, request=build_quote_request(config, form, value))


def _mock_quote_fn(*, config: AcrossConfig, request) -> Quote:
    return create_mock_quote(request.input_amount)


def _print_json(label: str, data: Mapping[str, Any]) -> None:
    print(f"{label}:")
    print(json.dumps(data, indent=2, default=str))


def _print_status(status: TransactionStatus) -> None:
    parts = [f"[{status.step.value}]"]
    if status.executed_chain_name:
        parts.append(status.executed_chain_name)
    if status.tx_url:
        parts.append(status.tx_url)
    if status.bridge_status:
        parts.append(f"bridge={status.bridge_status}")
    if status.error:
        parts.append(f"error={status.error}")
    print(" ".join(parts))


def _require_private_key() -> str:
    private_key = (os.getenv("PRIVATE_KEY") or "").strip()
    if not private_key:
        print("❌ Error: PRIVATE_KEY environment variable not set")
        sys.exit(1)
    return private_key


def run_quote(config: AcrossConfig, args: argparse.Namespace) -> int:
    form = _form(args)
    quote = _quote_for(config, form, mock=args.mock)
    decimals = config.defaults.token_decimals
    _print_json("Quote", quote.to_dict())
    print(f"Receive {format_units(int(quote.output_amount), decimals)} USDC, fee {format_units(int(quote.total_relay_fee), decimals)} USDC")
    if form.is_cross_chain:
        params = get_deposit_params(
            quote,
            config.chain(form.destination_network).chain_id,
            config.chain(form.source_network).chain_id,
            config=config,
            web3_factory=_offline_web3 if args.mock else http_web3,
        )
        _print_json("Deposit params", params.to_dict())
    return 0


def run_verify(config: AcrossConfig, args: argparse.Namespace) -> int:
    form = _form(args)
    wallet = LocalAccountWallet(config, _require_private_key())
    source = config.chain(form.source_network)
    destination = config.chain(form.destination_network)

    deposit_params = None
    if form.is_cross_chain:
        quote = _quote_for(config, form, mock=args.mock)
        deposit_params = get_deposit_params(
            quote,
            destination.chain_id,
            source.chain_id,
            config=config,
            web3_factory=_offline_web3 if args.mock else http_web3,
        )
    plan = build_payment_plan(
        config,
        payer=wallet.address,
        source_network=form.source_network,
        destination_network=form.destination_network,
        value=parse_amount(form.amount, config.defaults.token_decimals),
        description=form.description,
        deposit_params=deposit_params,
        token_domain=None if args.mock else wallet.token_domain(source),
    )
    signature = sign_typed_data(wallet.account, plan.typed_data)
    payload = build_payment_payload(SignedAuthorization(plan.authorization, signature), source.network)
    _print_json("Requirement", plan.requirement.to_dict())

    facilitator = FacilitatorClient(config, api_key=os.getenv("FACILITATOR_API_KEY"))
    result = facilitator.verify(payload, plan.requirement)
    print(f"Valid: {result.is_valid} payer={result.payer or wallet.address}")
    if not result.is_valid:
        print(f"Reason: {result.invalid_reason}")
        return 1
    return 0


async def _pay(config: AcrossConfig, args: argparse.Namespace, private_key: str) -> TransactionStatus:
    form = _form(args)
    wallet = LocalAccountWallet(config, private_key)
    tracker = QuoteTracker(config, quote_fn=_mock_quote_fn if args.mock else fetch_across_quote)
    quote = await tracker.refresh(form)
    if quote is None:
        raise RuntimeError(tracker.error or "No quote available for this payment")
    _print_json("Quote", quote.to_dict())

    orchestrator = SettlementOrchestrator(
        config,
        wallet,
        FacilitatorClient(config, api_key=os.getenv("FACILITATOR_API_KEY")),
        token_domain_fn=wallet.token_domain,
    )
    orchestrator.subscribe(_print_status)
    return await orchestrator.submit(form, quote, snapshot=tracker.snapshot)


def run_pay(config: AcrossConfig, args: argparse.Namespace) -> int:
    status = asyncio.run(_pay(config, args, _require_private_key()))
    return 0 if status.step is Step.COMPLETED else 1


COMMANDS: Dict[str, Callable[[AcrossConfig, argparse.Namespace], int]] = {
    "quote": run_quote,
    "verify": run_verify,
    "pay": run_pay,
}


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cross-chain x402 payments through the Across bridge")
    parser.add_argument(
        "--config",
        type=Path,
        default=os.getenv("X402_ACROSS_CONFIG") or None,
        help="Path to config.json (default: ./config.json or $X402_ACROSS_CONFIG)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("quote", "Fetch and normalize an Across quote"),
        ("verify", "Sign an authorization and ask the facilitator to verify it"),
        ("pay", "Sign and settle a payment"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--amount", required=True, help="USDC amount, e.g. 1.5")
        sub.add_argument("--source", required=True, help="Network the payer pays from")
        sub.add_argument("--destination", required=True, help="Network the merchant is credited on")
        sub.add_argument("--description", default="", help="Payment description")
        sub.add_argument("--mock", action="store_true", help="Use an offline quote instead of the Across API")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    try:
        config = load_config(Path(args.config) if args.config else None)
        code = COMMANDS[args.command](config, args)
    except Exception as exc:
        print(f"\n❌ Error: {exc}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
