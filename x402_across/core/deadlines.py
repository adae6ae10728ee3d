"""Quote timestamp and fill deadline validation against the origin spoke pool.

The Across spoke pool rejects a deposit whose ``quoteTimestamp`` is further
than ``depositQuoteTimeBuffer`` from its clock, or whose ``fillDeadline`` is
in the past or beyond ``fillDeadlineBuffer``. Both values are checked against
origin-chain state when the deposit is recorded, so every read here targets
the origin chain's spoke pool. The chain clock (``getCurrentTime``) is used
instead of wall-clock time to tolerate skew between this host and the chain.

Reads never fail the payment: each value falls back independently to
wall-clock time or the configured default buffer, and the clamps applied at
settlement time remain a second line of defense.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from web3 import Web3

from x402_across.config import AcrossConfig, ChainConfig, DefaultsConfig
from x402_across.contracts import load_contract_abi
from x402_across.core.utils import get_logger, http_web3, now_seconds

if TYPE_CHECKING:
    from x402_across.core.quotes import Quote

LOGGER = get_logger("x402_across.deadlines")

Web3Factory = Callable[[str], Web3]


@dataclass(frozen=True)
class DepositParams:
    """Deposit fields bound into the V2 proxy call, post validation."""

    destination_chain_id: int
    output_amount: int
    quote_timestamp: int
    fill_deadline: int

    def as_tuple(self) -> Tuple[int, int, int, int]:
        """Return the ``(uint256,uint256,uint32,uint32)`` ABI tuple."""
        return (self.destination_chain_id, self.output_amount, self.quote_timestamp, self.fill_deadline)

    def to_dict(self) -> dict:
        return {
            "destinationChainId": str(self.destination_chain_id),
            "outputAmount": str(self.output_amount),
            "quoteTimestamp": self.quote_timestamp,
            "fillDeadline": self.fill_deadline,
        }


@dataclass(frozen=True)
class SpokeTiming:
    """Clock and buffers read from a spoke pool."""

    current_time: int
    deposit_quote_time_buffer: int
    fill_deadline_buffer: int
    from_chain: bool = True


def clamp_quote_timestamp(quote_timestamp: int, current_time: int, buffer: int) -> int:
    """Clamp ``quote_timestamp`` into ``[current_time - buffer, current_time + buffer]``."""
    low = current_time - buffer
    high = current_time + buffer
    return max(low, min(int(quote_timestamp), high))


def clamp_fill_deadline(fill_deadline: int, current_time: int, buffer: int) -> int:
    """Clamp ``fill_deadline`` into ``[current_time, current_time + buffer]``."""
    return max(current_time, min(int(fill_deadline), current_time + buffer))


def _read_uint(contract, function_name: str) -> int:
    return int(getattr(contract.functions, function_name)().call())


def read_spoke_timing(
    web3: Optional[Web3],
    spoke_pool_address: Optional[str],
    defaults: DefaultsConfig,
    *,
    clock: Callable[[], int] = now_seconds,
) -> SpokeTiming:
    """Read the spoke pool clock and buffers, falling back per value."""
    contract = None
    if web3 is not None and spoke_pool_address:
        try:
            contract = web3.eth.contract(
                address=Web3.to_checksum_address(spoke_pool_address),
                abi=load_contract_abi("spoke_pool.json"),
            )
        except Exception as exc:  # malformed address or ABI mismatch
            LOGGER.warning("Cannot bind spoke pool %s: %s", spoke_pool_address, exc)
    elif not spoke_pool_address:
        LOGGER.warning("No spoke pool address available, using local time and default buffers")

    from_chain = contract is not None

    def read(function_name: str, fallback: Callable[[], int], label: str) -> int:
        nonlocal from_chain
        if contract is not None:
            try:
                return _read_uint(contract, function_name)
            except Exception as exc:
                LOGGER.warning("Failed to read %s from spoke pool, using %s: %s", function_name, label, exc)
        from_chain = False
        return fallback()

    current_time = read("getCurrentTime", clock, "local time")
    deposit_buffer = read("depositQuoteTimeBuffer", lambda: defaults.deposit_quote_time_buffer, "default")
    fill_buffer = read("fillDeadlineBuffer", lambda: defaults.fill_deadline_buffer, "default")

    return SpokeTiming(
        current_time=current_time,
        deposit_quote_time_buffer=deposit_buffer,
        fill_deadline_buffer=fill_buffer,
        from_chain=from_chain,
    )


def _origin_web3(chain: ChainConfig, web3_factory: Web3Factory) -> Optional[Web3]:
    try:
        return web3_factory(chain.ensure_rpc_url())
    except Exception as exc:
        LOGGER.warning("No RPC available for %s, spoke reads will fall back: %s", chain.network, exc)
        return None


def _timing_for(
    chain: ChainConfig,
    spoke_pool_address: Optional[str],
    config: AcrossConfig,
    web3_factory: Web3Factory,
) -> SpokeTiming:
    spoke = spoke_pool_address or chain.spoke_pool_address
    web3 = _origin_web3(chain, web3_factory) if spoke else None
    return read_spoke_timing(web3, spoke, config.defaults)


def validate_quote_timestamp(
    quote_timestamp: int,
    chain_id: int,
    spoke_pool_address: Optional[str],
    *,
    config: AcrossConfig,
    web3_factory: Web3Factory = http_web3,
) -> int:
    """Return ``quote_timestamp`` clamped to the window the origin spoke accepts."""
    chain = config.chain(config.network_for_chain_id(chain_id))
    timing = _timing_for(chain, spoke_pool_address, config, web3_factory)
    validated = clamp_quote_timestamp(quote_timestamp, timing.current_time, timing.deposit_quote_time_buffer)
    if validated != quote_timestamp:
        LOGGER.info("Adjusted quoteTimestamp %s -> %s on chain %s", quote_timestamp, validated, chain_id)
    return validated


def validate_fill_deadline(
    fill_deadline: int,
    chain_id: int,
    spoke_pool_address: Optional[str],
    *,
    config: AcrossConfig,
    web3_factory: Web3Factory = http_web3,
) -> int:
    """Return ``fill_deadline`` clamped to the window the origin spoke accepts."""
    chain = config.chain(config.network_for_chain_id(chain_id))
    timing = _timing_for(chain, spoke_pool_address, config, web3_factory)
    validated = clamp_fill_deadline(fill_deadline, timing.current_time, timing.fill_deadline_buffer)
    if validated != fill_deadline:
        LOGGER.info("Adjusted fillDeadline %s -> %s on chain %s", fill_deadline, validated, chain_id)
    return validated


def get_deposit_params(
    quote: "Quote",
    destination_chain_id: int,
    origin_chain_id: int,
    *,
    config: AcrossConfig,
    web3_factory: Web3Factory = http_web3,
) -> DepositParams:
    """Build validated deposit parameters for a cross-chain payment."""
    quote_timestamp = validate_quote_timestamp(
        quote.quote_timestamp,
        origin_chain_id,
        quote.spoke_pool_address,
        config=config,
        web3_factory=web3_factory,
    )
    fill_deadline = validate_fill_deadline(
        quote.fill_deadline,
        origin_chain_id,
        quote.spoke_pool_address,
        config=config,
        web3_factory=web3_factory,
    )
    return DepositParams(
        destination_chain_id=int(destination_chain_id),
        output_amount=int(quote.output_amount),
        quote_timestamp=quote_timestamp,
        fill_deadline=fill_deadline,
    )


__all__ = [
    "DepositParams",
    "SpokeTiming",
    "clamp_fill_deadline",
    "clamp_quote_timestamp",
    "get_deposit_params",
    "read_spoke_timing",
    "validate_fill_deadline",
    "validate_quote_timestamp",
]
