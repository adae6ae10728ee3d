"""Across quote fetching and normalization."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import requests

from x402_across.config import AcrossConfig
from x402_across.core.utils import get_logger, now_seconds, to_base_units

LOGGER = get_logger("x402_across.quotes")

TRADE_TYPE_EXACT_INPUT = "exactInput"
QUOTE_FAILED_MESSAGE = "Failed to get quote from Across API"
MOCK_FEE_BPS = 50

FieldPath = Tuple[str, ...]

# Across has shipped fees both flat and nested under ``.total``; first present wins.
_AMOUNT_FIELDS: Dict[str, Sequence[FieldPath]] = {
    "bridge_fee": (("totalRelayFee", "total"), ("relayFeeTotal",)),
    "lp_fee": (("lpFee", "total"), ("lpFee",)),
    "relayer_capital_fee": (("relayerCapitalFee", "total"), ("capitalFeeTotal",)),
    "relayer_gas_fee": (("relayerGasFee", "total"), ("relayGasFeeTotal",)),
    "total_relay_fee": (("totalRelayFee", "total"), ("relayFeeTotal",)),
}
_OUTPUT_AMOUNT: Sequence[FieldPath] = (("outputAmount",),)
_FEE_PCT: Sequence[FieldPath] = (("relayFeePct",), ("relayFeePercent",), ("totalRelayFee", "pct"))
_QUOTE_TIMESTAMP: Sequence[FieldPath] = (("timestamp",), ("quoteTimestamp",))
_FILL_DEADLINE: Sequence[FieldPath] = (("fillDeadline",),)
_EXCLUSIVITY_DEADLINE: Sequence[FieldPath] = (("exclusivityDeadline",),)
_AMOUNT_TOO_LOW: Sequence[FieldPath] = (("isAmountTooLow",),)
_SPOKE_POOL: Sequence[FieldPath] = (("spokePoolAddress",),)


class QuoteError(RuntimeError):
    """Raised when a bridge quote cannot be fetched or is unusable."""


@dataclass(frozen=True)
class Quote:
    """Bridging economics for one transfer, amounts in base units."""

    output_amount: str
    bridge_fee: str
    lp_fee: str
    relayer_capital_fee: str
    relayer_gas_fee: str
    total_relay_fee: str
    quote_timestamp: int
    fill_deadline: int
    exclusivity_deadline: int = 0
    suggested_relayer_fee_pct: str = "0"
    is_amount_too_low: bool = False
    spoke_pool_address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "outputAmount": data["output_amount"],
            "bridgeFee": data["bridge_fee"],
            "lpFee": data["lp_fee"],
            "relayerCapitalFee": data["relayer_capital_fee"],
            "relayerGasFee": data["relayer_gas_fee"],
            "totalRelayFee": data["total_relay_fee"],
            "quoteTimestamp": data["quote_timestamp"],
            "fillDeadline": data["fill_deadline"],
            "exclusivityDeadline": data["exclusivity_deadline"],
            "suggestedRelayerFeePct": data["suggested_relayer_fee_pct"],
            "isAmountTooLow": data["is_amount_too_low"],
            "spokePoolAddress": data["spoke_pool_address"],
        }


@dataclass(frozen=True)
class QuoteRequest:
    """Parameters of one suggested-fees request."""

    input_token: str
    output_token: str
    input_amount: int
    origin_chain_id: int
    destination_chain_id: int
    trade_type: str = TRADE_TYPE_EXACT_INPUT
    recipient: Optional[str] = None
    message: Optional[str] = None

    def to_params(self) -> Dict[str, str]:
        # The suggested-fees endpoint names the input amount ``amount``.
        params = {
            "inputToken": self.input_token,
            "outputToken": self.output_token,
            "amount": str(self.input_amount),
            "originChainId": str(self.origin_chain_id),
            "destinationChainId": str(self.destination_chain_id),
            "tradeType": self.trade_type,
        }
        if self.recipient:
            params["recipient"] = self.recipient
        if self.message:
            params["message"] = self.message
        return params


@dataclass(frozen=True)
class PaymentForm:
    """User inputs for one payment."""

    amount: str
    source_network: str
    destination_network: str
    description: str = ""

    @property
    def is_cross_chain(self) -> bool:
        return self.source_network != self.destination_network

    def snapshot(self) -> Tuple[str, str, str]:
        """Inputs a quote depends on."""
        return (self.amount, self.source_network, self.destination_network)


def _lookup(data: Mapping[str, Any], path: FieldPath) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, Mapping) or key not in value:
            return None
        value = value[key]
    return value


def _first_present(data: Mapping[str, Any], paths: Sequence[FieldPath], default: Any = None) -> Any:
    for path in paths:
        value = _lookup(data, path)
        if value is None or value == "" or isinstance(value, Mapping):
            continue
        return value
    return default


def _as_amount(value: Any, field_name: str) -> str:
    try:
        amount = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise QuoteError(f"Quote field {field_name} is not an integer amount: {value!r}") from exc
    if amount < 0:
        raise QuoteError(f"Quote field {field_name} is negative: {value!r}")
    return str(amount)


def _as_seconds(value: Any, field_name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise QuoteError(f"Quote field {field_name} is not a timestamp: {value!r}") from exc


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def normalize_quote(
    data: Mapping[str, Any],
    input_amount: int,
    *,
    fill_deadline_buffer: int = 1800,
    clock: Callable[[], int] = now_seconds,
) -> Quote:
    """Map a suggested-fees response onto :class:`Quote`."""
    if not isinstance(data, Mapping):
        raise QuoteError(f"Unexpected quote payload type: {type(data).__name__}")

    fees = {name: _as_amount(_first_present(data, paths, "0"), name) for name, paths in _AMOUNT_FIELDS.items()}

    raw_output = _first_present(data, _OUTPUT_AMOUNT)
    if raw_output is None:
        output_amount = str(max(int(input_amount) - int(fees["total_relay_fee"]), 0))
    else:
        output_amount = _as_amount(raw_output, "output_amount")

    raw_timestamp = _first_present(data, _QUOTE_TIMESTAMP)
    quote_timestamp = clock() if raw_timestamp is None else _as_seconds(raw_timestamp, "quote_timestamp")

    raw_deadline = _first_present(data, _FILL_DEADLINE)
    if raw_deadline is None:
        fill_deadline = quote_timestamp + fill_deadline_buffer
    else:
        fill_deadline = _as_seconds(raw_deadline, "fill_deadline")
    if fill_deadline <= quote_timestamp:
        raise QuoteError(f"Quote fill deadline {fill_deadline} is not after quote timestamp {quote_timestamp}")

    if int(output_amount) + int(fees["total_relay_fee"]) > int(input_amount):
        LOGGER.warning(
            "Quote output %s plus relay fee %s exceeds input amount %s",
            output_amount,
            fees["total_relay_fee"],
            input_amount,
        )

    return Quote(
        output_amount=output_amount,
        bridge_fee=fees["bridge_fee"],
        lp_fee=fees["lp_fee"],
        relayer_capital_fee=fees["relayer_capital_fee"],
        relayer_gas_fee=fees["relayer_gas_fee"],
        total_relay_fee=fees["total_relay_fee"],
        quote_timestamp=quote_timestamp,
        fill_deadline=fill_deadline,
        exclusivity_deadline=_as_seconds(_first_present(data, _EXCLUSIVITY_DEADLINE, 0), "exclusivity_deadline"),
        suggested_relayer_fee_pct=str(_first_present(data, _FEE_PCT, "0")),
        is_amount_too_low=_as_bool(_first_present(data, _AMOUNT_TOO_LOW, False)),
        spoke_pool_address=str(_first_present(data, _SPOKE_POOL, "")),
    )


def same_chain_quote(input_amount: int, now: Optional[int] = None) -> Quote:
    """Zero-fee quote for a transfer that needs no bridging."""
    return Quote(
        output_amount=str(int(input_amount)),
        bridge_fee="0",
        lp_fee="0",
        relayer_capital_fee="0",
        relayer_gas_fee="0",
        total_relay_fee="0",
        quote_timestamp=now_seconds() if now is None else now,
        fill_deadline=0,
    )


def create_mock_quote(input_amount: int, now: Optional[int] = None) -> Quote:
    """Offline stand-in for the Across API: flat 0.5% fee, 30 minute deadline."""
    now = now_seconds() if now is None else now
    fee = int(input_amount) * MOCK_FEE_BPS // 10_000
    return Quote(
        output_amount=str(int(input_amount) - fee),
        bridge_fee=str(fee),
        lp_fee="0",
        relayer_capital_fee="0",
        relayer_gas_fee=str(fee),
        total_relay_fee=str(fee),
        quote_timestamp=now,
        fill_deadline=now + 1800,
        suggested_relayer_fee_pct="0.5",
    )


def build_quote_request(config: AcrossConfig, form: PaymentForm, input_amount: int) -> QuoteRequest:
    """Quote request for moving ``input_amount`` of USDC between the form's chains."""
    source = config.chain(form.source_network)
    destination = config.chain(form.destination_network)
    return QuoteRequest(
        input_token=source.usdc_address,
        output_token=destination.usdc_address,
        input_amount=input_amount,
        origin_chain_id=source.chain_id,
        destination_chain_id=destination.chain_id,
        recipient=destination.proxy_address,
    )


def fetch_across_quote(
    *,
    config: AcrossConfig,
    request: QuoteRequest,
    session: Optional[requests.Session] = None,
) -> Quote:
    """Fetch and normalize a suggested-fees quote."""
    http = session or requests
    url = config.api_urls.across_quote
    try:
        response = http.get(url, params=request.to_params(), timeout=config.defaults.api_timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise QuoteError(f"Failed to fetch Across quote from {url}: {exc}") from exc

    try:
        payload = response.json()
    except ValueError as exc:
        raise QuoteError(f"Across API returned a non-JSON body from {url}") from exc

    quote = normalize_quote(
        payload,
        request.input_amount,
        fill_deadline_buffer=config.defaults.fill_deadline_buffer,
    )
    LOGGER.info(
        "Quote %s -> %s amount=%s output=%s fee=%s",
        request.origin_chain_id,
        request.destination_chain_id,
        request.input_amount,
        quote.output_amount,
        quote.total_relay_fee,
    )
    return quote


QuoteFn = Callable[..., Quote]


class QuoteTracker:
    """Holds the quote displayed for the latest form inputs.

    Every :meth:`refresh` is tagged with a generation number; a response that
    arrives after a newer refresh started is discarded.
    """

    def __init__(self, config: AcrossConfig, *, quote_fn: QuoteFn = fetch_across_quote) -> None:
        self.config = config
        self._quote_fn = quote_fn
        self._generation = 0
        self.quote: Optional[Quote] = None
        self.error: Optional[str] = None
        self.loading = False
        self.snapshot: Optional[Tuple[str, str, str]] = None

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _publish(self, snapshot: Tuple[str, str, str], quote: Optional[Quote], error: Optional[str]) -> None:
        self.snapshot = snapshot
        self.quote = quote
        self.error = error
        self.loading = False

    async def refresh(self, form: PaymentForm) -> Optional[Quote]:
        """Re-quote for ``form``; returns the quote now displayed."""
        self._generation += 1
        generation = self._generation
        snapshot = form.snapshot()

        try:
            input_amount = to_base_units(form.amount, self.config.defaults.token_decimals)
        except ValueError:
            input_amount = 0
        if input_amount <= 0:
            self._publish(snapshot, None, None)
            return None

        if not form.is_cross_chain:
            self._publish(snapshot, same_chain_quote(input_amount), None)
            return self.quote

        self.loading = True
        try:
            request = build_quote_request(self.config, form, input_amount)
            quote = await asyncio.to_thread(self._quote_fn, config=self.config, request=request)
        except Exception as exc:
            LOGGER.warning("Quote for %s failed: %s", snapshot, exc)
            if self._is_current(generation):
                self._publish(snapshot, None, QUOTE_FAILED_MESSAGE)
            return self.quote

        if not self._is_current(generation):
            LOGGER.info("Discarding stale quote for %s", snapshot)
            return self.quote

        self._publish(snapshot, quote, None)
        return quote


__all__ = [
    "PaymentForm",
    "QUOTE_FAILED_MESSAGE",
    "Quote",
    "QuoteError",
    "QuoteRequest",
    "QuoteTracker",
    "TRADE_TYPE_EXACT_INPUT",
    "build_quote_request",
    "create_mock_quote",
    "fetch_across_quote",
    "normalize_quote",
    "same_chain_quote",
]
