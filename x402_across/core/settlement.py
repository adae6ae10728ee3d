"""Payment state machine: quote -> sign -> settle -> confirm -> complete.

``completed`` for a cross-chain payment is inferred from a fixed grace delay
after the source-chain transaction confirms. Source confirmation only proves
the Across deposit was made; the destination fill is not observed, so
``bridge_status`` is reported as ``"inferred"`` rather than ``"filled"``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Tuple

from x402_across.config import AcrossConfig, ChainConfig, DomainConfig
from x402_across.core.authorization import PaymentPlan, SignedAuthorization, build_payment_plan
from x402_across.core.deadlines import DepositParams, get_deposit_params
from x402_across.core.facilitator import (
    FacilitatorClient,
    FacilitatorError,
    build_payment_payload,
    encode_payment_header,
)
from x402_across.core.quotes import PaymentForm, Quote
from x402_across.core.requirements import parse_amount, select_payment_requirement
from x402_across.core.utils import get_logger

LOGGER = get_logger("x402_across.settlement")

SIGNATURE_REJECTED_MESSAGE = "Signature request was rejected"
INTERRUPTED_MESSAGE = "Payment was interrupted"


class Step(str, Enum):
    IDLE = "idle"
    SIGNING = "signing"
    BRIDGING = "bridging"
    SETTLING = "settling"
    COMPLETED = "completed"
    ERROR = "error"


IN_FLIGHT = frozenset({Step.SIGNING, Step.BRIDGING, Step.SETTLING})


class UserRejectedError(RuntimeError):
    """The payer declined a wallet request."""


class SettlementError(RuntimeError):
    """The orchestrator was asked to do something its state does not allow."""


@dataclass(frozen=True)
class TransactionStatus:
    """Visible record of one payment attempt."""

    step: Step = Step.IDLE
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    bridge_status: Optional[str] = None
    executed_explorer: Optional[str] = None
    executed_chain_name: Optional[str] = None
    executed_chain_id: Optional[int] = None

    @property
    def tx_url(self) -> Optional[str]:
        if not self.tx_hash or not self.executed_explorer:
            return None
        return f"{self.executed_explorer}/tx/{self.tx_hash}"


class Wallet(Protocol):
    """Payer wallet; every request may be rejected by raising."""

    address: str

    async def get_chain_id(self) -> int: ...

    async def switch_chain(self, chain_id: int) -> None: ...

    async def sign_typed_data(self, typed_data: Mapping[str, Any]) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, chain_id: int) -> Mapping[str, Any]: ...


StatusListener = Callable[[TransactionStatus], None]
DepositParamsFn = Callable[..., DepositParams]
TokenDomainFn = Callable[[ChainConfig], DomainConfig]


class SettlementOrchestrator:
    """Drives one payment at a time through :class:`Step`.

    Failures other than cancellation never escape :meth:`submit`; they end
    the attempt in ``Step.ERROR`` and require an explicit :meth:`reset`.
    """

    def __init__(
        self,
        config: AcrossConfig,
        wallet: Wallet,
        facilitator: FacilitatorClient,
        *,
        deposit_params_fn: DepositParamsFn = get_deposit_params,
        token_domain_fn: Optional[TokenDomainFn] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.wallet = wallet
        self.facilitator = facilitator
        self._deposit_params_fn = deposit_params_fn
        self._token_domain_fn = token_domain_fn
        self._sleep = sleep
        self._status = TransactionStatus()
        self._listeners: List[StatusListener] = []
        self.last_plan: Optional[PaymentPlan] = None

    @property
    def status(self) -> TransactionStatus:
        return self._status

    @property
    def busy(self) -> bool:
        return self._status.step in IN_FLIGHT

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` on every transition; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _transition(self, status: TransactionStatus) -> None:
        self._status = status
        LOGGER.info("Payment step -> %s", status.step.value)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                LOGGER.exception("Status listener failed on %s", status.step.value)

    def reset(self) -> TransactionStatus:
        """Return to a clean ``idle`` record after ``completed`` or ``error``."""
        if self.busy:
            raise SettlementError(f"Cannot reset while payment is {self._status.step.value}")
        if self._status.step is not Step.IDLE:
            self.last_plan = None
            self._transition(TransactionStatus())
        return self._status

    async def submit(
        self,
        form: PaymentForm,
        quote: Optional[Quote],
        *,
        snapshot: Optional[Tuple[str, str, str]] = None,
    ) -> TransactionStatus:
        """Run a full payment attempt for ``form`` and return the final status.

        ``snapshot`` is the form snapshot ``quote`` was fetched for, as
        published by :class:`QuoteTracker`; a mismatch is refused.
        Cancellation moves the attempt to ``Step.ERROR`` before propagating.
        """
        if self.busy:
            raise SettlementError("A payment is already in progress")
        if self._status.step is not Step.IDLE:
            raise SettlementError("Reset the previous payment before submitting again")
        if quote is None:
            raise SettlementError("A valid quote is required to submit a payment")
        if snapshot is not None and snapshot != form.snapshot():
            raise SettlementError(f"Quote was fetched for {snapshot}, not {form.snapshot()}")
        if form.is_cross_chain and quote.fill_deadline <= quote.quote_timestamp:
            raise SettlementError("A bridge quote is required for a cross-chain payment")

        try:
            self._transition(TransactionStatus(step=Step.SIGNING))
            await self._run(form, quote)
        except UserRejectedError as exc:
            self._fail(str(exc) or SIGNATURE_REJECTED_MESSAGE, exc)
        except FacilitatorError as exc:
            self._fail(exc.reason, exc)
        except Exception as exc:
            self._fail(str(exc) or exc.__class__.__name__, exc)
        except BaseException as exc:
            self._fail(INTERRUPTED_MESSAGE, exc)
            raise
        return self._status

    def _fail(self, message: str, exc: BaseException) -> None:
        LOGGER.error("Payment failed during %s: %s", self._status.step.value, exc)
        self._transition(replace(self._status, step=Step.ERROR, error=message))

    async def _ensure_network(self, source: ChainConfig) -> None:
        current = await self.wallet.get_chain_id()
        if current == source.chain_id:
            return
        LOGGER.info("Wallet on chain %s, requesting switch to %s", current, source.chain_id)
        try:
            await self.wallet.switch_chain(source.chain_id)
        except Exception as exc:
            raise UserRejectedError(f"Network switch to {source.name} was rejected") from exc

    async def _run(self, form: PaymentForm, quote: Quote) -> None:
        source = self.config.chain(form.source_network)
        destination = self.config.chain(form.destination_network)
        value = parse_amount(form.amount, self.config.defaults.token_decimals)

        await self._ensure_network(source)
        connected = self.config.network_for_chain_id(await self.wallet.get_chain_id())

        deposit_params = None
        if form.is_cross_chain:
            deposit_params = await asyncio.to_thread(
                self._deposit_params_fn,
                quote,
                destination.chain_id,
                source.chain_id,
                config=self.config,
            )

        token_domain = None
        if self._token_domain_fn is not None:
            token_domain = await asyncio.to_thread(self._token_domain_fn, source)

        plan = build_payment_plan(
            self.config,
            payer=self.wallet.address,
            source_network=form.source_network,
            destination_network=form.destination_network,
            value=value,
            description=form.description or f"Payment for {form.amount} USDC",
            deposit_params=deposit_params,
            token_domain=token_domain,
        )
        self.last_plan = plan
        selected = select_payment_requirement([plan.requirement], connected)

        try:
            signature = await self.wallet.sign_typed_data(plan.typed_data)
        except Exception as exc:
            raise UserRejectedError(SIGNATURE_REJECTED_MESSAGE) from exc

        executed = dict(
            executed_explorer=source.explorer,
            executed_chain_name=source.name,
            executed_chain_id=source.chain_id,
        )
        self._transition(TransactionStatus(step=Step.BRIDGING, **executed))

        payload = build_payment_payload(SignedAuthorization(plan.authorization, signature), selected.network)
        result = await asyncio.to_thread(
            self.facilitator.settle,
            selected,
            encode_payment_header(payload),
            original_requirement=plan.requirement,
        )

        self._transition(
            TransactionStatus(
                step=Step.SETTLING,
                tx_hash=result.transaction,
                bridge_status="pending" if plan.is_cross_chain else None,
                **executed,
            )
        )

        receipt = await self.wallet.wait_for_receipt(result.transaction, source.chain_id)
        if int(receipt.get("status", 1)) == 0:
            raise RuntimeError(f"Transaction {result.transaction} reverted on {source.name}")

        if plan.is_cross_chain:
            grace = self.config.defaults.cross_chain_grace_seconds
            LOGGER.warning(
                "Deposit confirmed on %s; marking complete after %.0fs without observing the fill on %s",
                source.name,
                grace,
                destination.name,
            )
        else:
            grace = self.config.defaults.same_chain_grace_seconds
        await self._sleep(grace)

        self._transition(
            replace(
                self._status,
                step=Step.COMPLETED,
                bridge_status="inferred" if plan.is_cross_chain else None,
            )
        )


__all__ = [
    "INTERRUPTED_MESSAGE",
    "IN_FLIGHT",
    "SIGNATURE_REJECTED_MESSAGE",
    "SettlementError",
    "SettlementOrchestrator",
    "Step",
    "TransactionStatus",
    "UserRejectedError",
    "Wallet",
]
