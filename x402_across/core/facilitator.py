"""Client for the x402 facilitator's verify and settle endpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests
from x402.common import x402_VERSION
from x402.encoding import safe_base64_decode
from x402.exact import encode_payment
from x402.types import PaymentPayload

from x402_across.config import AcrossConfig
from x402_across.core.authorization import SignedAuthorization
from x402_across.core.requirements import SCHEME_EXACT, PaymentRequirement
from x402_across.core.utils import get_logger

LOGGER = get_logger("x402_across.facilitator")

X402_VERSION = x402_VERSION
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


class FacilitatorError(RuntimeError):
    """The facilitator rejected a request or answered with something unusable."""

    def __init__(self, message: str, *, reason: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.reason = reason or message
        self.status_code = status_code


@dataclass(frozen=True)
class VerifyResult:
    is_valid: bool
    payer: str = ""
    invalid_reason: Optional[str] = None


@dataclass(frozen=True)
class SettleResult:
    success: bool
    transaction: str
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None
    payment_response_header: Optional[str] = None


def build_payment_payload(
    signed: SignedAuthorization,
    network: str,
    *,
    scheme: str = SCHEME_EXACT,
    x402_version: int = X402_VERSION,
) -> Dict[str, Any]:
    """x402 ``exact`` scheme payload carried in the ``X-PAYMENT`` header."""
    payment = PaymentPayload.model_validate(
        {
            "x402Version": x402_version,
            "scheme": scheme,
            "network": network,
            "payload": {
                "signature": signed.signature,
                "authorization": signed.authorization.to_dict(),
            },
        }
    )
    return payment.model_dump(by_alias=True)


def encode_payment_header(payload: Mapping[str, Any]) -> str:
    """Base64 encode a payment payload for the ``X-PAYMENT`` header."""
    return encode_payment(dict(payload))


def decode_payment_header(header: str) -> Optional[Dict[str, Any]]:
    """Decode an ``X-PAYMENT`` header; ``None`` when it is not base64 JSON.

    Accepts standard and URL-safe alphabets with or without padding.
    """
    text = header.strip().replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        decoded = json.loads(safe_base64_decode(text))
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


def is_documentation_response(data: Any) -> bool:
    """True for the endpoint's self-description instead of a settlement result."""
    return isinstance(data, Mapping) and ("endpoint" in data or "description" in data)


def _error_reason(response: requests.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return response.text or None
    if isinstance(data, Mapping):
        for key in ("errorReason", "invalidReason", "error", "message"):
            if data.get(key):
                return str(data[key])
    return None


class FacilitatorClient:
    """Posts signed payments to the facilitator, which pays gas to settle them."""

    def __init__(
        self,
        config: AcrossConfig,
        *,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.base_url = config.facilitator.url
        self._api_key = api_key or config.facilitator.api_key
        self._session = session or requests.Session()

    def _headers(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(extra or {})
        return headers

    def _post(self, path: str, body: Mapping[str, Any], headers: Optional[Mapping[str, str]] = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.post(
                url,
                json=body,
                headers=self._headers(headers),
                timeout=self.config.defaults.api_timeout,
            )
        except requests.RequestException as exc:
            raise FacilitatorError(f"Failed to reach facilitator at {url}: {exc}") from exc
        if not response.ok:
            reason = _error_reason(response)
            LOGGER.error("Facilitator %s returned %s: %s", path, response.status_code, reason)
            raise FacilitatorError(
                f"Facilitator API returned {response.status_code}: {reason}",
                reason=reason,
                status_code=response.status_code,
            )
        return response

    def verify(self, payment_payload: Mapping[str, Any], requirement: PaymentRequirement) -> VerifyResult:
        """Ask the facilitator whether ``payment_payload`` satisfies ``requirement``."""
        response = self._post(
            "/v1/verify",
            {"paymentPayload": dict(payment_payload), "paymentRequirements": requirement.to_dict()},
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise FacilitatorError("Facilitator verify response is not JSON") from exc
        if not isinstance(data, Mapping) or "isValid" not in data:
            raise FacilitatorError("Facilitator verify response is missing isValid")
        result = VerifyResult(
            is_valid=bool(data["isValid"]),
            payer=str(data.get("payer") or ""),
            invalid_reason=data.get("invalidReason"),
        )
        LOGGER.info("Verify result valid=%s payer=%s reason=%s", result.is_valid, result.payer, result.invalid_reason)
        return result

    def settle(
        self,
        requirement: PaymentRequirement,
        payment_header: str,
        *,
        original_requirement: Optional[PaymentRequirement] = None,
    ) -> SettleResult:
        """Submit a signed payment for on-chain settlement.

        The decoded payload is attached when the header decodes; otherwise
        the facilitator works from the header alone.
        """
        body: Dict[str, Any] = {
            "paymentRequirements": requirement.to_dict(),
            "originalPaymentRequirements": (original_requirement or requirement).to_dict(),
        }
        payment_payload = decode_payment_header(payment_header)
        if payment_payload is None:
            LOGGER.warning("Could not decode payment header, settling without paymentPayload")
        else:
            body["paymentPayload"] = payment_payload

        response = self._post("/v1/settle", body, {PAYMENT_HEADER: payment_header})
        try:
            data = response.json()
        except ValueError as exc:
            raise FacilitatorError("Facilitator settle response is not JSON") from exc

        if is_documentation_response(data):
            raise FacilitatorError(
                "Facilitator returned API documentation instead of a settlement result",
                reason="Backend returned API docs instead of transaction",
            )
        if not isinstance(data, Mapping) or not data.get("success") or not data.get("transaction"):
            reason = data.get("errorReason") if isinstance(data, Mapping) else None
            raise FacilitatorError(reason or "No transaction hash returned", reason=reason)

        result = SettleResult(
            success=True,
            transaction=str(data["transaction"]),
            network=data.get("network"),
            payer=data.get("payer"),
            payment_response_header=response.headers.get(PAYMENT_RESPONSE_HEADER),
        )
        LOGGER.info("Settled on %s tx=%s", result.network or requirement.network, result.transaction)
        return result


__all__ = [
    "FacilitatorClient",
    "FacilitatorError",
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "SettleResult",
    "VerifyResult",
    "X402_VERSION",
    "build_payment_payload",
    "decode_payment_header",
    "encode_payment_header",
    "is_documentation_response",
]
