"""Tests for the facilitator client and the payment header codec."""

import base64
import json
from unittest.mock import MagicMock

import pytest
import requests
from eth_account import Account
from x402.encoding import safe_base64_decode
from x402.types import PaymentPayload

from x402_across.core.authorization import SignedAuthorization, build_payment_plan
from x402_across.core.facilitator import (
    PAYMENT_HEADER,
    FacilitatorClient,
    FacilitatorError,
    build_payment_payload,
    decode_payment_header,
    encode_payment_header,
    is_documentation_response,
)

from .conftest import BASE_SEPOLIA

TX_HASH = "0x" + "ab" * 32


def _response(data, *, ok=True, status_code=200, headers=None):
    response = MagicMock()
    response.ok = ok
    response.status_code = status_code
    response.json.return_value = data
    response.headers = headers or {}
    response.text = json.dumps(data)
    return response


@pytest.fixture
def plan(config):
    return build_payment_plan(
        config,
        payer=Account.create().address,
        source_network=BASE_SEPOLIA,
        destination_network=BASE_SEPOLIA,
        value=1_000_000,
    )


@pytest.fixture
def header(plan):
    payload = build_payment_payload(SignedAuthorization(plan.authorization, "0x" + "11" * 65), BASE_SEPOLIA)
    return encode_payment_header(payload)


# ============================================================
# Header codec
# ============================================================


class TestPaymentHeader:
    """Tests for the X-PAYMENT header codec."""

    def test_payload_shape(self, plan):
        payload = build_payment_payload(SignedAuthorization(plan.authorization, "0xsig"), BASE_SEPOLIA)
        assert payload["x402Version"] == 1
        assert payload["scheme"] == "exact"
        assert payload["network"] == BASE_SEPOLIA
        assert payload["payload"]["signature"] == "0xsig"
        assert payload["payload"]["authorization"]["nonce"] == plan.authorization.nonce

    def test_payload_is_an_x402_payment_payload(self, plan):
        payload = build_payment_payload(SignedAuthorization(plan.authorization, "0xsig"), BASE_SEPOLIA)
        parsed = PaymentPayload.model_validate(payload)
        assert parsed.x402_version == 1
        assert parsed.model_dump(by_alias=True)["payload"]["authorization"]["value"] == "1000000"
        assert payload["payload"]["authorization"]["from"] == plan.authorization.from_address

    def test_header_is_readable_by_the_x402_decoder(self, header):
        decoded = json.loads(safe_base64_decode(header))
        assert decoded["scheme"] == "exact"
        assert decoded["payload"]["signature"] == "0x" + "11" * 65

    def test_decode_encoded(self, header):
        decoded = decode_payment_header(header)
        assert decoded["network"] == BASE_SEPOLIA

    def test_decode_unpadded_urlsafe(self):
        raw = json.dumps({"x402Version": 1, "note": "??>>"}).encode()
        header = base64.urlsafe_b64encode(raw).decode().rstrip("=")
        assert decode_payment_header(header) == {"x402Version": 1, "note": "??>>"}

    @pytest.mark.parametrize("header", ["not base64!!", base64.b64encode(b"plain text").decode(), base64.b64encode(b"[1, 2]").decode()])
    def test_decode_garbage_returns_none(self, header):
        assert decode_payment_header(header) is None

    def test_documentation_response_detection(self):
        assert is_documentation_response({"endpoint": "/v1/settle", "method": "POST"})
        assert is_documentation_response({"description": "Settles payments"})
        assert not is_documentation_response({"success": True, "transaction": TX_HASH})


# ============================================================
# Settle
# ============================================================


class TestSettle:
    """Tests for FacilitatorClient.settle."""

    def test_success(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response(
            {"success": True, "transaction": TX_HASH, "network": BASE_SEPOLIA, "payer": plan.authorization.from_address},
            headers={"X-PAYMENT-RESPONSE": "abc"},
        )
        client = FacilitatorClient(config, api_key="secret", session=session)
        result = client.settle(plan.requirement, header)

        assert result.transaction == TX_HASH
        assert result.payment_response_header == "abc"
        url = session.post.call_args.args[0]
        kwargs = session.post.call_args.kwargs
        assert url == "https://facilitator.test/v1/settle"
        assert kwargs["headers"][PAYMENT_HEADER] == header
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["json"]["paymentPayload"]["network"] == BASE_SEPOLIA
        assert kwargs["json"]["paymentRequirements"] == plan.requirement.to_dict()
        assert kwargs["json"]["originalPaymentRequirements"] == plan.requirement.to_dict()
        assert kwargs["timeout"] == 5

    def test_no_api_key_sends_no_authorization(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"success": True, "transaction": TX_HASH})
        FacilitatorClient(config, session=session).settle(plan.requirement, header)
        assert "Authorization" not in session.post.call_args.kwargs["headers"]

    def test_undecodable_header_still_settles(self, config, plan):
        session = MagicMock()
        session.post.return_value = _response({"success": True, "transaction": TX_HASH})
        FacilitatorClient(config, session=session).settle(plan.requirement, "%%%")
        body = session.post.call_args.kwargs["json"]
        assert "paymentPayload" not in body
        assert session.post.call_args.kwargs["headers"][PAYMENT_HEADER] == "%%%"

    def test_documentation_response_is_error(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"endpoint": "/v1/settle", "description": "Settle a payment"})
        with pytest.raises(FacilitatorError) as excinfo:
            FacilitatorClient(config, session=session).settle(plan.requirement, header)
        assert excinfo.value.reason == "Backend returned API docs instead of transaction"

    def test_missing_transaction_is_error(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"success": False, "errorReason": "insufficient_funds"})
        with pytest.raises(FacilitatorError) as excinfo:
            FacilitatorClient(config, session=session).settle(plan.requirement, header)
        assert excinfo.value.reason == "insufficient_funds"

    def test_success_without_hash_is_error(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"success": True})
        with pytest.raises(FacilitatorError, match="No transaction hash"):
            FacilitatorClient(config, session=session).settle(plan.requirement, header)

    def test_http_error_carries_status(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"error": "invalid signature"}, ok=False, status_code=400)
        with pytest.raises(FacilitatorError) as excinfo:
            FacilitatorClient(config, session=session).settle(plan.requirement, header)
        assert excinfo.value.status_code == 400
        assert excinfo.value.reason == "invalid signature"

    def test_transport_error(self, config, plan, header):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(FacilitatorError, match="Failed to reach"):
            FacilitatorClient(config, session=session).settle(plan.requirement, header)


# ============================================================
# Verify
# ============================================================


class TestVerify:
    """Tests for FacilitatorClient.verify."""

    def test_valid(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"isValid": True, "payer": plan.authorization.from_address})
        result = FacilitatorClient(config, session=session).verify(decode_payment_header(header), plan.requirement)
        assert result.is_valid is True
        assert result.payer == plan.authorization.from_address
        assert session.post.call_args.args[0] == "https://facilitator.test/v1/verify"

    def test_invalid_reason(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"isValid": False, "invalidReason": "expired"})
        result = FacilitatorClient(config, session=session).verify(decode_payment_header(header), plan.requirement)
        assert result.is_valid is False
        assert result.invalid_reason == "expired"

    def test_malformed_response(self, config, plan, header):
        session = MagicMock()
        session.post.return_value = _response({"ok": True})
        with pytest.raises(FacilitatorError, match="isValid"):
            FacilitatorClient(config, session=session).verify(decode_payment_header(header), plan.requirement)

    def test_non_json_response_is_facilitator_error(self, config, plan, header):
        session = MagicMock()
        response = _response({})
        response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        session.post.return_value = response
        with pytest.raises(FacilitatorError, match="not JSON"):
            FacilitatorClient(config, session=session).verify(decode_payment_header(header), plan.requirement)
