"""Tests for quote timestamp and fill deadline validation."""

from unittest.mock import MagicMock

import pytest

from x402_across.core.deadlines import (
    DepositParams,
    clamp_fill_deadline,
    clamp_quote_timestamp,
    get_deposit_params,
    read_spoke_timing,
    validate_fill_deadline,
    validate_quote_timestamp,
)
from x402_across.core.quotes import create_mock_quote

from .conftest import BASE_SEPOLIA_CHAIN_ID, BASE_SPOKE, OPTIMISM_SEPOLIA_CHAIN_ID

CHAIN_TIME = 1_700_000_000


def _spoke_web3(current=CHAIN_TIME, quote_buffer=600, fill_buffer=1800, failing=()):
    """MagicMock web3 whose spoke pool returns the given values."""
    web3 = MagicMock()
    contract = web3.eth.contract.return_value
    values = {
        "getCurrentTime": current,
        "depositQuoteTimeBuffer": quote_buffer,
        "fillDeadlineBuffer": fill_buffer,
    }
    for name, value in values.items():
        call = getattr(contract.functions, name).return_value.call
        if name in failing:
            call.side_effect = RuntimeError("execution reverted")
        else:
            call.return_value = value
    return web3


# ============================================================
# Clamps
# ============================================================


class TestClamps:
    """Tests for the pure clamping helpers."""

    def test_quote_timestamp_inside_window_unchanged(self):
        assert clamp_quote_timestamp(900, 1000, 600) == 900

    def test_quote_timestamp_too_old_raised_to_lower_bound(self):
        assert clamp_quote_timestamp(100, 1000, 600) == 400

    def test_quote_timestamp_in_future_lowered_to_upper_bound(self):
        assert clamp_quote_timestamp(2000, 1000, 600) == 1600

    def test_fill_deadline_in_past_raised_to_now(self):
        assert clamp_fill_deadline(500, 1000, 1800) == 1000

    def test_fill_deadline_beyond_buffer_lowered(self):
        assert clamp_fill_deadline(5000, 1000, 1800) == 2800

    def test_fill_deadline_inside_window_unchanged(self):
        assert clamp_fill_deadline(2000, 1000, 1800) == 2000


# ============================================================
# Spoke reads
# ============================================================


class TestReadSpokeTiming:
    """Tests for read_spoke_timing fallbacks."""

    def test_reads_from_chain(self, config):
        timing = read_spoke_timing(_spoke_web3(quote_buffer=300), BASE_SPOKE, config.defaults)
        assert timing.current_time == CHAIN_TIME
        assert timing.deposit_quote_time_buffer == 300
        assert timing.fill_deadline_buffer == 1800
        assert timing.from_chain is True

    def test_no_web3_uses_clock_and_defaults(self, config):
        timing = read_spoke_timing(None, BASE_SPOKE, config.defaults, clock=lambda: 42)
        assert timing.current_time == 42
        assert timing.deposit_quote_time_buffer == config.defaults.deposit_quote_time_buffer
        assert timing.fill_deadline_buffer == config.defaults.fill_deadline_buffer
        assert timing.from_chain is False

    def test_each_value_falls_back_independently(self, config):
        web3 = _spoke_web3(quote_buffer=120, failing=("getCurrentTime",))
        timing = read_spoke_timing(web3, BASE_SPOKE, config.defaults, clock=lambda: 77)
        assert timing.current_time == 77
        assert timing.deposit_quote_time_buffer == 120
        assert timing.from_chain is False

    def test_missing_spoke_address_falls_back(self, config):
        web3 = _spoke_web3()
        timing = read_spoke_timing(web3, None, config.defaults, clock=lambda: 10)
        assert timing.current_time == 10
        web3.eth.contract.assert_not_called()


# ============================================================
# Validators
# ============================================================


class TestValidators:
    """Tests for validate_quote_timestamp / validate_fill_deadline."""

    def test_quote_timestamp_clamped_against_origin_chain_clock(self, config):
        web3 = _spoke_web3()
        factory = MagicMock(return_value=web3)
        result = validate_quote_timestamp(
            CHAIN_TIME - 10_000, BASE_SEPOLIA_CHAIN_ID, BASE_SPOKE, config=config, web3_factory=factory
        )
        assert result == CHAIN_TIME - 600
        factory.assert_called_once_with("https://sepolia.base.org")

    def test_fill_deadline_clamped(self, config):
        factory = MagicMock(return_value=_spoke_web3())
        result = validate_fill_deadline(
            CHAIN_TIME + 10_000, BASE_SEPOLIA_CHAIN_ID, BASE_SPOKE, config=config, web3_factory=factory
        )
        assert result == CHAIN_TIME + 1800

    def test_rpc_failure_falls_back_to_local_time(self, config):
        def broken_factory(rpc_url):
            raise ConnectionError("rpc down")

        result = validate_fill_deadline(0, BASE_SEPOLIA_CHAIN_ID, BASE_SPOKE, config=config, web3_factory=broken_factory)
        assert result > CHAIN_TIME

    def test_uses_chain_spoke_when_none_given(self, config):
        web3 = _spoke_web3()
        validate_quote_timestamp(CHAIN_TIME, BASE_SEPOLIA_CHAIN_ID, None, config=config, web3_factory=lambda url: web3)
        assert web3.eth.contract.call_args.kwargs["address"] == config.chain("base-sepolia").spoke_pool_address


class TestGetDepositParams:
    """Tests for get_deposit_params."""

    def test_builds_validated_params(self, config):
        quote = create_mock_quote(1_000_000, now=CHAIN_TIME - 5_000)
        web3 = _spoke_web3()
        params = get_deposit_params(
            quote,
            OPTIMISM_SEPOLIA_CHAIN_ID,
            BASE_SEPOLIA_CHAIN_ID,
            config=config,
            web3_factory=lambda url: web3,
        )
        assert isinstance(params, DepositParams)
        assert params.destination_chain_id == OPTIMISM_SEPOLIA_CHAIN_ID
        assert params.output_amount == int(quote.output_amount)
        assert params.quote_timestamp == CHAIN_TIME - 600
        assert params.fill_deadline == CHAIN_TIME

    def test_reads_origin_spoke_not_destination(self, config):
        quote = create_mock_quote(1_000_000, now=CHAIN_TIME)
        factory = MagicMock(return_value=_spoke_web3())
        get_deposit_params(quote, OPTIMISM_SEPOLIA_CHAIN_ID, BASE_SEPOLIA_CHAIN_ID, config=config, web3_factory=factory)
        assert {call.args[0] for call in factory.call_args_list} == {"https://sepolia.base.org"}

    def test_tuple_and_wire_shape(self):
        params = DepositParams(11155420, 995000, 1000, 2800)
        assert params.as_tuple() == (11155420, 995000, 1000, 2800)
        assert params.to_dict() == {
            "destinationChainId": "11155420",
            "outputAmount": "995000",
            "quoteTimestamp": 1000,
            "fillDeadline": 2800,
        }

    @pytest.mark.parametrize("offset", [-100_000, 0, 100_000])
    def test_result_always_inside_spoke_window(self, config, offset):
        quote = create_mock_quote(1_000_000, now=CHAIN_TIME + offset)
        params = get_deposit_params(
            quote,
            OPTIMISM_SEPOLIA_CHAIN_ID,
            BASE_SEPOLIA_CHAIN_ID,
            config=config,
            web3_factory=lambda url: _spoke_web3(),
        )
        assert CHAIN_TIME - 600 <= params.quote_timestamp <= CHAIN_TIME + 600
        assert CHAIN_TIME <= params.fill_deadline <= CHAIN_TIME + 1800
