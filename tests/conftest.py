"""Shared fixtures for the x402-across test suite."""

import copy

import pytest

from x402_across.config import parse_config

BASE_SEPOLIA = "base-sepolia"
OPTIMISM_SEPOLIA = "optimism-sepolia"
BASE_SEPOLIA_CHAIN_ID = 84532
OPTIMISM_SEPOLIA_CHAIN_ID = 11155420

PROXY = "0xe72163ccCD6e7E2d5aC27a23A9496c481080AcA1"
CREDITED_RECIPIENT = "0x85B7B882EeCDfC709EF167Ec8D350064E85F1b07"
BASE_USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
OPTIMISM_USDC = "0x5fd84259d66Cd46123540766Be93DFE6D43130D7"
BASE_SPOKE = "0x82B564983aE7274c86695917BBf8C99ECb6F0F8F"

CONFIG_DATA = {
    "chains": {
        BASE_SEPOLIA: {
            "chain_id": BASE_SEPOLIA_CHAIN_ID,
            "name": "Base Sepolia",
            "usdc": BASE_USDC,
            "proxy": PROXY,
            "explorer": "https://sepolia.basescan.org/",
            "rpc_url": "https://sepolia.base.org",
            "spoke_pool": BASE_SPOKE,
        },
        OPTIMISM_SEPOLIA: {
            "chain_id": OPTIMISM_SEPOLIA_CHAIN_ID,
            "name": "Optimism Sepolia",
            "usdc": OPTIMISM_USDC,
            "proxy": PROXY,
            "explorer": "https://sepolia-optimism.etherscan.io",
            "rpc_url": "https://sepolia.optimism.io",
            "spoke_pool": "0x4e8E101924eDE233C13e2D8622DC8aED2872d505",
        },
    },
    "addresses": {
        "credited_recipient": CREDITED_RECIPIENT,
        "platform": "0x0000000000000000000000000000000000000000",
        "backend_signer": "0x9f205c5F8D3635261a87bb60d7E62d3a7E5E5DbF",
    },
    "facilitator": {
        "url": "https://facilitator.test/",
        "resource": "https://facilitator.test/v1/samples",
    },
    "api_urls": {"across_quote": "https://across.test/api/suggested-fees"},
    "defaults": {
        "token_decimals": 6,
        "platform_fee_bps": 0,
        "max_timeout_seconds": 60,
        "api_timeout": 5,
        "deposit_quote_time_buffer": 600,
        "fill_deadline_buffer": 1800,
        "same_chain_grace_seconds": 1,
        "cross_chain_grace_seconds": 30,
        "valid_after_skew": 600,
    },
    "proxy_domain": {"name": "X402ProxyFacilitatorV2", "version": "1"},
    "token_domain": {"name": "USDC", "version": "2"},
}


@pytest.fixture
def config_data():
    return copy.deepcopy(CONFIG_DATA)


@pytest.fixture
def config(config_data):
    return parse_config(config_data)
