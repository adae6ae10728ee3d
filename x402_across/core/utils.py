"""Utility helpers shared across core modules."""

from __future__ import annotations

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from web3 import Web3


def get_logger(name: str = "x402_across") -> logging.Logger:
    """Return a configured logger that prints to stdout."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


def http_web3(rpc_url: str) -> Web3:
    """Build a ``Web3`` instance over HTTP for ``rpc_url``."""
    return Web3(Web3.HTTPProvider(rpc_url))


def ensure_web3_connected(web3: Web3, *, expected_chain_id: Optional[int] = None) -> None:
    """Validate that ``web3`` is connected and optionally matches the expected chain id."""
    if not web3.is_connected():
        raise ConnectionError("Failed to connect to the configured RPC endpoint")
    if expected_chain_id is not None and web3.eth.chain_id != expected_chain_id:
        raise ValueError(f"RPC chain ID mismatch: expected {expected_chain_id}, got {web3.eth.chain_id}")


def hex_to_bytes(data: str) -> bytes:
    """Convert a hex string (with or without ``0x``) to bytes."""
    data = data[2:] if data.startswith("0x") else data
    return bytes.fromhex(data)


def bytes_to_hex(data: Union[bytes, bytearray, str]) -> str:
    """Return ``data`` as a ``0x``-prefixed hex string."""
    if isinstance(data, str):
        return data if data.startswith("0x") else f"0x{data}"
    return "0x" + bytes(data).hex()


def now_seconds() -> int:
    """Current wall-clock time in whole seconds."""
    return int(time.time())


def to_base_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Convert a human decimal amount (``"1.5"``) into integer base units.

    Rejects values with more fractional digits than ``decimals`` instead of
    rounding, so the signed value always matches what the user typed.
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount!r} has more than {decimals} decimal places")
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Render integer base units as a plain decimal string."""
    text = format(Decimal(int(value)).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


__all__ = [
    "bytes_to_hex",
    "ensure_web3_connected",
    "format_units",
    "get_logger",
    "hex_to_bytes",
    "http_web3",
    "now_seconds",
    "to_base_units",
]
