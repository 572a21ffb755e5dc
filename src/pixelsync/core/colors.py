"""
Color and currency conversions between the contract's wire types and ours.
"""

from __future__ import annotations

from decimal import Decimal

from eth_utils import from_wei

MAX_COLOR = 0xFFFFFF


def parse_hex_color(value: str) -> int:
    """'#EFEFEF' / 'efefef' / '0xefefef' -> 0xEFEFEF."""
    raw = value.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    elif raw[:2].lower() == "0x":
        raw = raw[2:]
    if not raw or len(raw) > 6:
        raise ValueError(f"invalid color {value!r}")
    color = int(raw, 16)
    if not 0 <= color <= MAX_COLOR:
        raise ValueError(f"color out of range: {value!r}")
    return color


def format_hex_color(color: int) -> str:
    return f"#{color:06X}"


def color_from_bytes3(raw: bytes) -> int:
    # bytes3 is left-aligned; shorter inputs are zero-padded on the left like the frontend did
    return int.from_bytes(raw[:3].rjust(3, b"\x00"), "big")


def color_to_bytes3(color: int) -> bytes:
    if not 0 <= color <= MAX_COLOR:
        raise ValueError(f"color out of range: {color}")
    return color.to_bytes(3, "big")


def format_eth(wei: int) -> str:
    """Render wei as an ether string, keeping at least one decimal ('1.0', '0.001')."""
    text = format(Decimal(from_wei(wei, "ether")).normalize(), "f")
    if "." not in text:
        text += ".0"
    return text


def eth_to_usd(eth_amount: str, eth_price_usd: float = 2500.0) -> float:
    return float(eth_amount) * eth_price_usd
