"""
ABI codec for the PixelPlace contract.

Builds ``eth_call`` payloads, decodes return data, and turns raw log
entries into CellChangedEvent / FeeChangedEvent. Pure functions; no I/O.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence

from eth_abi import decode, encode
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    to_checksum_address,
)

from pixelsync.core.colors import color_from_bytes3, color_to_bytes3
from pixelsync.errors import RemoteExecutionError
from pixelsync.models import CellChangedEvent, FeeChangedEvent

# name -> (signature, return types)
FUNCTIONS: Dict[str, tuple] = {
    "WIDTH": ("WIDTH()", ["uint256"]),
    "HEIGHT": ("HEIGHT()", ["uint256"]),
    "pixelFee": ("pixelFee()", ["uint256"]),
    "getPixelColor": ("getPixelColor(uint256,uint256)", ["bytes3"]),
    "getCanvasSection": ("getCanvasSection(uint256,uint256,uint256,uint256)", ["bytes3[][]"]),
    "paintPixel": ("paintPixel(uint256,uint256,bytes3)", []),
}

PIXEL_PAINTED_SIGNATURE = "PixelPainted(uint256,uint256,bytes3,address)"
FEE_UPDATED_SIGNATURE = "FeeUpdated(uint256)"

PIXEL_PAINTED_TOPIC = encode_hex(event_signature_to_log_topic(PIXEL_PAINTED_SIGNATURE))
FEE_UPDATED_TOPIC = encode_hex(event_signature_to_log_topic(FEE_UPDATED_SIGNATURE))


def _arg_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:-1]
    return [t for t in inner.split(",") if t]


def selector(name: str) -> str:
    signature, _ = FUNCTIONS[name]
    return encode_hex(function_signature_to_4byte_selector(signature))


def encode_call(name: str, *args: Any) -> str:
    """Hex calldata for ``name(*args)``."""
    signature, _ = FUNCTIONS[name]
    types = _arg_types(signature)
    if len(types) != len(args):
        raise ValueError(f"{name} expects {len(types)} arguments, got {len(args)}")
    data = function_signature_to_4byte_selector(signature)
    if types:
        data += encode(types, list(args))
    return encode_hex(data)


def decode_result(name: str, raw: Optional[str]) -> Any:
    """
    Decode ``eth_call`` return data for ``name``.

    Empty return data means the call hit an address without code or a
    function that does not exist; that is a structural error, not a blip.
    """
    _, returns = FUNCTIONS[name]
    if raw is None or raw in ("0x", ""):
        raise RemoteExecutionError(f"{name} returned no data")
    try:
        values = decode(returns, decode_hex(raw))
    except Exception as exc:
        raise RemoteExecutionError(f"{name} returned undecodable data", exc)
    return values[0] if len(values) == 1 else values


# Call builders


def width_call() -> str:
    return encode_call("WIDTH")


def height_call() -> str:
    return encode_call("HEIGHT")


def fee_call() -> str:
    return encode_call("pixelFee")


def cell_call(x: int, y: int) -> str:
    return encode_call("getPixelColor", x, y)


def region_call(x: int, y: int, width: int, height: int) -> str:
    return encode_call("getCanvasSection", x, y, width, height)


def paint_call(x: int, y: int, color: int) -> str:
    return encode_call("paintPixel", x, y, color_to_bytes3(color))


# Result decoders


def decode_uint(name: str, raw: Optional[str]) -> int:
    return int(decode_result(name, raw))


def decode_cell_color(raw: Optional[str]) -> int:
    return color_from_bytes3(decode_result("getPixelColor", raw))


def decode_region(raw: Optional[str], width: int, height: int) -> List[List[int]]:
    """
    Decode ``getCanvasSection`` into ``height`` rows of ``width`` colors.

    A reply with the wrong shape is rejected rather than padded so the cache
    never installs a partially filled tile.
    """
    rows = decode_result("getCanvasSection", raw)
    if len(rows) != height or any(len(row) != width for row in rows):
        raise RemoteExecutionError(
            f"getCanvasSection returned {len(rows)} rows, expected {height}x{width}"
        )
    return [[color_from_bytes3(value) for value in row] for row in rows]


# Logs


def log_filter(address: str) -> Dict[str, Any]:
    return {"address": address, "topics": [[PIXEL_PAINTED_TOPIC, FEE_UPDATED_TOPIC]]}


def _topic_int(topic: str) -> int:
    return int(topic, 16)


def _topic_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def decode_log(entry: Dict[str, Any]) -> Optional[CellChangedEvent | FeeChangedEvent]:
    """
    Decode one log entry. Returns None for removed (reorged) entries and for
    topics this contract does not emit.
    """
    if entry.get("removed"):
        return None
    topics: Sequence[str] = entry.get("topics") or []
    if not topics:
        return None
    topic0 = topics[0].lower()
    data = decode_hex(entry.get("data") or "0x")
    now = time.time()

    if topic0 == PIXEL_PAINTED_TOPIC and len(topics) >= 4:
        (color,) = decode(["bytes3"], data)
        return CellChangedEvent(
            x=_topic_int(topics[1]),
            y=_topic_int(topics[2]),
            color=color_from_bytes3(color),
            actor=_topic_address(topics[3]),
            timestamp=now,
        )
    if topic0 == FEE_UPDATED_TOPIC:
        (fee,) = decode(["uint256"], data)
        return FeeChangedEvent(new_fee_wei=int(fee), timestamp=now)
    return None
