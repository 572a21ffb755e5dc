"""
Live grid source: the PixelPlace contract read and written through the
RequestScheduler, with change notifications from a WebSocket log stream.

Reads that feed the cache carry a ``None`` placeholder so a slow endpoint
degrades to stale/placeholder cells; dimension reads carry none and raise,
which is what the degradation controller counts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from eth_utils import encode_hex

from pixelsync.errors import (
    ConfigurationError,
    InsufficientFundsError,
    PixelSyncError,
    RemoteError,
    RemoteExecutionError,
    UserRejectedError,
    WriteTimeoutError,
)
from pixelsync.infra.ws_transport import LogStreamChannel
from pixelsync.models import (
    NO_PLACEHOLDER,
    CallKind,
    CellChangedEvent,
    FeeChangedEvent,
    Grid,
    RemoteCall,
    WriteOutcome,
    WriteStatus,
)
from pixelsync.remote import contract
from pixelsync.remote.source import CellHandler, EventChannel, FeeHandler
from pixelsync.scheduler.request_scheduler import RequestScheduler

log = logging.getLogger("pixelsync")

# eth_estimateGas is exact for the current state; leave room for a
# neighbouring write landing first.
GAS_MARGIN = 1.2


@dataclass
class RpcSourceConfig:
    contract_address: str
    ws_url: Optional[str] = None
    chain_id: Optional[int] = None
    account: Optional[str] = None
    confirmation_timeout: float = 20.0
    receipt_poll_interval: float = 1.0
    log_event_callback: Optional[Callable[..., None]] = None


class RpcGridSource:
    """
    GridSource backed by a JSON-RPC endpoint.

    ``signer`` is an eth_account LocalAccount. Without one, writes are sent
    with ``eth_sendTransaction`` and rely on the node holding ``account``.
    """

    def __init__(
        self,
        scheduler: RequestScheduler,
        config: RpcSourceConfig,
        signer: Any = None,
        channel_factory: Callable[..., Any] = LogStreamChannel.open,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        if not config.contract_address:
            raise ConfigurationError("Contract address not configured")
        self.scheduler = scheduler
        self.config = config
        self._signer = signer
        self._channel_factory = channel_factory
        self._sleep = sleep
        self._log_event = config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @property
    def account(self) -> Optional[str]:
        if self._signer is not None:
            return self._signer.address
        return self.config.account

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _eth_call(self, data: str, label: str, placeholder: Any = NO_PLACEHOLDER) -> Any:
        call = RemoteCall(
            method="eth_call",
            params=[{"to": self.config.contract_address, "data": data}, "latest"],
            kind=CallKind.READ,
            placeholder=placeholder,
            label=label,
        )
        return await self.scheduler.enqueue(call)

    async def _read(self, method: str, params: list, placeholder: Any = NO_PLACEHOLDER) -> Any:
        call = RemoteCall(method=method, params=params, kind=CallKind.READ, placeholder=placeholder, label=method)
        return await self.scheduler.enqueue(call)

    async def get_dimensions(self) -> Grid:
        width = contract.decode_uint("WIDTH", await self._eth_call(contract.width_call(), "WIDTH"))
        height = contract.decode_uint("HEIGHT", await self._eth_call(contract.height_call(), "HEIGHT"))
        if width <= 0 or height <= 0:
            raise RemoteExecutionError(f"contract reported an empty grid ({width}x{height})")
        return Grid(width=width, height=height)

    async def get_cell(self, x: int, y: int) -> Optional[int]:
        raw = await self._eth_call(contract.cell_call(x, y), "getPixelColor", placeholder=None)
        if raw is None:
            return None
        return contract.decode_cell_color(raw)

    async def get_region(self, x: int, y: int, width: int, height: int) -> Optional[List[List[int]]]:
        raw = await self._eth_call(
            contract.region_call(x, y, width, height), "getCanvasSection", placeholder=None
        )
        if raw is None:
            return None
        return contract.decode_region(raw, width, height)

    async def get_fee(self) -> Optional[int]:
        raw = await self._eth_call(contract.fee_call(), "pixelFee", placeholder=None)
        if raw is None:
            return None
        return contract.decode_uint("pixelFee", raw)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_cell(self, x: int, y: int, color: int, fee_wei: int) -> WriteOutcome:
        account = self.account
        if not account:
            return WriteOutcome(WriteStatus.FAILED, error="wallet_not_connected")

        tx: Dict[str, Any] = {
            "from": account,
            "to": self.config.contract_address,
            "data": contract.paint_call(x, y, color),
            "value": hex(fee_wei),
        }
        try:
            if self._signer is not None:
                reference = await self._send_signed(tx, fee_wei)
            else:
                reference = await self.scheduler.enqueue(
                    RemoteCall(method="eth_sendTransaction", params=[tx], kind=CallKind.WRITE, label="paintPixel")
                )
        except UserRejectedError:
            self._log_event("write_rejected", x=x, y=y)
            return WriteOutcome(WriteStatus.REJECTED_BY_USER, error="user_rejected")
        except InsufficientFundsError:
            self._log_event("write_failed", level=logging.WARNING, x=x, y=y, reason="insufficient_funds")
            return WriteOutcome(WriteStatus.FAILED, error="insufficient_funds")
        except WriteTimeoutError as exc:
            self._log_event("write_unconfirmed", level=logging.WARNING, x=x, y=y, reference=exc.reference)
            return WriteOutcome(WriteStatus.SUBMITTED_UNCONFIRMED, reference=exc.reference, error="timeout")
        except RemoteExecutionError as exc:
            self._log_event("write_failed", level=logging.WARNING, x=x, y=y, reason="reverted", err=str(exc))
            return WriteOutcome(WriteStatus.FAILED, error=f"reverted: {exc}")
        except PixelSyncError as exc:
            self._log_event("write_failed", level=logging.WARNING, x=x, y=y,
                            reason=type(exc).__name__, err=str(exc))
            return WriteOutcome(WriteStatus.FAILED, error=str(exc))

        self._log_event("write_submitted", x=x, y=y, reference=reference)
        return await self._await_receipt(reference)

    async def _send_signed(self, tx: Dict[str, Any], fee_wei: int) -> str:
        nonce = int(await self._read("eth_getTransactionCount", [tx["from"], "pending"]), 16)
        gas_price = int(await self._read("eth_gasPrice", []), 16)
        gas = int(await self._read("eth_estimateGas", [tx]), 16)
        chain_id = self.config.chain_id
        if chain_id is None:
            chain_id = int(await self._read("eth_chainId", []), 16)

        signed = self._signer.sign_transaction({
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": int(math.ceil(gas * GAS_MARGIN)),
            "to": tx["to"],
            "value": fee_wei,
            "data": tx["data"],
            "chainId": chain_id,
        })
        reference = encode_hex(signed.hash)
        returned = await self.scheduler.enqueue(RemoteCall(
            method="eth_sendRawTransaction",
            params=[encode_hex(signed.raw_transaction)],
            kind=CallKind.WRITE,
            label="paintPixel",
            reference=reference,
        ))
        return returned or reference

    async def _await_receipt(self, reference: str) -> WriteOutcome:
        polls = max(1, int(math.ceil(self.config.confirmation_timeout / self.config.receipt_poll_interval)))
        for attempt in range(polls):
            try:
                receipt = await self._read("eth_getTransactionReceipt", [reference], placeholder=None)
            except RemoteError as exc:
                self._log_event("receipt_poll_error", level=logging.DEBUG, reference=reference, err=str(exc))
                receipt = None
            if receipt:
                status = int(receipt.get("status", "0x1"), 16)
                if status == 1:
                    self._log_event("write_confirmed", reference=reference, block=receipt.get("blockNumber"))
                    return WriteOutcome(WriteStatus.CONFIRMED, reference=reference)
                self._log_event("write_failed", level=logging.WARNING, reference=reference, reason="reverted")
                return WriteOutcome(WriteStatus.FAILED, reference=reference, error="reverted")
            if attempt + 1 < polls:
                await self._sleep(self.config.receipt_poll_interval)

        self._log_event("write_unconfirmed", level=logging.WARNING, reference=reference,
                        timeout=self.config.confirmation_timeout)
        return WriteOutcome(WriteStatus.SUBMITTED_UNCONFIRMED, reference=reference, error="timeout")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def open_event_channel(self, on_cell: CellHandler, on_fee: FeeHandler) -> EventChannel:
        if not self.config.ws_url:
            raise ConfigurationError("WebSocket URL not configured")

        def _on_log(entry: Dict[str, Any]) -> None:
            event = contract.decode_log(entry)
            if isinstance(event, CellChangedEvent):
                on_cell(event)
            elif isinstance(event, FeeChangedEvent):
                on_fee(event)

        return await self._channel_factory(
            self.config.ws_url,
            contract.log_filter(self.config.contract_address),
            _on_log,
            log_event=self._log_event,
        )

    async def close(self) -> None:
        # scheduler and transport belong to the session
        return None
