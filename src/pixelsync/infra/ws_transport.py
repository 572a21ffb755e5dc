"""
WebSocket log stream: one ``eth_subscribe("logs", filter)`` per connection.

The channel owns its socket and a reader task. ``wait_closed()`` returns
when the server closes cleanly and raises TransientRemoteError when the
connection drops; the subscription manager treats both as a disconnect.
Reconnecting is the manager's job, never the channel's.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from pixelsync.errors import ConfigurationError, TransientRemoteError, classify_rpc_error

log = logging.getLogger("pixelsync")

LogHandler = Callable[[Dict[str, Any]], None]


class LogStreamChannel:
    def __init__(self, ws: Any, subscription_id: str, on_log: LogHandler,
                 log_event: Optional[Callable[..., None]] = None) -> None:
        self._ws = ws
        self.subscription_id = subscription_id
        self._on_log = on_log
        self._log_event = log_event or self._default_log
        self._closing = False
        self._error: Optional[BaseException] = None
        self._reader = asyncio.create_task(self._read_loop())

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @classmethod
    async def open(
        cls,
        url: str,
        log_filter: Dict[str, Any],
        on_log: LogHandler,
        connect_timeout: float = 10.0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> "LogStreamChannel":
        if not url.startswith(("ws://", "wss://")):
            raise ConfigurationError(f"WebSocket URL must be ws(s): {url}")
        try:
            ws = await asyncio.wait_for(
                websockets.connect(url, ping_interval=20, close_timeout=5),
                timeout=connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientRemoteError(f"websocket connect to {url} timed out", exc)
        except (OSError, WebSocketException) as exc:
            raise TransientRemoteError(f"websocket connect to {url} failed: {exc}", exc)

        try:
            subscription_id = await asyncio.wait_for(
                _subscribe(ws, log_filter), timeout=connect_timeout
            )
        except BaseException as exc:
            await ws.close()
            if isinstance(exc, asyncio.TimeoutError):
                raise TransientRemoteError("eth_subscribe timed out", exc)
            if isinstance(exc, ConnectionClosed):
                raise TransientRemoteError("connection closed during eth_subscribe", exc)
            raise
        return cls(ws, subscription_id, on_log, log_event)

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (TypeError, json.JSONDecodeError):
                    continue
                if not isinstance(data, dict) or data.get("method") != "eth_subscription":
                    continue
                params = data.get("params") or {}
                if params.get("subscription") != self.subscription_id:
                    continue
                result = params.get("result")
                if not isinstance(result, dict):
                    continue
                try:
                    self._on_log(result)
                except Exception as exc:
                    self._log_event("log_handler_error", level=logging.ERROR, err=str(exc))
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            if not self._closing:
                self._error = exc

    async def wait_closed(self) -> None:
        # asyncio.wait neither cancels the reader nor raises if it was cancelled
        await asyncio.wait([self._reader])
        if self._error is not None and not self._closing:
            raise TransientRemoteError(f"log stream dropped: {self._error}", self._error)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0", "id": 2, "method": "eth_unsubscribe",
                "params": [self.subscription_id],
            }))
        except (ConnectionClosed, OSError):
            pass
        await self._ws.close()
        self._reader.cancel()
        await asyncio.gather(self._reader, return_exceptions=True)


async def _subscribe(ws: Any, log_filter: Dict[str, Any]) -> str:
    await ws.send(json.dumps({
        "jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["logs", log_filter],
    }))
    while True:
        data = json.loads(await ws.recv())
        if not isinstance(data, dict) or data.get("id") != 1:
            continue
        if isinstance(data.get("error"), dict):
            err = data["error"]
            raise classify_rpc_error(err.get("code"), str(err.get("message", "")), err.get("data"))
        return str(data["result"])
