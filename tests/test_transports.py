"""
Tests for the HTTP JSON-RPC transport and the WebSocket log stream channel.
"""
import asyncio
import json

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from pixelsync.errors import (
    ConfigurationError,
    InsufficientFundsError,
    OverloadError,
    RemoteExecutionError,
    RemoteTimeoutError,
    TransientRemoteError,
    UserRejectedError,
)
from pixelsync.infra.rpc_transport import RpcTransport
from pixelsync.infra.ws_transport import LogStreamChannel, _subscribe


def _transport(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RpcTransport("http://node.test", client=client)


def _json_reply(body, status=200):
    def handler(request):
        return httpx.Response(status, json=body)
    return handler


class TestRpcTransport:

    @pytest.mark.asyncio
    async def test_result_returned(self):
        seen = []

        def handler(request):
            payload = json.loads(request.content)
            seen.append(payload)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": "0x2a"})

        transport = _transport(handler)
        assert await transport.request("eth_blockNumber", []) == "0x2a"
        assert seen[0]["method"] == "eth_blockNumber"
        assert seen[0]["params"] == []

    @pytest.mark.asyncio
    async def test_rate_limit_is_overload(self):
        with pytest.raises(OverloadError):
            await _transport(_json_reply({}, status=429)).request("eth_call", [])

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        with pytest.raises(TransientRemoteError):
            await _transport(_json_reply({}, status=503)).request("eth_call", [])

    @pytest.mark.parametrize("error,expected", [
        ({"code": 4001, "message": "User rejected the request."}, UserRejectedError),
        ({"code": -32005, "message": "limit exceeded"}, OverloadError),
        ({"code": -32000, "message": "batch size is too large"}, OverloadError),
        ({"code": 3, "message": "execution reverted"}, RemoteExecutionError),
        ({"code": -32000, "message": "insufficient funds for gas * price + value"}, InsufficientFundsError),
        ({"code": -32000, "message": "header not found"}, TransientRemoteError),
    ])
    @pytest.mark.asyncio
    async def test_rpc_errors_classified(self, error, expected):
        transport = _transport(_json_reply({"jsonrpc": "2.0", "id": 1, "error": error}))
        with pytest.raises(expected):
            await transport.request("eth_call", [])

    @pytest.mark.asyncio
    async def test_read_timeout_may_have_been_delivered(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RemoteTimeoutError):
            await _transport(handler).request("eth_sendTransaction", [])

    @pytest.mark.asyncio
    async def test_connect_timeout_is_plain_transient(self):
        def handler(request):
            raise httpx.ConnectTimeout("no route", request=request)

        with pytest.raises(TransientRemoteError) as info:
            await _transport(handler).request("eth_call", [])
        assert not isinstance(info.value, RemoteTimeoutError)

    @pytest.mark.asyncio
    async def test_missing_result_is_transient(self):
        with pytest.raises(TransientRemoteError):
            await _transport(_json_reply({"jsonrpc": "2.0", "id": 1})).request("eth_call", [])

    def test_bad_url_rejected(self):
        with pytest.raises(ConfigurationError):
            RpcTransport("")
        with pytest.raises(ConfigurationError):
            RpcTransport("ws://node.test")


class FakeWebSocket:
    """Async-iterable socket fed from a queue; None ends the stream."""

    def __init__(self, messages=(), error=None):
        self.queue = asyncio.Queue()
        for message in messages:
            self.queue.put_nowait(message)
        self.error = error
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.queue.get()
        if message is None:
            if self.error is not None:
                raise self.error
            raise StopAsyncIteration
        return message

    async def recv(self):
        return await self.queue.get()

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True
        self.queue.put_nowait(None)


def _notification(subscription, result):
    return json.dumps({"jsonrpc": "2.0", "method": "eth_subscription",
                       "params": {"subscription": subscription, "result": result}})


class TestLogStreamChannel:

    @pytest.mark.asyncio
    async def test_only_matching_notifications_delivered(self):
        ws = FakeWebSocket([
            "not json",
            json.dumps({"jsonrpc": "2.0", "id": 5, "result": True}),
            _notification("0xother", {"topics": []}),
            _notification("0xsub", {"topics": ["0x01"]}),
            None,
        ])
        received = []
        channel = LogStreamChannel(ws, "0xsub", received.append)
        await channel.wait_closed()
        assert received == [{"topics": ["0x01"]}]

    @pytest.mark.asyncio
    async def test_drop_raises_transient(self):
        ws = FakeWebSocket([None], error=ConnectionClosedError(None, None))
        channel = LogStreamChannel(ws, "0xsub", lambda entry: None)
        with pytest.raises(TransientRemoteError):
            await channel.wait_closed()

    @pytest.mark.asyncio
    async def test_handler_errors_are_logged_not_raised(self):
        logged = []

        def boom(entry):
            raise ValueError("bad log")

        ws = FakeWebSocket([_notification("0xsub", {"topics": []}), None])
        channel = LogStreamChannel(ws, "0xsub", boom,
                                   log_event=lambda event, level=None, **kw: logged.append(event))
        await channel.wait_closed()
        assert logged == ["log_handler_error"]

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        ws = FakeWebSocket()
        channel = LogStreamChannel(ws, "0xsub", lambda entry: None)
        await channel.close()
        await channel.wait_closed()
        assert ws.sent == [{"jsonrpc": "2.0", "id": 2, "method": "eth_unsubscribe", "params": ["0xsub"]}]
        assert ws.closed

    @pytest.mark.asyncio
    async def test_subscribe_waits_for_its_reply(self):
        ws = FakeWebSocket([
            _notification("0xstale", {}),
            json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0xabc"}),
        ])
        assert await _subscribe(ws, {"address": "0x1"}) == "0xabc"
        assert ws.sent[0]["method"] == "eth_subscribe"
        assert ws.sent[0]["params"] == ["logs", {"address": "0x1"}]

    @pytest.mark.asyncio
    async def test_subscribe_error_classified(self):
        ws = FakeWebSocket([json.dumps({"jsonrpc": "2.0", "id": 1,
                                        "error": {"code": -32005, "message": "rate limit"}})])
        with pytest.raises(OverloadError):
            await _subscribe(ws, {})

    @pytest.mark.asyncio
    async def test_open_rejects_http_url(self):
        with pytest.raises(ConfigurationError):
            await LogStreamChannel.open("http://node.test", {}, lambda entry: None)
