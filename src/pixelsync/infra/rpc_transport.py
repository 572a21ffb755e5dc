"""
Minimal async JSON-RPC client for the ledger's HTTP endpoint using HTTP/2.

Errors are classified here, at the point of origin, into the typed taxonomy
in ``pixelsync.errors``; nothing above this layer inspects message strings.
"""

from __future__ import annotations

import itertools
from typing import Any, Optional

import httpx

from pixelsync.errors import (
    ConfigurationError,
    OverloadError,
    RemoteTimeoutError,
    TransientRemoteError,
    classify_rpc_error,
)


class RpcTransport:
    """
    Pluggable transport used by the scheduler: ``await request(method, params)``.

    If a shared client is passed in it is not closed by ``close()``.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        if not url or not url.strip():
            raise ConfigurationError("RPC URL is empty")
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(f"RPC URL must be http(s): {url}")
        self.url = url.strip()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=True, timeout=timeout)
            self._owns_client = True
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def request(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self.client.post(self.url, json=payload)
        except httpx.ConnectTimeout as exc:
            raise TransientRemoteError(f"{method} connect timed out", exc)
        except httpx.TimeoutException as exc:
            # request may have been delivered
            raise RemoteTimeoutError(f"{method} timed out at transport", exc)
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{method} transport error: {exc}", exc)

        if resp.status_code == 429:
            raise OverloadError(f"{method} rate limited (HTTP 429)", code=429)
        if resp.status_code >= 500:
            raise TransientRemoteError(f"{method} HTTP {resp.status_code}", code=resp.status_code)
        if resp.status_code >= 400:
            # Many providers still return a JSON-RPC error body on 4xx
            body = _safe_json(resp)
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                raise _rpc_error(body["error"])
            raise TransientRemoteError(f"{method} HTTP {resp.status_code}", code=resp.status_code)

        body = _safe_json(resp)
        if isinstance(body, list):
            # Batched reply to a single request: provider split it; take ours
            body = body[0] if body else {}
        if not isinstance(body, dict):
            raise TransientRemoteError(f"{method} returned malformed body")
        if isinstance(body.get("error"), dict):
            raise _rpc_error(body["error"])
        if "result" not in body:
            raise TransientRemoteError(f"{method} response missing result")
        return body["result"]


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _rpc_error(err: dict) -> Exception:
    code = err.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    return classify_rpc_error(code, str(err.get("message", "")), err.get("data"))
