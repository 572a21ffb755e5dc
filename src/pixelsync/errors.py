"""
Typed error taxonomy for the sync engine.

Errors are classified where they originate (the transport or the scheduler),
so callers branch on the exception type instead of on message text:

    PixelSyncError
    ├── RemoteError
    │   ├── TransientRemoteError
    │   │   └── RemoteTimeoutError
    │   ├── OverloadError
    │   ├── RemoteExecutionError
    │   └── InsufficientFundsError
    ├── WriteTimeoutError
    ├── UserRejectedError
    ├── ConfigurationError
    └── SchedulerClosedError
"""

from __future__ import annotations

from typing import Any, Optional


class PixelSyncError(Exception):
    """Base error."""

    def __init__(self, message: str, original_exception: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.original_exception = original_exception


class RemoteError(PixelSyncError):
    """The remote endpoint failed to answer a call."""

    def __init__(
        self,
        message: str,
        original_exception: Optional[BaseException] = None,
        code: Optional[int] = None,
        data: Any = None,
    ) -> None:
        super().__init__(message, original_exception)
        self.code = code
        self.data = data


class TransientRemoteError(RemoteError):
    """Network blip or provider hiccup; worth one retry on reads."""
    pass


class RemoteTimeoutError(TransientRemoteError):
    """A read did not settle within the per-call timeout."""
    pass


class OverloadError(RemoteError):
    """Provider signalled rate limiting or an oversized request group."""
    pass


class RemoteExecutionError(RemoteError):
    """The call itself is invalid (revert, bad selector). Never retried."""
    pass


class InsufficientFundsError(RemoteError):
    """The sending account cannot cover fee plus gas."""
    pass


class WriteTimeoutError(PixelSyncError):
    """
    A state-changing call timed out after it may have reached the remote.

    The write may still land, so it must not be resubmitted. ``reference``
    carries the transaction hash when it is known before sending.
    """

    def __init__(self, message: str, reference: Optional[str] = None,
                 original_exception: Optional[BaseException] = None) -> None:
        super().__init__(message, original_exception)
        self.reference = reference


class UserRejectedError(PixelSyncError):
    """The signer declined the request. Not a network failure."""
    pass


class ConfigurationError(PixelSyncError):
    """Missing or malformed remote address, key, or setting. Fatal, not retried."""
    pass


class SchedulerClosedError(PixelSyncError):
    """The scheduler was closed before the call could run."""
    pass


OVERLOAD_MARKERS = (
    "batch size is too large",
    "request group too large",
    "rate limit",
    "too many requests",
    "limit exceeded",
)


def classify_rpc_error(code: Optional[int], message: str, data: Any = None) -> RemoteError | UserRejectedError:
    """
    Map a JSON-RPC error object to a typed error.

    Codes follow EIP-1193/EIP-1474: 4001 user rejected, -32005 limit exceeded,
    3 / -32015 execution reverted.
    """
    text = (message or "").lower()
    if code == 4001 or "user rejected" in text or "user denied" in text:
        return UserRejectedError(message or "user rejected request")
    if code in (-32005, 429) or any(marker in text for marker in OVERLOAD_MARKERS):
        return OverloadError(message, code=code, data=data)
    if "insufficient funds" in text:
        return InsufficientFundsError(message, code=code, data=data)
    if code in (3, -32015) or "revert" in text or "invalid opcode" in text:
        return RemoteExecutionError(message, code=code, data=data)
    return TransientRemoteError(message, code=code, data=data)
