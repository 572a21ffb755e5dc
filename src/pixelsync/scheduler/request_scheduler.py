"""
RequestScheduler: serializes, paces and retries calls to the remote endpoint.

Sits in front of a pluggable transport (anything with
``async request(method, params)``). All queue and throttling state is owned
by the instance; one scheduler is built per session and passed explicitly
to the sources that need it.

Behaviour:
    - FIFO queue drained by a single pump task in batches of at most K calls
      (K starts at ``max_concurrency``), batches separated by an inter-call
      delay.
    - Known-bad signatures resolve with a fixed fallback without touching the
      network.
    - Per-call timeout, ours or the transport's: reads with a placeholder
      resolve with it, reads without one are retried once then raise,
      writes raise WriteTimeoutError and are never resubmitted.
    - Overload: K drops to 1 for the rest of the session, the delay grows,
      and the read is retried once after a cooldown, whatever transient
      retries it already had.
    - Other transient read errors: one immediate retry. Structural errors,
      user rejections and configuration errors are never retried.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, TYPE_CHECKING

from pixelsync.errors import (
    ConfigurationError,
    OverloadError,
    PixelSyncError,
    RemoteTimeoutError,
    SchedulerClosedError,
    TransientRemoteError,
    UserRejectedError,
    WriteTimeoutError,
)
from pixelsync.models import CallKind, PendingRequest, RemoteCall

if TYPE_CHECKING:
    from pixelsync.monitoring.metrics import SyncMetrics

log = logging.getLogger("pixelsync")

# ENS probes the node always rejects for this contract; answering them
# locally keeps them off the metered endpoint.
DEFAULT_KNOWN_BAD: Dict[str, Any] = {
    "0x01ffc9a7": None,  # supportsInterface(bytes4)
    "0x9061b923": None,  # resolve(bytes,bytes)
    "0x3b3b57de": None,  # addr(bytes32)
}

MAX_READ_ATTEMPTS = 2


@dataclass
class SchedulerConfig:
    """Configuration for RequestScheduler."""
    max_concurrency: int = 1
    inter_call_delay: float = 0.05
    call_timeout: float = 10.0
    overload_cooldown: float = 0.5
    overload_delay_step: float = 0.05
    known_bad: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_KNOWN_BAD))
    log_event_callback: Optional[Callable[..., None]] = None


class RequestScheduler:
    """
    Throttled front for a remote transport.

    Usage:
        scheduler = RequestScheduler(RpcTransport(url), SchedulerConfig())
        result = await scheduler.enqueue(RemoteCall("eth_blockNumber"))
        ...
        await scheduler.close()
    """

    def __init__(
        self,
        transport: Any,
        config: Optional[SchedulerConfig] = None,
        metrics: Optional["SyncMetrics"] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.config = config or SchedulerConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._log_event = self.config.log_event_callback or self._default_log

        self._known_bad: Dict[str, Any] = {k.lower(): v for k, v in self.config.known_bad.items()}
        self._queue: Deque[PendingRequest] = deque()
        self._dispatched: List[PendingRequest] = []
        self._pump_task: Optional[asyncio.Task] = None
        self._closed = False

        self._concurrency = max(1, self.config.max_concurrency)
        self._delay = max(0.0, self.config.inter_call_delay)
        self._overloaded = False
        self._last_dispatch: float = 0.0
        self._in_flight = 0

        self._stats = {
            "enqueued": 0,
            "succeeded": 0,
            "failed": 0,
            "short_circuited": 0,
            "placeholders": 0,
            "retries": 0,
            "overloads": 0,
        }
        self._update_gauges()

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def inter_call_delay(self) -> float:
        return self._delay

    @property
    def overloaded(self) -> bool:
        return self._overloaded

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    def add_known_bad(self, signature: str, fallback: Any = None) -> None:
        self._known_bad[signature.lower()] = fallback

    async def enqueue(self, call: RemoteCall) -> Any:
        """
        Run ``call`` through the queue and return its result.

        Cancelling the awaiting task withdraws the call if it has not been
        dispatched yet.
        """
        if self._closed:
            raise SchedulerClosedError("scheduler is closed")

        signature = call.signature
        if signature.lower() in self._known_bad:
            self._stats["short_circuited"] += 1
            self._count(call, "short_circuit")
            self._log_event("known_bad_short_circuit", level=logging.DEBUG,
                            key=signature, method=call.method, label=call.label)
            return copy.deepcopy(self._known_bad[signature.lower()])

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        req = PendingRequest(call=call, future=fut)
        self._queue.append(req)
        self._stats["enqueued"] += 1
        self._update_gauges()
        self._ensure_pump()
        try:
            return await fut
        except asyncio.CancelledError:
            try:
                self._queue.remove(req)
            except ValueError:
                pass
            self._update_gauges()
            raise

    async def close(self) -> None:
        """Stop the pump and reject everything still queued."""
        self._closed = True
        while self._queue:
            req = self._queue.popleft()
            if not req.future.done():
                req.future.set_exception(SchedulerClosedError("scheduler closed before dispatch"))
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
            self._pump_task = None
        for req in self._dispatched:
            self._settle(req, exc=SchedulerClosedError("scheduler closed while call was in flight"))
        self._dispatched = []
        self._update_gauges()

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_depth": len(self._queue),
            "in_flight": self._in_flight,
            "concurrency": self._concurrency,
            "inter_call_delay": round(self._delay, 4),
            "overloaded": self._overloaded,
        }

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            while self._queue:
                batch = []
                while self._queue and len(batch) < self._concurrency:
                    req = self._queue.popleft()
                    if req.future.done():
                        # withdrawn by its owner
                        continue
                    batch.append(req)
                self._update_gauges()
                if not batch:
                    continue
                self._dispatched = batch
                await self._pace()
                self._in_flight += len(batch)
                try:
                    await asyncio.gather(*(self._execute(req) for req in batch))
                finally:
                    self._in_flight -= len(batch)
                    self._last_dispatch = time.monotonic()
                self._dispatched = []
        finally:
            self._pump_task = None

    async def _pace(self) -> None:
        if self._delay <= 0 or self._last_dispatch == 0.0:
            return
        wait = self._delay - (time.monotonic() - self._last_dispatch)
        if wait > 0:
            await self._sleep(wait)

    async def _execute(self, req: PendingRequest) -> None:
        call = req.call
        is_read = call.kind is CallKind.READ
        while True:
            if req.future.done():
                # withdrawn while waiting for its slot
                return
            req.attempt += 1
            try:
                result = await asyncio.wait_for(
                    self.transport.request(call.method, call.params),
                    timeout=self.config.call_timeout,
                )
            except asyncio.TimeoutError:
                if self._handle_timeout(req):
                    continue
                return
            except OverloadError as exc:
                self._apply_overload(call)
                # one retry per read after the cooldown, independent of transient retries
                if is_read and not req.overload_retried:
                    req.overload_retried = True
                    self._stats["retries"] += 1
                    await self._sleep(self.config.overload_cooldown)
                    continue
                self._fail(req, exc)
                return
            except RemoteTimeoutError as exc:
                # transport-level timeout; the request may have been delivered
                if not is_read:
                    self._fail(req, WriteTimeoutError(
                        f"{call.label or call.method} timed out after sending",
                        reference=call.reference, original_exception=exc))
                    return
                if self._handle_timeout(req, exc):
                    continue
                return
            except TransientRemoteError as exc:
                if is_read and self._retry_read(req, exc):
                    continue
                if is_read:
                    return
                self._fail(req, exc)
                return
            except (UserRejectedError, ConfigurationError, PixelSyncError) as exc:
                self._fail(req, exc)
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_read and self._retry_read(req, exc):
                    continue
                if not is_read:
                    self._fail(req, exc)
                return
            self._succeed(req, result)
            return

    # ------------------------------------------------------------------
    # Settlement helpers
    # ------------------------------------------------------------------

    def _handle_timeout(self, req: PendingRequest, exc: Optional[RemoteTimeoutError] = None) -> bool:
        """
        Settle a timed-out attempt, whether the scheduler's own deadline fired
        or the transport gave up first. Returns True when the read should be
        retried.
        """
        call = req.call
        name = call.label or call.method
        if call.kind is CallKind.WRITE:
            self._log_event("scheduler_write_timeout", level=logging.WARNING,
                            key=name, reference=call.reference)
            self._fail(req, WriteTimeoutError(
                f"{name} not confirmed within {self.config.call_timeout}s",
                reference=call.reference))
            return False
        if call.has_placeholder:
            self._stats["placeholders"] += 1
            self._count(call, "placeholder")
            self._log_event("scheduler_read_timeout", level=logging.WARNING,
                            key=name, attempt=req.attempt, placeholder=True)
            self._settle(req, result=call.placeholder)
            return False
        return self._retry_read(req, exc or RemoteTimeoutError(
            f"{name} timed out after {self.config.call_timeout}s"))

    def _retry_read(self, req: PendingRequest, exc: BaseException) -> bool:
        name = req.call.label or req.call.method
        if req.attempt < MAX_READ_ATTEMPTS:
            self._stats["retries"] += 1
            self._log_event("scheduler_retry", level=logging.WARNING,
                            key=name, attempt=req.attempt, err=str(exc))
            return True
        self._fail(req, exc)
        return False

    def _apply_overload(self, call: RemoteCall) -> None:
        self._stats["overloads"] += 1
        previous = self._concurrency
        self._concurrency = 1
        self._delay += self.config.overload_delay_step
        self._overloaded = True
        self._log_event(
            "scheduler_overload",
            level=logging.WARNING,
            key=call.label or call.method,
            concurrency_before=previous,
            inter_call_delay=round(self._delay, 4),
        )
        self._update_gauges()

    def _succeed(self, req: PendingRequest, result: Any) -> None:
        self._stats["succeeded"] += 1
        self._count(req.call, "ok")
        self._settle(req, result=result)

    def _fail(self, req: PendingRequest, exc: BaseException) -> None:
        self._stats["failed"] += 1
        self._count(req.call, type(exc).__name__)
        self._log_event(
            "scheduler_call_failed",
            level=logging.DEBUG,
            key=req.call.label or req.call.method,
            attempt=req.attempt,
            err_type=type(exc).__name__,
            err=str(exc),
        )
        self._settle(req, exc=exc)

    @staticmethod
    def _settle(req: PendingRequest, result: Any = None, exc: Optional[BaseException] = None) -> None:
        if req.future.done():
            return
        if exc is not None:
            req.future.set_exception(exc)
        else:
            req.future.set_result(result)

    def _count(self, call: RemoteCall, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.scheduler_calls.labels(method=call.label or call.method, outcome=outcome).inc()

    def _update_gauges(self) -> None:
        if self._metrics is not None:
            self._metrics.scheduler_queue_depth.set(len(self._queue))
            self._metrics.scheduler_concurrency.set(self._concurrency)
            self._metrics.scheduler_delay_sec.set(self._delay)
