"""
Structured logging setup for the sync engine.

- Console: rich handler, human readable
- File: compact JSON lines written from a background thread so the event
  loop never blocks on disk
- Throttling for events that can fire in bursts (retries, reconnects)
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set, Union

from rich.logging import RichHandler

LOGGER_NAME = "pixelsync"

# Events that repeat quickly while the remote is unhealthy
DEFAULT_THROTTLED_EVENTS: Set[str] = {
    "scheduler_retry",
    "scheduler_read_timeout",
    "chunk_fetch_error",
    "subscription_reconnect_failed",
    "known_bad_short_circuit",
}


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler: records are queued and written by a daemon thread.

    Drops (and counts) records when the queue is full instead of stalling
    the caller.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = threading.Event()
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="pixelsync-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown.is_set():
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown.is_set() or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a throttled event through, then suppresses
    repeats with the same key for ``cooldown_sec``.

    The key is the event name plus its ``key`` field when present (a chunk
    origin, a method name), so distinct chunks are not folded together.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events if throttled_events is not None else set(DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.monotonic()
        key = f"{event}:{data.get('key', '')}"
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def build_logger(
    name: str = LOGGER_NAME,
    level: Union[int, str] = logging.INFO,
    file_path: Optional[str] = "pixelsync.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the process logger. Idempotent: a second call only adjusts levels.

    Args:
        name: Logger name
        level: Minimum log level (int or name)
        file_path: JSON log file (None disables file logging)
        async_file: Write the file from a background thread
        throttle_warnings: Suppress bursts of repetitive events on the console
    """
    level = _coerce_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "chunk_merged", key="20,40", cells=400)
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))


def event_logger(logger: Optional[logging.Logger] = None, **context):
    """
    Build a ``log_event(event, **fields)`` callback bound to ``logger``.

    Components take such a callback so tests can capture events without
    touching logging configuration. ``level`` may be passed per call.
    """
    target = logger or logging.getLogger(LOGGER_NAME)

    def _log(event: str, level: int = logging.INFO, **data) -> None:
        log_event(target, event, level=level, **context, **data)

    return _log
