"""
Entry point: follow the grid from the command line.

Loads settings, starts a session on the default viewport, subscribes to
changes and logs them, and reports a status line periodically until
SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys

from pixelsync.cache.viewport import Viewport
from pixelsync.config.settings import Settings
from pixelsync.core.colors import format_hex_color
from pixelsync.errors import ConfigurationError
from pixelsync.infra.logging_cfg import build_logger, event_logger
from pixelsync.models import CellChangedEvent, ModeChange
from pixelsync.monitoring.metrics import SyncMetrics, start_metrics_server
from pixelsync.session import GridSession

STATUS_INTERVAL_SEC = 30.0


async def main() -> None:
    cfg = Settings.load()
    log = build_logger("pixelsync", level=cfg.log_level, file_path=cfg.log_file)

    metrics = SyncMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    session = GridSession(cfg, metrics=metrics, log_event=event_logger(log))

    def _on_mode(change: ModeChange) -> None:
        log.warning(json.dumps({"event": "advisory", "mode": change.mode.name, "reason": change.reason}))

    def _on_cell(event: CellChangedEvent) -> None:
        log.info(json.dumps({
            "event": "cell_changed",
            "x": event.x,
            "y": event.y,
            "color": format_hex_color(event.color),
            "actor": event.actor,
        }))

    session.add_mode_listener(_on_mode)
    grid = await session.start()
    log.info(json.dumps({"event": "startup", "width": grid.width, "height": grid.height,
                         "mode": session.mode.name, "fee_eth": session.fee.eth}))
    session.ensure_viewport_loaded(Viewport())
    session.subscribe(on_cell_changed=_on_cell)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=STATUS_INTERVAL_SEC)
            except asyncio.TimeoutError:
                log.info(json.dumps({"event": "status", **session.status()}, default=str))
    finally:
        log.info("Shutting down...")
        await session.close()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
