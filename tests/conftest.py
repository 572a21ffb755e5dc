"""
Pytest configuration and fixtures.
Adds src/ to Python path so tests can import pixelsync without installing it.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add the repo root's src/ directory to sys.path
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from pixelsync.config.settings import Settings  # noqa: E402


class SleepRecorder:
    """Stand-in for asyncio.sleep: records delays and yields once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class EventRecorder:
    """Collects log_event callback invocations."""

    def __init__(self):
        self.events = []

    def __call__(self, event, level=None, **data):
        self.events.append((event, data))

    def names(self):
        return [name for name, _ in self.events]


class FakeTransport:
    """
    Scripted transport. ``responses`` maps a method (or eth_call selector)
    to a list of results/exceptions consumed in order; the last entry
    repeats. Callables are invoked with (method, params).
    """

    def __init__(self, responses=None, default=None):
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.default = default
        self.calls = []

    @staticmethod
    def key_for(method, params):
        if method == "eth_call" and params and isinstance(params[0], dict):
            return str(params[0].get("data", ""))[:10]
        return method

    async def request(self, method, params):
        self.calls.append((method, params))
        key = self.key_for(method, params)
        script = self.responses.get(key)
        if script is None:
            script = self.responses.get(method)
        if not script:
            result = self.default
        elif len(script) > 1:
            result = script.pop(0)
        else:
            result = script[0]
        if callable(result) and not isinstance(result, type):
            result = result(method, params)
            if asyncio.iscoroutine(result):
                result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self):
        pass


def make_settings(**overrides):
    values = dict(
        chain_id=31337,
        rpc_url="http://localhost:8545",
        ws_url="ws://localhost:8545",
        contract_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        private_key=None,
        account_address=None,
        chunk_size=20,
        max_region_size=10,
        placeholder_color=0xEFEFEF,
        surface_width=1280,
        surface_height=800,
        min_scale=1.0,
        max_scale=40.0,
        refresh_interval=1.0,
        cache_max_chunks=0,
        max_concurrency=1,
        inter_call_delay=0.0,
        call_timeout=1.0,
        overload_cooldown=0.5,
        overload_delay_step=0.05,
        reconnect_base_delay=2.0,
        reconnect_max_attempts=5,
        degrade_threshold=3,
        degrade_backoff_base=2.0,
        confirmation_timeout=3.0,
        receipt_poll_interval=1.0,
        eth_price_usd=2500.0,
        log_level="INFO",
        log_file=None,
        metrics_port=0,
        known_bad_selectors={},
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def settings_factory():
    return make_settings
