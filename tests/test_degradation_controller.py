"""
Tests for DegradationController and FailureStreak.
"""
import pytest

from conftest import SleepRecorder
from pixelsync.degradation.controller import DegradationConfig, DegradationController
from pixelsync.degradation.failure_streak import FailureStreak, FailureStreakConfig
from pixelsync.errors import (
    ConfigurationError,
    PixelSyncError,
    RemoteTimeoutError,
    UserRejectedError,
)
from pixelsync.models import Grid, SourceMode, WriteStatus
from pixelsync.monitoring.metrics import SyncMetrics
from pixelsync.remote.synthetic_source import SyntheticGridSource, checkerboard_color


class FlakyLiveSource:
    """get_dimensions fails with the scripted errors, then answers."""

    def __init__(self, errors, grid=Grid(500, 300)):
        self.errors = list(errors)
        self.grid = grid
        self.calls = 0
        self.closed = False

    async def get_dimensions(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.grid

    async def get_region(self, x, y, width, height):
        return [[0x123456] * width for _ in range(height)]

    async def close(self):
        self.closed = True


def _controller(live, sleep=None, **kw):
    return DegradationController(
        lambda: live,
        synthetic_factory=lambda: SyntheticGridSource(width=100, height=100, event_delay=0),
        config=DegradationConfig(threshold=3, backoff_base=2.0),
        sleep=sleep or SleepRecorder(),
        **kw,
    )


class TestFailureStreak:

    def test_trips_at_threshold_and_latches(self):
        streak = FailureStreak(FailureStreakConfig(threshold=3))
        err = RemoteTimeoutError("slow")
        assert streak.record_failure("get_dimensions", err) is False
        assert streak.record_failure("get_dimensions", err) is False
        assert streak.record_failure("get_dimensions", err) is True
        assert streak.is_tripped
        # latched: no second trip, success does not reset
        assert streak.record_failure("get_dimensions", err) is False
        streak.record_success()
        assert streak.is_tripped
        assert streak.get_state()["streak"] == 3

    def test_success_resets_count(self):
        streak = FailureStreak(FailureStreakConfig(threshold=3))
        streak.record_failure("get_dimensions", RemoteTimeoutError("slow"))
        streak.record_failure("get_dimensions", RemoteTimeoutError("slow"))
        streak.record_success()
        assert streak.streak == 0
        assert streak.record_failure("get_dimensions", RemoteTimeoutError("slow")) is False

    def test_force_trip_calls_hook(self):
        reasons = []
        streak = FailureStreak(FailureStreakConfig(), on_trip=reasons.append)
        assert streak.force_trip("bad address")
        assert streak.trip_reason == "bad address"
        assert reasons == ["bad address"]


class TestStart:

    @pytest.mark.asyncio
    async def test_three_failures_switch_to_synthetic(self):
        sleep = SleepRecorder()
        live = FlakyLiveSource([RemoteTimeoutError("slow")] * 3)
        metrics = SyncMetrics()
        controller = _controller(live, sleep=sleep, metrics=metrics)
        changes = []
        controller.add_mode_listener(changes.append)

        grid = await controller.start()

        assert grid == Grid(100, 100)
        assert controller.mode is SourceMode.DEGRADED
        assert controller.is_degraded
        assert isinstance(controller.active_source, SyntheticGridSource)
        assert sleep.delays == [2.0, 4.0]
        assert live.calls == 3
        assert live.closed
        assert len(changes) == 1
        assert changes[0].mode is SourceMode.DEGRADED
        assert "3 consecutive failures" in changes[0].reason
        assert metrics.get_registry().get_sample_value("pixelsync_degraded") == 1

        colors = await controller.get_region(0, 0, 2, 1)
        assert colors == [[checkerboard_color(0, 0), checkerboard_color(1, 0)]]

    @pytest.mark.asyncio
    async def test_recovery_before_threshold_stays_live(self):
        sleep = SleepRecorder()
        live = FlakyLiveSource([RemoteTimeoutError("slow")] * 2)
        controller = _controller(live, sleep=sleep)
        changes = []
        controller.add_mode_listener(changes.append)

        grid = await controller.start()

        assert grid == Grid(500, 300)
        assert controller.mode is SourceMode.LIVE
        assert controller.active_source is live
        assert controller.attempts == 3
        assert changes == []
        assert controller.failure_streak.streak == 0

    @pytest.mark.asyncio
    async def test_configuration_error_from_factory_degrades_immediately(self):
        sleep = SleepRecorder()

        def broken_factory():
            raise ConfigurationError("contract address missing")

        controller = DegradationController(
            broken_factory,
            synthetic_factory=lambda: SyntheticGridSource(width=100, height=100),
            sleep=sleep,
        )
        await controller.start()

        assert controller.is_degraded
        assert "contract address missing" in controller.reason
        assert sleep.delays == []
        assert controller.failure_streak.is_tripped

    @pytest.mark.asyncio
    async def test_configuration_error_from_read_degrades_immediately(self):
        live = FlakyLiveSource([ConfigurationError("bad selector table")])
        controller = _controller(live)
        await controller.start()
        assert controller.is_degraded
        assert live.calls == 1

    @pytest.mark.asyncio
    async def test_user_rejection_is_not_counted(self):
        live = FlakyLiveSource([UserRejectedError("denied")])
        controller = _controller(live)
        with pytest.raises(UserRejectedError):
            await controller.start()
        assert controller.failure_streak.streak == 0
        assert controller.mode is SourceMode.LIVE

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        live = FlakyLiveSource([])
        controller = _controller(live)
        await controller.start()
        await controller.start()
        assert live.calls == 1

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_degradation(self):
        live = FlakyLiveSource([RemoteTimeoutError("slow")] * 3)
        controller = _controller(live)

        def bad_listener(change):
            raise RuntimeError("ui crashed")

        removed = []
        controller.add_mode_listener(bad_listener)
        controller.add_mode_listener(removed.append)
        controller.remove_mode_listener(removed.append)
        await controller.start()
        assert controller.is_degraded
        assert removed == []


class TestDelegation:

    @pytest.mark.asyncio
    async def test_calls_before_start_raise(self):
        controller = _controller(FlakyLiveSource([]))
        with pytest.raises(PixelSyncError):
            await controller.get_cell(0, 0)

    @pytest.mark.asyncio
    async def test_degraded_writes_are_confirmed_locally(self):
        live = FlakyLiveSource([RemoteTimeoutError("slow")] * 3)
        controller = _controller(live)
        await controller.start()

        outcome = await controller.set_cell(3, 4, 0xFF0000, 10 ** 15)
        assert outcome.status is WriteStatus.CONFIRMED
        assert await controller.get_cell(3, 4) == 0xFF0000
        await controller.close()

    def test_report_subscription_abandoned_keeps_mode(self):
        controller = _controller(FlakyLiveSource([]))
        controller.report_subscription_abandoned("retries exhausted")
        assert controller.push_available is False
        assert controller.mode is SourceMode.LIVE
