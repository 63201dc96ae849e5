# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

import pytest

from loralab.training.metrics.core import MetricsTracker


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _step(tracker: MetricsTracker, clock: FakeClock, seconds: float, tokens: int, step: int):
    tracker.begin_step()
    clock.now += seconds
    return tracker.end_step(step=step, loss=2.0, learning_rate=1e-3, gradient_norm=0.5, tokens=tokens)


class TestMetricsTracker:
    def test_first_step_throughput_and_eta(self) -> None:
        clock = FakeClock()
        tracker = MetricsTracker(total_steps=10, clock=clock)
        metrics = _step(tracker, clock, seconds=2.0, tokens=100, step=1)
        assert metrics.tokens_per_second == pytest.approx(50.0)
        assert metrics.eta_seconds == pytest.approx(18.0)
        assert metrics.tokens_seen == 100

    def test_throughput_is_smoothed(self) -> None:
        clock = FakeClock()
        tracker = MetricsTracker(total_steps=10, smoothing=0.3, clock=clock)
        _step(tracker, clock, seconds=2.0, tokens=100, step=1)
        metrics = _step(tracker, clock, seconds=1.0, tokens=100, step=2)
        assert metrics.tokens_per_second == pytest.approx(0.3 * 100 + 0.7 * 50)
        assert metrics.tokens_seen == 200
        assert tracker.steps_done == 2

    def test_no_eta_without_run_length(self) -> None:
        clock = FakeClock()
        tracker = MetricsTracker(clock=clock)
        assert _step(tracker, clock, seconds=1.0, tokens=10, step=1).eta_seconds is None

    def test_eta_reaches_zero(self) -> None:
        clock = FakeClock()
        tracker = MetricsTracker(total_steps=1, clock=clock)
        assert _step(tracker, clock, seconds=1.0, tokens=10, step=1).eta_seconds == 0.0

    def test_report_rate_limit(self) -> None:
        clock = FakeClock()
        tracker = MetricsTracker(progress_interval=1.0, clock=clock)
        assert tracker.should_report()
        clock.now += 0.5
        assert not tracker.should_report()
        assert tracker.should_report(final=True)
        clock.now += 1.0
        assert tracker.should_report()

    def test_zero_interval_reports_every_step(self) -> None:
        tracker = MetricsTracker(progress_interval=0.0, clock=FakeClock())
        assert all(tracker.should_report() for _ in range(5))
