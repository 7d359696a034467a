#!/usr/bin/env python3
"""
test_driver.py - Fixed-step scheduling and the simulated clock

Run with: pytest tests/test_driver.py -v
"""

import pytest

from conftest import start_session

from respira.config import ClockConfig
from respira.driver import FixedStepDriver, SimulatedClock, empty_observation
from respira.events import Interruption, Resume, Tick
from respira.state import RuntimeStatus


def tick_count(kernel):
    return sum(1 for e in kernel.get_log_buffer() if isinstance(e, Tick))


class TestSimulatedClock:

    def test_advance(self):
        clock = SimulatedClock(start_ms=1000.0)
        assert clock() == 1000.0
        assert clock.advance(0.5) == 1500.0
        assert clock.advance_ms(25) == 1525.0
        assert clock.now_ms == 1525.0

    def test_empty_observation(self):
        obs = empty_observation(1000.0, 0.1)
        assert obs.timestamp == 1000.0
        assert obs.heart_rate is None


class TestFixedStepDriver:

    def test_sixty_hz_frames_give_ten_hz_ticks(self, bare_kernel, clock):
        driver = FixedStepDriver(bare_kernel)
        steps = 0
        for _ in range(60):
            clock.advance(1 / 60)
            steps += driver.advance(1 / 60)
        assert steps == 10
        assert driver.ticks == 10
        assert tick_count(bare_kernel) == 10

    def test_long_frame_capped(self, bare_kernel):
        driver = FixedStepDriver(bare_kernel)
        assert driver.advance(5.0) == 1
        assert driver.accumulator == pytest.approx(0.0, abs=1e-9)

    def test_catch_up_ceiling_drops_backlog(self, bare_kernel):
        config = ClockConfig(max_frame_dt_s=1.0)
        driver = FixedStepDriver(bare_kernel, config=config)
        assert driver.advance(1.0) == 3
        assert driver.accumulator == 0.0
        assert driver.dropped_s == pytest.approx(0.7)

    def test_negative_frame_ignored(self, bare_kernel):
        driver = FixedStepDriver(bare_kernel)
        assert driver.advance(-1.0) == 0
        assert driver.accumulator == 0.0

    def test_paused_runs_nothing(self, bare_kernel, clock):
        start_session(bare_kernel, clock, "box")
        bare_kernel.dispatch(Interruption(timestamp=clock()))
        assert bare_kernel.get_state().status == RuntimeStatus.PAUSED

        driver = FixedStepDriver(bare_kernel)
        driver.accumulator = 0.05
        for _ in range(10):
            assert driver.advance(0.1) == 0
        assert driver.accumulator == 0.0

        bare_kernel.dispatch(Resume(timestamp=clock()))
        assert driver.advance(0.1) == 1

    def test_observation_source_called_per_tick(self, bare_kernel, clock):
        calls = []

        def observe(now_ms, dt):
            calls.append((now_ms, dt))
            return empty_observation(now_ms, dt)

        driver = FixedStepDriver(bare_kernel, observe=observe)
        clock.advance(0.1)
        driver.advance(0.1)
        assert calls == [(clock(), pytest.approx(0.1))]

    def test_run_with_fake_time(self, bare_kernel):
        now = [0.0]

        def sleep(s):
            now[0] += s

        driver = FixedStepDriver(bare_kernel)
        total = driver.run(1.0, frame_interval_s=0.05, sleep=sleep, monotonic=lambda: now[0])
        assert 9 <= total <= 10
