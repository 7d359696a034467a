"""
Respira Driver - Fixed-Step Scheduling for the Kernel
=====================================================

Render frames arrive at whatever rate the host manages; the control loop runs
at a fixed rate regardless:

    frame dt ──▶ cap(max_frame_dt) ──▶ accumulator ──▶ tick(1/control_hz) × n
                                                        (n ≤ max_steps_per_frame)

After a long stall the backlog is discarded instead of replayed, so the kernel
never sees a burst of stale ticks. While PAUSED no ticks run and the
accumulator stays empty.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .config import ClockConfig
from .kernel import HomeostaticKernel
from .state import Observation, RuntimeStatus

logger = logging.getLogger(__name__)


# (now_ms, dt_s) -> Observation
ObservationSource = Callable[[float, float], Observation]


def empty_observation(now_ms: float, dt: float) -> Observation:
    """Observation with no vitals."""
    return Observation(timestamp=now_ms, delta_time=dt)


class SimulatedClock:
    """
    Manually advanced millisecond clock.

    Example:
        clock = SimulatedClock(start_ms=1_700_000_000_000)
        kernel = HomeostaticKernel(clock=clock)
        clock.advance(0.1)                  # seconds
    """

    def __init__(self, start_ms: float = 1_700_000_000_000.0):
        self.now_ms = float(start_ms)

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, seconds: float) -> float:
        self.now_ms += seconds * 1000.0
        return self.now_ms

    def advance_ms(self, ms: float) -> float:
        self.now_ms += ms
        return self.now_ms


class FixedStepDriver:
    """Accumulator-based fixed-step loop around ``kernel.tick``."""

    def __init__(
        self,
        kernel: HomeostaticKernel,
        observe: Optional[ObservationSource] = None,
        config: Optional[ClockConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.kernel = kernel
        self.observe = observe or empty_observation
        self.config = config or kernel.config.clock
        self.clock = clock or kernel._clock
        self.step_s = 1.0 / self.config.control_hz
        self.accumulator = 0.0
        self.ticks = 0
        self.dropped_s = 0.0

    def advance(self, frame_dt: float) -> int:
        """Feed one frame; returns how many ticks ran."""
        if self.kernel.get_state().status == RuntimeStatus.PAUSED:
            self.accumulator = 0.0
            return 0

        frame_dt = min(max(0.0, frame_dt), self.config.max_frame_dt_s)
        self.accumulator += frame_dt

        steps = 0
        # Small epsilon so 0.1 + 0.1 - 0.1 style float error doesn't lose a tick
        while self.accumulator + 1e-9 >= self.step_s and steps < self.config.max_steps_per_frame:
            observation = self.observe(self.clock(), self.step_s)
            self.kernel.tick(self.step_s, observation)
            self.accumulator -= self.step_s
            steps += 1

        if self.accumulator + 1e-9 >= self.step_s:
            self.dropped_s += self.accumulator
            logger.debug(f"Driver: dropping {self.accumulator:.3f}s of backlog")
            self.accumulator = 0.0

        self.ticks += steps
        return steps

    def run(
        self,
        duration_s: float,
        frame_interval_s: float = 1.0 / 60.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> int:
        """Drive the kernel in real time for ``duration_s`` seconds."""
        start = last = monotonic()
        total = 0
        while True:
            sleep(frame_interval_s)
            now = monotonic()
            total += self.advance(now - last)
            last = now
            if now - start >= duration_s:
                break
        return total


__all__ = [
    "ObservationSource",
    "empty_observation",
    "SimulatedClock",
    "FixedStepDriver",
]
