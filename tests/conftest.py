"""
Shared fixtures for the Respira test suite.

Run with: pytest tests/ -v
"""

from typing import Optional

import pytest

from respira.config import KernelConfig
from respira.driver import SimulatedClock
from respira.events import LoadProtocol, StartSession
from respira.kernel import HomeostaticKernel
from respira.persistence import MemoryEventStore
from respira.state import Observation


START_MS = 1_700_000_000_000.0


def make_observation(
    now_ms: float,
    dt: float = 0.1,
    heart_rate: Optional[float] = None,
    hr_confidence: Optional[float] = None,
    **kwargs,
) -> Observation:
    if heart_rate is not None and hr_confidence is None:
        hr_confidence = 0.9
    return Observation(
        timestamp=now_ms,
        delta_time=dt,
        heart_rate=heart_rate,
        hr_confidence=hr_confidence,
        **kwargs,
    )


def start_session(kernel: HomeostaticKernel, clock: SimulatedClock, pattern_id: str = "4-7-8") -> None:
    kernel.dispatch(LoadProtocol(pattern_id=pattern_id, timestamp=clock()))
    kernel.dispatch(StartSession(timestamp=clock()))


def run_ticks(kernel: HomeostaticKernel, clock: SimulatedClock, seconds: float, dt: float = 0.1, **vitals) -> None:
    for _ in range(int(round(seconds / dt))):
        clock.advance(dt)
        kernel.tick(dt, make_observation(clock(), dt, **vitals))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return SimulatedClock(start_ms=START_MS)


@pytest.fixture
def config():
    return KernelConfig()


@pytest.fixture
def store():
    return MemoryEventStore()


@pytest.fixture
def kernel(config, clock, store):
    k = HomeostaticKernel(config=config, clock=clock, store=store)
    yield k
    k.close()


@pytest.fixture
def bare_kernel(config, clock):
    """Kernel without persistence."""
    return HomeostaticKernel(config=config, clock=clock)
