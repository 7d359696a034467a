#!/usr/bin/env python3
"""
Respira Holodeck - Scripted Simulation Runs Against the Live Kernel
===================================================================

Drives a real HomeostaticKernel through the fixed-step driver on a simulated
clock, feeding synthetic vitals, and checks what the kernel does.

Scenarios:
    nominal         4-7-8 with coherent vitals, clean HALT, registry learning
    panic           critical prediction error → SAFETY_LOCK, reset releases it
    ai_tune         AI agent tunes tempo through the tool executor
    sensor_failure  vitals drop out / go out of range; belief stays sane

Usage:
    respira-holodeck                          # all scenarios
    respira-holodeck --scenario panic -v
    respira-holodeck --data-dir /tmp/respira  # persist the event log as JSONL
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from .config import KernelConfig, load_config
from .driver import FixedStepDriver, SimulatedClock
from .effectors import MockCueActuator, cue_middleware
from .events import AIStatusChange, BeliefUpdate, Halt, LoadProtocol, StartSession
from .kernel import HomeostaticKernel
from .persistence import EventStore, JsonlEventStore, MemoryEventStore
from .state import AIStatus, Observation, RuntimeStatus
from .tools import ToolExecutor

logger = logging.getLogger(__name__)


# =============================================================================
# Synthetic Sensor
# =============================================================================

VitalFn = Callable[[float], Optional[float]]


def _constant(value: Optional[float]) -> VitalFn:
    return lambda t: value


class SyntheticSensor:
    """
    Observation source built from per-vital functions of session time.

    Example:
        sensor = SyntheticSensor(heart_rate=lambda t: 60 + 5 * np.sin(t))
        obs = sensor(now_ms, 0.1)
    """

    def __init__(
        self,
        heart_rate: Optional[VitalFn] = None,
        hr_confidence: float = 0.95,
        respiration_rate: Optional[VitalFn] = None,
        stress_index: Optional[VitalFn] = None,
        facial_valence: Optional[VitalFn] = None,
        noise: float = 0.0,
        seed: int = 0,
    ):
        self.heart_rate = heart_rate or _constant(None)
        self.hr_confidence = hr_confidence
        self.respiration_rate = respiration_rate or _constant(None)
        self.stress_index = stress_index or _constant(None)
        self.facial_valence = facial_valence or _constant(None)
        self.noise = noise
        self._rng = np.random.default_rng(seed)
        self._start_ms: Optional[float] = None

    def _noisy(self, value: Optional[float]) -> Optional[float]:
        if value is None or self.noise <= 0:
            return value
        return float(value + self._rng.normal(0.0, self.noise))

    def __call__(self, now_ms: float, dt: float) -> Observation:
        if self._start_ms is None:
            self._start_ms = now_ms
        t = (now_ms - self._start_ms) / 1000.0
        heart_rate = self._noisy(self.heart_rate(t))
        return Observation(
            timestamp=now_ms,
            delta_time=dt,
            heart_rate=heart_rate,
            hr_confidence=self.hr_confidence if heart_rate is not None else None,
            respiration_rate=self.respiration_rate(t),
            stress_index=self.stress_index(t),
            facial_valence=self.facial_valence(t),
        )


# =============================================================================
# Reports
# =============================================================================

@dataclass
class ScenarioReport:
    """Log of one scenario run."""
    name: str
    entries: List[Tuple[float, str, str]] = field(default_factory=list)

    def log(self, t: float, msg: str, level: str = "info") -> None:
        self.entries.append((t, level, msg))
        if level == "fail":
            logger.error(f"[{self.name}] FAIL: {msg}")
        else:
            logger.info(f"[{self.name}] {level.upper()}: {msg}")

    def check(self, t: float, condition: bool, msg: str) -> bool:
        self.log(t, msg, "pass" if condition else "fail")
        return condition

    @property
    def passed(self) -> bool:
        levels = [level for _, level, _ in self.entries]
        return "fail" not in levels and "pass" in levels


# =============================================================================
# Holodeck
# =============================================================================

class Holodeck:
    """Runs scenarios, each on a fresh kernel."""

    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        store_factory: Optional[Callable[[], EventStore]] = None,
        frame_dt: float = 0.05,
        progress: bool = False,
    ):
        self.config = config or KernelConfig()
        self.store_factory = store_factory or MemoryEventStore
        self.frame_dt = frame_dt
        self.progress = progress

        self.scenarios: Dict[str, Callable[[ScenarioReport], None]] = {
            "nominal": self._scenario_nominal,
            "panic": self._scenario_panic,
            "ai_tune": self._scenario_ai_tune,
            "sensor_failure": self._scenario_sensor_failure,
        }

        self.clock: SimulatedClock = SimulatedClock()
        self.kernel: Optional[HomeostaticKernel] = None
        self.driver: Optional[FixedStepDriver] = None
        self.sensor = SyntheticSensor()
        self.actuator = MockCueActuator()
        self._start_ms = 0.0

    def run(self, name: str) -> ScenarioReport:
        report = ScenarioReport(name=name)
        scenario = self.scenarios.get(name)
        if scenario is None:
            report.log(0.0, f"Unknown scenario: {name}", "fail")
            return report

        self._setup()
        try:
            scenario(report)
        except Exception as e:
            logger.exception(f"Scenario {name} crashed")
            report.log(self._t(), f"Scenario crashed: {e!r}", "fail")
        finally:
            self._teardown()
        return report

    def run_all(self) -> List[ScenarioReport]:
        return [self.run(name) for name in self.scenarios]

    # -- plumbing -----------------------------------------------------------

    def _setup(self) -> None:
        self.clock = SimulatedClock()
        self._start_ms = self.clock()
        self.sensor = SyntheticSensor()
        self.actuator = MockCueActuator()
        self.kernel = HomeostaticKernel(
            config=self.config, clock=self.clock, store=self.store_factory(),
        )
        self.kernel.use(cue_middleware(self.actuator))
        self.driver = FixedStepDriver(
            self.kernel, observe=lambda now, dt: self.sensor(now, dt),
        )

    def _teardown(self) -> None:
        if self.kernel is not None:
            self.kernel.close()

    def _t(self) -> float:
        return (self.clock() - self._start_ms) / 1000.0

    def _run_for(self, seconds: float, desc: str = "") -> None:
        frames = int(round(seconds / self.frame_dt))
        for _ in tqdm(range(frames), desc=desc, disable=not self.progress, leave=False):
            self.clock.advance(self.frame_dt)
            self.driver.advance(self.frame_dt)

    def _start(self, pattern_id: str) -> None:
        now = self.clock()
        self.kernel.dispatch(LoadProtocol(pattern_id=pattern_id, timestamp=now))
        self.kernel.dispatch(StartSession(timestamp=now))

    # =========================================================================
    # Scenarios
    # =========================================================================

    def _scenario_nominal(self, report: ScenarioReport) -> None:
        report.log(self._t(), "SCENARIO: nominal flow (4-7-8, coherent vitals)")
        self.sensor = SyntheticSensor(
            heart_rate=lambda t: 60.0 + 5.0 * np.sin(t),
            respiration_rate=lambda t: 3.2,
            noise=0.5,
        )
        self._start("4-7-8")
        report.check(self._t(), self.kernel.get_state().status == RuntimeStatus.RUNNING,
                     "Kernel RUNNING after START_SESSION")

        self._run_for(40.0, desc="nominal")
        state = self.kernel.get_state()
        report.check(self._t(), state.cycle_count >= 1, f"Completed {state.cycle_count} cycle(s)")
        report.check(self._t(), len(self.actuator.cues) > 0, f"{len(self.actuator.cues)} cues played")
        report.check(self._t(), state.belief.in_bounds(), "Belief within bounds")
        report.check(self._t(), state.belief.arousal < 0.5,
                     f"Arousal settled to {state.belief.arousal:.2f}")

        self.kernel.dispatch(Halt(reason="holodeck", timestamp=self.clock()))
        state = self.kernel.get_state()
        report.check(self._t(), state.status == RuntimeStatus.HALTED, "Kernel halted cleanly")
        report.check(self._t(), "4-7-8" in state.safety_registry, "Session outcome learned")

    def _scenario_panic(self, report: ScenarioReport) -> None:
        report.log(self._t(), "SCENARIO: panic response (critical prediction error)")
        self.sensor = SyntheticSensor(heart_rate=lambda t: 160.0, hr_confidence=0.9)
        self._start("4-7-8")
        self._run_for(12.0, desc="panic")

        belief = self.kernel.get_state().belief
        self.kernel.dispatch(BeliefUpdate(
            belief=replace(belief, prediction_error=0.99, arousal=1.0),
            timestamp=self.clock(),
        ))
        state = self.kernel.get_state()
        report.check(self._t(), state.status == RuntimeStatus.SAFETY_LOCK, "System entered SAFETY_LOCK")

        self._start("box")
        report.check(self._t(), self.kernel.get_state().status == RuntimeStatus.SAFETY_LOCK,
                     "New session refused while locked")

        self.kernel.dispatch(Halt(reason="holodeck", timestamp=self.clock()))
        report.check(self._t(), self.kernel.get_state().status == RuntimeStatus.SAFETY_LOCK,
                     "Lock survives HALT")

        self.kernel.reset_safety_profile()
        report.check(self._t(), self.kernel.get_state().status == RuntimeStatus.IDLE,
                     "Registry reset released the lock")

    def _scenario_ai_tune(self, report: ScenarioReport) -> None:
        report.log(self._t(), "SCENARIO: AI co-regulation (tool calls)")
        self.sensor = SyntheticSensor(heart_rate=lambda t: 70.0, respiration_rate=lambda t: 3.75)
        tools = ToolExecutor(self.kernel)
        self._start("box")
        self.kernel.dispatch(AIStatusChange(status=AIStatus.CONNECTED, timestamp=self.clock()))
        report.check(self._t(), self.kernel.get_state().ai_status == AIStatus.CONNECTED, "AI agent connected")

        early = tools.execute("switch_pattern", {"pattern_id": "coherence", "reason": "user seems restless early"})
        report.check(self._t(), not early.success, f"Early switch refused: {early.error}")

        self._run_for(35.0, desc="ai_tune")
        # Agent response latency
        self.clock.advance(1.0)
        before = self.kernel.get_state().tempo_scale
        target = min(before + 0.15, 1.4)
        result = tools.execute("adjust_tempo", {"scale": target, "reason": "exhale is being rushed"})
        after = self.kernel.get_state().tempo_scale
        report.check(self._t(), result.success, f"adjust_tempo accepted ({before:.3f} → {after:.3f})")
        report.check(self._t(), before < after <= target + 1e-9, "Tempo moved toward the request, rate-limited")

        again = tools.execute("adjust_tempo", {"scale": before, "reason": "changed my mind already"})
        report.check(self._t(), not again.success, "Second call inside 5s rate-limited")

        risky = tools.execute("switch_pattern", {"pattern_id": "wim-hof", "reason": "user wants more energy"})
        report.check(self._t(), risky.needs_confirmation, "Energizing pattern needs confirmation")

        switched = tools.execute("switch_pattern", {"pattern_id": "coherence", "reason": "slower rhythm suits user"})
        state = self.kernel.get_state()
        report.check(self._t(), switched.success and state.pattern.id == "coherence",
                     "Switched to coherence")

        self._run_for(10.0, desc="ai_tune")
        tempo = self.kernel.get_state().tempo_scale
        report.check(self._t(), 0.8 <= tempo <= 1.4, f"Tempo {tempo:.3f} within bounds")

    def _scenario_sensor_failure(self, report: ScenarioReport) -> None:
        report.log(self._t(), "SCENARIO: sensor failure (dropouts, garbage vitals)")

        def flaky_hr(t: float) -> Optional[float]:
            if t < 10:
                return 65.0
            if t < 20:
                return None
            return 300.0

        self.sensor = SyntheticSensor(heart_rate=flaky_hr, hr_confidence=0.9)
        self._start("calm")
        self._run_for(10.0, desc="sensor_failure")
        confident = self.kernel.get_state().belief.confidence

        self._run_for(10.0, desc="sensor_failure")
        dropped = self.kernel.get_state().belief
        report.check(self._t(), dropped.confidence < confident,
                     f"Confidence fell during dropout ({confident:.2f} → {dropped.confidence:.2f})")

        self._run_for(10.0, desc="sensor_failure")
        state = self.kernel.get_state()
        report.check(self._t(), state.status == RuntimeStatus.RUNNING, "Session kept running")
        report.check(self._t(), state.belief.in_bounds(), "Belief within bounds under garbage vitals")
        report.check(self._t(), state.belief.arousal < 0.9,
                     f"Out-of-range heart rate ignored (arousal {state.belief.arousal:.2f})")


# =============================================================================
# CLI
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Respira Holodeck - simulated kernel scenarios",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--scenario", default="all",
                        help="nominal | panic | ai_tune | sensor_failure | all")
    parser.add_argument("--config", type=Path, help="Path to YAML config")
    parser.add_argument("--data-dir", type=Path, help="Persist events as JSONL here")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = load_config(args.config)
    store_factory: Callable[[], EventStore] = MemoryEventStore
    if args.data_dir is not None:
        data_dir = args.data_dir
        store_factory = lambda: JsonlEventStore(data_dir)

    holodeck = Holodeck(config=config, store_factory=store_factory, progress=not args.no_progress)
    if args.scenario == "all":
        reports = holodeck.run_all()
    else:
        reports = [holodeck.run(args.scenario)]

    print()
    for report in reports:
        print(f"{'PASS' if report.passed else 'FAIL'}  {report.name}")
        for t, level, msg in report.entries:
            print(f"    [{t:6.1f}s] {level.upper():4s} {msg}")

    return 0 if all(r.passed for r in reports) else 1


__all__ = [
    "SyntheticSensor",
    "ScenarioReport",
    "Holodeck",
    "main",
]


if __name__ == "__main__":
    sys.exit(main())
