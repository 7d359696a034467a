"""
Respira Tempo Control - Closing the Biofeedback Loop
====================================================

Tempo adapts to how well the user keeps up with the guide:

    error = high_alignment - rhythm_alignment

    error > high - low   (alignment < 0.35) → slow down, up to the soft cap
    error < 0            (alignment > 0.8)  → drift back toward 1.0
    otherwise                               → hold

Controllers share one contract, ``compute(error, dt) -> Δtempo``. The manual
law is the default; PIDController is the formal alternative.

Proposals leave through the command queue as ordinary ADJUST_TEMPO events and
meet the safety monitor like everyone else.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Optional

import numpy as np

from .config import KernelConfig, PIDConfig, TempoConfig
from .events import AdjustTempo, BaseEvent, BeliefUpdate
from .state import RuntimeState, RuntimeStatus

logger = logging.getLogger(__name__)


LOW_ALIGNMENT = "low_alignment"
RESONANCE_RESTORE = "resonance_restore"


class CommandQueue:
    """What middlewares see of the kernel: somewhere to put follow-up commands."""

    def queue(self, command: BaseEvent) -> None:
        raise NotImplementedError


Middleware = Callable[[BaseEvent, RuntimeState, RuntimeState, CommandQueue], None]


# =============================================================================
# Controllers
# =============================================================================

class TempoController:
    """(error, dt) → Δtempo."""

    def compute(self, error: float, dt: float) -> float:
        raise NotImplementedError

    def reset(self) -> None:
        pass


class ManualTempoLaw(TempoController):
    """Fixed-step bang-bang law with a hold band."""

    def __init__(self, tempo: Optional[TempoConfig] = None):
        self.tempo = tempo or TempoConfig()

    def compute(self, error: float, dt: float) -> float:
        t = self.tempo
        if error > t.high_alignment - t.low_alignment:
            return t.up_step
        if error < 0:
            return -t.down_step
        return 0.0


class PIDController(TempoController):
    """
    PID with integral clamping (anti-windup) and a low-pass filtered
    derivative. Output is clamped to [output_min, output_max].
    """

    def __init__(self, config: Optional[PIDConfig] = None):
        self.config = config or PIDConfig()
        self.reset()

    def reset(self) -> None:
        self.integral = 0.0
        self.last_error = 0.0
        self.last_derivative = 0.0
        self.last_p = 0.0
        self.last_i = 0.0
        self.last_d = 0.0

    def compute(self, error: float, dt: float) -> float:
        cfg = self.config
        if dt <= 0 or not math.isfinite(dt):
            logger.debug(f"PID: ignoring invalid dt={dt}")
            return 0.0

        self.last_p = cfg.kp * error

        self.integral = float(np.clip(
            self.integral + error * dt, -cfg.integral_max, cfg.integral_max,
        ))
        self.last_i = cfg.ki * self.integral

        raw_derivative = (error - self.last_error) / dt
        self.last_derivative = (
            cfg.derivative_alpha * raw_derivative
            + (1 - cfg.derivative_alpha) * self.last_derivative
        )
        self.last_d = cfg.kd * self.last_derivative

        self.last_error = error
        output = self.last_p + self.last_i + self.last_d
        return float(np.clip(output, cfg.output_min, cfg.output_max))

    def set_gains(
        self,
        kp: Optional[float] = None,
        ki: Optional[float] = None,
        kd: Optional[float] = None,
    ) -> None:
        if kp is not None:
            self.config.kp = kp
        if ki is not None:
            self.config.ki = ki
        if kd is not None:
            self.config.kd = kd

    def get_diagnostics(self) -> Dict[str, float]:
        return {
            "P": self.last_p,
            "I": self.last_i,
            "D": self.last_d,
            "integral": self.integral,
            "total": self.last_p + self.last_i + self.last_d,
        }


def create_tempo_controller(config: Optional[KernelConfig] = None) -> TempoController:
    """Controller named by ``config.controller.kind``."""
    config = config or KernelConfig()
    kind = config.controller.kind
    if kind == "manual":
        return ManualTempoLaw(config.tempo)
    if kind == "pid":
        return PIDController(config.controller.pid)
    raise ValueError(f"Unknown tempo controller kind: {kind!r}")


# =============================================================================
# Biofeedback Middleware
# =============================================================================

class BiofeedbackMiddleware:
    """Turns belief updates into tempo proposals."""

    def __init__(
        self,
        controller: Optional[TempoController] = None,
        tempo: Optional[TempoConfig] = None,
    ):
        self.tempo = tempo or TempoConfig()
        self.controller = controller or ManualTempoLaw(self.tempo)
        self._last_timestamp: Optional[float] = None
        self.proposals = 0

    def propose(self, state: RuntimeState, dt: float) -> Optional[float]:
        """New tempo scale for ``state``, or None to hold."""
        t = self.tempo
        error = t.high_alignment - state.belief.rhythm_alignment
        delta = self.controller.compute(error, dt)
        current = state.tempo_scale

        new_scale = current
        if delta > 0 and current < t.soft_cap:
            new_scale = min(t.soft_cap, current + delta)
        elif delta < 0 and current > t.baseline:
            new_scale = max(t.baseline, current + delta)

        if abs(new_scale - current) + 1e-12 < t.deadband:
            return None
        return new_scale

    def __call__(
        self,
        event: BaseEvent,
        before: RuntimeState,
        after: RuntimeState,
        api: CommandQueue,
    ) -> None:
        if not isinstance(event, BeliefUpdate):
            return
        if after.status != RuntimeStatus.RUNNING \
                or after.session_duration <= self.tempo.control_after_s:
            self.controller.reset()
            self._last_timestamp = None
            return

        dt = 0.0
        if self._last_timestamp is not None:
            dt = (event.timestamp - self._last_timestamp) / 1000.0
        self._last_timestamp = event.timestamp

        new_scale = self.propose(after, dt)
        if new_scale is None:
            return

        reason = RESONANCE_RESTORE if new_scale < after.tempo_scale else LOW_ALIGNMENT
        self.proposals += 1
        api.queue(AdjustTempo(scale=new_scale, reason=reason, timestamp=event.timestamp))

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "controller": type(self.controller).__name__,
            "proposals": self.proposals,
        }
        if isinstance(self.controller, PIDController):
            stats["pid"] = self.controller.get_diagnostics()
        return stats


__all__ = [
    "LOW_ALIGNMENT",
    "RESONANCE_RESTORE",
    "CommandQueue",
    "Middleware",
    "TempoController",
    "ManualTempoLaw",
    "PIDController",
    "create_tempo_controller",
    "BiofeedbackMiddleware",
]
