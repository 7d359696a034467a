"""
Respira Resonance Watchdog - Seizing Control From a Diverging Loop
==================================================================

Two leaky integrators run on every RUNNING tick:

    divergence  += dt    while tempo is off baseline AND prediction error is high
                -= 2·dt  otherwise
                > 30s   → ADJUST_TEMPO(1.0) + voice notice

    trauma      += dt    while a stimulating pattern meets arousal > 0.7
                -= dt    otherwise
                > 5s    → SYMPATHETIC_OVERRIDE to the fallback pattern

The watchdog only proposes commands; they are queued and vetted like any other.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .config import TempoConfig, WatchdogConfig
from .events import AdjustTempo, AIVoiceMessage, BaseEvent, SympatheticOverride
from .state import RuntimeState, RuntimeStatus

logger = logging.getLogger(__name__)


WATCHDOG_RESET = "WATCHDOG_RESET"
HYPER_AROUSAL_INTERVENTION = "HYPER_AROUSAL_INTERVENTION"


class ResonanceWatchdog:
    """Divergence and hot-stove detection."""

    def __init__(
        self,
        config: Optional[WatchdogConfig] = None,
        tempo: Optional[TempoConfig] = None,
    ):
        self.config = config or WatchdogConfig()
        self.tempo = tempo or TempoConfig()
        self.divergence_s = 0.0
        self.trauma_s = 0.0
        self.interventions = 0

    def reset(self) -> None:
        self.divergence_s = 0.0
        self.trauma_s = 0.0

    def inspect(self, state: RuntimeState, dt: float, now_ms: float) -> List[BaseEvent]:
        """Advance both integrators; return corrective commands, if any."""
        if state.status != RuntimeStatus.RUNNING or state.pattern is None:
            return []

        cfg = self.config
        dt = max(0.0, dt)
        commands: List[BaseEvent] = []
        belief = state.belief

        off_baseline = abs(state.tempo_scale - self.tempo.baseline) > cfg.tempo_tolerance
        if off_baseline and belief.prediction_error > cfg.divergence_threshold:
            self.divergence_s += dt
        else:
            self.divergence_s = max(0.0, self.divergence_s - 2.0 * dt)

        if self.divergence_s > cfg.max_divergence_s:
            logger.warning(
                f"Watchdog: tempo {state.tempo_scale:.3f} diverged for "
                f"{self.divergence_s:.1f}s, resetting to baseline"
            )
            commands.append(AdjustTempo(
                scale=self.tempo.baseline, reason=WATCHDOG_RESET, timestamp=now_ms,
            ))
            commands.append(AIVoiceMessage(
                text="Resetting rhythm.", sentiment="neutral", timestamp=now_ms,
            ))
            self.divergence_s = 0.0
            self.interventions += 1

        if state.pattern.is_stimulating and belief.arousal > cfg.trauma_arousal:
            self.trauma_s += dt
        else:
            self.trauma_s = max(0.0, self.trauma_s - dt)

        if self.trauma_s > cfg.trauma_window_s:
            logger.warning(
                f"Watchdog: arousal {belief.arousal:.2f} on stimulating "
                f"'{state.pattern.id}' for {self.trauma_s:.1f}s, forcing '{cfg.fallback_pattern}'"
            )
            commands.append(SympatheticOverride(
                pattern_id=cfg.fallback_pattern,
                reason=HYPER_AROUSAL_INTERVENTION,
                timestamp=now_ms,
            ))
            self.trauma_s = 0.0
            self.interventions += 1

        return commands


__all__ = [
    "WATCHDOG_RESET",
    "HYPER_AROUSAL_INTERVENTION",
    "ResonanceWatchdog",
]
