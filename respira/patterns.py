"""
Respira Breathing Patterns & Phase Machine
==========================================

The protocol catalogue and the tiny state machine that walks a breath cycle:

    inhale ──▶ hold_in ──▶ exhale ──▶ hold_out ──┐
      ▲                                          │
      └──────────────── cycle boundary ◀─────────┘

Zero-duration phases are skipped. Returning to inhale closes a cycle.

arousal_impact runs from -1 (deeply sedative) to +1 (strongly energizing)
and selects the estimator's target state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


# =============================================================================
# Phases
# =============================================================================

class BreathPhase(Enum):
    """Phase of the breath cycle."""
    INHALE = "inhale"
    HOLD_IN = "hold_in"
    EXHALE = "exhale"
    HOLD_OUT = "hold_out"


PHASE_ORDER = (
    BreathPhase.INHALE,
    BreathPhase.HOLD_IN,
    BreathPhase.EXHALE,
    BreathPhase.HOLD_OUT,
)


# =============================================================================
# Patterns
# =============================================================================

@dataclass(frozen=True)
class BreathPattern:
    """A breathing protocol. Phase timings are in seconds at tempo 1.0."""
    id: str
    label: str
    inhale: float
    hold_in: float
    exhale: float
    hold_out: float
    arousal_impact: float = 0.0
    tag: str = ""
    description: str = ""
    color_theme: str = "neutral"
    recommended_cycles: int = 6
    tier: int = 1

    def duration(self, phase: BreathPhase) -> float:
        """Base duration of a phase in seconds."""
        if phase == BreathPhase.INHALE:
            return self.inhale
        elif phase == BreathPhase.HOLD_IN:
            return self.hold_in
        elif phase == BreathPhase.EXHALE:
            return self.exhale
        return self.hold_out

    @property
    def cycle_duration_s(self) -> float:
        """Total duration of one breath cycle in seconds."""
        return self.inhale + self.hold_in + self.exhale + self.hold_out

    @property
    def breaths_per_minute(self) -> float:
        cycle = self.cycle_duration_s
        return 60.0 / cycle if cycle > 0 else 0.0

    @property
    def is_stimulating(self) -> bool:
        return self.arousal_impact > 0


PATTERNS: Dict[str, BreathPattern] = {
    p.id: p for p in (
        BreathPattern(
            "4-7-8", "Tranquility", 4, 7, 8, 0, arousal_impact=-0.8,
            tag="Sleep & Anxiety",
            description="A natural tranquilizer for the nervous system.",
            color_theme="warm", recommended_cycles=4, tier=1,
        ),
        BreathPattern(
            "box", "Focus", 4, 4, 4, 4, arousal_impact=0.0,
            tag="Concentration",
            description="Used by Navy SEALs to heighten performance.",
            color_theme="neutral", recommended_cycles=6, tier=1,
        ),
        BreathPattern(
            "calm", "Balance", 4, 0, 6, 0, arousal_impact=-0.3,
            tag="Coherence",
            description="Restores balance to your heart rate variability.",
            color_theme="cool", recommended_cycles=8, tier=1,
        ),
        BreathPattern(
            "coherence", "Coherence", 6, 0, 6, 0, arousal_impact=-0.5,
            tag="Heart Health",
            description='Optimizes Heart Rate Variability (HRV). The "Golden Ratio" of breathing.',
            color_theme="cool", recommended_cycles=10, tier=2,
        ),
        BreathPattern(
            "deep-relax", "Deep Rest", 4, 0, 8, 0, arousal_impact=-0.9,
            tag="Stress Relief",
            description="Doubling the exhalation to trigger the parasympathetic system.",
            color_theme="warm", recommended_cycles=6, tier=1,
        ),
        BreathPattern(
            "7-11", "7-11", 7, 0, 11, 0, arousal_impact=-1.0,
            tag="Deep Calm",
            description="A powerful technique for panic attacks and deep anxiety.",
            color_theme="warm", recommended_cycles=4, tier=2,
        ),
        BreathPattern(
            "awake", "Energize", 4, 0, 2, 0, arousal_impact=0.8,
            tag="Wake Up",
            description="Fast-paced rhythm to boost alertness and energy levels.",
            color_theme="cool", recommended_cycles=15, tier=2,
        ),
        BreathPattern(
            "triangle", "Triangle", 4, 4, 4, 0, arousal_impact=0.2,
            tag="Yoga",
            description="A geometric pattern for emotional stability and control.",
            color_theme="neutral", recommended_cycles=8, tier=1,
        ),
        BreathPattern(
            "tactical", "Tactical", 5, 5, 5, 5, arousal_impact=0.1,
            tag="Advanced Focus",
            description="Extended Box Breathing for high-stress situations.",
            color_theme="neutral", recommended_cycles=5, tier=2,
        ),
        BreathPattern(
            "buteyko", "Light Air", 3, 0, 3, 4, arousal_impact=-0.2,
            tag="Health",
            description="Reduced breathing to improve oxygen uptake (Buteyko Method).",
            color_theme="cool", recommended_cycles=12, tier=3,
        ),
        BreathPattern(
            "wim-hof", "Tummo Power", 2, 0, 1, 15, arousal_impact=1.0,
            tag="Immunity",
            description="Charge the body. Inhale deeply, let go. Repeat.",
            color_theme="warm", recommended_cycles=30, tier=3,
        ),
    )
}


def get_pattern(pattern_id: Optional[str]) -> Optional[BreathPattern]:
    """Look up a built-in pattern by id."""
    if pattern_id is None:
        return None
    return PATTERNS.get(pattern_id)


# =============================================================================
# Phase Machine
# =============================================================================

def next_phase(phase: BreathPhase) -> BreathPhase:
    """Raw successor in the cycle, ignoring durations."""
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[(index + 1) % len(PHASE_ORDER)]


def next_phase_skip_zero(phase: BreathPhase, pattern: BreathPattern) -> BreathPhase:
    """Successor with a non-zero duration.

    Falls back to inhale if a full lap finds nothing, which only happens for
    an all-zero pattern that is_pattern_valid() rejects anyway.
    """
    candidate = next_phase(phase)
    for _ in range(len(PHASE_ORDER)):
        if pattern.duration(candidate) > 0:
            return candidate
        candidate = next_phase(candidate)
    return BreathPhase.INHALE


def is_cycle_boundary(current: BreathPhase, following: BreathPhase) -> bool:
    """A transition back into inhale completes a cycle."""
    return following == BreathPhase.INHALE and current != BreathPhase.INHALE


def is_pattern_valid(pattern: BreathPattern) -> bool:
    """Timings non-negative, and both inhale and exhale present."""
    timings = [pattern.duration(p) for p in PHASE_ORDER]
    if any(t < 0 for t in timings):
        return False
    return pattern.inhale > 0 and pattern.exhale > 0


__all__ = [
    "BreathPhase",
    "PHASE_ORDER",
    "BreathPattern",
    "PATTERNS",
    "get_pattern",
    "next_phase",
    "next_phase_skip_zero",
    "is_cycle_boundary",
    "is_pattern_valid",
]
