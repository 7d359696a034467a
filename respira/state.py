"""
Respira Runtime State - Immutable Snapshots of the Control Loop
===============================================================

The kernel owns exactly one RuntimeState at a time and replaces it wholesale on
every dispatch. Readers (UI, audio, AI bridge) hold snapshots; nothing they
hold can change underneath them.

State Dimensions:
    - Status: IDLE → RUNNING ⇄ PAUSED → HALTED, or SAFETY_LOCK
    - Protocol: active pattern, tempo scale, phase clock, cycle count
    - Belief: arousal, attention, rhythm alignment, valence (+ uncertainty)
    - Registry: per-pattern SafetyProfile learned across sessions

Timestamps are epoch milliseconds throughout.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace, asdict
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, Any, Mapping, Tuple

import numpy as np

from .patterns import BreathPattern, BreathPhase


# =============================================================================
# Status Enums
# =============================================================================

class RuntimeStatus(str, Enum):
    """Lifecycle status of the kernel."""
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    HALTED = "HALTED"
    SAFETY_LOCK = "SAFETY_LOCK"


class AIStatus(str, Enum):
    """Connection status of the external AI agent."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    THINKING = "thinking"
    SPEAKING = "speaking"


# =============================================================================
# Belief
# =============================================================================

@dataclass(frozen=True)
class BeliefState:
    """
    Probabilistic estimate of the user's physiological/affective condition.

    Means:
        - arousal: 0 = deeply calm, 1 = highly activated
        - attention: 0 = distracted, 1 = fully present
        - rhythm_alignment: 0 = off-rhythm, 1 = breathing with the guide
        - valence: -1 = negative affect, +1 = positive affect

    Diagnostics:
        - prediction_error: distance from the protocol's target state
        - innovation: last accepted measurement residual
        - mahalanobis_distance: normalized residual of the last measurement
        - confidence: blended model and sensor certainty
    """
    arousal: float = 0.5
    attention: float = 0.5
    rhythm_alignment: float = 0.0
    valence: float = 0.0

    arousal_variance: float = 0.2
    attention_variance: float = 0.2
    rhythm_variance: float = 0.3

    prediction_error: float = 0.0
    innovation: float = 0.0
    mahalanobis_distance: float = 0.0
    confidence: float = 0.0

    def clamped(self) -> 'BeliefState':
        """Copy with every field forced into its domain."""
        return replace(
            self,
            arousal=float(np.clip(self.arousal, 0.0, 1.0)),
            attention=float(np.clip(self.attention, 0.0, 1.0)),
            rhythm_alignment=float(np.clip(self.rhythm_alignment, 0.0, 1.0)),
            valence=float(np.clip(self.valence, -1.0, 1.0)),
            arousal_variance=max(0.0, self.arousal_variance),
            attention_variance=max(0.0, self.attention_variance),
            rhythm_variance=max(0.0, self.rhythm_variance),
            prediction_error=max(0.0, self.prediction_error),
            mahalanobis_distance=max(0.0, self.mahalanobis_distance),
            confidence=float(np.clip(self.confidence, 0.0, 1.0)),
        )

    def in_bounds(self) -> bool:
        return self == self.clamped()

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


# =============================================================================
# Observation
# =============================================================================

@dataclass(frozen=True)
class Observation:
    """Per-tick sensor snapshot. Every vital is optional."""
    timestamp: float
    delta_time: float
    visibility: str = "visible"             # visible | hidden
    user_interaction: Optional[str] = None  # pause | resume | touch
    heart_rate: Optional[float] = None
    hr_confidence: Optional[float] = None
    respiration_rate: Optional[float] = None
    stress_index: Optional[float] = None
    facial_valence: Optional[float] = None

    @property
    def is_distracted(self) -> bool:
        return self.user_interaction == "pause" or self.visibility == "hidden"


# =============================================================================
# Safety Profile
# =============================================================================

@dataclass(frozen=True)
class SafetyProfile:
    """Long-term outcome record for one pattern."""
    pattern_id: str
    cummulative_stress_score: float = 0.0
    last_incident_timestamp: float = 0.0
    safety_lock_until: float = 0.0          # Epoch ms, 0 = unlocked
    resonance_history: Tuple[float, ...] = ()
    resonance_score: float = 0.5

    def is_locked(self, now_ms: float) -> bool:
        return self.safety_lock_until > now_ms

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["resonance_history"] = list(self.resonance_history)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'SafetyProfile':
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        if "resonance_history" in known:
            known["resonance_history"] = tuple(float(x) for x in known["resonance_history"])
        return cls(**known)


def freeze_registry(registry: Mapping[str, SafetyProfile]) -> Mapping[str, SafetyProfile]:
    """Read-only view over a private copy of a registry mapping."""
    return MappingProxyType(dict(registry))


# =============================================================================
# Runtime State
# =============================================================================

@dataclass(frozen=True)
class RuntimeState:
    """Complete kernel state. Replaced atomically, never mutated."""
    version: int = 0
    status: RuntimeStatus = RuntimeStatus.IDLE
    boot_timestamp: float = 0.0
    last_update_timestamp: float = 0.0
    previous_update_timestamp: float = 0.0

    # Protocol
    pattern: Optional[BreathPattern] = None
    tempo_scale: float = 1.0
    tempo_updated_at: float = 0.0

    # Phase machine
    phase: BreathPhase = BreathPhase.INHALE
    phase_start_time: float = 0.0
    phase_duration: float = 0.0
    cycle_count: int = 0
    session_start_time: float = 0.0
    paused_at: float = 0.0

    # Inference
    belief: BeliefState = field(default_factory=BeliefState)
    start_belief: Optional[BeliefState] = None
    last_observation: Optional[Observation] = None

    # Long-term safety
    safety_registry: Mapping[str, SafetyProfile] = field(
        default_factory=lambda: MappingProxyType({})
    )

    # AI co-regulation
    ai_active: bool = False
    ai_status: AIStatus = AIStatus.DISCONNECTED
    last_ai_message: Optional[str] = None

    # Derived, recomputed every dispatch
    phase_elapsed: float = 0.0
    session_duration: float = 0.0

    def profile_for(self, pattern_id: str) -> Optional[SafetyProfile]:
        return self.safety_registry.get(pattern_id)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view for logging and display."""
        return {
            "version": self.version,
            "status": self.status.value,
            "pattern": self.pattern.id if self.pattern else None,
            "tempo_scale": self.tempo_scale,
            "phase": self.phase.value,
            "phase_duration": self.phase_duration,
            "phase_elapsed": self.phase_elapsed,
            "cycle_count": self.cycle_count,
            "session_duration": self.session_duration,
            "belief": self.belief.to_dict(),
            "ai_status": self.ai_status.value,
            "last_ai_message": self.last_ai_message,
            "safety_registry": {
                k: v.to_dict() for k, v in self.safety_registry.items()
            },
        }


def initial_state(now_ms: float) -> RuntimeState:
    """State the kernel boots into."""
    return RuntimeState(
        status=RuntimeStatus.IDLE,
        boot_timestamp=now_ms,
        last_update_timestamp=now_ms,
        previous_update_timestamp=now_ms,
        tempo_updated_at=now_ms,
    )


__all__ = [
    "RuntimeStatus",
    "AIStatus",
    "BeliefState",
    "Observation",
    "SafetyProfile",
    "freeze_registry",
    "RuntimeState",
    "initial_state",
]
