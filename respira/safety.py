"""
Respira Safety Monitor - Invariants Every Command Must Satisfy
==============================================================

Every state-changing event passes through the monitor before the reducer sees
it. There is no privileged path: user taps, AI tool calls and watchdog
corrections are judged by the same rules.

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                     Safety Monitor                           │
    │                                                              │
    │  ┌──────────────────────────────────────────────────────┐   │
    │  │                Safety Invariants (G)                  │   │
    │  │  • panic_halt: critical error while RUNNING → halt   │   │
    │  │  • emergency_halt_authority: only the monitor locks  │   │
    │  │  • safety_lock_immutable: no START while locked      │   │
    │  │  • belief_bounds: beliefs stay in their domain       │   │
    │  │  • tempo_bounds: tempo ∈ [min, max]                  │   │
    │  │  • tempo_rate_limit: |Δtempo| ≤ rate · dt            │   │
    │  └──────────────────────────────────────────────────────┘   │
    │                            │                                 │
    │                            ▼                                 │
    │  ┌──────────────────────────────────────────────────────┐   │
    │  │                    Shield                             │   │
    │  │  • CORRECT: substitute a safe event                  │   │
    │  │  • REJECT: drop, nothing safe to substitute          │   │
    │  │  • HALT: substitute an emergency halt / override     │   │
    │  └──────────────────────────────────────────────────────┘   │
    │                                                              │
    │  Liveness (F): tempo returns near 1.0 after 60s → WARN only  │
    └─────────────────────────────────────────────────────────────┘

Invariants are evaluated in order against the current state and the proposed
event; the first one that fails decides the verdict.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional, Dict, Any, List, Set

import numpy as np

from .config import KernelConfig, TempoConfig, SafetyLimits
from .events import (
    BaseEvent,
    AdjustTempo,
    BeliefUpdate,
    Halt,
    SafetyInterdiction,
    StartSession,
    SympatheticOverride,
    event_type,
)
from .state import RuntimeState, RuntimeStatus

logger = logging.getLogger(__name__)


EMERGENCY_HALT = "EMERGENCY_HALT"


# =============================================================================
# Violation Types
# =============================================================================

class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"


class EnforcementAction(IntEnum):
    """What the monitor did about a violation."""
    NONE = 0
    WARN = 1
    CORRECT = 2
    REJECT = 3
    HALT = 4


@dataclass
class SafetyViolation:
    """Record of a safety violation."""
    property_name: str
    severity: Severity
    message: str
    timestamp: float
    event_type: str = ""
    action_taken: EnforcementAction = EnforcementAction.NONE
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SafetyVerdict:
    """Outcome of vetting one event."""
    safe: bool
    corrected_event: Optional[BaseEvent] = None
    violation: Optional[SafetyViolation] = None


# =============================================================================
# Invariants
# =============================================================================

class Invariant:
    """Base class for safety invariants."""

    severity = Severity.CRITICAL

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self.enabled = True
        self.violations = 0

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        """True if applying ``event`` to ``state`` keeps the invariant."""
        raise NotImplementedError

    def shield(self, state: RuntimeState, event: BaseEvent) -> Optional[BaseEvent]:
        """Safe substitute for a violating event, or None to reject."""
        return None

    def details(self, state: RuntimeState, event: BaseEvent) -> Dict[str, Any]:
        return {}


def tempo_reference_ms(state: RuntimeState, timestamp: float) -> float:
    """Instant the rate envelope opens from.

    The later of the last tempo change and the last state update strictly
    before ``timestamp``. A command stamped at a tick's own instant measures
    from the update before that tick.
    """
    last_update = state.last_update_timestamp
    if timestamp <= last_update:
        last_update = state.previous_update_timestamp
    return max(last_update, state.tempo_updated_at)


def shield_tempo(
    state: RuntimeState,
    event: AdjustTempo,
    tempo: TempoConfig,
    name: str,
) -> AdjustTempo:
    """Tightest of the absolute bounds and the rate envelope around current tempo."""
    current = state.tempo_scale
    proposed = event.scale if math.isfinite(event.scale) else current
    safe = float(np.clip(proposed, tempo.min_scale, tempo.max_scale))

    elapsed_s = max(0.0, (event.timestamp - tempo_reference_ms(state, event.timestamp)) / 1000.0)
    max_delta = tempo.max_rate_per_s * elapsed_s
    safe = float(np.clip(safe, current - max_delta, current + max_delta))
    safe = float(np.clip(safe, tempo.min_scale, tempo.max_scale))

    reason = f"{event.reason} [SHIELDED: {name}]".strip()
    return event.model_copy(update={"scale": safe, "reason": reason})


class PanicHaltInvariant(Invariant):
    """Critical prediction error in an established session forces a halt."""

    def __init__(self, limits: SafetyLimits, fallback_pattern: str):
        super().__init__(
            "panic_halt",
            f"prediction_error > {limits.critical_prediction_error} while RUNNING "
            f"past {limits.min_session_s_before_emergency}s must halt",
        )
        self.limits = limits
        self.fallback_pattern = fallback_pattern

    def _prediction_error(self, state: RuntimeState, event: BaseEvent) -> float:
        if isinstance(event, BeliefUpdate):
            return event.belief.prediction_error
        return state.belief.prediction_error

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        if state.status != RuntimeStatus.RUNNING:
            return True
        if state.session_duration <= self.limits.min_session_s_before_emergency:
            return True
        return self._prediction_error(state, event) <= self.limits.critical_prediction_error

    def shield(self, state: RuntimeState, event: BaseEvent) -> Optional[BaseEvent]:
        pattern = state.pattern
        if pattern is not None and pattern.is_stimulating and pattern.id != self.fallback_pattern:
            # De-escalate first; a sedative protocol that still fails gets locked
            return SympatheticOverride(
                pattern_id=self.fallback_pattern,
                reason="CRITICAL_PREDICTION_ERROR",
                timestamp=event.timestamp,
            )
        return SafetyInterdiction(
            risk_level=min(1.0, self._prediction_error(state, event)),
            action=EMERGENCY_HALT,
            detail=self.name,
            timestamp=event.timestamp,
        )

    def details(self, state: RuntimeState, event: BaseEvent) -> Dict[str, Any]:
        return {
            "prediction_error": self._prediction_error(state, event),
            "session_duration": state.session_duration,
        }


class EmergencyHaltAuthorityInvariant(Invariant):
    """Emergency halts originate from the monitor, never from a dispatcher."""

    def __init__(self):
        super().__init__(
            "emergency_halt_authority",
            "SAFETY_INTERDICTION(EMERGENCY_HALT) may not be submitted externally",
        )

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        return not (isinstance(event, SafetyInterdiction) and event.action == EMERGENCY_HALT)


class SafetyLockImmutableInvariant(Invariant):
    """A locked kernel cannot be restarted."""

    def __init__(self):
        super().__init__(
            "safety_lock_immutable",
            "START_SESSION is forbidden while SAFETY_LOCK",
        )

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        return not (isinstance(event, StartSession) and state.status == RuntimeStatus.SAFETY_LOCK)


class BeliefBoundsInvariant(Invariant):
    """Belief updates stay inside their domains."""

    def __init__(self):
        super().__init__(
            "belief_bounds",
            "arousal, attention, rhythm ∈ [0,1]; valence ∈ [-1,1]",
        )

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        return not isinstance(event, BeliefUpdate) or event.belief.in_bounds()

    def shield(self, state: RuntimeState, event: BaseEvent) -> Optional[BaseEvent]:
        return event.model_copy(update={"belief": event.belief.clamped()})


class TempoBoundsInvariant(Invariant):
    """Tempo scale stays within configured bounds."""

    def __init__(self, tempo: TempoConfig):
        super().__init__(
            "tempo_bounds",
            f"tempo_scale ∈ [{tempo.min_scale}, {tempo.max_scale}]",
        )
        self.tempo = tempo

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        if not isinstance(event, AdjustTempo):
            return True
        return (
            math.isfinite(event.scale)
            and self.tempo.min_scale <= event.scale <= self.tempo.max_scale
        )

    def shield(self, state: RuntimeState, event: BaseEvent) -> Optional[BaseEvent]:
        return shield_tempo(state, event, self.tempo, self.name)

    def details(self, state: RuntimeState, event: BaseEvent) -> Dict[str, Any]:
        return {"proposed": getattr(event, "scale", None), "current": state.tempo_scale}


class TempoRateLimitInvariant(Invariant):
    """Tempo may not change faster than the configured rate."""

    def __init__(self, tempo: TempoConfig):
        super().__init__(
            "tempo_rate_limit",
            f"|Δtempo| ≤ {tempo.max_rate_per_s}/s",
        )
        self.tempo = tempo

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        if not isinstance(event, AdjustTempo):
            return True
        elapsed_s = max(0.0, (event.timestamp - tempo_reference_ms(state, event.timestamp)) / 1000.0)
        allowed = self.tempo.max_rate_per_s * elapsed_s
        return abs(event.scale - state.tempo_scale) <= allowed + 1e-9

    def shield(self, state: RuntimeState, event: BaseEvent) -> Optional[BaseEvent]:
        return shield_tempo(state, event, self.tempo, self.name)

    def details(self, state: RuntimeState, event: BaseEvent) -> Dict[str, Any]:
        return {
            "proposed": getattr(event, "scale", None),
            "current": state.tempo_scale,
            "elapsed_s": (event.timestamp - tempo_reference_ms(state, event.timestamp)) / 1000.0,
        }


class TempoConvergenceLiveness(Invariant):
    """Tempo should eventually settle near baseline."""

    severity = Severity.WARNING

    def __init__(self, tempo: TempoConfig):
        super().__init__(
            "tempo_convergence",
            f"after {tempo.convergence_after_s}s, |tempo - {tempo.baseline}| "
            f"< {tempo.convergence_tolerance}",
        )
        self.tempo = tempo

    def holds(self, state: RuntimeState, event: BaseEvent) -> bool:
        if state.status != RuntimeStatus.RUNNING:
            return True
        if state.session_duration <= self.tempo.convergence_after_s:
            return True
        return abs(state.tempo_scale - self.tempo.baseline) < self.tempo.convergence_tolerance


# =============================================================================
# Safety Monitor
# =============================================================================

class SafetyMonitor:
    """
    The safety monitor - vets every proposed event.

    Example:
        verdict = monitor.check_event(event, state)
        if verdict.safe:
            apply(event)
        elif verdict.corrected_event is not None:
            apply(verdict.corrected_event)
    """

    def __init__(self, config: Optional[KernelConfig] = None):
        self.config = config or KernelConfig()

        self.invariants: List[Invariant] = []
        self.liveness: List[Invariant] = []
        self._init_invariants()

        self._violations: deque = deque(maxlen=self.config.safety.max_violations)
        self._violation_count = 0
        self._critical_count = 0
        self._checks = 0
        self._active_liveness: Set[str] = set()

    def _init_invariants(self) -> None:
        """Initialize invariants in evaluation order."""
        cfg = self.config
        self.invariants = [
            PanicHaltInvariant(cfg.safety, cfg.watchdog.fallback_pattern),
            EmergencyHaltAuthorityInvariant(),
            SafetyLockImmutableInvariant(),
            BeliefBoundsInvariant(),
            TempoBoundsInvariant(cfg.tempo),
            TempoRateLimitInvariant(cfg.tempo),
        ]
        self.liveness = [TempoConvergenceLiveness(cfg.tempo)]

    def check_event(self, event: BaseEvent, state: RuntimeState) -> SafetyVerdict:
        """Vet ``event`` against ``state``. HALT always passes."""
        self._checks += 1
        if isinstance(event, Halt):
            return SafetyVerdict(safe=True)

        self._check_liveness(event, state)

        for invariant in self.invariants:
            if not invariant.enabled or invariant.holds(state, event):
                continue

            invariant.violations += 1
            corrected = invariant.shield(state, event)
            if corrected is None:
                action = EnforcementAction.REJECT
            elif isinstance(corrected, (SafetyInterdiction, SympatheticOverride)) \
                    and not isinstance(event, type(corrected)):
                action = EnforcementAction.HALT
            else:
                action = EnforcementAction.CORRECT

            violation = SafetyViolation(
                property_name=invariant.name,
                severity=invariant.severity,
                message=invariant.description,
                timestamp=event.timestamp,
                event_type=event_type(event),
                action_taken=action,
                details=invariant.details(state, event),
            )
            self._handle_violation(violation)
            return SafetyVerdict(safe=False, corrected_event=corrected, violation=violation)

        return SafetyVerdict(safe=True)

    def _check_liveness(self, event: BaseEvent, state: RuntimeState) -> None:
        """Record liveness warnings on the rising edge only."""
        for prop in self.liveness:
            if not prop.enabled:
                continue
            if prop.holds(state, event):
                self._active_liveness.discard(prop.name)
                continue
            if prop.name in self._active_liveness:
                continue
            self._active_liveness.add(prop.name)
            prop.violations += 1
            self._handle_violation(SafetyViolation(
                property_name=prop.name,
                severity=prop.severity,
                message=prop.description,
                timestamp=event.timestamp,
                event_type=event_type(event),
                action_taken=EnforcementAction.WARN,
                details={"tempo_scale": state.tempo_scale},
            ))

    def _handle_violation(self, violation: SafetyViolation) -> None:
        """Record a violation in the bounded ring."""
        self._violation_count += 1
        self._violations.append(violation)

        if violation.severity == Severity.CRITICAL:
            self._critical_count += 1
            logger.warning(
                f"Safety violation [{violation.property_name}] on "
                f"{violation.event_type}: {violation.action_taken.name}"
            )
        else:
            logger.warning(f"Liveness warning [{violation.property_name}]: {violation.message}")

    def get_violations(self, limit: Optional[int] = None) -> List[SafetyViolation]:
        """Recorded violations, oldest first."""
        violations = list(self._violations)
        if limit is not None:
            return violations[-limit:]
        return violations

    def clear_violations(self) -> None:
        self._violations.clear()
        self._active_liveness.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "checks": self._checks,
            "violation_count": self._violation_count,
            "critical_count": self._critical_count,
            "recorded": len(self._violations),
            "by_invariant": {
                inv.name: inv.violations for inv in self.invariants + self.liveness
            },
        }


__all__ = [
    "EMERGENCY_HALT",
    "Severity",
    "EnforcementAction",
    "SafetyViolation",
    "SafetyVerdict",
    "Invariant",
    "tempo_reference_ms",
    "shield_tempo",
    "PanicHaltInvariant",
    "EmergencyHaltAuthorityInvariant",
    "SafetyLockImmutableInvariant",
    "BeliefBoundsInvariant",
    "TempoBoundsInvariant",
    "TempoRateLimitInvariant",
    "TempoConvergenceLiveness",
    "SafetyMonitor",
]
