"""
Respira Trauma Registry - Long-Term Per-Pattern Safety Learning
===============================================================

Each session ends with a verdict on how the pattern treated this user:

    delta_arousal = end.arousal - start.arousal     (negated for energizing patterns)
    outcome_cost  = delta_arousal - delta_valence
    session_score = clamp(0.5 - 0.5 * outcome_cost, 0, 1)

Scores roll into a short newest-first history whose mean is the resonance
score. A relaxing pattern that raised arousal by more than 0.2 earns a stress
strike; the third strike locks the pattern for 24 hours.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional

import numpy as np

from .config import RegistryConfig
from .patterns import BreathPattern
from .state import BeliefState, SafetyProfile

logger = logging.getLogger(__name__)


def session_score(
    pattern: BreathPattern,
    start: BeliefState,
    end: BeliefState,
    config: Optional[RegistryConfig] = None,
) -> float:
    """Outcome of one session in [0, 1]; 0.5 means no change."""
    cfg = config or RegistryConfig()
    delta_arousal = end.arousal - start.arousal
    if pattern.arousal_impact > cfg.energizing_threshold:
        delta_arousal = -delta_arousal
    delta_valence = end.valence - start.valence
    outcome_cost = delta_arousal - delta_valence
    return float(np.clip(0.5 - outcome_cost * 0.5, 0.0, 1.0))


def learn_from_session(
    profile: Optional[SafetyProfile],
    pattern: BreathPattern,
    start: BeliefState,
    end: BeliefState,
    now_ms: float,
    config: Optional[RegistryConfig] = None,
) -> SafetyProfile:
    """Fold one finished session into the pattern's profile."""
    cfg = config or RegistryConfig()
    profile = profile or SafetyProfile(pattern_id=pattern.id)

    score = session_score(pattern, start, end, cfg)
    history = ((score,) + tuple(profile.resonance_history))[:cfg.history_size]
    resonance = float(np.mean(history))

    energizing = pattern.arousal_impact > cfg.energizing_threshold
    stress = profile.cummulative_stress_score
    lock_until = profile.safety_lock_until

    if not energizing and (end.arousal - start.arousal) > cfg.strike_arousal_delta:
        stress += 1.0
        logger.warning(
            f"Stress strike on '{pattern.id}': arousal "
            f"{start.arousal:.2f} → {end.arousal:.2f} ({stress:.1f}/{cfg.strikes_to_lock})"
        )
        if stress >= cfg.strikes_to_lock:
            lock_until = now_ms + cfg.lock_duration_ms
            stress = 0.0
            logger.warning(f"Pattern '{pattern.id}' locked until {lock_until:.0f}")
    else:
        stress = max(0.0, stress - cfg.strike_decay)

    return replace(
        profile,
        cummulative_stress_score=stress,
        last_incident_timestamp=now_ms,
        safety_lock_until=lock_until,
        resonance_history=history,
        resonance_score=resonance,
    )


def is_pattern_locked(
    registry: Mapping[str, SafetyProfile],
    pattern_id: str,
    now_ms: float,
) -> bool:
    profile = registry.get(pattern_id)
    return profile is not None and profile.is_locked(now_ms)


def reset_registry(
    registry: Mapping[str, SafetyProfile],
    pattern_id: Optional[str] = None,
) -> Dict[str, SafetyProfile]:
    """Clear lock and stress score for one pattern, or all of them."""
    out = dict(registry)
    targets = [pattern_id] if pattern_id is not None else list(out)
    for pid in targets:
        if pid in out:
            out[pid] = replace(out[pid], safety_lock_until=0.0, cummulative_stress_score=0.0)
    return out


def registry_to_dict(registry: Mapping[str, SafetyProfile]) -> Dict[str, Any]:
    return {pid: profile.to_dict() for pid, profile in registry.items()}


def registry_from_dict(data: Optional[Mapping[str, Any]]) -> Dict[str, SafetyProfile]:
    """Parse a persisted registry, skipping malformed entries."""
    out: Dict[str, SafetyProfile] = {}
    for pid, raw in (data or {}).items():
        try:
            if isinstance(raw, SafetyProfile):
                out[pid] = raw
            else:
                out[pid] = SafetyProfile.from_dict({"pattern_id": pid, **dict(raw)})
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed safety profile '{pid}': {e}")
    return out


__all__ = [
    "session_score",
    "learn_from_session",
    "is_pattern_locked",
    "reset_registry",
    "registry_to_dict",
    "registry_from_dict",
]
