"""
Respira Reducer - The Pure State Transition
===========================================

    reduce(state, event) -> state

Total and side-effect free: unknown or disallowed events return the input
state unchanged. Every event class has exactly one handler; a missing handler
fails at import time rather than silently dropping events at runtime.

Derived fields (phase_elapsed, session_duration) are recomputed separately by
``with_derived`` because they depend on the clock, not on the event.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Optional, Type

from .events import (
    EVENT_CLASSES,
    AdjustTempo,
    AIIntervention,
    AIStatusChange,
    AIVoiceMessage,
    BaseEvent,
    BeliefUpdate,
    Boot,
    CycleComplete,
    Halt,
    Interruption,
    LoadProtocol,
    LoadSafetyRegistry,
    PhaseTransition,
    Resume,
    SafetyInterdiction,
    StartSession,
    SympatheticOverride,
    Tick,
)
from .patterns import BreathPhase, PATTERNS
from .safety import EMERGENCY_HALT
from .state import AIStatus, RuntimeState, RuntimeStatus, freeze_registry

Handler = Callable[[RuntimeState, Any], RuntimeState]


def _boot(s: RuntimeState, e: Boot) -> RuntimeState:
    return replace(s, status=RuntimeStatus.IDLE, boot_timestamp=e.timestamp)


def _load_protocol(s: RuntimeState, e: LoadProtocol) -> RuntimeState:
    pattern = PATTERNS.get(e.pattern_id)
    if s.status == RuntimeStatus.SAFETY_LOCK or pattern is None:
        return s
    status = RuntimeStatus.RUNNING if s.status == RuntimeStatus.RUNNING else RuntimeStatus.IDLE
    return replace(
        s,
        status=status,
        pattern=pattern,
        tempo_scale=1.0,
        tempo_updated_at=e.timestamp,
        phase=BreathPhase.INHALE,
        phase_start_time=e.timestamp,
        phase_duration=pattern.inhale,
        cycle_count=0,
        session_start_time=0.0,
        start_belief=None,
    )


def _start_session(s: RuntimeState, e: StartSession) -> RuntimeState:
    if s.status == RuntimeStatus.SAFETY_LOCK or s.pattern is None:
        return s
    return replace(
        s,
        status=RuntimeStatus.RUNNING,
        session_start_time=e.timestamp,
        phase=BreathPhase.INHALE,
        phase_start_time=e.timestamp,
        phase_duration=s.pattern.inhale * s.tempo_scale,
        cycle_count=0,
        paused_at=0.0,
        start_belief=s.belief,
    )


def _tick(s: RuntimeState, e: Tick) -> RuntimeState:
    return replace(s, last_observation=e.observation)


def _belief_update(s: RuntimeState, e: BeliefUpdate) -> RuntimeState:
    return replace(s, belief=e.belief)


def _phase_transition(s: RuntimeState, e: PhaseTransition) -> RuntimeState:
    if s.pattern is None:
        return s
    return replace(
        s,
        phase=e.to_phase,
        phase_start_time=e.timestamp,
        phase_duration=s.pattern.duration(e.to_phase) * s.tempo_scale,
    )


def _cycle_complete(s: RuntimeState, e: CycleComplete) -> RuntimeState:
    return replace(s, cycle_count=e.count)


def _interruption(s: RuntimeState, e: Interruption) -> RuntimeState:
    if s.status != RuntimeStatus.RUNNING:
        return s
    return replace(s, status=RuntimeStatus.PAUSED, paused_at=e.timestamp)


def _resume(s: RuntimeState, e: Resume) -> RuntimeState:
    if s.status != RuntimeStatus.PAUSED:
        return s
    paused_for = max(0.0, e.timestamp - s.paused_at)
    return replace(
        s,
        status=RuntimeStatus.RUNNING,
        phase_start_time=s.phase_start_time + paused_for,
        paused_at=0.0,
    )


def _halt(s: RuntimeState, e: Halt) -> RuntimeState:
    # A lock survives HALT; only a registry reset releases it
    status = s.status if s.status == RuntimeStatus.SAFETY_LOCK else RuntimeStatus.HALTED
    return replace(
        s,
        status=status,
        tempo_scale=1.0,
        tempo_updated_at=e.timestamp,
        ai_active=False,
        ai_status=AIStatus.DISCONNECTED,
        start_belief=None,
        paused_at=0.0,
    )


def _safety_interdiction(s: RuntimeState, e: SafetyInterdiction) -> RuntimeState:
    if e.action != EMERGENCY_HALT:
        return s
    return replace(s, status=RuntimeStatus.SAFETY_LOCK)


def _sympathetic_override(s: RuntimeState, e: SympatheticOverride) -> RuntimeState:
    pattern = PATTERNS.get(e.pattern_id)
    if pattern is None or s.status == RuntimeStatus.SAFETY_LOCK:
        return s
    return replace(
        s,
        pattern=pattern,
        phase=BreathPhase.INHALE,
        phase_start_time=e.timestamp,
        phase_duration=pattern.inhale,
        cycle_count=0,
        tempo_scale=1.0,
        tempo_updated_at=e.timestamp,
        last_ai_message=f"Safety override: switching to {pattern.label}",
        start_belief=s.belief,
    )


def _load_safety_registry(s: RuntimeState, e: LoadSafetyRegistry) -> RuntimeState:
    status = s.status
    if e.reset and status == RuntimeStatus.SAFETY_LOCK:
        status = RuntimeStatus.IDLE
    return replace(s, safety_registry=freeze_registry(e.registry), status=status)


def _adjust_tempo(s: RuntimeState, e: AdjustTempo) -> RuntimeState:
    return replace(s, tempo_scale=e.scale, tempo_updated_at=e.timestamp)


def _ai_intervention(s: RuntimeState, e: AIIntervention) -> RuntimeState:
    return replace(s, ai_active=True)


def _ai_voice_message(s: RuntimeState, e: AIVoiceMessage) -> RuntimeState:
    return replace(s, last_ai_message=e.text, ai_status=AIStatus.SPEAKING)


def _ai_status_change(s: RuntimeState, e: AIStatusChange) -> RuntimeState:
    ai_active = s.ai_active and e.status != AIStatus.DISCONNECTED
    return replace(s, ai_status=e.status, ai_active=ai_active)


_HANDLERS: Dict[Type[BaseEvent], Handler] = {
    Boot: _boot,
    LoadProtocol: _load_protocol,
    StartSession: _start_session,
    Tick: _tick,
    BeliefUpdate: _belief_update,
    PhaseTransition: _phase_transition,
    CycleComplete: _cycle_complete,
    Interruption: _interruption,
    Resume: _resume,
    Halt: _halt,
    SafetyInterdiction: _safety_interdiction,
    SympatheticOverride: _sympathetic_override,
    LoadSafetyRegistry: _load_safety_registry,
    AdjustTempo: _adjust_tempo,
    AIIntervention: _ai_intervention,
    AIVoiceMessage: _ai_voice_message,
    AIStatusChange: _ai_status_change,
}

_unhandled = set(EVENT_CLASSES) - set(_HANDLERS)
if _unhandled:
    raise TypeError(
        "reduce() is missing handlers for: "
        + ", ".join(sorted(cls.__name__ for cls in _unhandled))
    )


def reduce(state: RuntimeState, event: BaseEvent) -> RuntimeState:
    """Apply one event. Unknown or disallowed events are no-ops."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        return state
    next_state = handler(state, event)
    if next_state is state:
        return state
    previous = state.previous_update_timestamp
    if event.timestamp > state.last_update_timestamp:
        previous = state.last_update_timestamp
    return replace(
        next_state,
        version=state.version + 1,
        last_update_timestamp=event.timestamp,
        previous_update_timestamp=previous,
    )


def with_derived(state: RuntimeState, now_ms: float) -> RuntimeState:
    """Recompute clock-dependent fields."""
    phase_elapsed = 0.0
    if state.status == RuntimeStatus.RUNNING:
        phase_elapsed = max(0.0, (now_ms - state.phase_start_time) / 1000.0)
    session_duration = 0.0
    if state.session_start_time > 0:
        session_duration = max(0.0, (now_ms - state.session_start_time) / 1000.0)
    if phase_elapsed == state.phase_elapsed and session_duration == state.session_duration:
        return state
    return replace(state, phase_elapsed=phase_elapsed, session_duration=session_duration)


def replay(
    events: Iterable[BaseEvent],
    initial: Optional[RuntimeState] = None,
    now_ms: Optional[float] = None,
) -> RuntimeState:
    """Fold a recorded log back into a state."""
    state = initial or RuntimeState()
    last_ts = state.last_update_timestamp
    for event in events:
        state = reduce(state, event)
        last_ts = event.timestamp
    return with_derived(state, now_ms if now_ms is not None else last_ts)


__all__ = [
    "reduce",
    "with_derived",
    "replay",
]
