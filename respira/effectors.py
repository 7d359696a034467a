"""
Respira Effectors - Audio and Haptic Cues
=========================================

Playback itself lives outside the kernel. This module only decides *when* a
cue fires and forwards it to an injected actuator:

    PHASE_TRANSITION (RUNNING)        → play_cue(inhale|exhale|hold) + haptic
    AI_STATUS_CHANGE / AI_VOICE_MESSAGE → set_ducking(ai is speaking)
"""

from __future__ import annotations

import logging
from typing import List, Tuple

from .control import CommandQueue, Middleware
from .events import AIStatusChange, AIVoiceMessage, BaseEvent, PhaseTransition
from .patterns import BreathPhase
from .state import AIStatus, RuntimeState, RuntimeStatus

logger = logging.getLogger(__name__)


def phase_to_cue(phase: BreathPhase) -> str:
    if phase in (BreathPhase.HOLD_IN, BreathPhase.HOLD_OUT):
        return "hold"
    return phase.value


class CueActuator:
    """Interface to audio/haptic playback."""

    def play_cue(self, cue: str, duration_s: float) -> None:
        raise NotImplementedError

    def haptic(self, cue: str) -> None:
        raise NotImplementedError

    def set_ducking(self, ducked: bool) -> None:
        raise NotImplementedError


class MockCueActuator(CueActuator):
    """Records cues instead of playing them."""

    def __init__(self):
        self.cues: List[Tuple[str, float]] = []
        self.haptics: List[str] = []
        self.ducked = False

    def play_cue(self, cue: str, duration_s: float) -> None:
        self.cues.append((cue, duration_s))
        logger.debug(f"[MOCK] cue {cue} ({duration_s:.1f}s)")

    def haptic(self, cue: str) -> None:
        self.haptics.append(cue)

    def set_ducking(self, ducked: bool) -> None:
        self.ducked = ducked


def cue_middleware(actuator: CueActuator) -> Middleware:
    """Middleware forwarding phase and AI-voice changes to ``actuator``."""

    def middleware(
        event: BaseEvent,
        before: RuntimeState,
        after: RuntimeState,
        api: CommandQueue,
    ) -> None:
        if isinstance(event, PhaseTransition) and after.status == RuntimeStatus.RUNNING:
            cue = phase_to_cue(after.phase)
            actuator.play_cue(cue, after.phase_duration)
            actuator.haptic(cue)
        elif isinstance(event, (AIStatusChange, AIVoiceMessage)):
            actuator.set_ducking(after.ai_status == AIStatus.SPEAKING)

    return middleware


__all__ = [
    "phase_to_cue",
    "CueActuator",
    "MockCueActuator",
    "cue_middleware",
]
