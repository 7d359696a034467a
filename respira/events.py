"""
Respira Kernel Events - The Closed Command/Fact Vocabulary
==========================================================

Everything that can happen to the kernel is one of the events below. Each is a
frozen pydantic model tagged by a literal ``type`` so the durable log can be
parsed back into the exact class:

    line = event.model_dump_json()
    same = parse_event(line)

Commands (user, AI or watchdog proposals) and facts (kernel observations) share
one vocabulary. Every event carries an epoch-ms timestamp.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Union, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .patterns import BreathPhase
from .state import AIStatus, BeliefState, Observation, SafetyProfile


class BaseEvent(BaseModel):
    """Common envelope for all kernel events."""

    model_config = ConfigDict(frozen=True)

    timestamp: float


# =============================================================================
# Lifecycle
# =============================================================================

class Boot(BaseEvent):
    type: Literal["BOOT"] = "BOOT"


class LoadProtocol(BaseEvent):
    type: Literal["LOAD_PROTOCOL"] = "LOAD_PROTOCOL"
    pattern_id: str


class StartSession(BaseEvent):
    type: Literal["START_SESSION"] = "START_SESSION"


class Interruption(BaseEvent):
    type: Literal["INTERRUPTION"] = "INTERRUPTION"
    kind: str = "pause"


class Resume(BaseEvent):
    type: Literal["RESUME"] = "RESUME"


class Halt(BaseEvent):
    """Cancellation primitive. Always accepted."""
    type: Literal["HALT"] = "HALT"
    reason: str = "user"


# =============================================================================
# Control Loop Facts
# =============================================================================

class Tick(BaseEvent):
    type: Literal["TICK"] = "TICK"
    observation: Observation


class BeliefUpdate(BaseEvent):
    type: Literal["BELIEF_UPDATE"] = "BELIEF_UPDATE"
    belief: BeliefState


class PhaseTransition(BaseEvent):
    type: Literal["PHASE_TRANSITION"] = "PHASE_TRANSITION"
    from_phase: BreathPhase
    to_phase: BreathPhase


class CycleComplete(BaseEvent):
    type: Literal["CYCLE_COMPLETE"] = "CYCLE_COMPLETE"
    count: int


class AdjustTempo(BaseEvent):
    type: Literal["ADJUST_TEMPO"] = "ADJUST_TEMPO"
    scale: float
    reason: str = ""


# =============================================================================
# Safety
# =============================================================================

class SafetyInterdiction(BaseEvent):
    """Safety fact. EMERGENCY_HALT locks the kernel."""
    type: Literal["SAFETY_INTERDICTION"] = "SAFETY_INTERDICTION"
    risk_level: float
    action: str
    detail: str = ""


class SympatheticOverride(BaseEvent):
    """Forced protocol switch to a safe fallback."""
    type: Literal["SYMPATHETIC_OVERRIDE"] = "SYMPATHETIC_OVERRIDE"
    pattern_id: str
    reason: str = ""


class LoadSafetyRegistry(BaseEvent):
    type: Literal["LOAD_SAFETY_REGISTRY"] = "LOAD_SAFETY_REGISTRY"
    registry: Dict[str, SafetyProfile] = Field(default_factory=dict)
    reset: bool = False                 # User-initiated reset releases SAFETY_LOCK


# =============================================================================
# AI Co-Regulation
# =============================================================================

class AIIntervention(BaseEvent):
    type: Literal["AI_INTERVENTION"] = "AI_INTERVENTION"
    intent: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class AIVoiceMessage(BaseEvent):
    type: Literal["AI_VOICE_MESSAGE"] = "AI_VOICE_MESSAGE"
    text: str
    sentiment: str = "neutral"


class AIStatusChange(BaseEvent):
    type: Literal["AI_STATUS_CHANGE"] = "AI_STATUS_CHANGE"
    status: AIStatus


# =============================================================================
# Union & Parsing
# =============================================================================

EVENT_CLASSES: Tuple[Type[BaseEvent], ...] = (
    Boot,
    LoadProtocol,
    StartSession,
    Tick,
    BeliefUpdate,
    PhaseTransition,
    CycleComplete,
    Interruption,
    Resume,
    Halt,
    SafetyInterdiction,
    SympatheticOverride,
    LoadSafetyRegistry,
    AdjustTempo,
    AIIntervention,
    AIVoiceMessage,
    AIStatusChange,
)

KernelEvent = Annotated[
    Union[
        Boot,
        LoadProtocol,
        StartSession,
        Tick,
        BeliefUpdate,
        PhaseTransition,
        CycleComplete,
        Interruption,
        Resume,
        Halt,
        SafetyInterdiction,
        SympatheticOverride,
        LoadSafetyRegistry,
        AdjustTempo,
        AIIntervention,
        AIVoiceMessage,
        AIStatusChange,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(KernelEvent)


def parse_event(data: Union[str, bytes, Dict[str, Any]]) -> BaseEvent:
    """Rebuild a typed event from its JSON line or dict form."""
    if isinstance(data, (str, bytes)):
        return _event_adapter.validate_json(data)
    return _event_adapter.validate_python(data)


def event_type(event: BaseEvent) -> str:
    return getattr(event, "type", type(event).__name__)


__all__ = [
    "BaseEvent",
    "Boot",
    "LoadProtocol",
    "StartSession",
    "Tick",
    "BeliefUpdate",
    "PhaseTransition",
    "CycleComplete",
    "Interruption",
    "Resume",
    "Halt",
    "SafetyInterdiction",
    "SympatheticOverride",
    "LoadSafetyRegistry",
    "AdjustTempo",
    "AIIntervention",
    "AIVoiceMessage",
    "AIStatusChange",
    "EVENT_CLASSES",
    "KernelEvent",
    "parse_event",
    "event_type",
]
