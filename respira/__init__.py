"""
Respira Homeostatic Control Kernel
==================================

The control core of a breathing-guidance app. It closes the loop between
noisy physiological signals and the guided rhythm:

    Sensors → Estimator → Kernel → Effectors (audio / haptics / UI)
                             ↑
                      Safety Monitor, Watchdog, Trauma Registry

Modules:
    config.py       - KernelConfig and YAML loading
    patterns.py     - Breathing protocols and the phase machine
    state.py        - RuntimeState, BeliefState, Observation, SafetyProfile
    events.py       - The closed kernel event vocabulary
    estimator.py    - AdaptiveStateEstimator (canonical belief estimator)
    ukf.py          - UnscentedStateEstimator (sigma-point alternative)
    safety.py       - SafetyMonitor, invariants and shield
    registry.py     - Trauma learning across sessions
    watchdog.py     - ResonanceWatchdog (divergence / hot-stove)
    control.py      - Tempo control law and biofeedback middleware
    effectors.py    - Cue middleware and actuator interface
    reducer.py      - Pure reduce(state, event), replay
    kernel.py       - HomeostaticKernel
    persistence.py  - Event stores and the background persistence worker
    driver.py       - FixedStepDriver, SimulatedClock
    tools.py        - Validated AI tool calls
    holodeck.py     - Simulation scenarios (respira-holodeck)

Usage:
    from respira import HomeostaticKernel, FixedStepDriver, LoadProtocol, StartSession

    kernel = HomeostaticKernel()
    now = kernel.get_state().boot_timestamp
    kernel.dispatch(LoadProtocol(pattern_id="coherence", timestamp=now))
    kernel.dispatch(StartSession(timestamp=now))

    driver = FixedStepDriver(kernel, observe=camera_vitals)
    driver.run(duration_s=300)
"""

__version__ = "0.1.0"

from .config import (
    KernelConfig,
    TempoConfig,
    EstimatorConfig,
    WatchdogConfig,
    load_config,
    save_config,
)

from .patterns import (
    BreathPhase,
    BreathPattern,
    PATTERNS,
    get_pattern,
    next_phase_skip_zero,
)

from .state import (
    RuntimeStatus,
    AIStatus,
    BeliefState,
    Observation,
    SafetyProfile,
    RuntimeState,
)

from .events import (
    BaseEvent,
    Boot,
    LoadProtocol,
    StartSession,
    Interruption,
    Resume,
    Halt,
    Tick,
    BeliefUpdate,
    PhaseTransition,
    CycleComplete,
    AdjustTempo,
    SafetyInterdiction,
    SympatheticOverride,
    LoadSafetyRegistry,
    AIIntervention,
    AIVoiceMessage,
    AIStatusChange,
    KernelEvent,
    parse_event,
)

from .estimator import AdaptiveStateEstimator
from .ukf import UnscentedStateEstimator

from .safety import (
    EMERGENCY_HALT,
    SafetyViolation,
    SafetyMonitor,
)

from .registry import learn_from_session
from .watchdog import ResonanceWatchdog

from .control import (
    ManualTempoLaw,
    PIDController,
    BiofeedbackMiddleware,
)

from .effectors import CueActuator, cue_middleware
from .reducer import reduce, replay

from .kernel import HomeostaticKernel

from .persistence import (
    EventStore,
    MemoryEventStore,
    JsonlEventStore,
)

from .driver import FixedStepDriver, SimulatedClock
from .tools import ToolExecutor, ToolResult


__all__ = [
    # Config
    'KernelConfig',
    'TempoConfig',
    'EstimatorConfig',
    'WatchdogConfig',
    'load_config',
    'save_config',

    # Patterns
    'BreathPhase',
    'BreathPattern',
    'PATTERNS',
    'get_pattern',
    'next_phase_skip_zero',

    # State
    'RuntimeStatus',
    'AIStatus',
    'BeliefState',
    'Observation',
    'SafetyProfile',
    'RuntimeState',

    # Events
    'BaseEvent',
    'Boot',
    'LoadProtocol',
    'StartSession',
    'Interruption',
    'Resume',
    'Halt',
    'Tick',
    'BeliefUpdate',
    'PhaseTransition',
    'CycleComplete',
    'AdjustTempo',
    'SafetyInterdiction',
    'SympatheticOverride',
    'LoadSafetyRegistry',
    'AIIntervention',
    'AIVoiceMessage',
    'AIStatusChange',
    'KernelEvent',
    'parse_event',

    # Inference
    'AdaptiveStateEstimator',
    'UnscentedStateEstimator',

    # Safety
    'EMERGENCY_HALT',
    'SafetyViolation',
    'SafetyMonitor',
    'learn_from_session',
    'ResonanceWatchdog',

    # Control
    'ManualTempoLaw',
    'PIDController',
    'BiofeedbackMiddleware',
    'CueActuator',
    'cue_middleware',

    # Kernel
    'reduce',
    'replay',
    'HomeostaticKernel',
    'EventStore',
    'MemoryEventStore',
    'JsonlEventStore',
    'FixedStepDriver',
    'SimulatedClock',
    'ToolExecutor',
    'ToolResult',
]
