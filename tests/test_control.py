#!/usr/bin/env python3
"""
test_control.py - Tempo control law, PID alternative, biofeedback middleware

Run with: pytest tests/test_control.py -v
"""

import pytest

from respira.config import ControllerConfig, KernelConfig, PIDConfig, TempoConfig
from respira.control import (
    LOW_ALIGNMENT,
    RESONANCE_RESTORE,
    BiofeedbackMiddleware,
    CommandQueue,
    ManualTempoLaw,
    PIDController,
    create_tempo_controller,
)
from respira.effectors import MockCueActuator, cue_middleware, phase_to_cue
from respira.events import AdjustTempo, AIStatusChange, BeliefUpdate, PhaseTransition, Tick
from respira.patterns import PATTERNS, BreathPhase
from respira.state import AIStatus, BeliefState, Observation, RuntimeState, RuntimeStatus


T0 = 1_700_000_000_000.0


class RecordingQueue(CommandQueue):
    def __init__(self):
        self.commands = []

    def queue(self, command):
        self.commands.append(command)


def running(alignment, tempo=1.0, session_s=12.0, status=RuntimeStatus.RUNNING):
    return RuntimeState(
        status=status,
        pattern=PATTERNS["coherence"],
        tempo_scale=tempo,
        session_duration=session_s,
        belief=BeliefState(rhythm_alignment=alignment),
    )


def belief_event(ts=T0, alignment=0.0):
    return BeliefUpdate(belief=BeliefState(rhythm_alignment=alignment), timestamp=ts)


# =============================================================================
# Manual Law
# =============================================================================

class TestManualTempoLaw:

    @pytest.fixture
    def law(self):
        return ManualTempoLaw(TempoConfig())

    def test_struggling_slows_down(self, law):
        assert law.compute(0.8 - 0.2, 0.1) == pytest.approx(0.002)

    def test_resonant_speeds_back(self, law):
        assert law.compute(0.8 - 0.9, 0.1) == pytest.approx(-0.001)

    def test_hold_band(self, law):
        for alignment in (0.36, 0.5, 0.8):
            assert law.compute(0.8 - alignment, 0.1) == 0.0


# =============================================================================
# PID
# =============================================================================

class TestPIDController:

    @pytest.fixture
    def pid(self):
        return PIDController(PIDConfig())

    def test_proportional_first_step(self, pid):
        cfg = pid.config
        out = pid.compute(0.5, 0.1)
        expected = cfg.kp * 0.5 + cfg.ki * 0.05 + cfg.kd * cfg.derivative_alpha * 5.0
        assert out == pytest.approx(expected)

    def test_invalid_dt(self, pid):
        assert pid.compute(1.0, 0.0) == 0.0
        assert pid.compute(1.0, -1.0) == 0.0
        assert pid.compute(1.0, float("nan")) == 0.0
        assert pid.integral == 0.0

    def test_anti_windup(self, pid):
        for _ in range(1000):
            pid.compute(10.0, 0.1)
        assert pid.integral == pytest.approx(pid.config.integral_max)

    def test_output_clamped(self, pid):
        assert pid.compute(1000.0, 0.1) == pytest.approx(0.4)
        pid.reset()
        assert pid.compute(-1000.0, 0.1) == pytest.approx(-0.6)

    def test_reset(self, pid):
        pid.compute(1.0, 0.1)
        pid.reset()
        assert pid.get_diagnostics()["total"] == 0.0
        assert pid.integral == 0.0

    def test_set_gains(self, pid):
        pid.set_gains(kp=1.0)
        assert pid.config.kp == 1.0
        assert pid.config.ki == PIDConfig().ki


class TestControllerFactory:

    def test_kinds(self):
        assert isinstance(create_tempo_controller(KernelConfig()), ManualTempoLaw)
        cfg = KernelConfig(controller=ControllerConfig(kind="pid"))
        assert isinstance(create_tempo_controller(cfg), PIDController)

    def test_unknown_kind(self):
        cfg = KernelConfig(controller=ControllerConfig(kind="bang-bang"))
        with pytest.raises(ValueError):
            create_tempo_controller(cfg)


# =============================================================================
# Biofeedback Middleware
# =============================================================================

class TestBiofeedbackMiddleware:

    @pytest.fixture
    def middleware(self):
        return BiofeedbackMiddleware(ManualTempoLaw(), TempoConfig())

    def test_low_alignment_queues_slowdown(self, middleware):
        api = RecordingQueue()
        after = running(0.2)
        middleware(belief_event(), after, after, api)
        assert len(api.commands) == 1
        command = api.commands[0]
        assert isinstance(command, AdjustTempo)
        assert command.scale == pytest.approx(1.002)
        assert command.reason == LOW_ALIGNMENT
        assert command.timestamp == T0

    def test_resonance_drifts_toward_baseline(self, middleware):
        api = RecordingQueue()
        after = running(0.9, tempo=1.1)
        middleware(belief_event(), after, after, api)
        assert api.commands[0].scale == pytest.approx(1.099)
        assert api.commands[0].reason == RESONANCE_RESTORE

    def test_baseline_holds_when_resonant(self, middleware):
        api = RecordingQueue()
        after = running(0.9, tempo=1.0)
        middleware(belief_event(), after, after, api)
        assert api.commands == []

    def test_soft_cap(self, middleware):
        api = RecordingQueue()
        after = running(0.1, tempo=1.3)
        middleware(belief_event(), after, after, api)
        assert api.commands == []

    def test_warmup(self, middleware):
        api = RecordingQueue()
        after = running(0.1, session_s=9.0)
        middleware(belief_event(), after, after, api)
        assert api.commands == []

    def test_not_running(self, middleware):
        api = RecordingQueue()
        after = running(0.1, status=RuntimeStatus.PAUSED)
        middleware(belief_event(), after, after, api)
        assert api.commands == []

    def test_ignores_other_events(self, middleware):
        api = RecordingQueue()
        after = running(0.1)
        tick = Tick(observation=Observation(timestamp=T0, delta_time=0.1), timestamp=T0)
        middleware(tick, after, after, api)
        assert api.commands == []

    def test_pid_variant(self):
        middleware = BiofeedbackMiddleware(PIDController(), TempoConfig())
        api = RecordingQueue()
        after = running(0.0)
        middleware(belief_event(T0), after, after, api)
        middleware(belief_event(T0 + 100), after, after, api)
        assert api.commands
        assert all(1.0 < c.scale <= 1.3 for c in api.commands)
        assert middleware.get_stats()["controller"] == "PIDController"


# =============================================================================
# Cue Middleware
# =============================================================================

class TestCueMiddleware:

    def test_phase_to_cue(self):
        assert phase_to_cue(BreathPhase.INHALE) == "inhale"
        assert phase_to_cue(BreathPhase.EXHALE) == "exhale"
        assert phase_to_cue(BreathPhase.HOLD_IN) == "hold"
        assert phase_to_cue(BreathPhase.HOLD_OUT) == "hold"

    def test_phase_transition_plays_cue(self):
        actuator = MockCueActuator()
        mw = cue_middleware(actuator)
        after = RuntimeState(
            status=RuntimeStatus.RUNNING, phase=BreathPhase.EXHALE, phase_duration=6.0,
        )
        event = PhaseTransition(from_phase=BreathPhase.INHALE, to_phase=BreathPhase.EXHALE, timestamp=T0)
        mw(event, after, after, RecordingQueue())
        assert actuator.cues == [("exhale", 6.0)]
        assert actuator.haptics == ["exhale"]

    def test_ai_speaking_ducks(self):
        actuator = MockCueActuator()
        mw = cue_middleware(actuator)
        speaking = RuntimeState(ai_status=AIStatus.SPEAKING)
        mw(AIStatusChange(status=AIStatus.SPEAKING, timestamp=T0), speaking, speaking, RecordingQueue())
        assert actuator.ducked
        idle = RuntimeState(ai_status=AIStatus.CONNECTED)
        mw(AIStatusChange(status=AIStatus.CONNECTED, timestamp=T0), idle, idle, RecordingQueue())
        assert not actuator.ducked
