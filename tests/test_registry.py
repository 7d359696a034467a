#!/usr/bin/env python3
"""
test_registry.py - Trauma learning and registry helpers

Run with: pytest tests/test_registry.py -v
"""

import pytest

from respira.config import DAY_MS, RegistryConfig
from respira.patterns import PATTERNS
from respira.registry import (
    is_pattern_locked,
    learn_from_session,
    registry_from_dict,
    registry_to_dict,
    reset_registry,
    session_score,
)
from respira.state import BeliefState, SafetyProfile


T0 = 1_700_000_000_000.0

CALM = BeliefState(arousal=0.3, valence=0.0)
STRESSED = BeliefState(arousal=0.6, valence=0.0)


def bad_session(profile, pattern_id="4-7-8", now=T0):
    return learn_from_session(profile, PATTERNS[pattern_id], CALM, STRESSED, now)


# =============================================================================
# Scoring
# =============================================================================

class TestSessionScore:

    def test_no_change_scores_half(self):
        assert session_score(PATTERNS["calm"], CALM, CALM) == pytest.approx(0.5)

    def test_relaxing_success(self):
        score = session_score(PATTERNS["calm"], STRESSED, CALM)
        assert score == pytest.approx(0.65)

    def test_energizing_sign_corrected(self):
        # Arousal rising on an energizing pattern is the intended outcome
        score = session_score(PATTERNS["wim-hof"], CALM, STRESSED)
        assert score == pytest.approx(0.65)

    def test_valence_gain_helps(self):
        happier = BeliefState(arousal=0.3, valence=0.4)
        assert session_score(PATTERNS["calm"], CALM, happier) == pytest.approx(0.7)

    def test_clamped(self):
        worst = BeliefState(arousal=1.0, valence=-1.0)
        best = BeliefState(arousal=0.0, valence=1.0)
        assert session_score(PATTERNS["calm"], best, worst) == 0.0
        assert session_score(PATTERNS["calm"], worst, best) == 1.0


# =============================================================================
# Learning
# =============================================================================

class TestLearning:

    def test_first_session_creates_profile(self):
        profile = learn_from_session(None, PATTERNS["calm"], STRESSED, CALM, T0)
        assert profile.pattern_id == "calm"
        assert profile.resonance_history == (pytest.approx(0.65),)
        assert profile.resonance_score == pytest.approx(0.65)
        assert profile.last_incident_timestamp == T0

    def test_history_newest_first_and_capped(self):
        profile = None
        for i in range(7):
            end = BeliefState(arousal=0.3 - 0.02 * i)
            profile = learn_from_session(profile, PATTERNS["calm"], CALM, end, T0 + i)
        assert len(profile.resonance_history) == 5
        assert profile.resonance_history[0] > profile.resonance_history[-1]
        assert profile.resonance_score == pytest.approx(sum(profile.resonance_history) / 5)

    def test_lock_exactly_on_third_strike(self):
        profile = bad_session(None)
        assert profile.cummulative_stress_score == 1.0
        assert not profile.is_locked(T0)

        profile = bad_session(profile)
        assert profile.cummulative_stress_score == 2.0
        assert not profile.is_locked(T0)

        profile = bad_session(profile, now=T0 + 1)
        assert profile.is_locked(T0 + 2)
        assert profile.safety_lock_until == T0 + 1 + DAY_MS
        assert profile.cummulative_stress_score == 0.0

    def test_lock_expires(self):
        profile = bad_session(bad_session(bad_session(None)))
        assert profile.is_locked(T0 + DAY_MS - 1)
        assert not profile.is_locked(T0 + DAY_MS)

    def test_good_session_decays_strikes(self):
        profile = bad_session(bad_session(None))
        profile = learn_from_session(profile, PATTERNS["4-7-8"], CALM, CALM, T0)
        assert profile.cummulative_stress_score == 1.5
        profile = bad_session(profile)
        assert profile.cummulative_stress_score == 2.5
        assert not profile.is_locked(T0)

    def test_decay_floors_at_zero(self):
        profile = learn_from_session(None, PATTERNS["calm"], CALM, CALM, T0)
        assert profile.cummulative_stress_score == 0.0

    def test_energizing_pattern_never_strikes(self):
        profile = None
        for _ in range(5):
            profile = bad_session(profile, pattern_id="wim-hof")
        assert profile.cummulative_stress_score == 0.0
        assert not profile.is_locked(T0)

    def test_small_rise_is_not_a_strike(self):
        end = BeliefState(arousal=0.5)     # +0.2, not > 0.2
        profile = learn_from_session(None, PATTERNS["calm"], CALM, end, T0)
        assert profile.cummulative_stress_score == 0.0

    def test_custom_strike_count(self):
        cfg = RegistryConfig(strikes_to_lock=1)
        profile = learn_from_session(None, PATTERNS["calm"], CALM, STRESSED, T0, cfg)
        assert profile.is_locked(T0)


# =============================================================================
# Helpers
# =============================================================================

class TestRegistryHelpers:

    def test_is_pattern_locked(self):
        registry = {"calm": SafetyProfile("calm", safety_lock_until=T0 + 10)}
        assert is_pattern_locked(registry, "calm", T0)
        assert not is_pattern_locked(registry, "calm", T0 + 10)
        assert not is_pattern_locked(registry, "box", T0)

    def test_reset_one(self):
        registry = {
            "calm": SafetyProfile("calm", cummulative_stress_score=2, safety_lock_until=T0),
            "box": SafetyProfile("box", cummulative_stress_score=1, safety_lock_until=T0),
        }
        out = reset_registry(registry, "calm")
        assert out["calm"].safety_lock_until == 0.0
        assert out["calm"].cummulative_stress_score == 0.0
        assert out["box"].safety_lock_until == T0
        assert registry["calm"].safety_lock_until == T0

    def test_reset_all_keeps_history(self):
        registry = {
            "calm": SafetyProfile("calm", safety_lock_until=T0, resonance_history=(0.2,)),
            "box": SafetyProfile("box", safety_lock_until=T0),
        }
        out = reset_registry(registry)
        assert all(p.safety_lock_until == 0.0 for p in out.values())
        assert out["calm"].resonance_history == (0.2,)

    def test_serialisation(self):
        profile = bad_session(None)
        data = registry_to_dict({"4-7-8": profile})
        assert data["4-7-8"]["resonance_history"] == list(profile.resonance_history)
        assert registry_from_dict(data) == {"4-7-8": profile}

    def test_malformed_entries_skipped(self):
        data = {
            "calm": {"cummulative_stress_score": 1.0, "unknown_field": "x"},
            "box": "garbage",
            "awake": None,
        }
        out = registry_from_dict(data)
        assert list(out) == ["calm"]
        assert out["calm"].cummulative_stress_score == 1.0

    def test_none_is_empty(self):
        assert registry_from_dict(None) == {}
