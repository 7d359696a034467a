#!/usr/bin/env python3
"""
test_estimator.py - Belief estimators (adaptive filter and UKF)

Tests:
    1. Coherent heart rate pulls arousal down with rising confidence
    2. A single wild reading is bounded, or gated as an outlier
    3. Belief stays in its domain whatever the sensors report
    4. Sensor dropout degrades gracefully

Run with: pytest tests/test_estimator.py -v
"""

import pytest

from respira.config import EstimatorConfig
from respira.estimator import (
    AdaptiveStateEstimator,
    RHYTHM,
    TARGETS,
    VALENCE,
    VALENCE_VARIANCE,
    heart_rate_to_arousal,
    select_target,
)
from respira.patterns import PATTERNS
from respira.state import Observation
from respira.ukf import UnscentedStateEstimator


def obs(hr=None, conf=None, **kwargs):
    if hr is not None and conf is None:
        conf = 0.95
    return Observation(timestamp=0.0, delta_time=0.1, heart_rate=hr, hr_confidence=conf, **kwargs)


def feed(estimator, n, dt=0.1, **kwargs):
    belief = None
    for _ in range(n):
        belief = estimator.update(obs(**kwargs), dt)
    return belief


@pytest.fixture
def adaptive():
    est = AdaptiveStateEstimator()
    est.set_protocol(PATTERNS["coherence"])
    return est


@pytest.fixture
def ukf():
    est = UnscentedStateEstimator()
    est.set_protocol(PATTERNS["coherence"])
    return est


# =============================================================================
# Helpers
# =============================================================================

class TestHelpers:

    def test_heart_rate_map(self):
        assert heart_rate_to_arousal(50) == pytest.approx(0.0)
        assert heart_rate_to_arousal(120) == pytest.approx(1.0)
        assert heart_rate_to_arousal(220) > 1.0

    def test_select_target(self):
        assert select_target(None) == "default"
        assert select_target(PATTERNS["7-11"]) == "parasympathetic"
        assert select_target(PATTERNS["coherence"]) == "balanced"
        assert select_target(PATTERNS["wim-hof"]) == "sympathetic"

    def test_target_follows_protocol(self, adaptive):
        assert adaptive.target.tolist() == TARGETS["balanced"].tolist()
        adaptive.set_protocol(PATTERNS["deep-relax"])
        assert adaptive.target.tolist() == TARGETS["parasympathetic"].tolist()


# =============================================================================
# Adaptive Estimator
# =============================================================================

class TestAdaptiveEstimator:

    def test_coherent_heart_rate_converges(self, adaptive):
        belief = feed(adaptive, 20, hr=60, conf=0.95)
        assert belief.arousal < 0.3
        assert belief.confidence > 0.5

    def test_extreme_reading_bounded(self, adaptive):
        stable = feed(adaptive, 50, hr=60, conf=0.95)
        spiked = adaptive.update(obs(hr=220, conf=1.0), 0.1)
        # Measured arousal saturates at 1.0, so the step stays small
        assert spiked.mahalanobis_distance == pytest.approx(2.1, abs=0.2)
        assert 0.0 < spiked.arousal - stable.arousal < 0.15

    def test_outlier_gated(self):
        est = AdaptiveStateEstimator(EstimatorConfig(outlier_threshold=1.5))
        est.set_protocol(PATTERNS["coherence"])
        stable = feed(est, 50, hr=60, conf=0.95)
        spiked = est.update(obs(hr=220, conf=1.0), 0.1)
        assert spiked.mahalanobis_distance > 1.5
        assert spiked.innovation == 0.0
        assert abs(spiked.arousal - stable.arousal) < 0.01
        assert spiked.arousal_variance > stable.arousal_variance

    def test_measured_arousal_clamped(self):
        slow = AdaptiveStateEstimator()
        floor = AdaptiveStateEstimator()
        a = slow.update(obs(hr=35, conf=0.95), 0.1)
        b = floor.update(obs(hr=50, conf=0.95), 0.1)
        assert a.arousal == pytest.approx(b.arousal)
        assert a.innovation == pytest.approx(b.innovation)
        assert a.innovation < 0.0

    def test_sub_floor_confidence_still_counts(self):
        weak = AdaptiveStateEstimator().update(obs(hr=70, conf=0.29), 0.1)
        blind = AdaptiveStateEstimator().update(obs(), 0.1)
        assert weak.arousal == pytest.approx(blind.arousal)
        assert weak.confidence - blind.confidence == pytest.approx(0.3 * 0.29)

    def test_out_of_range_heart_rate_ignored(self, adaptive):
        before = feed(adaptive, 5, hr=60)
        after = adaptive.update(obs(hr=20, conf=1.0), 0.1)
        assert after.mahalanobis_distance == 0.0
        assert after.arousal_variance > before.arousal_variance

    def test_low_confidence_ignored(self, adaptive):
        belief = adaptive.update(obs(hr=120, conf=0.2), 0.1)
        assert belief.arousal == pytest.approx(0.5, abs=0.01)

    def test_dropout_grows_uncertainty(self, adaptive):
        first = adaptive.update(obs(), 0.1)
        later = feed(adaptive, 50)
        assert later.arousal_variance > first.arousal_variance
        assert later.rhythm_variance > first.rhythm_variance

    def test_distraction_lowers_attention(self, adaptive):
        start = adaptive.belief.attention
        belief = feed(adaptive, 20, visibility="hidden")
        assert belief.attention < start

    def test_presence_raises_attention(self, adaptive):
        start = adaptive.belief.attention
        belief = feed(adaptive, 20, hr=70)
        assert belief.attention > start

    def test_respiration_corrects_rhythm(self, adaptive):
        paced = PATTERNS["coherence"].breaths_per_minute
        belief = feed(adaptive, 30, respiration_rate=paced)
        assert belief.rhythm_alignment > 0.5

    def test_extreme_inputs_stay_in_bounds(self, adaptive):
        for hr in (220, 30, 219, 31):
            for _ in range(20):
                belief = adaptive.update(obs(
                    hr=hr, conf=1.0, stress_index=10_000, facial_valence=5.0,
                    respiration_rate=200.0,
                ), 0.1)
                assert belief.in_bounds()
        belief = feed(adaptive, 20, facial_valence=-5.0)
        assert belief.valence >= -1.0
        assert belief.in_bounds()

    def test_zero_dt(self, adaptive):
        belief = adaptive.update(obs(hr=60), 0.0)
        assert belief.in_bounds()

    def test_reset(self, adaptive):
        feed(adaptive, 20, hr=60)
        adaptive.reset()
        assert adaptive.belief.arousal == 0.5
        assert adaptive._var[VALENCE] == VALENCE_VARIANCE
        assert adaptive._var[RHYTHM] == adaptive.belief.rhythm_variance


# =============================================================================
# Unscented Estimator
# =============================================================================

class TestUnscentedEstimator:

    def test_coherent_heart_rate_lowers_arousal(self, ukf):
        belief = feed(ukf, 50, hr=60, conf=0.95)
        assert belief.arousal < 0.4

    def test_outlier_gated(self, ukf):
        stable = feed(ukf, 50, hr=60, conf=0.95)
        spiked = ukf.update(obs(hr=220, conf=1.0), 0.1)
        assert abs(spiked.arousal - stable.arousal) < 0.2
        assert spiked.mahalanobis_distance > 3.0

    def test_dropout_stays_bounded(self, ukf):
        belief = feed(ukf, 100)
        assert belief.in_bounds()
        assert 0.0 <= belief.confidence <= 1.0

    def test_extreme_inputs_stay_in_bounds(self, ukf):
        for _ in range(50):
            belief = ukf.update(obs(
                hr=219, conf=1.0, stress_index=5_000, facial_valence=3.0,
                respiration_rate=60.0,
            ), 0.1)
            assert belief.in_bounds()

    def test_same_contract_as_adaptive(self, ukf, adaptive):
        for est in (ukf, adaptive):
            est.set_protocol(None)
            belief = est.update(obs(hr=70), 0.1)
            assert belief.in_bounds()
