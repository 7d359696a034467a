"""
Respira Belief Estimator - Noisy Vitals In, Bounded Belief Out
==============================================================

A per-dimension Kalman-style filter over four latent variables:

    ┌──────────────┬─────────┬────────────────────────────────────────┐
    │ dimension    │ tau (s) │ evidence                               │
    ├──────────────┼─────────┼────────────────────────────────────────┤
    │ arousal      │  15     │ heart rate (0.6) + stress index (0.4)  │
    │ attention    │   5     │ visibility / pause interactions        │
    │ rhythm       │  10     │ respiration rate vs paced rate         │
    │ valence      │   8     │ facial valence (fixed 0.2 blend)       │
    └──────────────┴─────────┴────────────────────────────────────────┘

Predict:
    mean relaxes exponentially toward the protocol target,
    variance grows by q_base * dt (dead reckoning when sensors drop out).

Correct:
    Kalman gain with measurement noise inflated by (1 - confidence),
    gated by Mahalanobis distance. A rejected reading only bumps variance.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional

import numpy as np

from .config import EstimatorConfig, VitalsConfig
from .patterns import BreathPattern
from .state import BeliefState, Observation

logger = logging.getLogger(__name__)


# Dimension indices
AROUSAL, ATTENTION, RHYTHM, VALENCE = range(4)

# Relaxation time constants (seconds)
TAU = np.array([15.0, 5.0, 10.0, 8.0])

TARGETS: Dict[str, np.ndarray] = {
    "parasympathetic": np.array([0.2, 0.5, 0.8, 0.6]),
    "balanced": np.array([0.4, 0.7, 0.9, 0.5]),
    "sympathetic": np.array([0.7, 0.8, 0.6, 0.7]),
    "default": np.array([0.5, 0.6, 0.7, 0.5]),
}

# Valence has no sensor correction; its variance is carried but never reported
VALENCE_VARIANCE = 0.3

_LOWER = np.array([0.0, 0.0, 0.0, -1.0])
_UPPER = np.array([1.0, 1.0, 1.0, 1.0])


def select_target(pattern: Optional[BreathPattern]) -> str:
    """Target state name for a pattern's arousal impact."""
    if pattern is None:
        return "default"
    if pattern.arousal_impact < -0.5:
        return "parasympathetic"
    if pattern.arousal_impact > 0.5:
        return "sympathetic"
    return "balanced"


def heart_rate_to_arousal(heart_rate: float) -> float:
    """Linear map: 50 bpm → 0, 120 bpm → 1. Not clamped."""
    return (heart_rate - 50.0) / 70.0


def prediction_error(mean: np.ndarray, target: np.ndarray) -> float:
    """Weighted RMS distance on arousal and rhythm."""
    e_arousal = mean[AROUSAL] - target[AROUSAL]
    e_rhythm = mean[RHYTHM] - target[RHYTHM]
    return math.sqrt(0.5 * e_arousal ** 2 + 0.5 * e_rhythm ** 2)


def usable_heart_rate(obs: Observation, vitals: VitalsConfig) -> Optional[float]:
    """Heart rate if physiologically possible, else None."""
    hr = obs.heart_rate
    if hr is None or not math.isfinite(hr):
        return None
    if hr < vitals.hr_hard_min or hr > vitals.hr_hard_max:
        return None
    return hr


class AdaptiveStateEstimator:
    """
    Canonical belief estimator.

    Example:
        estimator = AdaptiveStateEstimator()
        estimator.set_protocol(PATTERNS["coherence"])
        belief = estimator.update(observation, dt=0.1)
    """

    def __init__(
        self,
        config: Optional[EstimatorConfig] = None,
        vitals: Optional[VitalsConfig] = None,
    ):
        self.config = config or EstimatorConfig()
        self.vitals = vitals or VitalsConfig()
        self._pattern: Optional[BreathPattern] = None
        self._target = TARGETS["default"]
        self.reset()

    def reset(self) -> None:
        """Back to the high-uncertainty boot belief."""
        initial = BeliefState()
        self._mean = np.array([
            initial.arousal, initial.attention,
            initial.rhythm_alignment, initial.valence,
        ])
        self._var = np.array([
            initial.arousal_variance, initial.attention_variance,
            initial.rhythm_variance, VALENCE_VARIANCE,
        ])
        self._belief = initial

    def set_protocol(self, pattern: Optional[BreathPattern]) -> None:
        self._pattern = pattern
        self._target = TARGETS[select_target(pattern)]

    @property
    def belief(self) -> BeliefState:
        return self._belief

    @property
    def target(self) -> np.ndarray:
        return self._target.copy()

    def update(self, obs: Observation, dt: float) -> BeliefState:
        """Advance one control step and return the new belief."""
        cfg = self.config
        dt = max(0.0, float(dt))

        # Predict
        alpha = 1.0 - np.exp(-dt / TAU)
        predicted = self._mean + alpha * (self._target - self._mean)
        mean = predicted.copy()
        var = self._var + cfg.q_base * dt

        innovation = 0.0
        mahalanobis = 0.0
        # Raw sensor confidence counts toward belief confidence even below the floor
        sensor_confidence = float(np.clip(obs.hr_confidence or 0.0, 0.0, 1.0))

        # Correct: arousal from heart rate (+ stress index)
        hr = usable_heart_rate(obs, self.vitals)
        hr_conf = obs.hr_confidence
        if hr is not None and hr_conf is not None and hr_conf > cfg.min_hr_confidence:
            measured = heart_rate_to_arousal(hr)
            if obs.stress_index is not None:
                stress_norm = min(1.0, obs.stress_index / 300.0)
                measured = cfg.hr_weight * measured + cfg.stress_weight * stress_norm
            measured = float(np.clip(measured, 0.0, 1.0))

            r = cfg.r_base
            if cfg.adaptive_r:
                r += (1.0 - sensor_confidence) * cfg.r_adaptation_rate

            residual = measured - mean[AROUSAL]
            s = var[AROUSAL] + r
            mahalanobis = math.sqrt(residual * residual / s)

            if mahalanobis < cfg.outlier_threshold:
                gain = var[AROUSAL] / s
                mean[AROUSAL] += gain * residual
                var[AROUSAL] = (1.0 - gain) * var[AROUSAL]
                innovation = residual
            else:
                var[AROUSAL] += cfg.outlier_variance_bump
                logger.debug(
                    f"Rejected heart-rate outlier: hr={hr:.0f} "
                    f"mahalanobis={mahalanobis:.2f}"
                )
        else:
            # No usable vitals: presence is less certain
            mean[ATTENTION] -= 0.01 * dt

        # Correct: rhythm from respiration against the paced rate
        if obs.respiration_rate is not None and self._pattern is not None:
            paced = self._pattern.breaths_per_minute
            if paced > 0 and obs.respiration_rate >= 0:
                measured = 1.0 - min(1.0, abs(obs.respiration_rate - paced) / paced)
                residual = measured - mean[RHYTHM]
                s = var[RHYTHM] + cfg.r_base
                distance = math.sqrt(residual * residual / s)
                if distance < cfg.outlier_threshold:
                    gain = var[RHYTHM] / s
                    mean[RHYTHM] += gain * residual
                    var[RHYTHM] = (1.0 - gain) * var[RHYTHM]
                else:
                    var[RHYTHM] += cfg.outlier_variance_bump

        if obs.facial_valence is not None:
            rate = cfg.valence_rate
            mean[VALENCE] = (1.0 - rate) * mean[VALENCE] + rate * obs.facial_valence

        if obs.is_distracted:
            mean[ATTENTION] = predicted[ATTENTION] * 0.95
        else:
            mean[ATTENTION] = min(1.0, mean[ATTENTION] + 0.15 * dt)

        mean = np.clip(mean, _LOWER, _UPPER)
        var = np.maximum(var, 0.0)
        self._mean = mean
        self._var = var

        certainty = 1.0 - min(1.0, (var[AROUSAL] + var[ATTENTION]) / 2.0)
        confidence = 0.7 * certainty + 0.3 * sensor_confidence

        self._belief = BeliefState(
            arousal=float(mean[AROUSAL]),
            attention=float(mean[ATTENTION]),
            rhythm_alignment=float(mean[RHYTHM]),
            valence=float(mean[VALENCE]),
            arousal_variance=float(var[AROUSAL]),
            attention_variance=float(var[ATTENTION]),
            rhythm_variance=float(var[RHYTHM]),
            prediction_error=prediction_error(mean, self._target),
            innovation=float(innovation),
            mahalanobis_distance=float(mahalanobis),
            confidence=float(confidence),
        ).clamped()
        return self._belief


__all__ = [
    "AROUSAL",
    "ATTENTION",
    "RHYTHM",
    "VALENCE",
    "TAU",
    "TARGETS",
    "VALENCE_VARIANCE",
    "select_target",
    "heart_rate_to_arousal",
    "prediction_error",
    "usable_heart_rate",
    "AdaptiveStateEstimator",
]
