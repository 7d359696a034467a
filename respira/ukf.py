"""
Respira Unscented Estimator - Sigma-Point Alternative
=====================================================

Drop-in alternative to AdaptiveStateEstimator with the same
``set_protocol`` / ``update(observation, dt) -> BeliefState`` contract.

State vector:
    x = [arousal, d_arousal, valence, attention, rhythm]

Dynamics:
    - arousal is second order: logistic drag plus relaxation to target
    - valence peaks at moderate arousal (Yerkes-Dodson inverted U)
    - attention decays and is lifted by rhythm alignment
    - rhythm relaxes to target

Each measurement (heart rate, stress index, respiration, facial valence) is
folded in sequentially through its own nonlinear observation function and
gated at 3 sigma.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from .config import VitalsConfig
from .estimator import TARGETS, select_target, heart_rate_to_arousal, usable_heart_rate
from .patterns import BreathPattern
from .state import BeliefState, Observation

logger = logging.getLogger(__name__)


A, DA, V, ATT, RHY = range(5)
N_STATE = 5

TAU_AROUSAL = 15.0
TAU_AROUSAL_VEL = 5.0
TAU_ATTENTION = 5.0
TAU_RHYTHM = 10.0
TAU_VALENCE = 8.0

LOGISTIC_RATE = 0.1
VALENCE_OPTIMAL_AROUSAL = 0.4

_LOWER = np.array([0.0, -0.5, -1.0, 0.0, 0.0])
_UPPER = np.array([1.0, 0.5, 1.0, 1.0, 1.0])


@dataclass
class UKFConfig:
    """Noise model and sigma-point spread."""
    q: float = 0.01                 # Diagonal process noise per second
    r_hr: float = 0.15
    r_hrv: float = 0.25
    r_resp: float = 0.20
    r_valence: float = 0.30
    alpha: float = 0.001
    beta: float = 2.0
    kappa: float = 0.0
    outlier_threshold: float = 3.0
    min_hr_confidence: float = 0.3
    initial_variance: float = 0.2


Measurement = Tuple[float, Callable[[np.ndarray], np.ndarray], float]


class UnscentedStateEstimator:
    """Five-state unscented Kalman filter over the belief."""

    def __init__(
        self,
        config: Optional[UKFConfig] = None,
        vitals: Optional[VitalsConfig] = None,
    ):
        self.config = config or UKFConfig()
        self.vitals = vitals or VitalsConfig()
        self._target = TARGETS["default"]

        n = N_STATE
        cfg = self.config
        self._lambda = cfg.alpha ** 2 * (n + cfg.kappa) - n
        w0_m = self._lambda / (n + self._lambda)
        w0_c = w0_m + (1 - cfg.alpha ** 2 + cfg.beta)
        wi = 1.0 / (2 * (n + self._lambda))
        self._wm = np.full(2 * n + 1, wi)
        self._wc = np.full(2 * n + 1, wi)
        self._wm[0] = w0_m
        self._wc[0] = w0_c

        self._last_mahalanobis = 0.0
        self._last_innovation = 0.0
        self.reset()

    def reset(self) -> None:
        self.x = np.array([0.5, 0.0, 0.0, 0.5, 0.0])
        self.P = np.eye(N_STATE) * self.config.initial_variance

    def set_protocol(self, pattern: Optional[BreathPattern]) -> None:
        self._target = TARGETS[select_target(pattern)]

    def update(self, obs: Observation, dt: float) -> BeliefState:
        dt = max(0.0, float(dt))
        self._last_mahalanobis = 0.0
        self._last_innovation = 0.0
        self._predict(dt)
        for z, h, r in self._measurements(obs):
            self._correct(z, h, r)
        return self._to_belief()

    # =========================================================================
    # Model
    # =========================================================================

    def _dynamics(self, sigmas: np.ndarray, dt: float) -> np.ndarray:
        """Propagate a (2n+1, n) block of sigma points."""
        t_arousal, _, t_rhythm, t_valence = self._target
        a, da, v, att, r = sigmas.T

        dda = (
            -LOGISTIC_RATE * a * (1 - a)
            - da / TAU_AROUSAL_VEL
            + (t_arousal - a) / TAU_AROUSAL
        )
        v_target = t_valence - np.abs(a - VALENCE_OPTIMAL_AROUSAL) * 0.5

        out = np.empty_like(sigmas)
        out[:, A] = a + da * dt
        out[:, DA] = da + dda * dt
        out[:, V] = v + (v_target - v) / TAU_VALENCE * dt
        out[:, ATT] = att * math.exp(-dt / TAU_ATTENTION) + r * 0.1 * dt
        out[:, RHY] = r + (t_rhythm - r) / TAU_RHYTHM * dt
        return out

    def _measurements(self, obs: Observation) -> List[Measurement]:
        cfg = self.config
        out: List[Measurement] = []

        hr = usable_heart_rate(obs, self.vitals)
        if hr is not None and obs.hr_confidence is not None \
                and obs.hr_confidence > cfg.min_hr_confidence:
            r_hr = cfg.r_hr * (1 + (1 - obs.hr_confidence))
            out.append((heart_rate_to_arousal(hr), lambda s: s[:, A], r_hr))

        if obs.stress_index is not None:
            out.append((
                min(1.0, obs.stress_index / 300.0),
                lambda s: s[:, A] * (1 - s[:, RHY]),
                cfg.r_hrv,
            ))

        if obs.respiration_rate is not None:
            out.append((
                (obs.respiration_rate - 12.0) / 10.0,
                lambda s: 0.5 + 0.5 * s[:, A],
                cfg.r_resp,
            ))

        if obs.facial_valence is not None:
            out.append((obs.facial_valence, lambda s: s[:, V], cfg.r_valence))

        return out

    # =========================================================================
    # Unscented Transform
    # =========================================================================

    def _sqrt(self, cov: np.ndarray) -> np.ndarray:
        """Matrix square root, repairing a covariance that lost definiteness."""
        cov = 0.5 * (cov + cov.T)
        try:
            return np.linalg.cholesky(cov)
        except np.linalg.LinAlgError:
            eigval, eigvec = np.linalg.eigh(cov)
            eigval = np.maximum(eigval, 1e-9)
            return np.linalg.cholesky((eigvec * eigval) @ eigvec.T)

    def _sigma_points(self) -> np.ndarray:
        n = N_STATE
        offsets = self._sqrt(self.P).T * math.sqrt(n + self._lambda)
        return np.vstack([self.x, self.x + offsets, self.x - offsets])

    def _predict(self, dt: float) -> None:
        propagated = self._dynamics(self._sigma_points(), dt)
        x = self._wm @ propagated
        diff = propagated - x
        P = (self._wc[:, None] * diff).T @ diff
        self.P = P + np.eye(N_STATE) * self.config.q * dt
        self.x = np.clip(x, _LOWER, _UPPER)

    def _correct(self, z: float, h: Callable[[np.ndarray], np.ndarray], r: float) -> None:
        sigmas = self._sigma_points()
        z_sigmas = h(sigmas)
        z_pred = float(self._wm @ z_sigmas)

        z_diff = z_sigmas - z_pred
        s = float(self._wc @ (z_diff * z_diff)) + r
        pxz = (self._wc * z_diff) @ (sigmas - self.x)

        innovation = z - z_pred
        mahalanobis = abs(innovation) / math.sqrt(s)
        self._last_mahalanobis = max(self._last_mahalanobis, mahalanobis)
        if mahalanobis > self.config.outlier_threshold:
            logger.debug(f"UKF rejected measurement z={z:.3f} (mahalanobis={mahalanobis:.2f})")
            return

        gain = pxz / s
        self.x = np.clip(self.x + gain * innovation, _LOWER, _UPPER)
        self.P = self.P - np.outer(gain, gain) * s
        self.P = 0.5 * (self.P + self.P.T)
        self._last_innovation = innovation

    # =========================================================================
    # Output
    # =========================================================================

    def _to_belief(self) -> BeliefState:
        a, _, v, att, r = self.x
        t_arousal, _, t_rhythm, _ = self._target
        error = math.sqrt(0.5 * (a - t_arousal) ** 2 + 0.5 * (r - t_rhythm) ** 2)
        trace = float(np.trace(self.P)) / N_STATE
        return BeliefState(
            arousal=float(a),
            attention=float(att),
            rhythm_alignment=float(r),
            valence=float(v),
            arousal_variance=float(self.P[A, A]),
            attention_variance=float(self.P[ATT, ATT]),
            rhythm_variance=float(self.P[RHY, RHY]),
            prediction_error=error,
            innovation=float(self._last_innovation),
            mahalanobis_distance=float(self._last_mahalanobis),
            confidence=1.0 - trace,
        ).clamped()


__all__ = [
    "UKFConfig",
    "UnscentedStateEstimator",
]
