"""
Respira Kernel Configuration - Bounds, Gains & Thresholds
=========================================================

Every number the control loop depends on lives here: tempo bounds and rate
limits, estimator noise parameters, watchdog windows, registry learning rates.

Config is plain dataclasses grouped into sections. Sections round-trip through
``to_dict()`` / ``from_dict()`` and the whole tree can be stored as YAML:

    config = load_config(Path("respira.yaml"))
    save_config(config, Path("respira.yaml"))
"""

from __future__ import annotations

import os
import yaml
import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class _Section:
    """Shared dict conversion for config sections."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = value.to_dict() if is_dataclass(value) else value
        return out

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]):
        """Create from dictionary, ignoring unknown keys."""
        d = d or {}
        kwargs = {}
        for f in fields(cls):
            if f.name not in d:
                continue
            value = d[f.name]
            default = getattr(cls(), f.name)
            if isinstance(default, _Section):
                value = type(default).from_dict(value)
            kwargs[f.name] = value
        return cls(**kwargs)


# =============================================================================
# Sections
# =============================================================================

@dataclass
class ClockConfig(_Section):
    """Fixed-timestep driver settings."""
    control_hz: float = 10.0            # Control ticks per second
    max_frame_dt_s: float = 0.1         # Per-frame wall-clock delta cap
    max_steps_per_frame: int = 3        # Catch-up ceiling after a stall


@dataclass
class VitalsConfig(_Section):
    """Plausible heart-rate ranges (bpm)."""
    hr_hard_min: float = 30.0           # Below this the reading is discarded
    hr_hard_max: float = 220.0          # Above this the reading is discarded
    hr_soft_min: float = 40.0
    hr_soft_max: float = 200.0


@dataclass
class TempoConfig(_Section):
    """Tempo bounds and the biofeedback control law."""
    min_scale: float = 0.8
    max_scale: float = 1.4
    max_rate_per_s: float = 0.1         # Max |d tempo| per second
    baseline: float = 1.0
    soft_cap: float = 1.3               # Control law never pushes above this
    up_step: float = 0.002
    down_step: float = 0.001
    low_alignment: float = 0.35         # Below: user struggling, slow down
    high_alignment: float = 0.8         # Above: resonance, drift back to 1.0
    deadband: float = 0.001             # Smaller proposals are not queued
    control_after_s: float = 10.0       # No adaptation before this
    convergence_after_s: float = 60.0   # Liveness window
    convergence_tolerance: float = 0.1


@dataclass
class EstimatorConfig(_Section):
    """Belief estimator noise model."""
    kind: str = "adaptive"              # adaptive | ukf
    q_base: float = 0.015               # Process noise per second
    r_base: float = 0.15                # Measurement noise floor
    adaptive_r: bool = True
    r_adaptation_rate: float = 0.2      # Extra noise at zero confidence
    outlier_threshold: float = 3.0      # Mahalanobis gate (sigma)
    outlier_variance_bump: float = 0.01
    min_hr_confidence: float = 0.3
    hr_weight: float = 0.6
    stress_weight: float = 0.4
    valence_rate: float = 0.2


@dataclass
class PIDConfig(_Section):
    """Gains for the PID tempo controller."""
    kp: float = 0.003
    ki: float = 0.0002
    kd: float = 0.008
    integral_max: float = 5.0
    output_min: float = -0.6
    output_max: float = 0.4
    derivative_alpha: float = 0.15      # Low-pass factor on the D term


@dataclass
class ControllerConfig(_Section):
    """Tempo controller selection."""
    kind: str = "manual"                # manual | pid
    pid: PIDConfig = field(default_factory=PIDConfig)


@dataclass
class WatchdogConfig(_Section):
    """Resonance watchdog windows."""
    max_divergence_s: float = 30.0
    divergence_threshold: float = 0.6
    tempo_tolerance: float = 0.01
    trauma_window_s: float = 5.0
    trauma_arousal: float = 0.7
    fallback_pattern: str = "deep-relax"


@dataclass
class SafetyLimits(_Section):
    """Safety monitor thresholds."""
    critical_prediction_error: float = 0.95
    min_session_s_before_emergency: float = 10.0
    max_violations: int = 100


@dataclass
class RegistryConfig(_Section):
    """Trauma registry learning."""
    history_size: int = 5
    strike_arousal_delta: float = 0.2
    strikes_to_lock: int = 3
    strike_decay: float = 0.5
    lock_duration_ms: float = DAY_MS
    energizing_threshold: float = 0.1


@dataclass
class KernelLimits(_Section):
    """Kernel resource bounds."""
    max_log_size: int = 1000
    max_queue_depth: int = 5
    notify_interval_ms: float = 16.0


@dataclass
class PersistenceConfig(_Section):
    """Event log persistence."""
    retention_ms: float = 7 * DAY_MS
    data_dir: str = "~/.respira"

    def get_data_path(self) -> Path:
        """Get expanded data directory path."""
        return Path(os.path.expanduser(self.data_dir))


# =============================================================================
# Complete Configuration
# =============================================================================

@dataclass
class KernelConfig(_Section):
    """Complete kernel configuration."""
    clock: ClockConfig = field(default_factory=ClockConfig)
    vitals: VitalsConfig = field(default_factory=VitalsConfig)
    tempo: TempoConfig = field(default_factory=TempoConfig)
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    safety: SafetyLimits = field(default_factory=SafetyLimits)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    kernel: KernelLimits = field(default_factory=KernelLimits)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)


# =============================================================================
# Loading Functions
# =============================================================================

_config_search_paths: List[Path] = [
    Path("respira.yaml"),
    Path("config/respira.yaml"),
    Path.home() / ".respira" / "config.yaml",
]


def load_config(path: Optional[Path] = None) -> KernelConfig:
    """Load kernel configuration from YAML.

    Args:
        path: Explicit config path. When omitted, ``$RESPIRA_CONFIG`` and the
            default search paths are tried in order.

    Returns:
        Loaded configuration, or defaults when nothing usable is found
    """
    config_path = Path(path) if path else None
    if config_path is None:
        env_path = os.environ.get("RESPIRA_CONFIG")
        candidates = ([Path(env_path)] if env_path else []) + _config_search_paths
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path and config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f)
            config = KernelConfig.from_dict(data or {})
            logger.info(f"Loaded kernel config from {config_path}")
            return config
        except Exception as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")

    return KernelConfig()


def save_config(config: KernelConfig, path: Path) -> None:
    """Save kernel configuration as YAML."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Saved kernel config to {path}")


__all__ = [
    "ClockConfig",
    "VitalsConfig",
    "TempoConfig",
    "EstimatorConfig",
    "PIDConfig",
    "ControllerConfig",
    "WatchdogConfig",
    "SafetyLimits",
    "RegistryConfig",
    "KernelLimits",
    "PersistenceConfig",
    "KernelConfig",
    "load_config",
    "save_config",
    "HOUR_MS",
    "DAY_MS",
]
