"""
Respira Homeostatic Kernel - The Event-Sourced Control Loop
===========================================================

One kernel per process, constructed explicitly and passed to whoever needs it.

Dispatch pipeline:

    event ──▶ [guard] ──▶ [log + persist] ──▶ [reduce] ──▶ [derive]
                 │                                            │
         drop / correct / pass                                ▼
                                                       [middlewares] ──▶ command queue
                                                              │            (≤5 per dispatch,
                                                              ▼             breadth-first)
                                                         [subscribers]

Tick:

    observation ──▶ estimator ──▶ BELIEF_UPDATE ──▶ watchdog ──▶ phase machine ──▶ TICK

HALT skips the guard, runs trauma learning first, and is never refused.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from .config import KernelConfig
from .control import BiofeedbackMiddleware, CommandQueue, Middleware, TempoController, create_tempo_controller
from .estimator import AdaptiveStateEstimator
from .events import (
    BaseEvent,
    BeliefUpdate,
    Boot,
    CycleComplete,
    Halt,
    LoadProtocol,
    LoadSafetyRegistry,
    PhaseTransition,
    SafetyInterdiction,
    StartSession,
    SympatheticOverride,
    Tick,
    event_type,
)
from .patterns import PATTERNS, is_cycle_boundary, next_phase_skip_zero
from .persistence import EventStore, PersistenceWorker
from .reducer import reduce, with_derived
from .registry import is_pattern_locked, learn_from_session, registry_from_dict, registry_to_dict, reset_registry
from .safety import SafetyMonitor
from .state import Observation, RuntimeState, RuntimeStatus, SafetyProfile, initial_state
from .ukf import UnscentedStateEstimator
from .watchdog import ResonanceWatchdog

logger = logging.getLogger(__name__)


Clock = Callable[[], float]
Subscriber = Callable[[RuntimeState], None]

REGISTRY_META_KEY = "safety_registry"

# SAFETY_INTERDICTION actions raised by the kernel's own protocol checks
UNKNOWN_PATTERN = "UNKNOWN_PATTERN"
PATTERN_LOCKED = "PATTERN_LOCKED"
REJECT_LOAD = "REJECT_LOAD"
REJECT_START = "REJECT_START"


def wall_clock_ms() -> float:
    return time.time() * 1000.0


def create_estimator(config: Optional[KernelConfig] = None):
    """Estimator named by ``config.estimator.kind``."""
    config = config or KernelConfig()
    kind = config.estimator.kind
    if kind == "adaptive":
        return AdaptiveStateEstimator(config.estimator, config.vitals)
    if kind == "ukf":
        return UnscentedStateEstimator(vitals=config.vitals)
    raise ValueError(f"Unknown estimator kind: {kind!r}")


class _KernelAPI(CommandQueue):
    """Queue handle given to middlewares."""

    def __init__(self, kernel: 'HomeostaticKernel'):
        self._kernel = kernel

    def queue(self, command: BaseEvent) -> None:
        self._kernel._enqueue(command)


class HomeostaticKernel:
    """
    The kernel - sole owner of RuntimeState.

    Example:
        kernel = HomeostaticKernel(store=JsonlEventStore(Path("~/.respira")))
        kernel.dispatch(LoadProtocol(pattern_id="4-7-8", timestamp=now))
        kernel.dispatch(StartSession(timestamp=now))
        kernel.tick(0.1, observation)
        kernel.get_state().status          # RuntimeStatus.RUNNING
    """

    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        clock: Optional[Clock] = None,
        store: Optional[EventStore] = None,
        estimator: Optional[Any] = None,
        controller: Optional[TempoController] = None,
        monitor: Optional[SafetyMonitor] = None,
        watchdog: Optional[ResonanceWatchdog] = None,
    ):
        """
        Initialize the kernel and boot it.

        Args:
            config: Kernel configuration (defaults if omitted)
            clock: Callable returning epoch milliseconds
            store: Persistence collaborator; None keeps everything in memory
            estimator: Anything with set_protocol() / update(obs, dt)
            controller: Tempo controller for the biofeedback middleware
            monitor: Safety monitor
            watchdog: Resonance watchdog
        """
        self.config = config or KernelConfig()
        self._clock = clock or wall_clock_ms

        self.monitor = monitor or SafetyMonitor(self.config)
        self.watchdog = watchdog or ResonanceWatchdog(self.config.watchdog, self.config.tempo)
        self.estimator = estimator or create_estimator(self.config)

        limits = self.config.kernel
        self._state = initial_state(self._clock())
        self._log: Deque[BaseEvent] = deque(maxlen=limits.max_log_size)
        self._queue: Deque[BaseEvent] = deque()
        self._inbox: Deque[Any] = deque()
        self._middlewares: List[Middleware] = []
        self._subscribers: List[Subscriber] = []
        self._api = _KernelAPI(self)
        self._in_dispatch = False

        self._last_notify_ms = -math.inf
        self._last_notified: Optional[RuntimeState] = None

        self._stats = {
            "dispatched": 0,
            "dropped": 0,
            "corrected": 0,
            "queued": 0,
            "carried_over": 0,
            "middleware_errors": 0,
            "subscriber_errors": 0,
        }

        self.store = store
        self._worker: Optional[PersistenceWorker] = PersistenceWorker() if store else None

        self.biofeedback = BiofeedbackMiddleware(
            controller or create_tempo_controller(self.config), self.config.tempo,
        )
        self.use(self.biofeedback)

        self.dispatch(Boot(timestamp=self._clock()))
        self._boot_persistence()
        logger.info(f"HomeostaticKernel booted (estimator={type(self.estimator).__name__})")

    # =========================================================================
    # Public API
    # =========================================================================

    def get_state(self) -> RuntimeState:
        return self._state

    def get_log_buffer(self) -> List[BaseEvent]:
        """Recent events, oldest first."""
        return list(self._log)

    def use(self, middleware: Middleware) -> None:
        self._middlewares.append(middleware)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register an observer; it immediately receives the current state."""
        self._subscribers.append(callback)
        self._call_subscriber(callback, self._state)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def dispatch(self, event: BaseEvent) -> None:
        """Submit one event. Never raises for bad input."""
        if self._in_dispatch:
            # Re-entrant call from a subscriber or middleware
            if isinstance(event, Halt):
                self._queue.appendleft(event)
            else:
                self._queue.append(event)
            return

        self._in_dispatch = True
        try:
            self._drain_inbox()
            self._dispatch_one(event)
        finally:
            self._in_dispatch = False

    def tick(self, dt: float, observation: Observation) -> None:
        """One control step driven by the fixed-step driver."""
        if self._in_dispatch:
            logger.warning("tick() called re-entrantly, ignored")
            return

        self._in_dispatch = True
        try:
            self._drain_inbox()
            now = self._clock()

            self.estimator.set_protocol(self._state.pattern)
            belief = self.estimator.update(observation, dt)
            self._dispatch_one(BeliefUpdate(belief=belief, timestamp=now))

            state = self._state
            if state.status == RuntimeStatus.RUNNING:
                for command in self.watchdog.inspect(state, dt, now):
                    self._enqueue(command)

            state = with_derived(self._state, now)
            if (
                state.status == RuntimeStatus.RUNNING
                and state.pattern is not None
                and state.phase_elapsed >= state.phase_duration
            ):
                following = next_phase_skip_zero(state.phase, state.pattern)
                self._dispatch_one(PhaseTransition(
                    from_phase=state.phase, to_phase=following, timestamp=now,
                ))
                if is_cycle_boundary(state.phase, following):
                    self._dispatch_one(CycleComplete(count=state.cycle_count + 1, timestamp=now))

            self._dispatch_one(Tick(observation=observation, timestamp=now))
        finally:
            self._in_dispatch = False

    def load_safety_registry(self, registry: Mapping[str, Any]) -> None:
        """Replace the registry (profiles or their dict form)."""
        self.dispatch(LoadSafetyRegistry(
            registry=registry_from_dict(registry), timestamp=self._clock(),
        ))

    def update_safety_profile(self, pattern_id: str, profile: SafetyProfile) -> None:
        registry = dict(self._state.safety_registry)
        registry[pattern_id] = profile
        self.dispatch(LoadSafetyRegistry(registry=registry, timestamp=self._clock()))

    def reset_safety_profile(self, pattern_id: Optional[str] = None) -> None:
        """User-initiated reset: clears locks and stress, releases SAFETY_LOCK."""
        registry = reset_registry(self._state.safety_registry, pattern_id)
        logger.info(f"Safety registry reset ({pattern_id or 'all patterns'})")
        self.dispatch(LoadSafetyRegistry(registry=registry, reset=True, timestamp=self._clock()))

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for pending persistence I/O."""
        if self._worker is None:
            return True
        return self._worker.flush(timeout)

    def close(self) -> None:
        if self._worker is not None:
            self._worker.close()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["log_size"] = len(self._log)
        stats["queue_size"] = len(self._queue)
        stats["safety"] = self.monitor.get_stats()
        stats["biofeedback"] = self.biofeedback.get_stats()
        if self._worker is not None:
            stats["persistence_failures"] = self._worker.failures
        return stats

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _dispatch_one(self, event: BaseEvent) -> None:
        self._process(event)
        self._drain_queue()

    def _enqueue(self, command: BaseEvent) -> None:
        self._stats["queued"] += 1
        self._queue.append(command)

    def _drain_queue(self) -> None:
        """Process up to max_queue_depth queued commands, breadth-first."""
        budget = self.config.kernel.max_queue_depth
        processed = 0
        while self._queue and processed < budget:
            command = self._queue.popleft()
            processed += 1
            self._process(command)
        if self._queue:
            self._stats["carried_over"] += len(self._queue)
            logger.debug(f"Command queue budget spent, {len(self._queue)} carried to next dispatch")

    def _process(self, event: BaseEvent, trusted: bool = False) -> None:
        now = self._clock()
        self._stats["dispatched"] += 1
        before = with_derived(self._state, now)

        if isinstance(event, Halt):
            self._learn_from_session(before, now)
            self.watchdog.reset()
            applied: Optional[BaseEvent] = event
        elif trusted:
            applied = event
        else:
            applied = self._guard(event, before, now)
            if applied is None:
                self._stats["dropped"] += 1
                return
            if applied is not event:
                self._stats["corrected"] += 1

        if isinstance(applied, SympatheticOverride):
            self._learn_from_session(before, now)
            self.watchdog.reset()

        before = with_derived(self._state, now)
        self._log.append(applied)
        if not isinstance(applied, Tick):
            self._persist_event(applied)

        after = with_derived(reduce(before, applied), now)
        self._state = after

        if isinstance(applied, LoadSafetyRegistry):
            self._persist_registry(after.safety_registry)
        if after.status != before.status:
            logger.info(f"Status {before.status.value} → {after.status.value} ({event_type(applied)})")

        for middleware in list(self._middlewares):
            try:
                middleware(applied, before, after, self._api)
            except Exception:
                self._stats["middleware_errors"] += 1
                logger.exception(f"Middleware {middleware!r} failed on {event_type(applied)}")

        self._notify(after, now)

    def _guard(self, event: BaseEvent, state: RuntimeState, now: float) -> Optional[BaseEvent]:
        """Protocol checks, then the safety monitor."""
        if isinstance(event, LoadProtocol):
            if state.status == RuntimeStatus.SAFETY_LOCK:
                self._interdict(REJECT_LOAD, event.pattern_id, now)
                return None
            if event.pattern_id not in PATTERNS:
                self._interdict(UNKNOWN_PATTERN, event.pattern_id, now)
                return None
            if is_pattern_locked(state.safety_registry, event.pattern_id, now):
                self._interdict(PATTERN_LOCKED, event.pattern_id, now)
                return None

        verdict = self.monitor.check_event(event, state)
        if verdict.safe:
            return event
        if verdict.corrected_event is None:
            if isinstance(event, StartSession):
                self._interdict(REJECT_START, state.status.value, now)
            return None
        return verdict.corrected_event

    def _interdict(self, action: str, detail: str, now: float) -> None:
        logger.warning(f"Interdiction {action}: {detail}")
        self._enqueue(SafetyInterdiction(risk_level=1.0, action=action, detail=detail, timestamp=now))

    # =========================================================================
    # Trauma Learning
    # =========================================================================

    def _learn_from_session(self, state: RuntimeState, now: float) -> None:
        pattern = state.pattern
        if pattern is None or state.start_belief is None:
            return
        profile = learn_from_session(
            state.safety_registry.get(pattern.id),
            pattern,
            state.start_belief,
            state.belief,
            now,
            self.config.registry,
        )
        registry = dict(state.safety_registry)
        registry[pattern.id] = profile
        self._process(LoadSafetyRegistry(registry=registry, timestamp=now), trusted=True)

    # =========================================================================
    # Persistence
    # =========================================================================

    def _boot_persistence(self) -> None:
        if self._worker is None or self.store is None:
            return
        store = self.store
        retention = self.config.persistence.retention_ms
        now = self._clock()
        self._worker.submit(
            lambda: store.garbage_collect(retention, now), label="garbage_collect",
        )
        self._worker.submit(
            lambda: store.get_meta(REGISTRY_META_KEY),
            label="load_registry",
            on_result=self._receive_registry,
        )

    def _receive_registry(self, stored: Any) -> None:
        # Runs on the worker thread; applied on the control thread
        if stored:
            self._inbox.append(stored)

    def _drain_inbox(self) -> None:
        while self._inbox:
            stored = self._inbox.popleft()
            loaded = registry_from_dict(stored)
            merged = dict(loaded)
            merged.update(self._state.safety_registry)
            logger.info(f"Loaded {len(loaded)} safety profiles from storage")
            if merged != dict(self._state.safety_registry):
                self._process(
                    LoadSafetyRegistry(registry=merged, timestamp=self._clock()),
                    trusted=True,
                )

    def _persist_event(self, event: BaseEvent) -> None:
        if self._worker is None or self.store is None:
            return
        store = self.store
        self._worker.submit(lambda: store.write_event(event), label=f"write_event:{event_type(event)}")

    def _persist_registry(self, registry: Mapping[str, SafetyProfile]) -> None:
        if self._worker is None or self.store is None:
            return
        store = self.store
        data = registry_to_dict(registry)
        self._worker.submit(lambda: store.set_meta(REGISTRY_META_KEY, data), label="set_meta")

    # =========================================================================
    # Subscribers
    # =========================================================================

    def _is_critical(self, state: RuntimeState) -> bool:
        prev = self._last_notified
        if prev is None:
            return True
        if state.status != RuntimeStatus.RUNNING or state.status != prev.status:
            return True
        if state.phase != prev.phase or state.ai_status != prev.ai_status:
            return True
        return state.last_ai_message is not None and state.last_ai_message != prev.last_ai_message

    def _notify(self, state: RuntimeState, now: float) -> None:
        interval = self.config.kernel.notify_interval_ms
        if not self._is_critical(state) and now - self._last_notify_ms < interval:
            return
        self._last_notify_ms = now
        self._last_notified = state
        for callback in list(self._subscribers):
            self._call_subscriber(callback, state)

    def _call_subscriber(self, callback: Subscriber, state: RuntimeState) -> None:
        try:
            callback(state)
        except Exception:
            self._stats["subscriber_errors"] += 1
            logger.exception(f"Subscriber {callback!r} failed")


__all__ = [
    "Clock",
    "Subscriber",
    "REGISTRY_META_KEY",
    "UNKNOWN_PATTERN",
    "PATTERN_LOCKED",
    "REJECT_LOAD",
    "REJECT_START",
    "wall_clock_ms",
    "create_estimator",
    "HomeostaticKernel",
]
