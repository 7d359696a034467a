"""
Respira AI Tools - Validated Function Calls from the Co-Regulation Agent
========================================================================

The AI agent never touches state. It calls one of two tools; each call is

    1. schema-validated (pydantic)
    2. checked against pre-conditions (rate limits, locks, session age)
    3. dispatched as ordinary kernel events, which still meet the safety gate

Tools:
    adjust_tempo(scale ∈ [0.8, 1.4], reason ≥ 10 chars)
        - at most once per 5 s
        - |scale - current| ≤ 0.2
    switch_pattern(pattern_id, reason ≥ 10 chars)
        - pattern must not be trauma-locked
        - at most once per 30 s
        - arousal_impact > 0.5 requires user confirmation
        - not within the first 30 s of a session

A call the kernel drops, or one the safety monitor shields to no change,
is reported back to the agent as a failure.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .events import AdjustTempo, AIIntervention, LoadProtocol, StartSession
from .kernel import HomeostaticKernel
from .patterns import PATTERNS
from .registry import is_pattern_locked
from .state import RuntimeStatus

logger = logging.getLogger(__name__)


TEMPO_RATE_LIMIT_MS = 5_000
PATTERN_RATE_LIMIT_MS = 30_000
MAX_TEMPO_STEP = 0.2
MIN_SESSION_S_BEFORE_SWITCH = 30.0
CONFIRMATION_IMPACT = 0.5


# =============================================================================
# Schemas
# =============================================================================

class AdjustTempoArgs(BaseModel):
    """Arguments for ``adjust_tempo``."""
    scale: float = Field(..., ge=0.8, le=1.4)
    reason: str = Field(..., min_length=10)


class SwitchPatternArgs(BaseModel):
    """Arguments for ``switch_pattern``."""
    pattern_id: str
    reason: str = Field(..., min_length=10)

    @field_validator("pattern_id")
    @classmethod
    def known_pattern(cls, v: str) -> str:
        if v not in PATTERNS:
            raise ValueError(f"must be one of: {', '.join(PATTERNS)}")
        return v


class ToolResult(BaseModel):
    """Outcome of one tool call, returned to the agent."""
    success: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    needs_confirmation: bool = False


TOOL_SCHEMAS = {
    "adjust_tempo": AdjustTempoArgs,
    "switch_pattern": SwitchPatternArgs,
}


# =============================================================================
# Executor
# =============================================================================

class ToolExecutor:
    """
    Gatekeeper between the AI agent and the kernel.

    Example:
        tools = ToolExecutor(kernel)
        result = tools.execute("adjust_tempo", {"scale": 1.1, "reason": "user is rushing the exhale"})
        if result.needs_confirmation:
            tools.request_confirmation("switch_pattern", args)
    """

    def __init__(self, kernel: HomeostaticKernel, clock: Optional[Callable[[], float]] = None):
        self.kernel = kernel
        self._clock = clock or kernel._clock
        self.last_tempo_change = -float("inf")
        self.last_pattern_change = -float("inf")
        self.calls = 0
        self.rejections = 0

    def execute(
        self,
        tool_name: str,
        args: Dict[str, Any],
        user_confirmed: bool = False,
    ) -> ToolResult:
        """Validate, check and run one tool call. Never raises."""
        self.calls += 1
        schema = TOOL_SCHEMAS.get(tool_name)
        if schema is None:
            return self._reject(f"Unknown tool: {tool_name}")

        try:
            parsed = schema.model_validate(args)
        except ValidationError as e:
            errors = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            return self._reject(f"Validation failed: {errors}")

        now = self._clock()
        if isinstance(parsed, AdjustTempoArgs):
            return self._adjust_tempo(parsed, now)
        return self._switch_pattern(parsed, now, user_confirmed)

    def request_confirmation(self, tool_name: str, args: Dict[str, Any]) -> None:
        """Ask the UI to confirm a call (surfaced as an AI_INTERVENTION)."""
        self.kernel.dispatch(AIIntervention(
            intent=f"CONFIRMATION_REQUIRED:{tool_name}",
            parameters={"tool_name": tool_name, "args": dict(args)},
            timestamp=self._clock(),
        ))

    # =========================================================================
    # Tools
    # =========================================================================

    def _adjust_tempo(self, args: AdjustTempoArgs, now: float) -> ToolResult:
        since = now - self.last_tempo_change
        if since < TEMPO_RATE_LIMIT_MS:
            wait_s = -(-(TEMPO_RATE_LIMIT_MS - since) // 1000)
            return self._reject(f"Rate limit: must wait {wait_s:.0f}s before next tempo adjustment")

        previous = self.kernel.get_state().tempo_scale
        delta = abs(args.scale - previous)
        if delta > MAX_TEMPO_STEP + 1e-9:
            return self._reject(
                f"Tempo change too large (delta={delta:.2f}). Max allowed: {MAX_TEMPO_STEP}"
            )

        self.kernel.dispatch(AdjustTempo(scale=args.scale, reason=f"AI: {args.reason}", timestamp=now))
        applied = self.kernel.get_state().tempo_scale
        if applied == previous and args.scale != previous:
            return self._reject("Tempo change blocked by the safety monitor")

        self.last_tempo_change = now
        logger.info(f"AI tempo {previous:.3f} → {applied:.3f} (requested {args.scale:.3f})")
        return ToolResult(success=True, result={"new_tempo": applied, "requested": args.scale})

    def _switch_pattern(self, args: SwitchPatternArgs, now: float, user_confirmed: bool) -> ToolResult:
        state = self.kernel.get_state()
        pattern = PATTERNS[args.pattern_id]

        if is_pattern_locked(state.safety_registry, args.pattern_id, now):
            return self._reject(
                f"Pattern '{args.pattern_id}' is locked due to a previous stress response"
            )

        since = now - self.last_pattern_change
        if since < PATTERN_RATE_LIMIT_MS:
            wait_s = -(-(PATTERN_RATE_LIMIT_MS - since) // 1000)
            return self._reject(f"Rate limit: must wait {wait_s:.0f}s before switching patterns")

        if pattern.arousal_impact > CONFIRMATION_IMPACT and not user_confirmed:
            self.rejections += 1
            return ToolResult(
                success=False,
                needs_confirmation=True,
                error=f"Pattern '{args.pattern_id}' ({pattern.label}) requires user confirmation",
            )

        if state.session_duration < MIN_SESSION_S_BEFORE_SWITCH:
            return self._reject("Cannot switch patterns during the first 30 seconds of a session")

        previous = state.pattern.id if state.pattern else None
        self.kernel.dispatch(LoadProtocol(pattern_id=args.pattern_id, timestamp=now))
        self.kernel.dispatch(StartSession(timestamp=now))
        after = self.kernel.get_state()
        if after.pattern is None or after.pattern.id != args.pattern_id \
                or after.status != RuntimeStatus.RUNNING:
            return self._reject(
                f"Pattern switch to '{args.pattern_id}' refused by the kernel (status {after.status.value})"
            )

        self.last_pattern_change = now
        logger.info(f"AI switched pattern {previous} → {args.pattern_id}: {args.reason}")
        return ToolResult(success=True, result={"pattern": args.pattern_id})

    def _reject(self, error: str) -> ToolResult:
        self.rejections += 1
        logger.info(f"Tool call rejected: {error}")
        return ToolResult(success=False, error=error)


__all__ = [
    "TEMPO_RATE_LIMIT_MS",
    "PATTERN_RATE_LIMIT_MS",
    "MAX_TEMPO_STEP",
    "AdjustTempoArgs",
    "SwitchPatternArgs",
    "ToolResult",
    "TOOL_SCHEMAS",
    "ToolExecutor",
]
