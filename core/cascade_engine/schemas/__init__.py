"""Schemas for cascade run state."""

from cascade_engine.schemas.run_state import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CompletedNode,
    FailedNode,
    RunState,
    RunStatus,
    SkippedNode,
    SkipReason,
    TokenUsage,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "CompletedNode",
    "FailedNode",
    "RunState",
    "RunStatus",
    "SkippedNode",
    "SkipReason",
    "TokenUsage",
]
