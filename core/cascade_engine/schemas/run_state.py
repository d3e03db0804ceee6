"""
Run State Schema - the live state of one cascade.

A single RunState exists per executor. The executor is its only writer;
observers receive deep copies through the run state store.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class RunStatus(StrEnum):
    """Status of a cascade run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"  # one-way, ends in COMPLETED or FAILED
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.CANCELLING})
TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class SkipReason(StrEnum):
    """Why a node was not executed."""

    EXCLUDED_FLAG = "excluded_flag"


class TokenUsage(BaseModel):
    """Token usage reported by a generation call."""

    input_tokens: int = 0
    output_tokens: int = 0

    @computed_field
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class SkippedNode(BaseModel):
    """A node excluded by the eligibility rules."""

    node_id: str
    node_name: str
    reason: SkipReason = SkipReason.EXCLUDED_FLAG


class CompletedNode(BaseModel):
    """A node whose generation finished and was persisted."""

    node_id: str
    node_name: str
    level_index: int
    response: str = ""
    usage: TokenUsage | None = None
    latency_ms: int | None = None


class FailedNode(BaseModel):
    """A node whose generation failed with a per-node error."""

    node_id: str
    node_name: str
    level_index: int
    error: str
    error_code: str | None = None
    attempts: int = 1
    timestamp: datetime = Field(default_factory=datetime.now)


class RunState(BaseModel):
    """
    The live state of a cascade.

    ``completed_node_ids`` only grows during a run. ``skipped_nodes`` is
    fixed once planning completes. ``failed_nodes`` is the third bucket:
    a node is in at most one of the three.
    """

    status: RunStatus = RunStatus.IDLE
    run_id: str | None = None
    root_id: str | None = None

    current_level_index: int = 0
    total_levels: int = 0
    current_node_id: str | None = None
    current_node_name: str | None = None
    current_node_index: int = 0  # 1-based position across the whole run
    total_node_count: int = 0

    completed_node_ids: list[str] = Field(default_factory=list)
    completed_nodes: list[CompletedNode] = Field(default_factory=list)
    skipped_nodes: list[SkippedNode] = Field(default_factory=list)
    failed_nodes: list[FailedNode] = Field(default_factory=list)

    started_at: datetime | None = None
    finished_at: datetime | None = None
    skip_all_previews: bool = False

    # Latched control requests, applied at the next suspension point
    pause_requested: bool = False
    cancel_requested: bool = False

    # Set when the run ends in FAILED
    error: str | None = None
    error_type: str | None = None

    @computed_field
    @property
    def completed_count(self) -> int:
        return len(self.completed_node_ids)

    @computed_field
    @property
    def skipped_count(self) -> int:
        return len(self.skipped_nodes)

    @computed_field
    @property
    def failed_count(self) -> int:
        return len(self.failed_nodes)

    @computed_field
    @property
    def is_running(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        """Seconds since the run started, 0 when no run is active."""
        if self.started_at is None:
            return 0.0
        return ((now or datetime.now()) - self.started_at).total_seconds()

    def summary(self) -> dict[str, Any]:
        """Counts for an "N completed / M failed / K skipped" display."""
        return {
            "status": self.status.value,
            "completed": self.completed_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "total": self.total_node_count,
        }
