"""
Run State Store - owns the single live RunState of an executor.

The executor is the only writer. Every mutation goes through a named
method that holds a re-entrant lock, so control commands issued from
another thread latch immediately and readers never observe a half-applied
transition. Readers get deep copies.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from cascade_engine.schemas.run_state import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CompletedNode,
    FailedNode,
    RunState,
    RunStatus,
    SkippedNode,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[RunState], None]


class RunStateStore:
    """
    Single-writer, multi-reader holder of the cascade RunState.

    Example:
        store = RunStateStore()
        unsubscribe = store.subscribe(lambda state: print(state.summary()))
        store.snapshot().status  # RunStatus.IDLE
    """

    def __init__(self):
        self._state = RunState()
        self._lock = threading.RLock()
        # Held for a whole fan-out so listeners see snapshots in mutation order
        self._delivery_lock = threading.RLock()
        self._listeners: dict[int, StateListener] = {}
        self._listener_counter = 0
        self._version = 0

    # === READ SIDE ===

    def snapshot(self) -> RunState:
        """Deep copy of the current state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    @property
    def version(self) -> int:
        """Incremented on every mutation."""
        with self._lock:
            return self._version

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._state.status

    @property
    def pause_requested(self) -> bool:
        with self._lock:
            return self._state.pause_requested

    @property
    def cancel_requested(self) -> bool:
        with self._lock:
            return self._state.cancel_requested

    @property
    def skip_all_previews(self) -> bool:
        with self._lock:
            return self._state.skip_all_previews

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._state.status in ACTIVE_STATUSES

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a listener called with a snapshot after every mutation.

        Deliveries are serialized across threads, so a listener must not block
        on the thread that owns the event loop.

        Returns:
            A callable that removes the listener
        """
        with self._lock:
            self._listener_counter += 1
            key = self._listener_counter
            self._listeners[key] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(key, None)

        return unsubscribe

    def _changed(self) -> None:
        """
        Bump the version and fan out a snapshot. Call with the state lock released.

        The snapshot is taken after the delivery lock is acquired, so a writer
        on another thread can never deliver an older state after a newer one.
        """
        with self._lock:
            self._version += 1
        with self._delivery_lock:
            with self._lock:
                snapshot = self._state.model_copy(deep=True)
                listeners = list(self._listeners.values())
            for listener in listeners:
                try:
                    listener(snapshot)
                except Exception as e:
                    logger.error(f"Run state listener error: {e}")

    # === LIFECYCLE (executor) ===

    def begin(
        self,
        run_id: str,
        root_id: str,
        total_levels: int,
        total_node_count: int,
        skipped: list[SkippedNode],
    ) -> None:
        """Discard any previous state and enter RUNNING."""
        with self._lock:
            if self._state.status in ACTIVE_STATUSES:
                raise RuntimeError(f"Run {self._state.run_id} is still active")
            self._state = RunState(
                status=RunStatus.RUNNING,
                run_id=run_id,
                root_id=root_id,
                total_levels=total_levels,
                total_node_count=total_node_count,
                skipped_nodes=list(skipped),
                started_at=datetime.now(),
            )
        self._changed()

    def fail_before_start(self, run_id: str, root_id: str, error: BaseException) -> None:
        """Record a planning failure: straight to FAILED, nothing attempted."""
        with self._lock:
            if self._state.status in ACTIVE_STATUSES:
                raise RuntimeError(f"Run {self._state.run_id} is still active")
            self._state = RunState(
                status=RunStatus.FAILED,
                run_id=run_id,
                root_id=root_id,
                finished_at=datetime.now(),
                error=str(error),
                error_type=type(error).__name__,
            )
        self._changed()

    def complete_without_nodes(
        self, run_id: str, root_id: str, skipped: list[SkippedNode]
    ) -> None:
        """Record a plan with no eligible node: straight to COMPLETED, never RUNNING."""
        with self._lock:
            if self._state.status in ACTIVE_STATUSES:
                raise RuntimeError(f"Run {self._state.run_id} is still active")
            self._state = RunState(
                status=RunStatus.COMPLETED,
                run_id=run_id,
                root_id=root_id,
                skipped_nodes=list(skipped),
                finished_at=datetime.now(),
            )
        self._changed()

    def set_level(self, level_index: int) -> None:
        with self._lock:
            self._state.current_level_index = level_index
        self._changed()

    def set_current(self, node_id: str, node_name: str, node_index: int) -> None:
        with self._lock:
            self._state.current_node_id = node_id
            self._state.current_node_name = node_name
            self._state.current_node_index = node_index
        self._changed()

    def record_completed(self, completed: CompletedNode) -> None:
        with self._lock:
            if completed.node_id in self._state.completed_node_ids:
                logger.warning(f"Node {completed.node_id} already recorded as completed")
                return
            self._state.completed_node_ids.append(completed.node_id)
            self._state.completed_nodes.append(completed)
        self._changed()

    def record_failed(self, failed: FailedNode) -> None:
        with self._lock:
            self._state.failed_nodes.append(failed)
        self._changed()

    def mark_paused(self) -> bool:
        """Apply a latched pause at a suspension point. True if the status changed."""
        with self._lock:
            if self._state.status != RunStatus.RUNNING or not self._state.pause_requested:
                return False
            self._state.status = RunStatus.PAUSED
        self._changed()
        return True

    def finish(self, status: RunStatus, error: BaseException | None = None) -> RunState:
        """
        Terminal transition. Keeps the result buckets, clears the live fields.

        Returns:
            Snapshot of the final state
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        with self._lock:
            self._state.status = status
            self._state.finished_at = datetime.now()
            self._state.current_node_id = None
            self._state.current_node_name = None
            self._state.started_at = None
            self._state.skip_all_previews = False
            self._state.pause_requested = False
            self._state.cancel_requested = False
            if error is not None:
                self._state.error = str(error) or type(error).__name__
                self._state.error_type = type(error).__name__
        self._changed()
        return self.snapshot()

    # === CONTROL REQUESTS (any thread) ===

    def request_pause(self) -> bool:
        """Latch a pause. True if this call changed anything."""
        with self._lock:
            if self._state.status != RunStatus.RUNNING or self._state.pause_requested:
                return False
            self._state.pause_requested = True
        self._changed()
        return True

    def request_resume(self) -> bool:
        """Clear a pause (applied or only latched). True if this call changed anything."""
        with self._lock:
            if self._state.status == RunStatus.PAUSED:
                self._state.status = RunStatus.RUNNING
            elif not (self._state.status == RunStatus.RUNNING and self._state.pause_requested):
                return False
            self._state.pause_requested = False
        self._changed()
        return True

    def request_cancel(self) -> bool:
        """Enter CANCELLING. True if this call changed anything."""
        with self._lock:
            if self._state.status not in (RunStatus.RUNNING, RunStatus.PAUSED):
                return False
            self._state.status = RunStatus.CANCELLING
            self._state.cancel_requested = True
            self._state.pause_requested = False
        self._changed()
        return True

    def set_skip_all_previews(self, flag: bool) -> bool:
        with self._lock:
            if self._state.skip_all_previews == flag:
                return False
            self._state.skip_all_previews = flag
        self._changed()
        return True
