"""
Cascade Executor - runs a prompt tree level by level.

The executor:
1. Plans the levels below a root node
2. Runs every eligible node strictly in order, one generation at a time
3. Checks pause/cancel only between nodes, never during a generation
4. Records each node as completed or failed and keeps going
5. Ends COMPLETED (also when cancelled) or FAILED on a structural error
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from cascade_engine.engine.collaborators import (
    DefaultInputResolver,
    InputResolver,
    NullResultSink,
    ResultSink,
)
from cascade_engine.engine.context import CascadeContext
from cascade_engine.errors import CascadeAlreadyRunningError, StructuralError
from cascade_engine.llm.provider import GenerationClient, GenerationContext
from cascade_engine.observability import set_trace_context
from cascade_engine.runtime.event_bus import EventBus, EventType
from cascade_engine.runtime.run_state_store import RunStateStore, StateListener
from cascade_engine.schemas.run_state import (
    CompletedNode,
    FailedNode,
    RunState,
    RunStatus,
    SkippedNode,
)
from cascade_engine.tree.node import NodeId, PromptNode, TreeProvider
from cascade_engine.tree.planner import CascadeLevel, CascadePlan, LevelPlanner


class ErrorAction(StrEnum):
    """What to do after a node failed with a per-node error."""

    SKIP = "skip"  # record the failure, continue with the next node
    STOP = "stop"  # record the failure, end the run like a cancel
    RETRY = "retry"  # operator asked to run the same node again


NodeErrorHandler = Callable[[PromptNode, Exception], Awaitable[ErrorAction]]


@dataclass
class CascadeResult:
    """Outcome of a cascade run."""

    run_id: str
    root_id: str
    status: RunStatus
    completed_node_ids: list[NodeId] = field(default_factory=list)
    failed_nodes: list[FailedNode] = field(default_factory=list)
    skipped_nodes: list[SkippedNode] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    duration_ms: int = 0
    total_tokens: int = 0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def had_partial_failures(self) -> bool:
        return self.success and bool(self.failed_nodes)

    def summary(self) -> str:
        return (
            f"{len(self.completed_node_ids)} completed / {len(self.failed_nodes)} failed / "
            f"{len(self.skipped_nodes)} skipped"
        )


class CascadeExecutor:
    """
    Executes cascades over a prompt tree.

    One executor holds one run state; starting a second cascade while one
    is active raises CascadeAlreadyRunningError.

    Example:
        executor = CascadeExecutor(tree=tree, client=LiteLLMGenerationClient())
        task = executor.start("root")
        executor.pause()     # takes effect after the node in flight
        executor.resume()
        result = await task
        print(result.summary())
    """

    def __init__(
        self,
        tree: TreeProvider,
        client: GenerationClient,
        resolver: InputResolver | None = None,
        sink: ResultSink | None = None,
        event_bus: EventBus | None = None,
        store: RunStateStore | None = None,
        on_node_error: NodeErrorHandler | None = None,
    ):
        """
        Initialize the executor.

        Args:
            tree: Tree provider the cascade reads nodes from
            client: Generation client called once per eligible node
            resolver: Resolves each node's variables (default: cascade variables
                plus the node's own ``payload["variables"]``)
            sink: Persists successful results (default: keeps nothing)
            event_bus: Bus for lifecycle events (default: a private bus)
            store: Run state store (default: a private store)
            on_node_error: Optional operator decision after a per-node failure;
                without it failures are recorded and the run continues
        """
        self.planner = LevelPlanner(tree)
        self.client = client
        self.resolver = resolver or DefaultInputResolver()
        self.sink = sink or NullResultSink()
        self.event_bus = event_bus or EventBus()
        self.on_node_error = on_node_error
        self.logger = logging.getLogger(__name__)

        self._store = store or RunStateStore()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._active_root: NodeId | None = None
        self._pause_pending = False
        self._cancel_pending = False
        self._task: asyncio.Task | None = None

    # === OBSERVER SURFACE ===

    @property
    def store(self) -> RunStateStore:
        return self._store

    @property
    def state(self) -> RunState:
        """Snapshot of the run state."""
        return self._store.snapshot()

    @property
    def is_running(self) -> bool:
        return self._active_root is not None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Receive a run state snapshot after every change. Returns an unsubscribe callable."""
        return self._store.subscribe(listener)

    # === ENTRY POINTS ===

    def start(
        self, root_id: NodeId, skip_all_previews: bool = False
    ) -> "asyncio.Task[CascadeResult]":
        """
        Schedule a cascade on the running event loop.

        Raises:
            CascadeAlreadyRunningError: a cascade is already active
        """
        self._claim(root_id)
        try:
            self._task = asyncio.get_running_loop().create_task(
                self._run_claimed(root_id, skip_all_previews),
                name=f"cascade:{root_id}",
            )
        except BaseException:
            self._release()
            raise
        return self._task

    async def run(self, root_id: NodeId, skip_all_previews: bool = False) -> CascadeResult:
        """
        Run a cascade to its end in the current task.

        Raises:
            CascadeAlreadyRunningError: a cascade is already active
        """
        self._claim(root_id)
        return await self._run_claimed(root_id, skip_all_previews)

    async def wait(self) -> CascadeResult | None:
        """Wait for the cascade scheduled with start(), if any."""
        if self._task is None:
            return None
        return await self._task

    # === CONTROL COMMANDS (idempotent, any thread) ===

    def pause(self) -> None:
        """Pause after the node in flight settles, or before the first node while planning."""
        if self._store.request_pause():
            self.logger.info("⏸ Pause requested - will pause at next node boundary")
        elif self._planning:
            self._pause_pending = True

    def resume(self) -> None:
        """Continue with the next unprocessed node."""
        if self._store.request_resume():
            self.logger.info("▶ Resume requested")
            self._wake_loop()
        elif self._planning:
            self._pause_pending = False

    def cancel(self) -> None:
        """Let the node in flight finish, start no further nodes."""
        if self._store.request_cancel():
            self.logger.info("⏹ Cancel requested - no further nodes will start")
            self._wake_loop()
        elif self._planning:
            # Still planning: apply as soon as the run begins
            self._cancel_pending = True

    def set_skip_all_previews(self, flag: bool) -> None:
        """Toggle preview suppression; read when the next node is dispatched."""
        if self._store.set_skip_all_previews(flag):
            self.logger.info(f"Skip all previews: {flag}")

    # === INTERNALS ===

    def _claim(self, root_id: NodeId) -> None:
        if self._active_root is not None:
            raise CascadeAlreadyRunningError(self._active_root)
        self._active_root = root_id
        self._cancel_pending = False
        self._pause_pending = False

    @property
    def _planning(self) -> bool:
        """Claimed but the run state has not entered RUNNING yet."""
        return self._active_root is not None and not self._store.is_active

    def _release(self) -> None:
        self._active_root = None
        self._cancel_pending = False
        self._pause_pending = False

    def _wake_loop(self) -> None:
        """Wake a paused loop, marshalling onto the loop thread when needed."""
        loop, wake = self._loop, self._wake
        if loop is None or wake is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wake.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(wake.set)

    async def _run_claimed(self, root_id: NodeId, skip_all_previews: bool) -> CascadeResult:
        run_id = f"cascade_{uuid.uuid4().hex[:12]}"
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        set_trace_context(run_id=run_id, root_id=root_id)

        try:
            try:
                plan = await self.planner.plan(root_id)
            except Exception as e:
                self.logger.error(f"❌ Cannot plan cascade for {root_id}: {e}")
                self._store.fail_before_start(run_id, root_id, e)
                final = self._store.snapshot()
                await self.event_bus.emit_run_transition(
                    EventType.CASCADE_FAILED, run_id, final.summary(), error=str(e)
                )
                return self._build_result(final, started_at=None)

            return await self._execute_plan(run_id, plan, skip_all_previews)
        finally:
            self._release()

    async def _execute_plan(
        self, run_id: str, plan: CascadePlan, skip_all_previews: bool
    ) -> CascadeResult:
        root = plan.root
        if plan.total_node_count == 0:
            return await self._finish_empty(run_id, plan)

        self._store.begin(
            run_id=run_id,
            root_id=root.id,
            total_levels=plan.total_levels,
            total_node_count=plan.total_node_count,
            skipped=plan.skipped,
        )
        started_at = datetime.now()
        if skip_all_previews:
            self._store.set_skip_all_previews(True)
        if self._pause_pending:
            self._store.request_pause()
        if self._cancel_pending:
            self._store.request_cancel()

        self.logger.info(f"🚀 Starting cascade: {root.display_name}")
        self.logger.info(
            f"   {plan.total_node_count} prompts across {plan.total_levels} levels, "
            f"{len(plan.skipped)} excluded"
        )
        await self.event_bus.emit_cascade_started(
            run_id=run_id,
            root_id=root.id,
            total_levels=plan.total_levels,
            total_nodes=plan.total_node_count,
            skipped=len(plan.skipped),
        )
        for skipped in plan.skipped:
            await self.event_bus.emit_node_skipped(
                run_id, skipped.node_id, skipped.node_name, skipped.reason.value
            )

        context = CascadeContext(root=root)
        node_index = 0

        try:
            stopped = False
            for level in plan.cascade_levels:
                for position, node_id in enumerate(level.node_ids):
                    if not await self._suspension_point(run_id):
                        stopped = True
                        break

                    if position == 0:
                        self._store.set_level(level.index)
                        set_trace_context(level_index=level.index)
                        self.logger.info(
                            f"\n▶ Level {level.index} ({len(level.node_ids)} prompts)"
                        )
                        await self.event_bus.emit_level_started(
                            run_id, level.index, level.depth, level.node_ids
                        )

                    node_index += 1
                    action = await self._execute_node(
                        run_id, plan, plan.nodes[node_id], level, node_index, context
                    )
                    if action == ErrorAction.STOP:
                        self.logger.info("⏹ Stopping cascade after failed node")
                        self._store.request_cancel()
                if stopped:
                    break

        except StructuralError as e:
            self.logger.error(f"❌ Structural error, aborting cascade: {e}")
            return await self._finish(run_id, RunStatus.FAILED, started_at, error=e)

        except asyncio.CancelledError:
            self.logger.info("⏹ Cascade task cancelled by host")
            await asyncio.shield(self._finish(run_id, RunStatus.COMPLETED, started_at))
            raise

        except Exception as e:
            self.logger.exception(f"❌ Cascade crashed: {e}")
            return await self._finish(run_id, RunStatus.FAILED, started_at, error=e)

        return await self._finish(run_id, RunStatus.COMPLETED, started_at)

    async def _suspension_point(self, run_id: str) -> bool:
        """
        Apply latched pause/cancel requests between nodes.

        Returns:
            False if the run must stop, True to dispatch the next node
        """
        assert self._wake is not None
        paused_here = False
        while True:
            if self._store.cancel_requested:
                self.logger.info("⏹ Cancel detected - stopping at node boundary")
                await self.event_bus.emit_run_transition(
                    EventType.CASCADE_CANCELLING, run_id, self._store.snapshot().summary()
                )
                return False

            if not self._store.pause_requested:
                if paused_here:
                    self.logger.info("▶ Resuming cascade")
                    await self.event_bus.emit_run_transition(
                        EventType.CASCADE_RESUMED, run_id, self._store.snapshot().summary()
                    )
                return True

            self._wake.clear()
            if self._store.mark_paused():
                paused_here = True
                self.logger.info("⏸ Pause detected - waiting at node boundary")
                await self.event_bus.emit_run_transition(
                    EventType.CASCADE_PAUSED, run_id, self._store.snapshot().summary()
                )
            # A resume or cancel issued before clear() is seen by this re-check
            if self._store.pause_requested and not self._store.cancel_requested:
                await self._wake.wait()

    async def _execute_node(
        self,
        run_id: str,
        plan: CascadePlan,
        node: PromptNode,
        level: CascadeLevel,
        node_index: int,
        context: CascadeContext,
    ) -> ErrorAction | None:
        """
        Run one node. Per-node failures are recorded here; StructuralError propagates.

        Returns:
            None on success, the applied ErrorAction on failure
        """
        parent = plan.parent_of(node.id)
        set_trace_context(node_id=node.id, level_index=level.index)
        self._store.set_current(node.id, node.display_name, node_index)
        self.logger.info(f"   Running {node_index}/{plan.total_node_count}: {node.display_name}")
        await self.event_bus.emit_node_started(
            run_id, node.id, node.display_name, level.index, node_index, plan.total_node_count
        )

        attempts = 0
        while True:
            attempts += 1
            gen_context = GenerationContext(
                run_id=run_id,
                root=plan.root,
                parent=parent,
                level_index=level.index,
                node_index=node_index,
                total_nodes=plan.total_node_count,
                variables=context.build_variables(level.index, parent),
                skip_all_previews=self._store.skip_all_previews,
            )
            try:
                gen_context.variables = await self.resolver.resolve(node, gen_context)
                output = await self.client.generate(node, gen_context)
                await self.sink.save(node, output, gen_context)
            except StructuralError:
                raise
            except Exception as e:
                self.logger.error(f"   ✗ Failed: {node.display_name}: {e}")
                action = await self._decide(node, e)
                if action == ErrorAction.RETRY and not self._store.cancel_requested:
                    self.logger.info(
                        f"   ↻ Retrying {node.display_name} (attempt {attempts + 1})"
                    )
                    continue
                if action == ErrorAction.RETRY:
                    action = ErrorAction.STOP

                self._store.record_failed(
                    FailedNode(
                        node_id=node.id,
                        node_name=node.display_name,
                        level_index=level.index,
                        error=str(e) or type(e).__name__,
                        error_code=getattr(e, "code", None),
                        attempts=attempts,
                    )
                )
                await self.event_bus.emit_node_failed(
                    run_id, node.id, node.display_name, str(e) or type(e).__name__
                )
                return action

            context.add(level.index, node, output.text)
            self._store.record_completed(
                CompletedNode(
                    node_id=node.id,
                    node_name=node.display_name,
                    level_index=level.index,
                    response=output.text,
                    usage=output.usage,
                    latency_ms=output.latency_ms,
                )
            )
            self.logger.info(
                f"   ✓ Completed: {node.display_name}",
                extra={"latency_ms": output.latency_ms, "tokens_used": output.tokens_used},
            )
            await self.event_bus.emit_node_completed(
                run_id,
                node.id,
                node.display_name,
                latency_ms=output.latency_ms,
                tokens_used=output.tokens_used,
            )
            return None

    async def _decide(self, node: PromptNode, error: Exception) -> ErrorAction:
        """Ask the operator what to do; a cancel while waiting counts as STOP."""
        if self.on_node_error is None:
            return ErrorAction.SKIP

        decision = asyncio.ensure_future(self.on_node_error(node, error))
        cancelled = asyncio.ensure_future(self._wait_for_cancel())
        try:
            await asyncio.wait({decision, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [f for f in (decision, cancelled) if not f.done()]
            for f in pending:
                f.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if decision.cancelled():
            return ErrorAction.STOP
        if decision.exception() is not None:
            self.logger.error(f"Node error handler failed: {decision.exception()}")
            return ErrorAction.SKIP
        try:
            return ErrorAction(decision.result())
        except ValueError:
            self.logger.warning(f"Unknown error action {decision.result()!r}, skipping node")
            return ErrorAction.SKIP

    async def _wait_for_cancel(self) -> None:
        assert self._wake is not None
        while not self._store.cancel_requested:
            self._wake.clear()
            if self._store.cancel_requested:
                return
            await self._wake.wait()

    async def _finish(
        self,
        run_id: str,
        status: RunStatus,
        started_at: datetime,
        error: BaseException | None = None,
    ) -> CascadeResult:
        cancelled = self._store.cancel_requested
        final = self._store.finish(status, error=error)

        if status == RunStatus.COMPLETED:
            self.logger.info("\n✓ Cascade cancelled" if cancelled else "\n✓ Cascade complete!")
        else:
            self.logger.error(f"\n✗ Cascade failed: {error}")
        self.logger.info(
            f"   {len(final.completed_node_ids)} completed / {len(final.failed_nodes)} failed / "
            f"{len(final.skipped_nodes)} skipped"
        )

        event_type = EventType.CASCADE_FAILED
        if status == RunStatus.COMPLETED:
            event_type = EventType.CASCADE_COMPLETED
        summary = final.summary()
        summary["cancelled"] = cancelled
        await self.event_bus.emit_run_transition(
            event_type, run_id, summary, error=str(error) if error is not None else None
        )
        return self._build_result(final, started_at=started_at, cancelled=cancelled)

    async def _finish_empty(self, run_id: str, plan: CascadePlan) -> CascadeResult:
        """Nothing eligible below the root: complete without entering RUNNING."""
        root = plan.root
        self.logger.warning(f"No child prompts to run below {root.display_name}")
        self._store.complete_without_nodes(run_id, root.id, plan.skipped)
        final = self._store.snapshot()

        await self.event_bus.emit_cascade_started(
            run_id=run_id,
            root_id=root.id,
            total_levels=0,
            total_nodes=0,
            skipped=len(plan.skipped),
        )
        for skipped in plan.skipped:
            await self.event_bus.emit_node_skipped(
                run_id, skipped.node_id, skipped.node_name, skipped.reason.value
            )
        summary = final.summary()
        summary["cancelled"] = self._cancel_pending
        await self.event_bus.emit_run_transition(EventType.CASCADE_COMPLETED, run_id, summary)
        return self._build_result(final, started_at=None, cancelled=self._cancel_pending)

    def _build_result(
        self,
        final: RunState,
        started_at: datetime | None,
        cancelled: bool = False,
    ) -> CascadeResult:
        duration_ms = 0
        if started_at is not None and final.finished_at is not None:
            duration_ms = int((final.finished_at - started_at).total_seconds() * 1000)
        total_tokens = sum(c.usage.total_tokens for c in final.completed_nodes if c.usage)
        return CascadeResult(
            run_id=final.run_id or "",
            root_id=final.root_id or "",
            status=final.status,
            completed_node_ids=list(final.completed_node_ids),
            failed_nodes=list(final.failed_nodes),
            skipped_nodes=list(final.skipped_nodes),
            error=final.error,
            error_type=final.error_type,
            duration_ms=duration_ms,
            total_tokens=total_tokens,
            cancelled=cancelled,
        )
