"""
Tests for pause, resume, cancel and skip-all-previews on a live cascade.

Generations are held open with per-node gates so a control command can
be issued while a node is in flight. Requests must latch immediately and
take effect only at the next node boundary.
"""

import asyncio
import threading
import time

import pytest

from cascade_engine.engine import CascadeExecutor
from cascade_engine.llm import MockGenerationClient
from cascade_engine.runtime import EventBus, EventType
from cascade_engine.schemas.run_state import RunStatus
from cascade_engine.tree import InMemoryTreeProvider, PromptNode


def make_tree() -> InMemoryTreeProvider:
    """root -> (A, B), A -> C"""
    return InMemoryTreeProvider(
        [
            PromptNode(id="root", name="Root", is_assistant=True),
            PromptNode(id="a", name="A", parent_id="root", position="a0"),
            PromptNode(id="b", name="B", parent_id="root", position="a1"),
            PromptNode(id="c", name="C", parent_id="a", position="a0"),
        ]
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


def count(bus: EventBus, event_type: EventType) -> int:
    return len(bus.get_history(event_type))


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------


class TestPause:
    @pytest.mark.asyncio
    async def test_pause_waits_for_node_in_flight(self):
        gate = asyncio.Event()
        client = MockGenerationClient(gates={"a": gate})
        bus = EventBus()
        executor = CascadeExecutor(tree=make_tree(), client=client, event_bus=bus)

        task = executor.start("root")
        await wait_until(lambda: client.in_flight == 1)

        executor.pause()
        state = executor.state
        assert state.status == RunStatus.RUNNING
        assert state.pause_requested
        assert state.current_node_id == "a"

        gate.set()
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)

        state = executor.state
        assert state.completed_node_ids == ["a"]
        assert client.calls == ["a"]
        assert count(bus, EventType.CASCADE_PAUSED) == 1

        executor.resume()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status == RunStatus.COMPLETED
        assert result.completed_node_ids == ["a", "b", "c"]
        assert client.calls == ["a", "b", "c"]
        assert count(bus, EventType.CASCADE_RESUMED) == 1

    @pytest.mark.asyncio
    async def test_paused_run_stays_paused(self):
        client = MockGenerationClient()
        executor = None

        def on_call(node, context):
            if node.id == "a":
                executor.pause()

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client)

        task = executor.start("root")
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)
        for _ in range(20):
            await asyncio.sleep(0)

        assert client.calls == ["a"]
        assert executor.state.status == RunStatus.PAUSED
        assert executor.is_running

        executor.resume()
        await task

    @pytest.mark.asyncio
    async def test_pause_twice_pauses_once(self):
        bus = EventBus()
        client = MockGenerationClient()
        executor = None
        versions = []

        def on_call(node, context):
            if node.id == "a":
                executor.pause()
                versions.append(executor.store.version)
                executor.pause()
                versions.append(executor.store.version)

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client, event_bus=bus)

        task = executor.start("root")
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)
        executor.resume()
        executor.resume()
        await task

        assert versions[0] == versions[1]
        assert count(bus, EventType.CASCADE_PAUSED) == 1
        assert count(bus, EventType.CASCADE_RESUMED) == 1

    @pytest.mark.asyncio
    async def test_resume_before_boundary_clears_pause(self):
        bus = EventBus()
        client = MockGenerationClient()
        executor = None

        def on_call(node, context):
            if node.id == "a":
                executor.pause()
                executor.resume()

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client, event_bus=bus)

        result = await asyncio.wait_for(executor.run("root"), timeout=2)

        assert result.completed_node_ids == ["a", "b", "c"]
        assert count(bus, EventType.CASCADE_PAUSED) == 0

    @pytest.mark.asyncio
    async def test_controls_when_idle_are_noops(self):
        executor = CascadeExecutor(tree=make_tree(), client=MockGenerationClient())

        executor.pause()
        executor.resume()
        executor.cancel()
        executor.set_skip_all_previews(True)

        state = executor.state
        assert state.status == RunStatus.IDLE
        assert not state.pause_requested
        assert not state.cancel_requested

    @pytest.mark.asyncio
    async def test_resume_while_running_changes_nothing(self):
        client = MockGenerationClient()
        executor = None
        versions = []

        def on_call(node, context):
            if node.id == "b":
                before = executor.store.version
                executor.resume()
                versions.append((before, executor.store.version))

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client)

        await executor.run("root")

        assert len(versions) == 1
        before, after = versions[0]
        assert before == after


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_after_first_node(self):
        bus = EventBus()
        client = MockGenerationClient()
        executor = CascadeExecutor(tree=make_tree(), client=client, event_bus=bus)

        async def on_done(event):
            executor.cancel()

        bus.subscribe([EventType.NODE_COMPLETED], on_done, filter_node="a")

        result = await executor.run("root")

        assert result.status == RunStatus.COMPLETED
        assert result.cancelled
        assert result.completed_node_ids == ["a"]
        assert client.calls == ["a"]
        assert count(bus, EventType.CASCADE_CANCELLING) == 1
        completed_event = bus.get_history(EventType.CASCADE_COMPLETED)[0]
        assert completed_event.data["cancelled"] is True

    @pytest.mark.asyncio
    async def test_cancel_lets_node_in_flight_finish(self):
        gate = asyncio.Event()
        client = MockGenerationClient(gates={"b": gate})
        executor = CascadeExecutor(tree=make_tree(), client=client)

        task = executor.start("root")
        await wait_until(lambda: client.in_flight == 1 and client.calls == ["a", "b"])

        executor.cancel()
        assert executor.state.status == RunStatus.CANCELLING
        gate.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.completed_node_ids == ["a", "b"]
        assert client.calls == ["a", "b"]
        assert executor.state.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_while_paused(self):
        client = MockGenerationClient()
        executor = None

        def on_call(node, context):
            if node.id == "a":
                executor.pause()

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client)

        task = executor.start("root")
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)
        executor.cancel()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.cancelled
        assert result.completed_node_ids == ["a"]
        assert executor.state.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_twice_is_idempotent(self):
        bus = EventBus()
        client = MockGenerationClient()
        executor = CascadeExecutor(tree=make_tree(), client=client, event_bus=bus)

        async def on_done(event):
            executor.cancel()
            executor.cancel()
            executor.pause()

        bus.subscribe([EventType.NODE_COMPLETED], on_done, filter_node="a")

        result = await executor.run("root")

        assert result.completed_node_ids == ["a"]
        assert count(bus, EventType.CASCADE_CANCELLING) == 1
        assert count(bus, EventType.CASCADE_PAUSED) == 0

    @pytest.mark.asyncio
    async def test_cancel_during_planning_applies_at_start(self):
        inner = make_tree()
        planning = asyncio.Event()

        class SlowTree:
            async def get_node(self, node_id):
                await planning.wait()
                return inner.get_node(node_id)

            async def children_of(self, node_id):
                return inner.children_of(node_id)

        client = MockGenerationClient()
        executor = CascadeExecutor(tree=SlowTree(), client=client)

        task = executor.start("root")
        await asyncio.sleep(0)
        executor.cancel()
        planning.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status == RunStatus.COMPLETED
        assert result.cancelled
        assert result.completed_node_ids == []
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_pause_during_planning_applies_before_first_node(self):
        inner = make_tree()
        planning = asyncio.Event()

        class SlowTree:
            async def get_node(self, node_id):
                await planning.wait()
                return inner.get_node(node_id)

            async def children_of(self, node_id):
                return inner.children_of(node_id)

        client = MockGenerationClient()
        executor = CascadeExecutor(tree=SlowTree(), client=client)

        task = executor.start("root")
        await asyncio.sleep(0)
        executor.pause()
        planning.set()
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)

        assert client.calls == []

        executor.resume()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.completed_node_ids == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_resume_during_planning_drops_latched_pause(self):
        inner = make_tree()
        planning = asyncio.Event()

        class SlowTree:
            async def get_node(self, node_id):
                await planning.wait()
                return inner.get_node(node_id)

            async def children_of(self, node_id):
                return inner.children_of(node_id)

        client = MockGenerationClient()
        bus = EventBus()
        executor = CascadeExecutor(tree=SlowTree(), client=client, event_bus=bus)

        task = executor.start("root")
        await asyncio.sleep(0)
        executor.pause()
        executor.resume()
        planning.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.completed_node_ids == ["a", "b", "c"]
        assert count(bus, EventType.CASCADE_PAUSED) == 0

    @pytest.mark.asyncio
    async def test_host_task_cancellation_finalizes_state(self):
        gate = asyncio.Event()
        client = MockGenerationClient(gates={"b": gate})
        bus = EventBus()
        executor = CascadeExecutor(tree=make_tree(), client=client, event_bus=bus)

        task = executor.start("root")
        await wait_until(lambda: client.calls == ["a", "b"])
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        state = executor.state
        assert state.status == RunStatus.COMPLETED
        assert state.completed_node_ids == ["a"]
        assert not executor.is_running
        assert count(bus, EventType.CASCADE_COMPLETED) == 1


# ---------------------------------------------------------------------------
# Skip all previews
# ---------------------------------------------------------------------------


class TestSkipAllPreviews:
    @pytest.mark.asyncio
    async def test_flag_is_read_when_each_node_dispatches(self):
        client = MockGenerationClient()
        executor = None

        def on_call(node, context):
            if node.id == "a":
                executor.set_skip_all_previews(True)

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client)

        await executor.run("root")

        flags = {ctx.node_index: ctx.skip_all_previews for ctx in client.contexts}
        assert flags == {1: False, 2: True, 3: True}
        assert executor.state.skip_all_previews is False

    @pytest.mark.asyncio
    async def test_flag_can_be_set_at_start(self):
        client = MockGenerationClient()
        executor = CascadeExecutor(tree=make_tree(), client=client)

        await executor.run("root", skip_all_previews=True)

        assert all(ctx.skip_all_previews for ctx in client.contexts)
        assert executor.state.skip_all_previews is False

    @pytest.mark.asyncio
    async def test_flag_does_not_leak_into_next_run(self):
        client = MockGenerationClient()
        executor = CascadeExecutor(tree=make_tree(), client=client)

        await executor.run("root", skip_all_previews=True)
        client.contexts.clear()
        await executor.run("root")

        assert not any(ctx.skip_all_previews for ctx in client.contexts)


# ---------------------------------------------------------------------------
# Commands from other threads
# ---------------------------------------------------------------------------


class TestCrossThreadControl:
    @pytest.mark.asyncio
    async def test_pause_and_resume_from_worker_thread(self):
        gate = asyncio.Event()
        client = MockGenerationClient(gates={"a": gate})
        executor = CascadeExecutor(tree=make_tree(), client=client)

        task = executor.start("root")
        await wait_until(lambda: client.in_flight == 1)

        await asyncio.to_thread(executor.pause)
        assert executor.state.pause_requested
        gate.set()
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)

        await asyncio.to_thread(executor.resume)
        result = await asyncio.wait_for(task, timeout=2)

        assert result.completed_node_ids == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_cancel_from_worker_thread_wakes_paused_run(self):
        client = MockGenerationClient()
        executor = None

        def on_call(node, context):
            if node.id == "a":
                executor.pause()

        client.on_call = on_call
        executor = CascadeExecutor(tree=make_tree(), client=client)

        task = executor.start("root")
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)

        await asyncio.to_thread(executor.cancel)
        result = await asyncio.wait_for(task, timeout=2)

        assert result.cancelled
        assert result.completed_node_ids == ["a"]

    @pytest.mark.asyncio
    async def test_observer_sees_pause_after_slow_worker_thread_delivery(self):
        gate = asyncio.Event()
        client = MockGenerationClient(gates={"a": gate})
        executor = CascadeExecutor(tree=make_tree(), client=client)
        pauser = threading.Thread(target=executor.pause)
        in_listener = threading.Event()
        seen = []

        def listener(state):
            if threading.current_thread() is pauser:
                in_listener.set()
                time.sleep(0.1)
            seen.append(state.status)

        executor.subscribe(listener)
        task = executor.start("root")
        await wait_until(lambda: client.in_flight == 1)

        pauser.start()
        assert await asyncio.to_thread(in_listener.wait, 2)
        gate.set()
        await wait_until(lambda: executor.state.status == RunStatus.PAUSED)
        await asyncio.to_thread(pauser.join, 2)

        assert seen[-1] == RunStatus.PAUSED

        executor.resume()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status == RunStatus.COMPLETED
        assert seen[-1] == RunStatus.COMPLETED
