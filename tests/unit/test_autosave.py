"""
Tests for debounced autosave.

Covers coalescing of rapid edits, the single in-flight save guarantee,
conflict reloads and failure handling that keeps local edits.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock
from services.editor.engine.autosave import AutosaveCoordinator
from services.editor.engine.graph_model import new_block_node, update_node
from shared.exceptions import PersistConflict, PersistFailed, PersistTimeout
from shared.types import AutosaveState, BlockKind, Node, SaveResult, WorkflowGraph, WorkflowRecord


class LiveGraph:
    """Stands in for the editor session's live graph"""

    def __init__(self):
        self.graph = WorkflowGraph(nodes=[new_block_node(BlockKind.TOOL, node_id="n1", label="start")])

    def get(self):
        return self.graph

    def relabel(self, label):
        self.graph = update_node(self.graph, "n1", {"label": label})


def make_coordinator(live, persistence, **kwargs):
    coordinator = AutosaveCoordinator("wf-1", persistence, live.get, draft_revision=1,
                                      debounce_seconds=kwargs.pop("debounce_seconds", 0.01), **kwargs)
    coordinator.acknowledge(live.graph)
    return coordinator


def test_three_edits_in_debounce_window_produce_one_save():
    """Only the state after the last edit is sent"""
    live = LiveGraph()
    persistence = Mock()
    persistence.save_graph = AsyncMock(return_value=SaveResult(draft_revision=2))

    async def scenario():
        coordinator = make_coordinator(live, persistence)
        for label in ("one", "two", "three"):
            live.relabel(label)
            coordinator.notify_change()
        assert coordinator.state == AutosaveState.PENDING_SAVE
        await asyncio.sleep(0.1)
        return coordinator

    coordinator = asyncio.run(scenario())

    persistence.save_graph.assert_awaited_once()
    workflow_id, payload, base_revision = persistence.save_graph.await_args.args
    assert workflow_id == "wf-1"
    assert payload["nodes"][0]["label"] == "three"
    assert base_revision == 1
    assert coordinator.draft_revision == 2
    assert coordinator.state == AutosaveState.IDLE


def test_close_during_inflight_save_sends_nothing_more():
    """Close while a save is outstanding results in exactly one network call"""
    live = LiveGraph()
    persistence = Mock()

    async def scenario():
        gate = asyncio.Event()

        async def slow_save(workflow_id, payload, base_revision):
            await gate.wait()
            return SaveResult(draft_revision=2)

        persistence.save_graph = AsyncMock(side_effect=slow_save)
        coordinator = make_coordinator(live, persistence)
        live.relabel("edited")

        save_task = asyncio.create_task(coordinator.flush())
        await asyncio.sleep(0)
        assert coordinator.state == AutosaveState.SAVING

        assert await coordinator.close() is None

        gate.set()
        return await save_task

    assert asyncio.run(scenario()) == 2
    assert persistence.save_graph.await_count == 1


def test_edits_during_inflight_save_get_one_followup_save():
    live = LiveGraph()
    persistence = Mock()

    async def scenario():
        gate = asyncio.Event()
        labels = []

        async def slow_save(workflow_id, payload, base_revision):
            labels.append(payload["nodes"][0]["label"])
            await gate.wait()
            return SaveResult(draft_revision=base_revision + 1)

        persistence.save_graph = AsyncMock(side_effect=slow_save)
        coordinator = make_coordinator(live, persistence)
        live.relabel("first")
        first = asyncio.create_task(coordinator.flush())
        await asyncio.sleep(0)

        live.relabel("second")
        coordinator.notify_change()
        await asyncio.sleep(0.05)  # debounce fires while the first save is outstanding
        assert persistence.save_graph.await_count == 1

        gate.set()
        await first
        await asyncio.sleep(0.05)
        return coordinator, labels

    coordinator, labels = asyncio.run(scenario())

    assert labels == ["first", "second"]
    assert coordinator.draft_revision == 3
    assert not coordinator.has_unsaved_changes()


def test_noop_edit_does_not_save():
    live = LiveGraph()
    persistence = Mock()
    persistence.save_graph = AsyncMock()

    coordinator = make_coordinator(live, persistence)
    live.relabel("start")

    assert asyncio.run(coordinator.flush()) is None
    persistence.save_graph.assert_not_awaited()


def test_conflict_reloads_server_copy_and_notifies():
    live = LiveGraph()
    server_graph = WorkflowGraph(nodes=[Node(id="server", kind=BlockKind.TOOL)])
    persistence = Mock()
    persistence.save_graph = AsyncMock(side_effect=PersistConflict("stale", "wf-1", current_revision=5))
    persistence.get_workflow = AsyncMock(return_value=WorkflowRecord(
        workflow_id="wf-1", graph=server_graph, draft_revision=5,
    ))
    reloaded, notices = [], []
    coordinator = make_coordinator(live, persistence, on_reload=reloaded.append, on_notice=notices.append)
    live.relabel("local")

    with pytest.raises(PersistConflict):
        asyncio.run(coordinator.flush())

    assert reloaded[0].graph == server_graph
    assert coordinator.draft_revision == 5
    assert notices[-1].title == "Draft conflict detected"
    assert notices[-1].description == "Reloaded the latest draft from the server. Please retry your change."
    assert coordinator.state == AutosaveState.IDLE


def test_conflict_with_failed_reload_asks_for_refresh():
    live = LiveGraph()
    persistence = Mock()
    persistence.save_graph = AsyncMock(side_effect=PersistConflict("stale", "wf-1"))
    persistence.get_workflow = AsyncMock(side_effect=PersistFailed("unreachable", "wf-1"))
    notices = []
    coordinator = make_coordinator(live, persistence, on_notice=notices.append)
    live.relabel("local")

    with pytest.raises(PersistConflict):
        asyncio.run(coordinator.flush())

    assert notices[-1].description == "Reload failed. Please refresh the page to continue."
    assert coordinator.draft_revision == 1


def test_timeout_surfaces_notice_and_keeps_edits():
    live = LiveGraph()
    persistence = Mock()

    async def hang(workflow_id, payload, base_revision):
        await asyncio.sleep(1)

    persistence.save_graph = AsyncMock(side_effect=hang)
    notices = []
    coordinator = make_coordinator(live, persistence, on_notice=notices.append, timeout_seconds=0.01)
    live.relabel("local")

    with pytest.raises(PersistTimeout):
        asyncio.run(coordinator.flush())

    assert notices[-1].level == "error"
    assert coordinator.has_unsaved_changes()
    assert coordinator.state == AutosaveState.IDLE
    assert live.graph.get_node("n1").label == "local"


def test_unexpected_error_becomes_persist_failed():
    live = LiveGraph()
    persistence = Mock()
    persistence.save_graph = AsyncMock(side_effect=RuntimeError("boom"))
    coordinator = make_coordinator(live, persistence)
    live.relabel("local")

    with pytest.raises(PersistFailed, match="boom"):
        asyncio.run(coordinator.flush())
    assert coordinator.has_unsaved_changes()


def test_changes_after_close_are_ignored():
    live = LiveGraph()
    persistence = Mock()
    persistence.save_graph = AsyncMock(return_value=SaveResult(draft_revision=2))

    async def scenario():
        coordinator = make_coordinator(live, persistence)
        await coordinator.close()
        live.relabel("late")
        coordinator.notify_change()
        return coordinator

    coordinator = asyncio.run(scenario())

    assert coordinator.closed
    assert coordinator.state == AutosaveState.IDLE
    persistence.save_graph.assert_not_awaited()


def test_reset_acknowledged_forces_next_save():
    live = LiveGraph()
    persistence = Mock()
    persistence.save_graph = AsyncMock(return_value=SaveResult(draft_revision=2))
    coordinator = make_coordinator(live, persistence)

    coordinator.reset_acknowledged()

    assert coordinator.has_unsaved_changes()
    assert asyncio.run(coordinator.flush()) == 2
    assert not coordinator.has_unsaved_changes()
