"""
Unit tests for branch slot allocation.
"""

import pytest
from services.editor.engine.branch_allocator import allocate_branch, branch_slots
from shared.exceptions import BranchesExhausted, StructuralEditError
from shared.types import BlockKind, BranchLabel, Edge, EdgeData, Node


def edge(source, target, branch):
    return Edge(id=f"edge-{source}-{target}", source=source, target=target, data=EdgeData(branch=branch))


def test_non_branching_kinds_have_no_slots():
    assert branch_slots(BlockKind.TOOL) is None
    assert allocate_branch(Node(id="t", kind=BlockKind.LLM), []) is None


def test_first_free_slot_is_taken():
    node = Node(id="cond", kind=BlockKind.IF_ELSE)

    assert allocate_branch(node, []) == BranchLabel.TRUE
    assert allocate_branch(node, [edge("cond", "a", "true")]) == BranchLabel.FALSE
    assert allocate_branch(node, [edge("cond", "a", "false")]) == BranchLabel.TRUE


def test_exhausted_slots_rejected():
    node = Node(id="loop", kind=BlockKind.FOR_LOOP)
    outgoing = [edge("loop", "a", "loop"), edge("loop", "b", "exit")]

    with pytest.raises(BranchesExhausted):
        allocate_branch(node, outgoing)


def test_requested_slot_must_exist_on_block():
    node = Node(id="cond", kind=BlockKind.IF_ELSE)

    with pytest.raises(StructuralEditError, match="no 'loop' output"):
        allocate_branch(node, [], requested="loop")
