"""Branch slot allocation for conditional and loop blocks."""

import logging
from typing import List, Optional, Tuple
from shared.constants import IF_ELSE_BRANCHES, FOR_LOOP_BRANCHES
from shared.exceptions import BranchesExhausted, StructuralEditError
from shared.types import BlockKind, BranchLabel, Edge, Node

BRANCH_SLOTS = {
    BlockKind.IF_ELSE: IF_ELSE_BRANCHES,
    BlockKind.FOR_LOOP: FOR_LOOP_BRANCHES,
}


def branch_slots(kind: BlockKind) -> Optional[Tuple[str, ...]]:
    """Returns the ordered branch slots of a block kind, or None for single-output kinds"""
    return BRANCH_SLOTS.get(kind)


def is_branching(node: Node) -> bool:
    return node.kind in BRANCH_SLOTS


def occupied_branches(outgoing: List[Edge]) -> List[str]:
    return [edge.branch.value for edge in outgoing if edge.branch is not None]


def allocate_branch(source: Node, outgoing: List[Edge], requested: Optional[str] = None) -> Optional[BranchLabel]:
    """Picks the branch label for a new edge leaving source.

    An explicitly requested slot is honored as-is but must still be free.
    Otherwise the first free slot in allocation order is taken. Returns None
    for block kinds with a single unlabeled output.
    """
    slots = branch_slots(source.kind)
    if slots is None:
        return None

    taken = occupied_branches(outgoing)

    if requested:
        if requested not in slots:
            raise StructuralEditError(
                f"Block '{source.id}' has no '{requested}' output",
                node_id=source.id, slot=requested,
            )
        if requested in taken:
            logging.warning(
                "Rejected edge on occupied branch slot",
                extra={"node_id": source.id, "branch": requested},
            )
            raise BranchesExhausted(
                f"Branch '{requested}' of block '{source.id}' is already connected",
                node_id=source.id, slot=requested,
            )
        return BranchLabel(requested)

    for slot in slots:
        if slot not in taken:
            return BranchLabel(slot)

    logging.warning("No free branch slot", extra={"node_id": source.id, "slots": list(slots)})
    raise BranchesExhausted(
        f"All branches of block '{source.id}' are already connected ({', '.join(slots)})",
        node_id=source.id,
    )
