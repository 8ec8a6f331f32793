"""Pure operations over the workflow graph.

Every operation takes a WorkflowGraph and returns a new one; the input graph
is never mutated. Rejected edits raise a StructuralEditError subclass and
leave the caller's graph as it was.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from shared.constants import (
    DEFAULT_LLM_MODEL,
    DEFAULT_LLM_TEMPERATURE,
    DEFAULT_LLM_USER_PROMPT,
    MAX_NODES_PER_WORKFLOW,
)
from shared.exceptions import DuplicateNode, InvalidConfigShape, StructuralEditError, UnknownNode
from shared.types import (
    BlockKind,
    BranchLabel,
    Edge,
    EdgeData,
    Node,
    Position,
    TriggerDraft,
    TriggerMeta,
    TriggerSubscription,
    WorkflowGraph,
)
from shared.utils import generate_edge_id, generate_node_id
from services.editor.engine.branch_allocator import allocate_branch, is_branching
from services.editor.engine.config_reconciler import reconcile_config
from services.editor.engine.cycle_guard import CyclePolicy, check_edge

LEGACY_HANDLE_KEYS = ("sourceHandle", "targetHandle")
BRANCH_VALUES = {label.value for label in BranchLabel}

NODE_UPDATE_KEYS = {"label", "position", "config", "clear"}


def default_config(kind: BlockKind) -> Dict[str, Any]:
    if kind == BlockKind.LLM:
        return {
            "system_prompt": "",
            "user_prompt": DEFAULT_LLM_USER_PROMPT,
            "model": DEFAULT_LLM_MODEL,
            "temperature": DEFAULT_LLM_TEMPERATURE,
        }
    if kind == BlockKind.IF_ELSE:
        return {"condition": ""}
    if kind == BlockKind.FOR_LOOP:
        return {
            "array_mode": "variable",
            "array_variable": "items",
            "array_literal": [],
            "item_var": "item",
        }
    if kind == BlockKind.INPUT:
        return {"fields": []}
    return {}


def new_block_node(kind: Union[BlockKind, str], label: Optional[str] = None,
                   position: Optional[Mapping[str, float]] = None,
                   config: Optional[Mapping[str, Any]] = None,
                   node_id: Optional[str] = None,
                   trigger_meta: Optional[TriggerMeta] = None) -> Node:
    """Creates a node with the per-kind default config merged under config"""
    kind = BlockKind(kind)
    if kind == BlockKind.CODE:
        logging.warning("Code blocks are deprecated", extra={"node_id": node_id})

    merged = reconcile_config(default_config(kind), config or {}, node_id=node_id or "")
    return Node(
        id=node_id or generate_node_id(kind.value),
        kind=kind,
        label=label if label is not None else kind.value.replace("_", " ").title(),
        position=Position(**position) if position else Position(),
        config=merged,
        trigger_meta=trigger_meta,
    )


def _require_node(graph: WorkflowGraph, node_id: str) -> Node:
    node = graph.get_node(node_id)
    if node is None:
        raise UnknownNode(f"Node '{node_id}' does not exist", node_id=node_id)
    return node


def _replace_node(graph: WorkflowGraph, node: Node) -> WorkflowGraph:
    nodes = [node if existing.id == node.id else existing for existing in graph.nodes]
    return graph.model_copy(update={"nodes": nodes})


def add_node(graph: WorkflowGraph, node: Node) -> WorkflowGraph:
    if graph.get_node(node.id) is not None:
        raise DuplicateNode(f"Node '{node.id}' already exists", node_id=node.id)
    if len(graph.nodes) >= MAX_NODES_PER_WORKFLOW:
        raise StructuralEditError(
            f"Workflow exceeds maximum node limit: {MAX_NODES_PER_WORKFLOW}",
            node_id=node.id,
        )
    return graph.model_copy(update={"nodes": [*graph.nodes, node]})


def remove_node(graph: WorkflowGraph, node_id: str) -> WorkflowGraph:
    """Removes a node and every edge touching it.

    A trigger node holding a subscription is removed locally only; deleting
    the server-side subscription is the trigger lifecycle's job.
    """
    node = _require_node(graph, node_id)
    if isinstance(node.trigger_meta, TriggerSubscription):
        logging.warning(
            "Removed trigger node still has a server-side subscription",
            extra={"node_id": node_id, "subscription_id": node.trigger_meta.subscription_id},
        )
    return graph.model_copy(update={
        "nodes": [n for n in graph.nodes if n.id != node_id],
        "edges": [e for e in graph.edges if e.source != node_id and e.target != node_id],
    })


def add_edge(graph: WorkflowGraph, edge: Edge, policy: CyclePolicy = CyclePolicy.DIRECT) -> WorkflowGraph:
    """Inserts a fully-formed edge after checking endpoints, cycles and branch exclusivity"""
    source = _require_node(graph, edge.source)
    _require_node(graph, edge.target)
    if any(existing.id == edge.id for existing in graph.edges):
        raise StructuralEditError(f"Edge '{edge.id}' already exists", edge_id=edge.id)

    check_edge(graph, edge.source, edge.target, policy)
    if is_branching(source):
        requested = edge.branch.value if edge.branch else None
        branch = allocate_branch(source, graph.edges_from(source.id), requested)
        if edge.branch != branch:
            data = (edge.data or EdgeData()).model_copy(update={"branch": branch})
            edge = edge.model_copy(update={"data": data})
    return graph.model_copy(update={"edges": [*graph.edges, edge]})


def connect(graph: WorkflowGraph, source: str, target: str,
            source_slot: Optional[str] = None, target_slot: Optional[str] = None,
            policy: CyclePolicy = CyclePolicy.DIRECT) -> WorkflowGraph:
    """Full edge-insertion path used by the editor when the user drags a connection"""
    source_node = _require_node(graph, source)
    _require_node(graph, target)

    for existing in graph.edges_from(source):
        if existing.target != target:
            continue
        same_branch = existing.branch is not None and existing.branch.value == source_slot
        if same_branch or (not is_branching(source_node) and existing.branch is None):
            logging.debug("Edge already present", extra={"edge_id": existing.id})
            return graph

    check_edge(graph, source, target, policy)

    branch = allocate_branch(source_node, graph.edges_from(source), source_slot)
    edge = Edge(
        id=generate_edge_id(source, target, branch.value if branch else None),
        source=source,
        target=target,
        source_slot=branch.value if branch else source_slot,
        target_slot=target_slot,
        data=EdgeData(branch=branch) if branch else None,
    )
    logging.info("Edge connected", extra={"edge_id": edge.id, "branch": branch.value if branch else None})
    return graph.model_copy(update={"edges": [*graph.edges, edge]})


def remove_edge(graph: WorkflowGraph, edge_id: str) -> WorkflowGraph:
    edges = [e for e in graph.edges if e.id != edge_id]
    if len(edges) == len(graph.edges):
        logging.debug("Edge not found", extra={"edge_id": edge_id})
        return graph
    return graph.model_copy(update={"edges": edges})


def update_node_config(graph: WorkflowGraph, node_id: str, update: Any,
                       clear: Optional[Iterable[str]] = None) -> WorkflowGraph:
    node = _require_node(graph, node_id)
    merged = reconcile_config(node.config, update, clear=clear, node_id=node_id)
    return _replace_node(graph, node.model_copy(update={"config": merged}))


def update_node(graph: WorkflowGraph, node_id: str, update: Mapping[str, Any]) -> WorkflowGraph:
    """Applies a partial node update (label, position, config).

    ``config`` goes through the reconciler whenever the key is present, even
    when it is an empty object.
    """
    if not isinstance(update, Mapping):
        raise InvalidConfigShape(f"Update for '{node_id}' must be an object", node_id=node_id)
    unknown = set(update) - NODE_UPDATE_KEYS
    if unknown:
        raise InvalidConfigShape(
            f"Unsupported node update keys: {', '.join(sorted(unknown))}", node_id=node_id
        )

    node = _require_node(graph, node_id)
    changes: Dict[str, Any] = {}
    if "label" in update:
        changes["label"] = str(update["label"] or "")
    if "position" in update:
        position = update["position"]
        if not isinstance(position, Mapping):
            raise InvalidConfigShape("'position' must be an object", node_id=node_id)
        changes["position"] = Position(**position)
    if "config" in update or update.get("clear"):
        changes["config"] = reconcile_config(
            node.config, update.get("config", {}), clear=update.get("clear"), node_id=node_id
        )
    return _replace_node(graph, node.model_copy(update=changes))


def set_trigger_meta(graph: WorkflowGraph, node_id: str, meta: TriggerMeta) -> WorkflowGraph:
    node = _require_node(graph, node_id)
    if node.kind != BlockKind.TRIGGER:
        raise StructuralEditError(f"Node '{node_id}' is not a trigger", node_id=node_id)
    return _replace_node(graph, node.model_copy(update={"trigger_meta": meta}))


def trigger_nodes(graph: WorkflowGraph) -> List[Node]:
    return [node for node in graph.nodes if node.kind == BlockKind.TRIGGER and node.trigger_meta is not None]


def draft_trigger_nodes(graph: WorkflowGraph) -> List[Node]:
    return [node for node in graph.nodes if isinstance(node.trigger_meta, TriggerDraft)]


def graph_warnings(graph: WorkflowGraph) -> List[str]:
    """Advisory findings; none of them block an edit"""
    warnings = []
    input_nodes = [node for node in graph.nodes if node.kind == BlockKind.INPUT]
    if len(input_nodes) > 1:
        warnings.append(
            f"Workflow has {len(input_nodes)} input blocks; only one is used as the entry point"
        )

    node_ids = {node.id for node in graph.nodes}
    for edge in graph.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            warnings.append(f"Edge '{edge.id}' points at a missing node")

    if len(graph.nodes) > 1:
        connected = {e.source for e in graph.edges} | {e.target for e in graph.edges}
        for node in graph.nodes:
            if node.id not in connected and node.kind not in (BlockKind.INPUT, BlockKind.TRIGGER):
                warnings.append(f"Block '{node.label or node.id}' is not connected")
    return warnings


def _persisted_node(node: Node) -> Dict[str, Any]:
    data = node.model_dump(mode="json")
    if data.get("trigger_meta"):
        data["trigger_meta"].pop("secret_token", None)
    return data


def to_persisted_payload(graph: WorkflowGraph) -> Dict[str, Any]:
    """Snapshot body sent to the persistence collaborator.

    Draft trigger nodes only exist in the editor and are left out together
    with their edges.
    """
    draft_ids = {node.id for node in draft_trigger_nodes(graph)}
    return {
        "version": graph.version,
        "nodes": [_persisted_node(n) for n in graph.nodes if n.id not in draft_ids],
        "edges": [
            e.model_dump(mode="json") for e in graph.edges
            if e.source not in draft_ids and e.target not in draft_ids
        ],
    }


def normalize_edge_payload(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Moves a legacy branch marker into data.branch and drops canvas handle keys.

    Older payloads carry the branch in data.branch, a top-level branch, or the
    targetHandle of the edge.
    """
    edge = {key: value for key, value in raw.items() if key not in LEGACY_HANDLE_KEYS and key != "branch"}
    data = dict(raw.get("data") or {})
    candidate = data.get("branch") or raw.get("branch") or raw.get("targetHandle") or data.get("targetHandle")
    for key in LEGACY_HANDLE_KEYS:
        data.pop(key, None)
    if candidate in BRANCH_VALUES:
        data["branch"] = candidate
    else:
        data.pop("branch", None)
    edge["data"] = data or None
    return edge


def graph_from_payload(payload: Mapping[str, Any]) -> WorkflowGraph:
    body = dict(payload)
    body["edges"] = [normalize_edge_payload(edge) for edge in body.get("edges") or []]
    return WorkflowGraph.model_validate(body)
