"""Conversion between the canvas graph and the runnable workflow spec.

The canvas uses ``{{ expr }}`` placeholders, the compiled spec uses
``${expr}``. The full canvas graph rides along under
``meta.reactflow_graph`` so a round trip restores the exact layout.
"""

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Set
from shared.constants import DEFAULT_LLM_MODEL, DEFAULT_LLM_USER_PROMPT, GRAPH_META_KEY, SPEC_VERSION
from shared.exceptions import GraphCompileError
from shared.types import BlockKind, Edge, InputDef, Node, Position, WorkflowGraph
from shared.utils import generate_edge_id
from services.editor.engine.graph_model import graph_from_payload, new_block_node, to_persisted_payload

MUSTACHE_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
DOLLAR_RE = re.compile(r"\$\{\s*([^}]+?)\s*\}")
ALIAS_STRIP_RE = re.compile(r"[^a-z0-9]+")

SPEC_NODE_KINDS = {
    "tool": BlockKind.TOOL,
    "llm": BlockKind.LLM,
    "if": BlockKind.IF_ELSE,
    "for_each": BlockKind.FOR_LOOP,
}
INPUT_TYPES = {"number", "integer", "boolean", "array", "object"}


def to_compiler_template(value: str) -> str:
    if not value:
        return value
    return MUSTACHE_RE.sub(lambda m: "${" + m.group(1).strip() + "}", value)


def to_builder_template(value: str) -> str:
    if not value:
        return value
    return DOLLAR_RE.sub(lambda m: "{{" + m.group(1).strip() + "}}", value)


def convert_templates(value: Any, to_compiler: bool = True) -> Any:
    """Recursively rewrites placeholders in strings nested in lists and dicts"""
    if isinstance(value, str):
        return to_compiler_template(value) if to_compiler else to_builder_template(value)
    if isinstance(value, list):
        return [convert_templates(item, to_compiler) for item in value]
    if isinstance(value, dict):
        return {key: convert_templates(item, to_compiler) for key, item in value.items()}
    return value


def sanitize_alias(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    alias = ALIAS_STRIP_RE.sub("_", str(value).strip().lower()).strip("_")
    if not alias:
        return None
    return f"_{alias}" if alias[0].isdigit() else alias


def node_alias(node: Node) -> str:
    config = node.config
    candidates = [
        node.label,
        config.get("tool_name") or config.get("toolName"),
        config.get("variable_name"),
        node.id,
    ]
    for candidate in candidates:
        alias = sanitize_alias(candidate)
        if alias:
            return alias
    return ""


def map_input_type(raw_type: Optional[str]) -> str:
    normalized = (raw_type or "text").lower()
    return normalized if normalized in INPUT_TYPES else "string"


def build_inputs_from_graph(graph: WorkflowGraph) -> Dict[str, InputDef]:
    inputs: Dict[str, InputDef] = {}
    for node in graph.nodes:
        if node.kind != BlockKind.INPUT:
            continue
        config = node.config
        fields = config.get("fields")
        if isinstance(fields, list):
            for field in fields:
                name = str(field.get("name") or "").strip()
                if not name:
                    continue
                inputs[name] = InputDef(
                    type=map_input_type(field.get("type")),
                    required=field.get("required") is not False,
                    description=field.get("displayLabel") or field.get("description") or node.label or None,
                )
        else:
            # legacy single-variable input block
            name = str(config.get("variable_name") or "").strip()
            if name:
                inputs[name] = InputDef(
                    type=map_input_type(config.get("type")),
                    required=config.get("required") is not False,
                    description=node.label or None,
                )
    return inputs


def _position_key(node: Optional[Node]):
    position = node.position if node else Position()
    return (position.y, position.x, node.id if node else "")


class _GraphIndex:

    def __init__(self, graph: WorkflowGraph):
        self.nodes = {node.id: node for node in graph.nodes}
        self.outgoing: Dict[str, List[Edge]] = {}
        self.incoming: Dict[str, List[Edge]] = {}
        for edge in graph.edges:
            self.outgoing.setdefault(edge.source, []).append(edge)
            self.incoming.setdefault(edge.target, []).append(edge)
        for edges in self.outgoing.values():
            edges.sort(key=lambda e: _position_key(self.nodes.get(e.target)))
        for edges in self.incoming.values():
            edges.sort(key=lambda e: _position_key(self.nodes.get(e.source)))


class _SpecCompiler:
    """Walks the canvas graph into nested spec nodes"""

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph
        self.index = _GraphIndex(graph)
        self.visited: Set[str] = {n.id for n in graph.nodes if n.kind in (BlockKind.INPUT, BlockKind.TRIGGER)}

    def compile(self) -> List[Dict[str, Any]]:
        result = []
        for root_id in self._root_ids():
            result.extend(self._linear_chain(root_id))
        # anything unreachable from a root
        for node in self.graph.nodes:
            if node.id not in self.visited:
                result.extend(self._linear_chain(node.id))
        return result

    def _root_ids(self) -> List[str]:
        roots = []
        for node in self.graph.nodes:
            if node.id in self.visited:
                continue
            incoming = self.index.incoming.get(node.id, [])
            sources = [self.index.nodes.get(e.source) for e in incoming]
            fed_by_block = any(
                source is not None and source.kind not in (BlockKind.INPUT, BlockKind.TRIGGER)
                for source in sources
            )
            if not fed_by_block:
                roots.append(node)
        return [node.id for node in sorted(roots, key=_position_key)]

    def _linear_chain(self, start_id: str) -> List[Dict[str, Any]]:
        sequence = []
        current_id: Optional[str] = start_id
        while current_id and current_id not in self.visited:
            node = self.index.nodes.get(current_id)
            self.visited.add(current_id)
            if node is None:
                break
            sequence.append(self._convert(node))
            current_id = self._next_id(node)
        return sequence

    def _next_id(self, node: Node) -> Optional[str]:
        edges = self.index.outgoing.get(node.id, [])
        if node.kind == BlockKind.FOR_LOOP:
            for edge in edges:
                if edge.branch is not None and edge.branch.value == "exit" and edge.target not in self.visited:
                    return edge.target
        for edge in edges:
            if edge.branch is None and edge.target not in self.visited:
                return edge.target
        return None

    def _branch(self, source_id: str, label: str) -> List[Dict[str, Any]]:
        sequence = []
        for edge in self.index.outgoing.get(source_id, []):
            if edge.branch is not None and edge.branch.value == label:
                sequence.extend(self._linear_chain(edge.target))
        return sequence

    def _convert(self, node: Node) -> Dict[str, Any]:
        if node.kind == BlockKind.TOOL:
            return self._tool(node)
        if node.kind == BlockKind.LLM:
            return self._llm(node)
        if node.kind == BlockKind.IF_ELSE:
            return self._if(node)
        if node.kind == BlockKind.FOR_LOOP:
            return self._for_each(node)
        raise GraphCompileError(f"Unsupported block type '{node.kind.value}' on node '{node.id}'", node_id=node.id)

    def _tool(self, node: Node) -> Dict[str, Any]:
        config = node.config
        tool_name = config.get("tool_name") or config.get("toolName")
        if not tool_name:
            raise GraphCompileError(f"Tool block '{node.label or node.id}' is missing a tool selection",
                                    node_id=node.id)
        params = config.get("params")
        spec_node = {
            "id": node.id,
            "type": "tool",
            "tool": tool_name,
            "in": convert_templates(params) if isinstance(params, dict) else {},
            "out": node_alias(node) or None,
        }
        schema = config.get("output_schema")
        if isinstance(schema, dict) and schema:
            spec_node["expect_output"] = {"mode": "json", "schema": {"schema": schema}}
        return spec_node

    def _llm(self, node: Node) -> Dict[str, Any]:
        config = node.config
        system_prompt = to_compiler_template(config.get("system_prompt") or "")
        raw_user_prompt = config.get("user_prompt") or ""
        user_prompt = to_compiler_template(raw_user_prompt) if raw_user_prompt != DEFAULT_LLM_USER_PROMPT else ""
        parts = [part for part in (system_prompt, user_prompt) if part]
        if not parts:
            raise GraphCompileError(f"LLM block '{node.label or node.id}' requires a prompt", node_id=node.id)

        refs = config.get("input_refs")
        schema = config.get("output_schema")
        spec_node = {
            "id": node.id,
            "type": "llm",
            "model": config.get("model") or DEFAULT_LLM_MODEL,
            "prompt": "\n\n".join(parts).strip(),
            "in": convert_templates(refs) if isinstance(refs, dict) else {},
            "out": node_alias(node) or None,
            "output": {"mode": "json", "schema": {"schema": schema}}
            if isinstance(schema, dict) and schema else {"mode": "text"},
        }
        for key in ("temperature", "max_tokens"):
            number = _as_number(config.get(key))
            if number is not None:
                spec_node[key] = number
        return spec_node

    def _if(self, node: Node) -> Dict[str, Any]:
        condition = str(node.config.get("condition") or "").strip()
        if not condition:
            raise GraphCompileError(f"If block '{node.label or node.id}' requires a condition", node_id=node.id)
        return {
            "id": node.id,
            "type": "if",
            "condition": to_compiler_template(condition),
            "then": self._branch(node.id, "true"),
            "else": self._branch(node.id, "false"),
            "out": node_alias(node) or None,
        }

    def _for_each(self, node: Node) -> Dict[str, Any]:
        config = node.config
        if config.get("array_mode") == "literal":
            literal = config.get("array_literal")
            items = json.dumps(convert_templates(literal if isinstance(literal, list) else []))
        else:
            reference = str(config.get("array_variable") or config.get("array_var") or "").strip()
            if not reference:
                raise GraphCompileError(f"For loop '{node.label or node.id}' requires an array reference",
                                        node_id=node.id)
            items = to_compiler_template(reference)
        return {
            "id": node.id,
            "type": "for_each",
            "items": items,
            "body": self._branch(node.id, "loop"),
            "item_var": config.get("item_var") or "item",
            "index_var": config.get("index_var") or "index",
            "out": node_alias(node) or None,
        }


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            return None
    return None


def graph_to_workflow_spec(graph: WorkflowGraph, existing: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Compiles the canvas graph; raises GraphCompileError on incomplete blocks"""
    existing = existing or {}
    inputs = build_inputs_from_graph(graph)
    if inputs:
        spec_inputs = {name: definition.model_dump(exclude_none=True) for name, definition in inputs.items()}
    else:
        spec_inputs = dict(existing.get("inputs") or {})

    nodes = _SpecCompiler(graph).compile()
    logging.info("Compiled workflow spec", extra={"nodes": len(nodes), "inputs": len(spec_inputs)})
    spec = {
        "version": existing.get("version") or SPEC_VERSION,
        "inputs": spec_inputs,
        "nodes": nodes,
        "meta": {**(existing.get("meta") or {}), GRAPH_META_KEY: to_persisted_payload(graph)},
    }
    if existing.get("output") is not None:
        spec["output"] = existing["output"]
    return spec


def workflow_spec_to_graph(spec: Mapping[str, Any]) -> WorkflowGraph:
    stored = (spec.get("meta") or {}).get(GRAPH_META_KEY)
    if isinstance(stored, dict):
        return graph_from_payload(stored)
    return _layout_graph_from_spec(spec)


def _spec_inputs(spec_node: Mapping[str, Any]) -> Dict[str, Any]:
    value = spec_node.get("in")
    if value is None:
        value = spec_node.get("in_")
    return dict(value or {})


def _builder_config(spec_node: Mapping[str, Any]) -> Dict[str, Any]:
    node_type = spec_node.get("type")
    if node_type == "tool":
        return {"tool_name": spec_node.get("tool"), "params": convert_templates(_spec_inputs(spec_node), False)}
    if node_type == "llm":
        output = spec_node.get("output") or {}
        schema = (output.get("schema") or {}).get("schema") if output.get("mode") == "json" else None
        config = {
            "model": spec_node.get("model") or DEFAULT_LLM_MODEL,
            "user_prompt": to_builder_template(spec_node.get("prompt") or ""),
            "input_refs": convert_templates(_spec_inputs(spec_node), False),
        }
        if schema:
            config["output_schema"] = schema
        for key in ("temperature", "max_tokens"):
            if spec_node.get(key) is not None:
                config[key] = spec_node[key]
        return config
    if node_type == "if":
        return {"condition": to_builder_template(spec_node.get("condition") or "")}
    if node_type == "for_each":
        return {
            "array_mode": "variable",
            "array_variable": to_builder_template(spec_node.get("items") or ""),
            "item_var": spec_node.get("item_var") or "item",
            "index_var": spec_node.get("index_var") or "index",
        }
    return {}


def _layout_graph_from_spec(spec: Mapping[str, Any]) -> WorkflowGraph:
    nodes: List[Node] = []
    edges: List[Edge] = []
    inputs = spec.get("inputs") or {}

    if inputs:
        fields = [
            {
                "name": name,
                "type": "number" if definition.get("type") in ("number", "integer") else "text",
                "required": definition.get("required") is not False,
            }
            for name, definition in inputs.items()
        ]
        nodes.append(new_block_node(BlockKind.INPUT, label="Input", config={"fields": fields},
                                    node_id="input-block"))

    base_x = 320 if inputs else 0
    previous_id: Optional[str] = None
    for index, spec_node in enumerate(spec.get("nodes") or []):
        node_id = spec_node.get("id") or f"node-{index}"
        kind = SPEC_NODE_KINDS.get(spec_node.get("type"), BlockKind.TOOL)
        nodes.append(Node(
            id=node_id,
            kind=kind,
            label=node_id,
            position=Position(x=base_x + index * 280, y=index * 120),
            config=_builder_config(spec_node),
        ))
        if previous_id is not None:
            edges.append(Edge(id=generate_edge_id(previous_id, node_id), source=previous_id, target=node_id))
        previous_id = node_id

    return WorkflowGraph(version=str(spec.get("version") or SPEC_VERSION), nodes=nodes, edges=edges)
