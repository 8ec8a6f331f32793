"""Cycle checks run before every edge insertion."""

import logging
from collections import deque
from enum import Enum
from typing import Dict, List, Set
from shared.exceptions import CycleRejected
from shared.types import WorkflowGraph


class CyclePolicy(str, Enum):
    DIRECT = "direct"              # reject A->B only when B->A already exists
    REACHABILITY = "reachability"  # reject A->B when B already reaches A


def build_adjacency(graph: WorkflowGraph) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)
    return adjacency


def reaches(adjacency: Dict[str, List[str]], start: str, goal: str) -> bool:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current == goal:
            return True
        for child in adjacency.get(current, []):
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return False


def would_create_cycle(graph: WorkflowGraph, source: str, target: str,
                       policy: CyclePolicy = CyclePolicy.DIRECT) -> bool:
    if policy == CyclePolicy.REACHABILITY:
        return reaches(build_adjacency(graph), target, source)
    return any(edge.source == target and edge.target == source for edge in graph.edges)


def check_edge(graph: WorkflowGraph, source: str, target: str,
               policy: CyclePolicy = CyclePolicy.DIRECT) -> None:
    """Raises CycleRejected when source->target would close a loop under policy"""
    if would_create_cycle(graph, source, target, policy):
        logging.warning(
            "Rejected edge that would create a cycle",
            extra={"source": source, "target": target, "policy": policy.value},
        )
        raise CycleRejected(
            f"Connecting '{source}' to '{target}' would create a cycle",
            source=source, target=target, policy=policy.value,
        )


def has_cycle(adjacency: Dict[str, List[str]], node_ids: Set[str]) -> bool:
    in_degree = {nid: 0 for nid in node_ids}
    for children in adjacency.values():
        for child in children:
            in_degree[child] += 1

    queue = deque([nid for nid, deg in in_degree.items() if deg == 0])
    processed = 0

    while queue:
        node_id = queue.popleft()
        processed += 1
        for child in adjacency[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    return processed != len(node_ids)


def graph_has_cycle(graph: WorkflowGraph) -> bool:
    """Full check over an already-built graph, regardless of insertion policy"""
    adjacency = build_adjacency(graph)
    return has_cycle(adjacency, set(adjacency))
