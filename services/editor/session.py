"""Editor session: owns the live graph for one open editor instance."""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional
from pydantic import BaseModel
from shared.config import EditorSettings
from shared.exceptions import Notice, PersistError, UnknownNode
from shared.logging_config import set_session_id
from shared.types import (
    BindingMode,
    BindingState,
    BlockKind,
    InputDef,
    IntegrationStatus,
    Node,
    TriggerDraft,
    TriggerSubscription,
    WorkflowGraph,
    WorkflowRecord,
)
from shared.utils import generate_session_id
from services.editor.engine import graph_model
from services.editor.engine.autosave import AutosaveCoordinator
from services.editor.engine.bindings import (
    preview_bindings,
    rederive_binding_state,
    update_binding_mode,
    update_binding_value,
)
from services.editor.engine.cycle_guard import CyclePolicy
from services.editor.engine.providers import get_provider
from services.editor.engine.spec_codec import graph_to_workflow_spec
from services.editor.engine.triggers import TriggerLifecycle
from services.editor.infra.collaborators import (
    PersistenceCollaborator,
    ResourceBindingCollaborator,
    TriggerCollaborator,
    WorkflowInputsCollaborator,
)


class EditorSession:
    """Open -> edit -> close for a single workflow.

    Structural edits are synchronous and schedule an autosave. Anything that
    talks to the server (trigger operations, input changes, immediate saves,
    close) is a coroutine.
    """

    def __init__(
        self,
        workflow_id: str,
        persistence: PersistenceCollaborator,
        triggers: TriggerCollaborator,
        inputs_api: Optional[WorkflowInputsCollaborator] = None,
        resources: Optional[ResourceBindingCollaborator] = None,
        settings: Optional[EditorSettings] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        session_id: Optional[str] = None,
    ):
        self.workflow_id = workflow_id
        self.persistence = persistence
        self.triggers = triggers
        self.settings = settings or EditorSettings()
        self.session_id = session_id or generate_session_id()
        self.cycle_policy = CyclePolicy(self.settings.cycle_policy)
        self.on_notice = on_notice

        self.graph = WorkflowGraph()
        self.workflow_inputs: Dict[str, InputDef] = {}
        self.binding_states: Dict[str, BindingState] = {}
        self.provider_states: Dict[str, BaseModel] = {}
        self.notices: List[Notice] = []

        self.autosave = AutosaveCoordinator(
            workflow_id,
            persistence,
            get_graph=lambda: self.graph,
            on_reload=self._on_reload,
            on_notice=self._notice,
            debounce_seconds=self.settings.autosave_debounce_seconds,
            timeout_seconds=self.settings.graph_save_timeout_seconds,
        )
        self.lifecycle = TriggerLifecycle(
            workflow_id, triggers, inputs_api=inputs_api, resources=resources, on_notice=self._notice
        )

    # Lifecycle

    async def open(self) -> WorkflowRecord:
        set_session_id(self.session_id)
        record = await self.persistence.get_workflow(self.workflow_id)
        subscriptions = await self.triggers.list_subscriptions(self.workflow_id)
        self.graph = self._attach_subscriptions(record.graph, subscriptions)
        self.workflow_inputs = dict(record.inputs)
        self.autosave.acknowledge(self.graph, record.draft_revision)
        self._rederive_all_bindings()
        logging.info("Editor session opened", extra={
            "workflow_id": self.workflow_id, "draft_revision": record.draft_revision,
            "nodes": len(self.graph.nodes),
        })
        return record

    def _attach_subscriptions(self, graph: WorkflowGraph, subscriptions: List[TriggerSubscription]) -> WorkflowGraph:
        """Swaps persisted trigger metadata for the server's canonical subscriptions"""
        by_id = {s.subscription_id: s for s in subscriptions}
        for node in graph_model.trigger_nodes(graph):
            meta = node.trigger_meta
            if not isinstance(meta, TriggerSubscription):
                continue
            canonical = by_id.get(meta.subscription_id)
            if canonical is None:
                logging.warning("Trigger node references a missing subscription", extra={
                    "node_id": node.id, "subscription_id": meta.subscription_id,
                })
                continue
            graph = graph_model.set_trigger_meta(graph, node.id, canonical)
        return graph

    async def close(self) -> Optional[int]:
        revision = await self.autosave.close()
        logging.info("Editor session closed", extra={"workflow_id": self.workflow_id})
        return revision

    def _on_reload(self, record: WorkflowRecord) -> None:
        """Replaces the live graph with the server copy, keeping local trigger drafts"""
        drafts = graph_model.draft_trigger_nodes(self.graph)
        draft_ids = {node.id for node in drafts}
        reloaded = record.graph
        kept_nodes = [node for node in drafts if reloaded.get_node(node.id) is None]
        present = {node.id for node in reloaded.nodes} | {node.id for node in kept_nodes}
        kept_edges = [
            edge for edge in self.graph.edges
            if (edge.source in draft_ids or edge.target in draft_ids)
            and edge.source in present and edge.target in present
        ]
        self.graph = reloaded.model_copy(update={
            "nodes": [*reloaded.nodes, *kept_nodes],
            "edges": [*reloaded.edges, *kept_edges],
        })
        self.workflow_inputs = dict(record.inputs)
        for node_id in list(self.provider_states):
            if self.graph.get_node(node_id) is None:
                del self.provider_states[node_id]
        self._rederive_all_bindings()

    def _notice(self, notice: Notice) -> None:
        self.notices.append(notice)
        if self.on_notice:
            self.on_notice(notice)

    # Structural edits

    def _apply(self, graph: WorkflowGraph) -> WorkflowGraph:
        if graph is not self.graph:
            self.graph = graph
            self.autosave.notify_change()
        return self.graph

    def add_node(self, node: Node) -> Node:
        self._apply(graph_model.add_node(self.graph, node))
        return node

    def add_block(self, kind: BlockKind, label: Optional[str] = None,
                  position: Optional[Mapping[str, float]] = None,
                  config: Optional[Mapping[str, Any]] = None) -> Node:
        return self.add_node(graph_model.new_block_node(kind, label=label, position=position, config=config))

    def remove_node(self, node_id: str) -> WorkflowGraph:
        """Local removal only; a subscribed trigger keeps its server-side subscription"""
        graph = self._apply(graph_model.remove_node(self.graph, node_id))
        self.binding_states.pop(node_id, None)
        self.provider_states.pop(node_id, None)
        return graph

    def connect(self, source: str, target: str, source_slot: Optional[str] = None,
                target_slot: Optional[str] = None) -> WorkflowGraph:
        return self._apply(graph_model.connect(
            self.graph, source, target, source_slot, target_slot, policy=self.cycle_policy
        ))

    def disconnect(self, edge_id: str) -> WorkflowGraph:
        return self._apply(graph_model.remove_edge(self.graph, edge_id))

    def update_node(self, node_id: str, update: Mapping[str, Any]) -> WorkflowGraph:
        return self._apply(graph_model.update_node(self.graph, node_id, update))

    async def update_node_config(self, node_id: str, update: Any, clear=None,
                                 persist: bool = False) -> WorkflowGraph:
        """Merges a config update; persist=True saves immediately instead of debouncing"""
        graph = graph_model.update_node_config(self.graph, node_id, update, clear=clear)
        if not persist:
            return self._apply(graph)

        self.graph = graph
        try:
            await self.autosave.flush()
        except PersistError:
            # keep the edit and retry on the regular debounce
            self.autosave.notify_change()
        return self.graph

    async def apply_assisted_edit(self, graph: WorkflowGraph) -> Optional[int]:
        """Replaces the graph with one produced by a chat/agent edit and saves it"""
        drafts = [node for node in graph_model.draft_trigger_nodes(self.graph) if graph.get_node(node.id) is None]
        self.graph = graph.model_copy(update={"nodes": [*graph.nodes, *drafts]})
        self._rederive_all_bindings()
        return await self.autosave.flush(timeout_seconds=self.settings.assisted_edit_timeout_seconds)

    def warnings(self) -> List[str]:
        return graph_model.graph_warnings(self.graph)

    def export_spec(self, existing: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return graph_to_workflow_spec(self.graph, existing)

    # Triggers

    def _trigger_node(self, node_id: str) -> Node:
        node = self.graph.get_node(node_id)
        if node is None or node.trigger_meta is None:
            raise UnknownNode(f"Trigger node '{node_id}' does not exist", self.workflow_id, node_id=node_id)
        return node

    def add_trigger(self, trigger_key: str, position: Optional[Mapping[str, float]] = None) -> Node:
        node = self.lifecycle.new_trigger_node(trigger_key, self.workflow_inputs, position=position)
        self.add_node(node)
        self.binding_states[node.id] = self.lifecycle.binding_state_for(node, self.workflow_inputs)
        self.provider_states[node.id] = self.lifecycle.provider_state_for(node)
        return node

    def set_provider_state(self, node_id: str, state: Any) -> BaseModel:
        node = self._trigger_node(node_id)
        coerced = get_provider(node.trigger_meta.trigger_key).coerce_state(state)
        self.provider_states[node_id] = coerced
        return coerced

    def set_binding_mode(self, node_id: str, input_name: str, mode: BindingMode) -> BindingState:
        self._trigger_node(node_id)
        state = update_binding_mode(self.binding_states.get(node_id, {}), input_name, mode)
        self.binding_states[node_id] = state
        return state

    def set_binding_value(self, node_id: str, input_name: str, value: str) -> BindingState:
        self._trigger_node(node_id)
        state = update_binding_value(self.binding_states.get(node_id, {}), input_name, value)
        self.binding_states[node_id] = state
        return state

    def preview_trigger_bindings(self, node_id: str, sample_event: Mapping[str, Any]):
        self._trigger_node(node_id)
        return preview_bindings(self.binding_states.get(node_id, {}), sample_event)

    async def save_trigger(self, node_id: str,
                           integrations: Optional[IntegrationStatus] = None) -> TriggerSubscription:
        node = self._trigger_node(node_id)
        provider_state = self.provider_states.get(node_id) or self.lifecycle.provider_state_for(node)
        binding_state = self.binding_states.get(node_id) or self.lifecycle.binding_state_for(node, self.workflow_inputs)
        subscription = await self.lifecycle.save(
            node, binding_state, provider_state, self.workflow_inputs, integrations
        )
        self._set_subscription(node_id, subscription)
        return subscription

    async def toggle_trigger(self, node_id: str, enabled: bool) -> TriggerSubscription:
        subscription = await self.lifecycle.set_enabled(self._trigger_node(node_id), enabled)
        self._set_subscription(node_id, subscription)
        return subscription

    def _set_subscription(self, node_id: str, subscription: TriggerSubscription) -> None:
        if self.graph.get_node(node_id) is None:
            # node removed while the request was outstanding
            logging.warning("Trigger node removed during save", extra={
                "node_id": node_id, "subscription_id": subscription.subscription_id,
            })
            return
        self._apply(graph_model.set_trigger_meta(self.graph, node_id, subscription))
        self.binding_states[node_id] = self.lifecycle.binding_state_for(
            self.graph.get_node(node_id), self.workflow_inputs
        )
        self.provider_states[node_id] = self.lifecycle.provider_state_for(self.graph.get_node(node_id))

    async def remove_trigger_node(self, node_id: str) -> WorkflowGraph:
        """Discards a draft or deletes the subscription, then removes the node"""
        node = self._trigger_node(node_id)
        if isinstance(node.trigger_meta, TriggerDraft):
            self.lifecycle.discard(node)
        else:
            await self.lifecycle.delete(node)
        graph = self.remove_node(node_id)
        self.lifecycle.forget(node_id)
        return graph

    def webhook_details(self, node_id: str) -> Optional[Dict[str, str]]:
        return self.lifecycle.webhook_details(self._trigger_node(node_id))

    async def bind_supabase_project(self, node_id: str, project_ref: str,
                                    service_role_key: Optional[str] = None) -> BaseModel:
        node = self._trigger_node(node_id)
        current = self.provider_states.get(node_id) or self.lifecycle.provider_state_for(node)
        state = await self.lifecycle.bind_supabase_project(current, project_ref, service_role_key)
        self.provider_states[node_id] = state
        return state

    # Workflow inputs

    async def add_workflow_input(self, name: str, input_type: str = "string",
                                 description: str = "", required: bool = True) -> Dict[str, InputDef]:
        self.workflow_inputs = await self.lifecycle.add_workflow_input(
            self.workflow_inputs, name, input_type=input_type, description=description, required=required
        )
        self._rederive_all_bindings()
        return self.workflow_inputs

    async def remove_workflow_input(self, name: str) -> Dict[str, InputDef]:
        self.workflow_inputs = await self.lifecycle.remove_workflow_input(self.workflow_inputs, name)
        self._rederive_all_bindings()
        return self.workflow_inputs

    def _rederive_all_bindings(self) -> None:
        states = {}
        for node in graph_model.trigger_nodes(self.graph):
            current = self.binding_states.get(node.id)
            if current is None:
                states[node.id] = self.lifecycle.binding_state_for(node, self.workflow_inputs)
            else:
                states[node.id] = rederive_binding_state(self.workflow_inputs, current)
            if node.id not in self.provider_states:
                self.provider_states[node.id] = self.lifecycle.provider_state_for(node)
        self.binding_states = states
