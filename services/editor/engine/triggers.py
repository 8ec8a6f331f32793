"""Trigger node lifecycle: Draft -> Saving -> Subscribed, plus discard and delete."""

import logging
import re
from typing import Any, Callable, Dict, Mapping, Optional
from pydantic import BaseModel
from shared.constants import INPUT_NAME_PATTERN
from shared.exceptions import (
    Notice,
    PersistError,
    PersistFailed,
    TriggerStateError,
    ValidationFailed,
)
from shared.types import (
    BindingState,
    BlockKind,
    InputDef,
    IntegrationStatus,
    Node,
    SubscriptionCreateRequest,
    TriggerDraft,
    TriggerState,
    TriggerSubscription,
)
from shared.utils import generate_draft_id
from services.editor.engine.bindings import (
    build_bindings_payload,
    build_default_binding_state,
    derive_binding_state_from_subscription,
    rederive_binding_state,
    validate_binding_state,
)
from services.editor.engine.graph_model import new_block_node
from services.editor.engine.providers import SupabaseConfigState, get_provider
from services.editor.infra.collaborators import (
    ResourceBindingCollaborator,
    TriggerCollaborator,
    WorkflowInputsCollaborator,
)

INPUT_NAME_RE = re.compile(INPUT_NAME_PATTERN)


class TriggerLifecycle:
    """Moves trigger nodes between local draft and server subscription.

    Operations take the node as it currently sits in the graph and return the
    new trigger metadata; the caller writes it back into its live graph.
    """

    def __init__(
        self,
        workflow_id: str,
        triggers: TriggerCollaborator,
        inputs_api: Optional[WorkflowInputsCollaborator] = None,
        resources: Optional[ResourceBindingCollaborator] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ):
        self.workflow_id = workflow_id
        self.triggers = triggers
        self.inputs_api = inputs_api
        self.resources = resources
        self.on_notice = on_notice
        self._states: Dict[str, TriggerState] = {}

    def state_of(self, node: Node) -> TriggerState:
        if node.id in self._states:
            return self._states[node.id]
        meta = node.trigger_meta
        if isinstance(meta, TriggerDraft):
            return TriggerState.DRAFT
        if isinstance(meta, TriggerSubscription):
            return TriggerState.SUBSCRIBED
        raise TypeError(f"Node '{node.id}' has no trigger metadata")

    def forget(self, node_id: str) -> None:
        self._states.pop(node_id, None)

    # Drafts

    def new_draft(self, trigger_key: str, workflow_inputs: Mapping[str, InputDef],
                  provider_config: Optional[Mapping[str, Any]] = None) -> TriggerDraft:
        provider = get_provider(trigger_key)
        if provider_config is None:
            provider_config = provider.serialize(provider.default_state())
        return TriggerDraft(
            id=generate_draft_id(),
            trigger_key=trigger_key,
            initial_bindings=build_default_binding_state(workflow_inputs),
            initial_provider_config=dict(provider_config),
        )

    def new_trigger_node(self, trigger_key: str, workflow_inputs: Mapping[str, InputDef],
                         position: Optional[Mapping[str, float]] = None,
                         label: Optional[str] = None) -> Node:
        draft = self.new_draft(trigger_key, workflow_inputs)
        node = new_block_node(BlockKind.TRIGGER, label=label or trigger_key, position=position,
                              trigger_meta=draft)
        self._states[node.id] = TriggerState.DRAFT
        logging.info("Trigger draft created", extra={"node_id": node.id, "trigger_key": trigger_key})
        return node

    def provider_state_for(self, node: Node) -> BaseModel:
        meta = node.trigger_meta
        if isinstance(meta, TriggerDraft):
            return get_provider(meta.trigger_key).from_provider_config(meta.initial_provider_config)
        if isinstance(meta, TriggerSubscription):
            return get_provider(meta.trigger_key).from_provider_config(meta.provider_config)
        raise TypeError(f"Node '{node.id}' has no trigger metadata")

    def binding_state_for(self, node: Node, workflow_inputs: Mapping[str, InputDef]) -> BindingState:
        meta = node.trigger_meta
        if isinstance(meta, TriggerDraft):
            return rederive_binding_state(workflow_inputs, dict(meta.initial_bindings))
        if isinstance(meta, TriggerSubscription):
            return derive_binding_state_from_subscription(workflow_inputs, meta)
        raise TypeError(f"Node '{node.id}' has no trigger metadata")

    def discard(self, node: Node) -> None:
        if not isinstance(node.trigger_meta, TriggerDraft):
            raise TriggerStateError("Only trigger drafts can be discarded", self.workflow_id, node_id=node.id)
        if self.state_of(node) == TriggerState.SAVING:
            raise TriggerStateError("Trigger draft is being saved", self.workflow_id, node_id=node.id)
        self._states[node.id] = TriggerState.DISCARDED
        logging.info("Trigger draft discarded", extra={"node_id": node.id})
        self._notify(Notice(title="Trigger draft removed"))

    # Validation

    def validate(self, trigger_key: str, binding_state: BindingState, provider_state: Any,
                 workflow_inputs: Mapping[str, InputDef],
                 integrations: Optional[IntegrationStatus] = None,
                 check_connection: bool = True) -> Dict[str, str]:
        if not trigger_key or not trigger_key.strip():
            return {"trigger_key": "Select a trigger type"}

        provider = get_provider(trigger_key)
        errors = validate_binding_state(binding_state, workflow_inputs)
        errors.update(provider.validate(provider.coerce_state(provider_state)))
        if check_connection and provider.requires_connection:
            if integrations is None or not integrations.gmail_ready:
                errors["connection"] = "Connect Gmail before saving this trigger"
        return errors

    # Save

    async def save(self, node: Node, binding_state: BindingState, provider_state: Any,
                   workflow_inputs: Mapping[str, InputDef],
                   integrations: Optional[IntegrationStatus] = None) -> TriggerSubscription:
        meta = node.trigger_meta
        if isinstance(meta, TriggerDraft):
            return await self._create_subscription(node, meta, binding_state, provider_state,
                                                   workflow_inputs, integrations)
        if isinstance(meta, TriggerSubscription):
            return await self._update_subscription(node, meta, binding_state, provider_state, workflow_inputs)
        raise TypeError(f"Node '{node.id}' has no trigger metadata")

    async def _create_subscription(self, node: Node, draft: TriggerDraft, binding_state: BindingState,
                                   provider_state: Any, workflow_inputs: Mapping[str, InputDef],
                                   integrations: Optional[IntegrationStatus]) -> TriggerSubscription:
        state = self.state_of(node)
        if state != TriggerState.DRAFT:
            raise TriggerStateError(
                f"Cannot save trigger draft in state {state.value}", self.workflow_id, node_id=node.id
            )

        errors = self.validate(draft.trigger_key, binding_state, provider_state, workflow_inputs, integrations)
        if errors:
            logging.warning("Trigger draft failed validation",
                            extra={"node_id": node.id, "fields": sorted(errors)})
            raise ValidationFailed(errors, self.workflow_id, node_id=node.id)

        provider = get_provider(draft.trigger_key)
        provider_config = provider.serialize(provider.coerce_state(provider_state))
        request = SubscriptionCreateRequest(
            workflow_id=self.workflow_id,
            trigger_key=draft.trigger_key,
            bindings=build_bindings_payload(binding_state),
            provider_config=provider_config or None,
            provider_connection_id=integrations.gmail_connection_id
            if provider.requires_connection and integrations else None,
        )

        self._states[node.id] = TriggerState.SAVING
        try:
            subscription = await self.triggers.create_subscription(request)
        except Exception as e:
            self._states[node.id] = TriggerState.DRAFT
            self._fail("Unable to save trigger", node, e)
            if isinstance(e, PersistError):
                raise
            raise PersistFailed(str(e), self.workflow_id) from e

        self._states[node.id] = TriggerState.SUBSCRIBED
        logging.info("Trigger subscribed", extra={
            "node_id": node.id, "subscription_id": subscription.subscription_id,
            "trigger_key": subscription.trigger_key,
        })
        self._notify(Notice(title="Trigger saved"))
        return subscription

    async def _update_subscription(self, node: Node, subscription: TriggerSubscription,
                                   binding_state: BindingState, provider_state: Any,
                                   workflow_inputs: Mapping[str, InputDef]) -> TriggerSubscription:
        self._require_subscribed(node)
        errors = self.validate(subscription.trigger_key, binding_state, provider_state, workflow_inputs,
                               check_connection=False)
        if errors:
            raise ValidationFailed(errors, self.workflow_id, node_id=node.id)

        provider = get_provider(subscription.trigger_key)
        provider_config = provider.serialize(provider.coerce_state(provider_state))
        try:
            updated = await self.triggers.update_subscription(
                subscription.subscription_id,
                build_bindings_payload(binding_state),
                provider_config or None,
            )
        except PersistError as e:
            self._fail("Unable to update trigger", node, e)
            raise
        logging.info("Trigger subscription updated",
                     extra={"node_id": node.id, "subscription_id": updated.subscription_id})
        self._notify(Notice(title="Trigger updated"))
        return updated

    # Subscriptions

    async def set_enabled(self, node: Node, enabled: bool) -> TriggerSubscription:
        """Flips enabled without touching bindings or provider config"""
        subscription = self._require_subscribed(node)
        try:
            updated = await self.triggers.toggle_subscription(subscription.subscription_id, enabled)
        except PersistError as e:
            self._fail("Unable to update trigger", node, e)
            raise
        logging.info("Trigger toggled", extra={
            "node_id": node.id, "subscription_id": subscription.subscription_id, "enabled": enabled,
        })
        self._notify(Notice(title=f"Trigger {'enabled' if enabled else 'disabled'}"))
        return updated

    async def delete(self, node: Node) -> None:
        subscription = self._require_subscribed(node)
        self._states[node.id] = TriggerState.DELETING
        try:
            await self.triggers.delete_subscription(subscription.subscription_id)
        except PersistError as e:
            self._states[node.id] = TriggerState.SUBSCRIBED
            self._fail("Unable to delete trigger", node, e)
            raise
        self._states[node.id] = TriggerState.DELETED
        logging.info("Trigger subscription deleted",
                     extra={"node_id": node.id, "subscription_id": subscription.subscription_id})
        self._notify(Notice(title="Trigger removed"))

    def _require_subscribed(self, node: Node) -> TriggerSubscription:
        meta = node.trigger_meta
        if not isinstance(meta, TriggerSubscription):
            raise TriggerStateError("Trigger has not been saved yet", self.workflow_id, node_id=node.id)
        state = self.state_of(node)
        if state != TriggerState.SUBSCRIBED:
            raise TriggerStateError(
                f"Trigger subscription is {state.value}", self.workflow_id, node_id=node.id
            )
        return meta

    def webhook_details(self, node: Node) -> Optional[Dict[str, str]]:
        """URL and secret exist only once the server has created the subscription"""
        meta = node.trigger_meta
        if isinstance(meta, TriggerSubscription) and meta.webhook_url:
            return {"webhook_url": meta.webhook_url, "secret_token": meta.secret_token or ""}
        return None

    # Workflow inputs

    async def add_workflow_input(self, workflow_inputs: Mapping[str, InputDef], name: str,
                                 input_type: str = "string", description: str = "",
                                 required: bool = True) -> Dict[str, InputDef]:
        trimmed = (name or "").strip()
        if not trimmed:
            raise ValidationFailed({"name": "Input name is required"}, self.workflow_id)
        if not INPUT_NAME_RE.match(trimmed):
            raise ValidationFailed(
                {"name": "Use letters, numbers, or underscores (no spaces) for input names"},
                self.workflow_id,
            )
        if trimmed in workflow_inputs:
            raise ValidationFailed({"name": "An input with this name already exists"}, self.workflow_id)

        next_inputs = dict(workflow_inputs)
        next_inputs[trimmed] = InputDef(type=input_type, required=required,
                                        description=description.strip() or None)
        stored = await self._update_inputs(next_inputs, "Failed to add workflow input")
        self._notify(Notice(title="Workflow input added"))
        return stored

    async def remove_workflow_input(self, workflow_inputs: Mapping[str, InputDef], name: str) -> Dict[str, InputDef]:
        if name not in workflow_inputs:
            return dict(workflow_inputs)
        next_inputs = {key: value for key, value in workflow_inputs.items() if key != name}
        stored = await self._update_inputs(next_inputs, "Failed to remove workflow input")
        self._notify(Notice(title="Workflow input removed"))
        return stored

    async def _update_inputs(self, next_inputs: Dict[str, InputDef], failure_title: str) -> Dict[str, InputDef]:
        if self.inputs_api is None:
            raise TriggerStateError("Unable to edit workflow inputs", self.workflow_id)
        try:
            stored = await self.inputs_api.update_workflow_inputs(self.workflow_id, next_inputs)
        except PersistError as e:
            logging.warning(failure_title, extra={"workflow_id": self.workflow_id, "error": e.message})
            self._notify(Notice(level="error", title=failure_title, description=e.message))
            raise
        logging.info("Workflow inputs updated",
                     extra={"workflow_id": self.workflow_id, "inputs": sorted(stored)})
        return dict(stored)

    # Supabase project binding

    async def bind_supabase_project(self, state: SupabaseConfigState, project_ref: str,
                                    service_role_key: Optional[str] = None) -> SupabaseConfigState:
        if self.resources is None:
            raise TriggerStateError("Supabase project binding is unavailable", self.workflow_id)
        if service_role_key:
            handle = await self.resources.bind_project_manual(project_ref, service_role_key)
        else:
            handle = await self.resources.bind_project_oauth(project_ref)
        logging.info("Supabase project bound", extra={"resource_id": handle.resource_id})
        return state.model_copy(update={
            "integration_resource_id": str(handle.resource_id),
            "integration_resource_label": handle.label or project_ref,
        })

    def _fail(self, title: str, node: Node, error: Exception) -> None:
        logging.warning(title, extra={"node_id": node.id, "error": str(error)})
        self._notify(Notice(level="error", title=title, description=str(error)))

    def _notify(self, notice: Notice) -> None:
        if self.on_notice:
            self.on_notice(notice)
