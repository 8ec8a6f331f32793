"""
Tests for the trigger node lifecycle.

The trigger API is mocked; create_subscription echoes the request back the
way the server would.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock
from services.editor.engine.providers import CronConfigState, GmailConfigState, SupabaseConfigState
from services.editor.engine.triggers import TriggerLifecycle
from shared.constants import CRON_TRIGGER_KEY, GMAIL_TRIGGER_KEY, SUPABASE_TRIGGER_KEY, WEBHOOK_TRIGGER_KEY
from shared.exceptions import PersistFailed, TriggerStateError, ValidationFailed
from shared.types import (
    BindingConfig,
    BindingMode,
    InputDef,
    IntegrationStatus,
    ResourceHandle,
    TriggerDraft,
    TriggerState,
    TriggerSubscription,
)

INPUTS = {"email": InputDef(type="string")}


def echo_subscription(request):
    return TriggerSubscription(
        subscription_id=41,
        workflow_id=request.workflow_id,
        trigger_key=request.trigger_key,
        bindings=request.bindings,
        provider_config=request.provider_config or {},
        provider_connection_id=request.provider_connection_id,
        enabled=request.enabled,
        created_at="2025-01-01T00:00:00+00:00",
        updated_at="2025-01-01T00:00:00+00:00",
    )


def make_lifecycle(**kwargs):
    triggers = Mock()
    triggers.create_subscription = AsyncMock(side_effect=echo_subscription)
    triggers.update_subscription = AsyncMock()
    triggers.toggle_subscription = AsyncMock()
    triggers.delete_subscription = AsyncMock()
    notices = []
    lifecycle = TriggerLifecycle("wf-1", triggers, on_notice=notices.append, **kwargs)
    return lifecycle, triggers, notices


def subscribed(node, subscription):
    return node.model_copy(update={"trigger_meta": subscription})


def test_cron_trigger_saved_and_restored():
    """A cron draft becomes a subscription and its config reads back unchanged"""
    lifecycle, triggers, notices = make_lifecycle()
    node = lifecycle.new_trigger_node(CRON_TRIGGER_KEY, INPUTS)
    assert lifecycle.state_of(node) == TriggerState.DRAFT

    state = CronConfigState(cron_expression="*/5 * * * *", timezone="UTC")
    bindings = lifecycle.binding_state_for(node, INPUTS)
    subscription = asyncio.run(lifecycle.save(node, bindings, state, INPUTS))

    request = triggers.create_subscription.await_args.args[0]
    assert request.provider_config == {"cron_expression": "*/5 * * * *", "timezone": "UTC"}
    assert request.bindings == {"email": "${event.data.email}"}

    node = subscribed(node, subscription)
    assert lifecycle.state_of(node) == TriggerState.SUBSCRIBED
    restored = lifecycle.provider_state_for(node)
    assert restored.cron_expression == "*/5 * * * *"
    assert restored.timezone == "UTC"
    assert notices[-1].title == "Trigger saved"


def test_invalid_cron_blocks_save():
    lifecycle, triggers, _ = make_lifecycle()
    node = lifecycle.new_trigger_node(CRON_TRIGGER_KEY, INPUTS)
    state = CronConfigState(cron_expression="61 * * * *", timezone="Mars/Olympus")

    with pytest.raises(ValidationFailed) as exc_info:
        asyncio.run(lifecycle.save(node, lifecycle.binding_state_for(node, INPUTS), state, INPUTS))

    assert set(exc_info.value.field_errors) == {"cron_expression", "timezone"}
    triggers.create_subscription.assert_not_awaited()
    assert lifecycle.state_of(node) == TriggerState.DRAFT


def test_gmail_requires_connection():
    lifecycle, triggers, _ = make_lifecycle()
    node = lifecycle.new_trigger_node(GMAIL_TRIGGER_KEY, INPUTS)
    bindings = lifecycle.binding_state_for(node, INPUTS)

    with pytest.raises(ValidationFailed, match="connection"):
        asyncio.run(lifecycle.save(node, bindings, GmailConfigState(), INPUTS))

    ready = IntegrationStatus(gmail_ready=True, gmail_connection_id=9)
    asyncio.run(lifecycle.save(node, bindings, GmailConfigState(), INPUTS, ready))
    request = triggers.create_subscription.await_args.args[0]
    assert request.provider_connection_id == 9
    assert request.provider_config["label_ids"] == ["INBOX"]


def test_supabase_missing_fields_reported():
    lifecycle, _, _ = make_lifecycle()

    errors = lifecycle.validate(SUPABASE_TRIGGER_KEY, {"email": BindingConfig(value="data.email")},
                                SupabaseConfigState(), INPUTS)

    assert errors == {"resource": "Select a Supabase project", "table": "Table name is required"}


def test_missing_trigger_key_reported():
    lifecycle, _, _ = make_lifecycle()
    assert lifecycle.validate("", {}, None, INPUTS) == {"trigger_key": "Select a trigger type"}


def test_failed_create_returns_to_draft():
    lifecycle, triggers, notices = make_lifecycle()
    triggers.create_subscription = AsyncMock(side_effect=RuntimeError("502 Bad Gateway"))
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)

    with pytest.raises(PersistFailed, match="502"):
        asyncio.run(lifecycle.save(node, lifecycle.binding_state_for(node, INPUTS), None, INPUTS))

    assert lifecycle.state_of(node) == TriggerState.DRAFT
    assert notices[-1].title == "Unable to save trigger"


def test_saved_draft_cannot_be_created_twice():
    lifecycle, triggers, _ = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)
    bindings = lifecycle.binding_state_for(node, INPUTS)
    asyncio.run(lifecycle.save(node, bindings, None, INPUTS))

    with pytest.raises(TriggerStateError):
        asyncio.run(lifecycle.save(node, bindings, None, INPUTS))
    assert triggers.create_subscription.await_count == 1


def test_toggle_sends_only_enabled_flag():
    lifecycle, triggers, notices = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)
    subscription = asyncio.run(lifecycle.save(node, lifecycle.binding_state_for(node, INPUTS), None, INPUTS))
    node = subscribed(node, subscription)
    triggers.toggle_subscription.return_value = subscription.model_copy(update={"enabled": False})

    updated = asyncio.run(lifecycle.set_enabled(node, False))

    triggers.toggle_subscription.assert_awaited_once_with(41, False)
    triggers.update_subscription.assert_not_awaited()
    assert updated.enabled is False
    assert notices[-1].title == "Trigger disabled"


def test_toggle_on_draft_rejected():
    lifecycle, _, _ = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)

    with pytest.raises(TriggerStateError, match="not been saved"):
        asyncio.run(lifecycle.set_enabled(node, True))


def test_delete_subscription():
    lifecycle, triggers, notices = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)
    node = subscribed(node, asyncio.run(lifecycle.save(node, lifecycle.binding_state_for(node, INPUTS),
                                                       None, INPUTS)))

    asyncio.run(lifecycle.delete(node))

    triggers.delete_subscription.assert_awaited_once_with(41)
    assert lifecycle.state_of(node) == TriggerState.DELETED
    assert notices[-1].title == "Trigger removed"


def test_failed_delete_keeps_subscription():
    lifecycle, triggers, _ = make_lifecycle()
    triggers.delete_subscription = AsyncMock(side_effect=PersistFailed("not reachable", "wf-1"))
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)
    node = subscribed(node, asyncio.run(lifecycle.save(node, lifecycle.binding_state_for(node, INPUTS),
                                                       None, INPUTS)))

    with pytest.raises(PersistFailed):
        asyncio.run(lifecycle.delete(node))
    assert lifecycle.state_of(node) == TriggerState.SUBSCRIBED


def test_discard_draft_makes_no_network_call():
    lifecycle, triggers, notices = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)

    lifecycle.discard(node)

    assert lifecycle.state_of(node) == TriggerState.DISCARDED
    triggers.delete_subscription.assert_not_awaited()
    assert notices[-1].title == "Trigger draft removed"


def test_webhook_details_only_after_save():
    lifecycle, _, _ = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)
    assert isinstance(node.trigger_meta, TriggerDraft)
    assert lifecycle.webhook_details(node) is None

    subscription = TriggerSubscription(
        subscription_id=3, trigger_key=WEBHOOK_TRIGGER_KEY, updated_at="2025-01-01T00:00:00+00:00",
        webhook_url="http://localhost:8000/webhooks/3", secret_token="tok",
    )
    assert lifecycle.webhook_details(subscribed(node, subscription)) == {
        "webhook_url": "http://localhost:8000/webhooks/3",
        "secret_token": "tok",
    }


def test_subscription_bindings_read_back():
    lifecycle, _, _ = make_lifecycle()
    node = lifecycle.new_trigger_node(WEBHOOK_TRIGGER_KEY, INPUTS)
    subscription = TriggerSubscription(
        subscription_id=3, trigger_key=WEBHOOK_TRIGGER_KEY, updated_at="2025-01-01T00:00:00+00:00",
        bindings={"email": "fixed@example.com"},
    )

    state = lifecycle.binding_state_for(subscribed(node, subscription), INPUTS)

    assert state["email"] == BindingConfig(mode=BindingMode.LITERAL, value="fixed@example.com")


@pytest.mark.parametrize("name,message", [
    ("", "required"),
    ("has space", "letters, numbers, or underscores"),
    ("email", "already exists"),
])
def test_invalid_input_names_rejected(name, message):
    inputs_api = Mock()
    inputs_api.update_workflow_inputs = AsyncMock()
    lifecycle, _, _ = make_lifecycle(inputs_api=inputs_api)

    with pytest.raises(ValidationFailed, match=message):
        asyncio.run(lifecycle.add_workflow_input(INPUTS, name))
    inputs_api.update_workflow_inputs.assert_not_awaited()


def test_add_and_remove_workflow_input():
    inputs_api = Mock()
    inputs_api.update_workflow_inputs = AsyncMock(side_effect=lambda workflow_id, inputs: inputs)
    lifecycle, _, notices = make_lifecycle(inputs_api=inputs_api)

    added = asyncio.run(lifecycle.add_workflow_input(INPUTS, " subject ", input_type="string",
                                                     description="Mail subject"))
    assert set(added) == {"email", "subject"}
    assert added["subject"].description == "Mail subject"
    assert notices[-1].title == "Workflow input added"

    removed = asyncio.run(lifecycle.remove_workflow_input(added, "email"))
    assert set(removed) == {"subject"}
    assert notices[-1].title == "Workflow input removed"


def test_bind_supabase_project():
    resources = Mock()
    resources.bind_project_oauth = AsyncMock(return_value=ResourceHandle(resource_id="77", label="prod"))
    resources.bind_project_manual = AsyncMock(return_value=ResourceHandle(resource_id="78"))
    lifecycle, _, _ = make_lifecycle(resources=resources)

    state = asyncio.run(lifecycle.bind_supabase_project(SupabaseConfigState(), "abcd"))
    assert state.integration_resource_id == "77"
    assert state.integration_resource_label == "prod"

    state = asyncio.run(lifecycle.bind_supabase_project(SupabaseConfigState(), "efgh", "service-key"))
    resources.bind_project_manual.assert_awaited_once_with("efgh", "service-key")
    assert state.integration_resource_label == "efgh"


def test_subscribed_trigger_update_sends_bindings_and_config():
    lifecycle, triggers, notices = make_lifecycle()
    node = lifecycle.new_trigger_node(CRON_TRIGGER_KEY, INPUTS)
    bindings = lifecycle.binding_state_for(node, INPUTS)
    node = subscribed(node, asyncio.run(lifecycle.save(node, bindings, CronConfigState(), INPUTS)))
    triggers.update_subscription.return_value = node.trigger_meta

    literal = {"email": BindingConfig(mode=BindingMode.LITERAL, value="ops@example.com")}
    state = CronConfigState(cron_expression="0 * * * *", timezone="Europe/Paris")
    asyncio.run(lifecycle.save(node, literal, state, INPUTS))

    triggers.update_subscription.assert_awaited_once_with(
        41, {"email": "ops@example.com"}, {"cron_expression": "0 * * * *", "timezone": "Europe/Paris"}
    )
    triggers.create_subscription.assert_awaited_once()
    assert notices[-1].title == "Trigger updated"
