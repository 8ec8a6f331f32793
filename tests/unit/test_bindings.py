"""
Unit tests for trigger input bindings.
"""

from services.editor.engine.bindings import (
    build_bindings_payload,
    build_default_binding_state,
    coerce_literal_value,
    derive_binding_state_from_subscription,
    preview_bindings,
    rederive_binding_state,
    sanitize_event_expression,
    update_binding_mode,
    update_binding_value,
    validate_binding_state,
)
from shared.types import BindingConfig, BindingMode, InputDef, TriggerSubscription

INPUTS = {"email": InputDef(type="string"), "count": InputDef(type="integer", required=False)}


def test_default_state_binds_each_input_to_event_data():
    state = build_default_binding_state(INPUTS)

    assert state["email"] == BindingConfig(mode=BindingMode.EVENT, value="data.email")
    assert state["count"].value == "data.count"


def test_sanitize_event_expression():
    assert sanitize_event_expression("data.email") == "${event.data.email}"
    assert sanitize_event_expression(".data.email") == "${event.data.email}"
    assert sanitize_event_expression("event.data.email") == "${event.data.email}"
    assert sanitize_event_expression("${event.headers.id}") == "${event.headers.id}"
    assert sanitize_event_expression("   ") == ""


def test_literal_values_are_typed():
    assert coerce_literal_value("42") == 42
    assert coerce_literal_value("1.5") == 1.5
    assert coerce_literal_value("true") is True
    assert coerce_literal_value("null") is None
    assert coerce_literal_value('{"a": [1]}') == {"a": [1]}
    assert coerce_literal_value("hello world") == "hello world"
    assert coerce_literal_value("NaN") == "NaN"


def test_bindings_payload_skips_empty_values():
    state = {
        "email": BindingConfig(mode=BindingMode.EVENT, value="data.from"),
        "count": BindingConfig(mode=BindingMode.LITERAL, value="3"),
        "note": BindingConfig(mode=BindingMode.LITERAL, value=""),
    }

    assert build_bindings_payload(state) == {"email": "${event.data.from}", "count": 3}


def test_state_derived_from_subscription():
    subscription = TriggerSubscription(
        subscription_id=1, trigger_key="webhook.generic", updated_at="2025-01-01T00:00:00+00:00",
        bindings={"email": "${event.data.sender}", "count": 5},
    )

    state = derive_binding_state_from_subscription(INPUTS, subscription)

    assert state["email"] == BindingConfig(mode=BindingMode.EVENT, value="data.sender")
    assert state["count"] == BindingConfig(mode=BindingMode.LITERAL, value="5")


def test_rederive_keeps_literal_edits_and_drops_removed_inputs():
    current = {
        "email": BindingConfig(mode=BindingMode.LITERAL, value="a@b.co"),
        "gone": BindingConfig(mode=BindingMode.LITERAL, value="x"),
    }

    state = rederive_binding_state(INPUTS, current)

    assert set(state) == {"email", "count"}
    assert state["email"].value == "a@b.co"
    assert state["count"].value == "data.count"


def test_mode_switch_resets_value():
    state = build_default_binding_state(INPUTS)

    literal = update_binding_mode(state, "email", BindingMode.LITERAL)
    assert literal["email"] == BindingConfig(mode=BindingMode.LITERAL, value="")

    literal = update_binding_value(literal, "email", "fixed")
    back = update_binding_mode(literal, "email", "event")
    assert back["email"].value == "data.email"
    assert state["email"].value == "data.email"


def test_validation_reports_required_and_syntax_errors():
    state = {
        "email": BindingConfig(mode=BindingMode.EVENT, value=""),
        "count": BindingConfig(mode=BindingMode.EVENT, value="data.(("),
    }

    errors = validate_binding_state(state, INPUTS)

    assert errors["bindings.email"] == "Event path is required"
    assert errors["bindings.count"].startswith("Invalid event path")


def test_validation_passes_optional_empty_binding():
    state = {
        "email": BindingConfig(mode=BindingMode.LITERAL, value="a@b.co"),
        "count": BindingConfig(mode=BindingMode.LITERAL, value=""),
    }
    assert validate_binding_state(state, INPUTS) == {}


def test_missing_binding_reported():
    errors = validate_binding_state({}, {"email": InputDef()})
    assert errors == {"bindings.email": "Binding is missing"}


def test_preview_against_sample_event():
    state = {
        "email": BindingConfig(mode=BindingMode.EVENT, value="data.sender"),
        "count": BindingConfig(mode=BindingMode.LITERAL, value="7"),
        "subject": BindingConfig(mode=BindingMode.EVENT, value="data.subject"),
    }
    sample = {"data": {"sender": "a@b.co"}}

    inputs, errors = preview_bindings(state, sample)

    assert inputs == {"email": "a@b.co", "count": 7}
    assert errors == {"subject": "'data.subject' is not present in the sample event"}
