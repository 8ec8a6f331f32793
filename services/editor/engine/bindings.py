"""Trigger input bindings: event paths and literal values per workflow input."""

import json
import re
from typing import Any, Dict, Mapping, Tuple
from jinja2 import StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError
from jinja2.sandbox import SandboxedEnvironment, SecurityError
from shared.constants import EVENT_PREFIX
from shared.types import BindingConfig, BindingMode, BindingState, InputDef, TriggerSubscription

EXPRESSION_RE = re.compile(r"^\$\{\s*(.*?)\s*\}$", re.DOTALL)

# Sandboxed environment used only to evaluate event paths against a sample payload
_preview_env = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined)


def default_binding(input_name: str) -> BindingConfig:
    return BindingConfig(mode=BindingMode.EVENT, value=f"data.{input_name}")


def build_default_binding_state(workflow_inputs: Mapping[str, InputDef]) -> BindingState:
    return {name: default_binding(name) for name in workflow_inputs}


def is_event_expression(value: Any) -> bool:
    return isinstance(value, str) and value.strip().startswith("${" + EVENT_PREFIX)


def strip_event_expression(value: str) -> str:
    trimmed = value.strip()
    match = EXPRESSION_RE.match(trimmed)
    if not match:
        return trimmed
    inner = match.group(1)
    if inner.startswith(EVENT_PREFIX):
        return inner[len(EVENT_PREFIX):]
    return inner


def derive_binding_state_from_subscription(workflow_inputs: Mapping[str, InputDef],
                                           subscription: TriggerSubscription) -> BindingState:
    """Rebuilds editable binding state from a persisted subscription"""
    state = build_default_binding_state(workflow_inputs)
    for name in workflow_inputs:
        existing = subscription.bindings.get(name)
        if is_event_expression(existing):
            state[name] = BindingConfig(mode=BindingMode.EVENT, value=strip_event_expression(existing))
        elif existing is not None:
            value = existing if isinstance(existing, str) else json.dumps(existing)
            state[name] = BindingConfig(mode=BindingMode.LITERAL, value=value)
    return state


def rederive_binding_state(workflow_inputs: Mapping[str, InputDef], current: BindingState) -> BindingState:
    """Aligns bindings with the declared inputs.

    Entries for inputs that still exist are kept as-is, including literal
    values being edited. New inputs get the default event binding and
    removed inputs are dropped.
    """
    return {name: current.get(name) or default_binding(name) for name in workflow_inputs}


def update_binding_mode(state: BindingState, input_name: str, mode: BindingMode) -> BindingState:
    mode = BindingMode(mode)
    previous = state.get(input_name)
    if previous is not None and previous.mode == mode:
        value = previous.value
    elif mode == BindingMode.EVENT:
        value = f"data.{input_name}"
    else:
        value = ""
    return {**state, input_name: BindingConfig(mode=mode, value=value)}


def update_binding_value(state: BindingState, input_name: str, value: str) -> BindingState:
    previous = state.get(input_name)
    mode = previous.mode if previous is not None else BindingMode.EVENT
    return {**state, input_name: BindingConfig(mode=mode, value=value)}


def sanitize_event_expression(path: str) -> str:
    trimmed = path.strip()
    if not trimmed:
        return ""
    if trimmed.startswith("${") and trimmed.endswith("}"):
        return trimmed
    normalized = trimmed if trimmed.startswith(EVENT_PREFIX) else EVENT_PREFIX + trimmed.lstrip(".")
    return "${" + normalized + "}"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Unsupported constant {name}")


def coerce_literal_value(raw_value: str) -> Any:
    """Literal text to JSON value: booleans, null, numbers and JSON parse, anything else stays text"""
    value = raw_value.strip()
    if not value:
        return ""
    try:
        return json.loads(value, parse_constant=_reject_constant)
    except ValueError:
        return value


def build_bindings_payload(state: BindingState) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for name, config in state.items():
        if config is None or not config.value:
            continue
        if config.mode == BindingMode.EVENT:
            expression = sanitize_event_expression(config.value)
            if expression:
                payload[name] = expression
        else:
            payload[name] = coerce_literal_value(config.value)
    return payload


def _compile_event_path(path: str):
    # "${event.data.x}" -> "event.data.x"
    source = EXPRESSION_RE.match(sanitize_event_expression(path)).group(1)
    return _preview_env.compile_expression(source, undefined_to_none=False)


def validate_binding_state(state: BindingState, workflow_inputs: Mapping[str, InputDef]) -> Dict[str, str]:
    """Returns per-field errors keyed ``bindings.<input>``; empty when valid"""
    errors: Dict[str, str] = {}
    for name, definition in workflow_inputs.items():
        key = f"bindings.{name}"
        config = state.get(name)
        if config is None:
            errors[key] = "Binding is missing"
            continue
        if not config.value.strip():
            if definition.required:
                errors[key] = "Event path is required" if config.mode == BindingMode.EVENT else "Value is required"
            continue
        if config.mode == BindingMode.EVENT:
            try:
                _compile_event_path(config.value)
            except TemplateSyntaxError:
                errors[key] = f"Invalid event path: {config.value}"
    return errors


def preview_bindings(state: BindingState, sample_event: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Evaluates bindings against a sample event, as a run would receive them"""
    inputs: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    context = {"event": dict(sample_event)}
    for name, config in state.items():
        if not config.value.strip():
            continue
        if config.mode == BindingMode.LITERAL:
            inputs[name] = coerce_literal_value(config.value)
            continue
        try:
            value = _compile_event_path(config.value)(**context)
            if isinstance(value, Undefined):
                raise UndefinedError(config.value)
            inputs[name] = value
        except TemplateSyntaxError:
            errors[name] = f"Invalid event path: {config.value}"
        except (UndefinedError, SecurityError):
            errors[name] = f"'{config.value}' is not present in the sample event"
    return inputs, errors
