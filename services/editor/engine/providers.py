"""Provider-specific trigger configuration: form state, serialization, validation."""

import re
from typing import Any, Dict, List, Mapping, Optional, Type
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, Field
from shared.constants import (
    CRON_FIELD_RANGES,
    CRON_TRIGGER_KEY,
    DEFAULT_CRON_EXPRESSION,
    DEFAULT_SUPABASE_SCHEMA,
    DEFAULT_TIMEZONE,
    GMAIL_DEFAULT_LABEL_IDS,
    GMAIL_DEFAULT_OVERLAP_MS,
    GMAIL_MAX_OVERLAP_MS,
    GMAIL_MAX_RESULTS,
    GMAIL_TRIGGER_KEY,
    SUPABASE_EVENT_TYPES,
    SUPABASE_TRIGGER_KEY,
    WEBHOOK_TRIGGER_KEY,
)

CRON_FIELD_RE = re.compile(r"^(\*|[0-9]+(-[0-9]+)?)(/[0-9]+)?(,(\*|[0-9]+(-[0-9]+)?)(/[0-9]+)?)*$")
INT_RE = re.compile(r"^\s*[+-]?\d+")


class WebhookConfigState(BaseModel):
    pass


class GmailConfigState(BaseModel):
    label_ids: str = GMAIL_DEFAULT_LABEL_IDS
    query: str = ""
    max_results: str = str(GMAIL_MAX_RESULTS)
    overlap_ms: str = str(GMAIL_DEFAULT_OVERLAP_MS)


class CronConfigState(BaseModel):
    cron_expression: str = DEFAULT_CRON_EXPRESSION
    timezone: str = DEFAULT_TIMEZONE
    description: str = ""


class SupabaseConfigState(BaseModel):
    integration_resource_id: str = ""
    integration_resource_label: str = ""
    schema_name: str = DEFAULT_SUPABASE_SCHEMA
    table: str = ""
    events: List[str] = Field(default_factory=lambda: list(SUPABASE_EVENT_TYPES))


class PassthroughConfigState(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)


class TriggerProvider:
    """Base provider; subclasses set trigger_key and state_model"""
    trigger_key: str = ""
    state_model: Type[BaseModel] = PassthroughConfigState
    requires_connection = False
    server_generated_url = False

    def default_state(self) -> BaseModel:
        return self.state_model()

    def from_provider_config(self, provider_config: Optional[Mapping[str, Any]]) -> BaseModel:
        return self.default_state()

    def serialize(self, state: BaseModel) -> Dict[str, Any]:
        return {}

    def validate(self, state: BaseModel) -> Dict[str, str]:
        return {}

    def coerce_state(self, state: Any) -> BaseModel:
        """Accepts a state model, a mapping of state fields, or None"""
        if state is None:
            return self.default_state()
        if isinstance(state, self.state_model):
            return state
        return self.state_model.model_validate(dict(state))


_provider_registry: Dict[str, TriggerProvider] = {}


def register_provider(trigger_key: str):
    def decorator(cls: Type[TriggerProvider]):
        cls.trigger_key = trigger_key
        _provider_registry[trigger_key] = cls()
        return cls
    return decorator


def get_provider(trigger_key: str) -> TriggerProvider:
    """Registered provider for trigger_key; catalog keys without one pass config through"""
    if not trigger_key:
        raise ValueError("Trigger key is required")
    provider = _provider_registry.get(trigger_key)
    if provider is None:
        provider = PassthroughProvider()
        provider.trigger_key = trigger_key
    return provider


def list_trigger_keys() -> List[str]:
    return list(_provider_registry.keys())


class PassthroughProvider(TriggerProvider):
    state_model = PassthroughConfigState

    def from_provider_config(self, provider_config):
        return PassthroughConfigState(values=dict(provider_config or {}))

    def serialize(self, state):
        return dict(state.values)


@register_provider(WEBHOOK_TRIGGER_KEY)
class WebhookProvider(TriggerProvider):
    """URL and secret are generated by the server on first save"""
    state_model = WebhookConfigState
    server_generated_url = True


def _parse_int(raw: str) -> Optional[int]:
    # leading-integer parse, "25abc" -> 25
    match = INT_RE.match(raw or "")
    return int(match.group(0)) if match else None


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


@register_provider(GMAIL_TRIGGER_KEY)
class GmailProvider(TriggerProvider):
    state_model = GmailConfigState
    requires_connection = True

    def from_provider_config(self, provider_config):
        if not provider_config:
            return self.default_state()
        label_ids = provider_config.get("label_ids", GMAIL_DEFAULT_LABEL_IDS)
        if isinstance(label_ids, list):
            label_ids = ", ".join(str(label) for label in label_ids)
        return GmailConfigState(
            label_ids=str(label_ids or GMAIL_DEFAULT_LABEL_IDS),
            query=str(provider_config.get("query") or ""),
            max_results=str(provider_config.get("max_results", GMAIL_MAX_RESULTS)),
            overlap_ms=str(provider_config.get("overlap_ms", GMAIL_DEFAULT_OVERLAP_MS)),
        )

    def serialize(self, state):
        config: Dict[str, Any] = {}
        labels = [label.strip() for label in state.label_ids.split(",") if label.strip()]
        if labels:
            config["label_ids"] = labels
        query = state.query.strip()
        if query:
            config["query"] = query
        max_results = _parse_int(state.max_results)
        if max_results is not None:
            config["max_results"] = _clamp(max_results, 1, GMAIL_MAX_RESULTS)
        overlap_ms = _parse_int(state.overlap_ms)
        if overlap_ms is not None:
            config["overlap_ms"] = _clamp(overlap_ms, 0, GMAIL_MAX_OVERLAP_MS)
        return config


def validate_cron_field(value: str, name: str, low: int, high: int) -> Optional[str]:
    for part in value.split(","):
        if part == "*":
            continue
        base = part.split("/", 1)[0]
        if "/" in part and int(part.split("/", 1)[1]) == 0:
            return f"Step must be greater than zero in {name} field: {value}"
        if base == "*":
            continue
        bounds = [int(number) for number in base.split("-")]
        if any(number < low or number > high for number in bounds):
            return f"Value out of range in {name} field ({low}-{high}): {value}"
        if len(bounds) == 2 and bounds[0] > bounds[1]:
            return f"Range start exceeds end in {name} field: {value}"
    return None


def validate_cron_expression(expression: str) -> Optional[str]:
    """Returns an error message, or None when the five-field expression is valid"""
    trimmed = (expression or "").strip()
    if not trimmed:
        return "Cron expression is required"
    parts = trimmed.split()
    if len(parts) != 5:
        return "Cron expression must have 5 fields (minute hour day month weekday)"
    for index, (part, (name, low, high)) in enumerate(zip(parts, CRON_FIELD_RANGES), start=1):
        if not CRON_FIELD_RE.match(part):
            return f"Invalid syntax in field {index}: {part}"
        error = validate_cron_field(part, name, low, high)
        if error:
            return error
    return None


def validate_timezone(timezone: str) -> Optional[str]:
    if not timezone or not timezone.strip():
        return "Timezone is required"
    try:
        ZoneInfo(timezone.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return f"Unknown timezone: {timezone}"
    return None


@register_provider(CRON_TRIGGER_KEY)
class CronProvider(TriggerProvider):
    state_model = CronConfigState

    def from_provider_config(self, provider_config):
        if not provider_config:
            return self.default_state()
        return CronConfigState(
            cron_expression=str(provider_config.get("cron_expression") or DEFAULT_CRON_EXPRESSION),
            timezone=str(provider_config.get("timezone") or DEFAULT_TIMEZONE),
            description=str(provider_config.get("description") or ""),
        )

    def serialize(self, state):
        config = {
            "cron_expression": state.cron_expression.strip(),
            "timezone": state.timezone.strip(),
        }
        description = state.description.strip()
        if description:
            config["description"] = description
        return config

    def validate(self, state):
        errors = {}
        expression_error = validate_cron_expression(state.cron_expression)
        if expression_error:
            errors["cron_expression"] = expression_error
        timezone_error = validate_timezone(state.timezone)
        if timezone_error:
            errors["timezone"] = timezone_error
        return errors


@register_provider(SUPABASE_TRIGGER_KEY)
class SupabaseProvider(TriggerProvider):
    state_model = SupabaseConfigState
    server_generated_url = True

    def from_provider_config(self, provider_config):
        if not provider_config:
            return self.default_state()
        raw_events = provider_config.get("events")
        if not isinstance(raw_events, list):
            raw_events = list(SUPABASE_EVENT_TYPES)
        events = [str(e).upper() for e in raw_events if str(e).upper() in SUPABASE_EVENT_TYPES]
        resource_id = provider_config.get("integration_resource_id")
        label = provider_config.get("integration_resource_label")
        return SupabaseConfigState(
            integration_resource_id=str(resource_id) if resource_id else "",
            integration_resource_label=label if isinstance(label, str) else "",
            schema_name=str(provider_config.get("schema") or DEFAULT_SUPABASE_SCHEMA),
            table=str(provider_config.get("table") or ""),
            events=events or list(SUPABASE_EVENT_TYPES),
        )

    def serialize(self, state):
        payload: Dict[str, Any] = {}
        resource_id = state.integration_resource_id.strip()
        if resource_id:
            payload["integration_resource_id"] = int(resource_id) if resource_id.isdecimal() else resource_id
        if state.integration_resource_label:
            payload["integration_resource_label"] = state.integration_resource_label
        payload["schema"] = state.schema_name.strip() or DEFAULT_SUPABASE_SCHEMA
        table = state.table.strip()
        if table:
            payload["table"] = table
        events = [event for event in state.events if event in SUPABASE_EVENT_TYPES]
        if events:
            payload["events"] = events
        return payload

    def validate(self, state):
        errors = {}
        if not state.integration_resource_id.strip():
            errors["resource"] = "Select a Supabase project"
        if not state.schema_name.strip():
            errors["schema"] = "Schema is required"
        if not state.table.strip():
            errors["table"] = "Table name is required"
        if not any(event in SUPABASE_EVENT_TYPES for event in state.events):
            errors["events"] = "Select at least one event type"
        return errors
