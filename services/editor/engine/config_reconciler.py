"""Merging partial config updates into a node's existing config.

Merges are driven by key presence, never by truthiness: an update carrying
``fields: []`` replaces the base fields with an empty list. ``input_refs`` is
always replaced wholesale. ``output_schema`` set to None leaves the base
value in place; clearing a key goes through the explicit ``clear`` argument.
"""

import copy
from typing import Any, Dict, Iterable, Mapping, Optional
from shared.exceptions import InvalidConfigShape

FIELDS_KEY = "fields"
INPUT_REFS_KEY = "input_refs"
OUTPUT_SCHEMA_KEY = "output_schema"


def _check_update(update: Any, node_id: str) -> None:
    if not isinstance(update, Mapping):
        raise InvalidConfigShape(
            f"Config update for '{node_id}' must be an object, got {type(update).__name__}",
            node_id=node_id,
        )

    if FIELDS_KEY in update and not isinstance(update[FIELDS_KEY], (list, tuple)):
        raise InvalidConfigShape(f"'{FIELDS_KEY}' must be a list", node_id=node_id)

    refs = update.get(INPUT_REFS_KEY)
    if INPUT_REFS_KEY in update and refs is not None and not isinstance(refs, Mapping):
        raise InvalidConfigShape(f"'{INPUT_REFS_KEY}' must be an object", node_id=node_id)

    schema = update.get(OUTPUT_SCHEMA_KEY)
    if schema is not None and not isinstance(schema, Mapping):
        raise InvalidConfigShape(f"'{OUTPUT_SCHEMA_KEY}' must be an object", node_id=node_id)


def reconcile_config(base: Optional[Mapping[str, Any]], update: Any,
                     clear: Optional[Iterable[str]] = None, node_id: str = "") -> Dict[str, Any]:
    """Returns a new config with update applied on top of base"""
    _check_update(update, node_id)
    if base is not None and not isinstance(base, Mapping):
        raise InvalidConfigShape(f"Existing config for '{node_id}' is not an object", node_id=node_id)

    merged: Dict[str, Any] = copy.deepcopy(dict(base or {}))

    for key, value in update.items():
        if key == FIELDS_KEY:
            merged[FIELDS_KEY] = copy.deepcopy(list(value))
        elif key == INPUT_REFS_KEY:
            merged[INPUT_REFS_KEY] = copy.deepcopy(dict(value or {}))
        elif key == OUTPUT_SCHEMA_KEY:
            if value is not None:
                merged[OUTPUT_SCHEMA_KEY] = copy.deepcopy(dict(value))
        else:
            merged[key] = copy.deepcopy(value)

    for key in clear or ():
        merged.pop(key, None)

    return merged
