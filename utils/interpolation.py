"""
Variable interpolation — substitutes ``{{dotted.path}}`` placeholders with
values from a session's variable map.

Unresolved placeholders stay in the output verbatim, so a half-configured
flow shows ``{{customer.name}}`` to the contact instead of an empty string.
Pure functions; safe to call from any task.
"""
from __future__ import annotations

import json
import re
from typing import Any

PLACEHOLDER = re.compile(r"\{\{([a-zA-Z0-9_.-]+)\}\}")

_MISSING = object()


def get_nested_value(data: Any, path: str, default: Any = None) -> Any:
    """Get a value from nested dicts/lists using dot notation. e.g. 'order.items.0.sku'"""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def stringify(value: Any) -> str:
    """Render a variable value the way it should appear inside message text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace each ``{{path}}`` that resolves in ``variables``; leave the rest."""
    if not template:
        return ""
    variables = variables if isinstance(variables, dict) else {}

    def replacer(match: re.Match) -> str:
        value = get_nested_value(variables, match.group(1), _MISSING)
        if value is _MISSING:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER.sub(replacer, template)


def interpolate_value(value: Any, variables: dict[str, Any]) -> Any:
    """Recursively interpolate every string inside a JSON-like structure."""
    if isinstance(value, str):
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {k: interpolate_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_value(v, variables) for v in value]
    return value
