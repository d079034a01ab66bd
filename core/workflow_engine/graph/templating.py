"""
``{{path}}`` variable substitution for step configuration strings.

Paths resolve against ``state.variables``:

    {{input.query}}           run input
    {{lastOutput}}            previous step's primary value
    {{scrape.items[0].url}}   a node's output by node name
    {{state.variables.x}}     fully qualified form

References that cannot be resolved are left in place.
"""

import json
import logging
import re
from typing import Any

from workflow_engine.graph.state import RunState

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_INDEXED_SEGMENT = re.compile(r"^([\w-]+)((?:\[\d+\])+)$")

_MISSING = object()


def _step(current: Any, part: str) -> Any:
    indexed = _INDEXED_SEGMENT.match(part)
    if indexed:
        name, indexes = indexed.groups()
        current = _step(current, name)
        for index in re.findall(r"\[(\d+)\]", indexes):
            if not isinstance(current, (list, tuple)):
                return _MISSING
            i = int(index)
            if i >= len(current):
                return _MISSING
            current = current[i]
        return current
    if isinstance(current, dict):
        return current.get(part, _MISSING)
    if isinstance(current, (list, tuple)) and part.isdigit():
        i = int(part)
        return current[i] if i < len(current) else _MISSING
    return _MISSING


def resolve_path(path: str, variables: dict[str, Any]) -> Any:
    """Resolve a dotted path against the run variables.

    Returns ``None`` when any segment is missing.
    """
    expr = path.strip()
    if expr.startswith("state.variables."):
        expr = expr[len("state.variables.") :]

    current: Any = variables
    for part in expr.split("."):
        current = _step(current, part)
        if current is _MISSING or current is None:
            break

    if (current is _MISSING or current is None) and expr.startswith("input."):
        # "input.query" may also name a top-level variable
        fallback = variables.get(expr[len("input.") :])
        if fallback is not None:
            return fallback
    return None if current is _MISSING else current


def _render_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute_variables(text: str, state: RunState | dict[str, Any]) -> str:
    """Replace every ``{{path}}`` in ``text`` with its value."""
    if not text or "{{" not in text:
        return text
    variables = state.variables if isinstance(state, RunState) else state

    def replace(match: re.Match) -> str:
        value = resolve_path(match.group(1), variables)
        if value is None:
            logger.debug(f"Unresolved variable reference: {match.group(0)}")
            return match.group(0)
        return _render_value(value)

    return VARIABLE_PATTERN.sub(replace, text)


def substitute_in_value(value: Any, state: RunState | dict[str, Any]) -> Any:
    """Apply ``substitute_variables`` to every string inside a JSON-like value."""
    if isinstance(value, str):
        return substitute_variables(value, state)
    if isinstance(value, list):
        return [substitute_in_value(v, state) for v in value]
    if isinstance(value, dict):
        return {k: substitute_in_value(v, state) for k, v in value.items()}
    return value


def extract_variable_references(text: str) -> list[str]:
    if not text:
        return []
    return [m.group(1).strip() for m in VARIABLE_PATTERN.finditer(text)]


def validate_variable_references(
    text: str, state: RunState | dict[str, Any]
) -> tuple[bool, list[str]]:
    """Return ``(valid, missing)`` for the references in ``text``."""
    variables = state.variables if isinstance(state, RunState) else state
    missing = [
        ref for ref in extract_variable_references(text) if resolve_path(ref, variables) is None
    ]
    return not missing, missing
