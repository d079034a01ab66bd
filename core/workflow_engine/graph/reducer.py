"""
State reducer - how a step's partial update is folded into run state.

Each ``RunState`` field has one merge rule:

    variables         shallow merge (new keys overwrite, others kept)
    history           append
    current_node_id   overwrite
    node_results      shallow merge by node id
    pending_auth      overwrite (an explicit None clears it)
    loop_accumulator  append

``merge`` is pure: it never mutates its inputs. Only fields the update
explicitly sets are applied, so ``StateUpdate(pending_auth=None)`` clears a
suspension while ``StateUpdate()`` leaves it alone.
"""

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from workflow_engine.graph.state import ChatMessage, NodeExecutionResult, PendingAuth, RunState


class StateUpdate(BaseModel):
    """A partial update produced by one node execution."""

    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[ChatMessage] = Field(default_factory=list)
    current_node_id: str | None = None
    node_results: dict[str, NodeExecutionResult] = Field(default_factory=dict)
    pending_auth: PendingAuth | None = None
    loop_accumulator: list[Any] = Field(default_factory=list)

    def is_set(self, field_name: str) -> bool:
        return field_name in self.model_fields_set


def _shallow_merge(old: dict, new: dict) -> dict:
    return {**old, **new}


def _append(old: list, new: list) -> list:
    return [*old, *new]


def _overwrite(old: Any, new: Any) -> Any:
    return new


REDUCERS: dict[str, Callable[[Any, Any], Any]] = {
    "variables": _shallow_merge,
    "history": _append,
    "current_node_id": _overwrite,
    "node_results": _shallow_merge,
    "pending_auth": _overwrite,
    "loop_accumulator": _append,
}


def merge(state: RunState, update: StateUpdate) -> RunState:
    """Return a new state with ``update`` applied using the per-field rules."""
    changes: dict[str, Any] = {}
    for field_name, reducer in REDUCERS.items():
        if not update.is_set(field_name):
            continue
        changes[field_name] = reducer(getattr(state, field_name), getattr(update, field_name))
    if not changes:
        return state.model_copy()
    return state.model_copy(update=changes)

