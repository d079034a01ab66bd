"""
Workflow model - the node/edge graph a user assembles.

Workflows arrive as JSON from an editor canvas, so node kinds come in
several spellings ("if-else", "if / else", "approval", ...) and the kind
may be stored either as ``type`` or inside ``data.nodeType``. Everything is
normalized here so the compiler and driver only ever see ``NodeKind``
values.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class NodeKind(StrEnum):
    """Normalized node kinds."""

    START = "start"
    END = "end"
    AGENT = "agent"
    TOOL = "tool"
    TRANSFORM = "transform"
    SET_STATE = "set-state"
    HTTP = "http"
    IF_ELSE = "if-else"
    WHILE = "while"
    USER_APPROVAL = "user-approval"
    NOTE = "note"


KIND_ALIASES: dict[str, str] = {
    "start": NodeKind.START,
    "entry": NodeKind.START,
    "end": NodeKind.END,
    "terminal": NodeKind.END,
    "agent": NodeKind.AGENT,
    "llm": NodeKind.AGENT,
    "tool": NodeKind.TOOL,
    "tool-call": NodeKind.TOOL,
    "mcp": NodeKind.TOOL,
    "arcade": NodeKind.TOOL,
    "transform": NodeKind.TRANSFORM,
    "data-transform": NodeKind.TRANSFORM,
    "set-state": NodeKind.SET_STATE,
    "set state": NodeKind.SET_STATE,
    "http": NodeKind.HTTP,
    "http-request": NodeKind.HTTP,
    "if-else": NodeKind.IF_ELSE,
    "if / else": NodeKind.IF_ELSE,
    "if/else": NodeKind.IF_ELSE,
    "conditional": NodeKind.IF_ELSE,
    "while": NodeKind.WHILE,
    "loop": NodeKind.WHILE,
    "bounded-loop": NodeKind.WHILE,
    "user-approval": NodeKind.USER_APPROVAL,
    "user approval": NodeKind.USER_APPROVAL,
    "approval": NodeKind.USER_APPROVAL,
    "note": NodeKind.NOTE,
}

def normalize_kind(raw: str) -> str:
    """Map a kind spelling to its canonical name.

    Unknown kinds are kept (lower-cased) so hosts can register their own
    step executors for them.
    """
    key = raw.strip().lower()
    return str(KIND_ALIASES.get(key, key))


class WorkflowNode(BaseModel):
    """A single step in a workflow."""

    id: str
    kind: str = Field(alias="type")
    config: dict[str, Any] = Field(default_factory=dict, alias="data")

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _resolve_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        config = data.get("data", data.get("config")) or {}
        # editor nodes keep the real kind in data.nodeType
        kind = (config.get("nodeType") if isinstance(config, dict) else None) or data.get(
            "type", data.get("kind")
        )
        if not kind:
            raise ValueError(f"Node {data.get('id')!r} has no kind")
        data.pop("kind", None)
        data["type"] = normalize_kind(str(kind))
        return data

    @property
    def name(self) -> str:
        """Variable key this node's output is stored under."""
        return self.config.get("nodeName") or self.config.get("name") or self.id

    @property
    def label(self) -> str:
        return self.config.get("label") or self.name

    @property
    def is_entry(self) -> bool:
        return self.kind == NodeKind.START

    @property
    def is_terminal(self) -> bool:
        return self.kind == NodeKind.END

    @property
    def is_note(self) -> bool:
        return self.kind == NodeKind.NOTE


class WorkflowEdge(BaseModel):
    """A connection between two nodes, optionally labelled with a handle."""

    id: str = ""
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    label: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _default_id(self) -> "WorkflowEdge":
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self

    @property
    def handle(self) -> str:
        """Normalized routing handle ("" when unlabelled)."""
        return (self.source_handle or self.label or "").strip().lower()


class Workflow(BaseModel):
    """A complete workflow definition."""

    id: str
    name: str = ""
    description: str = ""
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def entry_nodes(self) -> list[WorkflowNode]:
        return [n for n in self.nodes if n.is_entry]
