"""
Run state - everything one run owns while it walks the graph.

``RunState`` is owned by exactly one executor invocation. Between a
suspension and its resume it only exists as a serialized snapshot inside a
checkpoint.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_AUTHORIZATION = "pending-authorization"
    PENDING_APPROVAL = "pending-approval"


class ToolCallRecord(BaseModel):
    """One tool invocation made by a step, kept for observability."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    output: Any = None

    model_config = {"extra": "allow"}


class ChatMessage(BaseModel):
    role: str
    content: Any

    model_config = {"extra": "allow"}


class PendingAuth(BaseModel):
    """An outstanding suspension, held in the checkpoint until resumed."""

    auth_id: str
    node_id: str
    kind: str  # "authorization" | "approval"
    message: str = ""
    tool_name: str | None = None
    auth_url: str | None = None
    resume_hint: Any = None
    thread_id: str = ""
    run_id: str = ""
    status: str = "pending"
    created_at: str = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class NodeExecutionResult(BaseModel):
    """Latest outcome of one node."""

    node_id: str
    status: NodeStatus
    input: Any = None
    output: Any = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    tool_calls: list[ToolCallRecord] | None = None
    pending_auth: PendingAuth | None = None
    # recovered condition/loop issues
    warnings: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class RunState(BaseModel):
    """Shared state of one run.

    Merge rules per field live in ``workflow_engine.graph.reducer``.
    """

    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[ChatMessage] = Field(default_factory=list)
    current_node_id: str | None = None
    node_results: dict[str, NodeExecutionResult] = Field(default_factory=dict)
    pending_auth: PendingAuth | None = None
    loop_accumulator: list[Any] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @property
    def last_output(self) -> Any:
        return self.variables.get("lastOutput")

    def snapshot(self) -> "RunState":
        """Deep copy handed to step executors and parallel branches."""
        return self.model_copy(deep=True)
