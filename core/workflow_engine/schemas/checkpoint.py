"""
Checkpoint Schema - the durable snapshot of a suspended run.

A checkpoint holds everything needed to continue a run in another process:
the workflow definition, the serialized RunState, the node waiting for a
resume value, and the step count so the visit ceiling carries across
resumes.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from workflow_engine.graph.state import RunState
from workflow_engine.graph.workflow import Workflow


class Checkpoint(BaseModel):
    """Snapshot of one suspended run, keyed by thread id."""

    # Identity
    checkpoint_id: str  # Format: cp_{thread_id}_{node_id}_{timestamp}
    thread_id: str
    run_id: str

    # Timestamps
    created_at: str  # ISO 8601 format

    # Execution state
    workflow: Workflow
    state: RunState
    resume_node_id: str
    steps_executed: int = 0
    execution_path: list[str] = Field(default_factory=list)

    # Metadata
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        thread_id: str,
        run_id: str,
        workflow: Workflow,
        state: RunState,
        resume_node_id: str,
        steps_executed: int = 0,
        execution_path: list[str] | None = None,
        description: str = "",
    ) -> "Checkpoint":
        """
        Create a new checkpoint with generated ID and timestamp.

        Args:
            thread_id: Thread the run belongs to
            run_id: Run that suspended
            workflow: Workflow being executed
            state: Run state at suspension (already merged)
            resume_node_id: Node to re-enter with the resume value
            steps_executed: Node visits so far
            execution_path: Node IDs executed so far
            description: Human-readable description

        Returns:
            New Checkpoint instance
        """
        now = datetime.now(UTC)
        checkpoint_id = f"cp_{thread_id}_{resume_node_id}_{now.strftime('%Y%m%d_%H%M%S')}"

        if not description:
            pending = state.pending_auth
            description = f"Suspended at {resume_node_id}" + (
                f": {pending.message}" if pending and pending.message else ""
            )

        return cls(
            checkpoint_id=checkpoint_id,
            thread_id=thread_id,
            run_id=run_id,
            created_at=now.isoformat(),
            workflow=workflow,
            state=state,
            resume_node_id=resume_node_id,
            steps_executed=steps_executed,
            execution_path=list(execution_path or []),
            description=description,
        )
