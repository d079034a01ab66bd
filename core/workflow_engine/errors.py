"""
Shared exception hierarchy for the workflow engine.

Every error carries a stable ``code`` and, where it applies, the id of the
node that raised it, so the streaming boundary can turn it into a terminal
``node_failed`` event with ``to_dict()``.
"""

from typing import Any


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""

    code = "WORKFLOW_ERROR"

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.node_id is not None:
            data["node_id"] = self.node_id
        if self.cause is not None:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data


class CompilationError(WorkflowEngineError):
    """The workflow graph cannot be compiled (structure or reachability)."""

    code = "COMPILATION_ERROR"

    def __init__(
        self,
        message: str,
        unreachable_node_ids: list[str] | None = None,
        reachable_node_ids: list[str] | None = None,
        node_id: str | None = None,
    ):
        super().__init__(message, node_id=node_id)
        self.unreachable_node_ids = unreachable_node_ids or []
        self.reachable_node_ids = reachable_node_ids or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.unreachable_node_ids:
            data["unreachable_node_ids"] = list(self.unreachable_node_ids)
            data["reachable_node_ids"] = list(self.reachable_node_ids)
        return data


class StepExecutionError(WorkflowEngineError):
    """A step executor failed. Always fatal to the run."""

    code = "STEP_EXECUTION_ERROR"


class ConditionEvaluationError(WorkflowEngineError):
    """A condition or expression could not be evaluated.

    Recovered locally by the control-flow resolvers.
    """

    code = "CONDITION_EVALUATION_ERROR"


class LoopSafetyExceeded(WorkflowEngineError):
    """A bounded loop hit its iteration cap. Recorded, never raised out of a run."""

    code = "LOOP_SAFETY_EXCEEDED"


class SuspendWithoutResumeError(WorkflowEngineError):
    """Resume was requested for a thread id with no outstanding checkpoint."""

    code = "SUSPEND_WITHOUT_RESUME"


class DoubleSuspensionError(WorkflowEngineError):
    """A step suspended while another suspension was still outstanding."""

    code = "DOUBLE_SUSPENSION"


class ResumeConflictError(WorkflowEngineError):
    """Another resume for the same thread id is already in progress."""

    code = "RESUME_CONFLICT"


class ResumeRejectedError(WorkflowEngineError):
    """The resume value does not satisfy the pending authorization."""

    code = "RESUME_REJECTED"


class ParallelMergeConflictError(WorkflowEngineError):
    """Two parallel branches wrote the same variable key."""

    code = "PARALLEL_MERGE_CONFLICT"

    def __init__(self, message: str, keys: list[str], node_id: str | None = None):
        super().__init__(message, node_id=node_id)
        self.keys = keys


class StepLimitExceededError(WorkflowEngineError):
    """The run visited more nodes than the configured ceiling."""

    code = "STEP_LIMIT_EXCEEDED"
