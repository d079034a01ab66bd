"""
Step Dispatcher - runs the executor registered for a node's kind and folds
its result into a single StateUpdate.

The dispatcher never retries. Any exception raised by an executor becomes
a ``StepExecutionError`` carrying the node id and the original cause.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from workflow_engine.config import EngineConfig
from workflow_engine.errors import StepExecutionError, WorkflowEngineError
from workflow_engine.graph.reducer import StateUpdate
from workflow_engine.graph.state import (
    ChatMessage,
    NodeExecutionResult,
    NodeStatus,
    RunState,
    ToolCallRecord,
    utc_now,
)
from workflow_engine.graph.step import (
    UNSET,
    FunctionStep,
    StepContext,
    StepExecutor,
    StepOutput,
    Suspend,
)
from workflow_engine.graph.workflow import WorkflowNode, normalize_kind

logger = logging.getLogger(__name__)


class StepRegistry:
    """Maps node kinds to step executors."""

    def __init__(self) -> None:
        self._executors: dict[str, StepExecutor] = {}

    @classmethod
    def with_builtins(cls, http_client: Any = None) -> "StepRegistry":
        """Registry pre-loaded with the engine's own step executors."""
        from workflow_engine.graph.builtin_steps import register_builtin_steps

        registry = cls()
        register_builtin_steps(registry, http_client=http_client)
        return registry

    def register(self, kind: str, executor: StepExecutor | Callable[[StepContext], Any]) -> None:
        """Register an executor (or a plain function taking a StepContext) for a kind."""
        if not isinstance(executor, StepExecutor):
            if not callable(executor):
                raise TypeError(f"Executor for '{kind}' must be callable or define execute()")
            executor = FunctionStep(executor)
        self._executors[normalize_kind(kind)] = executor

    def unregister(self, kind: str) -> bool:
        return self._executors.pop(normalize_kind(kind), None) is not None

    def get(self, kind: str) -> StepExecutor | None:
        return self._executors.get(normalize_kind(kind))

    def kinds(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, kind: str) -> bool:
        return normalize_kind(kind) in self._executors


@dataclass
class DispatchOutcome:
    """What one dispatch produced: either an update or a suspension."""

    node_id: str
    result: NodeExecutionResult
    update: StateUpdate | None = None
    suspend: Suspend | None = None
    output: StepOutput | None = None

    @property
    def suspended(self) -> bool:
        return self.suspend is not None


def _as_step_output(raw: Any) -> StepOutput | Suspend:
    if isinstance(raw, (StepOutput, Suspend)):
        return raw
    return StepOutput(value=raw)


def build_update(
    node: WorkflowNode,
    output: StepOutput,
    started_at: str,
    step_input: Any = None,
) -> tuple[StateUpdate, NodeExecutionResult]:
    """
    Fold a StepOutput into one StateUpdate.

    Variables receive the step's side-channel updates, then the node's
    output under its name and id, then ``lastOutput`` unless the output is
    a passthrough.
    """
    tool_calls = [
        t if isinstance(t, ToolCallRecord) else ToolCallRecord.model_validate(t)
        for t in output.tool_calls
    ]
    history = [
        m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in output.history
    ]

    result = NodeExecutionResult(
        node_id=node.id,
        status=NodeStatus.COMPLETED,
        input=step_input,
        output=output.value,
        started_at=started_at,
        completed_at=utc_now(),
        tool_calls=tool_calls or None,
        warnings=list(output.warnings),
    )

    variables = dict(output.variables)
    variables[node.name] = output.value
    variables[node.id] = output.value
    if not output.passthrough:
        variables["lastOutput"] = output.value

    fields: dict[str, Any] = {
        "variables": variables,
        "current_node_id": node.id,
        "node_results": {node.id: result},
    }
    if history:
        fields["history"] = history
    if output.accumulate is not UNSET:
        fields["loop_accumulator"] = [output.accumulate]
    return StateUpdate(**fields), result


def failed_result(node: WorkflowNode, error: str, started_at: str | None) -> NodeExecutionResult:
    return NodeExecutionResult(
        node_id=node.id,
        status=NodeStatus.FAILED,
        error=error,
        started_at=started_at,
        completed_at=utc_now(),
    )


class StepDispatcher:
    """Invokes step executors and normalizes their results."""

    def __init__(self, registry: StepRegistry, config: EngineConfig | None = None):
        self.registry = registry
        self.config = config or EngineConfig()

    async def dispatch(
        self,
        node: WorkflowNode,
        state: RunState,
        *,
        resume_value: Any = UNSET,
        run_id: str = "",
        thread_id: str = "",
    ) -> DispatchOutcome:
        """
        Run the executor for ``node`` against a snapshot of ``state``.

        Raises:
            StepExecutionError: No executor registered, the executor raised,
                or it exceeded the step timeout.
        """
        executor = self.registry.get(node.kind)
        if executor is None:
            raise StepExecutionError(
                f"No step executor registered for kind '{node.kind}' (node '{node.id}')",
                node_id=node.id,
            )

        is_resume = resume_value is not UNSET
        ctx = StepContext(
            node=node,
            state=state.snapshot(),
            resume_value=resume_value if is_resume else None,
            is_resume=is_resume,
            run_id=run_id,
            thread_id=thread_id,
            config=self.config,
        )
        started_at = utc_now()
        raw = await self._invoke(executor, node, ctx)
        output = _as_step_output(raw)

        if isinstance(output, Suspend):
            status = (
                NodeStatus.PENDING_AUTHORIZATION
                if output.kind == "authorization"
                else NodeStatus.PENDING_APPROVAL
            )
            result = NodeExecutionResult(
                node_id=node.id,
                status=status,
                input=ctx.input,
                started_at=started_at,
            )
            return DispatchOutcome(node_id=node.id, result=result, suspend=output)

        update, result = build_update(node, output, started_at, step_input=ctx.input)
        return DispatchOutcome(node_id=node.id, result=result, update=update, output=output)

    async def _invoke(self, executor: StepExecutor, node: WorkflowNode, ctx: StepContext) -> Any:
        timeout = self.config.step_timeout_seconds
        try:
            if timeout:
                return await asyncio.wait_for(executor.execute(ctx), timeout=timeout)
            return await executor.execute(ctx)
        except TimeoutError as e:
            raise StepExecutionError(
                f"Step '{node.id}' timed out after {timeout}s", node_id=node.id, cause=e
            ) from e
        except WorkflowEngineError as e:
            if isinstance(e, StepExecutionError) and e.node_id == node.id:
                raise
            raise StepExecutionError(
                f"Step '{node.id}' failed: {e.message}", node_id=node.id, cause=e
            ) from e
        except Exception as e:
            logger.error(f"✗ Step {node.id} raised {type(e).__name__}: {e}")
            raise StepExecutionError(
                f"Step '{node.id}' failed: {e}", node_id=node.id, cause=e
            ) from e
