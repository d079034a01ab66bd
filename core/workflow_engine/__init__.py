"""
Workflow Engine - compile and run node/edge workflow graphs.

A workflow is a list of typed nodes (entry, terminal, agent steps, tool
calls, transforms, conditionals, bounded loops, approval gates) joined by
edges. The engine compiles it into routing tables, walks it with
conditional branches, bounded loops and parallel fan-out, and suspends at
approval/authorization points with a checkpoint that can be resumed later.

Example:
    from workflow_engine import StepRegistry, Workflow, WorkflowExecutor

    registry = StepRegistry.with_builtins()
    registry.register("agent", my_agent_step)

    executor = WorkflowExecutor(registry=registry)
    result = await executor.run(Workflow.model_validate(data), {"topic": "x"})
"""

from workflow_engine.config import EngineConfig
from workflow_engine.errors import (
    CompilationError,
    ConditionEvaluationError,
    DoubleSuspensionError,
    LoopSafetyExceeded,
    ParallelMergeConflictError,
    ResumeConflictError,
    ResumeRejectedError,
    StepExecutionError,
    StepLimitExceededError,
    SuspendWithoutResumeError,
    WorkflowEngineError,
)
from workflow_engine.graph.compiler import CompiledGraph, compile_workflow
from workflow_engine.graph.dispatcher import StepRegistry
from workflow_engine.graph.executor import RunResult, WorkflowExecutor
from workflow_engine.graph.state import NodeExecutionResult, NodeStatus, PendingAuth, RunState
from workflow_engine.graph.step import StepContext, StepOutput, Suspend
from workflow_engine.graph.workflow import NodeKind, Workflow, WorkflowEdge, WorkflowNode
from workflow_engine.runtime.event_bus import EventBus, RunEvent, RunEventType
from workflow_engine.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

__all__ = [
    # Model
    "Workflow",
    "WorkflowNode",
    "WorkflowEdge",
    "NodeKind",
    "RunState",
    "NodeExecutionResult",
    "NodeStatus",
    "PendingAuth",
    # Compilation
    "CompiledGraph",
    "compile_workflow",
    # Steps
    "StepRegistry",
    "StepContext",
    "StepOutput",
    "Suspend",
    # Execution
    "WorkflowExecutor",
    "RunResult",
    "EngineConfig",
    # Events
    "EventBus",
    "RunEvent",
    "RunEventType",
    # Storage
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    # Errors
    "WorkflowEngineError",
    "CompilationError",
    "StepExecutionError",
    "ConditionEvaluationError",
    "LoopSafetyExceeded",
    "SuspendWithoutResumeError",
    "DoubleSuspensionError",
    "ResumeConflictError",
    "ResumeRejectedError",
    "ParallelMergeConflictError",
    "StepLimitExceededError",
]
