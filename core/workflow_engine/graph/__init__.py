"""Graph structures: workflow model, compiler, routing, steps and execution."""

from workflow_engine.graph.compiler import (
    END,
    ApprovalRoute,
    CompiledGraph,
    ConditionalRoute,
    DirectRoute,
    EndRoute,
    FanOutRoute,
    LoopRoute,
    Route,
    compile_workflow,
    find_join_node,
)
from workflow_engine.graph.dispatcher import StepDispatcher, StepRegistry
from workflow_engine.graph.executor import RunResult, WorkflowExecutor
from workflow_engine.graph.interrupts import InterruptManager
from workflow_engine.graph.reducer import StateUpdate, merge
from workflow_engine.graph.routing import ConditionalResolver, LoopResolver
from workflow_engine.graph.safe_eval import evaluate_condition, safe_eval
from workflow_engine.graph.state import (
    ChatMessage,
    NodeExecutionResult,
    NodeStatus,
    PendingAuth,
    RunState,
    ToolCallRecord,
)
from workflow_engine.graph.step import StepContext, StepExecutor, StepOutput, Suspend
from workflow_engine.graph.validator import ValidationIssue, validate_workflow
from workflow_engine.graph.workflow import NodeKind, Workflow, WorkflowEdge, WorkflowNode

__all__ = [
    # Model
    "Workflow",
    "WorkflowNode",
    "WorkflowEdge",
    "NodeKind",
    # State
    "RunState",
    "StateUpdate",
    "merge",
    "NodeExecutionResult",
    "NodeStatus",
    "PendingAuth",
    "ChatMessage",
    "ToolCallRecord",
    # Compilation
    "compile_workflow",
    "find_join_node",
    "CompiledGraph",
    "Route",
    "END",
    "EndRoute",
    "DirectRoute",
    "ConditionalRoute",
    "LoopRoute",
    "ApprovalRoute",
    "FanOutRoute",
    "validate_workflow",
    "ValidationIssue",
    # Routing
    "ConditionalResolver",
    "LoopResolver",
    "safe_eval",
    "evaluate_condition",
    # Steps
    "StepRegistry",
    "StepDispatcher",
    "StepExecutor",
    "StepContext",
    "StepOutput",
    "Suspend",
    # Execution
    "WorkflowExecutor",
    "RunResult",
    "InterruptManager",
]
