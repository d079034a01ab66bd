"""
Step contract - what a step executor receives and may return.

A step executor is any object with ``async execute(ctx) -> result`` (or a
plain sync/async function taking ``ctx``). The result is one of:

- ``StepOutput``: primary value plus optional side-channel updates
- ``Suspend``: the step needs an external actor before it can finish
- any other value: treated as ``StepOutput(value=result)``

Raising an exception fails the step, and with it the run.
"""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from workflow_engine.config import EngineConfig
from workflow_engine.graph.state import ChatMessage, RunState, ToolCallRecord
from workflow_engine.graph.templating import resolve_path, substitute_variables
from workflow_engine.graph.workflow import WorkflowNode


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class StepOutput:
    """Normalized step result."""

    value: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    history: list[ChatMessage | dict[str, Any]] = field(default_factory=list)
    tool_calls: list[ToolCallRecord | dict[str, Any]] = field(default_factory=list)
    # appended to loop_accumulator when set
    accumulate: Any = UNSET
    # control nodes record their output without replacing lastOutput
    passthrough: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class Suspend:
    """Tagged result asking the run to pause until resumed."""

    kind: str = "approval"  # "authorization" | "approval"
    reason: str = ""
    external_url: str | None = None
    resume_hint: Any = None
    tool_name: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in ("authorization", "approval"):
            raise ValueError(f"Suspend kind must be 'authorization' or 'approval', got {self.kind!r}")


@dataclass
class StepContext:
    """Everything a step executor may look at.

    ``state`` is a deep copy; mutating it has no effect on the run.
    """

    node: WorkflowNode
    state: RunState
    resume_value: Any = None
    is_resume: bool = False
    run_id: str = ""
    thread_id: str = ""
    config: EngineConfig | None = None

    @property
    def node_config(self) -> dict[str, Any]:
        return self.node.config

    @property
    def variables(self) -> dict[str, Any]:
        return self.state.variables

    @property
    def input(self) -> Any:
        """Effective input: the resume value on resume, else ``lastOutput``."""
        if self.is_resume:
            return self.resume_value
        return self.state.variables.get("lastOutput")

    def variable(self, path: str) -> Any:
        return resolve_path(path, self.state.variables)

    def render(self, template: str) -> str:
        return substitute_variables(template, self.state)


@runtime_checkable
class StepExecutor(Protocol):
    """Protocol for step executors."""

    async def execute(self, ctx: StepContext) -> Any: ...


class FunctionStep:
    """Adapts a plain function (sync or async) to the StepExecutor protocol."""

    def __init__(self, func: Callable[[StepContext], Any]):
        self.func = func
        self.__name__ = getattr(func, "__name__", type(func).__name__)

    async def execute(self, ctx: StepContext) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(ctx)
        result = await asyncio.to_thread(self.func, ctx)
        if inspect.isawaitable(result):
            return await result
        return result
