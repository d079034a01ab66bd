"""
Workflow Executor - runs compiled workflows.

The executor:
1. Compiles the workflow (compilation errors are raised before any event)
2. Walks the compiled graph one node at a time, merging each step's
   update into the run state
3. Consults the conditional/loop resolvers at control nodes and runs
   fan-out branches concurrently, merging them before the join
4. Saves a checkpoint and stops when a step suspends
5. Emits run/node events as it goes

One async generator drives every entry point: ``run``/``resume`` drain it
into a RunResult, ``run_streaming``/``resume_streaming`` hand it to the
caller. Closing the stream (``aclose()``) stops the walk; no further steps
are started and in-flight parallel branches are cancelled.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from workflow_engine.config import EngineConfig
from workflow_engine.errors import (
    DoubleSuspensionError,
    ParallelMergeConflictError,
    StepExecutionError,
    StepLimitExceededError,
    WorkflowEngineError,
)
from workflow_engine.graph.builtin_steps import parse_run_input
from workflow_engine.graph.compiler import (
    END,
    ApprovalRoute,
    CompiledGraph,
    ConditionalRoute,
    DirectRoute,
    EndRoute,
    FanOutRoute,
    LoopRoute,
    compile_workflow,
)
from workflow_engine.graph.dispatcher import (
    StepDispatcher,
    StepRegistry,
    build_update,
    failed_result,
)
from workflow_engine.graph.interrupts import InterruptManager
from workflow_engine.graph.reducer import StateUpdate, merge
from workflow_engine.graph.routing import ConditionalResolver, LoopResolver, iteration_key
from workflow_engine.graph.state import PendingAuth, RunState, utc_now
from workflow_engine.graph.step import UNSET, StepOutput
from workflow_engine.graph.workflow import NodeKind, Workflow, WorkflowNode
from workflow_engine.observability import set_trace_context
from workflow_engine.runtime.event_bus import EventBus, RunEvent, RunEventType
from workflow_engine.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

# Variable keys owned by the engine; parallel branches may overwrite these freely
ENGINE_KEYS = frozenset({"input", "lastOutput"})


@dataclass
class RunResult:
    """Result of running or resuming a workflow."""

    status: str  # "completed" | "paused" | "failed"
    run_id: str
    thread_id: str
    state: RunState
    pending_auth: PendingAuth | None = None
    error: str | None = None
    error_code: str | None = None
    failed_node_id: str | None = None
    path: list[str] = field(default_factory=list)  # Node IDs executed, in completion order
    steps_executed: int = 0
    events: list[RunEvent] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "completed"

    @property
    def paused(self) -> bool:
        return self.status == "paused"

    @property
    def last_output(self) -> Any:
        return self.state.variables.get("lastOutput")


@dataclass
class _Cursor:
    """Walk position and state of the main run or one parallel branch."""

    state: RunState
    suspended_at: str | None = None
    node_id: str | None = None
    started_at: str | None = None


@dataclass
class _RunContext:
    graph: CompiledGraph
    run_id: str
    thread_id: str
    steps: int = 0
    path: list[str] = field(default_factory=list)
    events: list[RunEvent] = field(default_factory=list)
    status: str = "running"
    cursor: _Cursor | None = None
    error: WorkflowEngineError | None = None

    def to_result(self) -> RunResult:
        state = self.cursor.state if self.cursor else RunState()
        return RunResult(
            status=self.status,
            run_id=self.run_id,
            thread_id=self.thread_id,
            state=state,
            pending_auth=state.pending_auth,
            error=self.error.message if self.error else None,
            error_code=self.error.code if self.error else None,
            failed_node_id=self.error.node_id if self.error else None,
            path=list(self.path),
            steps_executed=self.steps,
            events=list(self.events),
        )


class WorkflowExecutor:
    """
    Executes workflows.

    Example:
        registry = StepRegistry.with_builtins()
        registry.register("agent", run_agent)

        executor = WorkflowExecutor(registry=registry, checkpoint_store=store)

        result = await executor.run(workflow, {"topic": "llamas"})
        if result.paused:
            result = await executor.resume(result.thread_id, {"approved": True})
    """

    def __init__(
        self,
        registry: StepRegistry | None = None,
        checkpoint_store: CheckpointStore | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Initialize the executor.

        Args:
            registry: Step executors by node kind (defaults to the built-ins)
            checkpoint_store: Where suspended runs are kept (defaults to a file
                store under ``config.checkpoint_dir`` if set, else in memory)
            event_bus: Optional bus receiving every run event
            config: Engine configuration
        """
        self.config = config or EngineConfig()
        self.registry = registry or StepRegistry.with_builtins()
        if checkpoint_store is None:
            if self.config.checkpoint_dir:
                checkpoint_store = FileCheckpointStore(self.config.checkpoint_dir)
            else:
                checkpoint_store = InMemoryCheckpointStore()
        self.checkpoint_store = checkpoint_store
        self.event_bus = event_bus
        self.interrupts = InterruptManager(checkpoint_store)
        self.dispatcher = StepDispatcher(self.registry, self.config)
        self.conditional_resolver = ConditionalResolver()
        self.loop_resolver = LoopResolver(
            default_max_iterations=self.config.loop_default_max_iterations,
            absolute_max_iterations=self.config.loop_absolute_max_iterations,
        )
        self.logger = logging.getLogger(__name__)

    # === ENTRY POINTS ===

    async def run(
        self,
        workflow: Workflow,
        input: Any = None,
        thread_id: str | None = None,
    ) -> RunResult:
        """Run a workflow to completion, suspension or failure.

        Raises:
            CompilationError: The workflow cannot be compiled
            ResumeConflictError: ``thread_id`` is in use by another run
        """
        observed: list[_RunContext] = []
        async for _ in self._run_events(workflow, input, thread_id, observed):
            pass
        return observed[0].to_result()

    def run_streaming(
        self,
        workflow: Workflow,
        input: Any = None,
        thread_id: str | None = None,
    ) -> AsyncIterator[RunEvent]:
        """Run a workflow, yielding events as they happen."""
        return self._run_events(workflow, input, thread_id, [])

    async def resume(self, thread_id: str, resume_value: Any = None) -> RunResult:
        """Resume a suspended run with a value for the waiting step.

        Raises:
            SuspendWithoutResumeError: No suspended run for ``thread_id``
            ResumeConflictError: Another resume for ``thread_id`` is in progress
            ResumeRejectedError: The value reports a failed authorization
        """
        observed: list[_RunContext] = []
        async for _ in self._resume_events(thread_id, resume_value, observed):
            pass
        return observed[0].to_result()

    def resume_streaming(self, thread_id: str, resume_value: Any = None) -> AsyncIterator[RunEvent]:
        """Resume a suspended run, yielding events as they happen."""
        return self._resume_events(thread_id, resume_value, [])

    # === RUN SETUP ===

    async def _run_events(
        self,
        workflow: Workflow,
        input: Any,
        thread_id: str | None,
        observed: list[_RunContext],
    ) -> AsyncIterator[RunEvent]:
        graph = compile_workflow(workflow)
        thread_id = thread_id or f"thread_{uuid.uuid4().hex}"

        async with self.interrupts.claim(thread_id):
            ctx = _RunContext(graph=graph, run_id=uuid.uuid4().hex, thread_id=thread_id)
            cursor = _Cursor(state=RunState(variables={"input": parse_run_input(input)}))
            ctx.cursor = cursor
            observed.append(ctx)

            set_trace_context(run_id=ctx.run_id, thread_id=thread_id, workflow_id=workflow.id)
            self.logger.info(f"🚀 Starting workflow '{workflow.name or workflow.id}'")

            yield await self._emit(
                ctx, RunEventType.RUN_STARTED, data={"workflow_id": workflow.id, "resumed": False}
            )
            async with aclosing(self._drive(ctx, cursor, graph.entry_id, UNSET)) as events:
                async for event in events:
                    yield event

    async def _resume_events(
        self,
        thread_id: str,
        resume_value: Any,
        observed: list[_RunContext],
    ) -> AsyncIterator[RunEvent]:
        async with self.interrupts.claim(thread_id):
            checkpoint = await self.interrupts.take(thread_id, resume_value)
            graph = compile_workflow(checkpoint.workflow)

            ctx = _RunContext(
                graph=graph,
                run_id=checkpoint.run_id,
                thread_id=thread_id,
                steps=checkpoint.steps_executed,
                path=list(checkpoint.execution_path),
            )
            pending = checkpoint.state.pending_auth
            cursor = _Cursor(state=merge(checkpoint.state, StateUpdate(pending_auth=None)))
            ctx.cursor = cursor
            observed.append(ctx)

            set_trace_context(
                run_id=ctx.run_id, thread_id=thread_id, workflow_id=checkpoint.workflow.id
            )
            self.logger.info(f"▶ Resuming at node {checkpoint.resume_node_id}")

            yield await self._emit(
                ctx,
                RunEventType.RUN_STARTED,
                data={
                    "workflow_id": checkpoint.workflow.id,
                    "resumed": True,
                    "resumed_from": checkpoint.resume_node_id,
                    "auth_id": pending.auth_id if pending else None,
                },
            )
            events = self._drive(ctx, cursor, checkpoint.resume_node_id, resume_value)
            async with aclosing(events):
                async for event in events:
                    yield event

    # === DRIVER ===

    async def _drive(
        self,
        ctx: _RunContext,
        cursor: _Cursor,
        start_node_id: str,
        resume_value: Any,
    ) -> AsyncIterator[RunEvent]:
        """Walk from ``start_node_id`` and finish with exactly one terminal event."""
        try:
            events = self._walk(ctx, cursor, start_node_id, frozenset(), resume_value)
            async with aclosing(events):
                async for event in events:
                    yield event
        except WorkflowEngineError as e:
            yield await self._fail(ctx, cursor, e)
            return
        except Exception as e:
            node_id = cursor.node_id
            self.logger.exception(f"✗ Unexpected error at node {node_id}")
            error = StepExecutionError(f"Unexpected error: {e}", node_id=node_id, cause=e)
            yield await self._fail(ctx, cursor, error)
            return

        if cursor.suspended_at is not None:
            await self.interrupts.save(
                thread_id=ctx.thread_id,
                run_id=ctx.run_id,
                workflow=ctx.graph.workflow,
                state=cursor.state,
                resume_node_id=cursor.suspended_at,
                steps_executed=ctx.steps,
                execution_path=ctx.path,
            )
            ctx.status = "paused"
            pending = cursor.state.pending_auth
            self.logger.info(f"⏸ Paused at {cursor.suspended_at}: {pending.message if pending else ''}")
            yield await self._emit(
                ctx,
                RunEventType.RUN_PAUSED,
                node_id=cursor.suspended_at,
                data={
                    "pending_auth": pending.model_dump(mode="json") if pending else None,
                    "state": cursor.state.model_dump(mode="json"),
                },
            )
            return

        ctx.status = "completed"
        self.logger.info(f"✓ Workflow completed after {ctx.steps} steps")
        yield await self._emit(
            ctx,
            RunEventType.RUN_COMPLETED,
            data={"final_state": cursor.state.model_dump(mode="json")},
        )

    async def _fail(
        self, ctx: _RunContext, cursor: _Cursor, error: WorkflowEngineError
    ) -> RunEvent:
        node_id = error.node_id or cursor.node_id
        if error.node_id is None:
            error.node_id = node_id
        update = StateUpdate(pending_auth=None)
        if node_id and node_id in ctx.graph.nodes:
            started_at = cursor.started_at if cursor.node_id == node_id else None
            update = StateUpdate(
                current_node_id=node_id,
                node_results={
                    node_id: failed_result(ctx.graph.node(node_id), error.message, started_at)
                },
                pending_auth=None,
            )
        cursor.state = merge(cursor.state, update)
        ctx.status = "failed"
        ctx.error = error
        self.logger.error(f"✗ Node {node_id} failed: {error.message}")
        return await self._emit(
            ctx,
            RunEventType.NODE_FAILED,
            node_id=node_id,
            data={"node_id": node_id, "error": error.message, **error.to_dict()},
        )

    async def _walk(
        self,
        ctx: _RunContext,
        cursor: _Cursor,
        node_id: str,
        stop_at: frozenset[str],
        resume_value: Any,
    ) -> AsyncIterator[RunEvent]:
        """
        Execute nodes sequentially from ``node_id``.

        Returns when a terminal is reached, a node in ``stop_at`` is reached
        (a parallel join), or a step suspends (``cursor.suspended_at``).
        """
        graph = ctx.graph
        current: str | None = node_id

        while current is not None:
            if current == END or graph.is_terminal(current):
                return
            if current in stop_at:
                return

            ctx.steps += 1
            if ctx.steps > self.config.max_steps:
                raise StepLimitExceededError(
                    f"Run exceeded {self.config.max_steps} node visits", node_id=current
                )

            node = graph.node(current)
            cursor.node_id = current
            cursor.started_at = utc_now()
            set_trace_context(node_id=current)
            self.logger.info(f"▶ Step {ctx.steps}: {node.name} ({node.kind})")
            yield await self._emit(ctx, RunEventType.NODE_STARTED, node_id=current)

            route_key = await self._execute_node(ctx, cursor, node, resume_value)
            resume_value = UNSET
            if cursor.suspended_at is not None:
                return

            ctx.path.append(current)
            result = cursor.state.node_results[current]
            yield await self._emit(
                ctx,
                RunEventType.NODE_COMPLETED,
                node_id=current,
                data={
                    "node_id": current,
                    "result": result.model_dump(mode="json"),
                    "state": cursor.state.model_dump(mode="json"),
                },
            )

            route = graph.routes[current]
            if isinstance(route, FanOutRoute):
                async with aclosing(self._fan_out(ctx, cursor, node, route, stop_at)) as events:
                    async for event in events:
                        yield event
                if cursor.suspended_at is not None:
                    return
                current = route.join
            else:
                current = self._next_node(route, route_key)

    def _next_node(self, route: Any, route_key: Any) -> str | None:
        if isinstance(route, EndRoute):
            return None
        if isinstance(route, DirectRoute):
            return route.target
        if isinstance(route, ConditionalRoute):
            return route.if_target if route_key == "if" else route.else_target
        if isinstance(route, LoopRoute):
            return route.continue_target if route_key == "continue" else route.break_target
        if isinstance(route, ApprovalRoute):
            return route.approved_target if route_key else route.rejected_target
        raise TypeError(f"Unknown route {route!r}")

    # === NODE EXECUTION ===

    async def _execute_node(
        self,
        ctx: _RunContext,
        cursor: _Cursor,
        node: WorkflowNode,
        resume_value: Any,
    ) -> Any:
        """Run one node, merge its update into ``cursor.state`` and return its route key."""
        started_at = utc_now()

        if node.kind == NodeKind.IF_ELSE:
            decision = self.conditional_resolver.resolve(node, cursor.state)
            output = StepOutput(
                value=decision.output(), passthrough=True, warnings=decision.warnings
            )
            update, _ = build_update(node, output, started_at, step_input=cursor.state.last_output)
            cursor.state = merge(cursor.state, update)
            return decision.branch

        if node.kind == NodeKind.WHILE:
            decision = self.loop_resolver.resolve(node, cursor.state)
            output = StepOutput(
                value=decision.output(),
                variables={iteration_key(node.id): decision.counter},
                passthrough=True,
                warnings=decision.warnings,
            )
            update, _ = build_update(node, output, started_at, step_input=cursor.state.last_output)
            cursor.state = merge(cursor.state, update)
            return "continue" if decision.should_continue else "break"

        outcome = await self.dispatcher.dispatch(
            node,
            cursor.state,
            resume_value=resume_value,
            run_id=ctx.run_id,
            thread_id=ctx.thread_id,
        )

        if outcome.suspend is not None:
            if cursor.state.pending_auth is not None:
                raise DoubleSuspensionError(
                    f"Node '{node.id}' suspended while suspension "
                    f"{cursor.state.pending_auth.auth_id} from node "
                    f"'{cursor.state.pending_auth.node_id}' is still outstanding",
                    node_id=node.id,
                )
            pending = self.interrupts.create_pending_auth(
                node.id, outcome.suspend, ctx.run_id, ctx.thread_id
            )
            result = outcome.result.model_copy(update={"pending_auth": pending})
            cursor.state = merge(
                cursor.state,
                StateUpdate(
                    current_node_id=node.id,
                    node_results={node.id: result},
                    pending_auth=pending,
                ),
            )
            cursor.suspended_at = node.id
            self.logger.info(f"⏸ {node.id} suspended for {pending.kind}: {pending.message}")
            return None

        cursor.state = merge(cursor.state, outcome.update)
        self.logger.info(f"✓ {node.name} completed")

        if node.kind == NodeKind.USER_APPROVAL:
            return _is_approved(outcome.result.output)
        return None

    # === PARALLEL FAN-OUT ===

    async def _fan_out(
        self,
        ctx: _RunContext,
        cursor: _Cursor,
        node: WorkflowNode,
        route: FanOutRoute,
        stop_at: frozenset[str],
    ) -> AsyncIterator[RunEvent]:
        """
        Run every branch of a fan-out concurrently and merge them.

        Each branch walks its own copy of the state until it reaches the
        join (or a terminal). Events are forwarded as they happen; state is
        merged in edge-declaration order once every branch has finished.
        """
        base = cursor.state
        branch_stop = (stop_at | {route.join}) if route.join else stop_at
        # a target that another branch reaches is the join, not a branch of its own
        targets = [t for t in route.targets if t != route.join]
        branches = [_Cursor(state=base.snapshot()) for _ in targets]
        queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

        self.logger.info(f"   ⑂ Fan-out: executing {len(branches)} branches in parallel")

        async def run_branch(branch: _Cursor, target: str) -> None:
            try:
                async for event in self._walk(ctx, branch, target, branch_stop, UNSET):
                    queue.put_nowait(("event", event))
            except asyncio.CancelledError:
                queue.put_nowait(("done", None))
                raise
            except Exception as e:
                queue.put_nowait(("error", e))
                return
            queue.put_nowait(("done", None))

        tasks = [
            asyncio.create_task(run_branch(branch, target))
            for branch, target in zip(branches, targets, strict=True)
        ]
        try:
            finished = 0
            while finished < len(tasks):
                kind, item = await queue.get()
                if kind == "event":
                    yield item
                elif kind == "error":
                    raise item
                else:
                    finished += 1
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        cursor.state = self._merge_branches(ctx.graph, node, base, branches)
        if route.join:
            self.logger.info(f"   ⑃ Branches joined at {route.join}")

        suspended = [b for b in branches if b.suspended_at is not None]
        if len(suspended) > 1:
            raise DoubleSuspensionError(
                f"Parallel branches suspended at {', '.join(b.suspended_at for b in suspended)}; "
                "only one suspension may be outstanding",
                node_id=suspended[1].suspended_at,
            )
        if suspended:
            cursor.suspended_at = suspended[0].suspended_at

    def _merge_branches(
        self,
        graph: CompiledGraph,
        node: WorkflowNode,
        base: RunState,
        branches: list[_Cursor],
    ) -> RunState:
        """
        Fold every branch's changes since ``base`` into one state.

        Engine-owned variables (lastOutput, node outputs, loop counters) are
        last-writer-wins in declaration order. Other keys written by more than
        one branch follow ``config.parallel_conflict_strategy``.
        """
        strategy = self.config.parallel_conflict_strategy
        engine_keys = set(ENGINE_KEYS)
        for graph_node in graph.nodes.values():
            engine_keys.update((graph_node.id, graph_node.name))
        writers: dict[str, int] = {}
        conflicts: list[str] = []
        merged = base

        for index, branch in enumerate(branches):
            state = branch.state
            changed = {
                k: v
                for k, v in state.variables.items()
                if k not in base.variables or base.variables[k] != v
            }
            variables: dict[str, Any] = {}
            for key, value in changed.items():
                if key in engine_keys or key.endswith("__iterationCount"):
                    variables[key] = value
                    continue
                if key in writers:
                    conflicts.append(key)
                    if strategy == "first_wins":
                        continue
                writers.setdefault(key, index)
                variables[key] = value

            fields: dict[str, Any] = {
                "variables": variables,
                "history": state.history[len(base.history) :],
                "node_results": {
                    k: v for k, v in state.node_results.items() if base.node_results.get(k) != v
                },
                "loop_accumulator": state.loop_accumulator[len(base.loop_accumulator) :],
            }
            if state.current_node_id != base.current_node_id:
                fields["current_node_id"] = state.current_node_id
            if state.pending_auth is not None and base.pending_auth is None:
                fields["pending_auth"] = state.pending_auth
            merged = merge(merged, StateUpdate(**fields))

        if conflicts and strategy == "error":
            keys = sorted(set(conflicts))
            raise ParallelMergeConflictError(
                f"Parallel branches of '{node.id}' wrote the same variable(s): {', '.join(keys)}",
                keys=keys,
                node_id=node.id,
            )
        if conflicts:
            self.logger.warning(
                f"⚠ Parallel branches of '{node.id}' wrote {sorted(set(conflicts))}; "
                f"resolved with {strategy}"
            )
        return merged

    # === EVENTS ===

    async def _emit(
        self,
        ctx: _RunContext,
        event_type: RunEventType,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> RunEvent:
        event = RunEvent(
            type=event_type,
            run_id=ctx.run_id,
            thread_id=ctx.thread_id,
            node_id=node_id,
            data=data or {},
        )
        ctx.events.append(event)
        if self.event_bus is not None:
            await self.event_bus.publish(event)
        return event


def _is_approved(value: Any) -> bool:
    if isinstance(value, dict):
        return bool(value.get("approved", True))
    return bool(value)
