"""
Tests for WorkflowExecutor run paths: linear, conditional, bounded loop,
failures, limits and the streaming boundary.
"""

import asyncio

import pytest

from workflow_engine import (
    CompilationError,
    EventBus,
    ResumeConflictError,
    RunEventType,
    StepOutput,
    StepRegistry,
    WorkflowExecutor,
)
from workflow_engine.graph.state import NodeStatus


def _linear(make_workflow):
    return make_workflow(
        [("start", "start"), ("agent", "agent", {"instructions": "write"}), ("end", "end")],
        [("start", "agent"), ("agent", "end")],
    )


def _conditional(make_workflow):
    return make_workflow(
        [
            ("start", "start"),
            ("check", "if-else", {"condition": "input.n > 5"}),
            ("big", "agent"),
            ("small", "agent"),
            ("end", "end"),
        ],
        [
            ("start", "check"),
            ("check", "big", "if"),
            ("check", "small", "else"),
            ("big", "end"),
            ("small", "end"),
        ],
    )


def _loop(make_workflow, **loop_config):
    return make_workflow(
        [
            ("start", "start"),
            ("loop", "while", loop_config),
            ("collect", "collect"),
            ("end", "end"),
        ],
        [
            ("start", "loop"),
            ("loop", "collect", "continue"),
            ("loop", "end", "break"),
            ("collect", "loop"),
        ],
    )


def _collect(ctx):
    count = ctx.variables["loop__iterationCount"]
    item = ["a", "b", "c", "d", "e"][count - 1]
    return StepOutput(value=item, accumulate=item)


# ---------------------------------------------------------------------------
# Linear
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_linear_run(executor, make_workflow, calls):
    result = await executor.run(_linear(make_workflow), {"topic": "llamas"})

    assert result.status == "completed"
    assert result.success is True
    assert result.path == ["start", "agent"]
    assert result.steps_executed == 2
    assert calls == ["agent"]

    state = result.state
    assert len(state.node_results) == 2
    assert state.node_results["agent"].status == NodeStatus.COMPLETED
    assert state.variables["start"] == {"topic": "llamas"}
    assert state.variables["agent"] == {"node": "agent", "input": {"topic": "llamas"}}
    assert result.last_output == state.variables["agent"]

    assert [e.type for e in result.events] == [
        RunEventType.RUN_STARTED,
        RunEventType.NODE_STARTED,
        RunEventType.NODE_COMPLETED,
        RunEventType.NODE_STARTED,
        RunEventType.NODE_COMPLETED,
        RunEventType.RUN_COMPLETED,
    ]
    assert all(e.run_id == result.run_id for e in result.events)


@pytest.mark.asyncio
async def test_json_string_input_is_parsed(executor, make_workflow):
    result = await executor.run(_linear(make_workflow), '{"n": 1}')

    assert result.state.variables["input"] == {"n": 1}
    assert result.state.variables["start"] == {"n": 1}


@pytest.mark.asyncio
async def test_node_name_is_variable_key(executor, make_workflow):
    wf = make_workflow(
        [("start", "start"), ("n1", "agent", {"nodeName": "writer"})],
        [("start", "n1")],
    )
    result = await executor.run(wf)

    assert result.state.variables["writer"] == result.state.variables["n1"]


# ---------------------------------------------------------------------------
# Conditional
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_conditional_takes_if_branch(executor, make_workflow, calls):
    result = await executor.run(_conditional(make_workflow), {"n": 7})

    assert result.success
    assert calls == ["big"]
    assert result.path == ["start", "check", "big"]
    assert result.state.node_results["check"].output["branch"] == "if"
    assert result.state.node_results["check"].output["condition"] is True


@pytest.mark.asyncio
async def test_conditional_takes_else_branch(executor, make_workflow, calls):
    result = await executor.run(_conditional(make_workflow), {"n": 2})

    assert result.success
    assert calls == ["small"]
    assert result.state.variables["check"]["branch"] == "else"


@pytest.mark.asyncio
async def test_control_node_does_not_replace_last_output(executor, make_workflow):
    result = await executor.run(_conditional(make_workflow), {"n": 7})

    # "big" saw the start output, not the conditional's decision
    assert result.state.variables["big"]["input"] == {"n": 7}


@pytest.mark.asyncio
async def test_condition_error_is_recorded_not_fatal(executor, make_workflow, calls):
    wf = make_workflow(
        [
            ("start", "start"),
            ("check", "if-else", {"condition": "input.a.b > 1"}),
            ("yes", "agent"),
            ("no", "agent"),
        ],
        [("start", "check"), ("check", "yes", "if"), ("check", "no", "else")],
    )
    result = await executor.run(wf, {})

    assert result.success
    assert calls == ["no"]
    assert result.state.node_results["check"].warnings


@pytest.mark.asyncio
async def test_oversized_condition_takes_else(executor, make_workflow, calls):
    wf = make_workflow(
        [
            ("start", "start"),
            ("check", "if-else", {"condition": "len('a' * 100000000000) > 0"}),
            ("yes", "agent"),
            ("no", "agent"),
        ],
        [("start", "check"), ("check", "yes", "if"), ("check", "no", "else")],
    )
    result = await executor.run(wf, {})

    assert result.success
    assert calls == ["no"]
    assert "Repetition" in result.state.node_results["check"].warnings[0]


# ---------------------------------------------------------------------------
# Bounded loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bounded_loop_stops_at_max_iterations(registry, store, make_workflow, make_config):
    registry.register("collect", _collect)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    result = await executor.run(_loop(make_workflow, whileCondition="true", maxIterations=3))

    assert result.success
    assert result.state.loop_accumulator == ["a", "b", "c"]
    assert result.state.variables["loop__iterationCount"] == 3
    assert result.state.node_results["loop"].output["stoppedReason"] == "max_iterations"
    assert result.path.count("collect") == 3
    assert result.path.count("loop") == 4
    assert result.steps_executed == 8


@pytest.mark.asyncio
async def test_loop_condition_uses_iteration(registry, store, make_workflow, make_config):
    registry.register("collect", _collect)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    wf = _loop(make_workflow, whileCondition="iteration <= 2", maxIterations=10)
    result = await executor.run(wf)

    assert result.state.loop_accumulator == ["a", "b"]
    assert result.state.node_results["loop"].output["stoppedReason"] == "condition_false"


@pytest.mark.asyncio
async def test_loop_over_accumulated_values(registry, store, make_workflow, make_config):
    registry.register("collect", _collect)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    wf = _loop(make_workflow, whileCondition="loopAccumulator.length < 4", maxIterations=10)
    result = await executor.run(wf)

    assert result.state.loop_accumulator == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_step_limit_stops_runaway_loop(registry, store, make_workflow, make_config):
    registry.register("collect", lambda ctx: StepOutput(value=1, accumulate=1))
    executor = WorkflowExecutor(
        registry=registry, checkpoint_store=store, config=make_config(max_steps=5)
    )

    result = await executor.run(_loop(make_workflow, whileCondition="true", maxIterations=100))

    assert result.status == "failed"
    assert result.error_code == "STEP_LIMIT_EXCEEDED"
    assert result.steps_executed == 6


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_step_exception_fails_run(store, make_workflow, make_config):
    async def broken(ctx):
        raise RuntimeError("boom")

    registry = StepRegistry.with_builtins()
    registry.register("agent", broken)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    result = await executor.run(_linear(make_workflow))

    assert result.status == "failed"
    assert result.failed_node_id == "agent"
    assert result.error_code == "STEP_EXECUTION_ERROR"
    assert "boom" in result.error
    assert result.state.node_results["agent"].status == NodeStatus.FAILED
    assert result.state.node_results["agent"].started_at is not None

    last = result.events[-1]
    assert last.type == RunEventType.NODE_FAILED
    assert last.node_id == "agent"
    assert last.data["error"] == result.error
    assert RunEventType.RUN_COMPLETED not in [e.type for e in result.events]


@pytest.mark.asyncio
async def test_missing_executor_fails_run(executor, make_workflow):
    wf = make_workflow([("start", "start"), ("t", "tool")], [("start", "t")])
    result = await executor.run(wf)

    assert result.status == "failed"
    assert result.failed_node_id == "t"
    assert "No step executor" in result.error


@pytest.mark.asyncio
async def test_step_timeout(store, make_workflow, make_config):
    async def slow(ctx):
        await asyncio.sleep(5)

    registry = StepRegistry.with_builtins()
    registry.register("agent", slow)
    executor = WorkflowExecutor(
        registry=registry,
        checkpoint_store=store,
        config=make_config(step_timeout_seconds=0.05),
    )

    result = await executor.run(_linear(make_workflow))

    assert result.status == "failed"
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_compilation_error_raises_before_any_event(make_workflow, make_config):
    bus = EventBus()
    executor = WorkflowExecutor(event_bus=bus, config=make_config())
    wf = make_workflow([("start", "start"), ("orphan", "agent")], [])

    with pytest.raises(CompilationError):
        async for _ in executor.run_streaming(wf):
            pass

    assert bus.get_history() == []


# ---------------------------------------------------------------------------
# Built-in steps in a run
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_set_state_and_transform(executor, make_workflow):
    wf = make_workflow(
        [
            ("start", "start"),
            ("greet", "set-state", {"stateKey": "greeting", "stateValue": "hi {{input.name}}"}),
            ("shout", "transform", {"transformScript": "return input.value.toUpperCase() + '!';"}),
        ],
        [("start", "greet"), ("greet", "shout")],
    )
    result = await executor.run(wf, {"name": "bob"})

    assert result.success
    assert result.state.variables["greeting"] == "hi bob"
    assert result.last_output == "HI BOB!"


# ---------------------------------------------------------------------------
# Streaming boundary
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_events_published_to_bus(registry, store, make_workflow, make_config):
    bus = EventBus()
    completed = []

    async def on_completed(event):
        completed.append(event.node_id)

    bus.subscribe(event_types=[RunEventType.NODE_COMPLETED], handler=on_completed)
    executor = WorkflowExecutor(
        registry=registry, checkpoint_store=store, event_bus=bus, config=make_config()
    )

    result = await executor.run(_linear(make_workflow))

    assert completed == ["start", "agent"]
    assert len(bus.get_history(limit=100)) == len(result.events)


@pytest.mark.asyncio
async def test_streaming_yields_incrementally(executor, make_workflow):
    seen = []
    async for event in executor.run_streaming(_linear(make_workflow), {"x": 1}):
        seen.append(event)
        if event.type == RunEventType.NODE_COMPLETED:
            assert "node_id" in event.data
            assert event.data["result"]["status"] == "completed"

    assert seen[0].type == RunEventType.RUN_STARTED
    assert seen[-1].type == RunEventType.RUN_COMPLETED
    assert seen[-1].data["final_state"]["variables"]["input"] == {"x": 1}


@pytest.mark.asyncio
async def test_consumer_disconnect_stops_run(executor, make_workflow, calls):
    wf = make_workflow(
        [("start", "start"), ("first", "agent"), ("second", "agent")],
        [("start", "first"), ("first", "second")],
    )
    stream = executor.run_streaming(wf, thread_id="t-close")

    async for event in stream:
        if event.type == RunEventType.NODE_COMPLETED and event.node_id == "first":
            break
    await stream.aclose()

    assert calls == ["first"]
    assert not executor.interrupts.is_claimed("t-close")


@pytest.mark.asyncio
async def test_thread_in_use_is_rejected(executor, make_workflow):
    stream = executor.run_streaming(_linear(make_workflow), thread_id="busy")
    first = await stream.__anext__()
    assert first.type == RunEventType.RUN_STARTED

    with pytest.raises(ResumeConflictError):
        await executor.run(_linear(make_workflow), thread_id="busy")

    await stream.aclose()
    result = await executor.run(_linear(make_workflow), thread_id="busy")
    assert result.success
