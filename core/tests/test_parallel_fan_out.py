"""
Tests for parallel fan-out: concurrent branches, the join, state merging
and cancellation.
"""

import asyncio

import pytest

from workflow_engine import RunEventType, StepOutput, WorkflowExecutor


def _diamond(make_workflow, left=("a", "agent"), right=("b", "agent")):
    return make_workflow(
        [("start", "start"), left, right, ("join", "agent"), ("end", "end")],
        [
            ("start", left[0]),
            ("start", right[0]),
            (left[0], "join"),
            (right[0], "join"),
            ("join", "end"),
        ],
    )


@pytest.mark.asyncio
async def test_branches_merge_before_join(executor, make_workflow, calls):
    result = await executor.run(_diamond(make_workflow), {"topic": "llamas"})

    assert result.success
    assert sorted(calls[:2]) == ["a", "b"]
    assert calls[2] == "join"
    assert calls.count("join") == 1

    variables = result.state.variables
    assert variables["a"]["input"] == {"topic": "llamas"}
    assert variables["b"]["input"] == {"topic": "llamas"}
    # lastOutput comes from the last declared branch
    assert variables["join"]["input"] == variables["b"]
    assert set(result.path) == {"start", "a", "b", "join"}
    assert result.steps_executed == 4


@pytest.mark.asyncio
async def test_branches_run_concurrently(registry, store, make_workflow, make_config):
    seen = {"left": asyncio.Event(), "right": asyncio.Event()}

    def waits_for(mine: str, other: str):
        async def step(ctx):
            seen[mine].set()
            await asyncio.wait_for(seen[other].wait(), timeout=2)
            return mine

        return step

    registry.register("left", waits_for("left", "right"))
    registry.register("right", waits_for("right", "left"))
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    wf = _diamond(make_workflow, left=("l", "left"), right=("r", "right"))
    result = await executor.run(wf)

    assert result.success
    assert result.state.variables["l"] == "left"
    assert result.state.variables["r"] == "right"


@pytest.mark.asyncio
async def test_events_from_all_branches_are_streamed(executor, make_workflow):
    completed = [
        e.node_id
        async for e in executor.run_streaming(_diamond(make_workflow))
        if e.type == RunEventType.NODE_COMPLETED
    ]

    assert completed[0] == "start"
    assert sorted(completed[1:3]) == ["a", "b"]
    assert completed[3] == "join"


# ---------------------------------------------------------------------------
# Merge conflicts
# ---------------------------------------------------------------------------


def _conflicting(make_workflow):
    return _diamond(
        make_workflow,
        left=("s1", "set-state", {"stateKey": "shared", "stateValue": "one"}),
        right=("s2", "set-state", {"stateKey": "shared", "stateValue": "two"}),
    )


@pytest.mark.asyncio
async def test_conflicting_writes_fail_by_default(executor, make_workflow, calls):
    result = await executor.run(_conflicting(make_workflow))

    assert result.status == "failed"
    assert result.error_code == "PARALLEL_MERGE_CONFLICT"
    assert result.failed_node_id == "start"
    assert "shared" in result.error
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(("strategy", "expected"), [("last_wins", "two"), ("first_wins", "one")])
async def test_conflict_strategies(registry, store, make_workflow, make_config, strategy, expected):
    executor = WorkflowExecutor(
        registry=registry,
        checkpoint_store=store,
        config=make_config(parallel_conflict_strategy=strategy),
    )

    result = await executor.run(_conflicting(make_workflow))

    assert result.success
    assert result.state.variables["shared"] == expected
    # node outputs are never conflicts
    assert result.state.variables["s1"]["value"] == "one"
    assert result.state.variables["s2"]["value"] == "two"


@pytest.mark.asyncio
async def test_distinct_keys_do_not_conflict(executor, make_workflow):
    wf = _diamond(
        make_workflow,
        left=("s1", "set-state", {"stateKey": "left", "stateValue": "one"}),
        right=("s2", "set-state", {"stateKey": "right", "stateValue": "two"}),
    )
    result = await executor.run(wf)

    assert result.success
    assert result.state.variables["left"] == "one"
    assert result.state.variables["right"] == "two"


@pytest.mark.asyncio
async def test_history_and_accumulator_merge_in_declaration_order(
    registry, store, make_workflow, make_config
):
    async def talk(ctx):
        if ctx.node.id == "a":
            # finish after the other branch
            await asyncio.sleep(0.01)
        return StepOutput(
            value=ctx.node.id,
            history=[{"role": "assistant", "content": ctx.node.id}],
            accumulate=ctx.node.id,
        )

    registry.register("talk", talk)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    wf = _diamond(make_workflow, left=("a", "talk"), right=("b", "talk"))
    result = await executor.run(wf)

    assert [m.content for m in result.state.history] == ["a", "b"]
    assert result.state.loop_accumulator == ["a", "b"]


# ---------------------------------------------------------------------------
# Failure and cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failing_branch_fails_run(registry, store, make_workflow, make_config, calls):
    async def broken(ctx):
        raise RuntimeError("scraper down")

    registry.register("broken", broken)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    result = await executor.run(_diamond(make_workflow, right=("bad", "broken")))

    assert result.status == "failed"
    assert result.failed_node_id == "bad"
    assert "scraper down" in result.error
    assert "join" not in calls
    assert result.events[-1].type == RunEventType.NODE_FAILED


@pytest.mark.asyncio
async def test_disconnect_cancels_running_branches(registry, store, make_workflow, make_config, calls):
    slow_state: list[str] = []

    async def slow(ctx):
        slow_state.append("started")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            slow_state.append("cancelled")
            raise
        return "late"

    registry.register("slow", slow)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())

    stream = executor.run_streaming(
        _diamond(make_workflow, right=("s", "slow")), thread_id="t-fan"
    )
    async for event in stream:
        if event.type == RunEventType.NODE_COMPLETED and event.node_id == "a":
            break
    await stream.aclose()

    assert slow_state == ["started", "cancelled"]
    assert "join" not in calls
    assert not executor.interrupts.is_claimed("t-fan")


@pytest.mark.asyncio
async def test_branches_without_join_run_to_their_ends(executor, make_workflow, calls):
    wf = make_workflow(
        [
            ("start", "start"),
            ("a", "agent"),
            ("b", "agent"),
            ("a2", "agent"),
            ("end_a", "end"),
            ("end_b", "end"),
        ],
        [("start", "a"), ("start", "b"), ("a", "a2"), ("a2", "end_a"), ("b", "end_b")],
    )

    result = await executor.run(wf)

    assert result.success
    assert sorted(calls) == ["a", "a2", "b"]
    assert result.state.variables["a2"]["input"] == result.state.variables["a"]


@pytest.mark.asyncio
async def test_branch_target_reached_by_sibling_runs_once(executor, make_workflow, calls):
    wf = make_workflow(
        [("start", "start"), ("f", "agent"), ("b", "agent"), ("c", "agent"), ("end", "end")],
        [("start", "f"), ("f", "b"), ("f", "c"), ("b", "c"), ("c", "end")],
    )

    result = await executor.run(wf)

    assert result.success
    assert calls == ["f", "b", "c"]
    assert result.path.count("c") == 1
    assert result.state.variables["c"]["input"] == result.state.variables["b"]


@pytest.mark.asyncio
async def test_fan_out_inside_loop_keeps_latest_node_results(
    registry, store, make_workflow, make_config
):
    def tick(ctx):
        return f"{ctx.node.id}-{ctx.variables['loop__iterationCount']}"

    registry.register("tick", tick)
    executor = WorkflowExecutor(registry=registry, checkpoint_store=store, config=make_config())
    wf = make_workflow(
        [
            ("start", "start"),
            ("loop", "while", {"whileCondition": "true", "maxIterations": 2}),
            ("f", "agent"),
            ("a", "tick"),
            ("b", "tick"),
            ("join", "agent"),
            ("end", "end"),
        ],
        [
            ("start", "loop"),
            ("loop", "f", "continue"),
            ("loop", "end", "break"),
            ("f", "a"),
            ("f", "b"),
            ("a", "join"),
            ("b", "join"),
            ("join", "loop"),
        ],
    )

    result = await executor.run(wf)

    assert result.success
    state = result.state
    assert state.variables["a"] == "a-2"
    assert state.variables["b"] == "b-2"
    assert state.node_results["a"].output == "a-2"
    assert state.node_results["b"].output == "b-2"
