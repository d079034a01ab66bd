"""Tests for the conditional and bounded-loop resolvers."""

import pytest

from workflow_engine.graph.routing import (
    ConditionalResolver,
    LoopResolver,
    LoopState,
    build_eval_context,
    iteration_key,
    parse_max_iterations,
)
from workflow_engine.graph.state import RunState
from workflow_engine.graph.workflow import WorkflowNode


def _node(kind: str, **data) -> WorkflowNode:
    return WorkflowNode.model_validate({"id": "ctl", "type": kind, "data": data})


# ---------------------------------------------------------------------------
# Conditional
# ---------------------------------------------------------------------------


class TestConditionalResolver:
    def test_true_condition_takes_if(self):
        state = RunState(variables={"input": {"n": 7}})
        decision = ConditionalResolver().resolve(_node("if-else", condition="input.n > 5"), state)

        assert decision.branch == "if"
        assert decision.output() == {
            "condition": True,
            "branch": "if",
            "evaluatedCondition": "input.n > 5",
        }

    def test_false_condition_takes_else(self):
        state = RunState(variables={"input": {"n": 2}})
        decision = ConditionalResolver().resolve(_node("if-else", condition="input.n > 5"), state)

        assert decision.branch == "else"
        assert decision.warnings == []

    def test_variables_are_bare_names(self):
        state = RunState(variables={"status": "done", "lastOutput": {"score": 9}})
        resolver = ConditionalResolver()

        assert resolver.resolve(_node("if-else", condition="status === 'done'"), state).branch == "if"
        assert resolver.resolve(_node("if-else", condition="lastOutput.score >= 9"), state).branch == "if"

    def test_equality_fallback_is_case_insensitive(self):
        state = RunState(variables={"status": "Approved"})
        decision = ConditionalResolver().resolve(
            _node("if-else", condition="status == approved"), state
        )

        assert decision.branch == "if"
        assert decision.warnings
        assert "equality fallback" in decision.output()["error"]

    def test_inequality_is_not_rescued_by_fallback(self):
        state = RunState(variables={"status": "approved"})
        decision = ConditionalResolver().resolve(
            _node("if-else", condition="status !== approved"), state
        )

        assert decision.branch == "else"
        assert "else branch" in decision.warnings[0]

    def test_evaluation_error_takes_else(self):
        state = RunState(variables={"input": {}})
        decision = ConditionalResolver().resolve(_node("if-else", condition="input.a.b > 1"), state)

        assert decision.branch == "else"
        assert decision.condition is False
        assert len(decision.warnings) == 1

    def test_missing_condition_defaults_to_true(self):
        decision = ConditionalResolver().resolve(_node("if-else"), RunState())
        assert decision.branch == "if"


# ---------------------------------------------------------------------------
# Bounded loop
# ---------------------------------------------------------------------------


class TestParseMaxIterations:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("3", 3), (3, 3), (2.7, 2), ("abc", 10), (None, 10), (0, 10), (-4, 10), ("500", 100)],
    )
    def test_parse(self, raw, expected):
        assert parse_max_iterations(raw) == expected

    def test_ceiling_cannot_exceed_absolute_limit(self):
        assert parse_max_iterations(1000, ceiling=5000) == 100


class TestLoopResolver:
    def test_first_visit_continues(self):
        node = _node("while", whileCondition="true", maxIterations=3)
        decision = LoopResolver().resolve(node, RunState())

        assert decision.state == LoopState.CONTINUING
        assert decision.iteration == 1
        assert decision.counter == 1
        assert decision.output()[iteration_key("ctl")] == 1

    def test_counter_at_max_breaks(self):
        node = _node("while", whileCondition="true", maxIterations=3)
        state = RunState(variables={iteration_key("ctl"): 3})
        decision = LoopResolver().resolve(node, state)

        assert not decision.should_continue
        assert decision.stopped_reason == "max_iterations"
        assert decision.counter == 3
        assert "max iterations" in decision.warnings[0]

    def test_false_condition_breaks(self):
        node = _node("while", whileCondition="iteration <= 2", maxIterations=5)
        state = RunState(variables={iteration_key("ctl"): 2})
        decision = LoopResolver().resolve(node, state)

        assert decision.state == LoopState.BREAKING
        assert decision.stopped_reason == "condition_false"
        assert decision.counter == 2
        assert decision.output()["branch"] == "break"

    def test_condition_error_breaks(self):
        node = _node("while", whileCondition="input.a.b", maxIterations=5)
        decision = LoopResolver().resolve(node, RunState(variables={"input": {}}))

        assert decision.stopped_reason == "condition_error"
        assert decision.warnings

    def test_condition_key_is_accepted(self):
        node = _node("while", condition="lastOutput.more", maxIterations=5)
        state = RunState(variables={"lastOutput": {"more": True}})

        assert LoopResolver().resolve(node, state).should_continue

    def test_missing_condition_never_loops(self):
        decision = LoopResolver().resolve(_node("while"), RunState())
        assert decision.stopped_reason == "condition_false"

    def test_configured_default_and_ceiling(self):
        resolver = LoopResolver(default_max_iterations=2, absolute_max_iterations=4)
        state = RunState(variables={iteration_key("ctl"): 2})

        no_max = resolver.resolve(_node("while", whileCondition="true"), state)
        assert no_max.stopped_reason == "max_iterations"

        high_max = resolver.resolve(_node("while", whileCondition="true", maxIterations=50), state)
        assert high_max.max_iterations == 4
        assert high_max.should_continue

    def test_resolver_never_touches_accumulator(self):
        state = RunState(loop_accumulator=["a"])
        LoopResolver().resolve(_node("while", whileCondition="true"), state)
        assert state.loop_accumulator == ["a"]


def test_eval_context_exposes_state_views():
    state = RunState(variables={"input": 1, "my-node": 2, "lastOutput": 3}, loop_accumulator=[4])
    context = build_eval_context(state, iteration=2)

    assert context["input"] == 1
    assert context["lastOutput"] == 3
    assert context["iteration"] == 2
    assert context["state"]["loopAccumulator"] == [4]
    assert "my-node" not in context
    assert context["variables"]["my-node"] == 2
