"""
Control-flow resolvers - decide where a conditional or loop node goes next.

Both resolvers are pure with respect to run state: they read a snapshot
and return a decision plus the node output to record. Evaluation problems
never abort a run; they fall back to a deterministic branch and are
reported in ``warnings``.
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from workflow_engine.config import ABSOLUTE_LOOP_MAX_ITERATIONS, DEFAULT_LOOP_MAX_ITERATIONS
from workflow_engine.errors import ConditionEvaluationError, LoopSafetyExceeded
from workflow_engine.graph.safe_eval import evaluate_condition, safe_eval
from workflow_engine.graph.state import RunState
from workflow_engine.graph.workflow import WorkflowNode

logger = logging.getLogger(__name__)


def iteration_key(node_id: str) -> str:
    """Variable key holding a loop node's iteration counter."""
    return f"{node_id}__iterationCount"


def build_eval_context(state: RunState, iteration: int | None = None) -> dict[str, Any]:
    """Names visible to a condition expression.

    Every variable is exposed as a bare name, then ``input``, ``lastOutput``,
    ``state`` and ``variables`` are bound on top.
    """
    variables = state.variables
    context: dict[str, Any] = {k: v for k, v in variables.items() if k.isidentifier()}
    context.update(
        {
            "input": variables.get("input"),
            "lastOutput": variables.get("lastOutput"),
            "variables": variables,
            "state": {"variables": variables, "loopAccumulator": state.loop_accumulator},
            "loopAccumulator": state.loop_accumulator,
        }
    )
    if iteration is not None:
        context["iteration"] = iteration
    return context


def _equality_fallback(expression: str, context: dict[str, Any]) -> bool | None:
    """
    Best-effort ``left == right`` check for conditions that failed to evaluate.

    The right-hand side is taken as literal text with quotes removed and
    compared strictly, then case-insensitively. Returns None when the
    expression is not a simple equality or its left side cannot be read.
    """
    if "==" not in expression:
        return None
    parts = expression.replace("===", "==").split("==")
    if len(parts) != 2:
        return None
    left_expr = parts[0].strip()
    if left_expr.endswith("!"):
        # "!==" is an inequality
        return None
    right = parts[1].strip().replace('"', "").replace("'", "")
    try:
        left_value = safe_eval(left_expr, context)
    except ConditionEvaluationError:
        return None
    strict = left_value == right
    loose = str(left_value).strip().lower() == right.strip().lower()
    logger.debug(
        f"🔍 Condition fallback: {left_expr!r} -> {left_value!r} vs {right!r} "
        f"(strict={strict}, loose={loose})"
    )
    return strict or loose


# ---------------------------------------------------------------------------
# Conditional
# ---------------------------------------------------------------------------


@dataclass
class ConditionalDecision:
    branch: str  # "if" | "else"
    condition: bool
    expression: str
    warnings: list[str] = field(default_factory=list)

    def output(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "condition": self.condition,
            "branch": self.branch,
            "evaluatedCondition": self.expression,
        }
        if self.warnings:
            out["error"] = self.warnings[0]
        return out


class ConditionalResolver:
    """Evaluates an if-else node's condition."""

    def resolve(self, node: WorkflowNode, state: RunState) -> ConditionalDecision:
        expression = str(node.config.get("condition") or "true")
        context = build_eval_context(state)
        warnings: list[str] = []

        try:
            result = evaluate_condition(expression, context)
        except ConditionEvaluationError as e:
            fallback = _equality_fallback(expression, context)
            result = bool(fallback)
            how = "equality fallback" if fallback is not None else "else branch"
            msg = f"Condition '{expression}' failed to evaluate ({e.message}); using {how}"
            logger.warning(f"⚠ {node.id}: {msg}")
            warnings.append(msg)

        branch = "if" if result else "else"
        logger.info(f"   ⑃ {node.id}: condition {expression!r} -> {branch}")
        return ConditionalDecision(
            branch=branch, condition=result, expression=expression, warnings=warnings
        )


# ---------------------------------------------------------------------------
# Bounded loop
# ---------------------------------------------------------------------------


class LoopState(StrEnum):
    EVALUATING = "evaluating"
    CONTINUING = "continuing"
    BREAKING = "breaking"


@dataclass
class LoopDecision:
    state: LoopState
    node_id: str
    iteration: int
    max_iterations: int
    condition: bool
    expression: str
    stopped_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def should_continue(self) -> bool:
        return self.state == LoopState.CONTINUING

    @property
    def counter(self) -> int:
        """Counter value to store after this visit."""
        return self.iteration if self.should_continue else self.iteration - 1

    def output(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "condition": self.condition,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "branch": "continue" if self.should_continue else "break",
            iteration_key(self.node_id): self.counter,
        }
        if self.stopped_reason:
            out["stoppedReason"] = self.stopped_reason
        return out


def parse_max_iterations(
    value: Any,
    default: int = DEFAULT_LOOP_MAX_ITERATIONS,
    ceiling: int = ABSOLUTE_LOOP_MAX_ITERATIONS,
) -> int:
    """Configured max iterations, falling back to ``default`` and clamped to ``ceiling``."""
    ceiling = min(ceiling, ABSOLUTE_LOOP_MAX_ITERATIONS)
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        parsed = default
    if parsed <= 0:
        parsed = default
    return min(parsed, ceiling)


class LoopResolver:
    """
    Iteration control for a while node.

    On each visit:
        counter >= max       -> breaking (stoppedReason="max_iterations")
        condition true       -> continuing, counter + 1
        condition false      -> breaking (stoppedReason="condition_false")
        condition error      -> breaking (stoppedReason="condition_error")

    The counter lives in ``variables["<id>__iterationCount"]`` and is left at
    its final value when the loop breaks. The accumulator is never touched.
    """

    def __init__(
        self,
        default_max_iterations: int = DEFAULT_LOOP_MAX_ITERATIONS,
        absolute_max_iterations: int = ABSOLUTE_LOOP_MAX_ITERATIONS,
    ):
        self.default_max_iterations = default_max_iterations
        self.absolute_max_iterations = min(absolute_max_iterations, ABSOLUTE_LOOP_MAX_ITERATIONS)

    def resolve(self, node: WorkflowNode, state: RunState) -> LoopDecision:
        config = node.config
        expression = str(config.get("whileCondition") or config.get("condition") or "false")
        max_iterations = parse_max_iterations(
            config.get("maxIterations"),
            default=self.default_max_iterations,
            ceiling=self.absolute_max_iterations,
        )

        raw_counter = state.variables.get(iteration_key(node.id), 0)
        counter = raw_counter if isinstance(raw_counter, int) and raw_counter > 0 else 0
        iteration = counter + 1

        if counter >= max_iterations:
            safety = LoopSafetyExceeded(
                f"Loop reached max iterations ({max_iterations})", node_id=node.id
            )
            logger.warning(f"⚠ {node.id}: {safety.message}, breaking")
            return LoopDecision(
                state=LoopState.BREAKING,
                node_id=node.id,
                iteration=iteration,
                max_iterations=max_iterations,
                condition=False,
                expression=expression,
                stopped_reason="max_iterations",
                warnings=[safety.message],
            )

        context = build_eval_context(state, iteration=iteration)
        try:
            result = evaluate_condition(expression, context)
        except ConditionEvaluationError as e:
            msg = f"Loop condition '{expression}' failed to evaluate ({e.message}); breaking"
            logger.warning(f"⚠ {node.id}: {msg}")
            return LoopDecision(
                state=LoopState.BREAKING,
                node_id=node.id,
                iteration=iteration,
                max_iterations=max_iterations,
                condition=False,
                expression=expression,
                stopped_reason="condition_error",
                warnings=[msg],
            )

        if result:
            logger.info(f"   ↻ {node.id}: iteration {iteration}/{max_iterations}")
            return LoopDecision(
                state=LoopState.CONTINUING,
                node_id=node.id,
                iteration=iteration,
                max_iterations=max_iterations,
                condition=True,
                expression=expression,
            )

        logger.info(f"   ↳ {node.id}: condition false after {counter} iteration(s)")
        return LoopDecision(
            state=LoopState.BREAKING,
            node_id=node.id,
            iteration=iteration,
            max_iterations=max_iterations,
            condition=False,
            expression=expression,
            stopped_reason="condition_false",
        )
