"""Shared fixtures for workflow engine tests."""

from typing import Any

import pytest

from workflow_engine import (
    EngineConfig,
    InMemoryCheckpointStore,
    StepRegistry,
    Workflow,
    WorkflowExecutor,
)


def build_workflow(
    nodes: list[tuple],
    edges: list[tuple],
    workflow_id: str = "wf",
) -> Workflow:
    """Build a workflow from ``(id, kind[, data])`` and ``(source, target[, handle])`` tuples."""
    return Workflow.model_validate(
        {
            "id": workflow_id,
            "name": workflow_id,
            "nodes": [
                {"id": n[0], "type": n[1], "data": n[2] if len(n) > 2 else {}} for n in nodes
            ],
            "edges": [
                {"source": e[0], "target": e[1], "sourceHandle": e[2] if len(e) > 2 else None}
                for e in edges
            ],
        }
    )


def engine_config(**overrides: Any) -> EngineConfig:
    values: dict[str, Any] = {
        "max_steps": 100,
        "step_timeout_seconds": None,
        "parallel_conflict_strategy": "error",
        "checkpoint_dir": None,
    }
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def make_workflow():
    return build_workflow


@pytest.fixture
def make_config():
    return engine_config


@pytest.fixture
def calls() -> list[str]:
    """Node ids of agent steps, in execution order."""
    return []


@pytest.fixture
def registry(calls: list[str]) -> StepRegistry:
    """Built-in steps plus an ``agent`` step that echoes its input."""

    async def agent_step(ctx):
        calls.append(ctx.node.id)
        return {"node": ctx.node.id, "input": ctx.input}

    reg = StepRegistry.with_builtins()
    reg.register("agent", agent_step)
    return reg


@pytest.fixture
def store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def executor(registry: StepRegistry, store: InMemoryCheckpointStore) -> WorkflowExecutor:
    return WorkflowExecutor(registry=registry, checkpoint_store=store, config=engine_config())
