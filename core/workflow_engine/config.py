"""Shared engine configuration utilities.

Centralises reading of ~/.workflow_engine/configuration.json so the
executor, the CLI and host applications share one set of defaults.
Environment variables override the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ENGINE_CONFIG_FILE = Path.home() / ".workflow_engine" / "configuration.json"

DEFAULT_MAX_STEPS = 100
DEFAULT_LOOP_MAX_ITERATIONS = 10
ABSOLUTE_LOOP_MAX_ITERATIONS = 100

PARALLEL_CONFLICT_STRATEGIES = ("error", "last_wins", "first_wins")


def get_engine_config() -> dict[str, Any]:
    """Load the ``engine`` section of ~/.workflow_engine/configuration.json."""
    if not ENGINE_CONFIG_FILE.exists():
        return {}
    try:
        with open(ENGINE_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    engine = data.get("engine", {}) if isinstance(data, dict) else {}
    return engine if isinstance(engine, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _int_env(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def get_max_steps() -> int:
    """Return the node-visit ceiling for one run."""
    env = _int_env("WORKFLOW_ENGINE_MAX_STEPS")
    if env is not None and env > 0:
        return env
    return int(get_engine_config().get("max_steps", DEFAULT_MAX_STEPS))


def get_step_timeout() -> float | None:
    """Return the per-step timeout in seconds, or None for no timeout."""
    raw = os.environ.get("WORKFLOW_ENGINE_STEP_TIMEOUT")
    if raw:
        try:
            return float(raw)
        except ValueError:
            return None
    value = get_engine_config().get("step_timeout_seconds")
    return float(value) if value else None


def get_checkpoint_dir() -> Path | None:
    """Return the directory for file checkpoints, if configured."""
    raw = os.environ.get("WORKFLOW_ENGINE_CHECKPOINT_DIR") or get_engine_config().get(
        "checkpoint_dir"
    )
    return Path(raw).expanduser() if raw else None


def get_parallel_conflict_strategy() -> str:
    strategy = get_engine_config().get("parallel_conflict_strategy", "error")
    return strategy if strategy in PARALLEL_CONFLICT_STRATEGIES else "error"


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.workflow_engine/configuration.json."""

    max_steps: int = field(default_factory=get_max_steps)
    loop_default_max_iterations: int = DEFAULT_LOOP_MAX_ITERATIONS
    loop_absolute_max_iterations: int = ABSOLUTE_LOOP_MAX_ITERATIONS
    step_timeout_seconds: float | None = field(default_factory=get_step_timeout)
    # "error" rejects two branches writing the same key, "last_wins" and
    # "first_wins" resolve in edge-declaration order
    parallel_conflict_strategy: str = field(default_factory=get_parallel_conflict_strategy)
    checkpoint_dir: Path | None = field(default_factory=get_checkpoint_dir)

    def __post_init__(self) -> None:
        if self.parallel_conflict_strategy not in PARALLEL_CONFLICT_STRATEGIES:
            raise ValueError(
                f"parallel_conflict_strategy must be one of {PARALLEL_CONFLICT_STRATEGIES}, "
                f"got {self.parallel_conflict_strategy!r}"
            )
        # the configured ceiling can lower the hard cap but never raise it
        self.loop_absolute_max_iterations = min(
            self.loop_absolute_max_iterations, ABSOLUTE_LOOP_MAX_ITERATIONS
        )
