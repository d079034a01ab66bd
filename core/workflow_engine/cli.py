"""
Command-line interface for the workflow engine.

Usage:
    workflow-engine run workflow.json --input '{"topic": "llamas"}'
    workflow-engine resume <thread_id> --value '{"approved": true}'
    workflow-engine validate workflow.json

Events are printed to stdout as JSON lines. Exit codes: 0 completed,
2 paused (resume with the printed thread id), 1 failed.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from workflow_engine.config import EngineConfig
from workflow_engine.errors import WorkflowEngineError
from workflow_engine.graph.compiler import compile_workflow
from workflow_engine.graph.executor import WorkflowExecutor
from workflow_engine.graph.workflow import Workflow
from workflow_engine.observability import configure_logging
from workflow_engine.runtime.event_bus import RunEvent, RunEventType
from workflow_engine.storage.checkpoint_store import FileCheckpointStore

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_PAUSED = 2

DEFAULT_CHECKPOINT_DIR = Path(".workflow_checkpoints")


def _load_workflow(path: str) -> Workflow:
    return Workflow.model_validate_json(Path(path).read_text(encoding="utf-8"))


def _parse_json_arg(value: str | None) -> Any:
    """JSON if it parses, else the raw string."""
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _build_executor(args: argparse.Namespace) -> WorkflowExecutor:
    config = EngineConfig()
    checkpoint_dir = Path(args.checkpoint_dir) if args.checkpoint_dir else None
    checkpoint_dir = checkpoint_dir or config.checkpoint_dir or DEFAULT_CHECKPOINT_DIR
    return WorkflowExecutor(
        checkpoint_store=FileCheckpointStore(Path(checkpoint_dir)),
        config=config,
    )


async def _print_events(stream) -> int:
    exit_code = EXIT_COMPLETED
    async for event in stream:
        print(json.dumps(event.to_dict(), default=str), flush=True)
        exit_code = _exit_code_for(event, exit_code)
    return exit_code


def _exit_code_for(event: RunEvent, current: int) -> int:
    if event.type == RunEventType.NODE_FAILED:
        return EXIT_FAILED
    if event.type == RunEventType.RUN_PAUSED:
        return EXIT_PAUSED
    if event.type == RunEventType.RUN_COMPLETED:
        return EXIT_COMPLETED
    return current


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow file."""
    try:
        workflow = _load_workflow(args.workflow)
    except (OSError, ValueError) as e:
        print(f"Error loading workflow: {e}", file=sys.stderr)
        return EXIT_FAILED

    executor = _build_executor(args)
    stream = executor.run_streaming(
        workflow, _parse_json_arg(args.input), thread_id=args.thread_id
    )
    try:
        return asyncio.run(_print_events(stream))
    except WorkflowEngineError as e:
        print(json.dumps({"error": e.to_dict()}), file=sys.stderr)
        return EXIT_FAILED


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume a paused thread."""
    executor = _build_executor(args)
    stream = executor.resume_streaming(args.thread_id, _parse_json_arg(args.value))
    try:
        return asyncio.run(_print_events(stream))
    except WorkflowEngineError as e:
        print(json.dumps({"error": e.to_dict()}), file=sys.stderr)
        return EXIT_FAILED


def cmd_validate(args: argparse.Namespace) -> int:
    """Compile a workflow file and report warnings."""
    try:
        workflow = _load_workflow(args.workflow)
    except (OSError, ValueError) as e:
        print(f"Error loading workflow: {e}", file=sys.stderr)
        return EXIT_FAILED

    try:
        graph = compile_workflow(workflow)
    except WorkflowEngineError as e:
        print(json.dumps({"valid": False, "error": e.to_dict()}, indent=2))
        return EXIT_FAILED

    report = {
        "valid": True,
        "entry": graph.entry_id,
        "nodes": len(graph.nodes),
        "edges": len(graph.edges),
        "warnings": graph.warnings,
        "issues": [
            {"node_id": i.node_id, "field": i.field, "message": i.message} for i in graph.issues
        ],
    }
    print(json.dumps(report, indent=2))
    return EXIT_COMPLETED


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a workflow")
    run_parser.add_argument("workflow", help="Path to workflow JSON file")
    run_parser.add_argument("--input", "-i", help="Run input (JSON or plain string)")
    run_parser.add_argument("--thread-id", help="Thread id to run under (default: generated)")
    run_parser.add_argument("--checkpoint-dir", help="Directory for checkpoints")
    run_parser.set_defaults(func=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume a paused thread")
    resume_parser.add_argument("thread_id", help="Thread id printed by the paused run")
    resume_parser.add_argument("--value", "-v", help="Resume value (JSON or plain string)")
    resume_parser.add_argument("--checkpoint-dir", help="Directory for checkpoints")
    resume_parser.set_defaults(func=cmd_resume)

    validate_parser = subparsers.add_parser("validate", help="Compile a workflow and report issues")
    validate_parser.add_argument("workflow", help="Path to workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Compile and run node/edge workflows",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
