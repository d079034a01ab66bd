"""
Interrupt/Resume Manager - owns checkpoints between suspension and resume.

Per run: running -> suspended -> running -> ... -> completed | failed

The manager never touches a live RunState. It receives the already-merged
state to persist on suspension, and hands back the stored snapshot on
resume. Resume order is: claim the thread, load, validate the resume
value, clear, then the executor continues. A rejected resume value keeps
the checkpoint so the caller can retry with a valid one.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from workflow_engine.errors import (
    ResumeConflictError,
    ResumeRejectedError,
    SuspendWithoutResumeError,
)
from workflow_engine.graph.state import PendingAuth, RunState
from workflow_engine.graph.step import Suspend
from workflow_engine.graph.workflow import Workflow
from workflow_engine.schemas.checkpoint import Checkpoint
from workflow_engine.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

AUTHORIZED_STATUSES = frozenset({"completed", "authorized", "approved"})


class InterruptManager:
    """Persists suspended runs and serializes access to them by thread id."""

    def __init__(self, store: CheckpointStore):
        self.store = store
        self._claimed: set[str] = set()

    # === THREAD CLAIMS ===

    @asynccontextmanager
    async def claim(self, thread_id: str) -> AsyncIterator[None]:
        """
        Hold exclusive use of a thread id for one run or resume.

        Raises:
            ResumeConflictError: The thread is already claimed
        """
        if thread_id in self._claimed:
            raise ResumeConflictError(
                f"Thread '{thread_id}' is already being executed or resumed"
            )
        self._claimed.add(thread_id)
        try:
            yield
        finally:
            self._claimed.discard(thread_id)

    def is_claimed(self, thread_id: str) -> bool:
        return thread_id in self._claimed

    # === SUSPENSION ===

    @staticmethod
    def create_pending_auth(
        node_id: str, suspend: Suspend, run_id: str, thread_id: str
    ) -> PendingAuth:
        return PendingAuth(
            auth_id=f"{suspend.kind}_{uuid.uuid4().hex[:12]}",
            node_id=node_id,
            kind=suspend.kind,
            message=suspend.reason,
            tool_name=suspend.tool_name,
            auth_url=suspend.external_url,
            resume_hint=suspend.resume_hint,
            thread_id=thread_id,
            run_id=run_id,
        )

    async def save(
        self,
        *,
        thread_id: str,
        run_id: str,
        workflow: Workflow,
        state: RunState,
        resume_node_id: str,
        steps_executed: int,
        execution_path: list[str],
    ) -> Checkpoint:
        checkpoint = Checkpoint.create(
            thread_id=thread_id,
            run_id=run_id,
            workflow=workflow,
            state=state,
            resume_node_id=resume_node_id,
            steps_executed=steps_executed,
            execution_path=execution_path,
        )
        await self.store.save(thread_id, checkpoint)
        logger.info(f"⏸ Checkpoint saved for thread {thread_id} at node {resume_node_id}")
        return checkpoint

    # === RESUME ===

    def validate_resume_value(self, pending: PendingAuth | None, value: Any) -> None:
        """
        Reject resume values that report a failed authorization.

        Raises:
            ResumeRejectedError: Authorization status is present but not successful
        """
        if pending is None or pending.kind != "authorization":
            return
        if isinstance(value, dict) and "status" in value:
            status = str(value["status"]).lower()
            if status not in AUTHORIZED_STATUSES:
                raise ResumeRejectedError(
                    f"Authorization for {pending.tool_name or pending.node_id} "
                    f"not completed (status: {value['status']})",
                    node_id=pending.node_id,
                )

    async def take(self, thread_id: str, resume_value: Any) -> Checkpoint:
        """
        Load, validate and clear the checkpoint for a thread.

        Must be called while holding ``claim(thread_id)``.

        Raises:
            SuspendWithoutResumeError: No checkpoint for the thread
            ResumeRejectedError: The resume value does not satisfy the pending authorization
        """
        checkpoint = await self.store.load(thread_id)
        if checkpoint is None:
            raise SuspendWithoutResumeError(
                f"No suspended run for thread '{thread_id}' (unknown or already resumed)"
            )
        self.validate_resume_value(checkpoint.state.pending_auth, resume_value)
        await self.store.clear(thread_id)
        logger.info(f"📥 Resuming thread {thread_id} at node {checkpoint.resume_node_id}")
        return checkpoint
