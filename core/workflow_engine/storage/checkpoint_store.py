"""
Checkpoint Store - where suspended runs wait for their resume value.

At most one checkpoint is valid per thread id. Saving replaces any previous
checkpoint for the thread; clearing removes it so a second resume of the
same thread fails instead of replaying.

Two implementations:
- InMemoryCheckpointStore for tests and single-process hosts
- FileCheckpointStore for durable storage, one JSON file per thread
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote, unquote

from workflow_engine.schemas.checkpoint import Checkpoint
from workflow_engine.utils.io import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStore(Protocol):
    """Protocol for checkpoint storage."""

    async def save(self, thread_id: str, checkpoint: Checkpoint) -> None: ...

    async def load(self, thread_id: str) -> Checkpoint | None: ...

    async def clear(self, thread_id: str) -> bool: ...


class InMemoryCheckpointStore:
    """Checkpoints kept in a dict. Lost when the process exits."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        # stored serialized so callers can't mutate a saved snapshot
        async with self._lock:
            self._checkpoints[thread_id] = checkpoint.model_dump_json()
        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id} for thread {thread_id}")

    async def load(self, thread_id: str) -> Checkpoint | None:
        async with self._lock:
            raw = self._checkpoints.get(thread_id)
        if raw is None:
            return None
        return Checkpoint.model_validate_json(raw)

    async def clear(self, thread_id: str) -> bool:
        async with self._lock:
            return self._checkpoints.pop(thread_id, None) is not None

    def thread_ids(self) -> list[str]:
        return list(self._checkpoints)


class FileCheckpointStore:
    """
    Manages checkpoint storage with atomic writes.

    Directory structure:
        {base_path}/
            {thread_id}.json    # Current checkpoint for the thread (percent-encoded)
    """

    def __init__(self, base_path: Path):
        """
        Initialize checkpoint store.

        Args:
            base_path: Directory holding checkpoint files (e.g., ~/.workflow_engine/checkpoints/)
        """
        self.base_path = Path(base_path).expanduser()
        self._lock = asyncio.Lock()

    def _path(self, thread_id: str) -> Path:
        return self.base_path / f"{quote(thread_id, safe='')}.json"

    async def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """
        Atomically save the checkpoint for a thread.

        Uses temp file + rename for crash safety.

        Raises:
            OSError: If file write fails
        """

        def _write() -> None:
            self.base_path.mkdir(parents=True, exist_ok=True)
            with atomic_write(self._path(thread_id)) as f:
                f.write(checkpoint.model_dump_json(indent=2))

        async with self._lock:
            await asyncio.to_thread(_write)
        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id} for thread {thread_id}")

    async def load(self, thread_id: str) -> Checkpoint | None:
        """
        Load the checkpoint for a thread.

        Returns:
            Checkpoint object, or None if not found

        Raises:
            pydantic.ValidationError: If the file exists but is corrupt
        """

        def _read() -> Checkpoint | None:
            path = self._path(thread_id)
            if not path.exists():
                return None
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def clear(self, thread_id: str) -> bool:
        """
        Delete the checkpoint for a thread.

        Returns:
            True if deleted, False if not found
        """

        def _delete() -> bool:
            path = self._path(thread_id)
            if not path.exists():
                return False
            path.unlink()
            return True

        async with self._lock:
            deleted = await asyncio.to_thread(_delete)
        if deleted:
            logger.info(f"Cleared checkpoint for thread {thread_id}")
        return deleted

    async def list_threads(self) -> list[str]:
        """Thread ids with a stored checkpoint, decoded from the file names."""

        def _list() -> list[str]:
            if not self.base_path.exists():
                return []
            return sorted(unquote(p.stem) for p in self.base_path.glob("*.json"))

        return await asyncio.to_thread(_list)
