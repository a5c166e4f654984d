"""
Checkpoint store: snapshots of workflow state keyed by session, for resume.

Writes happen off the request path: schedule_save() starts a background task
and returns a CheckpointTask whose status can be observed. A failed write is
logged and recorded on the task; it never reaches the request.

Backends: SQLite (stdlib sqlite3 run in a worker thread) and in-memory.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from playbook.agent.state import WorkflowState, restore_state, snapshot_state
from playbook.core import checkpoint_db
from playbook.core.config import CHECKPOINT_DB_PATH, ENABLE_CHECKPOINTING
from playbook.core.errors import CheckpointError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointRecord:
    session_id: str
    sequence: int
    state_json: str
    created_at: datetime

    def state(self) -> WorkflowState:
        try:
            return restore_state(self.state_json)
        except ValidationError as e:
            raise CheckpointError(f"Corrupt checkpoint {self.session_id}#{self.sequence}: {e}") from e


def _record(row: tuple[str, int, str, str]) -> CheckpointRecord:
    session_id, sequence, state_json, created_at = row
    return CheckpointRecord(session_id, int(sequence), state_json, datetime.fromisoformat(created_at))


class CheckpointBackend(Protocol):
    async def insert(self, session_id: str, sequence: int, state_json: str) -> CheckpointRecord: ...

    async def latest(self, session_id: str) -> CheckpointRecord | None: ...

    async def all(self, session_id: str) -> list[CheckpointRecord]: ...

    async def delete(self, session_id: str) -> int: ...


class SQLiteCheckpointBackend:
    def __init__(self, db_path: str | Path = CHECKPOINT_DB_PATH) -> None:
        self.db_path = checkpoint_db.resolve_db_path(db_path)
        checkpoint_db.init_db(self.db_path)
        logger.info("[checkpoint_store] sqlite backend at %s", self.db_path)

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, self.db_path, *args)
        except sqlite3.Error as e:
            raise CheckpointError(f"Checkpoint database error: {e}") from e

    async def insert(self, session_id: str, sequence: int, state_json: str) -> CheckpointRecord:
        created_at = await self._run(checkpoint_db.insert_checkpoint, session_id, sequence, state_json)
        return CheckpointRecord(session_id, sequence, state_json, datetime.fromisoformat(created_at))

    async def latest(self, session_id: str) -> CheckpointRecord | None:
        row = await self._run(checkpoint_db.fetch_latest, session_id)
        return _record(row) if row else None

    async def all(self, session_id: str) -> list[CheckpointRecord]:
        return [_record(r) for r in await self._run(checkpoint_db.fetch_all, session_id)]

    async def delete(self, session_id: str) -> int:
        return await self._run(checkpoint_db.delete_session, session_id)


class InMemoryCheckpointBackend:
    def __init__(self) -> None:
        self._rows: dict[str, list[CheckpointRecord]] = {}

    async def insert(self, session_id: str, sequence: int, state_json: str) -> CheckpointRecord:
        record = CheckpointRecord(session_id, sequence, state_json, datetime.now(timezone.utc))
        self._rows.setdefault(session_id, []).append(record)
        return record

    async def latest(self, session_id: str) -> CheckpointRecord | None:
        rows = await self.all(session_id)
        return rows[0] if rows else None

    async def all(self, session_id: str) -> list[CheckpointRecord]:
        rows = self._rows.get(session_id) or []
        # Highest sequence first; among equal sequences the later write wins
        indexed = sorted(enumerate(rows), key=lambda p: (p[1].sequence, p[0]), reverse=True)
        return [r for _, r in indexed]

    async def delete(self, session_id: str) -> int:
        return len(self._rows.pop(session_id, None) or [])


@dataclass
class CheckpointTask:
    """Handle on one background checkpoint write."""

    session_id: str
    sequence: int
    status: str = "pending"  # pending | saved | failed
    error: str | None = None
    _task: asyncio.Task | None = field(default=None, repr=False)

    async def wait(self) -> str:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return self.status


class CheckpointStore:
    def __init__(self, backend: CheckpointBackend | None = None, *, enabled: bool = ENABLE_CHECKPOINTING) -> None:
        self.backend = backend if backend is not None else InMemoryCheckpointBackend()
        self.enabled = enabled
        self._tasks: set[asyncio.Task] = set()

    async def save(self, session_id: str, state: WorkflowState, sequence: int) -> CheckpointRecord:
        """Write one checkpoint. Raises CheckpointError on failure."""
        record = await self.backend.insert(session_id, sequence, snapshot_state(state))
        logger.info(
            "[checkpoint_store:save] session_id=%s sequence=%d current_node=%s",
            session_id[:16], sequence, state.get("current_node"),
        )
        return record

    async def latest_record(self, session_id: str) -> CheckpointRecord | None:
        return await self.backend.latest(session_id)

    async def load_latest(self, session_id: str) -> WorkflowState | None:
        """State from the highest-sequence checkpoint of the session, or None."""
        record = await self.backend.latest(session_id)
        if record is None:
            return None
        logger.info("[checkpoint_store:load_latest] session_id=%s sequence=%d", session_id[:16], record.sequence)
        return record.state()

    async def latest_sequence(self, session_id: str) -> int:
        record = await self.backend.latest(session_id)
        return record.sequence if record else 0

    async def history(self, session_id: str) -> list[CheckpointRecord]:
        return await self.backend.all(session_id)

    async def clear(self, session_id: str) -> int:
        return await self.backend.delete(session_id)

    def schedule_save(self, session_id: str, state: WorkflowState, sequence: int) -> CheckpointTask:
        """
        Start a background write. The snapshot is taken now, so later changes to
        state do not leak into the checkpoint.
        """
        handle = CheckpointTask(session_id=session_id, sequence=sequence)
        if not self.enabled:
            handle.status = "failed"
            handle.error = "checkpointing disabled"
            return handle
        try:
            state_json = snapshot_state(state)
        except (ValidationError, TypeError, ValueError) as e:
            handle.status = "failed"
            handle.error = str(e)
            logger.warning("[checkpoint_store:schedule_save] snapshot failed session_id=%s: %s", session_id[:16], e)
            return handle

        async def write() -> None:
            try:
                await self.backend.insert(session_id, sequence, state_json)
            except Exception as e:
                handle.status = "failed"
                handle.error = str(e)
                logger.warning(
                    "[checkpoint_store:schedule_save] write failed session_id=%s sequence=%d: %s",
                    session_id[:16], sequence, e,
                )
                return
            handle.status = "saved"
            logger.info("[checkpoint_store:schedule_save] saved session_id=%s sequence=%d", session_id[:16], sequence)

        task = asyncio.create_task(write())
        handle._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def drain(self) -> None:
        """Wait for every outstanding background write."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
