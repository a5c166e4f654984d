"""
Tests for CheckpointStore: round-trip, highest-sequence selection, background
writes and the SQLite backend.
"""

import pytest

from playbook.agent.state import (
    ConfidenceEntry,
    CoverageAnalysis,
    DocumentReference,
    StageError,
    create_initial_state,
)
from playbook.core.errors import CheckpointError
from playbook.services.checkpoint_store import (
    CheckpointStore,
    InMemoryCheckpointBackend,
    SQLiteCheckpointBackend,
)


def _state_after_coverage():
    state = create_initial_state("How do I close a project?", session_id="s1")
    state.update(
        completed_nodes=["query_analysis", "document_assessment", "coverage_evaluation"],
        current_node="fact_checking",
        document_references=[DocumentReference(id="project-closure", title="Project Closure", confidence=0.92)],
        coverage_analysis=CoverageAnalysis(overall_confidence=0.97, coverage_level="full", response_strategy="full_answer"),
        confidence_history=[ConfidenceEntry(stage="coverage_evaluation", confidence=0.97, note="ok")],
        errors=[StageError(stage="query_analysis", kind="upstream", message="down")],
        preloaded_documents=["not serialized"],
    )
    return state


class BrokenBackend(InMemoryCheckpointBackend):
    async def insert(self, session_id, sequence, state_json):
        raise CheckpointError("disk full")


@pytest.mark.asyncio
async def test_round_trip_preserves_progress() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend())
    state = _state_after_coverage()
    await store.save("s1", state, 3)

    loaded = await store.load_latest("s1")
    assert loaded["completed_nodes"] == state["completed_nodes"]
    assert loaded["current_node"] == "fact_checking"
    assert loaded["document_references"][0].confidence == 0.92
    assert loaded["coverage_analysis"].coverage_level == "full"
    assert loaded["errors"][0].kind == "upstream"
    assert loaded["preloaded_documents"] is None


@pytest.mark.asyncio
async def test_load_latest_picks_highest_sequence() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend())
    early = create_initial_state("q", session_id="s1")
    late = _state_after_coverage()
    await store.save("s1", late, 5)
    await store.save("s1", early, 2)

    loaded = await store.load_latest("s1")
    assert loaded["current_node"] == "fact_checking"
    assert [r.sequence for r in await store.history("s1")] == [5, 2]


@pytest.mark.asyncio
async def test_unknown_session_returns_none() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend())
    assert await store.load_latest("missing") is None
    assert await store.latest_sequence("missing") == 0


@pytest.mark.asyncio
async def test_clear_removes_session_checkpoints() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend())
    await store.save("s1", _state_after_coverage(), 1)
    await store.save("s2", _state_after_coverage(), 1)
    assert await store.clear("s1") == 1
    assert await store.load_latest("s1") is None
    assert await store.load_latest("s2") is not None


@pytest.mark.asyncio
async def test_schedule_save_completes_in_background() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend())
    handle = store.schedule_save("s1", _state_after_coverage(), 1)
    assert handle.status == "pending"

    assert await handle.wait() == "saved"
    assert (await store.latest_record("s1")).sequence == 1


@pytest.mark.asyncio
async def test_failed_background_write_is_recorded_not_raised() -> None:
    store = CheckpointStore(BrokenBackend())
    handle = store.schedule_save("s1", _state_after_coverage(), 1)

    await store.drain()
    assert handle.status == "failed"
    assert "disk full" in handle.error


@pytest.mark.asyncio
async def test_snapshot_is_taken_at_schedule_time() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend())
    state = _state_after_coverage()
    handle = store.schedule_save("s1", state, 1)
    state["current_node"] = "response_synthesis"
    await handle.wait()
    assert (await store.load_latest("s1"))["current_node"] == "fact_checking"


@pytest.mark.asyncio
async def test_disabled_store_does_not_write() -> None:
    store = CheckpointStore(InMemoryCheckpointBackend(), enabled=False)
    handle = store.schedule_save("s1", _state_after_coverage(), 1)
    assert handle.status == "failed"
    assert await store.load_latest("s1") is None


@pytest.mark.asyncio
async def test_sqlite_backend_round_trip(tmp_path) -> None:
    store = CheckpointStore(SQLiteCheckpointBackend(tmp_path / "checkpoints.db"))
    await store.save("s1", create_initial_state("q", session_id="s1"), 1)
    await store.save("s1", _state_after_coverage(), 2)

    record = await store.latest_record("s1")
    assert record.sequence == 2
    loaded = record.state()
    assert loaded["completed_nodes"] == ["query_analysis", "document_assessment", "coverage_evaluation"]
    assert loaded["current_node"] == "fact_checking"
    assert len(await store.history("s1")) == 2
    assert await store.clear("s1") == 2
    assert await store.load_latest("s1") is None


@pytest.mark.asyncio
async def test_corrupt_checkpoint_raises_checkpoint_error() -> None:
    backend = InMemoryCheckpointBackend()
    await backend.insert("s1", 1, "{not json")
    store = CheckpointStore(backend)
    with pytest.raises(CheckpointError):
        await store.load_latest("s1")
