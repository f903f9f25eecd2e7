"""Tests for dbcoach.schemas.streaming: task lifecycle and captured sessions."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from dbcoach.errors import InvalidTransitionError
from dbcoach.schemas.pipeline import GenerationResult, PhaseConfig, PipelineConfig
from dbcoach.schemas.streaming import (
    CapturedSession,
    GenerationTask,
    SchemaFlavor,
    SessionStatus,
    StreamChunk,
    StreamingSession,
    TaskState,
    new_id,
)

# ── Factories ──────────────────────────────────────────────────────


def _make_task(**overrides) -> GenerationTask:
    defaults = {
        "id": "stream_abc_analysis",
        "key": "analysis",
        "title": "Requirements Analysis",
        "agent": "Requirements Analyst",
        "position": 0,
    }
    defaults.update(overrides)
    return GenerationTask(**defaults)


def _make_session(**overrides) -> StreamingSession:
    defaults = {
        "id": "stream_abc",
        "user_id": "u1",
        "prompt": "blog with users and posts",
        "schema_flavor": SchemaFlavor.SQL,
    }
    defaults.update(overrides)
    return StreamingSession(**defaults)


def _make_chunk(task_id: str, sequence: int, content: str) -> StreamChunk:
    return StreamChunk(
        session_id="stream_abc", task_id=task_id, sequence=sequence, content=content,
    )


# ── GenerationTask ─────────────────────────────────────────────────


class TestGenerationTask:
    def test_happy_path(self):
        task = _make_task()
        assert task.state == TaskState.PENDING
        task.start()
        task.append("Hello ")
        task.append("world")
        task.complete()
        assert task.state == TaskState.COMPLETED
        assert task.content == "Hello world"
        assert task.started_at is not None
        assert task.ended_at >= task.started_at
        assert task.is_terminal

    def test_append_requires_active(self):
        task = _make_task()
        with pytest.raises(InvalidTransitionError):
            task.append("too early")

    def test_cannot_start_twice(self):
        task = _make_task()
        task.start()
        with pytest.raises(InvalidTransitionError):
            task.start()

    def test_terminal_states_are_final(self):
        task = _make_task()
        task.start()
        task.complete()
        with pytest.raises(InvalidTransitionError):
            task.fail("late failure")
        with pytest.raises(InvalidTransitionError):
            task.append("more")

    def test_fail_from_pending_and_active(self):
        pending = _make_task()
        pending.fail("never ran")
        assert pending.state == TaskState.FAILED
        assert pending.error == "never ran"

        active = _make_task()
        active.start()
        active.fail("timeout")
        assert active.state == TaskState.FAILED

    def test_reset_content_only_while_active(self):
        task = _make_task()
        task.start()
        task.append("partial")
        task.reset_content()
        assert task.content == ""
        task.complete()
        with pytest.raises(InvalidTransitionError):
            task.reset_content()

    def test_position_must_be_non_negative(self):
        with pytest.raises(ValidationError):
            _make_task(position=-1)


# ── StreamingSession ───────────────────────────────────────────────


class TestStreamingSession:
    def test_defaults(self):
        session = _make_session()
        assert session.status == SessionStatus.INITIALIZING
        assert session.tasks == []
        assert session.project_id is None

    def test_upsert_keeps_position_order(self):
        session = _make_session()
        session.upsert_task(_make_task(id="t2", key="design", position=1))
        session.upsert_task(_make_task(id="t1", position=0))
        assert [t.id for t in session.tasks] == ["t1", "t2"]

    def test_upsert_replaces_snapshot(self):
        session = _make_session()
        task = _make_task()
        session.upsert_task(task)
        task.start()
        task.append("text")
        session.upsert_task(task)
        assert len(session.tasks) == 1
        assert session.tasks[0].content == "text"
        # Stored value is a snapshot
        task.append(" more")
        assert session.tasks[0].content == "text"

    def test_touch_never_moves_backwards(self):
        session = _make_session()
        future = session.updated_at + timedelta(hours=1)
        session.updated_at = future
        session.touch()
        assert session.updated_at == future

    def test_set_status_refreshes_updated_at(self):
        session = _make_session()
        before = session.updated_at
        session.set_status(SessionStatus.STREAMING)
        assert session.status == SessionStatus.STREAMING
        assert session.updated_at >= before

    def test_flavor_values(self):
        assert SchemaFlavor("NoSQL") == SchemaFlavor.NOSQL
        assert str(SchemaFlavor.VECTOR_DB) == "VectorDB"


# ── CapturedSession ────────────────────────────────────────────────


class TestCapturedSession:
    def test_task_ids_in_first_seen_order(self):
        captured = CapturedSession(
            session=_make_session(),
            chunks=[
                _make_chunk("b", 0, "B0"),
                _make_chunk("a", 0, "A0"),
                _make_chunk("b", 1, "B1"),
            ],
        )
        assert captured.task_ids() == ["b", "a"]

    def test_task_content_orders_by_sequence(self):
        captured = CapturedSession(
            session=_make_session(),
            chunks=[
                _make_chunk("a", 1, "world"),
                _make_chunk("a", 0, "Hello "),
            ],
        )
        assert captured.task_content("a") == "Hello world"
        assert captured.full_contents() == {"a": "Hello world"}
        assert captured.task_content("missing") == ""

    def test_duration_ms(self):
        captured = CapturedSession(session=_make_session())
        captured.ended_at = captured.started_at + timedelta(seconds=2)
        assert captured.duration_ms == 2000

    def test_chunk_sequence_non_negative(self):
        with pytest.raises(ValidationError):
            _make_chunk("a", -1, "x")


# ── Pipeline config and results ────────────────────────────────────


class TestPipelineConfig:
    def test_phase_overrides(self):
        config = PipelineConfig(
            default_timeout=25.0,
            max_retries=1,
            phases={"design": PhaseConfig(timeout=5.0, max_retries=0)},
        )
        assert config.phase_timeout("design") == 5.0
        assert config.phase_retries("design") == 0
        assert config.phase_timeout("analysis") == 25.0
        assert config.phase_retries("analysis") == 1

    def test_retries_bounded(self):
        with pytest.raises(ValidationError):
            PhaseConfig(max_retries=10)

    def test_result_counts(self):
        ok = _make_task(id="t1")
        ok.start()
        ok.complete()
        fallback = _make_task(id="t2", key="design", position=1, used_fallback=True)
        failed = _make_task(id="t3", key="implementation", position=2)
        failed.fail("boom")
        result = GenerationResult(session_id="s", tasks=[ok, fallback, failed])
        assert result.fallback_count == 1
        assert result.failed_count == 1
        assert result.content_for("missing") == ""


def test_new_id_prefix_and_uniqueness():
    first, second = new_id("chunk"), new_id("chunk")
    assert first.startswith("chunk_")
    assert first != second
