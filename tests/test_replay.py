"""Tests for dbcoach.replay: replayEngine playback of captured chunk logs."""

from __future__ import annotations

import asyncio

import pytest

from dbcoach.events import EventType, PipelineEvent, PipelineEventEmitter
from dbcoach.replay import ReplayEngine
from dbcoach.schemas.pipeline import ReplayMode
from dbcoach.schemas.streaming import (
    CapturedSession,
    SchemaFlavor,
    StreamChunk,
    StreamingSession,
)

# ── Factories ──────────────────────────────────────────────────────


def _make_chunk(task_id: str, sequence: int, content: str) -> StreamChunk:
    return StreamChunk(
        session_id="stream_abc",
        task_id=task_id,
        task_title=task_id.title(),
        agent="Agent",
        sequence=sequence,
        content=content,
    )


def _make_captured(chunks: list[StreamChunk] | None = None) -> CapturedSession:
    session = StreamingSession(
        id="stream_abc", user_id="u1", prompt="blog", schema_flavor=SchemaFlavor.SQL,
    )
    if chunks is None:
        chunks = [
            _make_chunk("analysis", 0, "## Domain\n"),
            _make_chunk("analysis", 1, "Blogging."),
            _make_chunk("design", 0, "CREATE TABLE users "),
            _make_chunk("design", 1, "(id INTEGER PRIMARY KEY);"),
        ]
    return CapturedSession(session=session, chunks=chunks)


def _make_engine(source=None, **overrides) -> ReplayEngine:
    defaults = {"tick_interval": 0.0, "emitter": PipelineEventEmitter()}
    defaults.update(overrides)
    return ReplayEngine(source if source is not None else _make_captured(), **defaults)


# ── Convergence ────────────────────────────────────────────────────


class TestReplayConvergence:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("speed", [0.5, 1.0, 4.0, 10.0])
    async def test_converges_at_any_speed(self, speed):
        captured = _make_captured()
        engine = _make_engine(captured, speed=speed)

        displayed = await engine.run_to_completion()

        assert displayed == captured.full_contents()
        assert engine.is_complete
        assert engine.progress == 1.0

    @pytest.mark.asyncio
    async def test_character_mode_converges(self):
        captured = _make_captured()
        engine = _make_engine(captured, mode=ReplayMode.CHARACTER, chars_per_tick=3)

        displayed = await engine.run_to_completion()

        assert displayed == captured.full_contents()
        fragments = [
            e.data["content"] for e in engine.emitter.history
            if e.type == EventType.CONTENT_CHUNK
        ]
        assert all(len(f) <= 3 for f in fragments)
        assert "".join(fragments) == "".join(captured.full_contents().values())

    @pytest.mark.asyncio
    async def test_out_of_order_log_sorted_by_sequence(self):
        chunks = [
            _make_chunk("design", 1, "world"),
            _make_chunk("analysis", 0, "first"),
            _make_chunk("design", 0, "Hello "),
        ]
        engine = _make_engine(_make_captured(chunks))

        displayed = await engine.run_to_completion()

        assert displayed == {"design": "Hello world", "analysis": "first"}
        assert list(engine.full_content()) == ["design", "analysis"]

    @pytest.mark.asyncio
    async def test_accepts_bare_chunk_list(self):
        chunks = _make_captured().chunks
        engine = _make_engine(chunks)
        displayed = await engine.run_to_completion()
        assert displayed["design"] == "CREATE TABLE users (id INTEGER PRIMARY KEY);"

    @pytest.mark.asyncio
    async def test_empty_log(self):
        engine = _make_engine(_make_captured([]))
        assert engine.is_complete
        assert engine.progress == 1.0
        assert await engine.run_to_completion() == {}

    @pytest.mark.asyncio
    async def test_replay_does_not_modify_log(self):
        captured = _make_captured()
        before = captured.model_copy(deep=True)
        await _make_engine(captured).run_to_completion()
        assert captured == before


# ── Events ─────────────────────────────────────────────────────────


class TestReplayEvents:
    @pytest.mark.asyncio
    async def test_event_sequence(self):
        engine = _make_engine()
        await engine.run_to_completion()

        history = engine.emitter.history
        types = [e.type for e in history]
        assert types == [
            EventType.TASK_START, EventType.CONTENT_CHUNK, EventType.CONTENT_CHUNK,
            EventType.TASK_START, EventType.CONTENT_CHUNK, EventType.CONTENT_CHUNK,
            EventType.SESSION_COMPLETE,
        ]
        assert all(e.data["replay"] is True for e in history)
        assert history[0].data["position"] == 0
        assert history[3].data["task_id"] == "design"
        assert history[-1].data["total_tasks"] == 2


# ── Control ────────────────────────────────────────────────────────


class TestReplayControl:
    @pytest.mark.asyncio
    async def test_stop_shows_full_content(self):
        captured = _make_captured()
        engine = _make_engine(captured, tick_interval=10.0)

        engine.start_replay()
        await asyncio.sleep(0)
        assert engine.is_playing
        engine.stop_replay()

        assert not engine.is_playing
        assert engine.displayed_content() == captured.full_contents()
        assert engine.is_complete

    @pytest.mark.asyncio
    async def test_stop_from_listener(self):
        captured = _make_captured()
        engine = _make_engine(captured)

        def stop_after_first_chunk(event: PipelineEvent) -> None:
            if event.type == EventType.CONTENT_CHUNK:
                engine.stop_replay()

        engine.emitter.add_listener(stop_after_first_chunk)
        displayed = await engine.run_to_completion()

        assert displayed == captured.full_contents()

    @pytest.mark.asyncio
    async def test_restart_resets_display(self):
        captured = _make_captured()
        engine = _make_engine(captured)
        await engine.run_to_completion()

        engine.start_replay()
        assert engine.displayed_content() == {"analysis": "", "design": ""}
        assert engine.progress == 0.0
        displayed = await engine.run_to_completion()

        assert displayed == captured.full_contents()

    @pytest.mark.asyncio
    async def test_run_to_completion_after_stop_does_not_restart(self):
        engine = _make_engine(tick_interval=10.0)
        engine.start_replay()
        engine.stop_replay()

        displayed = await engine.run_to_completion()

        assert displayed == engine.full_content()
        assert not engine.is_playing

    def test_tick_seconds_scales_with_speed(self):
        engine = _make_engine(speed=2.0, tick_interval=0.1)
        assert engine.tick_seconds == pytest.approx(0.05)
        engine.set_speed(0.5)
        assert engine.tick_seconds == pytest.approx(0.2)

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            _make_engine(speed=0)
        with pytest.raises(ValueError):
            _make_engine(chars_per_tick=0)
        with pytest.raises(ValueError):
            _make_engine(tick_interval=-1.0)
        engine = _make_engine()
        with pytest.raises(ValueError):
            engine.set_speed(-2.0)
