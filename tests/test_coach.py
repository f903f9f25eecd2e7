"""Tests for dbcoach.coach: the DBCoach facade."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from dbcoach.coach import DBCoach
from dbcoach.errors import MissingCredentialError
from dbcoach.persistence.backends import SQLiteCaptureBackend
from dbcoach.persistence.capture import ChunkCaptureStore
from dbcoach.persistence.projects import InMemoryProjectStore, SQLiteProjectStore
from dbcoach.providers.base import TextGenerator
from dbcoach.schemas.pipeline import ModelConfig, PersistenceBackend, PipelineConfig, ReplayMode
from dbcoach.schemas.streaming import SchemaFlavor, SessionStatus, TaskState

_PHASE_OUTPUT = {
    "Requirements Analysis": "## Domain\nBlogging\n## Entities\nusers, posts\n",
    "Schema Design": (
        "## Schema\n"
        "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL);\n"
        "CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER REFERENCES users(id));\n"
        "## Indexes\nCREATE INDEX idx_posts_user ON posts(user_id);\n"
    ),
    "Implementation Package": "## Migration Script\nINSERT INTO users VALUES (1, 'a');\n",
    "Quality Validation": "✓ approved\n",
}


class _PhaseAwareGenerator(TextGenerator):
    """Streams canned output chosen by the phase title in the user message."""

    def __init__(self, failing: bool = False) -> None:
        super().__init__(ModelConfig(model="fake/model", api_key_env="FAKE_API_KEY"))
        self._failing = failing

    async def stream(self, messages, system, *, timeout=25.0, max_retries=1, retry_budget=None):
        if self._failing:
            raise RuntimeError("backend unavailable")
        request = messages[0]["content"].lower()
        for title, text in _PHASE_OUTPUT.items():
            if title.lower() in request:
                for line in text.splitlines(keepends=True):
                    yield line
                return


def _make_coach(**overrides) -> DBCoach:
    defaults = {
        "store": ChunkCaptureStore(),
        "projects": InMemoryProjectStore(),
        "config": PipelineConfig(replay_tick_interval=0.001),
        "generator": _PhaseAwareGenerator(),
    }
    defaults.update(overrides)
    return DBCoach(**defaults)


# ── Generation ─────────────────────────────────────────────────────


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generate_materialises_project(self):
        coach = _make_coach()

        result = await coach.generate("Blog platform", SchemaFlavor.SQL, "u1")

        assert all(t.state == TaskState.COMPLETED for t in result.tasks)
        assert result.project_id is not None
        project = await coach.projects.get_project(result.project_id)
        assert project.name == "Blog Management System (SQL)"
        assert project.metadata["completion_data"]["total_tasks"] == 4

        session = (await coach.session_data(result.session_id)).session
        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_generate_without_materialise(self):
        coach = _make_coach()
        result = await coach.generate("Blog platform", materialise=False)

        assert result.project_id is None
        assert await coach.projects.list_projects("anonymous") == []

    @pytest.mark.asyncio
    async def test_fallback_run_still_materialised(self):
        coach = _make_coach(generator=_PhaseAwareGenerator(failing=True))
        result = await coach.generate("Blog platform")

        assert result.fallback_count == 4
        assert result.project_id is not None

    @pytest.mark.asyncio
    async def test_all_failed_run_not_materialised(self):
        coach = _make_coach(
            generator=_PhaseAwareGenerator(failing=True),
            config=PipelineConfig(fallback_enabled=False),
        )
        result = await coach.generate("Blog platform")

        assert result.failed_count == 4
        assert result.project_id is None
        session = (await coach.session_data(result.session_id)).session
        assert session.status == SessionStatus.ERROR

    @pytest.mark.asyncio
    async def test_sessions_listing(self):
        coach = _make_coach()
        result = await coach.generate("Blog platform", user_id="u1")

        sessions = await coach.sessions("u1")
        assert [s.id for s in sessions] == [result.session_id]
        assert await coach.sessions("someone-else") == []

    @pytest.mark.asyncio
    async def test_repeated_runs_do_not_accumulate_events(self):
        coach = _make_coach()
        seen: list[str] = []
        coach.emitter.add_listener(lambda event: seen.append(event.type))

        for _ in range(3):
            await coach.generate("Blog platform", materialise=False)

        assert seen.count("session_complete") == 3
        assert coach.emitter.history == []

    def test_generator_built_lazily_from_config(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        coach = _make_coach(generator=None)
        with pytest.raises(MissingCredentialError, match="GEMINI_API_KEY"):
            coach.runner()


# ── Derived views ──────────────────────────────────────────────────


class TestDerivedViews:
    @pytest.mark.asyncio
    async def test_sections_tables_and_metrics(self):
        coach = _make_coach()
        result = await coach.generate("Blog platform")

        by_phase = await coach.sections(result.session_id)
        assert [s.title for s in by_phase["analysis"]] == ["Domain", "Entities"]
        assert [s.title for s in by_phase["design"]] == ["Schema", "Indexes"]
        assert by_phase["validation"] == []

        tables = await coach.tables(result.session_id)
        assert [t.name for t in tables] == ["users", "posts"]
        assert await coach.tables(result.session_id, "analysis") == []

        metrics = {m.label: m.value for m in await coach.metrics(result.session_id)}
        assert metrics["Tables designed"] == 2

    @pytest.mark.asyncio
    async def test_unknown_session_views(self):
        coach = _make_coach()
        assert await coach.sections("stream_missing") == {}
        assert await coach.tables("stream_missing") == []
        assert await coach.metrics("stream_missing") == []
        assert await coach.replay("stream_missing") is None

    @pytest.mark.asyncio
    async def test_replay_converges(self):
        coach = _make_coach()
        result = await coach.generate("Blog platform")

        engine = await coach.replay(result.session_id, speed=10.0, mode=ReplayMode.CHARACTER)
        displayed = await engine.run_to_completion()

        assert engine.speed == 10.0
        assert displayed == {t.id: t.content for t in result.tasks}


# ── Construction ───────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_memory_persistence(self):
        coach = await DBCoach.create(
            persistence=PersistenceBackend.MEMORY, generator=_PhaseAwareGenerator(),
        )
        async with coach:
            assert coach.config.persistence == PersistenceBackend.MEMORY
            assert coach.store.backend is None
            assert isinstance(coach.projects, InMemoryProjectStore)

    @pytest.mark.asyncio
    async def test_sqlite_persistence_survives_reopen(self, tmp_path):
        config_path = tmp_path / "defaults.toml"
        config_path.write_text(
            "[pipeline]\n"
            'persistence = "sqlite"\n'
            f'session_db_path = "{(tmp_path / "sessions.db").as_posix()}"\n'
        )

        async with await DBCoach.create(config_path, generator=_PhaseAwareGenerator()) as coach:
            assert isinstance(coach.store.backend, SQLiteCaptureBackend)
            assert isinstance(coach.projects, SQLiteProjectStore)
            result = await coach.generate("Blog platform")
            # Materialised and evicted once the durable copy is healthy
            assert not coach.store.is_resident(result.session_id)

        async with await DBCoach.create(config_path) as reopened:
            data = await reopened.session_data(result.session_id)
            assert data is not None
            assert data.session.project_id == result.project_id
            tables = await reopened.tables(result.session_id)
            assert [t.name for t in tables] == ["users", "posts"]

    @pytest.mark.asyncio
    async def test_supabase_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        with patch("dbcoach.coach.load_keys_env"), pytest.raises(MissingCredentialError):
            await DBCoach.create(persistence=PersistenceBackend.SUPABASE)
