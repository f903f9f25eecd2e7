"""DB.Coach facade.

Wires the provider, the capture store, project storage, the runner and the
reconciler together according to PipelineConfig, and exposes the derived
views (replay, sub-sections, tables, metrics) of captured sessions.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import aiosqlite
from supabase import create_client

from dbcoach.events import PipelineEventEmitter
from dbcoach.keys import load_keys_env, supabase_credentials
from dbcoach.persistence.backends import SQLiteCaptureBackend, SupabaseCaptureBackend
from dbcoach.persistence.capture import ChunkCaptureStore
from dbcoach.persistence.database import close_db, init_db
from dbcoach.persistence.projects import (
    InMemoryProjectStore,
    ProjectStore,
    SQLiteProjectStore,
    SupabaseProjectStore,
)
from dbcoach.persistence.reconciler import SessionCompletionReconciler
from dbcoach.pipeline.runner import GenerationTaskRunner
from dbcoach.providers.base import TextGenerator
from dbcoach.providers.litellm_provider import LiteLLMProvider
from dbcoach.providers.registry import load_model_config, load_pipeline_config
from dbcoach.replay import ReplayEngine
from dbcoach.schemas.artifacts import ContentMetric, SubSection, Table
from dbcoach.schemas.pipeline import (
    GenerationResult,
    PersistenceBackend,
    PhaseDefinition,
    PipelineConfig,
    ReplayMode,
)
from dbcoach.schemas.streaming import (
    CapturedSession,
    SchemaFlavor,
    StreamingSession,
    TaskState,
)
from dbcoach.sectionizer import content_metrics, extract_tables, split_sections

logger = logging.getLogger(__name__)


class DBCoach:
    """Entry point for generating, capturing and revisiting schema designs."""

    def __init__(
        self,
        store: ChunkCaptureStore,
        projects: ProjectStore,
        config: PipelineConfig | None = None,
        *,
        generator: TextGenerator | None = None,
        emitter: PipelineEventEmitter | None = None,
        phases: list[PhaseDefinition] | None = None,
        config_path: Path | None = None,
        db: aiosqlite.Connection | None = None,
    ) -> None:
        self._store = store
        self._projects = projects
        self._config = config or PipelineConfig()
        self._generator = generator
        self._emitter = emitter or PipelineEventEmitter(keep_history=False)
        self._phases = phases
        self._config_path = config_path
        self._db = db
        self._reconciler = SessionCompletionReconciler(store, projects)

    @classmethod
    async def create(
        cls,
        config_path: Path | None = None,
        *,
        persistence: PersistenceBackend | None = None,
        generator: TextGenerator | None = None,
        emitter: PipelineEventEmitter | None = None,
    ) -> DBCoach:
        """Build a DBCoach from defaults.toml and the environment.

        Raises:
            MissingCredentialError: If the Supabase backend is selected and
                its credentials are not configured.
        """
        load_keys_env()
        config = load_pipeline_config(config_path)
        if persistence is not None:
            config = config.model_copy(update={"persistence": persistence})

        db: aiosqlite.Connection | None = None
        if config.persistence == PersistenceBackend.SQLITE:
            db = await init_db(config.session_db_path)
            store = ChunkCaptureStore(SQLiteCaptureBackend(db))
            projects: ProjectStore = SQLiteProjectStore(db)
        elif config.persistence == PersistenceBackend.SUPABASE:
            client = create_client(*supabase_credentials())
            store = ChunkCaptureStore(SupabaseCaptureBackend(client))
            projects = SupabaseProjectStore(client)
        else:
            store = ChunkCaptureStore()
            projects = InMemoryProjectStore()

        logger.info("DB.Coach ready (persistence=%s)", config.persistence)
        return cls(
            store, projects, config,
            generator=generator, emitter=emitter,
            config_path=config_path, db=db,
        )

    async def close(self) -> None:
        if self._db is not None:
            await close_db(self._db)
            self._db = None

    async def __aenter__(self) -> DBCoach:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── Components ───────────────────────────────────────────────

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def store(self) -> ChunkCaptureStore:
        return self._store

    @property
    def projects(self) -> ProjectStore:
        return self._projects

    @property
    def emitter(self) -> PipelineEventEmitter:
        return self._emitter

    @property
    def reconciler(self) -> SessionCompletionReconciler:
        return self._reconciler

    @property
    def generator(self) -> TextGenerator:
        """The text generator, built from the [model] table on first use.

        Raises:
            MissingCredentialError: If the model's API key is not configured.
        """
        if self._generator is None:
            self._generator = LiteLLMProvider(load_model_config(self._config_path))
        return self._generator

    def runner(self) -> GenerationTaskRunner:
        return GenerationTaskRunner(
            self.generator, self._store, self._config, self._emitter, self._phases,
        )

    # ── Generation ───────────────────────────────────────────────

    async def generate(
        self,
        prompt: str,
        schema_flavor: SchemaFlavor = SchemaFlavor.SQL,
        user_id: str = "anonymous",
        *,
        materialise: bool = True,
    ) -> GenerationResult:
        """Run every phase, then materialise the session as a project.

        A run whose phases all failed is left in the ``error`` state and is
        not materialised.
        """
        result = await self.runner().run(prompt, schema_flavor, user_id)
        if not materialise or all(t.state == TaskState.FAILED for t in result.tasks):
            return result

        completion: dict[str, Any] = {
            "total_tasks": len(result.tasks),
            "fallback_count": result.fallback_count,
            "failed_count": result.failed_count,
            "duration_seconds": round(result.duration_seconds, 3),
        }
        result.project_id = await self._reconciler.complete_capture(
            result.session_id, completion,
        )
        return result

    async def retry_pending(self) -> dict[str, str]:
        return await self._reconciler.retry_pending()

    # ── Captured sessions ────────────────────────────────────────

    async def sessions(self, user_id: str = "anonymous") -> list[StreamingSession]:
        return await self._store.get_saved_sessions(user_id)

    async def session_data(self, session_id: str) -> CapturedSession | None:
        return await self._store.get_session_data(session_id)

    async def replay(
        self,
        session_id: str,
        *,
        speed: float | None = None,
        mode: ReplayMode = ReplayMode.CHUNK,
        emitter: PipelineEventEmitter | None = None,
    ) -> ReplayEngine | None:
        """Build a ReplayEngine over a captured session, or None if unknown."""
        data = await self._store.get_session_data(session_id)
        if data is None:
            return None
        return ReplayEngine(
            data,
            speed=speed or self._config.replay_speed,
            mode=mode,
            chars_per_tick=self._config.replay_chars_per_tick,
            tick_interval=self._config.replay_tick_interval,
            emitter=emitter,
        )

    async def sections(self, session_id: str) -> dict[str, list[SubSection]]:
        """Sub-sections of every task's text, keyed by phase key."""
        data = await self._store.get_session_data(session_id)
        if data is None:
            return {}
        return {
            task.key: split_sections(data.task_content(task.id) or task.content)
            for task in data.session.tasks
        }

    async def tables(self, session_id: str, phase_key: str = "design") -> list[Table]:
        data = await self._store.get_session_data(session_id)
        if data is None:
            return []
        for task in data.session.tasks:
            if task.key == phase_key:
                return extract_tables(data.task_content(task.id) or task.content)
        return []

    async def metrics(self, session_id: str) -> list[ContentMetric]:
        data = await self._store.get_session_data(session_id)
        if data is None:
            return []
        return content_metrics({
            task.key: data.task_content(task.id) or task.content
            for task in data.session.tasks
        })
