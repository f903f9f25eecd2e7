"""Chunk capture store.

Records every streamed fragment and insight of a session so that the run
can be replayed and materialised later. Each mutation tries the durable
CaptureBackend first and always updates the resident in-memory mirror, so
a storage outage degrades durability but never interrupts generation.

The only hard error is referencing a session the store has never seen.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from dbcoach.errors import SessionNotFoundError
from dbcoach.persistence.backends import CaptureBackend
from dbcoach.schemas.results import Persisted, SoftError
from dbcoach.schemas.streaming import (
    CapturedSession,
    ContentKind,
    GenerationTask,
    InsightKind,
    SchemaFlavor,
    SessionStatus,
    StreamChunk,
    StreamingInsight,
    StreamingSession,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


class ChunkCaptureStore:
    """Best-effort durable capture with an authoritative in-memory mirror.

    Constructed once per process and shared by every concurrent run.
    """

    def __init__(self, backend: CaptureBackend | None = None) -> None:
        self._backend = backend
        self._resident: dict[str, CapturedSession] = {}
        self._sequences: dict[tuple[str, str], int] = {}
        # Sessions with at least one durable write that did not land
        self._durable_gaps: set[str] = set()

    @property
    def backend(self) -> CaptureBackend | None:
        return self._backend

    # ── Durable path ─────────────────────────────────────────────

    async def _durable(
        self, session_id: str, operation: str, call: Callable[[], Awaitable[Any]],
    ) -> SoftError | None:
        """Run one durable write, converting any failure into a SoftError.

        A failure marks the session as missing part of its durable copy.
        """
        if self._backend is None:
            return None
        try:
            await call()
        except Exception as e:
            error = SoftError.from_exception(operation, e)
            self._durable_gaps.add(session_id)
            logger.warning(
                "Durable %s failed for %s, keeping resident copy: %s",
                operation, session_id, error.message,
            )
            return error
        return None

    def _persisted(self, value: Any, error: SoftError | None) -> Persisted:
        return Persisted(
            value=value,
            durable=self._backend is not None and error is None,
            error=error,
        )

    def _require(self, session_id: str) -> CapturedSession:
        captured = self._resident.get(session_id)
        if captured is None:
            raise SessionNotFoundError(session_id)
        return captured

    # ── Session lifecycle ────────────────────────────────────────

    async def start_capture(
        self,
        user_id: str,
        prompt: str,
        schema_flavor: SchemaFlavor | str,
    ) -> str:
        """Open a new capture session and return its id.

        Never fails because of the durable store.
        """
        session = StreamingSession(
            id=new_id("stream"),
            user_id=user_id,
            prompt=prompt,
            schema_flavor=SchemaFlavor(schema_flavor),
        )
        self._resident[session.id] = CapturedSession(
            session=session, started_at=session.created_at,
        )
        await self._durable(
            session.id, "start_capture", lambda: self._backend.insert_session(session),
        )
        logger.info("Capture started: %s (user=%s)", session.id, user_id)
        return session.id

    async def register_tasks(
        self, session_id: str, tasks: list[GenerationTask],
    ) -> Persisted[StreamingSession]:
        """Record the ordered task list of a session."""
        session = self._require(session_id).session
        for task in tasks:
            session.upsert_task(task)
        error = await self._sync_session("register_tasks", session)
        return self._persisted(session, error)

    async def record_task(
        self, session_id: str, task: GenerationTask,
    ) -> Persisted[StreamingSession]:
        """Refresh a task snapshot after a state transition."""
        session = self._require(session_id).session
        session.upsert_task(task)
        error = await self._sync_session("record_task", session)
        return self._persisted(session, error)

    async def mark_error(self, session_id: str, message: str) -> Persisted[StreamingSession]:
        captured = self._require(session_id)
        session = captured.session
        session.error_message = message
        session.set_status(SessionStatus.ERROR)
        captured.ended_at = utcnow()
        logger.warning("Session %s marked as error: %s", session_id, message)
        error = await self._sync_session("mark_error", session)
        return self._persisted(session, error)

    async def finish_session(
        self, session_id: str, completion_data: dict[str, Any] | None = None,
    ) -> Persisted[StreamingSession]:
        """Mark a session completed and attach its completion data."""
        captured = self._require(session_id)
        session = captured.session
        if completion_data:
            session.completion_data = {**session.completion_data, **completion_data}
        session.set_status(SessionStatus.COMPLETED)
        if captured.ended_at is None:
            captured.ended_at = utcnow()
        error = await self._sync_session("finish_session", session)
        return self._persisted(session, error)

    async def set_project_id(
        self, session_id: str, project_id: str,
    ) -> Persisted[StreamingSession]:
        session = self._require(session_id).session
        session.project_id = project_id
        session.touch()
        error = await self._sync_session("set_project_id", session)
        return self._persisted(session, error)

    async def _sync_session(self, operation: str, session: StreamingSession) -> SoftError | None:
        snapshot = session.model_copy(deep=True)
        return await self._durable(
            session.id, operation, lambda: self._backend.update_session(snapshot),
        )

    # ── Chunks and insights ──────────────────────────────────────

    async def capture_chunk(
        self,
        session_id: str,
        task_id: str,
        task_title: str,
        agent: str,
        content: str,
        content_kind: ContentKind | str = ContentKind.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> Persisted[StreamChunk]:
        """Append one fragment to a task's chunk log.

        Raises:
            SessionNotFoundError: If the session was never started here or
                has been evicted.
        """
        captured = self._require(session_id)
        key = (session_id, task_id)
        sequence = self._sequences.get(key, 0)
        self._sequences[key] = sequence + 1

        chunk = StreamChunk(
            session_id=session_id,
            task_id=task_id,
            task_title=task_title,
            agent=agent,
            sequence=sequence,
            content=content,
            content_kind=ContentKind(content_kind),
            metadata=dict(metadata or {}),
        )
        captured.chunks.append(chunk)

        session = captured.session
        status_changed = session.status == SessionStatus.INITIALIZING
        if status_changed:
            session.set_status(SessionStatus.STREAMING)
        else:
            session.touch()

        logger.debug("Chunk %s/%s #%d (%d chars)", session_id, task_id, sequence, len(content))
        error = await self._durable(
            session_id, "capture_chunk", lambda: self._backend.insert_chunk(chunk),
        )
        if status_changed:
            error = await self._sync_session("capture_chunk", session) or error
        return self._persisted(chunk, error)

    async def discard_task_chunks(self, session_id: str, task_id: str) -> Persisted[int]:
        """Drop every captured chunk of one task and restart its sequence at 0."""
        captured = self._require(session_id)
        before = len(captured.chunks)
        captured.chunks = [c for c in captured.chunks if c.task_id != task_id]
        self._sequences.pop((session_id, task_id), None)
        removed = before - len(captured.chunks)
        error = await self._durable(
            session_id, "discard_task_chunks",
            lambda: self._backend.delete_chunks(session_id, task_id),
        )
        return self._persisted(removed, error)

    async def capture_insight(
        self,
        session_id: str,
        agent: str,
        message: str,
        kind: InsightKind | str = InsightKind.REASONING,
        metadata: dict[str, Any] | None = None,
    ) -> Persisted[StreamingInsight] | None:
        """Record a side-channel insight. Never raises; unknown sessions return None."""
        captured = self._resident.get(session_id)
        if captured is None:
            logger.warning("Insight dropped for unknown session %s", session_id)
            return None

        insight = StreamingInsight(
            session_id=session_id,
            agent=agent,
            message=message,
            kind=InsightKind(kind),
            metadata=dict(metadata or {}),
        )
        captured.insights.append(insight)
        error = await self._durable(
            session_id, "capture_insight", lambda: self._backend.insert_insight(insight),
        )
        return self._persisted(insight, error)

    # ── Reads ────────────────────────────────────────────────────

    async def get_session_data(self, session_id: str) -> CapturedSession | None:
        """Resident mirror first, durable store second, None if unknown."""
        captured = self._resident.get(session_id)
        if captured is not None:
            return captured.model_copy(deep=True)
        if self._backend is None:
            return None

        try:
            session = await self._backend.fetch_session(session_id)
            if session is None:
                return None
            chunks = await self._backend.fetch_chunks(session_id)
            insights = await self._backend.fetch_insights(session_id)
        except Exception as e:
            logger.warning("Durable read of %s failed: %s", session_id, e)
            return None

        ended = session.updated_at if session.status in (
            SessionStatus.COMPLETED, SessionStatus.ERROR,
        ) else None
        return CapturedSession(
            session=session,
            chunks=chunks,
            insights=insights,
            started_at=session.created_at,
            ended_at=ended,
        )

    async def get_session_chunks(self, session_id: str) -> list[StreamChunk]:
        data = await self.get_session_data(session_id)
        return data.chunks if data else []

    async def get_session_insights(self, session_id: str) -> list[StreamingInsight]:
        data = await self.get_session_data(session_id)
        return data.insights if data else []

    async def get_saved_sessions(self, user_id: str) -> list[StreamingSession]:
        """Durable and resident sessions for a user, newest first.

        Sessions present in both places appear once, as the resident copy.
        """
        merged: dict[str, StreamingSession] = {}
        if self._backend is not None:
            try:
                for session in await self._backend.list_sessions(user_id):
                    merged[session.id] = session
            except Exception as e:
                logger.warning("Durable session listing failed, using resident only: %s", e)

        for captured in self._resident.values():
            if captured.session.user_id == user_id:
                merged[captured.session.id] = captured.session.model_copy(deep=True)

        return sorted(merged.values(), key=lambda s: s.created_at, reverse=True)

    async def validate_consistency(self, session_id: str) -> bool:
        """True when every task's chunk sequence is exactly 0..n-1."""
        data = await self.get_session_data(session_id)
        if data is None:
            logger.warning("Consistency check on unknown session %s", session_id)
            return False
        for task_id in data.task_ids():
            sequences = sorted(c.sequence for c in data.chunks if c.task_id == task_id)
            if sequences != list(range(len(sequences))):
                logger.warning(
                    "Chunk sequence gap in %s/%s: %s", session_id, task_id, sequences,
                )
                return False
        return True

    # ── Resident map ─────────────────────────────────────────────

    def get_active_session(self, session_id: str) -> StreamingSession | None:
        captured = self._resident.get(session_id)
        return captured.session.model_copy(deep=True) if captured else None

    def resident_sessions(self) -> list[StreamingSession]:
        return [c.session.model_copy(deep=True) for c in self._resident.values()]

    def is_resident(self, session_id: str) -> bool:
        return session_id in self._resident

    def has_durable_copy(self, session_id: str) -> bool:
        """True when every durable write for a resident session succeeded."""
        return (
            self._backend is not None
            and session_id in self._resident
            and session_id not in self._durable_gaps
        )

    def evict(self, session_id: str) -> bool:
        """Forget a session's resident copy. Returns False if it was not resident."""
        captured = self._resident.pop(session_id, None)
        if captured is None:
            return False
        self._durable_gaps.discard(session_id)
        for task_id in {c.task_id for c in captured.chunks}:
            self._sequences.pop((session_id, task_id), None)
        logger.debug("Evicted resident session %s", session_id)
        return True

    async def check_backend(self) -> bool:
        """Durable availability probe."""
        if self._backend is None:
            return False
        try:
            await self._backend.ping()
        except Exception as e:
            logger.warning("Durable store %s unavailable: %s", self._backend.name, e)
            return False
        return True
