"""Session completion reconciler.

Turns a finished capture session into a persisted Project with one
ProjectSession and one Query per generation task. Materialisation is
idempotent. When materialisation fails for any reason the session keeps a
placeholder project id and stays resident so a later call can retry.
"""

from __future__ import annotations

import logging
from typing import Any

from dbcoach.errors import SessionNotFoundError
from dbcoach.persistence.capture import ChunkCaptureStore
from dbcoach.persistence.projects import ProjectStore
from dbcoach.schemas.projects import (
    Project,
    ProjectSession,
    Query,
    ResultFormat,
    StreamingChunkResult,
)
from dbcoach.schemas.streaming import (
    CapturedSession,
    ContentKind,
    SessionStatus,
    TaskState,
    utcnow,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "stream_project_"
SESSION_NAME = "Live Streaming Generation"
SESSION_DESCRIPTION = "Database generated via streaming interface"

# Checked in order; the first domain with a keyword in the prompt wins
_DOMAIN_PATTERNS: list[tuple[str, tuple[str, ...]]] = [
    ("E-Commerce Platform", ("shop", "store", "product", "cart", "order", "payment", "inventory")),
    ("Blog Management System", ("blog", "post", "article", "author", "comment", "category")),
    ("Social Network Platform", ("social", "user", "post", "comment", "like", "follow", "feed")),
    ("Customer Management System", ("customer", "lead", "contact", "sales", "deal", "client")),
    ("Education Platform", ("student", "course", "lesson", "grade", "assignment", "teacher")),
    ("Healthcare System", ("patient", "doctor", "appointment", "medical", "health", "treatment")),
    ("Financial System", ("transaction", "account", "balance", "payment", "bank", "finance")),
]


def generate_project_title(prompt: str, schema_flavor: str) -> str:
    """Derive a project title from domain keywords in the prompt.

    Falls back to the first three words of the prompt.
    """
    lowered = prompt.lower()
    for title, keywords in _DOMAIN_PATTERNS:
        if any(keyword in lowered for keyword in keywords):
            return f"{title} ({schema_flavor})"
    first_words = " ".join(prompt.split()[:3])
    return f"{first_words} Database ({schema_flavor})"


def placeholder_project_id(session_id: str) -> str:
    return f"{PLACEHOLDER_PREFIX}{session_id}"


def is_placeholder(project_id: str | None) -> bool:
    return bool(project_id) and project_id.startswith(PLACEHOLDER_PREFIX)


class SessionCompletionReconciler:
    """Materialises completed capture sessions into project storage."""

    def __init__(self, store: ChunkCaptureStore, projects: ProjectStore) -> None:
        self._store = store
        self._projects = projects

    async def complete_capture(
        self,
        session_id: str,
        completion_data: dict[str, Any] | None = None,
    ) -> str:
        """Finish a session and return the id of its project.

        Returns the existing project id when the session was already
        materialised, and a ``stream_project_<id>`` placeholder when
        project storage fails.

        Raises:
            SessionNotFoundError: If the session is unknown, or only durable
                and never materialised.
        """
        existing = await self._store.get_session_data(session_id)
        if existing is None:
            raise SessionNotFoundError(session_id)
        project_id = existing.session.project_id
        if project_id and not is_placeholder(project_id):
            logger.debug("Session %s already materialised as %s", session_id, project_id)
            return project_id
        if not self._store.is_resident(session_id):
            raise SessionNotFoundError(session_id)

        await self._store.finish_session(session_id, completion_data)
        captured = await self._store.get_session_data(session_id)

        try:
            project_id = await self._materialise(captured, completion_data or {})
        except SessionNotFoundError:
            raise
        except Exception as e:
            placeholder = placeholder_project_id(session_id)
            logger.warning(
                "Project creation failed for %s, using placeholder %s: %s",
                session_id, placeholder, e,
            )
            await self._store.set_project_id(session_id, placeholder)
            return placeholder

        await self._store.set_project_id(session_id, project_id)
        if not self._store.has_durable_copy(session_id):
            logger.info("Keeping session %s resident; durable copy incomplete", session_id)
        elif await self._store.check_backend():
            self._store.evict(session_id)
        else:
            logger.info("Keeping session %s resident; durable store unavailable", session_id)

        logger.info("Completed capture %s as project %s", session_id, project_id)
        return project_id

    async def retry_pending(self) -> dict[str, str]:
        """Retry materialisation of completed sessions holding a placeholder id.

        Returns a mapping of session id to the project id now assigned.
        """
        results: dict[str, str] = {}
        for session in self._store.resident_sessions():
            if session.status == SessionStatus.COMPLETED and is_placeholder(session.project_id):
                results[session.id] = await self.complete_capture(session.id)
        return results

    async def _materialise(
        self, captured: CapturedSession, completion_data: dict[str, Any],
    ) -> str:
        session = captured.session
        flavor = str(session.schema_flavor)
        project = Project(
            user_id=session.user_id,
            name=generate_project_title(session.prompt, flavor),
            schema_flavor=flavor,
            description=session.prompt,
            metadata={
                "streaming_session_id": session.id,
                "generation_mode": "streaming",
                "total_chunks": len(captured.chunks),
                "total_insights": len(captured.insights),
                "duration_ms": captured.duration_ms,
                "completion_data": completion_data,
                "generated_at": utcnow().isoformat(),
            },
        )
        await self._projects.create_project(project)

        try:
            project_session = await self._projects.create_session(
                ProjectSession(
                    project_id=project.id,
                    name=SESSION_NAME,
                    description=SESSION_DESCRIPTION,
                )
            )
            for task in session.tasks:
                chunks = captured.chunks_for(task.id)
                text = "".join(c.content for c in chunks) if chunks else task.content
                kind = chunks[0].content_kind if chunks else ContentKind.TEXT
                await self._projects.create_query(
                    Query(
                        session_id=project_session.id,
                        project_id=project.id,
                        query_text=f"{task.title} ({task.agent})",
                        description=task.title,
                        result=StreamingChunkResult(
                            task_id=task.id,
                            agent=task.agent,
                            content_kind=kind,
                            text=text,
                        ),
                        result_format=ResultFormat.JSON,
                        success=task.state == TaskState.COMPLETED,
                        error_message=task.error,
                    )
                )
        except Exception:
            await self._discard_partial(project.id)
            raise

        return project.id

    async def _discard_partial(self, project_id: str) -> None:
        try:
            await self._projects.delete_project(project_id)
        except Exception as e:
            logger.warning("Could not remove partial project %s: %s", project_id, e)
