"""Streaming session data model.

Defines the generation task state machine, the streaming session that
owns an ordered list of tasks, and the captured chunk and insight records
used for replay and project materialisation.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from dbcoach.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Return a unique identifier such as ``chunk_3f2a9c1e0b7d``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class SchemaFlavor(StrEnum):
    """Target database family for a generation run."""

    SQL = "SQL"
    NOSQL = "NoSQL"
    VECTOR_DB = "VectorDB"


class ContentKind(StrEnum):
    """What a chunk of generated text mostly contains."""

    TEXT = "text"
    CODE = "code"
    SCHEMA = "schema"
    QUERY = "query"


class InsightKind(StrEnum):
    """Side-channel narrative event categories."""

    REASONING = "reasoning"
    DECISION = "decision"
    PROGRESS = "progress"
    COMPLETION = "completion"


class TaskState(StrEnum):
    """Lifecycle of a single generation phase."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(StrEnum):
    """Lifecycle of an end-to-end streaming run."""

    INITIALIZING = "initializing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


_TERMINAL_TASK_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED})


class GenerationTask(BaseModel):
    """One phase of the generation pipeline.

    Transitions are ``pending -> active -> completed | failed``. Content only
    grows while the task is active. Terminal states are final.
    """

    id: str = Field(description="Task id, stable within a session")
    key: str = Field(description="Phase key (e.g. 'analysis')")
    title: str = Field(description="Human-readable phase title")
    agent: str = Field(description="Label of the agent producing this phase")
    position: int = Field(ge=0, description="0-based ordinal within the pipeline")
    state: TaskState = Field(default=TaskState.PENDING)
    content: str = Field(default="", description="Accumulated text output")
    started_at: datetime | None = None
    ended_at: datetime | None = None
    used_fallback: bool = Field(
        default=False, description="True when content is deterministic fallback text",
    )
    error: str = Field(default="", description="Failure reason, if any")

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL_TASK_STATES

    def start(self) -> None:
        if self.state != TaskState.PENDING:
            raise InvalidTransitionError(
                f"Task {self.id} cannot start from state '{self.state}'"
            )
        self.state = TaskState.ACTIVE
        self.started_at = utcnow()

    def append(self, fragment: str) -> None:
        if self.state != TaskState.ACTIVE:
            raise InvalidTransitionError(
                f"Task {self.id} is '{self.state}', content can only grow while active"
            )
        self.content += fragment

    def reset_content(self) -> None:
        """Discard partial output of an active task before substituting a fallback."""
        if self.state != TaskState.ACTIVE:
            raise InvalidTransitionError(
                f"Task {self.id} is '{self.state}', cannot discard content"
            )
        self.content = ""

    def complete(self) -> None:
        if self.state != TaskState.ACTIVE:
            raise InvalidTransitionError(
                f"Task {self.id} cannot complete from state '{self.state}'"
            )
        self.state = TaskState.COMPLETED
        self.ended_at = utcnow()

    def fail(self, reason: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Task {self.id} is already '{self.state}'"
            )
        self.state = TaskState.FAILED
        self.error = reason
        self.ended_at = utcnow()


class StreamingSession(BaseModel):
    """One end-to-end pipeline run for one user prompt."""

    id: str = Field(description="Streaming session id")
    user_id: str = Field(description="Owning user id")
    prompt: str = Field(description="Originating prompt text")
    schema_flavor: SchemaFlavor = Field(description="Target schema flavor")
    status: SessionStatus = Field(default=SessionStatus.INITIALIZING)
    tasks: list[GenerationTask] = Field(default_factory=list)
    project_id: str | None = Field(
        default=None, description="Persisted project id once materialised",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completion_data: dict[str, Any] = Field(default_factory=dict)
    error_message: str = ""

    def touch(self) -> None:
        """Refresh ``updated_at`` without ever moving it backwards."""
        now = utcnow()
        if now > self.updated_at:
            self.updated_at = now

    def set_status(self, status: SessionStatus) -> None:
        self.status = status
        self.touch()

    def upsert_task(self, task: GenerationTask) -> None:
        """Store a snapshot of ``task``, keeping the list ordered by position."""
        snapshot = task.model_copy(deep=True)
        for i, existing in enumerate(self.tasks):
            if existing.id == task.id:
                self.tasks[i] = snapshot
                break
        else:
            self.tasks.append(snapshot)
            self.tasks.sort(key=lambda t: t.position)
        self.touch()


class StreamChunk(BaseModel):
    """One captured fragment of streamed task text."""

    id: str = Field(default_factory=lambda: new_id("chunk"))
    session_id: str
    task_id: str
    task_title: str = ""
    agent: str = ""
    sequence: int = Field(ge=0, description="Per-task monotonically increasing index")
    content: str
    content_kind: ContentKind = ContentKind.TEXT
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StreamingInsight(BaseModel):
    """A narrative side-channel event emitted by an agent."""

    id: str = Field(default_factory=lambda: new_id("insight"))
    session_id: str
    agent: str
    message: str
    kind: InsightKind = InsightKind.REASONING
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CapturedSession(BaseModel):
    """Full reconstructed state of a captured session."""

    session: StreamingSession
    chunks: list[StreamChunk] = Field(default_factory=list)
    insights: list[StreamingInsight] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None

    def task_ids(self) -> list[str]:
        """Task ids in the order their first chunk appears."""
        seen: dict[str, None] = {}
        for chunk in self.chunks:
            seen.setdefault(chunk.task_id, None)
        return list(seen)

    def chunks_for(self, task_id: str) -> list[StreamChunk]:
        return sorted(
            (c for c in self.chunks if c.task_id == task_id),
            key=lambda c: c.sequence,
        )

    def task_content(self, task_id: str) -> str:
        return "".join(c.content for c in self.chunks_for(task_id))

    def full_contents(self) -> dict[str, str]:
        return {task_id: self.task_content(task_id) for task_id in self.task_ids()}

    @property
    def duration_ms(self) -> int:
        end = self.ended_at or utcnow()
        return int((end - self.started_at).total_seconds() * 1000)
