"""Project storage schemas.

Defines the persisted Project / ProjectSession / Query records owned by
the project storage collaborator, and the tagged union carried in a
query's result payload.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from dbcoach.schemas.streaming import ContentKind, new_id, utcnow


class ResultFormat(StrEnum):
    JSON = "json"
    CSV = "csv"
    TABLE = "table"


class StreamingChunkResult(BaseModel):
    """Query payload for a phase captured from a streaming run."""

    kind: Literal["streaming_chunk"] = "streaming_chunk"
    task_id: str
    agent: str
    content_kind: ContentKind = ContentKind.TEXT
    text: str


class GenericResult(BaseModel):
    """Query payload for any result that did not originate from streaming."""

    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)


QueryResult = Annotated[
    StreamingChunkResult | GenericResult,
    Field(discriminator="kind"),
]


class Project(BaseModel):
    """A named container of generated database work."""

    id: str = Field(default_factory=lambda: new_id("project"))
    user_id: str
    name: str
    schema_flavor: str
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)


class ProjectSession(BaseModel):
    """A unit of work inside a project."""

    id: str = Field(default_factory=lambda: new_id("session"))
    project_id: str
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    query_count: int = 0


class Query(BaseModel):
    """One recorded query or generated artifact inside a project session."""

    id: str = Field(default_factory=lambda: new_id("query"))
    session_id: str
    project_id: str
    query_text: str
    query_type: str = "OTHER"
    description: str = ""
    result: QueryResult | None = None
    result_format: ResultFormat = ResultFormat.JSON
    success: bool = True
    error_message: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_streaming(self) -> bool:
        return isinstance(self.result, StreamingChunkResult)
