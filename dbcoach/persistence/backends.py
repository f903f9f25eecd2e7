"""Durable capture backends.

A CaptureBackend persists streaming sessions, chunks and insights. Two
implementations share one row format: SQLiteCaptureBackend for local runs
(aiosqlite) and SupabaseCaptureBackend for the hosted tables (supabase-py,
whose synchronous client is driven from a worker thread).

Backends raise on failure. Absorbing outages is the capture store's job.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import aiosqlite
from supabase import Client, create_client

from dbcoach.keys import supabase_credentials
from dbcoach.schemas.streaming import (
    ContentKind,
    GenerationTask,
    InsightKind,
    SchemaFlavor,
    SessionStatus,
    StreamChunk,
    StreamingInsight,
    StreamingSession,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SESSIONS_TABLE = "streaming_sessions"
CHUNKS_TABLE = "streaming_chunks"
INSIGHTS_TABLE = "streaming_insights"


# ── Row mapping ──────────────────────────────────────────────────


def _json_field(value: Any, default: Any) -> Any:
    """Decode a JSON column that may arrive as text (SQLite) or parsed (Supabase)."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value) if value else default
    return value


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def session_to_row(session: StreamingSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "project_id": session.project_id,
        "prompt": session.prompt,
        "database_type": str(session.schema_flavor),
        "status": str(session.status),
        "tasks": [t.model_dump(mode="json") for t in session.tasks],
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "completion_data": session.completion_data,
        "error_message": session.error_message,
    }


def session_from_row(row: dict[str, Any]) -> StreamingSession:
    return StreamingSession(
        id=row["id"],
        user_id=row["user_id"],
        project_id=row.get("project_id"),
        prompt=row["prompt"],
        schema_flavor=SchemaFlavor(row["database_type"]),
        status=SessionStatus(row["status"]),
        tasks=[GenerationTask(**t) for t in _json_field(row.get("tasks"), [])],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        completion_data=_json_field(row.get("completion_data"), {}),
        error_message=row.get("error_message") or "",
    )


def chunk_to_row(chunk: StreamChunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "streaming_session_id": chunk.session_id,
        "task_id": chunk.task_id,
        "task_title": chunk.task_title,
        "agent_name": chunk.agent,
        "chunk_index": chunk.sequence,
        "content": chunk.content,
        "content_type": str(chunk.content_kind),
        "timestamp": chunk.timestamp.isoformat(),
        "metadata": chunk.metadata,
    }


def chunk_from_row(row: dict[str, Any]) -> StreamChunk:
    return StreamChunk(
        id=row["id"],
        session_id=row["streaming_session_id"],
        task_id=row["task_id"],
        task_title=row.get("task_title") or "",
        agent=row.get("agent_name") or "",
        sequence=row["chunk_index"],
        content=row["content"],
        content_kind=ContentKind(row.get("content_type") or "text"),
        timestamp=_parse_ts(row["timestamp"]),
        metadata=_json_field(row.get("metadata"), {}),
    )


def insight_to_row(insight: StreamingInsight) -> dict[str, Any]:
    return {
        "id": insight.id,
        "streaming_session_id": insight.session_id,
        "agent_name": insight.agent,
        "message": insight.message,
        "insight_type": str(insight.kind),
        "timestamp": insight.timestamp.isoformat(),
        "metadata": insight.metadata,
    }


def insight_from_row(row: dict[str, Any]) -> StreamingInsight:
    return StreamingInsight(
        id=row["id"],
        session_id=row["streaming_session_id"],
        agent=row["agent_name"],
        message=row["message"],
        kind=InsightKind(row["insight_type"]),
        timestamp=_parse_ts(row["timestamp"]),
        metadata=_json_field(row.get("metadata"), {}),
    )


# ── Interface ────────────────────────────────────────────────────


class CaptureBackend(ABC):
    """Durable store for captured sessions."""

    name: str = "backend"

    @abstractmethod
    async def insert_session(self, session: StreamingSession) -> None: ...

    @abstractmethod
    async def update_session(self, session: StreamingSession) -> None:
        """Write the mutable fields of an existing session row.

        Raises:
            LookupError: If no row exists for the session.
        """

    @abstractmethod
    async def insert_chunk(self, chunk: StreamChunk) -> None: ...

    @abstractmethod
    async def delete_chunks(self, session_id: str, task_id: str) -> None:
        """Remove every chunk of one task (used when partial output is discarded)."""

    @abstractmethod
    async def insert_insight(self, insight: StreamingInsight) -> None: ...

    @abstractmethod
    async def fetch_session(self, session_id: str) -> StreamingSession | None: ...

    @abstractmethod
    async def fetch_chunks(self, session_id: str) -> list[StreamChunk]: ...

    @abstractmethod
    async def fetch_insights(self, session_id: str) -> list[StreamingInsight]: ...

    @abstractmethod
    async def list_sessions(self, user_id: str) -> list[StreamingSession]:
        """Sessions owned by ``user_id``, newest first."""

    @abstractmethod
    async def ping(self) -> None:
        """Probe availability. Raises if the store cannot be reached."""


# ── SQLite ───────────────────────────────────────────────────────


def _sqlite_values(row: dict[str, Any]) -> dict[str, Any]:
    return {
        k: json.dumps(v) if isinstance(v, (dict, list)) else v
        for k, v in row.items()
    }


class SQLiteCaptureBackend(CaptureBackend):
    """Capture backend over an aiosqlite connection from database.init_db()."""

    name = "sqlite"

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def _insert(self, table: str, row: dict[str, Any]) -> None:
        values = _sqlite_values(row)
        columns = ", ".join(values)
        placeholders = ", ".join(f":{k}" for k in values)
        await self._db.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",  # noqa: S608
            values,
        )
        await self._db.commit()

    async def insert_session(self, session: StreamingSession) -> None:
        await self._insert(SESSIONS_TABLE, session_to_row(session))

    async def update_session(self, session: StreamingSession) -> None:
        values = _sqlite_values(session_to_row(session))
        assignments = ", ".join(f"{k} = :{k}" for k in values if k != "id")
        cursor = await self._db.execute(
            f"UPDATE {SESSIONS_TABLE} SET {assignments} WHERE id = :id",  # noqa: S608
            values,
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise LookupError(f"No durable row for session {session.id}")

    async def insert_chunk(self, chunk: StreamChunk) -> None:
        await self._insert(CHUNKS_TABLE, chunk_to_row(chunk))

    async def delete_chunks(self, session_id: str, task_id: str) -> None:
        await self._db.execute(
            f"DELETE FROM {CHUNKS_TABLE} WHERE streaming_session_id = ? AND task_id = ?",  # noqa: S608
            (session_id, task_id),
        )
        await self._db.commit()

    async def insert_insight(self, insight: StreamingInsight) -> None:
        await self._insert(INSIGHTS_TABLE, insight_to_row(insight))

    async def fetch_session(self, session_id: str) -> StreamingSession | None:
        cursor = await self._db.execute(
            f"SELECT * FROM {SESSIONS_TABLE} WHERE id = ?", (session_id,),  # noqa: S608
        )
        row = await cursor.fetchone()
        return session_from_row(dict(row)) if row else None

    async def fetch_chunks(self, session_id: str) -> list[StreamChunk]:
        cursor = await self._db.execute(
            f"SELECT * FROM {CHUNKS_TABLE} WHERE streaming_session_id = ? "  # noqa: S608
            "ORDER BY rowid",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [chunk_from_row(dict(r)) for r in rows]

    async def fetch_insights(self, session_id: str) -> list[StreamingInsight]:
        cursor = await self._db.execute(
            f"SELECT * FROM {INSIGHTS_TABLE} WHERE streaming_session_id = ? "  # noqa: S608
            "ORDER BY timestamp",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [insight_from_row(dict(r)) for r in rows]

    async def list_sessions(self, user_id: str) -> list[StreamingSession]:
        cursor = await self._db.execute(
            f"SELECT * FROM {SESSIONS_TABLE} WHERE user_id = ? "  # noqa: S608
            "ORDER BY created_at DESC",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [session_from_row(dict(r)) for r in rows]

    async def ping(self) -> None:
        await self._db.execute(f"SELECT id FROM {SESSIONS_TABLE} LIMIT 1")  # noqa: S608


# ── Supabase ─────────────────────────────────────────────────────


class SupabaseCaptureBackend(CaptureBackend):
    """Capture backend over the hosted streaming_* tables.

    supabase-py's Client is synchronous, so every request runs in a worker
    thread to keep the event loop responsive while chunks stream.
    """

    name = "supabase"

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    def from_env(cls) -> SupabaseCaptureBackend:
        """Build a backend from SUPABASE_URL / SUPABASE_KEY.

        Raises:
            MissingCredentialError: If either variable is unset.
        """
        url, key = supabase_credentials()
        return cls(create_client(url, key))

    @property
    def client(self) -> Client:
        return self._client

    async def _run(self, request: Callable[[], T]) -> T:
        return await asyncio.to_thread(request)

    async def insert_session(self, session: StreamingSession) -> None:
        row = session_to_row(session)
        await self._run(lambda: self._client.table(SESSIONS_TABLE).insert(row).execute())

    async def update_session(self, session: StreamingSession) -> None:
        row = session_to_row(session)
        row.pop("id")
        response = await self._run(
            lambda: self._client.table(SESSIONS_TABLE)
            .update(row).eq("id", session.id).execute()
        )
        if not response.data:
            raise LookupError(f"No durable row for session {session.id}")

    async def insert_chunk(self, chunk: StreamChunk) -> None:
        row = chunk_to_row(chunk)
        await self._run(lambda: self._client.table(CHUNKS_TABLE).insert(row).execute())

    async def delete_chunks(self, session_id: str, task_id: str) -> None:
        await self._run(
            lambda: self._client.table(CHUNKS_TABLE)
            .delete()
            .eq("streaming_session_id", session_id)
            .eq("task_id", task_id)
            .execute()
        )

    async def insert_insight(self, insight: StreamingInsight) -> None:
        row = insight_to_row(insight)
        await self._run(lambda: self._client.table(INSIGHTS_TABLE).insert(row).execute())

    async def fetch_session(self, session_id: str) -> StreamingSession | None:
        res = await self._run(
            lambda: self._client.table(SESSIONS_TABLE)
            .select("*").eq("id", session_id).limit(1).execute()
        )
        rows = res.data or []
        return session_from_row(rows[0]) if rows else None

    async def fetch_chunks(self, session_id: str) -> list[StreamChunk]:
        res = await self._run(
            lambda: self._client.table(CHUNKS_TABLE)
            .select("*")
            .eq("streaming_session_id", session_id)
            .order("timestamp")
            .execute()
        )
        return [chunk_from_row(r) for r in res.data or []]

    async def fetch_insights(self, session_id: str) -> list[StreamingInsight]:
        res = await self._run(
            lambda: self._client.table(INSIGHTS_TABLE)
            .select("*")
            .eq("streaming_session_id", session_id)
            .order("timestamp")
            .execute()
        )
        return [insight_from_row(r) for r in res.data or []]

    async def list_sessions(self, user_id: str) -> list[StreamingSession]:
        res = await self._run(
            lambda: self._client.table(SESSIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [session_from_row(r) for r in res.data or []]

    async def ping(self) -> None:
        await self._run(
            lambda: self._client.table(SESSIONS_TABLE).select("id").limit(1).execute()
        )
