"""Project storage collaborator.

Persists the Project / ProjectSession / Query records that a finished
streaming run is materialised into. Three implementations share the
ProjectStore interface: an in-process store, SQLite (aiosqlite) and the
hosted Supabase tables. Every failure surfaces as ProjectStorageError.
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
from pydantic import TypeAdapter
from supabase import Client

from dbcoach.errors import ProjectStorageError
from dbcoach.schemas.projects import (
    Project,
    ProjectSession,
    Query,
    QueryResult,
    ResultFormat,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROJECTS_TABLE = "database_projects"
SESSIONS_TABLE = "database_sessions"
QUERIES_TABLE = "database_queries"

_RESULT_ADAPTER: TypeAdapter[QueryResult] = TypeAdapter(QueryResult)


class ProjectStore(ABC):
    """Interface of the project storage collaborator."""

    @abstractmethod
    async def create_project(self, project: Project) -> Project: ...

    @abstractmethod
    async def create_session(self, session: ProjectSession) -> ProjectSession: ...

    @abstractmethod
    async def create_query(self, query: Query) -> Query: ...

    @abstractmethod
    async def get_project(self, project_id: str) -> Project | None: ...

    @abstractmethod
    async def list_projects(self, user_id: str) -> list[Project]:
        """Projects owned by ``user_id``, most recently accessed first."""

    @abstractmethod
    async def list_sessions(self, project_id: str) -> list[ProjectSession]: ...

    @abstractmethod
    async def list_queries(self, session_id: str) -> list[Query]: ...

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        """Delete a project with its sessions and queries. False if unknown."""


# ── Row mapping ──────────────────────────────────────────────────


def _ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _decode(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value) if value else default
    return value


def project_to_row(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "user_id": project.user_id,
        "database_name": project.name,
        "database_type": project.schema_flavor,
        "description": project.description,
        "metadata": project.metadata,
        "created_at": project.created_at.isoformat(),
        "updated_at": project.updated_at.isoformat(),
        "last_accessed": project.last_accessed.isoformat(),
    }


def project_from_row(row: dict[str, Any]) -> Project:
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        name=row["database_name"],
        schema_flavor=row["database_type"],
        description=row.get("description") or "",
        metadata=_decode(row.get("metadata"), {}),
        created_at=_ts(row["created_at"]),
        updated_at=_ts(row["updated_at"]),
        last_accessed=_ts(row["last_accessed"]),
    )


def session_to_row(session: ProjectSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "project_id": session.project_id,
        "session_name": session.name,
        "description": session.description,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
    }


def session_from_row(row: dict[str, Any], query_count: int = 0) -> ProjectSession:
    return ProjectSession(
        id=row["id"],
        project_id=row["project_id"],
        name=row.get("session_name") or "",
        description=row.get("description") or "",
        created_at=_ts(row["created_at"]),
        updated_at=_ts(row["updated_at"]),
        query_count=query_count,
    )


def query_to_row(query: Query) -> dict[str, Any]:
    return {
        "id": query.id,
        "session_id": query.session_id,
        "project_id": query.project_id,
        "query_text": query.query_text,
        "query_type": query.query_type,
        "description": query.description,
        "results_data": query.result.model_dump(mode="json") if query.result else None,
        "results_format": str(query.result_format),
        "success": query.success,
        "error_message": query.error_message or None,
        "created_at": query.created_at.isoformat(),
    }


def query_from_row(row: dict[str, Any]) -> Query:
    raw_result = _decode(row.get("results_data"), None)
    return Query(
        id=row["id"],
        session_id=row["session_id"],
        project_id=row["project_id"],
        query_text=row["query_text"],
        query_type=row.get("query_type") or "OTHER",
        description=row.get("description") or "",
        result=_RESULT_ADAPTER.validate_python(raw_result) if raw_result else None,
        result_format=ResultFormat(row.get("results_format") or "json"),
        success=bool(row.get("success", True)),
        error_message=row.get("error_message") or "",
        created_at=_ts(row["created_at"]),
    )


# ── In-process ───────────────────────────────────────────────────


class InMemoryProjectStore(ProjectStore):
    """Project store kept in process memory (``persistence = "memory"``)."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._sessions: dict[str, ProjectSession] = {}
        self._queries: dict[str, Query] = {}

    async def create_project(self, project: Project) -> Project:
        self._projects[project.id] = project.model_copy(deep=True)
        return project

    async def create_session(self, session: ProjectSession) -> ProjectSession:
        if session.project_id not in self._projects:
            raise ProjectStorageError(f"Unknown project: {session.project_id}")
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    async def create_query(self, query: Query) -> Query:
        if query.session_id not in self._sessions:
            raise ProjectStorageError(f"Unknown project session: {query.session_id}")
        self._queries[query.id] = query.model_copy(deep=True)
        return query

    async def get_project(self, project_id: str) -> Project | None:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def list_projects(self, user_id: str) -> list[Project]:
        projects = [p for p in self._projects.values() if p.user_id == user_id]
        return sorted(projects, key=lambda p: p.last_accessed, reverse=True)

    async def list_sessions(self, project_id: str) -> list[ProjectSession]:
        sessions = []
        for s in self._sessions.values():
            if s.project_id == project_id:
                count = sum(1 for q in self._queries.values() if q.session_id == s.id)
                sessions.append(s.model_copy(update={"query_count": count}))
        return sorted(sessions, key=lambda s: s.created_at)

    async def list_queries(self, session_id: str) -> list[Query]:
        queries = [q for q in self._queries.values() if q.session_id == session_id]
        return sorted(queries, key=lambda q: q.created_at)

    async def delete_project(self, project_id: str) -> bool:
        if self._projects.pop(project_id, None) is None:
            return False
        session_ids = {s.id for s in self._sessions.values() if s.project_id == project_id}
        for sid in session_ids:
            del self._sessions[sid]
        self._queries = {
            qid: q for qid, q in self._queries.items() if q.project_id != project_id
        }
        return True


# ── SQLite ───────────────────────────────────────────────────────


def _sqlite_values(row: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for k, v in row.items():
        if isinstance(v, (dict, list)):
            values[k] = json.dumps(v)
        elif isinstance(v, bool):
            values[k] = int(v)
        else:
            values[k] = v
    return values


class SQLiteProjectStore(ProjectStore):
    """Project store over an aiosqlite connection from database.init_db()."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def _insert(self, table: str, row: dict[str, Any]) -> None:
        try:
            values = _sqlite_values(row)
        except (TypeError, ValueError) as e:
            raise ProjectStorageError(f"Cannot serialise row for {table}: {e}") from e
        columns = ", ".join(values)
        placeholders = ", ".join(f":{k}" for k in values)
        try:
            await self._db.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",  # noqa: S608
                values,
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise ProjectStorageError(f"Insert into {table} failed: {e}") from e

    async def _fetch(self, sql: str, params: tuple) -> list[dict[str, Any]]:
        try:
            cursor = await self._db.execute(sql, params)
            return [dict(r) for r in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise ProjectStorageError(f"Query failed: {e}") from e

    async def create_project(self, project: Project) -> Project:
        await self._insert(PROJECTS_TABLE, project_to_row(project))
        return project

    async def create_session(self, session: ProjectSession) -> ProjectSession:
        await self._insert(SESSIONS_TABLE, session_to_row(session))
        return session

    async def create_query(self, query: Query) -> Query:
        await self._insert(QUERIES_TABLE, query_to_row(query))
        return query

    async def get_project(self, project_id: str) -> Project | None:
        rows = await self._fetch(
            f"SELECT * FROM {PROJECTS_TABLE} WHERE id = ?", (project_id,),  # noqa: S608
        )
        return project_from_row(rows[0]) if rows else None

    async def list_projects(self, user_id: str) -> list[Project]:
        rows = await self._fetch(
            f"SELECT * FROM {PROJECTS_TABLE} WHERE user_id = ? "  # noqa: S608
            "ORDER BY last_accessed DESC",
            (user_id,),
        )
        return [project_from_row(r) for r in rows]

    async def list_sessions(self, project_id: str) -> list[ProjectSession]:
        rows = await self._fetch(
            f"SELECT s.*, (SELECT COUNT(*) FROM {QUERIES_TABLE} q "  # noqa: S608
            "WHERE q.session_id = s.id) AS query_count "
            f"FROM {SESSIONS_TABLE} s WHERE s.project_id = ? ORDER BY s.created_at",
            (project_id,),
        )
        return [session_from_row(r, r.get("query_count", 0)) for r in rows]

    async def list_queries(self, session_id: str) -> list[Query]:
        rows = await self._fetch(
            f"SELECT * FROM {QUERIES_TABLE} WHERE session_id = ? "  # noqa: S608
            "ORDER BY rowid",
            (session_id,),
        )
        return [query_from_row(r) for r in rows]

    async def delete_project(self, project_id: str) -> bool:
        try:
            cursor = await self._db.execute(
                f"DELETE FROM {PROJECTS_TABLE} WHERE id = ?", (project_id,),  # noqa: S608
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise ProjectStorageError(f"Delete of {project_id} failed: {e}") from e
        return cursor.rowcount > 0


# ── Supabase ─────────────────────────────────────────────────────


class SupabaseProjectStore(ProjectStore):
    """Project store over the hosted database_* tables."""

    def __init__(self, client: Client) -> None:
        self._client = client

    async def _run(self, request: Callable[[], T], action: str) -> T:
        try:
            return await asyncio.to_thread(request)
        except Exception as e:
            raise ProjectStorageError(f"{action} failed: {e}") from e

    async def create_project(self, project: Project) -> Project:
        row = project_to_row(project)
        await self._run(
            lambda: self._client.table(PROJECTS_TABLE).insert(row).execute(),
            "Create project",
        )
        return project

    async def create_session(self, session: ProjectSession) -> ProjectSession:
        row = session_to_row(session)
        await self._run(
            lambda: self._client.table(SESSIONS_TABLE).insert(row).execute(),
            "Create session",
        )
        return session

    async def create_query(self, query: Query) -> Query:
        row = query_to_row(query)
        await self._run(
            lambda: self._client.table(QUERIES_TABLE).insert(row).execute(),
            "Create query",
        )
        return query

    async def get_project(self, project_id: str) -> Project | None:
        res = await self._run(
            lambda: self._client.table(PROJECTS_TABLE)
            .select("*").eq("id", project_id).limit(1).execute(),
            "Get project",
        )
        rows = res.data or []
        return project_from_row(rows[0]) if rows else None

    async def list_projects(self, user_id: str) -> list[Project]:
        res = await self._run(
            lambda: self._client.table(PROJECTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("last_accessed", desc=True)
            .execute(),
            "List projects",
        )
        return [project_from_row(r) for r in res.data or []]

    async def list_sessions(self, project_id: str) -> list[ProjectSession]:
        res = await self._run(
            lambda: self._client.table(SESSIONS_TABLE)
            .select("*, database_queries(count)")
            .eq("project_id", project_id)
            .order("created_at")
            .execute(),
            "List sessions",
        )
        sessions = []
        for row in res.data or []:
            counts = row.get("database_queries") or [{}]
            sessions.append(session_from_row(row, counts[0].get("count", 0)))
        return sessions

    async def list_queries(self, session_id: str) -> list[Query]:
        res = await self._run(
            lambda: self._client.table(QUERIES_TABLE)
            .select("*")
            .eq("session_id", session_id)
            .order("created_at")
            .execute(),
            "List queries",
        )
        return [query_from_row(r) for r in res.data or []]

    async def delete_project(self, project_id: str) -> bool:
        res = await self._run(
            lambda: self._client.table(PROJECTS_TABLE).delete().eq("id", project_id).execute(),
            "Delete project",
        )
        return bool(res.data)
