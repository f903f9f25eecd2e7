"""DB.Coach persistence layer.

Chunk capture with durable backends (SQLite, Supabase), project storage,
completion reconciliation and export (JSON/Markdown).
"""

from dbcoach.persistence.backends import (
    CaptureBackend,
    SQLiteCaptureBackend,
    SupabaseCaptureBackend,
)
from dbcoach.persistence.capture import ChunkCaptureStore
from dbcoach.persistence.database import close_db, init_db
from dbcoach.persistence.export import export_json, export_markdown
from dbcoach.persistence.projects import (
    InMemoryProjectStore,
    ProjectStore,
    SQLiteProjectStore,
    SupabaseProjectStore,
)
from dbcoach.persistence.reconciler import (
    SessionCompletionReconciler,
    generate_project_title,
)

__all__ = [
    "CaptureBackend",
    "ChunkCaptureStore",
    "InMemoryProjectStore",
    "ProjectStore",
    "SQLiteCaptureBackend",
    "SQLiteProjectStore",
    "SessionCompletionReconciler",
    "SupabaseCaptureBackend",
    "SupabaseProjectStore",
    "close_db",
    "export_json",
    "export_markdown",
    "generate_project_title",
    "init_db",
]
