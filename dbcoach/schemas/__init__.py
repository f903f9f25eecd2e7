"""DB.Coach schema definitions.

All Pydantic v2 models used across the pipeline, capture store, project
storage and derived views.
"""

from dbcoach.schemas.artifacts import (
    Column,
    ContentMetric,
    Relationship,
    SchemaStats,
    SubSection,
    Table,
)
from dbcoach.schemas.pipeline import (
    GenerationResult,
    ModelConfig,
    PersistenceBackend,
    PhaseConfig,
    PhaseDefinition,
    PipelineConfig,
    ReplayMode,
)
from dbcoach.schemas.projects import (
    GenericResult,
    Project,
    ProjectSession,
    Query,
    QueryResult,
    ResultFormat,
    StreamingChunkResult,
)
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
    TaskState,
)

__all__ = [
    "CapturedSession",
    "Column",
    "ContentKind",
    "ContentMetric",
    "GenerationResult",
    "GenerationTask",
    "GenericResult",
    "InsightKind",
    "ModelConfig",
    "PersistenceBackend",
    "Persisted",
    "PhaseConfig",
    "PhaseDefinition",
    "PipelineConfig",
    "Project",
    "ProjectSession",
    "Query",
    "QueryResult",
    "Relationship",
    "ReplayMode",
    "ResultFormat",
    "SchemaFlavor",
    "SchemaStats",
    "SessionStatus",
    "SoftError",
    "StreamChunk",
    "StreamingChunkResult",
    "StreamingInsight",
    "StreamingSession",
    "SubSection",
    "Table",
    "TaskState",
]
