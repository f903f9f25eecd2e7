"""Pipeline configuration and phase definition schemas.

Defines the model configuration used by the provider layer, the per-phase
and top-level pipeline configuration loaded from defaults.toml, the phase
definitions driven by the runner, and the result of a generation run.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from dbcoach.schemas.streaming import ContentKind, GenerationTask, TaskState


class PersistenceBackend(StrEnum):
    """Durable store used by the capture store and project storage."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    SUPABASE = "supabase"


class ReplayMode(StrEnum):
    """Granularity of a replay tick."""

    CHUNK = "chunk"
    CHARACTER = "character"


class ModelConfig(BaseModel):
    """Configuration for the text-generation model.

    Loaded from the [model] table of defaults.toml.
    """

    model: str = Field(description="LiteLLM model identifier (e.g. 'gemini/gemini-2.0-flash')")
    display_name: str = Field(default="", description="Human-friendly model name")
    api_key_env: str = Field(description="Environment variable name holding the API key")
    api_base: str = Field(default="", description="Custom API base URL (empty = provider default)")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=8192, gt=0)


class PhaseConfig(BaseModel):
    """Configuration overrides for a single generation phase."""

    timeout: float = Field(
        default=25.0, gt=0, description="Hard wall-clock timeout in seconds for this phase"
    )
    max_retries: int = Field(
        default=1, ge=0, le=3, description="Retries when opening the backend stream"
    )


class PipelineConfig(BaseModel):
    """Top-level configuration for a generation run.

    Loaded from defaults.toml and overridden by CLI flags.
    """

    default_timeout: float = Field(
        default=25.0, gt=0, description="Default per-phase timeout in seconds"
    )
    max_retries: int = Field(
        default=1, ge=0, le=3, description="Default backend retries per phase"
    )
    retry_budget: int = Field(
        default=1, ge=0, le=3,
        description="Backend retries shared by every phase of one run (caps max_retries)",
    )
    fallback_enabled: bool = Field(
        default=True, description="Substitute deterministic fallback text for failed phases"
    )
    previous_output_limit: int = Field(
        default=0, ge=0,
        description="Truncate previous phase output to this many chars (0 = full text)",
    )
    phases: dict[str, PhaseConfig] = Field(
        default_factory=dict, description="Per-phase configuration overrides"
    )
    persistence: PersistenceBackend = Field(
        default=PersistenceBackend.MEMORY, description="Durable store backend"
    )
    session_db_path: str = Field(
        default="~/.dbcoach/sessions.db", description="SQLite database path"
    )
    replay_speed: float = Field(default=1.0, gt=0, description="Default replay speed multiplier")
    replay_tick_interval: float = Field(
        default=0.025, gt=0, description="Seconds between replay ticks at 1.0x"
    )
    replay_chars_per_tick: int = Field(default=4, gt=0)

    def phase_timeout(self, key: str) -> float:
        phase = self.phases.get(key)
        return phase.timeout if phase else self.default_timeout

    def phase_retries(self, key: str) -> int:
        phase = self.phases.get(key)
        return phase.max_retries if phase else self.max_retries


class PhaseDefinition(BaseModel):
    """A single ordered phase of the generation pipeline."""

    key: str = Field(description="Stable phase key used in task ids")
    title: str = Field(description="Display title")
    agent: str = Field(description="Agent label")
    template: str = Field(description="Prompt template name (without .md)")
    content_kind: ContentKind = Field(default=ContentKind.TEXT)


class GenerationResult(BaseModel):
    """Outcome of one full pipeline run."""

    session_id: str
    tasks: list[GenerationTask] = Field(default_factory=list)
    duration_seconds: float = 0.0
    project_id: str | None = None

    @property
    def fallback_count(self) -> int:
        return sum(1 for t in self.tasks if t.used_fallback)

    @property
    def failed_count(self) -> int:
        return sum(1 for t in self.tasks if t.state == TaskState.FAILED)

    def content_for(self, key: str) -> str:
        for task in self.tasks:
            if task.key == key:
                return task.content
        return ""
