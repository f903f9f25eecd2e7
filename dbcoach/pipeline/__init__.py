"""Generation pipeline: phase definitions and the task runner."""

from dbcoach.pipeline.phases import DEFAULT_PHASES, fallback_content
from dbcoach.pipeline.runner import GenerationTaskRunner

__all__ = ["DEFAULT_PHASES", "GenerationTaskRunner", "fallback_content"]
