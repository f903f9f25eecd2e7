"""Sequential generation engine for DB.Coach.

Runs the configured phases in order (Analysis -> Design -> Implementation
-> Validation by default). Each phase renders its prompt template with the
user request and the previous phase's output, streams the backend response,
captures every fragment and only then forwards it to event listeners.

A failing phase never aborts the run: with fallback enabled its partial
output is discarded and replaced by deterministic fallback text, otherwise
the task is marked failed and the next phase starts with empty input.
"""

from __future__ import annotations

import asyncio
import logging
import time

from dbcoach.errors import (
    InvalidTransitionError,
    PhaseExecutionError,
    SessionNotFoundError,
)
from dbcoach.events import EventType, PipelineEventEmitter
from dbcoach.persistence.capture import ChunkCaptureStore
from dbcoach.pipeline.phases import DEFAULT_PHASES, fallback_content
from dbcoach.prompts import render_prompt
from dbcoach.providers.base import RetryBudget, TextGenerator
from dbcoach.schemas.pipeline import (
    GenerationResult,
    PhaseDefinition,
    PipelineConfig,
)
from dbcoach.schemas.streaming import (
    GenerationTask,
    InsightKind,
    SchemaFlavor,
    TaskState,
)

logger = logging.getLogger(__name__)


class GenerationTaskRunner:
    """Drives the phases of one generation run against a TextGenerator.

    One phase runs at a time. Independent runs may share the capture store
    and the emitter but nothing else.
    """

    def __init__(
        self,
        generator: TextGenerator,
        store: ChunkCaptureStore,
        config: PipelineConfig | None = None,
        emitter: PipelineEventEmitter | None = None,
        phases: list[PhaseDefinition] | None = None,
    ) -> None:
        self._generator = generator
        self._store = store
        self._config = config or PipelineConfig()
        self._emitter = emitter or PipelineEventEmitter()
        self._phases = list(DEFAULT_PHASES if phases is None else phases)
        if not self._phases:
            raise ValueError("At least one phase is required")

    @property
    def emitter(self) -> PipelineEventEmitter:
        return self._emitter

    @property
    def phases(self) -> list[PhaseDefinition]:
        return list(self._phases)

    async def run(
        self,
        prompt: str,
        schema_flavor: SchemaFlavor = SchemaFlavor.SQL,
        user_id: str = "anonymous",
    ) -> GenerationResult:
        """Execute every phase and return the final task states.

        Raises:
            ValueError: If the prompt is empty.
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")

        start = time.monotonic()
        session_id = await self._store.start_capture(user_id, prompt, schema_flavor)

        tasks = [
            GenerationTask(
                id=f"{session_id}_{phase.key}",
                key=phase.key,
                title=phase.title,
                agent=phase.agent,
                position=i,
            )
            for i, phase in enumerate(self._phases)
        ]
        await self._store.register_tasks(session_id, tasks)

        logger.info(
            "Generation %s started: %d phases, flavor=%s",
            session_id, len(tasks), schema_flavor,
        )

        previous_output = ""
        budget = RetryBudget(self._config.retry_budget)
        for task, phase in zip(tasks, self._phases):
            await self._run_phase(
                session_id, task, phase, prompt, schema_flavor, previous_output, budget,
            )
            previous_output = task.content

        duration = time.monotonic() - start
        result = GenerationResult(
            session_id=session_id,
            tasks=[t.model_copy(deep=True) for t in tasks],
            duration_seconds=duration,
        )

        if all(t.state == TaskState.FAILED for t in tasks):
            await self._store.mark_error(session_id, "All generation phases failed")

        await self._emitter.emit(
            EventType.SESSION_COMPLETE,
            session_id=session_id,
            total_tasks=len(tasks),
            fallback_count=result.fallback_count,
            failed_count=result.failed_count,
            duration_seconds=round(duration, 3),
        )
        logger.info(
            "Generation %s finished in %.1fs (%d fallback, %d failed)",
            session_id, duration, result.fallback_count, result.failed_count,
        )
        return result

    # ── Phase execution ──────────────────────────────────────────

    async def _run_phase(
        self,
        session_id: str,
        task: GenerationTask,
        phase: PhaseDefinition,
        prompt: str,
        schema_flavor: SchemaFlavor,
        previous_output: str,
        budget: RetryBudget,
    ) -> None:
        task.start()
        await self._store.record_task(session_id, task)
        await self._store.capture_insight(
            session_id, task.agent,
            f"Starting {task.title.lower()}",
            kind=InsightKind.PROGRESS,
            metadata={"task_id": task.id, "position": task.position},
        )
        await self._emitter.emit(
            EventType.TASK_START,
            session_id=session_id,
            task_id=task.id,
            title=task.title,
            agent=task.agent,
            position=task.position,
            total_tasks=len(self._phases),
        )

        system = render_prompt(
            phase.template,
            prompt=prompt.strip(),
            schema_flavor=str(schema_flavor),
            previous_output=self._limit_previous(previous_output),
        )
        messages = [{
            "role": "user",
            "content": (
                f"Produce the {phase.title.lower()} for this {schema_flavor} "
                f"database request:\n\n{prompt.strip()}"
            ),
        }]
        timeout = self._config.phase_timeout(phase.key)
        retries = min(self._config.phase_retries(phase.key), budget.remaining)

        try:
            async with asyncio.timeout(timeout):
                async for fragment in self._generator.stream(
                    messages, system,
                    timeout=timeout, max_retries=retries, retry_budget=budget,
                ):
                    if not isinstance(fragment, str):
                        raise PhaseExecutionError(
                            f"Malformed fragment of type {type(fragment).__name__}"
                        )
                    if not fragment:
                        continue
                    task.append(fragment)
                    await self._deliver(session_id, task, phase, fragment)
        except (SessionNotFoundError, InvalidTransitionError):
            raise
        except TimeoutError:
            await self._handle_failure(
                session_id, task, phase, prompt, schema_flavor,
                f"Phase timed out after {timeout:g}s",
            )
            return
        except Exception as e:
            await self._handle_failure(
                session_id, task, phase, prompt, schema_flavor,
                f"{type(e).__name__}: {e}",
            )
            return

        task.complete()
        await self._finish_task(session_id, task, fallback=False)

    async def _deliver(
        self,
        session_id: str,
        task: GenerationTask,
        phase: PhaseDefinition,
        fragment: str,
        *,
        metadata: dict | None = None,
        replace: bool = False,
    ) -> None:
        """Capture a fragment, then forward exactly that fragment to listeners."""
        persisted = await self._store.capture_chunk(
            session_id,
            task.id,
            task.title,
            task.agent,
            fragment,
            content_kind=phase.content_kind,
            metadata=metadata,
        )
        chunk = persisted.value
        await self._emitter.emit(
            EventType.CONTENT_CHUNK,
            session_id=session_id,
            task_id=task.id,
            chunk_id=chunk.id,
            sequence=chunk.sequence,
            content=fragment,
            content_kind=str(chunk.content_kind),
            durable=persisted.durable,
            replace=replace,
        )

    async def _handle_failure(
        self,
        session_id: str,
        task: GenerationTask,
        phase: PhaseDefinition,
        prompt: str,
        schema_flavor: SchemaFlavor,
        reason: str,
    ) -> None:
        had_partial = bool(task.content)
        logger.warning("Phase %s failed: %s", task.id, reason)

        task.reset_content()
        if had_partial:
            await self._store.discard_task_chunks(session_id, task.id)

        if not self._config.fallback_enabled:
            task.fail(reason)
            await self._store.record_task(session_id, task)
            await self._emitter.emit(
                EventType.ERROR,
                session_id=session_id,
                task_id=task.id,
                error=reason,
            )
            await self._emitter.emit(
                EventType.TASK_COMPLETE,
                session_id=session_id,
                task_id=task.id,
                state=str(task.state),
                content_length=0,
                fallback=False,
            )
            return

        text = fallback_content(phase.key, prompt, schema_flavor)
        task.used_fallback = True
        task.error = reason
        task.append(text)
        await self._store.capture_insight(
            session_id, task.agent,
            f"Using fallback content for {task.title.lower()}: {reason}",
            kind=InsightKind.DECISION,
            metadata={"task_id": task.id, "fallback": True},
        )
        await self._deliver(
            session_id, task, phase, text,
            metadata={"fallback": True},
            replace=had_partial,
        )
        task.complete()
        await self._finish_task(session_id, task, fallback=True)

    async def _finish_task(
        self, session_id: str, task: GenerationTask, *, fallback: bool,
    ) -> None:
        await self._store.record_task(session_id, task)
        await self._store.capture_insight(
            session_id, task.agent,
            f"Completed {task.title.lower()} ({len(task.content)} chars)",
            kind=InsightKind.COMPLETION,
            metadata={"task_id": task.id, "fallback": fallback},
        )
        await self._emitter.emit(
            EventType.TASK_COMPLETE,
            session_id=session_id,
            task_id=task.id,
            state=str(task.state),
            content_length=len(task.content),
            fallback=fallback,
        )

    def _limit_previous(self, previous_output: str) -> str:
        limit = self._config.previous_output_limit
        if limit and len(previous_output) > limit:
            return previous_output[:limit]
        return previous_output
