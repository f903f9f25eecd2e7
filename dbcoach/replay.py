"""Replay engine for captured sessions.

Re-emits a session's chunk log on an asyncio tick loop so a presentation
layer can watch a finished run stream again. Replay reads the chunk log
and never modifies it; the displayed content it builds always converges
to the captured text, whatever the speed or granularity.
"""

from __future__ import annotations

import asyncio
import logging

from dbcoach.events import EventType, PipelineEventEmitter
from dbcoach.schemas.pipeline import ReplayMode
from dbcoach.schemas.streaming import CapturedSession, StreamChunk

logger = logging.getLogger(__name__)


class ReplayEngine:
    """Plays back a captured chunk log at a configurable speed.

    In ``chunk`` mode each tick reveals one whole chunk; in ``character``
    mode each tick reveals up to ``chars_per_tick`` characters of the
    current chunk. A tick lasts ``tick_interval / speed`` seconds.
    """

    def __init__(
        self,
        source: CapturedSession | list[StreamChunk],
        *,
        speed: float = 1.0,
        mode: ReplayMode = ReplayMode.CHUNK,
        chars_per_tick: int = 4,
        tick_interval: float = 0.025,
        emitter: PipelineEventEmitter | None = None,
    ) -> None:
        chunks = source.chunks if isinstance(source, CapturedSession) else source
        self._session_id = (
            source.session.id if isinstance(source, CapturedSession)
            else (chunks[0].session_id if chunks else "")
        )
        self._chunks = self._ordered(chunks)
        self._task_ids: list[str] = []
        for chunk in self._chunks:
            if chunk.task_id not in self._task_ids:
                self._task_ids.append(chunk.task_id)
        self._full = {
            task_id: "".join(c.content for c in self._chunks if c.task_id == task_id)
            for task_id in self._task_ids
        }

        self.set_speed(speed)
        if chars_per_tick <= 0:
            raise ValueError("chars_per_tick must be positive")
        if tick_interval < 0:
            raise ValueError("tick_interval must not be negative")
        self._mode = ReplayMode(mode)
        self._chars_per_tick = chars_per_tick
        self._tick_interval = tick_interval
        self._emitter = emitter or PipelineEventEmitter(keep_history=False)

        self._displayed: dict[str, str] = dict.fromkeys(self._task_ids, "")
        self._index = 0
        self._offset = 0
        self._loop_task: asyncio.Task | None = None

    @staticmethod
    def _ordered(chunks: list[StreamChunk]) -> list[StreamChunk]:
        """Capture order across tasks, sequence order within each task."""
        first_seen: dict[str, int] = {}
        for i, chunk in enumerate(chunks):
            first_seen.setdefault(chunk.task_id, i)
        return sorted(chunks, key=lambda c: (first_seen[c.task_id], c.sequence))

    # ── State ────────────────────────────────────────────────────

    @property
    def emitter(self) -> PipelineEventEmitter:
        return self._emitter

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def mode(self) -> ReplayMode:
        return self._mode

    @property
    def is_playing(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_complete(self) -> bool:
        return self._index >= len(self._chunks)

    @property
    def progress(self) -> float:
        """Fraction of captured characters currently displayed (0.0 to 1.0)."""
        total = sum(len(text) for text in self._full.values())
        if total == 0:
            return 1.0
        shown = sum(len(text) for text in self._displayed.values())
        return shown / total

    @property
    def tick_seconds(self) -> float:
        return self._tick_interval / self._speed

    def displayed_content(self) -> dict[str, str]:
        return dict(self._displayed)

    def full_content(self) -> dict[str, str]:
        return dict(self._full)

    def set_speed(self, speed: float) -> None:
        """Change the speed multiplier; takes effect on the next tick."""
        if speed <= 0:
            raise ValueError("Replay speed must be positive")
        self._speed = speed

    # ── Control ──────────────────────────────────────────────────

    def start_replay(self) -> asyncio.Task:
        """Reset displayed content and start the tick loop.

        Restarting while a replay is running cancels the running loop first.
        Must be called from inside a running event loop.
        """
        self._cancel_loop()
        self._displayed = dict.fromkeys(self._task_ids, "")
        self._index = 0
        self._offset = 0
        logger.debug(
            "Replay of %s started: %d chunks, mode=%s, speed=%.2fx",
            self._session_id, len(self._chunks), self._mode, self._speed,
        )
        self._loop_task = asyncio.create_task(self._run())
        return self._loop_task

    def stop_replay(self) -> None:
        """Cancel the tick loop and show every task's full captured content."""
        self._cancel_loop()
        self._displayed = dict(self._full)
        self._index = len(self._chunks)
        self._offset = 0

    async def run_to_completion(self) -> dict[str, str]:
        """Start a replay if none is running and wait until it finishes.

        Returns the displayed content, which equals the captured content.
        """
        if self._loop_task is None:
            if self.is_complete:
                return self.displayed_content()
            self.start_replay()
        await asyncio.wait({self._loop_task})
        return self.displayed_content()

    def _cancel_loop(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self._loop_task = None

    # ── Tick loop ────────────────────────────────────────────────

    async def _run(self) -> None:
        while not self.is_complete:
            await asyncio.sleep(self.tick_seconds)
            await self._tick()
        await self._emitter.emit(
            EventType.SESSION_COMPLETE,
            session_id=self._session_id,
            total_tasks=len(self._task_ids),
            replay=True,
        )

    async def _tick(self) -> None:
        chunk = self._chunks[self._index]
        first_of_task = self._index == 0 or self._chunks[self._index - 1].task_id != chunk.task_id
        if first_of_task and self._offset == 0:
            await self._emitter.emit(
                EventType.TASK_START,
                session_id=self._session_id,
                task_id=chunk.task_id,
                title=chunk.task_title,
                agent=chunk.agent,
                position=self._task_ids.index(chunk.task_id),
                total_tasks=len(self._task_ids),
                replay=True,
            )
            if self.is_complete:
                # stopped by a listener
                return

        if self._mode == ReplayMode.CHUNK:
            fragment = chunk.content
            self._advance_chunk()
        else:
            end = self._offset + self._chars_per_tick
            fragment = chunk.content[self._offset:end]
            self._offset = end
            if self._offset >= len(chunk.content):
                self._advance_chunk()

        self._displayed[chunk.task_id] += fragment
        await self._emitter.emit(
            EventType.CONTENT_CHUNK,
            session_id=self._session_id,
            task_id=chunk.task_id,
            chunk_id=chunk.id,
            sequence=chunk.sequence,
            content=fragment,
            content_kind=str(chunk.content_kind),
            replay=True,
        )

    def _advance_chunk(self) -> None:
        self._index += 1
        self._offset = 0
