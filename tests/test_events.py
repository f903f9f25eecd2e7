"""Tests for dbcoach.events: pipeline event emitter."""

from __future__ import annotations

import pytest

from dbcoach.events import EventType, PipelineEvent, PipelineEventEmitter


class TestPipelineEventEmitter:
    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        emitter = PipelineEventEmitter()
        received: list[str] = []

        def sync_listener(event: PipelineEvent) -> None:
            received.append(f"sync:{event.type}")

        async def async_listener(event: PipelineEvent) -> None:
            received.append(f"async:{event.type}")

        emitter.add_listener(sync_listener)
        emitter.add_listener(async_listener)
        await emitter.emit(EventType.TASK_START, task_id="t1")

        assert received == ["sync:task_start", "async:task_start"]

    @pytest.mark.asyncio
    async def test_history_and_payload(self):
        emitter = PipelineEventEmitter()
        event = await emitter.emit(EventType.CONTENT_CHUNK, content="abc", sequence=0)

        assert event.data == {"content": "abc", "sequence": 0}
        assert emitter.history == [event]
        emitter.clear_history()
        assert emitter.history == []

    @pytest.mark.asyncio
    async def test_history_disabled(self):
        emitter = PipelineEventEmitter(keep_history=False)
        await emitter.emit(EventType.INSIGHT, message="x")
        assert emitter.history == []

    @pytest.mark.asyncio
    async def test_listener_error_does_not_propagate(self):
        emitter = PipelineEventEmitter()
        received: list[PipelineEvent] = []

        def broken(event: PipelineEvent) -> None:
            raise RuntimeError("listener bug")

        emitter.add_listener(broken)
        emitter.add_listener(received.append)
        await emitter.emit(EventType.ERROR, error="boom")

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_remove_listener(self):
        emitter = PipelineEventEmitter()
        received: list[PipelineEvent] = []
        emitter.add_listener(received.append)
        emitter.remove_listener(received.append)
        await emitter.emit(EventType.SESSION_COMPLETE)
        assert received == []


def test_event_type_values():
    assert {e.value for e in EventType} == {
        "task_start", "content_chunk", "task_complete",
        "session_complete", "insight", "error",
    }
