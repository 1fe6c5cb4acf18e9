import json

import pytest

from relay.schemas import ChunkEvent, DoneEvent, ErrorEvent, ResearchStepEvent, StatusEvent
from relay.transport import EventStream, sse_format


@pytest.mark.asyncio
async def test_events_stop_after_terminal_event():
    stream = EventStream()
    assert await stream.send(StatusEvent(message="working"))
    assert await stream.send(ChunkEvent(content="a"))
    assert await stream.send(DoneEvent())
    assert not await stream.send(ErrorEvent(message="late"))

    seen = [event.type async for event in stream.events()]
    assert seen == ["status", "chunk", "done"]


@pytest.mark.asyncio
async def test_writes_after_close_are_dropped():
    stream = EventStream()
    await stream.send(ChunkEvent(content="kept"))
    stream.close()
    stream.close()
    assert not await stream.send(ChunkEvent(content="dropped"))
    assert stream.closed

    seen = [event async for event in stream.events()]
    assert [e.content for e in seen] == ["kept"]


@pytest.mark.asyncio
async def test_sse_frames_use_wire_field_names():
    stream = EventStream()
    await stream.send(ResearchStepEvent(step_type="thinking", message="🤔 go"))
    await stream.send(DoneEvent())
    frames = [frame async for frame in stream.sse()]
    assert frames[0].startswith("data: ") and frames[0].endswith("\n\n")
    assert json.loads(frames[0][len("data: "):]) == {
        "type": "research_step",
        "stepType": "thinking",
        "message": "🤔 go",
    }
    assert json.loads(frames[1][len("data: "):]) == {"type": "done"}


def test_sse_format():
    assert sse_format({"type": "chunk", "content": "x"}) == 'data: {"type": "chunk", "content": "x"}\n\n'
