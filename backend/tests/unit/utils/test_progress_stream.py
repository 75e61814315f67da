"""
Tests for the SSE progress stream.
"""

import json

import pytest

from utils.progress_stream import ProgressStream, format_sse


async def collect(stream):
    return [frame async for frame in stream.events()]


@pytest.mark.unit
class TestFormatSse:

    def test_frame(self):
        frame = format_sse('step', {'step': 'pulling_image', 'status': 'active'})
        event_line, data_line, *rest = frame.split('\n')
        assert event_line == 'event: step'
        assert json.loads(data_line[len('data: '):]) == {'step': 'pulling_image', 'status': 'active'}
        assert frame.endswith('\n\n')


@pytest.mark.unit
class TestProgressStream:

    @pytest.mark.asyncio
    async def test_events_in_order_until_close(self):
        stream = ProgressStream()
        await stream.send('connected', {})
        await stream.send('log', {'message': 'Pulling'})
        stream.close()

        frames = await collect(stream)
        assert [f.split('\n')[0] for f in frames] == ['event: connected', 'event: log']

    @pytest.mark.asyncio
    async def test_send_after_close_is_ignored(self):
        stream = ProgressStream()
        stream.close()
        await stream.send('log', {'message': 'late'})
        stream.close()

        assert await collect(stream) == []

    @pytest.mark.asyncio
    async def test_full_stream_drops_but_still_closes(self):
        stream = ProgressStream(max_pending=2)
        for n in range(5):
            await stream.send('log', {'n': n})
        stream.close()

        frames = await collect(stream)
        assert len(frames) == 1
        assert '"n": 1' in frames[0]

    @pytest.mark.asyncio
    async def test_heartbeat_while_idle(self):
        stream = ProgressStream(heartbeat=0.01)
        events = stream.events()

        assert await events.__anext__() == ': heartbeat\n\n'
        stream.close()
        with pytest.raises(StopAsyncIteration):
            await events.__anext__()
