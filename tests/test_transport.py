"""
Tests for the server-push channel and the wire framing shared by server and
client.
"""

import asyncio
import json

from speedmon.transport import StreamTransport, encode_event, parse_sse_lines


def test_encode_event_is_compact_data_frame():
    frame = encode_event({"type": "progress", "stage": "ping", "progress": 12.5})
    assert frame == 'data: {"type":"progress","stage":"ping","progress":12.5}\n\n'


def test_parse_sse_lines():
    wire = (
        encode_event({"type": "progress", "progress": 5})
        + ": keep-alive comment\n\n"
        + "data: {not json}\n\n"
        + 'data: {"type":\n'
        + 'data: "result"}\n\n'
        + 'data: {"type": "error", "message": "x"}'
    )
    messages = list(parse_sse_lines(wire.split("\n")))
    assert [m["type"] for m in messages] == ["progress", "result", "error"]


def test_parse_sse_lines_accepts_bytes():
    lines = [b'data: {"type":"result"}', b""]
    assert list(parse_sse_lines(lines)) == [{"type": "result"}]


def test_emit_after_close_is_dropped():
    async def scenario():
        transport = StreamTransport("t")
        assert transport.emit({"type": "progress"})
        transport.close()
        assert not transport.emit({"type": "result"})
        return transport, [frame async for frame in transport.frames()]

    transport, frames = asyncio.run(scenario())
    assert transport.sent == 1
    assert len(frames) == 1
    assert json.loads(frames[0][len("data: "):])["type"] == "progress"


def test_disconnect_fires_callback_once():
    calls = []
    transport = StreamTransport("t", on_disconnect=lambda: calls.append(1))
    transport.disconnect()
    transport.disconnect()
    assert calls == [1]
    assert transport.closed and transport.disconnected
    assert not transport.emit({"type": "progress"})


def test_disconnect_after_normal_close_is_silent():
    calls = []
    transport = StreamTransport("t", on_disconnect=lambda: calls.append(1))
    transport.close()
    transport.disconnect()
    assert calls == []
    assert not transport.disconnected
