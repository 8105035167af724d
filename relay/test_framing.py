"""Tests for relay.framing - newline and node-ipc framings."""

import asyncio
import json

import pytest

from relay.events import ProtocolError, status
from relay.framing import (
    FrameTooLargeError,
    LineFraming,
    NodeIPCFraming,
    get_framing,
)


def _reader(data: bytes, limit: int = 2 ** 16) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestLineFraming:

    def test_encode_is_one_line(self):
        frame = LineFraming().encode(status("hi"))

        assert frame.endswith(b"\n")
        assert frame.count(b"\n") == 1

    @pytest.mark.asyncio
    async def test_reads_frames_and_skips_blank_lines(self):
        framing = LineFraming()
        a = status("a").to_json().encode()
        b = status("b").to_json().encode()
        reader = _reader(a + b"\n\n   \n" + b + b"\n")

        assert await framing.read_frame(reader) == a
        assert await framing.read_frame(reader) == b
        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_unterminated_frame_delivered_at_eof(self):
        reader = _reader(b'{"type": "ping", "origin": "client"}')
        frame = await LineFraming().read_frame(reader)

        assert LineFraming().decode(frame).type.value == "ping"

    @pytest.mark.asyncio
    async def test_oversized_frame_raises(self):
        reader = _reader(b"x" * 200 + b"\n", limit=64)

        with pytest.raises(FrameTooLargeError):
            await LineFraming().read_frame(reader)


class TestNodeIPCFraming:

    def test_encode_wraps_envelope(self):
        frame = NodeIPCFraming().encode(status("hi"))

        assert frame.endswith(b"\f")
        wrapper = json.loads(frame[:-1])
        assert wrapper["type"] == "message"
        assert wrapper["data"]["type"] == "status"

    @pytest.mark.asyncio
    async def test_read_and_decode(self):
        framing = NodeIPCFraming()
        reader = _reader(framing.encode(status("one")) + framing.encode(status("two")))

        first = framing.decode(await framing.read_frame(reader))
        second = framing.decode(await framing.read_frame(reader))

        assert first.data.message == "one"
        assert second.data.message == "two"
        assert await framing.read_frame(reader) is None

    @pytest.mark.parametrize("frame", [
        b"not json",
        b"[]",
        b'{"type": "publish", "data": {}}',
        b'{"type": "message", "data": {"type": "nope", "origin": "server"}}',
        b"[" * 100000,
    ])
    def test_decode_rejects_bad_frames(self, frame):
        with pytest.raises(ProtocolError):
            NodeIPCFraming().decode(frame)


def test_get_framing():
    assert isinstance(get_framing("ndjson"), LineFraming)
    assert isinstance(get_framing("node-ipc"), NodeIPCFraming)
    with pytest.raises(ValueError):
        get_framing("xml")
