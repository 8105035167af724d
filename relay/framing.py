"""Stream framing for relay transports.

Two framings are in use:

- ``LineFraming``: one JSON envelope per line. Used for downstream TCP
  clients.
- ``NodeIPCFraming``: the framing spoken by the Roo Code extension's IPC
  server. Each frame is ``{"type": "message", "data": <envelope>}`` followed
  by a form-feed byte.

Usage:
    from relay.framing import get_framing

    framing = get_framing("ndjson")
    frame = await framing.read_frame(reader)
    envelope = framing.decode(frame)
"""

import asyncio
import json
from typing import Dict, Optional

from .events import Envelope, ProtocolError, envelope_from_dict, parse_envelope


MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB max


class FrameTooLargeError(ProtocolError):
    """A frame exceeded MAX_MESSAGE_SIZE; the stream cannot be resynced."""
    pass


class Framing:
    """Base class for delimiter-separated framings."""

    name = ""
    delimiter = b"\n"

    def encode(self, envelope: Envelope) -> bytes:
        raise NotImplementedError

    def decode(self, frame: bytes) -> Envelope:
        raise NotImplementedError

    async def read_frame(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        """Read the next non-empty frame from the stream.

        Returns:
            The frame without its delimiter, or None if the connection closed.

        Raises:
            FrameTooLargeError: If no delimiter arrives within the size limit.
        """
        while True:
            try:
                frame = await reader.readuntil(self.delimiter)
                frame = frame[:-len(self.delimiter)]
            except asyncio.IncompleteReadError as e:
                # EOF; a trailing unterminated frame is still delivered
                frame = e.partial
                if not frame.strip():
                    return None
                return frame
            except asyncio.LimitOverrunError as e:
                raise FrameTooLargeError(f"Message too large: over {e.consumed} bytes")

            if len(frame) > MAX_MESSAGE_SIZE:
                raise FrameTooLargeError(f"Message too large: {len(frame)} bytes")
            if frame.strip():
                return frame


class LineFraming(Framing):
    """Newline-delimited JSON."""

    name = "ndjson"
    delimiter = b"\n"

    def encode(self, envelope: Envelope) -> bytes:
        return (envelope.to_json() + "\n").encode("utf-8")

    def decode(self, frame: bytes) -> Envelope:
        return parse_envelope(frame)


class NodeIPCFraming(Framing):
    """Form-feed delimited ``{"type": "message", "data": ...}`` frames."""

    name = "node-ipc"
    delimiter = b"\f"

    def encode(self, envelope: Envelope) -> bytes:
        wrapper = {"type": "message", "data": envelope.to_dict()}
        return (json.dumps(wrapper) + "\f").encode("utf-8")

    def decode(self, frame: bytes) -> Envelope:
        try:
            wrapper = json.loads(frame.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
            raise ProtocolError(f"Invalid JSON: {e}")

        if not isinstance(wrapper, dict):
            raise ProtocolError("IPC frame must be an object")
        if wrapper.get("type") != "message":
            raise ProtocolError(f"Unsupported IPC event: {wrapper.get('type')}")
        return envelope_from_dict(wrapper.get("data"))


_FRAMINGS: Dict[str, type] = {
    LineFraming.name: LineFraming,
    NodeIPCFraming.name: NodeIPCFraming,
}

FRAMING_NAMES = tuple(_FRAMINGS)


def get_framing(name: str) -> Framing:
    """Create a framing by name ("ndjson" or "node-ipc")."""
    framing_class = _FRAMINGS.get(name)
    if not framing_class:
        raise ValueError(f"Unknown framing: {name}")
    return framing_class()
