"""Roo Relay - TCP bridge to the Roo Code IPC socket.

This package provides:
- Envelope protocol: typed messages shared by both sides of the bridge
- RelayServer: TCP/Unix socket server for downstream clients
- UpstreamBridge: reconnecting client for the Roo Code IPC socket
- DedupCache: suppression of repeated notification text

Usage:
    # Start the relay in the foreground
    python -m relay --socket /tmp/roo-code-ipc.sock

    # Start as daemon (background)
    python -m relay --socket /tmp/roo-code-ipc.sock --daemon

    # Talk to it
    roo-relay start "Fix the failing tests"
"""

from .events import (
    # Base
    Envelope,
    MessageType,
    Origin,
    ProtocolError,
    # Payloads
    AckData,
    PeerData,
    TaskConfiguration,
    TaskCommandData,
    TaskCommandName,
    TaskEventData,
    TaskEventName,
    TimestampData,
    StatusData,
    ErrorData,
    # Serialization
    serialize_envelope,
    parse_envelope,
    envelope_from_dict,
)

from .framing import LineFraming, NodeIPCFraming, get_framing
from .registry import ClientRegistry
from .dedup import DedupCache
from .ipc import ListenError, RelayServer
from .upstream import LinkState, UpstreamBridge, UpstreamUnavailableError
from .config import RelayConfig, load_relay_config

__all__ = [
    "Envelope",
    "MessageType",
    "Origin",
    "ProtocolError",
    "AckData",
    "PeerData",
    "TaskConfiguration",
    "TaskCommandData",
    "TaskCommandName",
    "TaskEventData",
    "TaskEventName",
    "TimestampData",
    "StatusData",
    "ErrorData",
    "serialize_envelope",
    "parse_envelope",
    "envelope_from_dict",
    "LineFraming",
    "NodeIPCFraming",
    "get_framing",
    "ClientRegistry",
    "DedupCache",
    "ListenError",
    "RelayServer",
    "LinkState",
    "UpstreamBridge",
    "UpstreamUnavailableError",
    "RelayConfig",
    "load_relay_config",
]
