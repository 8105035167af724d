"""Envelope Protocol for the Roo relay.

This module defines the message envelope exchanged with downstream clients
and with the upstream peer (the Roo Code extension). Every message on either
transport is a JSON object of the shape:

    {
        "type": "TaskEvent",
        "origin": "server",
        "clientId": "c1",
        "data": {...}
    }

The ``data`` payload is decoded into a dataclass chosen by ``type``. Unknown
types are rejected rather than passed through.

Message Flow:
    Client -> Relay: Connect, TaskCommand, ping, Disconnect
    Relay -> Client: Ack, TaskEvent, status, error, pong
    Upstream -> Relay: Ack, TaskEvent
    Relay -> Upstream: Connect, TaskCommand
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import json


class ProtocolError(ValueError):
    """Raised when a message is not a valid envelope."""
    pass


# =============================================================================
# Enums
# =============================================================================

class MessageType(str, Enum):
    """All envelope types in the protocol."""

    # Connection lifecycle
    ACK = "Ack"
    CONNECT = "Connect"
    DISCONNECT = "Disconnect"

    # Task flow
    TASK_COMMAND = "TaskCommand"  # Client -> Upstream
    TASK_EVENT = "TaskEvent"  # Upstream -> Clients

    # Relay housekeeping
    PING = "ping"
    PONG = "pong"
    STATUS = "status"
    ERROR = "error"


class Origin(str, Enum):
    """Which side of a connection produced an envelope."""
    SERVER = "server"
    CLIENT = "client"


class TaskCommandName(str, Enum):
    """Commands a client may issue to the upstream peer."""
    START_NEW_TASK = "StartNewTask"
    CANCEL_TASK = "CancelTask"
    CLOSE_TASK = "CloseTask"


class TaskEventName(str, Enum):
    """Event names the upstream peer is known to emit.

    The list is not closed: unknown names are still relayed.
    """
    TASK_CREATED = "taskCreated"
    TASK_STARTED = "taskStarted"
    TASK_COMPLETED = "taskCompleted"
    TASK_ABORTED = "taskAborted"
    TASK_PAUSED = "taskPaused"
    TASK_UNPAUSED = "taskUnpaused"
    TASK_MODE_SWITCHED = "taskModeSwitched"
    TASK_SPAWNED = "taskSpawned"
    TASK_ASK_RESPONDED = "taskAskResponded"
    TASK_TOOL_FAILED = "taskToolFailed"
    TASK_TOKEN_USAGE_UPDATED = "taskTokenUsageUpdated"
    MESSAGE = "message"


_TYPE_LOOKUP: Dict[str, MessageType] = {t.value.lower(): t for t in MessageType}
_ORIGIN_LOOKUP: Dict[str, Origin] = {o.value: o for o in Origin}


# =============================================================================
# Payloads
# =============================================================================

def _require(data: Dict[str, Any], key: str, kind: type, context: str) -> Any:
    """Fetch a required key from a payload, checking its type."""
    if key not in data:
        raise ProtocolError(f"{context}: missing '{key}'")
    value = data[key]
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ProtocolError(f"{context}: '{key}' must be {kind.__name__}")
    return value


def _as_dict(data: Any, context: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ProtocolError(f"{context}: data must be an object")
    return data


@dataclass(frozen=True)
class AckData:
    """Identification acknowledgement sent by a server to a new client."""
    client_id: str
    pid: int
    ppid: int

    def to_dict(self) -> Dict[str, Any]:
        return {"clientId": self.client_id, "pid": self.pid, "ppid": self.ppid}

    @classmethod
    def from_dict(cls, data: Any) -> "AckData":
        data = _as_dict(data, "Ack")
        return cls(
            client_id=_require(data, "clientId", str, "Ack"),
            pid=data.get("pid") if isinstance(data.get("pid"), int) else 0,
            ppid=data.get("ppid") if isinstance(data.get("ppid"), int) else 0,
        )


@dataclass(frozen=True)
class PeerData:
    """Payload of Connect/Disconnect; the client id is optional here."""
    client_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"clientId": self.client_id} if self.client_id else {}

    @classmethod
    def from_dict(cls, data: Any) -> "PeerData":
        data = _as_dict(data, "Connect")
        client_id = data.get("clientId")
        return cls(client_id=client_id if isinstance(client_id, str) else None)


@dataclass(frozen=True)
class TaskConfiguration:
    """Body of a StartNewTask command."""
    text: str
    images: List[str] = field(default_factory=list)
    configuration: Dict[str, Any] = field(default_factory=dict)
    new_tab: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "images": list(self.images),
            "configuration": dict(self.configuration),
            "newTab": self.new_tab,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TaskConfiguration":
        data = _as_dict(data, "StartNewTask")
        images = data.get("images") or []
        configuration = data.get("configuration") or {}
        if not isinstance(images, list):
            raise ProtocolError("StartNewTask: 'images' must be a list")
        if not isinstance(configuration, dict):
            raise ProtocolError("StartNewTask: 'configuration' must be an object")
        return cls(
            text=_require(data, "text", str, "StartNewTask"),
            images=images,
            configuration=configuration,
            new_tab=bool(data.get("newTab", False)),
        )


@dataclass(frozen=True)
class TaskCommandData:
    """A command for the upstream peer.

    ``data`` is a TaskConfiguration for StartNewTask and the task id string
    for CancelTask/CloseTask.
    """
    command_name: TaskCommandName
    data: Union[TaskConfiguration, str]

    def to_dict(self) -> Dict[str, Any]:
        body = self.data.to_dict() if isinstance(self.data, TaskConfiguration) else self.data
        return {"commandName": self.command_name.value, "data": body}

    @classmethod
    def from_dict(cls, data: Any) -> "TaskCommandData":
        data = _as_dict(data, "TaskCommand")
        name = _require(data, "commandName", str, "TaskCommand")
        try:
            command_name = TaskCommandName(name)
        except ValueError:
            raise ProtocolError(f"TaskCommand: unknown commandName '{name}'")

        if command_name == TaskCommandName.START_NEW_TASK:
            return cls(command_name, TaskConfiguration.from_dict(data.get("data")))
        return cls(command_name, _require(data, "data", str, f"TaskCommand {name}"))


@dataclass(frozen=True)
class TaskEventData:
    """An event from the upstream peer with positional arguments."""
    event_name: str
    payload: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"eventName": self.event_name, "payload": list(self.payload)}

    @classmethod
    def from_dict(cls, data: Any) -> "TaskEventData":
        data = _as_dict(data, "TaskEvent")
        payload = data.get("payload", [])
        if not isinstance(payload, list):
            raise ProtocolError("TaskEvent: 'payload' must be a list")
        return cls(
            event_name=_require(data, "eventName", str, "TaskEvent"),
            payload=payload,
        )

    @property
    def task_id(self) -> Optional[str]:
        """Task the event belongs to.

        Lifecycle events carry it as the first argument; message events carry
        it as "taskId" inside the first argument.
        """
        first = self.payload[0] if self.payload else None
        if isinstance(first, str):
            return first
        if isinstance(first, dict) and isinstance(first.get("taskId"), str):
            return first["taskId"]
        return None


@dataclass(frozen=True)
class TimestampData:
    """Payload of ping/pong, milliseconds since the epoch."""
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp} if self.timestamp is not None else {}

    @classmethod
    def from_dict(cls, data: Any) -> "TimestampData":
        data = _as_dict(data, "ping")
        ts = data.get("timestamp")
        return cls(timestamp=ts if isinstance(ts, (int, float)) else None)


@dataclass(frozen=True)
class StatusData:
    """Relay/upstream status notification."""
    message: str = ""
    connected: bool = False
    ready: bool = False
    upstream_id: Optional[str] = None
    current_task: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        d.update({
            "message": self.message,
            "connected": self.connected,
            "ready": self.ready,
            "upstreamClientId": self.upstream_id,
            "currentTask": self.current_task,
        })
        return d

    @classmethod
    def from_dict(cls, data: Any) -> "StatusData":
        data = dict(_as_dict(data, "status"))
        message = data.pop("message", "")
        connected = data.pop("connected", False)
        ready = data.pop("ready", False)
        upstream_id = data.pop("upstreamClientId", None)
        current_task = data.pop("currentTask", None)
        return cls(
            message=message if isinstance(message, str) else str(message),
            connected=bool(connected),
            ready=bool(ready),
            upstream_id=upstream_id if isinstance(upstream_id, str) else None,
            current_task=current_task if isinstance(current_task, str) else None,
            extra=data,
        )


@dataclass(frozen=True)
class ErrorData:
    """An error reported to a client."""
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}

    @classmethod
    def from_dict(cls, data: Any) -> "ErrorData":
        data = _as_dict(data, "error")
        return cls(message=_require(data, "message", str, "error"))


Payload = Union[
    AckData,
    PeerData,
    TaskCommandData,
    TaskEventData,
    TimestampData,
    StatusData,
    ErrorData,
]

# Map of message type -> payload class
_PAYLOAD_CLASSES: Dict[MessageType, type] = {
    MessageType.ACK: AckData,
    MessageType.CONNECT: PeerData,
    MessageType.DISCONNECT: PeerData,
    MessageType.TASK_COMMAND: TaskCommandData,
    MessageType.TASK_EVENT: TaskEventData,
    MessageType.PING: TimestampData,
    MessageType.PONG: TimestampData,
    MessageType.STATUS: StatusData,
    MessageType.ERROR: ErrorData,
}


# =============================================================================
# Envelope
# =============================================================================

@dataclass(frozen=True)
class Envelope:
    """A single protocol message."""
    type: MessageType
    origin: Origin
    data: Payload
    client_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d: Dict[str, Any] = {
            "type": self.type.value,
            "origin": self.origin.value,
        }
        if self.client_id is not None:
            d["clientId"] = self.client_id
        d["data"] = self.data.to_dict()
        return d

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())

    def with_route(self, origin: Origin, client_id: Optional[str]) -> "Envelope":
        """Copy with different routing metadata and the same payload."""
        return Envelope(type=self.type, origin=origin, data=self.data, client_id=client_id)


# =============================================================================
# Serialization Helpers
# =============================================================================

def serialize_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to JSON string."""
    return envelope.to_json()


def envelope_from_dict(obj: Any) -> Envelope:
    """Validate a decoded JSON object and build an Envelope.

    Raises:
        ProtocolError: If a required field is missing or has an unknown value.
    """
    if not isinstance(obj, dict):
        raise ProtocolError(f"Envelope must be an object, got {type(obj).__name__}")

    raw_type = obj.get("type")
    if not isinstance(raw_type, str):
        raise ProtocolError("Envelope is missing 'type'")
    message_type = _TYPE_LOOKUP.get(raw_type.lower())
    if message_type is None:
        raise ProtocolError(f"Unknown message type: {raw_type}")

    raw_origin = obj.get("origin")
    if not isinstance(raw_origin, str):
        raise ProtocolError("Envelope is missing 'origin'")
    origin = _ORIGIN_LOOKUP.get(raw_origin.lower())
    if origin is None:
        raise ProtocolError(f"Unknown origin: {raw_origin}")

    client_id = obj.get("clientId")
    if client_id is not None and not isinstance(client_id, str):
        raise ProtocolError("'clientId' must be a string")
    if message_type == MessageType.CONNECT and origin == Origin.CLIENT and not client_id:
        raise ProtocolError("Connect requires a 'clientId'")

    payload = _PAYLOAD_CLASSES[message_type].from_dict(obj.get("data"))
    return Envelope(type=message_type, origin=origin, data=payload, client_id=client_id)


def parse_envelope(raw: Union[bytes, str]) -> Envelope:
    """Parse a raw JSON message into an Envelope.

    Args:
        raw: UTF-8 bytes or text of one message, without framing.

    Returns:
        The validated envelope.

    Raises:
        ProtocolError: If the text is not JSON or fails validation.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Invalid UTF-8: {e}")
    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as e:
        raise ProtocolError(f"Invalid JSON: {e}")
    return envelope_from_dict(obj)


# =============================================================================
# Constructors
# =============================================================================

def ack(client_id: str, pid: int, ppid: int) -> Envelope:
    return Envelope(
        type=MessageType.ACK,
        origin=Origin.SERVER,
        data=AckData(client_id=client_id, pid=pid, ppid=ppid),
        client_id=client_id,
    )


def error(message: str, client_id: Optional[str] = None) -> Envelope:
    return Envelope(
        type=MessageType.ERROR,
        origin=Origin.SERVER,
        data=ErrorData(message=message),
        client_id=client_id,
    )


def status(message: str, client_id: Optional[str] = None, **kwargs) -> Envelope:
    return Envelope(
        type=MessageType.STATUS,
        origin=Origin.SERVER,
        data=StatusData(message=message, **kwargs),
        client_id=client_id,
    )


def pong(timestamp: int, client_id: Optional[str] = None) -> Envelope:
    return Envelope(
        type=MessageType.PONG,
        origin=Origin.SERVER,
        data=TimestampData(timestamp=timestamp),
        client_id=client_id,
    )


def start_new_task(
    text: str,
    cwd: Optional[str] = None,
    images: Optional[List[str]] = None,
    new_tab: bool = False,
) -> TaskCommandData:
    """Build a StartNewTask command, setting workingDirectory when given."""
    configuration: Dict[str, Any] = {}
    if cwd:
        configuration["workingDirectory"] = cwd
    return TaskCommandData(
        command_name=TaskCommandName.START_NEW_TASK,
        data=TaskConfiguration(
            text=text,
            images=list(images or []),
            configuration=configuration,
            new_tab=new_tab,
        ),
    )
