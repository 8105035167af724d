"""Bridge to the upstream peer (the Roo Code extension's IPC socket).

Maintains the single logical connection to the upstream peer, turns its
event stream into envelopes for the relay, and writes downstream
TaskCommands to it.

The link uses a state machine:
- DISCONNECTED -> CONNECTING (socket path exists, attempt starts)
- CONNECTING -> CONNECTED (transport open, Connect sent)
- CONNECTED -> READY (Ack received with our upstream client id)
- CONNECTED/READY -> DISCONNECTED (transport closed or failed, retry later)
- * -> CLOSED (close() called, or the reconnect limit was reached)

Usage:
    bridge = UpstreamBridge(socket_path="/tmp/roo-code-ipc.sock")
    bridge.on_event(queue.put_nowait)
    await bridge.start()
    ...
    bridge.send_command(start_new_task("Fix the tests"))
"""

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .dedup import (
    DEFAULT_MESSAGE_COOLDOWN,
    DEFAULT_QUESTION_COOLDOWN,
    DedupCache,
    dedup_key_for_event,
)
from .events import (
    Envelope,
    MessageType,
    Origin,
    PeerData,
    ProtocolError,
    TaskCommandData,
    pong,
    status,
)
from .framing import MAX_MESSAGE_SIZE, Framing, FrameTooLargeError, NodeIPCFraming


logger = logging.getLogger(__name__)


DEFAULT_RETRY_INTERVAL = 1.5
DEFAULT_SOCKET_POLL_INTERVAL = 2.0

EventHandler = Callable[[Envelope], None]


class LinkState(Enum):
    """State of the upstream link."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"
    CLOSED = "closed"


class UpstreamUnavailableError(RuntimeError):
    """Raised when a command is sent while the link is not Ready."""
    pass


class UpstreamBridge:
    """Client-role connection to the upstream peer.

    Events are delivered to handlers in the order they arrive. TaskEvents
    carrying free text pass through a DedupCache first; structural events
    are always delivered. The bridge also emits ``status`` envelopes on
    connect, ready and disconnect.

    Attributes:
        socket_path: Path of the upstream Unix socket.
        state: Current LinkState.
        client_id: Client id assigned by the peer's Ack (None until Ready).
    """

    def __init__(
        self,
        socket_path: str,
        framing: Optional[Framing] = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        socket_poll_interval: float = DEFAULT_SOCKET_POLL_INTERVAL,
        max_reconnect_attempts: Optional[int] = None,
        dedup: Optional[DedupCache] = None,
        message_cooldown: float = DEFAULT_MESSAGE_COOLDOWN,
        question_cooldown: float = DEFAULT_QUESTION_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the bridge.

        Args:
            socket_path: Path of the upstream peer's Unix socket.
            framing: Wire framing; defaults to node-ipc frames.
            retry_interval: Seconds between connection attempts.
            socket_poll_interval: Seconds between checks for a missing socket.
            max_reconnect_attempts: Consecutive failed attempts (connects or
                socket polls) before giving up. None retries forever.
            dedup: Cache gating repeated text notifications.
            message_cooldown: Dedup window for plain notifications.
            question_cooldown: Dedup window for question messages.
            clock: Time source for dedup decisions.
        """
        self.socket_path = socket_path
        self.retry_interval = retry_interval
        self.socket_poll_interval = socket_poll_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.message_cooldown = message_cooldown
        self.question_cooldown = question_cooldown
        self._framing = framing or NodeIPCFraming()
        self._dedup = dedup or DedupCache()
        self._clock = clock

        self._handlers: List[EventHandler] = []
        self._state = LinkState.DISCONNECTED
        self._client_id: Optional[str] = None
        self._local_id: Optional[str] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._ready_event = asyncio.Event()
        self._failures = 0

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def is_connected(self) -> bool:
        return self._state in (LinkState.CONNECTED, LinkState.READY)

    @property
    def is_ready(self) -> bool:
        return self._state == LinkState.READY

    @property
    def dedup(self) -> DedupCache:
        return self._dedup

    # =========================================================================
    # Public API
    # =========================================================================

    def on_event(self, handler: EventHandler) -> None:
        """Register a callback invoked for every delivered envelope."""
        self._handlers.append(handler)

    async def start(self) -> None:
        """Start the connect/reconnect loop in a background task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        """Connect and reconnect until closed or the attempt limit is hit."""
        while not self._closed:
            if not Path(self.socket_path).exists():
                if not await self._wait_for_socket():
                    break

            self._transition_to(LinkState.CONNECTING)
            try:
                reader, writer = await asyncio.open_unix_connection(
                    self.socket_path,
                    limit=MAX_MESSAGE_SIZE,
                )
            except OSError as e:
                self._transition_to(LinkState.DISCONNECTED)
                self._failures += 1
                logger.warning(f"Upstream connection failed ({self._failures}): {e}")
                if self._limit_reached():
                    break
                await asyncio.sleep(self.retry_interval)
                continue

            self._failures = 0
            self._writer = writer
            try:
                self._on_connected()
                await self._read_loop(reader)
            finally:
                self._on_disconnected()

            if not self._closed:
                await asyncio.sleep(self.retry_interval)

        self._transition_to(LinkState.CLOSED)

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the link is Ready.

        Returns:
            True if Ready, False on timeout.
        """
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def send_command(self, command: TaskCommandData, origin_client_id: Optional[str] = None) -> Envelope:
        """Write a TaskCommand to the upstream peer.

        Args:
            command: The command to send.
            origin_client_id: Downstream client that issued it, for logging.

        Returns:
            The envelope written upstream.

        Raises:
            UpstreamUnavailableError: If the link is not Ready. Nothing is
                queued in that case.
        """
        if self._state == LinkState.CLOSED:
            raise UpstreamUnavailableError("Upstream link closed")
        if self._state == LinkState.CONNECTED:
            raise UpstreamUnavailableError("Connection not fully established")
        writer = self._writer
        if self._state != LinkState.READY or writer is None or writer.is_closing():
            raise UpstreamUnavailableError("Not connected to Roo Code")

        envelope = Envelope(
            type=MessageType.TASK_COMMAND,
            origin=Origin.CLIENT,
            data=command,
            client_id=self._client_id,
        )
        try:
            writer.write(self._framing.encode(envelope))
        except (ConnectionError, OSError) as e:
            raise UpstreamUnavailableError(f"Error sending task: {e}") from e

        source = f" for {origin_client_id}" if origin_client_id else ""
        logger.info(f"Sent {command.command_name.value} upstream{source}")
        return envelope

    async def close(self) -> None:
        """Close the link permanently."""
        self._closed = True
        if self._writer is not None:
            self._writer.close()

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._transition_to(LinkState.CLOSED)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _transition_to(self, new_state: LinkState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        if new_state == LinkState.READY:
            self._ready_event.set()
        else:
            self._ready_event.clear()
        logger.debug(f"Upstream link: {old_state.value} -> {new_state.value}")

    def _limit_reached(self) -> bool:
        if self.max_reconnect_attempts is None or self._failures < self.max_reconnect_attempts:
            return False
        logger.error(
            f"Giving up on upstream {self.socket_path} after {self._failures} attempts"
        )
        return True

    async def _wait_for_socket(self) -> bool:
        """Poll until the socket path exists.

        Returns:
            False if closed or the attempt limit was reached while waiting.
        """
        logger.warning(f"IPC socket does not exist: {self.socket_path}")
        logger.warning("Make sure Roo Code extension is running with IPC enabled. Waiting...")
        while not self._closed:
            await asyncio.sleep(self.socket_poll_interval)
            if Path(self.socket_path).exists():
                logger.info("IPC socket detected, connecting")
                return True
            self._failures += 1
            if self._limit_reached():
                return False
        return False

    def _on_connected(self) -> None:
        self._transition_to(LinkState.CONNECTED)
        logger.info(f"Connected to Roo Code IPC server at {self.socket_path}")
        self._emit(status("Connected to Roo Code", connected=True))

        self._local_id = f"roo-relay-{int(time.time() * 1000)}"
        self._write(Envelope(
            type=MessageType.CONNECT,
            origin=Origin.CLIENT,
            data=PeerData(client_id=self._local_id),
            client_id=self._local_id,
        ))

    def _on_disconnected(self) -> None:
        was_connected = self.is_connected
        if self._writer is not None:
            self._writer.close()
        self._writer = None
        self._client_id = None

        if self._closed:
            return
        self._transition_to(LinkState.DISCONNECTED)
        if was_connected:
            logger.warning("Disconnected from Roo Code IPC server")
            self._emit(status("Disconnected from Roo Code", connected=False))

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while not self._closed:
            try:
                frame = await self._framing.read_frame(reader)
            except FrameTooLargeError as e:
                logger.error(f"Upstream protocol error, dropping link: {e}")
                return
            except (ConnectionError, OSError) as e:
                logger.warning(f"Upstream read error: {e}")
                return
            if frame is None:
                return

            try:
                envelope = self._framing.decode(frame)
            except ProtocolError as e:
                logger.warning(f"Dropping invalid upstream message: {e}")
                continue

            try:
                self._handle_envelope(envelope)
            except Exception:
                logger.exception(f"Error handling upstream {envelope.type.value}")

    def _handle_envelope(self, envelope: Envelope) -> None:
        logger.debug(f"Received IPC message: {envelope.type.value}")

        if envelope.type == MessageType.ACK:
            self._client_id = envelope.data.client_id
            self._transition_to(LinkState.READY)
            logger.info(f"Received client ID: {self._client_id}")
            self._emit(status(
                "Ready to accept commands",
                connected=True,
                ready=True,
                upstream_id=self._client_id,
            ))

        elif envelope.type == MessageType.TASK_EVENT:
            gate = dedup_key_for_event(
                envelope.data,
                message_cooldown=self.message_cooldown,
                question_cooldown=self.question_cooldown,
            )
            if gate is not None:
                key, cooldown = gate
                if not self._dedup.should_emit(key, cooldown, now=self._clock()):
                    logger.debug(f"Suppressed repeated message: {key[:80]}")
                    return
            self._emit(envelope)

        elif envelope.type == MessageType.PING:
            self._write(pong(int(time.time() * 1000), client_id=self._client_id))

        else:
            logger.warning(f"Unknown IPC message type: {envelope.type.value}")

    def _write(self, envelope: Envelope) -> None:
        if self._writer is None or self._writer.is_closing():
            return
        try:
            self._writer.write(self._framing.encode(envelope))
        except (ConnectionError, OSError) as e:
            logger.warning(f"Upstream write failed: {e}")

    def _emit(self, envelope: Envelope) -> None:
        for handler in list(self._handlers):
            try:
                handler(envelope)
            except Exception:
                logger.exception("Error in upstream event handler")
