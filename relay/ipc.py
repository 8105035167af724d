"""Relay server for downstream clients.

Accepts connections on TCP and/or Unix domain sockets, identifies clients,
and routes their envelopes. TaskCommands are handed to the upstream bridge;
events from upstream are broadcast to every identified client.

Per-connection state machine:
- CONNECTED: transport accepted, no identity yet
- IDENTIFIED: first client envelope carrying a clientId registered it;
  an Ack with pid/ppid is sent
- ACTIVE: envelopes are routed by type
- CLOSED: transport closed or fatal protocol error; the client is
  unregistered and on_disconnect fires

Usage:
    from relay.ipc import RelayServer

    server = RelayServer(upstream=bridge)
    await server.listen(("localhost", 7777))
    server.broadcast(envelope)
"""

import asyncio
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .events import (
    Envelope,
    MessageType,
    Origin,
    ProtocolError,
    TaskCommandData,
    ack,
    error,
    pong,
    status,
)
from .framing import MAX_MESSAGE_SIZE, Framing, FrameTooLargeError, LineFraming
from .registry import ClientRegistry
from .relay_logging import logging_context
from .upstream import UpstreamUnavailableError


logger = logging.getLogger(__name__)


# A connection whose unsent output grows past this is treated as dead
MAX_WRITE_BUFFER = 16 * 1024 * 1024

Address = Union[str, Tuple[str, int]]


class ListenError(OSError):
    """Binding a listener failed. Fatal for the daemon."""
    pass


class ConnectionState(Enum):
    CONNECTED = "connected"
    IDENTIFIED = "identified"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class RelayConnection:
    """Represents a connected downstream client."""
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    framing: Framing
    connection_id: str
    peer: str = "unknown"
    client_id: Optional[str] = None
    # Id asked for while another live connection held it
    claimed_id: Optional[str] = None
    state: ConnectionState = ConnectionState.CONNECTED
    connected_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_activity: float = field(default_factory=time.time)

    @property
    def alive(self) -> bool:
        return self.state != ConnectionState.CLOSED and not self.writer.is_closing()

    @property
    def label(self) -> str:
        return self.client_id or f"{self.connection_id} ({self.peer})"

    def send(self, envelope: Envelope) -> None:
        """Queue an envelope on the transport.

        Raises:
            ConnectionResetError: If the connection is closed or its
                write buffer is over MAX_WRITE_BUFFER.
        """
        if not self.alive:
            raise ConnectionResetError(f"Connection {self.label} is closed")
        transport = self.writer.transport
        if transport is not None and transport.get_write_buffer_size() > MAX_WRITE_BUFFER:
            raise ConnectionResetError(f"Connection {self.label} is not reading")
        self.writer.write(self.framing.encode(envelope))

    def close(self) -> None:
        self.state = ConnectionState.CLOSED
        self.writer.close()


class RelayServer:
    """Relay between downstream clients and the upstream bridge.

    Handles:
    - Multiple client connections over TCP and Unix sockets
    - Client identification and Ack
    - Command forwarding to the upstream bridge
    - Broadcasting upstream events

    All handlers run on the event loop; a failure while handling one
    message is logged and does not affect other messages or connections.
    """

    def __init__(
        self,
        upstream: Optional[Any] = None,
        framing: Optional[Framing] = None,
        on_connect: Optional[Callable[[str], None]] = None,
        on_disconnect: Optional[Callable[[str], None]] = None,
        pid: Optional[int] = None,
        ppid: Optional[int] = None,
    ):
        """Initialize the relay server.

        Args:
            upstream: Object with send_command(command, origin_client_id),
                normally an UpstreamBridge. None rejects every command.
            framing: Wire framing for accepted connections (default ndjson).
            on_connect: Called with the client id after identification.
            on_disconnect: Called with the client id after an identified
                client's connection closes.
            pid: Process id reported in Acks (default os.getpid()).
            ppid: Parent process id reported in Acks (default os.getppid()).
        """
        self._upstream = upstream
        self._framing = framing or LineFraming()
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self.pid = pid if pid is not None else os.getpid()
        self.ppid = ppid if ppid is not None else os.getppid()

        self.registry = ClientRegistry()
        self._servers: List[asyncio.AbstractServer] = []
        self._unix_paths: List[str] = []
        self._connections: Set[RelayConnection] = set()
        self._connection_counter = 0
        self._listening = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def listen(self, address: Address) -> None:
        """Bind a listener and start accepting connections.

        Args:
            address: A filesystem path for a Unix socket, or (host, port).
                Can be called more than once to listen on several addresses.

        Raises:
            ListenError: If the address cannot be bound.
        """
        try:
            if isinstance(address, str):
                server = await self._listen_unix(address)
            else:
                host, port = address
                server = await asyncio.start_server(
                    self._handle_client, host, port, limit=MAX_MESSAGE_SIZE,
                )
        except OSError as e:
            logger.error(f"Cannot listen on {_format_address(address)}: {e}")
            raise ListenError(e.errno, f"Cannot listen on {_format_address(address)}: {e.strerror or e}") from e

        self._servers.append(server)
        self._listening = True
        for sock in server.sockets:
            logger.info(f"Relay listening on {_format_sockname(sock.getsockname())}")

    async def _listen_unix(self, path: str) -> asyncio.AbstractServer:
        socket_file = Path(path)
        if socket_file.exists():
            if not stat.S_ISSOCK(socket_file.stat().st_mode):
                raise FileExistsError(17, "Path exists and is not a socket", path)
            # Stale socket from a previous run
            socket_file.unlink()
        socket_file.parent.mkdir(parents=True, exist_ok=True)

        server = await asyncio.start_unix_server(
            self._handle_client, path=path, limit=MAX_MESSAGE_SIZE,
        )
        # Owner read/write only
        os.chmod(path, 0o600)
        self._unix_paths.append(path)
        return server

    def close(self) -> None:
        """Stop accepting connections.

        Existing connections stay open and their pending writes are kept.
        """
        for server in self._servers:
            server.close()
        for path in self._unix_paths:
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass
        self._unix_paths.clear()
        if self._listening:
            logger.info("Relay server stopped accepting connections")
        self._listening = False

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting and close every connection."""
        self.close()
        for conn in list(self._connections):
            conn.close()
        for server in self._servers:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for connections to close")
        self._servers.clear()

    # =========================================================================
    # Sending
    # =========================================================================

    def send(self, target: Union[str, RelayConnection], envelope: Envelope) -> bool:
        """Send an envelope to one client, by client id or connection.

        Returns:
            True if the envelope was queued. Unknown targets and failed
            writes return False; a failed write also drops the connection.
        """
        if isinstance(target, str):
            conn = self.registry.lookup(target)
            if conn is None:
                logger.warning(f"Cannot send {envelope.type.value}: unknown client {target}")
                return False
        else:
            conn = target

        try:
            conn.send(envelope)
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(f"Send to {conn.label} failed: {e}")
            self.registry.unregister(conn)
            conn.close()
            return False

    def broadcast(self, envelope: Envelope) -> int:
        """Send an envelope to every identified client."""
        return self.registry.broadcast(envelope)

    # =========================================================================
    # Connection handling
    # =========================================================================

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection."""
        self._connection_counter += 1
        peer = writer.get_extra_info('peername')
        conn = RelayConnection(
            reader=reader,
            writer=writer,
            framing=self._framing,
            connection_id=f"conn_{self._connection_counter}",
            peer=_format_sockname(peer) if peer else "local",
        )
        self._connections.add(conn)
        logger.info(f"Client connected: {conn.label}. Waiting for identification")

        try:
            await self._read_loop(conn)
        except asyncio.CancelledError:
            pass
        finally:
            self._drop(conn)
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _read_loop(self, conn: RelayConnection) -> None:
        while conn.alive:
            try:
                frame = await conn.framing.read_frame(conn.reader)
            except FrameTooLargeError as e:
                logger.warning(f"Closing {conn.label}: {e}")
                return
            except (ConnectionError, OSError) as e:
                logger.warning(f"Read error from {conn.label}: {e}")
                return
            if frame is None:
                return

            conn.last_activity = time.time()
            with logging_context(client_id=conn.client_id or conn.connection_id):
                try:
                    envelope = conn.framing.decode(frame)
                except ProtocolError as e:
                    logger.warning(f"Dropping invalid message from {conn.label}: {e}")
                    continue

                try:
                    self._handle_envelope(conn, envelope)
                except Exception:
                    logger.exception(f"Error handling {envelope.type.value} from {conn.label}")

    def _drop(self, conn: RelayConnection) -> None:
        """Tear down a connection; safe to call more than once."""
        if conn not in self._connections:
            return
        self._connections.discard(conn)
        conn.close()
        client_id = self.registry.unregister(conn)
        logger.info(f"Client disconnected: {conn.label}. Total clients: {self.registry.size()}")

        if client_id and self._on_disconnect:
            try:
                self._on_disconnect(client_id)
            except Exception:
                logger.exception("Error in disconnect callback")

    def _handle_envelope(self, conn: RelayConnection, envelope: Envelope) -> None:
        """Route one envelope from a client."""
        if envelope.type == MessageType.PING:
            self.send(conn, pong(int(time.time() * 1000), client_id=conn.client_id))
            return

        if envelope.origin != Origin.CLIENT:
            logger.warning(f"Ignoring {envelope.type.value} with origin {envelope.origin.value}")
            return

        if envelope.client_id and conn.client_id is None:
            self._identify(conn, envelope.client_id)
        elif envelope.client_id and envelope.client_id != conn.client_id:
            logger.warning(
                f"Envelope claims clientId {envelope.client_id}; connection is {conn.client_id}"
            )

        if envelope.type == MessageType.CONNECT:
            return
        if envelope.type == MessageType.DISCONNECT:
            logger.info(f"Client {conn.label} requested disconnect")
            conn.close()
            return
        if envelope.type == MessageType.TASK_COMMAND:
            self._forward_command(conn, envelope.data)
            return

        logger.debug(f"Unhandled {envelope.type.value} from {conn.label}")

    def _identify(self, conn: RelayConnection, client_id: str) -> bool:
        """Register a connection under client_id and send the Ack.

        Returns:
            False if client_id is bound to another live connection. The
            connection then stays unbound, and its commands are routed under
            the claimed id.
        """
        if not self.registry.register(conn, client_id):
            if conn.claimed_id != client_id:
                logger.warning(f"Client id {client_id} is already registered; {conn.label} stays unbound")
                self.send(conn, error(f"Client id already registered: {client_id}"))
            conn.claimed_id = client_id
            return False

        conn.client_id = client_id
        conn.state = ConnectionState.IDENTIFIED
        self.send(conn, ack(client_id, self.pid, self.ppid))
        conn.state = ConnectionState.ACTIVE

        if self._on_connect:
            try:
                self._on_connect(client_id)
            except Exception:
                logger.exception("Error in connect callback")
        return True

    def _forward_command(self, conn: RelayConnection, command: TaskCommandData) -> None:
        client_id = conn.client_id or conn.claimed_id
        if client_id is None:
            self.send(conn, error("Client not identified; send Connect first"))
            return

        try:
            if self._upstream is None:
                raise UpstreamUnavailableError("Not connected to Roo Code")
            self._upstream.send_command(command, origin_client_id=client_id)
        except UpstreamUnavailableError as e:
            logger.warning(f"Rejected {command.command_name.value}: {e}")
            self.send(conn, error(str(e), client_id=client_id))
            return

        self.send(conn, status(
            "Task sent",
            client_id=client_id,
            connected=True,
            ready=True,
            extra={"commandName": command.command_name.value},
        ))

    # =========================================================================
    # Status Methods
    # =========================================================================

    @property
    def client_count(self) -> int:
        """Number of identified clients."""
        return self.registry.size()

    @property
    def connection_count(self) -> int:
        """Number of open connections, identified or not."""
        return len(self._connections)

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def addresses(self) -> List[Any]:
        """Bound socket names of all listeners."""
        return [sock.getsockname() for server in self._servers for sock in server.sockets]

    @property
    def port(self) -> Optional[int]:
        """Port of the first TCP listener."""
        for name in self.addresses:
            if isinstance(name, tuple):
                return name[1]
        return None

    def get_clients(self) -> Dict[str, Dict[str, Any]]:
        """Get info about identified clients."""
        return {
            client_id: {
                "peer": conn.peer,
                "connected_at": conn.connected_at,
                "last_activity": conn.last_activity,
            }
            for client_id, conn in self.registry.items()
        }


def _format_sockname(name: Any) -> str:
    if isinstance(name, tuple):
        return f"{name[0]}:{name[1]}"
    return str(name)


def _format_address(address: Address) -> str:
    if isinstance(address, str):
        return address
    return f"{address[0]}:{address[1]}"
