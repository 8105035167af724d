#!/usr/bin/env python3
"""Roo Relay daemon - TCP bridge to the Roo Code IPC socket.

Connects to the Roo Code VSCode extension over its Unix socket and exposes
a TCP server (and optionally a local Unix socket) for terminal clients:
- Relays TaskCommands from clients to the extension
- Broadcasts extension events to every connected client
- Suppresses repeated notification text
- Reconnects to the extension when it restarts

Usage:
    # Start in the foreground
    ROO_CODE_IPC_SOCKET_PATH=/tmp/roo-code-ipc.sock python -m relay

    # Custom port, explicit socket
    python -m relay --socket /tmp/roo-code-ipc.sock --port 7777

    # Daemon mode (background)
    python -m relay --socket /tmp/roo-code-ipc.sock --daemon

    # Check if running / stop
    python -m relay --status
    python -m relay --stop
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Optional

from dotenv import load_dotenv

from relay.config import FlagParser, RelayConfig, load_relay_config
from relay.dedup import DedupCache, parse_question
from relay.events import Envelope, MessageType, Origin, TaskEventData, TaskEventName, status
from relay.framing import FRAMING_NAMES, get_framing
from relay.ipc import ListenError, RelayServer
from relay.relay_logging import configure_logging
from relay.upstream import UpstreamBridge


# Default paths
DEFAULT_PID_FILE = "/tmp/roo-relay.pid"
DEFAULT_LOG_FILE = "/tmp/roo-relay.log"


logger = logging.getLogger(__name__)


class RelayDaemon:
    """Owns the upstream bridge and the relay server.

    The bridge is created once and handed to the server at construction.
    Upstream envelopes are pushed onto a queue that a single pump task
    drains, so they are broadcast in arrival order.
    """

    def __init__(self, config: RelayConfig, pid_file: Optional[str] = DEFAULT_PID_FILE):
        """Initialize the daemon.

        Args:
            config: Resolved relay configuration.
            pid_file: Path to PID file (None to skip writing one).
        """
        self.config = config
        self.pid_file = pid_file

        self.bridge: Optional[UpstreamBridge] = None
        if config.upstream_socket:
            self.bridge = UpstreamBridge(
                socket_path=config.upstream_socket,
                framing=get_framing(config.upstream_framing),
                retry_interval=config.retry_interval,
                socket_poll_interval=config.socket_poll_interval,
                max_reconnect_attempts=config.max_reconnect_attempts,
                dedup=DedupCache(max_entries=config.dedup_max_entries),
                message_cooldown=config.message_cooldown,
                question_cooldown=config.question_cooldown,
            )

        self.server = RelayServer(
            upstream=self.bridge,
            on_connect=self._on_client_connect,
            on_disconnect=self._on_client_disconnect,
        )

        self.current_task: Optional[str] = None
        self.history: Deque[Envelope] = deque(maxlen=config.history_size)
        self._events: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Bind listeners and start the bridge.

        Raises:
            ListenError: If a listener cannot be bound.
        """
        await self.server.listen((self.config.host, self.config.port))
        if self.config.unix_socket:
            await self.server.listen(self.config.unix_socket)

        self._pump_task = asyncio.create_task(self._pump())
        if self.bridge:
            self.bridge.on_event(self._events.put_nowait)
            await self.bridge.start()
        else:
            logger.error("No IPC socket path provided. Set ROO_CODE_IPC_SOCKET_PATH or pass --socket")

        self._write_pid()
        logger.info("Roo relay started")

    async def run(self) -> None:
        """Start and run until stop() is called."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Shut everything down."""
        if self._shutdown_event.is_set():
            return
        logger.info("Shutting down relay...")

        if self.bridge:
            await self.bridge.close()
        await self.server.shutdown()

        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass

        self._remove_pid()
        self._shutdown_event.set()
        logger.info("Relay shutdown complete")

    # =========================================================================
    # Event routing
    # =========================================================================

    async def _pump(self) -> None:
        """Drain upstream envelopes and broadcast them."""
        while True:
            envelope = await self._events.get()
            try:
                self._relay(envelope)
            except Exception:
                logger.exception(f"Error relaying {envelope.type.value}")

    def _relay(self, envelope: Envelope) -> None:
        if envelope.type == MessageType.TASK_EVENT:
            self._track_task(envelope.data)
            self.history.append(envelope)
        elif envelope.type == MessageType.STATUS:
            envelope = status(
                envelope.data.message,
                connected=envelope.data.connected,
                ready=envelope.data.ready,
                upstream_id=envelope.data.upstream_id,
                current_task=self.current_task,
            )

        delivered = self.server.broadcast(envelope.with_route(Origin.SERVER, None))
        logger.debug(f"Relayed {envelope.type.value} to {delivered} client(s)")

    def _track_task(self, event: TaskEventData) -> None:
        name = event.event_name
        if name == TaskEventName.TASK_STARTED.value:
            self.current_task = event.task_id
            logger.info(f"Task started: {self.current_task}")
        elif name == TaskEventName.TASK_COMPLETED.value:
            logger.info(f"Task completed: {event.task_id}")
            usage = event.payload[1] if len(event.payload) > 1 else None
            if isinstance(usage, dict) and usage.get("totalTokens"):
                logger.info(f"Tokens used: {usage['totalTokens']}")
            self.current_task = None
        elif name == TaskEventName.TASK_ABORTED.value:
            logger.warning(f"Task aborted: {event.task_id}")
            self.current_task = None
        elif name == TaskEventName.MESSAGE.value:
            _log_message(event)

    def _on_client_connect(self, client_id: str) -> None:
        """Send the welcome status and recent history to a new client."""
        if self.bridge and self.bridge.is_ready:
            message = "Ready to accept commands"
        elif self.bridge and self.bridge.is_connected:
            message = "Connected to Roo IPC but waiting for acknowledgment"
        else:
            message = "Not connected to Roo IPC - check ROO_CODE_IPC_SOCKET_PATH"

        self.server.send(client_id, status(
            message,
            client_id=client_id,
            connected=bool(self.bridge and self.bridge.is_connected),
            ready=bool(self.bridge and self.bridge.is_ready),
            current_task=self.current_task,
        ))

        if self.config.replay_count:
            for envelope in list(self.history)[-self.config.replay_count:]:
                self.server.send(client_id, envelope.with_route(Origin.SERVER, client_id))

    def _on_client_disconnect(self, client_id: str) -> None:
        logger.info(f"Client {client_id} left; {self.server.client_count} remaining")

    # =========================================================================
    # PID file
    # =========================================================================

    def _write_pid(self) -> None:
        """Write PID file."""
        if not self.pid_file:
            return
        try:
            with open(self.pid_file, 'w') as f:
                f.write(str(os.getpid()))
        except OSError as e:
            logger.warning(f"Could not write PID file: {e}")

    def _remove_pid(self) -> None:
        """Remove PID file."""
        if not self.pid_file:
            return
        try:
            if os.path.exists(self.pid_file):
                os.remove(self.pid_file)
        except OSError as e:
            logger.warning(f"Could not remove PID file: {e}")


def _log_message(event: TaskEventData) -> None:
    """Log the text of a relayed message event."""
    first = event.payload[0] if event.payload else None
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        return
    text = message.get("text")
    question = parse_question(text.strip()) if isinstance(text, str) else None
    if message.get("type") == "tool" and message.get("tool"):
        logger.info(f"Tool: {message['tool']}")
    elif question:
        _log_question(question)
    elif message.get("type") == "ask" and text:
        logger.info(f"Roo asks: {text}")
    elif text:
        logger.info(f"Roo: {text}")


def _log_question(question: Dict[str, Any]) -> None:
    logger.warning(f"Roo asks: {question['question'].strip()}")
    suggestions = question.get("suggest")
    if not isinstance(suggestions, list) or not suggestions:
        return
    logger.info("Suggestions:")
    for i, suggestion in enumerate(suggestions, 1):
        if isinstance(suggestion, dict):
            answer = suggestion.get("answer", "")
            mode = f" [{suggestion['mode']}]" if suggestion.get("mode") else ""
        else:
            answer, mode = suggestion, ""
        logger.info(f"   {i}. {answer}{mode}")


def daemonize(log_file: str = DEFAULT_LOG_FILE) -> None:
    """Daemonize the process (double-fork method)."""
    # First fork
    pid = os.fork()
    if pid > 0:
        # Parent exits
        sys.exit(0)

    # Create new session
    os.setsid()

    # Second fork
    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    # Redirect standard file descriptors
    sys.stdout.flush()
    sys.stderr.flush()

    with open('/dev/null', 'r') as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())

    with open(log_file, 'a') as log:
        os.dup2(log.fileno(), sys.stdout.fileno())
        os.dup2(log.fileno(), sys.stderr.fileno())


def check_running(pid_file: str = DEFAULT_PID_FILE) -> Optional[int]:
    """Check if a relay is already running.

    Returns:
        The PID if running, None otherwise.
    """
    if not os.path.exists(pid_file):
        return None

    try:
        with open(pid_file, 'r') as f:
            pid = int(f.read().strip())

        # Check if process exists
        os.kill(pid, 0)
        return pid

    except (ValueError, ProcessLookupError, PermissionError):
        # PID file exists but process is dead
        try:
            os.remove(pid_file)
        except OSError:
            pass
        return None


def stop_relay(pid_file: str = DEFAULT_PID_FILE) -> bool:
    """Stop a running relay.

    Returns:
        True if stopped, False if not running.
    """
    pid = check_running(pid_file)
    if not pid:
        return False

    try:
        os.kill(pid, signal.SIGTERM)
        for _ in range(50):  # 5 seconds timeout
            time.sleep(0.1)
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                return True
        # Force kill
        os.kill(pid, signal.SIGKILL)
        return True
    except OSError:
        return False


def build_parser() -> argparse.ArgumentParser:
    parser = FlagParser(
        prog="roo-relay-daemon",
        description="Roo Relay - TCP bridge to the Roo Code IPC socket",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Foreground, socket from environment
  ROO_CODE_IPC_SOCKET_PATH=/tmp/roo-code-ipc.sock python -m relay

  # Custom port and socket
  python -m relay --socket /tmp/roo-code-ipc.sock --port 7777

  # Also accept local clients on a Unix socket
  python -m relay --unix-socket /tmp/roo-relay.sock

  # Daemon mode
  python -m relay --daemon

  # Check status / stop
  python -m relay --status
  python -m relay --stop
        """,
    )

    # Endpoints
    parser.add_argument("--host", help="TCP host to bind to (default: localhost)")
    parser.add_argument("--port", type=int, help="TCP port to listen on (default: 7777)")
    parser.add_argument(
        "--socket",
        metavar="PATH",
        help="Roo Code IPC socket path (default: ROO_CODE_IPC_SOCKET_PATH)",
    )
    parser.add_argument(
        "--unix-socket",
        metavar="PATH",
        help="Also listen for clients on this Unix socket",
    )
    parser.add_argument(
        "--framing",
        choices=FRAMING_NAMES,
        help="Wire framing of the IPC socket (default: node-ipc)",
    )

    # Daemon control
    parser.add_argument("--daemon", "-d", action="store_true", help="Run as daemon (background process)")
    parser.add_argument("--status", action="store_true", help="Check if the relay is running")
    parser.add_argument("--stop", action="store_true", help="Stop a running daemon")

    # Configuration
    parser.add_argument("--env-file", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--pid-file", default=DEFAULT_PID_FILE, help=f"PID file path (default: {DEFAULT_PID_FILE})")
    parser.add_argument("--log-file", default=DEFAULT_LOG_FILE, help=f"Log file for daemon mode (default: {DEFAULT_LOG_FILE})")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle --status
    if args.status:
        pid = check_running(args.pid_file)
        if pid:
            print(f"Roo relay is running (PID: {pid})")
            sys.exit(0)
        print("Roo relay is not running")
        sys.exit(1)

    # Handle --stop
    if args.stop:
        if stop_relay(args.pid_file):
            print("Roo relay stopped")
            sys.exit(0)
        print("Roo relay is not running")
        sys.exit(1)

    load_dotenv(args.env_file)

    try:
        config = load_relay_config(
            Path.cwd(),
            overrides={
                "host": args.host,
                "port": args.port,
                "upstream_socket": args.socket,
                "unix_socket": args.unix_socket,
                "upstream_framing": args.framing,
            },
        )
    except ValueError as e:
        parser.error(str(e))

    pid = check_running(args.pid_file)
    if pid:
        print(f"Error: Roo relay is already running (PID: {pid})")
        print("  Use 'python -m relay --stop' to stop it")
        sys.exit(1)

    if args.daemon:
        print("Starting Roo relay as daemon...")
        print(f"  PID file: {args.pid_file}")
        print(f"  Log file: {args.log_file}")
        print(f"  Listening: {config.host}:{config.port}")
        daemonize(args.log_file)

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        rich_console=not args.daemon,
    )

    async def _run() -> None:
        daemon = RelayDaemon(config, pid_file=args.pid_file)
        await daemon.run()

    try:
        asyncio.run(_run())
    except ListenError:
        # Already logged by RelayServer.listen()
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
