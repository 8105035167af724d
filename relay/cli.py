#!/usr/bin/env python3
"""Command-line client for the Roo relay.

Connects to a running relay daemon over TCP (or its local Unix socket), sends
task commands and shows relayed events.

Usage:
    # Start a task and follow it until it completes
    roo-relay start "Add type hints to utils.py" --cwd ~/project

    # Start a task and return immediately
    roo-relay start "Write a changelog" --detach

    # List tasks the relay has seen recently
    roo-relay ls

    # Follow the events of one task
    roo-relay attach 1d2c3b4a

    # Prompt loop: every line starts a task, /help lists commands
    roo-relay interactive

    # Cancel a running task
    roo-relay cancel 1d2c3b4a

    # Show every relayed event
    roo-relay watch

    # Check the relay is reachable
    roo-relay ping --port 7777
    roo-relay --socket /tmp/roo-relay.sock ping
"""

import argparse
import asyncio
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from relay.config import FlagParser
from relay.events import (
    AckData,
    Envelope,
    MessageType,
    Origin,
    PeerData,
    ProtocolError,
    TaskCommandData,
    TaskCommandName,
    TaskEventName,
    TimestampData,
    start_new_task,
)
from relay.framing import MAX_MESSAGE_SIZE, LineFraming


DEFAULT_HOST = "localhost"
DEFAULT_PORT = 7777

console = Console()


class RelayClientError(Exception):
    """The relay rejected a request or closed the connection."""
    pass


class RelayClient:
    """Minimal async client for the relay's newline-delimited protocol.

    Args:
        host: Relay TCP host.
        port: Relay TCP port.
        client_id: Id to identify with; generated when omitted.
        socket_path: Connect to this Unix socket instead of host/port.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        client_id: Optional[str] = None,
        socket_path: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.socket_path = socket_path
        self.client_id = client_id or f"cli-{os.getpid()}-{int(time.time() * 1000)}"
        self._framing = LineFraming()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._identified = False

    @property
    def address(self) -> str:
        return self.socket_path or f"{self.host}:{self.port}"

    async def open(self, timeout: float = 5.0) -> None:
        """Open the connection without identifying."""
        if self.socket_path:
            opening = asyncio.open_unix_connection(self.socket_path, limit=MAX_MESSAGE_SIZE)
        else:
            opening = asyncio.open_connection(self.host, self.port, limit=MAX_MESSAGE_SIZE)
        self._reader, self._writer = await asyncio.wait_for(opening, timeout=timeout)

    async def connect(self, timeout: float = 5.0) -> AckData:
        """Open the connection and identify.

        Returns:
            The Ack payload from the relay.

        Raises:
            RelayClientError: If the relay answers with an error or closes.
        """
        await self.open(timeout)
        await self.send(Envelope(
            type=MessageType.CONNECT,
            origin=Origin.CLIENT,
            data=PeerData(client_id=self.client_id),
            client_id=self.client_id,
        ))

        async def _wait_ack() -> AckData:
            while True:
                envelope = await self.receive()
                if envelope is None:
                    raise RelayClientError("Relay closed the connection")
                if envelope.type == MessageType.ERROR:
                    raise RelayClientError(envelope.data.message)
                if envelope.type == MessageType.ACK:
                    self._identified = True
                    return envelope.data

        return await asyncio.wait_for(_wait_ack(), timeout=timeout)

    async def send(self, envelope: Envelope) -> None:
        if self._writer is None:
            raise RelayClientError("Not connected")
        self._writer.write(self._framing.encode(envelope))
        await self._writer.drain()

    async def send_command(self, command: TaskCommandData) -> None:
        await self.send(Envelope(
            type=MessageType.TASK_COMMAND,
            origin=Origin.CLIENT,
            data=command,
            client_id=self.client_id,
        ))

    async def receive(self) -> Optional[Envelope]:
        """Next valid envelope, or None when the connection closes."""
        if self._reader is None:
            raise RelayClientError("Not connected")
        while True:
            frame = await self._framing.read_frame(self._reader)
            if frame is None:
                return None
            try:
                return self._framing.decode(frame)
            except ProtocolError as e:
                console.print(f"[dim]Ignoring invalid message: {escape(str(e))}[/dim]")

    async def events(self) -> AsyncIterator[Envelope]:
        while True:
            envelope = await self.receive()
            if envelope is None:
                return
            yield envelope

    async def ping(self, timeout: float = 5.0) -> float:
        """Round-trip a ping.

        Returns:
            Latency in milliseconds.
        """
        started = time.monotonic()
        await self.send(Envelope(
            type=MessageType.PING,
            origin=Origin.CLIENT,
            data=TimestampData(timestamp=int(time.time() * 1000)),
        ))

        async def _wait_pong() -> None:
            async for envelope in self.events():
                if envelope.type == MessageType.PONG:
                    return
            raise RelayClientError("Relay closed the connection")

        await asyncio.wait_for(_wait_pong(), timeout=timeout)
        return (time.monotonic() - started) * 1000

    async def close(self) -> None:
        if self._writer is None:
            return
        if self._identified:
            try:
                await self.send(Envelope(
                    type=MessageType.DISCONNECT,
                    origin=Origin.CLIENT,
                    data=PeerData(client_id=self.client_id),
                    client_id=self.client_id,
                ))
            except (ConnectionError, OSError):
                pass
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self._writer = None
        self._reader = None
        self._identified = False


# =============================================================================
# Rendering
# =============================================================================

def format_envelope(envelope: Envelope) -> Optional[str]:
    """Format an envelope as rich markup, or None to hide it."""
    time_str = f"[dim]\\[{datetime.now().strftime('%H:%M:%S')}][/dim]"

    if envelope.type == MessageType.TASK_EVENT:
        event = envelope.data
        name = event.event_name
        task_id = escape(event.task_id or "?")

        if name == TaskEventName.TASK_STARTED.value:
            return f"{time_str} [green]▶ Task started: {task_id}[/green]"
        if name == TaskEventName.TASK_COMPLETED.value:
            usage = event.payload[1] if len(event.payload) > 1 else None
            tokens = ""
            if isinstance(usage, dict) and usage.get("totalTokens"):
                tokens = f" ({usage['totalTokens']} tokens)"
            return f"{time_str} [green]✓ Task completed: {task_id}{tokens}[/green]"
        if name == TaskEventName.TASK_ABORTED.value:
            return f"{time_str} [red]✗ Task aborted: {task_id}[/red]"
        if name == TaskEventName.TASK_TOKEN_USAGE_UPDATED.value:
            return None
        if name == TaskEventName.MESSAGE.value:
            return _format_message(time_str, event.payload)
        return f"{time_str} [blue]{escape(name)}[/blue]"

    if envelope.type == MessageType.STATUS:
        data = envelope.data
        color = "green" if data.ready else "yellow"
        return f"{time_str} [{color}]● {escape(data.message)}[/{color}]"

    if envelope.type == MessageType.ERROR:
        return f"{time_str} [red]✗ Error: {escape(envelope.data.message)}[/red]"

    if envelope.type == MessageType.ACK:
        return f"{time_str} [dim]Identified as {escape(envelope.data.client_id)}[/dim]"

    return None


def _format_message(time_str: str, payload: list) -> Optional[str]:
    first = payload[0] if payload else None
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        return None

    msg_type = message.get("type")
    text = message.get("text") or ""
    if msg_type == "tool" or message.get("say") == "tool":
        tool = message.get("tool") or text
        return f"{time_str} [magenta]🔧 {escape(str(tool))[:200]}[/magenta]"
    if not text:
        return None
    if msg_type == "ask":
        return f"{time_str} [yellow]❓ {escape(text)}[/yellow]"
    return f"{time_str} [cyan]Roo:[/cyan] {escape(text)}"


def _print(envelope: Envelope) -> None:
    formatted = format_envelope(envelope)
    if formatted:
        console.print(formatted)


# =============================================================================
# Session state
# =============================================================================

@dataclass
class TaskRecord:
    """What this client has seen of one task."""
    task_id: str
    state: str = "running"
    last_message: str = ""


class TaskTracker:
    """Tasks seen during this client session, in first-seen order.

    Fed from the welcome status, the relay's replayed history and live
    events. Nothing is persisted.
    """

    _STATES = {
        TaskEventName.TASK_CREATED.value: "created",
        TaskEventName.TASK_STARTED.value: "running",
        TaskEventName.TASK_PAUSED.value: "paused",
        TaskEventName.TASK_UNPAUSED.value: "running",
        TaskEventName.TASK_COMPLETED.value: "completed",
        TaskEventName.TASK_ABORTED.value: "aborted",
    }

    def __init__(self):
        self.tasks: Dict[str, TaskRecord] = {}
        self.current_task: Optional[str] = None

    def observe(self, envelope: Envelope) -> None:
        if envelope.type == MessageType.STATUS:
            current = envelope.data.current_task
            if current:
                self._record(current)
            self.current_task = current
            return
        if envelope.type != MessageType.TASK_EVENT:
            return

        event = envelope.data
        task_id = event.task_id
        if not task_id:
            return
        record = self._record(task_id)
        state = self._STATES.get(event.event_name)
        if state:
            record.state = state
        if event.event_name == TaskEventName.TASK_STARTED.value:
            self.current_task = task_id
        elif event.event_name in (TaskEventName.TASK_COMPLETED.value, TaskEventName.TASK_ABORTED.value):
            if self.current_task == task_id:
                self.current_task = None
        elif event.event_name == TaskEventName.MESSAGE.value:
            first = event.payload[0]
            message = first.get("message") if isinstance(first, dict) else None
            if isinstance(message, dict) and message.get("text"):
                record.last_message = str(message["text"]).strip()

    def _record(self, task_id: str) -> TaskRecord:
        if task_id not in self.tasks:
            self.tasks[task_id] = TaskRecord(task_id)
        return self.tasks[task_id]


def render_tasks(tracker: TaskTracker) -> Optional[Table]:
    """Build the task listing, or None when no task was seen."""
    if not tracker.tasks:
        return None

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
    table.add_column("Task", style="bold")
    table.add_column("State")
    table.add_column("Last message", overflow="ellipsis", no_wrap=True, max_width=60)

    colors = {"running": "green", "completed": "dim", "aborted": "red", "paused": "yellow"}
    for record in tracker.tasks.values():
        color = colors.get(record.state, "white")
        marker = " *" if record.task_id == tracker.current_task else ""
        table.add_row(
            escape(record.task_id) + marker,
            f"[{color}]{record.state}[/{color}]",
            escape(record.last_message),
        )
    return table


async def collect_tasks(client: RelayClient, settle: float = 0.5) -> TaskTracker:
    """Identify and gather the tasks the relay replays to new clients.

    Reading stops once the relay has been quiet for ``settle`` seconds.
    """
    tracker = TaskTracker()
    await client.connect()
    while True:
        try:
            envelope = await asyncio.wait_for(client.receive(), timeout=settle)
        except asyncio.TimeoutError:
            break
        if envelope is None:
            break
        tracker.observe(envelope)
    return tracker


ReadLine = Callable[[str], Awaitable[Optional[str]]]


async def read_stdin_line(prompt: str) -> Optional[str]:
    """Read one line from stdin without blocking the loop; None at EOF."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, lambda: input(prompt))
    except EOFError:
        return None


INTERACTIVE_HELP = """\
[cyan]Commands:[/cyan]
  /help                Show this help message
  /ls                  List tasks seen in this session
  /attach <taskId>     Only show events of this task
  /detach              Show events of every task
  /cancel \\[taskId]     Cancel a task (default: the attached one)
  /status              Show connection status
  /quit, /exit         Leave interactive mode

Any other line is sent to Roo as a new task, and the session attaches to it."""


class InteractiveSession:
    """Prompt loop on top of one identified relay connection.

    Events are printed as they arrive. While attached to a task, events of
    other tasks are hidden.
    """

    def __init__(
        self,
        client: RelayClient,
        cwd: Optional[str] = None,
        attached: Optional[str] = None,
        read_line: Optional[ReadLine] = None,
    ):
        self.client = client
        self.cwd = cwd
        self.attached = attached
        self.tracker = TaskTracker()
        self.upstream_ready = False
        self.closed = False
        self._read_line = read_line or read_stdin_line
        self._awaiting_start = False

    def prompt(self) -> str:
        if self.attached:
            return f"roo[{self.attached[-8:]}]> "
        return "roo> "

    def show(self, envelope: Envelope) -> None:
        self.tracker.observe(envelope)
        if envelope.type == MessageType.STATUS:
            self.upstream_ready = bool(envelope.data.ready)

        if envelope.type == MessageType.TASK_EVENT:
            event = envelope.data
            if self._awaiting_start and event.event_name == TaskEventName.TASK_STARTED.value and event.task_id:
                self._awaiting_start = False
                self.attached = event.task_id
                console.print(f"[blue]Attached to task {escape(event.task_id)}[/blue]")
            elif self.attached and event.task_id and event.task_id != self.attached:
                return
        _print(envelope)

    async def handle_line(self, line: str) -> bool:
        """Act on one input line.

        Returns:
            False when the session should end.
        """
        if not line:
            return True
        if line.startswith("/"):
            return await self._handle_command(line)

        await self.client.send_command(start_new_task(line, cwd=self.cwd))
        self._awaiting_start = True
        console.print(f"[dim]Sending task: {escape(line)}[/dim]")
        return True

    async def _handle_command(self, line: str) -> bool:
        parts = line[1:].split()
        cmd = parts[0].lower() if parts else ""
        args = parts[1:]

        if cmd in ("quit", "exit"):
            return False
        if cmd == "help":
            console.print(INTERACTIVE_HELP)
        elif cmd in ("ls", "list"):
            table = render_tasks(self.tracker)
            console.print(table if table is not None else "[dim]No tasks seen yet[/dim]")
        elif cmd == "attach":
            if not args:
                console.print("[red]Usage: /attach <taskId>[/red]")
            else:
                self.attached = args[0]
                self._awaiting_start = False
                console.print(f"[blue]Attached to task {escape(args[0])}[/blue]")
        elif cmd == "detach":
            self.attached = None
            console.print("[blue]Detached[/blue]")
        elif cmd == "cancel":
            task_id = args[0] if args else self.attached
            if not task_id:
                console.print("[red]Usage: /cancel <taskId>[/red]")
            else:
                await self.client.send_command(TaskCommandData(TaskCommandName.CANCEL_TASK, task_id))
        elif cmd == "status":
            ready = "[green]ready[/green]" if self.upstream_ready else "[yellow]not ready[/yellow]"
            console.print(f"Relay: {escape(self.client.address)} as {escape(self.client.client_id)}")
            console.print(f"Roo Code: {ready}")
            console.print(f"Attached: {escape(self.attached or '-')}")
        else:
            console.print(f"[yellow]Unknown command: /{escape(cmd)}. Type /help for commands.[/yellow]")
        return True

    async def _receive(self) -> None:
        async for envelope in self.client.events():
            self.show(envelope)
        self.closed = True
        console.print("[yellow]Relay closed the connection (press Enter to exit)[/yellow]")

    async def run(self) -> int:
        ack = await self.client.connect()
        console.print(f"[dim]Connected to relay {escape(self.client.address)} as {escape(ack.client_id)}. "
                      f"Type /help for commands.[/dim]")
        receiver = asyncio.create_task(self._receive())
        try:
            while not receiver.done():
                line = await self._read_line(self.prompt())
                if line is None or receiver.done():
                    break
                if not await self.handle_line(line.strip()):
                    break
        finally:
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
        return 1 if self.closed else 0


# =============================================================================
# Commands
# =============================================================================

async def cmd_start(client: RelayClient, text: str, cwd: Optional[str], detach: bool) -> int:
    await client.connect()
    await client.send_command(start_new_task(text, cwd=cwd))
    console.print(f"[dim]Sending task: {escape(text)}[/dim]")

    sent = False
    task_id: Optional[str] = None
    async for envelope in client.events():
        if envelope.type == MessageType.ERROR:
            _print(envelope)
            return 1
        if envelope.type == MessageType.STATUS and envelope.data.extra.get("commandName"):
            sent = True
            console.print("[green]Task sent[/green]")
            if detach:
                return 0
            continue
        if not sent:
            # Welcome status and replayed history
            continue

        _print(envelope)
        if envelope.type != MessageType.TASK_EVENT:
            continue
        name = envelope.data.event_name
        if name == TaskEventName.TASK_STARTED.value and task_id is None:
            task_id = envelope.data.task_id
        elif name in (TaskEventName.TASK_COMPLETED.value, TaskEventName.TASK_ABORTED.value):
            if task_id is None or envelope.data.task_id == task_id:
                return 0 if name == TaskEventName.TASK_COMPLETED.value else 1

    console.print("[yellow]Relay closed the connection[/yellow]")
    return 1


async def cmd_cancel(client: RelayClient, task_id: str) -> int:
    await client.connect()
    await client.send_command(TaskCommandData(TaskCommandName.CANCEL_TASK, task_id))

    async for envelope in client.events():
        if envelope.type == MessageType.ERROR:
            _print(envelope)
            return 1
        if envelope.type == MessageType.STATUS and envelope.data.extra.get("commandName"):
            console.print(f"[green]Cancel requested for {escape(task_id)}[/green]")
            return 0
    return 1


async def cmd_watch(client: RelayClient) -> int:
    ack = await client.connect()
    console.print(f"[dim]Watching relay {escape(client.address)} as {escape(ack.client_id)}[/dim]")
    async for envelope in client.events():
        _print(envelope)
    console.print("[yellow]Relay closed the connection[/yellow]")
    return 0


async def cmd_ping(client: RelayClient) -> int:
    await client.open()
    latency = await client.ping()
    console.print(f"[green]pong from {escape(client.address)} in {latency:.1f} ms[/green]")
    return 0


async def cmd_attach(client: RelayClient, task_id: str) -> int:
    """Follow one task's events, replayed history included, until it ends."""
    await client.connect()
    console.print(f"[blue]Attached to task {escape(task_id)}[/blue] [dim](Ctrl+C to detach)[/dim]")
    async for envelope in client.events():
        if envelope.type == MessageType.TASK_EVENT:
            if envelope.data.task_id != task_id:
                continue
            _print(envelope)
            name = envelope.data.event_name
            if name == TaskEventName.TASK_COMPLETED.value:
                return 0
            if name == TaskEventName.TASK_ABORTED.value:
                return 1
        elif envelope.type in (MessageType.STATUS, MessageType.ERROR):
            _print(envelope)
    console.print("[yellow]Relay closed the connection[/yellow]")
    return 1


async def cmd_ls(client: RelayClient, settle: float = 0.5) -> int:
    tracker = await collect_tasks(client, settle=settle)
    table = render_tasks(tracker)
    if table is None:
        console.print("[dim]No tasks seen by the relay[/dim]")
    else:
        console.print(table)
    return 0


async def cmd_interactive(client: RelayClient, cwd: Optional[str] = None) -> int:
    return await InteractiveSession(client, cwd=cwd).run()


async def run_command(args: argparse.Namespace) -> int:
    client = RelayClient(host=args.host, port=args.port, socket_path=args.socket)
    try:
        if args.command == "start":
            return await cmd_start(client, args.prompt, args.cwd, args.detach)
        if args.command == "attach":
            return await cmd_attach(client, args.task_id)
        if args.command in ("ls", "list"):
            return await cmd_ls(client, args.wait)
        if args.command in ("interactive", "i"):
            return await cmd_interactive(client, args.cwd)
        if args.command == "cancel":
            return await cmd_cancel(client, args.task_id)
        if args.command == "watch":
            return await cmd_watch(client)
        return await cmd_ping(client)
    finally:
        await client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = FlagParser(
        prog="roo-relay",
        description="Client for the Roo relay daemon",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Relay host (default: {DEFAULT_HOST})")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT, help=f"Relay port (default: {DEFAULT_PORT})")
    parser.add_argument("--socket", help="Connect to the relay's Unix socket instead of host/port")

    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start a new task")
    start.add_argument("prompt", nargs="+", help="Task prompt")
    start.add_argument("--cwd", help="Working directory for the task")
    start.add_argument("--detach", action="store_true", help="Return once the task is sent")

    ls = sub.add_parser("ls", aliases=["list"], help="List tasks the relay has seen recently")
    ls.add_argument("--wait", type=float, default=0.5, help="Seconds of quiet before listing (default: 0.5)")

    attach = sub.add_parser("attach", help="Follow the events of one task")
    attach.add_argument("task_id", help="Task id")

    interactive = sub.add_parser("interactive", aliases=["i"], help="Prompt loop; each line starts a task")
    interactive.add_argument("--cwd", help="Working directory for started tasks")

    cancel = sub.add_parser("cancel", help="Cancel a running task")
    cancel.add_argument("task_id", help="Task id")

    sub.add_parser("watch", help="Show relayed events until interrupted")
    sub.add_parser("ping", help="Check that the relay answers")
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "start":
        args.prompt = " ".join(args.prompt).strip()
        if not args.prompt:
            parser.error("prompt must not be empty")
    if getattr(args, "cwd", None):
        args.cwd = os.path.abspath(os.path.expanduser(args.cwd))

    try:
        code = asyncio.run(run_command(args))
    except (ConnectionRefusedError, FileNotFoundError):
        target = args.socket or f"{args.host}:{args.port}"
        console.print(f"[red]Error: Could not connect to relay at {escape(target)}[/red]")
        console.print("[dim]Make sure the relay daemon is running:[/dim]")
        if args.socket:
            console.print(f"[dim]  roo-relay-daemon --unix-socket {escape(args.socket)}[/dim]")
        else:
            console.print(f"[dim]  roo-relay-daemon --port {args.port}[/dim]")
        code = 1
    except (RelayClientError, asyncio.TimeoutError, OSError) as e:
        console.print(f"[red]Error: {escape(str(e)) or type(e).__name__}[/red]")
        code = 1
    except KeyboardInterrupt:
        console.print("[dim]\nGoodbye![/dim]")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
