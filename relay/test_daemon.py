"""Tests for relay.__main__ - RelayDaemon wiring, PID handling and flags."""

import asyncio
import json
import logging
import os

import pytest

from relay.__main__ import RelayDaemon, _log_message, build_parser, check_running, main
from relay.config import RelayConfig
from relay.events import (
    Envelope,
    MessageType,
    Origin,
    TaskEventData,
    parse_envelope,
    status,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _task_event(name: str, *payload) -> Envelope:
    return Envelope(
        type=MessageType.TASK_EVENT,
        origin=Origin.SERVER,
        data=TaskEventData(name, list(payload)),
    )


async def _start_daemon(tmp_path, **config_kwargs) -> RelayDaemon:
    config = RelayConfig(host="127.0.0.1", port=0, **config_kwargs)
    daemon = RelayDaemon(config, pid_file=str(tmp_path / "relay.pid"))
    await daemon.start()
    return daemon


async def _connect(daemon: RelayDaemon, client_id: str):
    reader, writer = await asyncio.open_connection("127.0.0.1", daemon.server.port)
    writer.write((json.dumps({"type": "Connect", "origin": "client", "clientId": client_id}) + "\n").encode())
    await writer.drain()
    return reader, writer


async def _recv(reader, timeout: float = 2.0) -> Envelope:
    return parse_envelope(await asyncio.wait_for(reader.readline(), timeout=timeout))


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# RelayDaemon
# ---------------------------------------------------------------------------

class TestRelayDaemon:

    @pytest.mark.asyncio
    async def test_start_writes_and_stop_removes_pid_file(self, tmp_path):
        daemon = await _start_daemon(tmp_path)
        pid_file = tmp_path / "relay.pid"

        assert pid_file.read_text() == str(os.getpid())
        assert daemon.server.is_listening

        await daemon.stop()
        assert not pid_file.exists()
        assert not daemon.server.is_listening

    @pytest.mark.asyncio
    async def test_welcome_status_without_upstream(self, tmp_path):
        daemon = await _start_daemon(tmp_path)
        try:
            reader, writer = await _connect(daemon, "c1")

            assert (await _recv(reader)).type == MessageType.ACK
            welcome = await _recv(reader)
            assert welcome.type == MessageType.STATUS
            assert welcome.data.connected is False
            assert welcome.data.ready is False
            assert "Not connected" in welcome.data.message
            writer.close()
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_upstream_events_broadcast_in_order(self, tmp_path):
        daemon = await _start_daemon(tmp_path)
        try:
            r1, w1 = await _connect(daemon, "c1")
            r2, w2 = await _connect(daemon, "c2")
            for reader in (r1, r2):
                await _recv(reader)  # Ack
                await _recv(reader)  # welcome

            names = ["taskCreated", "taskStarted", "taskCompleted"]
            for name in names:
                daemon._events.put_nowait(_task_event(name, "t1"))

            for reader in (r1, r2):
                received = [await _recv(reader) for _ in names]
                assert [e.data.event_name for e in received] == names
                assert all(e.origin == Origin.SERVER for e in received)
            w1.close()
            w2.close()
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_tracks_current_task(self, tmp_path):
        daemon = await _start_daemon(tmp_path)
        try:
            daemon._events.put_nowait(_task_event("taskStarted", "t1"))
            await _wait_for(lambda: daemon.current_task == "t1")

            daemon._events.put_nowait(_task_event("taskCompleted", "t1", {"totalTokens": 12}))
            await _wait_for(lambda: daemon.current_task is None)
            assert len(daemon.history) == 2
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_status_carries_current_task(self, tmp_path):
        daemon = await _start_daemon(tmp_path)
        try:
            reader, writer = await _connect(daemon, "c1")
            await _recv(reader)
            await _recv(reader)

            daemon._events.put_nowait(_task_event("taskStarted", "t7"))
            daemon._events.put_nowait(status("Ready to accept commands", connected=True, ready=True))

            assert (await _recv(reader)).type == MessageType.TASK_EVENT
            relayed = await _recv(reader)
            assert relayed.type == MessageType.STATUS
            assert relayed.data.current_task == "t7"
            assert relayed.data.ready is True
            writer.close()
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_new_client_gets_recent_history(self, tmp_path):
        daemon = await _start_daemon(tmp_path, replay_count=2, history_size=5)
        try:
            for i in range(3):
                daemon._events.put_nowait(_task_event("taskCreated", f"t{i}"))
            await _wait_for(lambda: len(daemon.history) == 3)

            reader, writer = await _connect(daemon, "late")
            assert (await _recv(reader)).type == MessageType.ACK
            assert (await _recv(reader)).type == MessageType.STATUS
            replayed = [await _recv(reader) for _ in range(2)]

            assert [e.data.task_id for e in replayed] == ["t1", "t2"]
            assert all(e.client_id == "late" for e in replayed)
            writer.close()
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, tmp_path):
        daemon = await _start_daemon(tmp_path, history_size=2)
        try:
            for i in range(4):
                daemon._events.put_nowait(_task_event("taskCreated", f"t{i}"))
            await _wait_for(lambda: daemon._events.empty())
            await asyncio.sleep(0.01)

            assert [e.data.task_id for e in daemon.history] == ["t2", "t3"]
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_bridge_created_when_socket_configured(self, tmp_path):
        config = RelayConfig(
            host="127.0.0.1",
            port=0,
            upstream_socket=str(tmp_path / "missing.sock"),
            message_cooldown=1.0,
        )
        daemon = RelayDaemon(config, pid_file=None)

        assert daemon.bridge is not None
        assert daemon.bridge.message_cooldown == 1.0
        assert daemon.server._upstream is daemon.bridge


# ---------------------------------------------------------------------------
# Process helpers and flags
# ---------------------------------------------------------------------------

class TestCheckRunning:

    def test_no_pid_file(self, tmp_path):
        assert check_running(str(tmp_path / "none.pid")) is None

    def test_live_process(self, tmp_path):
        pid_file = tmp_path / "relay.pid"
        pid_file.write_text(str(os.getpid()))

        assert check_running(str(pid_file)) == os.getpid()

    def test_garbage_pid_file_is_removed(self, tmp_path):
        pid_file = tmp_path / "relay.pid"
        pid_file.write_text("not a pid")

        assert check_running(str(pid_file)) is None
        assert not pid_file.exists()


class TestFlags:

    def test_parser(self):
        args = build_parser().parse_args([
            "--host", "0.0.0.0",
            "--port", "8000",
            "--socket", "/tmp/roo.sock",
            "--unix-socket", "/tmp/relay.sock",
            "--framing", "ndjson",
            "-v",
        ])

        assert args.host == "0.0.0.0"
        assert args.port == 8000
        assert args.socket == "/tmp/roo.sock"
        assert args.unix_socket == "/tmp/relay.sock"
        assert args.framing == "ndjson"
        assert args.verbose is True
        assert args.daemon is False

    def test_defaults_leave_config_alone(self):
        args = build_parser().parse_args([])

        assert args.host is None
        assert args.port is None
        assert args.socket is None

    def test_status_when_not_running(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--status", "--pid-file", str(tmp_path / "relay.pid")])

        assert exc.value.code == 1
        assert "not running" in capsys.readouterr().out

    def test_stop_when_not_running(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["--stop", "--pid-file", str(tmp_path / "relay.pid")])

        assert exc.value.code == 1

    def test_bad_flag_exits_1(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--port", "not-a-port"])

        assert exc.value.code == 1
        assert "invalid int value" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Message logging
# ---------------------------------------------------------------------------

def _message(msg_type: str, text: str, **extra) -> TaskEventData:
    return TaskEventData("message", [{"taskId": "t1", "message": {"type": msg_type, "text": text, **extra}}])


class TestLogMessage:

    def test_question_logs_numbered_suggestions(self, caplog):
        text = json.dumps({
            "question": "Which file should I edit?",
            "suggest": [{"answer": "utils.py"}, {"answer": "Switch to code mode", "mode": "code"}, "Neither"],
        })

        with caplog.at_level(logging.INFO, logger="relay.__main__"):
            _log_message(_message("ask", text, ask="followup"))

        assert caplog.messages == [
            "Roo asks: Which file should I edit?",
            "Suggestions:",
            "   1. utils.py",
            "   2. Switch to code mode [code]",
            "   3. Neither",
        ]
        assert caplog.records[0].levelno == logging.WARNING

    def test_question_without_suggestions(self, caplog):
        with caplog.at_level(logging.INFO, logger="relay.__main__"):
            _log_message(_message("say", json.dumps({"question": "Continue?"})))

        assert caplog.messages == ["Roo asks: Continue?"]

    def test_plain_text_and_tools(self, caplog):
        with caplog.at_level(logging.INFO, logger="relay.__main__"):
            _log_message(_message("say", "Done with the refactor"))
            _log_message(_message("ask", "Run the tests?"))
            _log_message(_message("tool", "", tool="read_file"))
            _log_message(_message("say", '{"question": ' + "[" * 100000))

        assert caplog.messages[:3] == ["Roo: Done with the refactor", "Roo asks: Run the tests?", "Tool: read_file"]
        assert caplog.messages[3].startswith('Roo: {"question": [[[')
