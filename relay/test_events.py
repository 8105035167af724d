"""Tests for relay.events - envelope parsing and serialization."""

import json

import pytest

from relay.events import (
    AckData,
    Envelope,
    MessageType,
    Origin,
    PeerData,
    ProtocolError,
    StatusData,
    TaskCommandData,
    TaskCommandName,
    TaskConfiguration,
    TaskEventData,
    parse_envelope,
    serialize_envelope,
    start_new_task,
    status,
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseEnvelope:

    def test_connect_with_client_id(self):
        env = parse_envelope('{"type": "Connect", "origin": "client", "clientId": "c1"}')

        assert env.type == MessageType.CONNECT
        assert env.origin == Origin.CLIENT
        assert env.client_id == "c1"
        assert isinstance(env.data, PeerData)

    def test_type_is_case_insensitive(self):
        env = parse_envelope(b'{"type": "taskEvent", "origin": "server", '
                             b'"data": {"eventName": "taskStarted", "payload": ["t1"]}}')

        assert env.type == MessageType.TASK_EVENT
        assert env.data.event_name == "taskStarted"
        assert env.data.task_id == "t1"

    def test_ack_payload(self):
        env = parse_envelope(json.dumps({
            "type": "Ack",
            "origin": "server",
            "data": {"clientId": "up-1", "pid": 10, "ppid": 1},
        }))

        assert env.data == AckData(client_id="up-1", pid=10, ppid=1)

    def test_start_new_task_command(self):
        env = parse_envelope(json.dumps({
            "type": "TaskCommand",
            "origin": "client",
            "clientId": "c1",
            "data": {
                "commandName": "StartNewTask",
                "data": {"text": "hi", "configuration": {"workingDirectory": "/w"}},
            },
        }))

        assert env.data.command_name == TaskCommandName.START_NEW_TASK
        assert isinstance(env.data.data, TaskConfiguration)
        assert env.data.data.text == "hi"
        assert env.data.data.configuration == {"workingDirectory": "/w"}

    def test_cancel_task_command(self):
        env = parse_envelope(json.dumps({
            "type": "TaskCommand",
            "origin": "client",
            "data": {"commandName": "CancelTask", "data": "t1"},
        }))

        assert env.data == TaskCommandData(TaskCommandName.CANCEL_TASK, "t1")

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"origin": "client"}',
        '{"type": "Connect"}',
        '{"type": "Bogus", "origin": "client"}',
        '{"type": "Connect", "origin": "nowhere", "clientId": "c1"}',
        '{"type": "Connect", "origin": "client"}',
        '{"type": "TaskCommand", "origin": "client", "data": {"commandName": "Explode"}}',
        '{"type": "TaskEvent", "origin": "server", "data": {"payload": []}}',
        '{"type": "TaskEvent", "origin": "server", "data": {"eventName": "x", "payload": {}}}',
    ])
    def test_invalid_messages_raise(self, raw):
        with pytest.raises(ProtocolError):
            parse_envelope(raw)

    def test_invalid_utf8_raises(self):
        with pytest.raises(ProtocolError):
            parse_envelope(b'\xff\xfe{}')

    @pytest.mark.parametrize("raw", ["[" * 100000, b'{"a":' * 100000])
    def test_deeply_nested_json_raises_protocol_error(self, raw):
        with pytest.raises(ProtocolError, match="Invalid JSON"):
            parse_envelope(raw)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

class TestSerializeEnvelope:

    def test_task_event_round_trip(self):
        env = Envelope(
            type=MessageType.TASK_EVENT,
            origin=Origin.SERVER,
            data=TaskEventData("message", [{"taskId": "t1", "message": {"type": "say", "text": "hi"}}]),
        )

        assert parse_envelope(serialize_envelope(env)) == env

    def test_client_id_omitted_when_none(self):
        obj = json.loads(serialize_envelope(status("hello")))

        assert "clientId" not in obj
        assert obj["type"] == "status"
        assert obj["data"]["message"] == "hello"

    def test_status_extra_fields_are_kept(self):
        env = status("Task sent", client_id="c1", ready=True, extra={"commandName": "CancelTask"})
        parsed = parse_envelope(env.to_json())

        assert parsed.data.extra == {"commandName": "CancelTask"}
        assert parsed.data.ready is True
        assert parsed.client_id == "c1"

    def test_with_route_keeps_payload(self):
        env = status("x", client_id="c1")
        routed = env.with_route(Origin.CLIENT, "c2")

        assert routed.data is env.data
        assert routed.client_id == "c2"
        assert routed.origin == Origin.CLIENT


class TestStartNewTask:

    def test_cwd_sets_working_directory(self):
        command = start_new_task("do it", cwd="/repo")

        assert command.to_dict() == {
            "commandName": "StartNewTask",
            "data": {
                "text": "do it",
                "images": [],
                "configuration": {"workingDirectory": "/repo"},
                "newTab": False,
            },
        }

    def test_without_cwd(self):
        assert start_new_task("x").data.configuration == {}


class TestStatusData:

    def test_known_keys_override_extra(self):
        data = StatusData(message="m", extra={"message": "other", "k": 1})

        assert data.to_dict()["message"] == "m"
        assert data.to_dict()["k"] == 1


class TestTaskEventData:

    def test_task_id_from_lifecycle_argument(self):
        assert TaskEventData("taskStarted", ["t1"]).task_id == "t1"

    def test_task_id_from_message_payload(self):
        event = TaskEventData("message", [{"taskId": "t2", "message": {"type": "say", "text": "hi"}}])

        assert event.task_id == "t2"

    def test_no_task_id(self):
        assert TaskEventData("taskStarted", []).task_id is None
        assert TaskEventData("message", [{"message": {}}]).task_id is None
