import io
import threading
import time

import httpx
import pytest

from clusterbox.progress import ProgressMode, ProgressUI
from clusterbox.runtime.command_server import (
    MAX_BODY_BYTES,
    CommandDecodeError,
    CommandServer,
    decode_command,
)
from clusterbox.runtime.contracts import Command, CommandReply
from clusterbox.runtime.files import port_file_path, read_port
from clusterbox.runtime.probe import ProbeState, probe_command_server
from clusterbox.runtime.process_group import ProcessGroup


class FakeController:
    def __init__(self):
        self.done = threading.Event()
        self.commands: list[Command] = []

    def submit(self, command, timeout=None):
        self.commands.append(command)
        if command.type == "fail":
            return CommandReply(ok=False, error="controller says no")
        return CommandReply(ok=True, message=f"handled {command.type}")


@pytest.fixture
def running_server(tmp_path):
    controller = FakeController()
    server = CommandServer(tmp_path, controller=controller)
    group = ProcessGroup()
    group.add("command server", server.serve)
    assert server.ready.wait(5)

    yield server, controller

    controller.done.set()
    group.close()


def _url(server, path):
    return f"http://127.0.0.1:{server.port}{path}"


def _post(server, body: bytes):
    return httpx.post(
        _url(server, "/command"),
        content=body,
        headers={"Content-Type": "application/json"},
        timeout=5,
        trust_env=False,
    )


def test_decode_command_accepts_one_object():
    command = decode_command(b' {"type": "scale-out", "service": "tikv", "count": 2}\n')

    assert command.type == "scale-out"
    assert command.service == "tikv"
    assert command.count == 2


@pytest.mark.parametrize(
    "body, expected",
    [
        (b"", "empty"),
        (b"{", "invalid JSON"),
        (b"[1, 2]", "JSON object"),
        (b'{"type": "stop"} {"type": "stop"}', "invalid JSON payload"),
        (b'{"type": "stop", "bogus": 1}', "unknown field"),
        (b'{"service": "tikv"}', "type"),
        (b'{"type": "scale-out", "count": 0}', "count"),
    ],
)
def test_decode_command_rejects_bad_bodies(body, expected):
    with pytest.raises(CommandDecodeError) as excinfo:
        decode_command(body)

    assert expected in str(excinfo.value)


def test_port_record_is_published_once_listening(running_server, tmp_path):
    server, _ = running_server

    assert read_port(tmp_path) == server.port
    assert probe_command_server(server.port, 1.0).state == ProbeState.ALIVE


def test_ping(running_server):
    server, _ = running_server

    response = httpx.get(_url(server, "/ping"), timeout=5, trust_env=False)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "message": "pong"}


@pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH"])
def test_non_post_on_command_is_405(running_server, method):
    server, _ = running_server

    response = httpx.request(method, _url(server, "/command"), timeout=5, trust_env=False)

    assert response.status_code == 405
    assert response.json() == {"ok": False, "error": "method not allowed"}


def test_unknown_path_is_404(running_server):
    server, _ = running_server

    response = httpx.get(_url(server, "/nope"), timeout=5, trust_env=False)

    assert response.status_code == 404
    assert response.json()["ok"] is False


def test_malformed_json_is_400(running_server):
    server, controller = running_server

    response = _post(server, b"{not json")

    assert response.status_code == 400
    assert response.json()["ok"] is False
    assert response.json()["error"]
    assert controller.commands == []


def test_unknown_field_is_400(running_server):
    server, _ = running_server

    response = _post(server, b'{"type": "display", "extra": true}')

    assert response.status_code == 400
    assert "unknown field" in response.json()["error"]


def test_trailing_data_is_400_invalid_payload(running_server):
    server, controller = running_server

    response = _post(server, b'{"type": "display"}{"type": "stop"}')

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "invalid JSON payload"}
    assert controller.commands == []


def test_oversized_body_is_400(running_server):
    server, controller = running_server
    body = b'{"type": "display", "name": "' + b"x" * MAX_BODY_BYTES + b'"}'

    response = _post(server, body)

    assert response.status_code == 400
    assert "too large" in response.json()["error"]
    assert controller.commands == []


def test_valid_command_reaches_controller(running_server):
    server, controller = running_server

    response = _post(server, b'{"type": "display"}')

    assert response.status_code == 200
    assert response.json() == {"ok": True, "message": "handled display"}
    assert [command.type for command in controller.commands] == ["display"]


def test_controller_failure_is_400(running_server):
    server, _ = running_server

    response = _post(server, b'{"type": "fail"}')

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "controller says no"}


def test_shutdown_waits_for_controller_then_removes_port(tmp_path):
    controller = FakeController()
    server = CommandServer(tmp_path, controller=controller)
    group = ProcessGroup()
    group.add("command server", server.serve)
    assert server.ready.wait(5)

    closer = threading.Thread(target=group.close)
    closer.start()
    time.sleep(0.3)

    assert closer.is_alive()
    assert port_file_path(tmp_path).exists()
    assert probe_command_server(server.port, 1.0).alive

    controller.done.set()
    closer.join(timeout=5)

    assert not closer.is_alive()
    assert not port_file_path(tmp_path).exists()
    assert probe_command_server(server.port, 0.5).state == ProbeState.REFUSED


class _GatedLog(io.StringIO):
    def __init__(self, gate: threading.Event):
        super().__init__()
        self.gate = gate

    def write(self, text):
        self.gate.wait()
        return super().write(text)


def test_port_record_waits_for_progress_flush(tmp_path):
    gate = threading.Event()
    event_log = _GatedLog(gate)
    progress = ProgressUI(ProgressMode.PLAIN, out=io.StringIO(), event_log=event_log)
    controller = FakeController()
    server = CommandServer(tmp_path, controller=controller, progress=progress)
    group = ProcessGroup()
    try:
        progress.print_lines(["booting services"])
        group.add("command server", server.serve)

        time.sleep(0.5)
        assert not port_file_path(tmp_path).exists()
        assert not server.ready.is_set()

        gate.set()
        assert server.ready.wait(2)
        assert port_file_path(tmp_path).exists()
        assert "booting services" in event_log.getvalue()
    finally:
        gate.set()
        controller.done.set()
        group.close()
        progress.close()
