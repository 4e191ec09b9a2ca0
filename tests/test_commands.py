import io
import json
import os
import threading
import time

import pytest

from clusterbox.client import commands
from clusterbox.progress import ProgressMode, ProgressUI
from clusterbox.runtime.command_server import CommandServer
from clusterbox.runtime.contracts import CommandReply, DisplayItem
from clusterbox.runtime.files import pid_file_path, write_pid_record
from clusterbox.runtime.process_group import ProcessGroup
from clusterbox.utils.errors import ClusterboxError, CommandFailedError


class FakeInstanceController:
    """Answers like a running instance; stop removes the pid record after a delay."""

    def __init__(self, data_dir, version="v8.5.0", stop_delay=0.0, fail=None):
        self.data_dir = data_dir
        self.version = version
        self.stop_delay = stop_delay
        self.fail = fail or {}
        self.done = threading.Event()
        self.received = []

    def submit(self, command, timeout=None):
        self.received.append(command.type)
        if command.type in self.fail:
            return CommandReply(ok=False, error=self.fail[command.type])
        if command.type == "display":
            items = [
                DisplayItem(name="pd-0", service="pd", pid=11, status="running", version=self.version),
                DisplayItem(name="tikv-0", service="tikv", pid=12, status="running", version=self.version),
                DisplayItem(name="tikv-1", service="tikv", pid=13, status="running", version=self.version),
            ]
            return CommandReply(ok=True, message=json.dumps([item.model_dump() for item in items]))
        if command.type == "stop":
            timer = threading.Timer(self.stop_delay, pid_file_path(self.data_dir).unlink, kwargs={"missing_ok": True})
            timer.start()
            return CommandReply(ok=True, message="Stopping clusterbox instance...\n")
        return CommandReply(ok=True, message=f"{command.type} ok\n")


@pytest.fixture
def fake_instance(tmp_path):
    running = []

    def _start(tag, **kwargs):
        data_dir = tmp_path / "base" / tag
        data_dir.mkdir(parents=True)
        write_pid_record(pid_file_path(data_dir), os.getpid(), tag)
        controller = FakeInstanceController(data_dir, **kwargs)
        server = CommandServer(data_dir, controller=controller)
        group = ProcessGroup()
        group.add("command server", server.serve)
        assert server.ready.wait(5)
        running.append((controller, group))
        return controller

    yield _start

    for controller, group in running:
        controller.done.set()
        group.close()


@pytest.fixture
def base_dir(tmp_path):
    return tmp_path / "base"


def _quiet_progress():
    out = io.StringIO()
    return ProgressUI(ProgressMode.PLAIN, out=out), out


def test_stop_sends_stop_and_waits_for_pid_removal(fake_instance, base_dir, capsys):
    controller = fake_instance("alpha", stop_delay=0.3)

    commands.stop(base_dir, tag="alpha", timeout=5, probe_timeout=1.0)

    captured = capsys.readouterr()
    assert captured.out.count("Stopping clusterbox instance...") == 1
    assert controller.received == ["stop"]
    assert not pid_file_path(base_dir / "alpha").exists()


def test_stop_not_running_is_a_warning(base_dir, capsys):
    commands.stop(base_dir, tag="ghost", timeout=1, probe_timeout=0.5)

    captured = capsys.readouterr()
    assert "nothing to stop" in captured.err


def test_stop_twice_is_idempotent(fake_instance, base_dir, capsys):
    fake_instance("alpha")
    commands.stop(base_dir, tag="alpha", timeout=5, probe_timeout=1.0)

    commands.stop(base_dir, tag="alpha", timeout=5, probe_timeout=1.0)


def test_stop_all_runs_in_parallel(fake_instance, base_dir):
    fake_instance("alpha", stop_delay=1.0)
    fake_instance("beta", stop_delay=1.0)
    progress, out = _quiet_progress()

    started = time.monotonic()
    stopped = commands.stop_all(base_dir, timeout=10, probe_timeout=1.0, progress=progress)
    elapsed = time.monotonic() - started
    progress.close()

    assert stopped == ["alpha", "beta"]
    assert elapsed < 1.8
    assert not pid_file_path(base_dir / "alpha").exists()
    assert not pid_file_path(base_dir / "beta").exists()


def test_stop_all_labels_tasks_with_version(fake_instance, base_dir):
    fake_instance("alpha", version="v8.5.0")
    progress, out = _quiet_progress()

    commands.stop_all(base_dir, timeout=5, probe_timeout=1.0, progress=progress)
    progress.close()

    text = out.getvalue()
    assert "Stop clusters" in text
    assert "alpha (v8.5.0)" in text


def test_stop_all_rejects_tag(base_dir):
    with pytest.raises(ClusterboxError) as excinfo:
        commands.stop_all(base_dir, tag="alpha")

    assert "does not accept --tag" in str(excinfo.value)


def test_stop_all_without_instances_warns(base_dir, capsys):
    assert commands.stop_all(base_dir, timeout=1, probe_timeout=0.5) == []

    assert commands.NO_INSTANCES_MESSAGE in capsys.readouterr().err


def test_stop_all_aggregates_failures(fake_instance, base_dir):
    fake_instance("alpha")
    fake_instance("beta", fail={"stop": "refusing to stop"})
    progress, _ = _quiet_progress()

    with pytest.raises(ClusterboxError) as excinfo:
        commands.stop_all(base_dir, timeout=5, probe_timeout=1.0, progress=progress)
    progress.close()

    message = str(excinfo.value)
    assert "1 of 2" in message
    assert "beta: refusing to stop" in message
    assert not pid_file_path(base_dir / "alpha").exists()


def test_ps_lists_instances(fake_instance, base_dir, capsys):
    fake_instance("alpha", version="v8.5.0")
    fake_instance("beta", version="v7.1.0")

    assert commands.ps(base_dir, probe_timeout=1.0) == 2

    out = capsys.readouterr().out
    assert "TAG" in out
    assert "alpha" in out
    assert "beta" in out
    assert "v7.1.0" in out


def test_ps_without_instances_warns(base_dir, capsys):
    assert commands.ps(base_dir, probe_timeout=0.5) == 0

    assert commands.NO_INSTANCES_MESSAGE in capsys.readouterr().err


def test_display_returns_service_items(fake_instance, base_dir):
    fake_instance("alpha")

    target, items = commands.display(base_dir, probe_timeout=1.0)

    assert target.tag == "alpha"
    assert [item.name for item in items] == ["pd-0", "tikv-0", "tikv-1"]


def test_summaries():
    items = [
        DisplayItem(name="tidb-0", service="tidb", status="running", version="v2"),
        DisplayItem(name="pd-0", service="pd", status="running", version="v1"),
        DisplayItem(name="pd-1", service="pd", status="running", version="v1"),
    ]

    assert commands.summarize_services(items) == "pd=2 tidb=1"
    assert commands.summarize_version(items) == "v1, v2"
    assert commands.summarize_version([]) == "unknown"


def test_scale_out_prints_reply(fake_instance, base_dir, capsys):
    controller = fake_instance("alpha")

    commands.scale_out(base_dir, "tikv", count=2, tag="alpha", probe_timeout=1.0)

    assert capsys.readouterr().out == "scale-out ok\n"
    assert controller.received == ["scale-out"]


def test_remote_error_is_raised_not_printed(fake_instance, base_dir, capsys):
    fake_instance("alpha", fail={"scale-in": "no running service matches tikv-9"})

    with pytest.raises(CommandFailedError) as excinfo:
        commands.scale_in(base_dir, name="tikv-9", probe_timeout=1.0)

    assert excinfo.value.error == "no running service matches tikv-9"
    assert excinfo.value.status_code == 400
    captured = capsys.readouterr()
    assert "tikv-9" not in captured.out
    assert "tikv-9" not in captured.err


def test_scale_in_requires_exactly_one_selector(base_dir):
    with pytest.raises(ClusterboxError):
        commands.scale_in(base_dir)
    with pytest.raises(ClusterboxError):
        commands.scale_in(base_dir, name="tikv-0", pid=12)
