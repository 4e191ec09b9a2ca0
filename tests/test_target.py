import os

import pytest

from clusterbox.client.target import list_instances, resolve_target
from clusterbox.runtime.files import pid_file_path, write_pid_record, write_port
from clusterbox.utils.errors import (
    MultipleFoundError,
    NotRunningError,
    UnreachableError,
    should_suggest_not_running,
)


def _instance(base_dir, tag, port, with_pid=True):
    data_dir = base_dir / tag
    data_dir.mkdir(parents=True)
    write_port(data_dir, port)
    if with_pid:
        write_pid_record(pid_file_path(data_dir), os.getpid(), tag)
    return data_dir


def test_single_live_instance_is_auto_selected(tmp_path, stub_server):
    data_dir = _instance(tmp_path, "alpha", stub_server())

    target = resolve_target(None, tmp_path, probe_timeout=1.0)

    assert target.tag == "alpha"
    assert target.data_dir == data_dir
    assert target.record is not None
    assert target.record.pid == os.getpid()


def test_multiple_live_instances_require_a_tag(tmp_path, stub_server):
    _instance(tmp_path, "beta", stub_server())
    _instance(tmp_path, "alpha", stub_server())

    with pytest.raises(MultipleFoundError) as excinfo:
        resolve_target(None, tmp_path, probe_timeout=1.0)

    assert excinfo.value.tags == ["alpha", "beta"]
    assert "please specify --tag" in str(excinfo.value)


def test_stale_entries_are_filtered_during_scan(tmp_path, stub_server, free_port):
    _instance(tmp_path, "live", stub_server())
    _instance(tmp_path, "dead", free_port)
    (tmp_path / "no-port").mkdir()
    (tmp_path / "stray-file").write_text("x")

    target = resolve_target(None, tmp_path, probe_timeout=1.0)

    assert target.tag == "live"
    assert [t.tag for t in list_instances(tmp_path, 1.0)] == ["live"]


def test_no_instances_is_not_running(tmp_path):
    with pytest.raises(NotRunningError) as excinfo:
        resolve_target(None, tmp_path, probe_timeout=1.0)

    assert should_suggest_not_running(excinfo.value)


def test_missing_base_dir_is_not_running(tmp_path):
    with pytest.raises(NotRunningError):
        resolve_target(None, tmp_path / "missing", probe_timeout=1.0)

    assert list_instances(tmp_path / "missing") == []


def test_explicit_tag_alive(tmp_path, stub_server):
    port = stub_server()
    _instance(tmp_path, "alpha", port)
    _instance(tmp_path, "beta", stub_server())

    target = resolve_target("alpha", tmp_path, probe_timeout=1.0)

    assert target.tag == "alpha"
    assert target.port == port


def test_explicit_tag_missing_dir_is_not_running(tmp_path):
    with pytest.raises(NotRunningError) as excinfo:
        resolve_target("ghost", tmp_path, probe_timeout=1.0)

    assert excinfo.value.tag == "ghost"


def test_explicit_tag_without_port_is_not_running(tmp_path):
    (tmp_path / "alpha").mkdir()

    with pytest.raises(NotRunningError):
        resolve_target("alpha", tmp_path, probe_timeout=1.0)


def test_explicit_tag_refused_is_not_running(tmp_path, free_port):
    _instance(tmp_path, "alpha", free_port)

    with pytest.raises(NotRunningError):
        resolve_target("alpha", tmp_path, probe_timeout=1.0)


def test_explicit_tag_timeout_is_unreachable(tmp_path, stub_server):
    _instance(tmp_path, "alpha", stub_server(delay=2.0))

    with pytest.raises(UnreachableError) as excinfo:
        resolve_target("alpha", tmp_path, probe_timeout=0.3)

    assert "timed out" in str(excinfo.value)
    assert not should_suggest_not_running(excinfo.value)


def test_explicit_tag_unexpected_body_is_unreachable(tmp_path, stub_server):
    _instance(tmp_path, "alpha", stub_server({("GET", "/ping"): (200, b"<html>hi</html>")}))

    with pytest.raises(UnreachableError) as excinfo:
        resolve_target("alpha", tmp_path, probe_timeout=1.0)

    assert "failed" in str(excinfo.value)


def test_data_dir_override_wins_over_base(tmp_path, stub_server):
    elsewhere = _instance(tmp_path / "other", "custom", stub_server())

    target = resolve_target(None, tmp_path / "base", data_dir_override=elsewhere, probe_timeout=1.0)

    assert target.tag == "custom"
    assert target.data_dir == elsewhere
