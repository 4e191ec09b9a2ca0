import io
import threading
import time
from datetime import datetime, timezone

from clusterbox.progress import (
    Event,
    EventType,
    ProgressMode,
    ProgressUI,
    TaskStatus,
    decode_event,
)

FIXED_NOW = datetime(2026, 2, 25, 10, 0, 0, tzinfo=timezone.utc)


def _ui(event_log=None):
    out = io.StringIO()
    return ProgressUI(ProgressMode.PLAIN, out=out, event_log=event_log, now=lambda: FIXED_NOW), out


def test_plain_rendering_of_group_and_tasks():
    ui, out = _ui()
    group = ui.group("Start instances")
    pd = group.task("pd-0")
    pd.set_meta("v8.5.0")
    pd.start()
    pd.done()
    tikv = group.task("tikv-0")
    tikv.start()
    tikv.error("binary not found")
    tidb = group.task("tidb-0")
    tidb.cancel("instance is stopping")
    group.close()
    ui.close()

    lines = out.getvalue().splitlines()
    assert "Start instances | pd-0 v8.5.0" in lines
    assert "Start instances | pd-0 v8.5.0 ... done" in lines
    assert "Start instances | tikv-0 ... ERR: binary not found" in lines
    assert "Start instances | tidb-0 ... canceled: instance is stopping" in lines


def test_writer_turns_complete_lines_into_output():
    ui, out = _ui()
    writer = ui.writer()
    writer.write("first line\nsecond ")
    writer.write("line\npartial")
    ui.sync()

    assert out.getvalue() == "first line\nsecond line\npartial\n"
    ui.close()


def test_event_log_is_json_lines_and_skips_sync_barriers():
    event_log = io.StringIO()
    ui, _ = _ui(event_log)
    group = ui.group("Stop clusters")
    task = group.task("alpha (v8.5.0)")
    task.start()
    task.done()
    ui.print_lines(["bye"])
    ui.sync()
    ui.close()

    events = [decode_event(line) for line in event_log.getvalue().splitlines()]
    assert [event.type for event in events] == [
        EventType.GROUP_ADD,
        EventType.TASK_ADD,
        EventType.TASK_STATE,
        EventType.TASK_STATE,
        EventType.PRINT_LINES,
    ]
    assert events[1].title == "alpha (v8.5.0)"
    assert events[3].status == TaskStatus.DONE
    assert events[4].lines == ["bye"]
    assert all(event.at == FIXED_NOW for event in events)


def test_event_round_trips_through_json_line():
    event = Event(type=EventType.TASK_UPDATE, tid=7, meta="v1", at=FIXED_NOW)

    assert decode_event(event.to_json_line()) == event


class _SlowLog(io.StringIO):
    def write(self, text):
        time.sleep(0.2)
        return super().write(text)


def test_sync_waits_until_event_log_is_written():
    event_log = _SlowLog()
    ui, _ = _ui(event_log)
    ui.print_lines(["one"])
    ui.print_lines(["two"])

    ui.sync()

    assert event_log.getvalue().count("\n") == 2
    ui.close()


def test_sync_blocks_while_event_log_is_stuck():
    gate = threading.Event()

    class _Blocked(io.StringIO):
        def write(self, text):
            gate.wait()
            return super().write(text)

    ui, _ = _ui(_Blocked())
    ui.print_lines(["stuck"])
    finished = threading.Event()

    def _sync():
        ui.sync()
        finished.set()

    thread = threading.Thread(target=_sync, daemon=True)
    thread.start()
    assert not finished.wait(0.2)

    gate.set()
    assert finished.wait(2)
    ui.close()


def test_disabled_ui_is_inert():
    ui = ProgressUI.disabled()
    group = ui.group("anything")
    group.task("task").start()
    ui.print_lines(["ignored"])
    ui.sync()
    ui.close()
    ui.close()

    assert ui.closed is True
