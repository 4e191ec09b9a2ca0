from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field

from clusterbox.runtime.probe import ProbeState, probe_command_server
from clusterbox.utils.errors import (
    AlreadyInUseError,
    InvalidRecordError,
    StillStartingError,
    WaitTimeoutError,
)

PID_FILE_NAME = "pid"
PORT_FILE_NAME = "port"
DAEMON_LOG_NAME = "daemon.log"
EVENT_LOG_NAME = "events.jsonl"

# A pid record younger than this may still be mid-write by another launcher.
PID_FILE_WRITE_GRACE_SECONDS = 2.0
CLEANUP_PROBE_TIMEOUT_SECONDS = 0.5
STOP_POLL_INTERVAL_SECONDS = 0.2
DEFAULT_STOP_TIMEOUT_SECONDS = 60.0


class PIDRecord(BaseModel):
    """Persisted ownership record of one instance data dir."""

    pid: int = Field(gt=0)
    started_at: Optional[datetime] = None
    tag: str = ""


def pid_file_path(data_dir: Path) -> Path:
    return data_dir / PID_FILE_NAME


def port_file_path(data_dir: Path) -> Path:
    return data_dir / PORT_FILE_NAME


def utc_now_rfc3339() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_rfc3339(raw: str) -> datetime:
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        raise ValueError("missing timezone offset")
    return parsed


def parse_pid_record(text: str) -> PIDRecord:
    """Parse pid record text; unknown lines are ignored, a missing pid is an error."""
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    tag = ""

    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("pid="):
            raw = line[len("pid="):].strip()
            if not raw:
                raise InvalidRecordError("pid is empty")
            try:
                pid = int(raw)
            except ValueError as exc:
                raise InvalidRecordError(f"invalid pid {raw!r}") from exc
        elif line.startswith("started_at="):
            raw = line[len("started_at="):].strip()
            if not raw:
                continue
            try:
                started_at = _parse_rfc3339(raw)
            except ValueError as exc:
                raise InvalidRecordError(f"invalid started_at {raw!r}") from exc
        elif line.startswith("tag="):
            tag = line[len("tag="):].strip()

    if pid is None:
        raise InvalidRecordError("missing pid field")
    if pid <= 0:
        raise InvalidRecordError(f"invalid pid {pid}")

    return PIDRecord(pid=pid, started_at=started_at, tag=tag)


def read_pid_record(path: Path) -> PIDRecord:
    """Read a pid record. Raises FileNotFoundError or InvalidRecordError."""
    return parse_pid_record(path.read_text(encoding="utf-8"))


def format_pid_record(pid: int, started_at: str, tag: str) -> str:
    return f"pid={pid}\nstarted_at={started_at}\ntag={tag}\n"


def write_pid_record(path: Path, pid: int, tag: str, started_at: Optional[str] = None) -> None:
    """Create the pid record exclusively. Raises FileExistsError if it is already present."""
    body = format_pid_record(pid, started_at or utc_now_rfc3339(), tag).encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    try:
        os.write(fd, body)
    except OSError:
        os.close(fd)
        path.unlink(missing_ok=True)
        raise
    try:
        os.close(fd)
    except OSError:
        path.unlink(missing_ok=True)
        raise


def read_port(data_dir: Path) -> int:
    """Read the port record. Raises FileNotFoundError or InvalidRecordError."""
    raw = port_file_path(data_dir).read_text(encoding="utf-8").strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidRecordError(f"invalid port {raw!r}") from exc


def write_port(data_dir: Path, port: int) -> Path:
    """Publish the port record atomically so readers never see a partial value."""
    port_file = port_file_path(data_dir)
    tmp_file = data_dir / f".{PORT_FILE_NAME}.{os.getpid()}.tmp"
    tmp_file.write_text(str(port), encoding="utf-8")
    os.replace(tmp_file, port_file)
    return port_file


def is_process_alive(pid: int) -> bool:
    """Return True when a process id appears to be alive on this host."""
    if pid <= 0:
        return False

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    return True


def _remove_runtime_files(data_dir: Path) -> None:
    pid_file_path(data_dir).unlink(missing_ok=True)
    port_file_path(data_dir).unlink(missing_ok=True)


def _pid_file_age(pid_file: Path) -> Optional[float]:
    try:
        return time.time() - pid_file.stat().st_mtime
    except FileNotFoundError:
        return None


def cleanup_stale(data_dir: Path) -> None:
    """Remove pid/port records whose owner is provably gone.

    Raises AlreadyInUseError while a live owner exists, StillStartingError for
    a fresh unparsable pid record and WaitTimeoutError when the command server
    probe times out. Files are never removed while ownership is ambiguous.
    """
    if not str(data_dir).strip():
        raise ValueError("data dir is empty")

    pid_file = pid_file_path(data_dir)
    port_file = port_file_path(data_dir)

    try:
        record = read_pid_record(pid_file)
    except FileNotFoundError:
        record = None
    except InvalidRecordError:
        age = _pid_file_age(pid_file)
        if age is not None:
            if 0 <= age < PID_FILE_WRITE_GRACE_SECONDS:
                raise StillStartingError("instance is starting (pid file is being written)")
            # Corrupt or partial record: probe the port before treating it as stale.
            port = _read_port_or_none(data_dir)
            if port is not None and port > 0:
                probe = probe_command_server(port, CLEANUP_PROBE_TIMEOUT_SECONDS)
                if probe.state == ProbeState.ALIVE:
                    raise AlreadyInUseError(f"instance already running (port={port})", port=port)
                if probe.state == ProbeState.TIMEOUT:
                    raise WaitTimeoutError(f"command server probe timed out (port={port})")
            _remove_runtime_files(data_dir)
            return
        record = None
    else:
        if is_process_alive(record.pid):
            raise AlreadyInUseError(f"instance already running (pid={record.pid})", pid=record.pid)
        _remove_runtime_files(data_dir)
        return

    port = _read_port_or_none(data_dir)
    if port is None or port <= 0:
        return

    probe = probe_command_server(port, CLEANUP_PROBE_TIMEOUT_SECONDS)
    if probe.state == ProbeState.ALIVE:
        raise AlreadyInUseError(f"instance already running (port={port})", port=port)
    if probe.state == ProbeState.TIMEOUT:
        raise WaitTimeoutError(f"command server probe timed out (port={port})")
    if probe.state == ProbeState.UNEXPECTED:
        raise AlreadyInUseError(f"port {port} is in use by an unknown responder: {probe.reason}", port=port)

    port_file.unlink(missing_ok=True)


def _read_port_or_none(data_dir: Path) -> Optional[int]:
    try:
        return read_port(data_dir)
    except FileNotFoundError:
        return None
    except InvalidRecordError:
        return 0


def claim(data_dir: Path, tag: str) -> Callable[[], None]:
    """Claim exclusive ownership of data_dir for this process.

    Returns a release callable that removes the pid record. Raises
    AlreadyInUseError when another live owner holds the directory.
    """
    if not str(data_dir).strip():
        raise ValueError("data dir is empty")
    if not tag.strip():
        raise ValueError("tag is empty")

    data_dir.mkdir(parents=True, exist_ok=True)
    pid_file = pid_file_path(data_dir)

    while True:
        try:
            cleanup_stale(data_dir)
        except (AlreadyInUseError, WaitTimeoutError) as exc:
            raise AlreadyInUseError(
                f"tag {tag!r} is already in use: {exc}",
                pid=getattr(exc, "pid", None),
                port=getattr(exc, "port", None),
            ) from exc

        try:
            write_pid_record(pid_file, os.getpid(), tag)
        except FileExistsError:
            continue

        owner_pid = os.getpid()

        def release() -> None:
            # Never remove a record written by someone else after a fork.
            if os.getpid() == owner_pid:
                pid_file.unlink(missing_ok=True)

        return release


def wait_stopped(data_dir: Path, timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
    """Poll until the instance owning data_dir has gone away.

    Raises WaitTimeoutError when the deadline elapses first.
    """
    if not str(data_dir).strip():
        raise ValueError("data dir is empty")
    if timeout <= 0:
        timeout = DEFAULT_STOP_TIMEOUT_SECONDS

    deadline = time.monotonic() + timeout
    pid_file = pid_file_path(data_dir)

    while True:
        try:
            record = read_pid_record(pid_file)
        except FileNotFoundError:
            return
        except InvalidRecordError:
            age = _pid_file_age(pid_file)
            if age is None:
                return
            if age >= PID_FILE_WRITE_GRACE_SECONDS:
                port = _read_port_or_none(data_dir)
                still_running = False
                if port is not None and port > 0:
                    probe = probe_command_server(port, CLEANUP_PROBE_TIMEOUT_SECONDS)
                    still_running = probe.state in {ProbeState.ALIVE, ProbeState.TIMEOUT}
                if not still_running:
                    _remove_runtime_files(data_dir)
                    return
        else:
            if not is_process_alive(record.pid):
                pid_file.unlink(missing_ok=True)
                return

        if time.monotonic() >= deadline:
            raise WaitTimeoutError(f"timeout waiting for instance in {data_dir} to stop")
        time.sleep(STOP_POLL_INTERVAL_SECONDS)
