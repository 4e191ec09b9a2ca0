from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from clusterbox.runtime.files import PIDRecord, pid_file_path, read_pid_record, read_port
from clusterbox.runtime.probe import ProbeState, probe_command_server
from clusterbox.utils.errors import (
    InvalidRecordError,
    MultipleFoundError,
    NotRunningError,
    UnreachableError,
)

DEFAULT_PROBE_TIMEOUT_SECONDS = 2.0


class Target(BaseModel):
    """A resolved, responsive instance."""

    tag: str
    data_dir: Path
    port: int
    record: Optional[PIDRecord] = None


def _read_record(data_dir: Path) -> Optional[PIDRecord]:
    try:
        return read_pid_record(pid_file_path(data_dir))
    except (FileNotFoundError, InvalidRecordError):
        return None


def _resolve_explicit(tag: str, data_dir: Path, probe_timeout: float) -> Target:
    if not data_dir.is_dir():
        raise NotRunningError(f"clusterbox instance {tag!r} is not running ({data_dir} does not exist)", tag=tag)

    try:
        port = read_port(data_dir)
    except FileNotFoundError as exc:
        raise NotRunningError(f"clusterbox instance {tag!r} is not running (no port file)", tag=tag) from exc
    except InvalidRecordError as exc:
        raise NotRunningError(f"clusterbox instance {tag!r} is not running ({exc})", tag=tag) from exc

    probe = probe_command_server(port, probe_timeout)
    if probe.state == ProbeState.ALIVE:
        return Target(tag=tag, data_dir=data_dir, port=port, record=_read_record(data_dir))
    if probe.state == ProbeState.REFUSED:
        raise NotRunningError(f"clusterbox instance {tag!r} is not running (port {port} refused)", tag=tag)
    if probe.state == ProbeState.TIMEOUT:
        raise UnreachableError(
            f"clusterbox instance {tag!r} did not answer: probe timed out (port={port})", tag=tag, port=port
        )
    raise UnreachableError(
        f"clusterbox instance {tag!r} probe on port {port} failed: {probe.reason}", tag=tag, port=port
    )


def list_instances(base_dir: Path, probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS) -> List[Target]:
    """Return every responsive instance under base_dir, sorted by tag.

    Directories without a readable port record, or whose command server does
    not answer the probe, are skipped as stale.
    """
    if not base_dir.is_dir():
        return []

    targets: List[Target] = []
    for entry in sorted(base_dir.iterdir(), key=lambda path: path.name):
        if not entry.is_dir():
            continue
        try:
            port = read_port(entry)
        except (FileNotFoundError, InvalidRecordError):
            continue
        if probe_command_server(port, probe_timeout).alive:
            targets.append(Target(tag=entry.name, data_dir=entry, port=port, record=_read_record(entry)))
    return targets


def resolve_target(
    tag: Optional[str],
    base_dir: Path,
    data_dir_override: Optional[Path] = None,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> Target:
    """Find the instance a client command should talk to.

    With a tag (or a data dir override) the target is probed directly. Without
    one, base_dir is scanned and exactly one live instance must exist.
    """
    if tag or data_dir_override is not None:
        data_dir = data_dir_override if data_dir_override is not None else base_dir / str(tag)
        return _resolve_explicit(tag or data_dir.name, data_dir, probe_timeout)

    targets = list_instances(base_dir, probe_timeout)
    if not targets:
        raise NotRunningError("no running clusterbox instance found")
    if len(targets) > 1:
        raise MultipleFoundError([target.tag for target in targets])
    return targets[0]
