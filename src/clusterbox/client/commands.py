from __future__ import annotations

import json
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from clusterbox.cli.formatter import OutputFormatter
from clusterbox.client.target import DEFAULT_PROBE_TIMEOUT_SECONDS, Target, list_instances, resolve_target
from clusterbox.config.models import SERVICE_START_ORDER
from clusterbox.progress import Group, ProgressMode, ProgressUI
from clusterbox.runtime.client import send_command
from clusterbox.runtime.contracts import Command, CommandType, DisplayItem
from clusterbox.runtime.files import DEFAULT_STOP_TIMEOUT_SECONDS, wait_stopped
from clusterbox.utils.errors import ClusterboxError, NotRunningError, UnreachableError

NO_INSTANCES_MESSAGE = "No running clusterbox instances found."
DISPLAY_TIMEOUT_SECONDS = 5.0
MAX_STOP_WORKERS = 16

_DISPLAY_ITEMS = TypeAdapter(List[DisplayItem])


def fetch_display(target: Target, timeout_seconds: float = DISPLAY_TIMEOUT_SECONDS) -> List[DisplayItem]:
    """Ask an instance for its service table."""
    reply = send_command(target.port, Command(type=CommandType.DISPLAY.value), timeout_seconds=timeout_seconds)
    try:
        return _DISPLAY_ITEMS.validate_python(json.loads(reply.message or "[]"))
    except (ValueError, ValidationError) as exc:
        raise UnreachableError(
            f"invalid display reply from clusterbox instance {target.tag!r}", tag=target.tag, port=target.port
        ) from exc


def summarize_version(items: List[DisplayItem]) -> str:
    versions = sorted({item.version for item in items if item.version})
    return ", ".join(versions) if versions else "unknown"


def summarize_services(items: List[DisplayItem]) -> str:
    counts = Counter(item.service for item in items)
    order = [kind.value for kind in SERVICE_START_ORDER]
    kinds = sorted(counts, key=lambda service: (order.index(service) if service in order else len(order), service))
    return " ".join(f"{service}={counts[service]}" for service in kinds) or "-"


def stop(
    base_dir: Path,
    tag: Optional[str] = None,
    timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> None:
    """Stop one instance and wait until its pid record is gone.

    Stopping an instance that is not running is reported as a warning, not
    an error.
    """
    try:
        target = resolve_target(tag, base_dir, probe_timeout=probe_timeout)
        reply = send_command(target.port, Command(type=CommandType.STOP.value))
    except NotRunningError as exc:
        OutputFormatter.log(f"{exc}; nothing to stop.", severity="warning")
        return

    OutputFormatter.print_message(reply.message or "")
    wait_stopped(target.data_dir, timeout)
    OutputFormatter.log(f"clusterbox instance {target.tag!r} stopped.", severity="success")


def _stop_one(target: Target, group: Group, timeout: float) -> Optional[ClusterboxError]:
    try:
        version = summarize_version(fetch_display(target))
    except ClusterboxError:
        version = "unknown"

    task = group.task(f"{target.tag} ({version})")
    task.start()
    try:
        send_command(target.port, Command(type=CommandType.STOP.value))
        wait_stopped(target.data_dir, timeout)
    except NotRunningError:
        # Went away between the scan and the stop request.
        task.done()
        return None
    except ClusterboxError as exc:
        task.error(str(exc))
        return exc

    task.done()
    return None


def stop_all(
    base_dir: Path,
    tag: Optional[str] = None,
    timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    progress: Optional[ProgressUI] = None,
) -> List[str]:
    """Stop every running instance under base_dir concurrently.

    Returns the stopped tags. Raises ClusterboxError listing every failure
    after all stops have finished.
    """
    if tag:
        raise ClusterboxError("stop-all does not accept --tag; use stop --tag instead")

    targets = list_instances(base_dir, probe_timeout)
    if not targets:
        OutputFormatter.log(NO_INSTANCES_MESSAGE, severity="warning")
        return []

    owns_progress = progress is None
    ui = progress if progress is not None else ProgressUI(ProgressMode.PLAIN)
    group = ui.group("Stop clusters")
    try:
        with ThreadPoolExecutor(max_workers=min(len(targets), MAX_STOP_WORKERS)) as executor:
            futures = [(target, executor.submit(_stop_one, target, group, timeout)) for target in targets]
            results: List[Tuple[Target, Optional[ClusterboxError]]] = [
                (target, future.result()) for target, future in futures
            ]
    finally:
        group.close()
        if owns_progress:
            ui.close()

    failures = [(target, error) for target, error in results if error is not None]
    if failures:
        details = "; ".join(f"{target.tag}: {error}" for target, error in failures)
        raise ClusterboxError(f"failed to stop {len(failures)} of {len(targets)} instance(s): {details}")

    return [target.tag for target in targets]


def ps(base_dir: Path, probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS) -> int:
    """Print a table of running instances and return how many were found."""
    targets = list_instances(base_dir, probe_timeout)
    if not targets:
        OutputFormatter.log(NO_INSTANCES_MESSAGE, severity="warning")
        return 0

    def _row(target: Target) -> List[str]:
        record = target.record
        pid = str(record.pid) if record is not None else "-"
        started = record.started_at.isoformat() if record is not None and record.started_at else "-"
        try:
            items = fetch_display(target)
        except ClusterboxError as exc:
            return [target.tag, "-", pid, started, "-", f"unreachable: {exc}"]
        return [target.tag, summarize_version(items), pid, started, summarize_services(items), "running"]

    with ThreadPoolExecutor(max_workers=min(len(targets), MAX_STOP_WORKERS)) as executor:
        rows = list(executor.map(_row, targets))

    OutputFormatter.print_table(
        "clusterbox instances",
        ["TAG", "VERSION", "PID", "STARTED", "SERVICES", "STATUS"],
        rows,
    )
    return len(targets)


def display(
    base_dir: Path,
    tag: Optional[str] = None,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> Tuple[Target, List[DisplayItem]]:
    """Resolve one instance and return its service table."""
    target = resolve_target(tag, base_dir, probe_timeout=probe_timeout)
    return target, fetch_display(target)


def scale_out(
    base_dir: Path,
    service: str,
    count: int = 1,
    tag: Optional[str] = None,
    version: Optional[str] = None,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> str:
    target = resolve_target(tag, base_dir, probe_timeout=probe_timeout)
    command = Command(type=CommandType.SCALE_OUT.value, service=service, count=count, version=version)
    reply = send_command(target.port, command)
    OutputFormatter.print_message(reply.message or "")
    return reply.message or ""


def scale_in(
    base_dir: Path,
    name: Optional[str] = None,
    pid: Optional[int] = None,
    tag: Optional[str] = None,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> str:
    if bool(name) == bool(pid):
        raise ClusterboxError("scale-in requires exactly one of --name or --pid")

    target = resolve_target(tag, base_dir, probe_timeout=probe_timeout)
    reply = send_command(target.port, Command(type=CommandType.SCALE_IN.value, name=name or None, pid=pid or None))
    OutputFormatter.print_message(reply.message or "")
    return reply.message or ""
