from __future__ import annotations

import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional

from clusterbox.config.models import ServiceKind, ServiceSpec, TopologySpec
from clusterbox.progress import Group
from clusterbox.runtime.installer import ComponentInstaller
from clusterbox.runtime.process_group import ProcessGroup, kill_process_or_group
from clusterbox.utils.errors import InstallError, ProcessGroupClosedError

TERMINATE_GRACE_SECONDS = 10.0
SUPERVISE_POLL_SECONDS = 0.1

ExitCallback = Callable[[str, Optional[int]], None]


class ServiceProcess:
    """One spawned database process, leading its own OS process group."""

    def __init__(self, name: str, kind: ServiceKind, version: str, argv: List[str], work_dir: Path) -> None:
        self.name = name
        self.kind = kind
        self.version = version
        self.argv = argv
        self.work_dir = work_dir
        self._popen: Optional[subprocess.Popen] = None
        self._stop_requested = threading.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._popen.pid if self._popen is not None else None

    @property
    def log_path(self) -> Path:
        return self.work_dir / f"{self.name}.log"

    def start(self) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("ab") as log_file:
            self._popen = subprocess.Popen(
                self.argv,
                cwd=self.work_dir,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    def poll(self) -> Optional[int]:
        return self._popen.poll() if self._popen is not None else None

    def request_stop(self) -> None:
        """Ask the supervisor to terminate this process without blocking the caller."""
        self._stop_requested.set()

    def terminate(self, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> Optional[int]:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        if self._popen is None:
            return None
        if self._popen.poll() is not None:
            return self._popen.returncode

        kill_process_or_group(self._popen.pid, signal.SIGTERM)
        try:
            return self._popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            kill_process_or_group(self._popen.pid, signal.SIGKILL)
            return self._popen.wait()

    def supervise(self, stop_event: threading.Event, on_exit: ExitCallback) -> None:
        """Process group worker: wait for exit, a scale-in request or group shutdown."""
        while not stop_event.wait(SUPERVISE_POLL_SECONDS):
            returncode = self.poll()
            if returncode is not None:
                on_exit(self.name, returncode)
                return
            if self._stop_requested.is_set():
                on_exit(self.name, self.terminate())
                return

        self.terminate()


class ServiceLauncher:
    """Installs and spawns service processes as members of a process group."""

    def __init__(
        self,
        data_dir: Path,
        topology: TopologySpec,
        installer: ComponentInstaller,
        process_group: ProcessGroup,
    ) -> None:
        self.data_dir = data_dir
        self.topology = topology
        self.installer = installer
        self.process_group = process_group

    def render_argv(self, binary: Path, spec: ServiceSpec, name: str, index: int, work_dir: Path) -> List[str]:
        values = {
            "name": name,
            "index": index,
            "data_dir": str(work_dir),
            "log_dir": str(work_dir),
            "log_file": str(work_dir / f"{name}.log"),
        }
        try:
            return [str(binary)] + [arg.format(**values) for arg in spec.args]
        except (KeyError, IndexError, ValueError) as exc:
            raise InstallError(f"invalid argument template for {spec.kind.value}: {exc}") from exc

    def launch(
        self,
        kind: ServiceKind,
        version: str,
        index: int,
        group: Group,
        on_exit: ExitCallback,
    ) -> ServiceProcess:
        name = f"{kind.value}-{index}"
        task = group.task(name)
        task.start()
        try:
            binary = self.installer.install(kind, version, task)
            work_dir = self.data_dir / name
            spec = self.topology.spec_for(kind)
            process = ServiceProcess(name, kind, version, self.render_argv(binary, spec, name, index, work_dir), work_dir)
            process.start()
        except InstallError as exc:
            task.error(str(exc))
            raise
        except OSError as exc:
            task.error(str(exc))
            raise InstallError(f"failed to start {name}: {exc}") from exc

        try:
            self.process_group.add(name, lambda stop_event: process.supervise(stop_event, on_exit))
        except ProcessGroupClosedError as exc:
            process.terminate()
            task.cancel(str(exc))
            raise

        task.done()
        return process
