from __future__ import annotations

import os
import secrets
import signal
import string
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from clusterbox.config.models import ClusterboxSettings, TopologySpec
from clusterbox.progress import ProgressUI
from clusterbox.runtime.command_server import CommandServer
from clusterbox.runtime.controller import Controller
from clusterbox.runtime.files import (
    DAEMON_LOG_NAME,
    PID_FILE_WRITE_GRACE_SECONDS,
    STOP_POLL_INTERVAL_SECONDS,
    claim,
    read_port,
)
from clusterbox.runtime.installer import ComponentInstaller, LocalInstaller
from clusterbox.runtime.process_group import ProcessGroup
from clusterbox.runtime.services import ServiceLauncher
from clusterbox.utils.errors import ClusterboxError, InvalidRecordError, WaitTimeoutError

DAEMON_READY_TIMEOUT_SECONDS = 120.0
TAG_ALPHABET = string.ascii_letters + string.digits
TAG_LENGTH = 10


def generate_tag() -> str:
    return "".join(secrets.choice(TAG_ALPHABET) for _ in range(TAG_LENGTH))


def instance_data_dir(base_dir: Path, tag: str) -> Path:
    return base_dir / tag


class Instance:
    """One running clusterbox instance, foreground or daemonized.

    ``run`` blocks until the instance is asked to stop (stop command,
    SIGINT/SIGTERM or a startup failure) and every worker has exited.
    """

    def __init__(
        self,
        tag: str,
        data_dir: Path,
        settings: ClusterboxSettings,
        topology: TopologySpec,
        progress: ProgressUI,
        installer: Optional[ComponentInstaller] = None,
        port: int = 0,
    ) -> None:
        self.tag = tag
        self.data_dir = data_dir
        self.settings = settings
        self.topology = topology
        self.progress = progress
        self.installer = installer or LocalInstaller.from_topology(topology)
        self.port = port

        self.group: Optional[ProcessGroup] = None
        self.controller: Optional[Controller] = None
        self.command_server: Optional[CommandServer] = None

    def run(self) -> None:
        release = claim(self.data_dir, self.tag)
        try:
            self._run_claimed()
        finally:
            release()

    def _run_claimed(self) -> None:
        group = ProcessGroup()
        launcher = ServiceLauncher(self.data_dir, self.topology, self.installer, group)
        controller = Controller(
            version=self.settings.version,
            topology=self.topology,
            launcher=launcher,
            progress=self.progress,
        )
        server = CommandServer(self.data_dir, controller=controller, progress=self.progress, port=self.port)
        self.group, self.controller, self.command_server = group, controller, server

        self.progress.print_lines([f"Starting clusterbox instance {self.tag!r} in {self.data_dir}"])

        restore = self._install_signal_handlers(controller)
        try:
            group.add("controller", controller.run)
            controller.ready.wait()
            if not controller.stopping.is_set():
                group.add("command server", lambda stop_event: self._serve(server, controller, stop_event))
                self._wait_announced(server, controller)
            controller.stopping.wait()
        finally:
            group.close()
            error = group.wait()
            restore()

        if error is not None:
            raise error
        if controller.boot_error is not None:
            raise controller.boot_error

    @staticmethod
    def _serve(server: CommandServer, controller: Controller, stop_event: threading.Event) -> None:
        try:
            server.serve(stop_event)
        except BaseException as exc:
            controller.request_stop(f"command server failed: {exc}")
            raise

    def _wait_announced(self, server: CommandServer, controller: Controller) -> None:
        while not server.ready.wait(0.1):
            if controller.stopping.is_set():
                return
        self.progress.print_lines(
            [f"clusterbox instance {self.tag!r} is ready (command port {server.port})."]
        )

    def _install_signal_handlers(self, controller: Controller):
        if threading.current_thread() is not threading.main_thread():
            return lambda: None

        def _handle(signum, _frame) -> None:
            controller.request_stop(f"received {signal.Signals(signum).name}")

        previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}

        def restore() -> None:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return restore


def build_daemon_command(
    base_dir: Path,
    tag: str,
    config_path: Optional[Path] = None,
) -> List[str]:
    command = [
        sys.executable,
        "-m",
        "clusterbox.cli.main",
        "--base-dir",
        str(base_dir),
        "start",
        "--tag",
        tag,
        "--daemon-child",
    ]
    if config_path is not None:
        command.extend(["--config", str(config_path)])
    return command


def launch_daemon(
    base_dir: Path,
    tag: str,
    config_path: Optional[Path] = None,
) -> subprocess.Popen:
    """Re-launch clusterbox detached; the child writes its output to daemon.log."""
    data_dir = instance_data_dir(base_dir, tag)
    data_dir.mkdir(parents=True, exist_ok=True)

    env = os.environ.copy()
    src_dir = Path(__file__).resolve().parents[2]
    existing_pythonpath = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = f"{src_dir}{os.pathsep}{existing_pythonpath}" if existing_pythonpath else str(src_dir)

    with (data_dir / DAEMON_LOG_NAME).open("ab") as log_file:
        return subprocess.Popen(
            build_daemon_command(base_dir, tag, config_path),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )


def wait_for_daemon_ready(
    data_dir: Path,
    process: subprocess.Popen,
    timeout_seconds: float = DAEMON_READY_TIMEOUT_SECONDS,
) -> int:
    """Wait until the daemon publishes its port record and return the port.

    Raises ClusterboxError when the daemon exits first and WaitTimeoutError
    when the deadline elapses.
    """
    deadline = time.monotonic() + max(timeout_seconds, PID_FILE_WRITE_GRACE_SECONDS)
    while True:
        try:
            return read_port(data_dir)
        except (FileNotFoundError, InvalidRecordError):
            pass

        returncode = process.poll()
        if returncode is not None:
            raise ClusterboxError(
                f"daemon exited with code {returncode} before becoming ready; see {data_dir / DAEMON_LOG_NAME}"
            )
        if time.monotonic() >= deadline:
            raise WaitTimeoutError(f"timeout waiting for daemon in {data_dir} to become ready")
        time.sleep(STOP_POLL_INTERVAL_SECONDS)
