import sys
from pathlib import Path
from typing import NoReturn, Optional

import typer
from pydantic import ValidationError

from clusterbox.cli.formatter import OutputFormatter
from clusterbox.client import commands
from clusterbox.config.loader import build_settings, build_topology, load_config
from clusterbox.config.models import ClusterboxSettings
from clusterbox.progress import ProgressMode, ProgressUI
from clusterbox.runtime.files import EVENT_LOG_NAME, cleanup_stale
from clusterbox.runtime.instance import (
    Instance,
    generate_tag,
    instance_data_dir,
    launch_daemon,
    wait_for_daemon_ready,
)
from clusterbox.utils.errors import AlreadyInUseError, ClusterboxError, WaitTimeoutError, should_suggest_not_running

app = typer.Typer(name="clusterbox", help="clusterbox CLI Interface", rich_markup_mode=None)

DEFAULT_CONFIG_NAME = "clusterbox.yaml"


def _fail(exc: BaseException) -> NoReturn:
    OutputFormatter.log(str(exc), severity="error")
    if should_suggest_not_running(exc):
        OutputFormatter.log("Check the --tag value or run `clusterbox ps` to list running instances.", severity="info")
    raise typer.Exit(code=1)


def _settings(ctx: typer.Context, config_dict: Optional[dict] = None) -> ClusterboxSettings:
    base_dir = (ctx.obj or {}).get("base_dir")
    try:
        return build_settings(config_dict or {}, home=base_dir)
    except ValidationError as exc:
        _fail(ClusterboxError(f"Invalid settings: {exc}"))


def _resolve_config_path(config: Optional[Path]) -> Optional[Path]:
    if config is not None:
        if not config.exists():
            OutputFormatter.log(f"Config file {config} does not exist.", severity="error")
            raise typer.Exit(code=1)
        return config.resolve()
    default_path = Path.cwd() / DEFAULT_CONFIG_NAME
    return default_path if default_path.exists() else None


@app.callback()
def main(
    ctx: typer.Context,
    base_dir: Optional[Path] = typer.Option(
        None,
        "--base-dir",
        help="Directory holding one data dir per instance (default: $CLUSTERBOX_HOME or ~/.clusterbox/data).",
    ),
):
    """
    Run and control local clusterbox database instances.
    """
    ctx.obj = {"base_dir": base_dir}


@app.command()
def start(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", help="Instance tag; a random one is generated when omitted."),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to clusterbox.yaml."),
    daemon: bool = typer.Option(False, "--daemon", help="Run the instance in the background."),
    daemon_child: bool = typer.Option(False, "--daemon-child", hidden=True),
):
    """
    Start a clusterbox instance.
    """
    config_path = _resolve_config_path(config)
    try:
        config_dict = load_config(config_path)
        topology = build_topology(config_dict)
    except (ValueError, ValidationError) as exc:
        OutputFormatter.log(f"Invalid configuration: {exc}", severity="error")
        raise typer.Exit(code=1)

    settings = _settings(ctx, config_dict)
    effective_tag = tag or generate_tag()
    data_dir = instance_data_dir(settings.home, effective_tag)

    if daemon and not daemon_child:
        _start_daemon(settings.home, effective_tag, data_dir, config_path)
        return

    event_log = None
    if daemon_child:
        data_dir.mkdir(parents=True, exist_ok=True)
        event_log = (data_dir / EVENT_LOG_NAME).open("a", encoding="utf-8")

    try:
        with ProgressUI(ProgressMode.PLAIN, out=sys.stdout if daemon_child else None, event_log=event_log) as progress:
            instance = Instance(effective_tag, data_dir, settings, topology, progress)
            try:
                instance.run()
            except ClusterboxError as exc:
                progress.close()
                _fail(exc)
    finally:
        if event_log is not None:
            event_log.close()

    OutputFormatter.log(f"clusterbox instance {effective_tag!r} stopped.", severity="info")


def _start_daemon(base_dir: Path, tag: str, data_dir: Path, config_path: Optional[Path]) -> None:
    if data_dir.exists():
        try:
            cleanup_stale(data_dir)
        except (AlreadyInUseError, WaitTimeoutError) as exc:
            _fail(AlreadyInUseError(f"tag {tag!r} is already in use: {exc}"))

    OutputFormatter.log(f"Starting clusterbox instance {tag!r} in the background...", severity="info")
    process = launch_daemon(base_dir, tag, config_path)
    try:
        port = wait_for_daemon_ready(data_dir, process)
    except ClusterboxError as exc:
        if process.poll() is None:
            process.terminate()
        _fail(exc)

    OutputFormatter.log(
        f"clusterbox instance {tag!r} is running (pid={process.pid}, port={port}, logs={data_dir}).",
        severity="success",
    )


@app.command()
def stop(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", help="Instance tag."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for the instance to exit."),
):
    """
    Stop a running clusterbox instance.
    """
    settings = _settings(ctx)
    try:
        commands.stop(
            settings.home,
            tag=tag,
            timeout=timeout or settings.stop_timeout,
            probe_timeout=settings.probe_timeout,
        )
    except ClusterboxError as exc:
        _fail(exc)


@app.command("stop-all")
def stop_all(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", hidden=True),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for each instance to exit."),
):
    """
    Stop every running clusterbox instance.
    """
    settings = _settings(ctx)
    try:
        stopped = commands.stop_all(
            settings.home,
            tag=tag,
            timeout=timeout or settings.stop_timeout,
            probe_timeout=settings.probe_timeout,
        )
    except ClusterboxError as exc:
        _fail(exc)

    if stopped:
        OutputFormatter.log(f"Stopped {len(stopped)} clusterbox instance(s).", severity="success")


@app.command()
def ps(ctx: typer.Context):
    """
    List running clusterbox instances.
    """
    settings = _settings(ctx)
    try:
        commands.ps(settings.home, probe_timeout=settings.probe_timeout)
    except ClusterboxError as exc:
        _fail(exc)


@app.command()
def display(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", help="Instance tag."),
    as_json: bool = typer.Option(False, "--json", help="Print the service table as JSON."),
):
    """
    Show the service processes of a running instance.
    """
    settings = _settings(ctx)
    try:
        target, items = commands.display(settings.home, tag=tag, probe_timeout=settings.probe_timeout)
    except ClusterboxError as exc:
        _fail(exc)

    if as_json:
        OutputFormatter.print_data(items)
    else:
        OutputFormatter.print_services(items, target.tag)


@app.command("scale-out")
def scale_out(
    ctx: typer.Context,
    service: str = typer.Argument(..., help="Service kind: pd, tikv, tidb or tiflash."),
    count: int = typer.Option(1, "--count", min=1, help="Number of processes to add."),
    tag: Optional[str] = typer.Option(None, "--tag", help="Instance tag."),
    version: Optional[str] = typer.Option(None, "--component-version", help="Component version to launch."),
):
    """
    Add service processes to a running instance.
    """
    settings = _settings(ctx)
    try:
        commands.scale_out(
            settings.home,
            service,
            count=count,
            tag=tag,
            version=version,
            probe_timeout=settings.probe_timeout,
        )
    except ClusterboxError as exc:
        _fail(exc)


@app.command("scale-in")
def scale_in(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(None, "--name", help="Service process name, e.g. tikv-1."),
    pid: Optional[int] = typer.Option(None, "--pid", help="Service process id."),
    tag: Optional[str] = typer.Option(None, "--tag", help="Instance tag."),
):
    """
    Stop one service process of a running instance.
    """
    if bool(name) == bool(pid):
        raise typer.BadParameter("Use exactly one of --name or --pid.")

    settings = _settings(ctx)
    try:
        commands.scale_in(settings.home, name=name, pid=pid, tag=tag, probe_timeout=settings.probe_timeout)
    except ClusterboxError as exc:
        _fail(exc)


if __name__ == "__main__":
    app()
