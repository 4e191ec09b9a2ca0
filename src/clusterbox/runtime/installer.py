from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, Optional, Protocol

from clusterbox.config.models import ServiceKind, TopologySpec
from clusterbox.progress import Task
from clusterbox.utils.errors import InstallError

DEFAULT_BINARY_NAMES: Dict[ServiceKind, str] = {
    ServiceKind.PD: "pd-server",
    ServiceKind.TIKV: "tikv-server",
    ServiceKind.TIDB: "tidb-server",
    ServiceKind.TIFLASH: "tiflash",
}


class ComponentInstaller(Protocol):
    """Resolves the executable for one service kind and version."""

    def install(self, kind: ServiceKind, version: str, task: Optional[Task] = None) -> Path:
        ...


class LocalInstaller:
    """Resolves component binaries from configuration or PATH; never downloads."""

    def __init__(self, binaries: Optional[Dict[ServiceKind, str]] = None) -> None:
        self.binaries = dict(binaries or {})

    @classmethod
    def from_topology(cls, topology: TopologySpec) -> "LocalInstaller":
        return cls({spec.kind: spec.binary for spec in topology.ordered() if spec.binary})

    def install(self, kind: ServiceKind, version: str, task: Optional[Task] = None) -> Path:
        candidate = self.binaries.get(kind) or DEFAULT_BINARY_NAMES[kind]
        if task is not None:
            task.set_meta(version)

        resolved: Optional[str]
        if os.sep in candidate or (os.altsep and os.altsep in candidate):
            path = Path(candidate).expanduser()
            resolved = str(path) if path.is_file() and os.access(path, os.X_OK) else None
        else:
            resolved = shutil.which(candidate)

        if resolved is None:
            raise InstallError(f"cannot find {kind.value} binary {candidate!r} (version {version})")

        return Path(resolved)
