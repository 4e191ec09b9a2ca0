from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceKind(str, Enum):
    """The fixed set of service kinds an instance can run."""

    PD = "pd"
    TIKV = "tikv"
    TIDB = "tidb"
    TIFLASH = "tiflash"


# Storage and placement come up before the SQL layer.
SERVICE_START_ORDER: List[ServiceKind] = [
    ServiceKind.PD,
    ServiceKind.TIKV,
    ServiceKind.TIDB,
    ServiceKind.TIFLASH,
]


def default_home() -> Path:
    return Path.home() / ".clusterbox" / "data"


class ClusterboxSettings(BaseSettings):
    """
    Framework-level settings (the 'clusterbox' section in clusterbox.yaml).
    """
    model_config = SettingsConfigDict(env_prefix="CLUSTERBOX_", extra="ignore")

    home: Path = Field(default_factory=default_home)
    version: str = "nightly"
    stop_timeout: float = Field(default=60.0, gt=0)
    probe_timeout: float = Field(default=2.0, gt=0)

    @field_validator("home", mode="after")
    @classmethod
    def _expand_home(cls, value: Path) -> Path:
        return value.expanduser()


class ServiceSpec(BaseModel):
    """How many processes of one kind to run and how to launch them."""

    model_config = ConfigDict(extra="forbid")

    kind: ServiceKind
    count: int = Field(default=1, ge=0)
    binary: Optional[str] = None
    # Rendered with str.format: {name}, {index}, {data_dir}, {log_dir}.
    args: List[str] = Field(default_factory=list)


def _default_services() -> Dict[ServiceKind, ServiceSpec]:
    return {
        ServiceKind.PD: ServiceSpec(kind=ServiceKind.PD, count=1),
        ServiceKind.TIKV: ServiceSpec(kind=ServiceKind.TIKV, count=1),
        ServiceKind.TIDB: ServiceSpec(kind=ServiceKind.TIDB, count=1),
        ServiceKind.TIFLASH: ServiceSpec(kind=ServiceKind.TIFLASH, count=0),
    }


class TopologySpec(BaseModel):
    """Per-kind service layout of one instance."""

    model_config = ConfigDict(extra="forbid")

    services: Dict[ServiceKind, ServiceSpec] = Field(default_factory=_default_services)

    @classmethod
    def from_config(cls, topology: Dict[str, Any], binaries: Dict[str, str]) -> "TopologySpec":
        services = _default_services()
        for raw_kind, raw_spec in topology.items():
            kind = ServiceKind(raw_kind)
            spec_data = dict(raw_spec or {})
            spec_data["kind"] = kind
            services[kind] = ServiceSpec(**spec_data)

        for raw_kind, binary in binaries.items():
            kind = ServiceKind(raw_kind)
            if services[kind].binary is None:
                services[kind] = services[kind].model_copy(update={"binary": binary})

        return cls(services=services)

    def ordered(self) -> List[ServiceSpec]:
        return [self.services[kind] for kind in SERVICE_START_ORDER if kind in self.services]

    def spec_for(self, kind: ServiceKind) -> ServiceSpec:
        return self.services.get(kind) or ServiceSpec(kind=kind, count=0)
