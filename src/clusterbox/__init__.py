"""Local multi-process database cluster launcher with a loopback control plane."""

from clusterbox.utils.errors import (
	AlreadyInUseError,
	ClusterboxError,
	MultipleFoundError,
	NotRunningError,
	UnreachableError,
)

__version__ = "0.1.0"

__all__ = [
	"AlreadyInUseError",
	"ClusterboxError",
	"MultipleFoundError",
	"NotRunningError",
	"UnreachableError",
	"__version__",
]
