from typing import List, Optional


class ClusterboxError(Exception):
    """
    Base class for every error clusterbox reports to a user.
    """


class AlreadyInUseError(ClusterboxError):
    """A live process or a responsive command server owns the target."""

    def __init__(self, message: str, pid: Optional[int] = None, port: Optional[int] = None):
        self.pid = pid
        self.port = port
        super().__init__(message)


class StillStartingError(AlreadyInUseError):
    """The pid record exists but is still being written by another launcher."""


class NotRunningError(ClusterboxError):
    """
    No instance was found at the resolved target.

    Callers typically suggest checking the tag or listing instances.
    """

    def __init__(self, message: str, tag: Optional[str] = None):
        self.tag = tag
        super().__init__(message)


class UnreachableError(ClusterboxError):
    """
    An instance may exist but did not answer correctly (timeout or an
    unexpected reply). Kept distinct from NotRunningError so a possibly
    stuck instance is never mistaken for a free slot.
    """

    def __init__(self, message: str, tag: Optional[str] = None, port: Optional[int] = None):
        self.tag = tag
        self.port = port
        super().__init__(message)


class MultipleFoundError(ClusterboxError):
    """More than one live instance matched; an explicit tag is required."""

    def __init__(self, tags: List[str]):
        self.tags = list(tags)
        super().__init__(
            f"multiple clusterbox instances found ({', '.join(self.tags)}), please specify --tag"
        )


class WaitTimeoutError(ClusterboxError, TimeoutError):
    """An explicit wait or probe deadline elapsed."""


class InvalidRecordError(ClusterboxError, ValueError):
    """A pid or port record could not be parsed."""


class CommandFailedError(ClusterboxError):
    """The command server answered with ok=false."""

    def __init__(self, error: str, status_code: Optional[int] = None):
        self.error = error
        self.status_code = status_code
        super().__init__(error)


class ProcessGroupClosedError(ClusterboxError):
    """A worker was added to a process group that is already closing."""


class InstallError(ClusterboxError):
    """A component binary could not be resolved."""


def should_suggest_not_running(error: BaseException) -> bool:
    """Return True when the error means "nothing is running here"."""
    return isinstance(error, NotRunningError)
