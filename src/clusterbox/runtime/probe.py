from __future__ import annotations

import time
from enum import Enum

import httpx
from pydantic import BaseModel, ValidationError

from clusterbox.runtime.contracts import CommandReply

LOOPBACK_HOST = "127.0.0.1"


class ProbeState(str, Enum):
    """Classification of a command server liveness probe."""

    ALIVE = "alive"
    REFUSED = "refused"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


class ProbeResult(BaseModel):
    """Result payload from probing a command server port."""

    state: ProbeState
    port: int
    reason: str

    @property
    def alive(self) -> bool:
        return self.state == ProbeState.ALIVE


def command_server_url(port: int, path: str) -> str:
    return f"http://{LOOPBACK_HOST}:{port}{path}"


def _parse_reply(response: httpx.Response) -> CommandReply | None:
    try:
        return CommandReply.model_validate_json(response.content)
    except ValidationError:
        return None


def probe_command_server(port: int, timeout: float) -> ProbeResult:
    """Check whether a clusterbox command server answers on a loopback port.

    GET /ping is tried first. Servers without it are recognised by GET
    /command answering 405 "method not allowed", since that endpoint only
    accepts POST. One deadline covers both requests.
    """
    if port <= 0:
        return ProbeResult(state=ProbeState.UNEXPECTED, port=port, reason=f"invalid port {port}")

    deadline = time.monotonic() + timeout

    def remaining() -> float:
        return deadline - time.monotonic()

    try:
        with httpx.Client(trust_env=False) as client:
            ping = client.get(command_server_url(port, "/ping"), timeout=max(remaining(), 0.001))
            if ping.status_code == 200:
                reply = _parse_reply(ping)
                if reply is not None and reply.ok and (reply.message or "").strip() == "pong":
                    return ProbeResult(state=ProbeState.ALIVE, port=port, reason="ping answered")
                return ProbeResult(state=ProbeState.UNEXPECTED, port=port, reason="unexpected ping response")

            if remaining() <= 0:
                return ProbeResult(state=ProbeState.TIMEOUT, port=port, reason=f"probe timed out (port={port})")

            response = client.get(command_server_url(port, "/command"), timeout=remaining())
    except httpx.TimeoutException:
        return ProbeResult(state=ProbeState.TIMEOUT, port=port, reason=f"probe timed out (port={port})")
    except httpx.ConnectError as exc:
        return ProbeResult(state=ProbeState.REFUSED, port=port, reason=f"connection refused (port={port}): {exc}")
    except httpx.HTTPError as exc:
        return ProbeResult(state=ProbeState.UNEXPECTED, port=port, reason=f"probe failed (port={port}): {exc}")

    if response.status_code != 405:
        return ProbeResult(
            state=ProbeState.UNEXPECTED,
            port=port,
            reason=f"unexpected probe status {response.status_code} (port={port})",
        )

    reply = _parse_reply(response)
    if reply is not None and not reply.ok and reply.error == "method not allowed":
        return ProbeResult(state=ProbeState.ALIVE, port=port, reason="command endpoint answered")

    return ProbeResult(state=ProbeState.UNEXPECTED, port=port, reason=f"unexpected probe response (port={port})")
