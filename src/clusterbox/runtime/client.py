from __future__ import annotations

import httpx
from pydantic import ValidationError

from clusterbox.runtime.contracts import Command, CommandReply
from clusterbox.runtime.probe import command_server_url
from clusterbox.utils.errors import CommandFailedError, NotRunningError, UnreachableError

DEFAULT_COMMAND_TIMEOUT_SECONDS = 30.0


def send_command(
    port: int,
    command: Command,
    timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
) -> CommandReply:
    """POST one command to an instance and return its successful reply.

    A reply with ok=false raises CommandFailedError carrying the remote error
    text verbatim; callers render it, this function never prints it.
    """
    payload = command.model_dump_json(exclude_none=True)

    try:
        response = httpx.post(
            command_server_url(port, "/command"),
            content=payload,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=timeout_seconds,
            trust_env=False,
        )
    except httpx.TimeoutException as exc:
        raise UnreachableError(f"command {command.type!r} timed out (port={port})", port=port) from exc
    except httpx.ConnectError as exc:
        raise NotRunningError(f"no command server listening on port {port}") from exc
    except httpx.HTTPError as exc:
        raise UnreachableError(f"command {command.type!r} failed (port={port}): {exc}", port=port) from exc

    try:
        reply = CommandReply.model_validate_json(response.content)
    except ValidationError as exc:
        raise UnreachableError(
            f"invalid reply to command {command.type!r} (status {response.status_code})", port=port
        ) from exc

    if not reply.ok:
        raise CommandFailedError(reply.error or "command failed", status_code=response.status_code)

    return reply
