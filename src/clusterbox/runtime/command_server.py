from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlsplit

from pydantic import ValidationError

from clusterbox.progress import ProgressUI
from clusterbox.runtime.contracts import Command, CommandReply
from clusterbox.runtime.files import port_file_path, write_port
from clusterbox.runtime.probe import LOOPBACK_HOST

MAX_BODY_BYTES = 1024 * 1024
# Oversized bodies up to this size are read and discarded so the client sees the reply.
MAX_DRAIN_BYTES = 8 * MAX_BODY_BYTES
TRAILING_DATA_ERROR = "invalid JSON payload"
METHOD_NOT_ALLOWED_ERROR = "method not allowed"


class CommandDecodeError(ValueError):
    """A request body that is not exactly one valid command object."""


class CommandSink(Protocol):
    done: threading.Event

    def submit(self, command: Command, timeout: Optional[float] = None) -> CommandReply:
        ...


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        if error.get("type") == "extra_forbidden":
            parts.append(f"unknown field {location!r}")
        elif location:
            parts.append(f"{location}: {error.get('msg')}")
        else:
            parts.append(str(error.get("msg")))
    return "; ".join(parts) or "invalid command"


def decode_command(body: bytes) -> Command:
    """Decode exactly one JSON command object; trailing data and unknown fields are rejected."""
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CommandDecodeError("request body is not valid UTF-8") from exc

    stripped = text.lstrip()
    if not stripped:
        raise CommandDecodeError("empty request body")

    try:
        value, end = json.JSONDecoder().raw_decode(stripped)
    except json.JSONDecodeError as exc:
        raise CommandDecodeError(f"invalid JSON: {exc.msg} (char {exc.pos})") from exc

    if stripped[end:].strip():
        raise CommandDecodeError(TRAILING_DATA_ERROR)
    if not isinstance(value, dict):
        raise CommandDecodeError("command must be a JSON object")

    try:
        return Command.model_validate(value)
    except ValidationError as exc:
        raise CommandDecodeError(_summarize_validation_error(exc)) from exc


class _CommandHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    command_server: "CommandServer"


class _CommandHandler(BaseHTTPRequestHandler):
    server: _CommandHTTPServer
    server_version = "clusterbox"

    def log_message(self, format: str, *args) -> None:
        return

    def _path(self) -> str:
        return urlsplit(self.path).path

    def _reply(self, status: int, reply: CommandReply) -> None:
        body = reply.to_json()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _not_found(self) -> None:
        self._reply(404, CommandReply(ok=False, error="not found"))

    def _method_not_allowed(self) -> None:
        if self._path() in {"/command", "/ping"}:
            self._reply(405, CommandReply(ok=False, error=METHOD_NOT_ALLOWED_ERROR))
        else:
            self._not_found()

    do_PUT = _method_not_allowed
    do_PATCH = _method_not_allowed
    do_DELETE = _method_not_allowed

    def do_GET(self) -> None:
        path = self._path()
        if path == "/ping":
            self._reply(200, CommandReply(ok=True, message="pong"))
        elif path == "/command":
            self._reply(405, CommandReply(ok=False, error=METHOD_NOT_ALLOWED_ERROR))
        else:
            self._not_found()

    def do_POST(self) -> None:
        path = self._path()
        if path == "/ping":
            self._method_not_allowed()
            return
        if path != "/command":
            self._not_found()
            return

        try:
            body = self._read_body()
            command = decode_command(body)
        except CommandDecodeError as exc:
            self._reply(400, CommandReply(ok=False, error=str(exc)))
            return

        reply = self.server.command_server.dispatch(command)
        self._reply(200 if reply.ok else 400, reply)

    def _read_body(self) -> bytes:
        raw_length = self.headers.get("Content-Length")
        if raw_length is None:
            self.close_connection = True
            raise CommandDecodeError("missing Content-Length")
        try:
            length = int(raw_length)
        except ValueError as exc:
            self.close_connection = True
            raise CommandDecodeError("invalid Content-Length") from exc
        if length < 0:
            self.close_connection = True
            raise CommandDecodeError("invalid Content-Length")

        body = self.rfile.read(min(length, MAX_BODY_BYTES + 1))
        if len(body) > MAX_BODY_BYTES:
            self.close_connection = True
            remaining = length - len(body)
            if remaining <= MAX_DRAIN_BYTES:
                while remaining > 0:
                    chunk = self.rfile.read(min(remaining, 64 * 1024))
                    if not chunk:
                        break
                    remaining -= len(chunk)
            raise CommandDecodeError(f"request body too large (limit {MAX_BODY_BYTES} bytes)")
        return body


class CommandServer:
    """Loopback HTTP control plane of one instance.

    ``serve`` runs as a process group worker. The port record is written only
    after the progress UI has flushed everything emitted so far, so readers
    polling for it never race a partially printed startup banner.
    """

    def __init__(
        self,
        data_dir: Path,
        controller: Optional[CommandSink] = None,
        progress: Optional[ProgressUI] = None,
        host: str = LOOPBACK_HOST,
        port: int = 0,
        command_timeout: Optional[float] = None,
    ) -> None:
        self.data_dir = data_dir
        self.controller = controller
        self.progress = progress
        self.host = host
        self.port = port
        self.command_timeout = command_timeout
        self.ready = threading.Event()

    def dispatch(self, command: Command) -> CommandReply:
        if self.controller is None:
            return CommandReply(ok=False, error="instance controller is not available")
        return self.controller.submit(command, timeout=self.command_timeout)

    def serve(self, stop_event: threading.Event) -> None:
        httpd = _CommandHTTPServer((self.host, self.port), _CommandHandler)
        httpd.command_server = self
        self.port = httpd.server_address[1]

        thread = threading.Thread(
            target=httpd.serve_forever,
            kwargs={"poll_interval": 0.2},
            name="command-http",
            daemon=True,
        )
        thread.start()

        wrote_port = False
        try:
            if self.progress is not None:
                self.progress.sync()
            if not stop_event.is_set():
                write_port(self.data_dir, self.port)
                wrote_port = True
            self.ready.set()

            stop_event.wait()
            if self.controller is not None:
                self.controller.done.wait()
        finally:
            httpd.shutdown()
            httpd.server_close()
            thread.join()
            if wrote_port:
                port_file_path(self.data_dir).unlink(missing_ok=True)
