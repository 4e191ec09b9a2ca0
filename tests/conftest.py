import json
import socket
import subprocess
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))


class _StubHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    routes: dict
    delay: float


class _StubHandler(BaseHTTPRequestHandler):
    server: _StubHTTPServer

    def log_message(self, format, *args):
        return

    def _respond(self):
        if self.server.delay:
            time.sleep(self.server.delay)
        status, body = self.server.routes.get((self.command, self.path), (404, {"ok": False, "error": "not found"}))
        raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def do_GET(self):
        self._respond()

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        if length:
            self.rfile.read(length)
        self._respond()


PONG_ROUTES = {("GET", "/ping"): (200, {"ok": True, "message": "pong"})}


@pytest.fixture
def stub_server():
    """
    Factory starting threaded HTTP stubs on 127.0.0.1.

    Routes map (method, path) to (status, json-able body or raw bytes).
    Returns the bound port; every stub is shut down after the test.
    """
    servers = []

    def _start(routes=None, delay: float = 0.0) -> int:
        server = _StubHTTPServer(("127.0.0.1", 0), _StubHandler)
        server.routes = dict(PONG_ROUTES if routes is None else routes)
        server.delay = delay
        thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        thread.start()
        servers.append((server, thread))
        return server.server_address[1]

    yield _start

    for server, thread in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)


@pytest.fixture
def free_port():
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def dead_pid():
    """The pid of a process that has already exited and been reaped."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid
