"""Fixtures for integration tests: a fake clickhouse binary and a local release server."""

import hashlib
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict, Optional

import pytest

from embedded_clickhouse.core.types import EmbeddedClickHouseConfig, RetryPolicy, TimeoutConfig
from embedded_clickhouse.core.value_objects import ClickHouseVersion
from embedded_clickhouse.distribution.platform import detect_platform, resolve_asset

VERSION = ClickHouseVersion.V25_3

# Stands in for the real server: reads tcp_port, http_port and listen_host from
# the generated config.xml and answers the readiness probes. The optional
# <fake_mode> element selects a misbehaviour.
FAKE_SERVER = '''#!{python}
import signal
import socket
import sys
import threading
import time
import xml.etree.ElementTree as ET
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

config_file = next(a.split("=", 1)[1] for a in sys.argv if a.startswith("--config-file="))
root = ET.parse(config_file).getroot()
host = root.findtext("listen_host")
mode = root.findtext("fake_mode") or "ready"
print("fake clickhouse starting in mode", mode, flush=True)

if mode == "crash":
    print("Code: 210. DB::Exception: fake failure", flush=True)
    sys.exit(3)

if mode == "late_bind_failure":
    time.sleep(0.5)
    print("DB::Exception: Listen failed: Address already in use", flush=True)
    sys.exit(76)

stopping = threading.Event()
if mode == "ignore_term":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGTERM, lambda *args: stopping.set())


class Ping(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b"Ok.\\n"
        self.send_response(200 if self.path == "/ping" else 404)
        self.send_header("Content-Type", "text/plain; charset=UTF-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


def accept_forever(listener):
    while True:
        conn, _ = listener.accept()
        conn.close()


if mode != "never_ready":
    listener = socket.create_server((host, int(root.findtext("tcp_port"))))
    threading.Thread(target=accept_forever, args=(listener,), daemon=True).start()
    http = ThreadingHTTPServer((host, int(root.findtext("http_port"))), Ping)
    threading.Thread(target=http.serve_forever, daemon=True).start()
    print("Ready for connections.", flush=True)

while not stopping.wait(0.05):
    pass
print("Received termination signal", flush=True)
'''


def build_release(make_tarball, tmp_path: Path, version: ClickHouseVersion) -> Path:
    """Release tarball laid out like clickhouse-common-static."""
    filename, _ = resolve_asset(version, detect_platform())
    top = f"clickhouse-common-static-{version.numeric_version()}"
    return make_tarball(
        tmp_path / filename,
        {
            f"{top}/usr/bin/clickhouse": FAKE_SERVER.format(python=sys.executable).encode(),
            f"{top}/usr/share/doc/README": b"fake\n",
        },
        modes={f"{top}/usr/bin/clickhouse": 0o755},
    )


class ReleaseServer:
    """Serves release archives and their ``.sha512`` files from memory."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.requests: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._httpd: Optional[ThreadingHTTPServer] = None

    @property
    def url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def publish(self, version: ClickHouseVersion, archive: Path, checksum: Optional[str] = None) -> str:
        data = archive.read_bytes()
        path = f"/v{version}/{archive.name}"
        digest = checksum or hashlib.sha512(data).hexdigest()
        self.files[path] = data
        self.files[path + ".sha512"] = f"{digest}  {archive.name}\n".encode()
        return path

    def count(self, path: str) -> int:
        with self._lock:
            return self.requests.get(path, 0)

    def start(self) -> None:
        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                with server._lock:
                    server.requests[self.path] = server.requests.get(self.path, 0) + 1
                body = server.files.get(self.path)
                if body is None:
                    self.send_error(404)
                    return
                self.send_response(200)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, *args):
                pass

        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        threading.Thread(target=self._httpd.serve_forever, daemon=True).start()

    def stop(self) -> None:
        httpd, self._httpd = self._httpd, None
        if httpd is not None:
            httpd.shutdown()
            httpd.server_close()


@pytest.fixture
def release_server():
    server = ReleaseServer()
    server.start()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def release_archive(tarball_factory, temp_dir: Path) -> Path:
    return build_release(tarball_factory, temp_dir, VERSION)


@pytest.fixture
def integration_config(temp_dir: Path, release_server: ReleaseServer) -> EmbeddedClickHouseConfig:
    return EmbeddedClickHouseConfig(
        version=VERSION.value,
        cache_dir=temp_dir / "cache",
        work_dir=temp_dir / "work",
        repository_url=release_server.url,
        remote_index=False,
        timeouts=TimeoutConfig(
            start=15.0,
            stop=2.0,
            download=30.0,
            install_lock=30.0,
            launch_grace_period=0.05,
            poll_interval=0.05,
            force_kill=5.0,
        ),
        retry=RetryPolicy(attempts=2, initial_backoff=0.01, max_backoff=0.01),
    )
