"""Tests for ReadinessProber."""

import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import Mock

import pytest

from embedded_clickhouse.core.errors import ProcessExitedError, ReadinessTimeoutError
from embedded_clickhouse.instances.health_checker import ReadinessProber


class PingHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        code = self.server.ping_status if self.path == "/ping" else 404
        body = b"Ok.\n"
        self.send_response(code)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), PingHandler)
    server.ping_status = 200
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def tcp_listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


def closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestProbe:
    """Test single probes."""

    def test_healthy(self, http_server, tcp_listener) -> None:
        status = ReadinessProber().probe("127.0.0.1", tcp_listener, http_server.server_port)
        assert status.is_healthy
        assert status.error_message is None

    def test_client_port_closed(self, http_server) -> None:
        port = closed_port()
        status = ReadinessProber().probe("127.0.0.1", port, http_server.server_port)
        assert not status.is_healthy
        assert str(port) in status.error_message

    def test_http_error_status(self, http_server, tcp_listener) -> None:
        http_server.ping_status = 503
        status = ReadinessProber().probe("127.0.0.1", tcp_listener, http_server.server_port)
        assert not status.is_healthy
        assert "503" in status.error_message

    def test_http_port_closed(self, tcp_listener) -> None:
        status = ReadinessProber().probe("127.0.0.1", tcp_listener, closed_port(), timeout=0.5)
        assert not status.is_healthy
        assert "Connection error" in status.error_message


class TestWaitReady:
    """Test polling until ready."""

    def test_returns_when_ready(self, http_server, tcp_listener) -> None:
        status = ReadinessProber(poll_interval=0.01).wait_ready(
            "127.0.0.1", tcp_listener, http_server.server_port, timeout=2
        )
        assert status.is_healthy

    def test_becomes_ready_after_retries(self, tcp_listener) -> None:
        prober = ReadinessProber(poll_interval=0.01)
        results = iter([False, False, True])
        prober.probe = Mock(
            side_effect=lambda *a, **k: Mock(is_healthy=next(results), error_message="not yet")
        )
        prober.wait_ready("127.0.0.1", tcp_listener, 1, timeout=2)
        assert prober.probe.call_count == 3

    def test_timeout(self) -> None:
        prober = ReadinessProber(poll_interval=0.01, probe_timeout=0.05)
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            prober.wait_ready("127.0.0.1", closed_port(), closed_port(), timeout=0.2)
        assert exc_info.value.timeout == 0.2
        assert exc_info.value.details["probes"] >= 1
        assert "not accepting" in exc_info.value.details["last_error"]

    def test_process_exit_fails_fast(self) -> None:
        handle = Mock()
        handle.pid = 4242
        handle.poll.return_value = 70
        handle.log_tail.return_value = "Exception: bad config"
        prober = ReadinessProber()
        prober.probe = Mock()
        with pytest.raises(ProcessExitedError) as exc_info:
            prober.wait_ready("127.0.0.1", 1, 2, timeout=30, handle=handle)
        assert exc_info.value.exit_code == 70
        assert "bad config" in exc_info.value.output
        prober.probe.assert_not_called()
