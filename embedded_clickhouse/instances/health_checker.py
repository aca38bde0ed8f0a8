"""Readiness probing for a freshly launched ClickHouse server."""

import socket
import time
from typing import Callable, Optional, Protocol

import requests

from ..core.errors import ProcessExitedError, ReadinessTimeoutError
from ..core.log import Logger, get_logger
from ..core.process import ProcessHandle
from ..core.time import Deadline
from ..core.types import HealthStatus


class HealthChecker(Protocol):
    """Protocol for readiness probers to enable dependency injection."""

    def wait_ready(
        self,
        host: str,
        tcp_port: int,
        http_port: int,
        timeout: float,
        handle: Optional[ProcessHandle] = None,
    ) -> HealthStatus:
        """Block until the server answers or fail."""


class ReadinessProber:
    """Polls the client port and the HTTP ``/ping`` endpoint until both answer.

    A probe succeeds only when a TCP connection to the client port is
    accepted and ``GET /ping`` on the HTTP port returns 200.
    """

    def __init__(
        self,
        logger: Optional[Logger] = None,
        poll_interval: float = 0.05,
        probe_timeout: float = 2.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._logger = logger or get_logger(__name__)
        self.poll_interval = poll_interval
        self.probe_timeout = probe_timeout
        self._session = session
        self._sleep = sleep

    def probe(self, host: str, tcp_port: int, http_port: int, timeout: Optional[float] = None) -> HealthStatus:
        """Single readiness probe."""
        timeout = self.probe_timeout if timeout is None else timeout
        start_time = time.monotonic()
        try:
            with socket.create_connection((host, tcp_port), timeout=timeout):
                pass
        except OSError as e:
            return HealthStatus(
                is_healthy=False,
                response_time=time.monotonic() - start_time,
                error_message=f"Client port {tcp_port} not accepting connections: {e}",
            )

        getter = self._session.get if self._session is not None else requests.get
        try:
            response = getter(f"http://{host}:{http_port}/ping", timeout=timeout)
        except requests.RequestException as e:
            return HealthStatus(
                is_healthy=False,
                response_time=time.monotonic() - start_time,
                error_message=f"Connection error: {e}",
            )

        response_time = time.monotonic() - start_time
        if response.status_code == 200:
            return HealthStatus(is_healthy=True, response_time=response_time)
        return HealthStatus(
            is_healthy=False,
            response_time=response_time,
            error_message=f"HTTP {response.status_code}: {response.reason}",
        )

    def wait_ready(
        self,
        host: str,
        tcp_port: int,
        http_port: int,
        timeout: float,
        handle: Optional[ProcessHandle] = None,
    ) -> HealthStatus:
        """Probe immediately, then every ``poll_interval`` until ready.

        Raises:
            ProcessExitedError: The server process exited while waiting.
            ReadinessTimeoutError: Not ready before ``timeout`` elapsed.
        """
        deadline = Deadline(timeout, name="readiness")
        last_error: Optional[str] = None
        attempts = 0
        while True:
            if handle is not None:
                exit_code = handle.poll()
                if exit_code is not None:
                    raise ProcessExitedError(
                        f"ClickHouse server exited with code {exit_code} before becoming ready",
                        exit_code=exit_code,
                        output=handle.log_tail(),
                        details={"pid": handle.pid, "exit_code": exit_code},
                    )

            attempts += 1
            status = self.probe(host, tcp_port, http_port, timeout=deadline.clamp(self.probe_timeout) or 0.01)
            if status.is_healthy:
                self._logger.debug(
                    "Server on %s:%s ready after %.2fs (%s probes)",
                    host,
                    http_port,
                    deadline.elapsed(),
                    attempts,
                )
                return status
            last_error = status.error_message

            if deadline.is_expired():
                raise ReadinessTimeoutError(
                    f"ClickHouse server on {host}:{tcp_port} not ready after {timeout}s",
                    timeout=timeout,
                    details={"last_error": last_error, "probes": attempts},
                )
            deadline.sleep(self.poll_interval, sleep=self._sleep)
