"""Ephemeral port allocation shared by every instance in the process."""

import socket
import threading
from typing import Callable, Iterable, List, Optional, Protocol, Set

from ..core.errors import PortAllocationError
from ..core.log import get_logger

logger = get_logger(__name__)


class PortAllocator(Protocol):
    """Protocol for port allocation to enable dependency injection."""

    def allocate(self, count: int = 1) -> List[int]:
        """Allocate ``count`` distinct free ports."""

    def claim(self, port: int) -> int:
        """Register a caller-chosen port."""

    def release(self, ports: Iterable[int]) -> None:
        """Release previously allocated ports."""


def _open_ephemeral_socket(host: str) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
    except OSError:
        sock.close()
        raise
    return sock


class PortManager:
    """Thread-safe allocator handing out OS-chosen ephemeral ports.

    Every port of a batch comes from its own ``bind(host, 0)`` and all
    sockets stay open until the batch is complete, so ports within one call
    are distinct. Ports claimed by live instances are never handed out again
    until released.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        max_attempts: int = 50,
        socket_factory: Callable[[str], socket.socket] = _open_ephemeral_socket,
    ) -> None:
        self.host = host
        self.max_attempts = max_attempts
        self._socket_factory = socket_factory
        self._claimed: Set[int] = set()
        self._lock = threading.Lock()

    @property
    def claimed(self) -> Set[int]:
        with self._lock:
            return set(self._claimed)

    def allocate(self, count: int = 1) -> List[int]:
        """Allocate ``count`` distinct free ports.

        Raises:
            PortAllocationError: If the OS refuses to bind or no unclaimed
                port turns up within ``max_attempts`` binds.
        """
        if count < 1:
            raise PortAllocationError(f"Port count must be positive, got {count}")

        sockets: List[socket.socket] = []
        ports: List[int] = []
        with self._lock:
            try:
                attempts = 0
                while len(ports) < count:
                    attempts += 1
                    if attempts > self.max_attempts:
                        raise PortAllocationError(
                            f"Could not find {count} unclaimed ports after {self.max_attempts} attempts",
                            {"host": self.host, "claimed": len(self._claimed)},
                        )
                    try:
                        sock = self._socket_factory(self.host)
                    except OSError as e:
                        raise PortAllocationError(
                            f"Cannot bind an ephemeral port on {self.host}: {e}",
                            {"host": self.host},
                        ) from e
                    # Held open even when rejected so the OS does not hand it back
                    sockets.append(sock)
                    port = sock.getsockname()[1]
                    if port in self._claimed or port in ports:
                        continue
                    ports.append(port)
            finally:
                for sock in sockets:
                    sock.close()

            self._claimed.update(ports)

        logger.debug("Allocated ports %s", ports)
        return ports

    def claim(self, port: int) -> int:
        """Register a fixed port chosen by the caller.

        Raises:
            PortAllocationError: If the port is already claimed by another instance.
        """
        with self._lock:
            if port in self._claimed:
                raise PortAllocationError(
                    f"Port {port} is already in use by another instance", {"port": port}
                )
            self._claimed.add(port)
        logger.debug("Claimed fixed port %s", port)
        return port

    def release(self, ports: Iterable[int]) -> None:
        """Release ports; releasing an unknown port is a no-op."""
        ports = list(ports)
        with self._lock:
            for port in ports:
                self._claimed.discard(port)
        logger.debug("Released ports %s", ports)

    def is_free(self, port: int) -> bool:
        """Check if a port is unclaimed and bindable right now."""
        if port in self.claimed:
            return False
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind((self.host, port))
                return True
        except OSError:
            return False


_port_manager: Optional[PortManager] = None
_port_manager_lock = threading.Lock()


def get_port_manager() -> PortManager:
    """Process-wide port manager shared by all facades."""
    global _port_manager
    with _port_manager_lock:
        if _port_manager is None:
            _port_manager = PortManager()
        return _port_manager
