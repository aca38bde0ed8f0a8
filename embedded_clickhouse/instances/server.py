"""Running ClickHouse instance handle with lifecycle state and connection accessors."""

import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple

from ..core.enums import ALLOWED_TRANSITIONS, LifecycleState
from ..core.errors import InstanceStateError
from ..core.log import get_logger, log_server_event
from ..core.process import ProcessHandle
from ..core.value_objects import InstanceId

if TYPE_CHECKING:
    from .lifecycle import EmbeddedClickHouse

logger = get_logger(__name__)


class RunningInstance:
    """A ClickHouse server started by EmbeddedClickHouse.

    Usable as a context manager; leaving the block stops the server.
    """

    def __init__(
        self,
        instance_id: InstanceId,
        version: str,
        host: str,
        tcp_port: int,
        http_port: int,
        interserver_port: int,
        data_dir: Path,
        owner: Optional["EmbeddedClickHouse"] = None,
    ) -> None:
        self.instance_id = instance_id
        self.version = version
        self.host = host
        self.tcp_port = tcp_port
        self.http_port = http_port
        self.interserver_port = interserver_port
        self.data_dir = Path(data_dir)
        self.handle: Optional[ProcessHandle] = None
        self.binary_path: Optional[Path] = None
        self.config_file: Optional[Path] = None
        self._owner = owner
        self._state = LifecycleState.STARTING
        self._state_lock = threading.Lock()
        # Serializes concurrent stop calls
        self.stop_lock = threading.Lock()

    @property
    def state(self) -> LifecycleState:
        return self._state

    def transition(self, new_state: LifecycleState) -> None:
        """Move to ``new_state``, raising InstanceStateError for illegal moves."""
        with self._state_lock:
            if new_state not in ALLOWED_TRANSITIONS[self._state]:
                raise InstanceStateError(
                    f"Illegal state transition {self._state.value} -> {new_state.value}",
                    {"instance_id": str(self.instance_id)},
                )
            old_state, self._state = self._state, new_state
        log_server_event(
            logger,
            new_state.value,
            instance_id=str(self.instance_id),
            previous_state=old_state.value,
        )

    @property
    def port(self) -> int:
        """Client (native protocol) port."""
        return self.tcp_port

    @property
    def ports(self) -> Tuple[int, int, int]:
        return (self.tcp_port, self.http_port, self.interserver_port)

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle else None

    @property
    def tcp_addr(self) -> str:
        return f"{self.host}:{self.tcp_port}"

    @property
    def http_addr(self) -> str:
        return f"{self.host}:{self.http_port}"

    @property
    def http_url(self) -> str:
        return f"http://{self.http_addr}"

    @property
    def dsn(self) -> str:
        """Native protocol DSN for the default database."""
        return f"clickhouse://{self.tcp_addr}/default"

    @property
    def jdbc_url(self) -> str:
        return f"jdbc:clickhouse://{self.http_addr}/default"

    def is_running(self) -> bool:
        return (
            self._state is LifecycleState.READY
            and self.handle is not None
            and self.handle.is_running()
        )

    def log_tail(self, max_lines: int = 20) -> str:
        return self.handle.log_tail(max_lines) if self.handle else ""

    def stop(self) -> None:
        """Stop the server; safe to call more than once."""
        if self._owner is None:
            raise InstanceStateError(
                f"Instance {self.instance_id} has no owning EmbeddedClickHouse",
                {"instance_id": str(self.instance_id)},
            )
        self._owner.stop(self)

    def __enter__(self) -> "RunningInstance":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False

    def __repr__(self) -> str:
        return (
            f"RunningInstance(id={self.instance_id}, version={self.version}, "
            f"tcp={self.tcp_addr}, http={self.http_addr}, state={self._state.value})"
        )
