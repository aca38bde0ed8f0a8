"""Server process supervision: launch, early-exit detection, termination and exit cleanup."""

import atexit
import os
import signal
import subprocess
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from pathlib import Path

import psutil

from .errors import LaunchError, PortConflictError, ShutdownError
from .log import get_logger, log_process_event
from .types import ProcessStats

logger = get_logger(__name__)

# Exit statuses that mean "stopped because we asked it to"
CLEAN_EXIT_CODES = frozenset({0, 143, -signal.SIGTERM})

_PORT_CONFLICT_MARKERS = ("Address already in use", "EADDRINUSE")


def is_port_conflict(output: Optional[str]) -> bool:
    """Whether server output reports a failure to bind a port."""
    return bool(output) and any(marker in output for marker in _PORT_CONFLICT_MARKERS)


class ProcessHandle:
    """A launched child process, exclusively owned by the supervisor."""

    def __init__(
        self,
        process: subprocess.Popen,
        command: List[str],
        log_file: Optional[Path] = None,
        name: Optional[str] = None,
    ) -> None:
        self.process = process
        self.command = list(command)
        self.log_file = log_file
        self.name = name or Path(command[0]).name
        self.started_at = time.time()
        self.exit_code: Optional[int] = None
        self.reaped = False
        self._lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> Optional[int]:
        """Exit code if the process has exited, None while it runs."""
        if self.reaped:
            return self.exit_code
        code = self.process.poll()
        if code is not None:
            self.exit_code = code
        return code

    def is_running(self) -> bool:
        return self.poll() is None

    def log_tail(self, max_lines: int = 20) -> str:
        """Last lines the process wrote to its log file."""
        if self.log_file is None:
            return ""
        try:
            with open(self.log_file, "r", encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError:
            return ""
        return "".join(lines[-max_lines:]).rstrip()

    def __repr__(self) -> str:
        state = "running" if not self.reaped and self.exit_code is None else f"exited({self.exit_code})"
        return f"ProcessHandle(name={self.name!r}, pid={self.pid}, {state})"


class ProcessRegistry:
    """Process-wide set of live handles, killed on interpreter exit.

    The ``atexit`` hook is installed lazily on the first registration.
    ``atexit`` does not run when the interpreter dies from a signal, so
    handlers for ``exit_signals`` are installed too. They kill every tracked
    tree, then hand the signal on to whatever handler was there before.
    Handlers can only be installed from the main thread; registrations from
    other threads leave that to a later main-thread registration.
    """

    def __init__(
        self,
        register_exit_hook: Callable[[Callable[[], None]], object] = atexit.register,
        exit_signals: Tuple[int, ...] = (signal.SIGTERM, signal.SIGHUP),
    ) -> None:
        # Reentrant: a signal handler may run kill_all while register holds it
        self._lock = threading.RLock()
        self._handles: Dict[int, ProcessHandle] = {}
        self._register_exit_hook = register_exit_hook
        self._hook_installed = False
        self._exit_signals = tuple(exit_signals)
        self._signals_installed = not self._exit_signals

    def register(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles[handle.pid] = handle
            if not self._hook_installed:
                self._register_exit_hook(self.kill_all)
                self._hook_installed = True
            if not self._signals_installed and threading.current_thread() is threading.main_thread():
                self._install_signal_handlers()

    def deregister(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.pop(handle.pid, None)

    def live_handles(self) -> List[ProcessHandle]:
        with self._lock:
            return list(self._handles.values())

    @property
    def hook_installed(self) -> bool:
        return self._hook_installed

    @property
    def signals_installed(self) -> bool:
        return self._signals_installed

    def _install_signal_handlers(self) -> None:
        for signum in self._exit_signals:
            previous = signal.getsignal(signum)
            if previous == signal.SIG_IGN:
                continue
            signal.signal(signum, self._make_signal_handler(previous))
        self._signals_installed = True

    def _make_signal_handler(self, previous: Any) -> Callable[[int, Any], None]:
        def handler(signum: int, frame: Any) -> None:
            logger.warning("Received %s, killing supervised ClickHouse processes", signal.Signals(signum).name)
            self.kill_all()
            if callable(previous):
                previous(signum, frame)
                return
            # Die from the signal as if no handler had been installed
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

        return handler

    def kill_all(self) -> None:
        """Emergency kill of every still-tracked process tree."""
        handles = self.live_handles()
        if not handles:
            return
        logger.warning("Killing %s leftover ClickHouse process(es) at exit", len(handles))
        for handle in handles:
            try:
                _signal_group(handle.pid, signal.SIGKILL)
                kill_process_tree(handle.pid, signal.SIGKILL, timeout=2.0)
                handle.process.wait(timeout=2.0)
                handle.exit_code = handle.process.returncode
                handle.reaped = True
            except (OSError, subprocess.SubprocessError, psutil.Error) as e:
                logger.error("Error killing process %s at exit: %s", handle.pid, e)
            finally:
                self.deregister(handle)


_process_registry = ProcessRegistry()


class ProcessSupervisor:
    """Launches server processes and tears them down deterministically."""

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        popen_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry or _process_registry
        self._popen = popen_factory
        self._sleep = sleep

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    def launch(
        self,
        command: List[str],
        log_file: Path,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        grace_period: float = 0.2,
        poll_interval: float = 0.05,
    ) -> ProcessHandle:
        """Start ``command`` in a new session with output sent to ``log_file``.

        The child is watched for ``grace_period`` seconds; exiting inside that
        window raises LaunchError (or PortConflictError when the log shows a
        bind failure) with the exit code and log tail.
        """
        binary = Path(command[0])
        if not binary.is_file():
            raise LaunchError(f"Server binary not found: {binary}", details={"binary": str(binary)})
        if not os.access(binary, os.X_OK):
            raise LaunchError(f"Server binary is not executable: {binary}", details={"binary": str(binary)})

        log_process_event(logger, "supervisor.start", command=command)
        logger.debug("Command: %s", " ".join(command))

        log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(log_file, "ab") as log_stream:
                process = self._popen(
                    command,
                    cwd=str(cwd) if cwd else None,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_stream,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except (OSError, subprocess.SubprocessError) as e:
            log_process_event(logger, "supervisor.start_failed", error=str(e))
            raise LaunchError(
                f"Failed to launch {binary.name}: {e}", details={"binary": str(binary)}
            ) from e

        handle = ProcessHandle(process, command, log_file=log_file)
        self._registry.register(handle)
        log_process_event(logger, "supervisor.started", pid=handle.pid)

        deadline = time.monotonic() + grace_period
        while time.monotonic() < deadline:
            if handle.poll() is not None:
                break
            self._sleep(poll_interval)

        exit_code = handle.poll()
        if exit_code is not None:
            handle.reaped = True
            self._registry.deregister(handle)
            output = handle.log_tail()
            details = {"pid": handle.pid, "exit_code": exit_code}
            log_process_event(logger, "supervisor.exited_early", pid=handle.pid, exit_code=exit_code)
            if is_port_conflict(output):
                raise PortConflictError(
                    f"{binary.name} could not bind its ports (exit code {exit_code})",
                    exit_code=exit_code,
                    output=output,
                    details=details,
                )
            raise LaunchError(
                f"{binary.name} exited immediately with code {exit_code}",
                exit_code=exit_code,
                output=output,
                details=details,
            )

        return handle

    def terminate(
        self, handle: ProcessHandle, grace_timeout: float = 10.0, kill_timeout: float = 5.0
    ) -> Optional[int]:
        """Stop a process: SIGTERM to its group, then SIGKILL, always reaping.

        Idempotent; concurrent calls on one handle are serialized. Raises
        ShutdownError only when the child survives SIGKILL.
        """
        with handle._lock:
            if handle.reaped:
                return handle.exit_code

            log_process_event(logger, "supervisor.stop", pid=handle.pid, timeout=grace_timeout)
            if handle.poll() is None:
                _signal_group(handle.pid, signal.SIGTERM)
                try:
                    handle.process.wait(timeout=grace_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        "Process %s ignored SIGTERM for %.1fs, sending SIGKILL",
                        handle.pid,
                        grace_timeout,
                    )
                    self._force_kill(handle, kill_timeout)
            else:
                # Reap a child that already exited on its own
                handle.process.wait(timeout=kill_timeout)

            # Helper processes left in the group die with the leader
            _signal_group(handle.pid, signal.SIGKILL)

            handle.exit_code = handle.process.returncode
            handle.reaped = True
            self._registry.deregister(handle)

            if handle.exit_code not in CLEAN_EXIT_CODES:
                logger.warning("Process %s exited with code %s", handle.pid, handle.exit_code)
            log_process_event(logger, "supervisor.stopped", pid=handle.pid, exit_code=handle.exit_code)
            return handle.exit_code

    def _force_kill(self, handle: ProcessHandle, kill_timeout: float) -> None:
        _signal_group(handle.pid, signal.SIGKILL)
        try:
            handle.process.wait(timeout=kill_timeout)
            return
        except subprocess.TimeoutExpired:
            logger.error("Process %s survived SIGKILL, killing process tree", handle.pid)

        kill_process_tree(handle.pid, signal.SIGKILL, timeout=kill_timeout)
        try:
            handle.process.wait(timeout=kill_timeout)
        except subprocess.TimeoutExpired as e:
            raise ShutdownError(
                f"Process {handle.pid} could not be reaped after SIGKILL",
                details={"pid": handle.pid},
            ) from e

    def get_stats(self, handle: ProcessHandle) -> Optional[ProcessStats]:
        """Get process statistics."""
        if not handle.is_running():
            return None
        try:
            ps_process = psutil.Process(handle.pid)
            memory_info = ps_process.memory_info()
            return ProcessStats(
                pid=handle.pid,
                memory_rss=memory_info.rss,
                memory_vms=memory_info.vms,
                cpu_percent=ps_process.cpu_percent(),
                num_threads=ps_process.num_threads(),
                status=ps_process.status(),
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None


def _signal_group(pid: int, signal_num: int) -> None:
    """Signal the process group led by ``pid``; a vanished group is fine."""
    try:
        os.killpg(pid, signal_num)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.debug("Could not signal process group %s: %s", pid, e)


def get_child_pids(parent_pid: int) -> List[int]:
    """Get all descendant PIDs of a process."""
    try:
        parent = psutil.Process(parent_pid)
        return [child.pid for child in parent.children(recursive=True) if child.is_running()]
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
        logger.debug("Could not get children for PID %s: %s", parent_pid, e)
    except (psutil.Error, OSError) as e:
        logger.warning("Error getting child PIDs for %s: %s", parent_pid, e)
    return []


def kill_process_tree(
    root_pid: int, signal_num: int = signal.SIGKILL, timeout: float = 5.0
) -> bool:
    """Kill a process and all of its descendants.

    Backup for children that left the process group. Returns True when no
    process of the tree is left alive.
    """
    all_pids = [root_pid] + get_child_pids(root_pid)
    for pid in all_pids:
        try:
            os.kill(pid, signal_num)
        except (ProcessLookupError, PermissionError):
            logger.debug("PID %s already dead or inaccessible", pid)

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        alive = [pid for pid in all_pids if _pid_alive(pid)]
        if not alive:
            return True
        time.sleep(0.05)
    logger.warning("Process tree rooted at %s still alive after %ss", root_pid, timeout)
    return False


def _pid_alive(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        return True
