"""Lifecycle facade: resolve, install, launch, probe and tear down ClickHouse servers."""

import threading
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.config import get_config, resolve_cache_dir
from ..core.enums import AssetType, LifecycleState
from ..core.errors import (
    ConfigurationError,
    EmbeddedClickHouseError,
    FilesystemError,
    PortConflictError,
    ProcessExitedError,
    ShutdownError,
)
from ..core.log import get_logger, log_context, log_server_event
from ..core.process import ProcessHandle, ProcessSupervisor, is_port_conflict
from ..core.time import Deadline
from ..core.types import EmbeddedClickHouseConfig
from ..core.value_objects import CacheKey, ClickHouseVersion, InstanceId
from ..artifacts.cache import ArtifactCache
from ..artifacts.downloader import Downloader
from ..artifacts.extractor import ArchiveExtractor
from ..distribution.resolver import VersionResolver
from ..utils.crypto import random_id
from ..utils.filesystem import make_unique_dir, safe_remove
from ..utils.ports import PortAllocator, get_port_manager
from .command_builder import CommandBuilder, ServerCommandBuilder
from .health_checker import HealthChecker, ReadinessProber
from .server import RunningInstance
from .server_config_builder import ServerConfigBuilder, ServerConfigWriter

logger = get_logger(__name__)

DOWNLOAD_SUBDIR = ".download"


class EmbeddedClickHouse:
    """Starts and stops disposable ClickHouse servers.

    Collaborators are injectable for testing; anything left as None is built
    from the effective configuration of each call.
    """

    def __init__(
        self,
        config: Optional[EmbeddedClickHouseConfig] = None,
        *,
        resolver: Optional[VersionResolver] = None,
        cache: Optional[ArtifactCache] = None,
        downloader: Optional[Downloader] = None,
        extractor: Optional[ArchiveExtractor] = None,
        allocator: Optional[PortAllocator] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        prober: Optional[HealthChecker] = None,
        command_builder: Optional[CommandBuilder] = None,
        config_writer: Optional[ServerConfigWriter] = None,
    ) -> None:
        self.config = config if config is not None else get_config()
        self._resolver = resolver
        self._cache = cache
        self._downloader = downloader
        self._extractor = extractor or ArchiveExtractor()
        self._allocator = allocator or get_port_manager()
        self._supervisor = supervisor or ProcessSupervisor()
        self._prober = prober
        self._command_builder = command_builder or ServerCommandBuilder()
        self._config_writer = config_writer or ServerConfigWriter()
        self._instances: Dict[str, Tuple[RunningInstance, EmbeddedClickHouseConfig]] = {}
        self._lock = threading.Lock()

    # Binary provisioning

    def ensure_binary(self, config: Optional[EmbeddedClickHouseConfig] = None) -> Path:
        """Path to a usable server binary, downloading and caching it if needed."""
        config = config or self.config
        if config.binary_path is not None:
            binary = Path(config.binary_path)
            if not binary.is_file():
                raise ConfigurationError(
                    f"Specified binary not found: {binary}", {"binary_path": str(binary)}
                )
            return binary

        requested = config.clickhouse_version
        resolver = self._resolver_for(config)
        cache = self._cache_for(config)

        # Exact versions and URLs are looked up before any index access
        if not requested.is_latest:
            entry = cache.lookup(CacheKey.for_version(requested, resolver.platform.tag))
            if entry is not None:
                logger.debug("Using cached ClickHouse %s at %s", requested, entry.binary_path)
                return entry.binary_path

        descriptor = resolver.resolve(requested)
        key = CacheKey.for_version(ClickHouseVersion(descriptor.version), descriptor.platform_tag)
        entry = cache.lookup(key)
        if entry is not None:
            logger.debug("Using cached ClickHouse %s at %s", key, entry.binary_path)
            return entry.binary_path

        with cache.begin_install(key) as session:
            if session.existing is not None:
                return session.existing.binary_path

            logger.info("Downloading ClickHouse %s...", descriptor.version)
            deadline = Deadline(config.timeouts.download, name="download")
            download_dir = session.staging_dir / DOWNLOAD_SUBDIR
            download_dir.mkdir()
            result = self._downloader_for(config).fetch(descriptor, download_dir, deadline)

            if descriptor.asset_type is AssetType.ARCHIVE:
                self._extractor.extract(result.path, session.staging_dir, deadline=deadline)
                safe_remove(download_dir)
                binary = self._extractor.find_binary(session.staging_dir)
            else:
                binary = self._extractor.install_raw_binary(result.path, session.staging_dir)
                safe_remove(download_dir)

            entry = cache.commit(
                session,
                binary.relative_to(session.staging_dir),
                checksum=result.checksum,
                source_url=descriptor.url,
            )
        logger.info("Installed ClickHouse %s", descriptor.version)
        return entry.binary_path

    # Start / stop

    def start(self, **overrides: Any) -> RunningInstance:
        """Start a server and block until it is ready.

        On any failure every acquired resource is released in reverse order
        and the original error is re-raised with version, ports and instance
        id in its ``details``.
        """
        config = self._effective_config(overrides)
        instance_id = InstanceId(random_id(8))

        with log_context(instance_id=str(instance_id), version=config.version):
            log_server_event(logger, "start", instance_id=str(instance_id), version=config.version)
            try:
                binary = self.ensure_binary(config)
                retries = config.port_conflict_retries
                for attempt in range(1, retries + 1):
                    try:
                        instance = self._launch(config, binary, instance_id)
                        break
                    except PortConflictError:
                        if attempt >= retries or not self._allocates_ports(config):
                            raise
                        logger.warning(
                            "Port conflict starting %s (attempt %s/%s), retrying with fresh ports",
                            instance_id,
                            attempt,
                            retries,
                        )
            except (EmbeddedClickHouseError, OSError) as e:
                error = e if isinstance(e, EmbeddedClickHouseError) else FilesystemError(
                    f"Filesystem error starting ClickHouse: {e}",
                    {"path": str(e.filename)} if e.filename else None,
                )
                error.add_context(version=config.version, instance_id=str(instance_id))
                log_server_event(logger, "start_failed", instance_id=str(instance_id), error=str(error))
                if error is e:
                    raise
                raise error from e

            with self._lock:
                self._instances[str(instance_id)] = (instance, config)
            logger.info("ClickHouse %s ready at %s (tcp %s)", config.version, instance.http_url, instance.tcp_port)
        return instance

    def _launch(
        self, config: EmbeddedClickHouseConfig, binary: Path, instance_id: InstanceId
    ) -> RunningInstance:
        with ExitStack() as rollback:
            tcp_port, http_port, interserver_port = self._acquire_ports(config)
            rollback.callback(self._allocator.release, [tcp_port, http_port, interserver_port])

            instance_dir = make_unique_dir(
                Path(config.work_dir) if config.work_dir else None,
                prefix=f"embedded-clickhouse-{instance_id}-",
            )
            if not config.keep_data_dir:
                rollback.callback(safe_remove, instance_dir)

            instance = RunningInstance(
                instance_id=instance_id,
                version=config.version,
                host=config.host,
                tcp_port=tcp_port,
                http_port=http_port,
                interserver_port=interserver_port,
                data_dir=instance_dir,
                owner=self,
            )
            instance.binary_path = binary

            try:
                server_config = ServerConfigBuilder(config).build(
                    instance_dir, tcp_port, http_port, interserver_port
                )
                instance.config_file = self._config_writer.write(server_config)
                command = self._command_builder.build_command(binary, instance.config_file)
                handle = self._supervisor.launch(
                    command,
                    server_config.log_file,
                    cwd=instance_dir,
                    grace_period=config.timeouts.launch_grace_period,
                    poll_interval=config.timeouts.poll_interval,
                )
                rollback.callback(self._terminate_quietly, handle, config)
                instance.handle = handle

                self._prober_for(config).wait_ready(
                    config.host, tcp_port, http_port, config.timeouts.start, handle
                )
            except BaseException as e:
                instance.transition(LifecycleState.FAILED)
                if not isinstance(e, EmbeddedClickHouseError):
                    raise
                e.add_context(
                    tcp_port=tcp_port,
                    http_port=http_port,
                    interserver_port=interserver_port,
                    data_dir=str(instance_dir),
                )
                # Bind failures show up after the launch grace period too
                if isinstance(e, ProcessExitedError) and is_port_conflict(e.output):
                    raise PortConflictError(
                        f"ClickHouse could not bind its ports (exit code {e.exit_code})",
                        exit_code=e.exit_code,
                        output=e.output,
                        details=dict(e.details),
                    ) from e
                raise

            instance.transition(LifecycleState.READY)
            # Resources now belong to the instance
            rollback.pop_all()
        return instance

    def stop(self, instance: Optional[RunningInstance]) -> None:
        """Stop ``instance``; a no-op for None and for stopped or failed instances.

        Raises:
            ShutdownError: The process could not be reaped. Ports and the data
                directory are released anyway and the instance ends FAILED.
        """
        if instance is None:
            return

        with self._lock:
            entry = self._instances.get(str(instance.instance_id))
        config = entry[1] if entry else self.config

        with instance.stop_lock, log_context(instance_id=str(instance.instance_id)):
            if instance.state.is_terminal:
                return
            instance.transition(LifecycleState.STOPPING)
            log_server_event(logger, "stop", instance_id=str(instance.instance_id))

            shutdown_error: Optional[ShutdownError] = None
            try:
                if instance.handle is not None:
                    self._supervisor.terminate(
                        instance.handle,
                        grace_timeout=config.timeouts.stop,
                        kill_timeout=config.timeouts.force_kill,
                    )
            except ShutdownError as e:
                shutdown_error = e
            finally:
                self._allocator.release(instance.ports)
                if not config.keep_data_dir:
                    safe_remove(instance.data_dir)
                with self._lock:
                    self._instances.pop(str(instance.instance_id), None)

            if shutdown_error is not None:
                instance.transition(LifecycleState.FAILED)
                shutdown_error.add_context(instance_id=str(instance.instance_id))
                raise shutdown_error
            instance.transition(LifecycleState.STOPPED)

    def stop_all(self) -> None:
        """Stop every instance started by this facade; raises the first ShutdownError."""
        with self._lock:
            instances = [instance for instance, _ in self._instances.values()]
        errors: List[ShutdownError] = []
        for instance in instances:
            try:
                self.stop(instance)
            except ShutdownError as e:
                errors.append(e)
        if errors:
            raise errors[0]

    @property
    def instances(self) -> List[RunningInstance]:
        with self._lock:
            return [instance for instance, _ in self._instances.values()]

    def __enter__(self) -> "EmbeddedClickHouse":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop_all()
        return False

    # Helpers

    def _effective_config(self, overrides: Dict[str, Any]) -> EmbeddedClickHouseConfig:
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return self.config
        if isinstance(overrides.get("version"), ClickHouseVersion):
            overrides["version"] = overrides["version"].value
        data = self.config.model_dump()
        data.update(overrides)
        return EmbeddedClickHouseConfig.model_validate(data)

    @staticmethod
    def _allocates_ports(config: EmbeddedClickHouseConfig) -> bool:
        return 0 in (config.tcp_port, config.http_port, config.interserver_port)

    def _acquire_ports(self, config: EmbeddedClickHouseConfig) -> Tuple[int, int, int]:
        requested = [config.tcp_port, config.http_port, config.interserver_port]
        claimed: List[int] = []
        try:
            for port in requested:
                if port:
                    claimed.append(self._allocator.claim(port))
            missing = requested.count(0)
            fresh = self._allocator.allocate(missing) if missing else []
        except EmbeddedClickHouseError:
            self._allocator.release(claimed)
            raise
        fresh_iter = iter(fresh)
        tcp_port, http_port, interserver_port = (port or next(fresh_iter) for port in requested)
        return tcp_port, http_port, interserver_port

    def _terminate_quietly(self, handle: ProcessHandle, config: EmbeddedClickHouseConfig) -> None:
        try:
            self._supervisor.terminate(
                handle,
                grace_timeout=config.timeouts.stop,
                kill_timeout=config.timeouts.force_kill,
            )
        except ShutdownError as e:
            logger.error("Rollback could not reap process %s: %s", handle.pid, e)

    def _resolver_for(self, config: EmbeddedClickHouseConfig) -> VersionResolver:
        if self._resolver is not None:
            return self._resolver
        return VersionResolver(
            repository_url=config.repository_url,
            index_url=config.index_url,
            remote_index=config.remote_index,
            checksum=config.checksum,
            timeout=config.timeouts.connect,
        )

    def _cache_for(self, config: EmbeddedClickHouseConfig) -> ArtifactCache:
        if self._cache is not None:
            return self._cache
        return ArtifactCache(resolve_cache_dir(config), lock_timeout=config.timeouts.install_lock)

    def _downloader_for(self, config: EmbeddedClickHouseConfig) -> Downloader:
        if self._downloader is None:
            self._downloader = Downloader(
                retry=config.retry, connect_timeout=config.timeouts.connect
            )
        return self._downloader

    def _prober_for(self, config: EmbeddedClickHouseConfig) -> HealthChecker:
        if self._prober is not None:
            return self._prober
        return ReadinessProber(
            poll_interval=config.timeouts.poll_interval,
            probe_timeout=config.timeouts.probe,
        )


_default_facade: Optional[EmbeddedClickHouse] = None
_default_facade_lock = threading.Lock()


def get_default_facade() -> EmbeddedClickHouse:
    global _default_facade
    with _default_facade_lock:
        if _default_facade is None:
            _default_facade = EmbeddedClickHouse()
        return _default_facade


def start(version: Optional[Any] = None, **overrides: Any) -> RunningInstance:
    """Start a server with the default facade."""
    if version is not None:
        overrides["version"] = str(version)
    return get_default_facade().start(**overrides)


def stop(instance: Optional[RunningInstance]) -> None:
    """Stop a server started with ``start``."""
    get_default_facade().stop(instance)


def stop_all() -> None:
    if _default_facade is not None:
        _default_facade.stop_all()
