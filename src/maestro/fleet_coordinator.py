"""Fleet deployment coordinator.

This module runs the per-host deployment pipeline across the whole fleet:
- One worker per host owns its pipeline end to end
  (connect -> ensure runtime -> shared build -> deploy)
- A failure stops that host's pipeline only; siblings are never touched
- The image build is shared (single-flight) by every pipeline
- Results are aggregated in configuration order, not completion order
- Run-level cancellation closes connections and fails every unfinished target

Philosophy:
- The coordinator never fails except on configuration errors
- Every host appears in the summary, failures with stage and reason
"""

import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from maestro.config_manager import ConfigError, HostDescriptor, ImageSpec, KeyAuth, MaestroConfig
from maestro.models import (
    DeploymentSummary,
    DeploymentTarget,
    HostFailure,
    SummaryBuilder,
    TargetState,
    TargetStateChanged,
)
from maestro.modules.container_deployer import ContainerDeployer, DockerCliRuntime
from maestro.modules.docker_api import DockerEngineRuntime
from maestro.modules.host_connector import Connection, HostConnector, is_local_address
from maestro.modules.image_builder import ImageBuilder
from maestro.modules.runtime_installer import RuntimeInstaller

logger = logging.getLogger(__name__)

WAIT_SLICE = 0.2

ProgressCallback = Callable[[TargetStateChanged], None]


class DeploymentCancelled(Exception):
    """Raised inside a pipeline when the run has been cancelled."""

    pass


class HostBusyError(Exception):
    """Raised when a run targets a host that another active run is deploying to."""

    pass


@dataclass
class _RunState:
    """Mutable state of one run: cancellation, open connections, shared builder."""

    builder: ImageBuilder
    cancel_event: threading.Event
    addresses: frozenset[str] = frozenset()
    connections: set = field(default_factory=set)
    futures: list[Future] = field(default_factory=list)
    aborted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, connection: Connection) -> None:
        with self.lock:
            self.connections.add(connection)
            aborted = self.aborted
        if aborted:
            connection.close()

    def unregister(self, connection: Connection) -> None:
        with self.lock:
            self.connections.discard(connection)

    @property
    def open_connections(self) -> int:
        with self.lock:
            return len(self.connections)

    def abort(self) -> None:
        """Cancel queued pipelines, close open connections, interrupt the build."""
        self.cancel_event.set()
        with self.lock:
            if self.aborted:
                return
            self.aborted = True
            connections = list(self.connections)
        for future in self.futures:
            future.cancel()
        for connection in connections:
            connection.close()
        self.builder.interrupt()


class DeploymentCoordinator:
    """Deploy one image to every configured host concurrently.

    Example:
        >>> coordinator = DeploymentCoordinator.from_config(config)
        >>> summary = coordinator.run(config.hosts, config.image)
        >>> print(summary.format_summary())
    """

    def __init__(
        self,
        connector: HostConnector | None = None,
        deployer: ContainerDeployer | None = None,
        installer_factory: Callable[[], RuntimeInstaller] | None = None,
        builder_factory: Callable[[], ImageBuilder] | None = None,
        max_workers: int = 10,
        per_host_build: bool = False,
        progress_callback: ProgressCallback | None = None,
    ):
        """Initialize the coordinator.

        Args:
            connector: Opens host connections
            deployer: Deploys the container on a connected host
            installer_factory: Creates the runtime installer for each run
            builder_factory: Creates the image builder for each run
            max_workers: Maximum number of hosts processed in parallel
            per_host_build: Build the image on every host instead of once locally
            progress_callback: Called once per target state transition

        Raises:
            ValueError: If max_workers is not positive
        """
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.connector = connector or HostConnector()
        self.deployer = deployer or ContainerDeployer()
        self.installer_factory = installer_factory or RuntimeInstaller
        self.builder_factory = builder_factory or ImageBuilder
        self.max_workers = max_workers
        self.per_host_build = per_host_build
        self.progress_callback = progress_callback
        self._runs: list[_RunState] = []
        self._last_builder: ImageBuilder | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: MaestroConfig, progress_callback: ProgressCallback | None = None
    ) -> "DeploymentCoordinator":
        """Wire connector, installer, builder and deployer from configuration."""
        timeouts = config.timeouts
        base_url = config.docker_base_url

        def runtime_factory(connection: Connection):
            if base_url and connection.is_local:
                return DockerEngineRuntime(base_url, timeout=timeouts.deploy)
            return DockerCliRuntime(connection, timeout=timeouts.deploy)

        return cls(
            connector=HostConnector(connect_timeout=timeouts.connect),
            deployer=ContainerDeployer(
                timeout=timeouts.deploy,
                verify_attempts=config.verify_attempts,
                verify_backoff=config.verify_backoff,
                verify_timeout=timeouts.verify,
                runtime_factory=runtime_factory,
            ),
            installer_factory=lambda: RuntimeInstaller(timeout=timeouts.install),
            builder_factory=lambda: ImageBuilder(
                timeout=timeouts.build, enabled=config.build.enabled
            ),
            max_workers=config.max_workers,
            per_host_build=config.build.per_host,
            progress_callback=progress_callback,
        )

    @staticmethod
    def preflight(hosts: Sequence[HostDescriptor]) -> None:
        """Reject configuration problems before any host is touched.

        Raises:
            ConfigError: On duplicate addresses or unreadable key files of remote hosts
        """
        seen: set[str] = set()
        for host in hosts:
            if host.address in seen:
                raise ConfigError(f"Duplicate host address: {host.address}")
            seen.add(host.address)

            # Local hosts run without SSH, so their key is never read
            if isinstance(host.auth, KeyAuth) and not is_local_address(host.address):
                key_path = host.auth.path.expanduser()
                if not key_path.is_file() or not os.access(key_path, os.R_OK):
                    raise ConfigError(f"SSH key for {host.address} not readable: {key_path}")

    def run(
        self,
        hosts: Sequence[HostDescriptor],
        spec: ImageSpec,
        cancel_event: threading.Event | None = None,
        builder: ImageBuilder | None = None,
    ) -> DeploymentSummary:
        """
        Deploy spec to every host and return the ordered summary.

        Args:
            hosts: Fleet, in configuration order
            spec: Image and container to deploy
            cancel_event: Optional external cancellation signal
            builder: Reuse this builder (and its build result) instead of a new one

        Returns:
            DeploymentSummary with one entry per host

        Raises:
            ConfigError: If the host list is invalid (nothing is touched)
            HostBusyError: If another active run is deploying to one of the hosts
        """
        self.preflight(hosts)

        builder = builder or self.builder_factory()
        state = _RunState(
            builder=builder,
            cancel_event=cancel_event or threading.Event(),
            addresses=frozenset(host.address for host in hosts),
        )
        targets = [DeploymentTarget(index=i, host=host) for i, host in enumerate(hosts)]
        summary = SummaryBuilder(addresses=[host.address for host in hosts])
        installer = self.installer_factory()

        with self._lock:
            busy = sorted(state.addresses & self._active_addresses())
            if busy:
                raise HostBusyError(f"Deployment already in progress for {', '.join(busy)}")
            self._runs.append(state)
            self._last_builder = builder

        logger.info(
            f"Deploying {spec.image_name} as '{spec.container_name}' to {len(hosts)} host(s)"
        )
        start_time = time.time()

        try:
            if targets:
                self._execute(targets, spec, installer, state, summary)
        finally:
            with self._lock:
                self._runs.remove(state)

        cancelled = state.cancel_event.is_set()
        for target in targets:
            if not target.state.is_terminal:
                failure = self._failure(target, DeploymentCancelled("Deployment cancelled"))
                self._fail(target, failure, summary)

        result = summary.build(cancelled=cancelled)
        logger.info(f"{result.format_summary()} ({time.time() - start_time:.1f}s)")
        return result

    def _execute(
        self,
        targets: list[DeploymentTarget],
        spec: ImageSpec,
        installer: RuntimeInstaller,
        state: _RunState,
        summary: SummaryBuilder,
    ) -> None:
        workers = min(self.max_workers, len(targets))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="maestro-host")
        try:
            state.futures = [
                executor.submit(self._pipeline, target, spec, installer, state, summary)
                for target in targets
            ]
            if state.cancel_event.is_set():
                state.abort()

            pending = set(state.futures)
            while pending:
                try:
                    _, pending = wait(pending, timeout=WAIT_SLICE, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted, cancelling deployment...")
                    state.cancel_event.set()

                if state.cancel_event.is_set() and not state.aborted:
                    logger.warning("Cancelling deployment run")
                    state.abort()
                pending = {f for f in pending if not f.cancelled()}
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def is_active(self, address: str) -> bool:
        """Return True if an active run is deploying to address."""
        with self._lock:
            return address in self._active_addresses()

    def _active_addresses(self) -> frozenset[str]:
        return frozenset().union(*(state.addresses for state in self._runs))

    def cancel(self) -> None:
        """Cancel every active run."""
        with self._lock:
            runs = list(self._runs)
        for state in runs:
            state.abort()

    def redeploy(self, host: HostDescriptor, spec: ImageSpec) -> DeploymentSummary:
        """Run the pipeline again for one host, reusing the last build result."""
        logger.info(f"Redeploying {host.address}")
        return self.run([host], spec, builder=self._last_builder)

    def _pipeline(
        self,
        target: DeploymentTarget,
        spec: ImageSpec,
        installer: RuntimeInstaller,
        state: _RunState,
        summary: SummaryBuilder,
    ) -> None:
        """One host's pipeline; every error becomes that target's failure."""
        cancel_event = state.cancel_event
        connection: Connection | None = None
        try:
            self._checkpoint(cancel_event)
            self._transition(target, TargetState.CONNECTING)
            connection = self.connector.connect(target.host)
            state.register(connection)
            self._checkpoint(cancel_event)

            self._transition(target, TargetState.INSTALLING)
            installer.ensure_runtime(connection)
            self._checkpoint(cancel_event)

            self._transition(target, TargetState.BUILDING)
            state.builder.build(
                spec,
                connection=connection if self.per_host_build else None,
                cancel_event=cancel_event,
            )
            self._checkpoint(cancel_event)

            self._transition(target, TargetState.DEPLOYING)
            self.deployer.deploy(connection, spec, cancel_event=cancel_event)

            self._transition(target, TargetState.SUCCEEDED)
            summary.record_success(target.index)
            logger.info(f"Deployment to {target.address} successful")

        except Exception as e:
            if cancel_event.is_set() and not isinstance(e, DeploymentCancelled):
                logger.debug(f"{target.address} stopped by cancellation: {e}")
                e = DeploymentCancelled("Deployment cancelled")
            failure = self._failure(target, e)
            logger.error(f"Deployment to {target.address} failed: {failure.describe()}")
            self._fail(target, failure, summary)

        finally:
            if connection is not None:
                state.unregister(connection)
                connection.close()

    @staticmethod
    def _checkpoint(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise DeploymentCancelled("Deployment cancelled")

    @staticmethod
    def _failure(target: DeploymentTarget, error: Exception) -> HostFailure:
        """Record the pipeline stage, refined by the error's own stage (e.g. deploying/verify)."""
        stage = target.state.value
        error_stage = getattr(error, "stage", None)
        if isinstance(error_stage, str) and error_stage:
            stage = f"{stage}/{error_stage}"
        return HostFailure(
            address=target.address,
            stage=stage,
            reason=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            last_status=getattr(error, "last_status", None),
            exit_code=getattr(error, "exit_code", None),
        )

    def _fail(
        self, target: DeploymentTarget, failure: HostFailure, summary: SummaryBuilder
    ) -> None:
        self._transition(target, TargetState.FAILED, failure)
        summary.record_failure(target.index, failure)

    def _transition(
        self, target: DeploymentTarget, new_state: TargetState, failure: HostFailure | None = None
    ) -> None:
        event = target.transition(new_state, failure)
        logger.debug(f"{event.address}: {event.previous.value} -> {event.state.value}")
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed for {target.address}: {e}")


__all__ = ["DeploymentCancelled", "DeploymentCoordinator", "HostBusyError", "ProgressCallback"]
