"""
Container Deployer Module

Replace the named container on a host with a fresh one from the deployment
image, start it and wait until it reports running.

Sequence:
    inspect -> (stop -> remove, if present) -> [pull] -> create -> start -> verify

Error stages:
- remove: an existing container could not be removed (fatal for the host)
- pull: the image could not be pulled
- create: the container could not be created
- start: the container was created but did not start (left in place)
- verify: the container never reported running within the attempt limit
"""

import logging
import shlex
import threading
import time
from dataclasses import dataclass
from typing import Protocol

from maestro.config_manager import ImageSpec
from maestro.modules.host_connector import CommandResult, CommandTimeout, Connection

logger = logging.getLogger(__name__)

RUNNING = "running"
NO_SUCH_CONTAINER = ("no such container", "no such object")


class DeployError(Exception):
    """Raised when a deployment stage fails on a host."""

    def __init__(self, message: str, stage: str, last_status: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.last_status = last_status


class ContainerRuntime(Protocol):
    """Operations the deployer needs from a container runtime backend."""

    def status(self, name: str) -> str | None: ...

    def stop(self, name: str) -> bool: ...

    def remove(self, name: str) -> None: ...

    def pull(self, image: str) -> None: ...

    def create(self, image: str, name: str) -> str: ...

    def start(self, name: str) -> None: ...


@dataclass
class Deployed:
    """Container confirmed running on a host."""

    container_name: str
    image_name: str
    status: str
    replaced: bool = False
    container_id: str | None = None


def _missing(result: CommandResult) -> bool:
    text = result.get_output().lower()
    return any(marker in text for marker in NO_SUCH_CONTAINER)


class DockerCliRuntime:
    """Docker CLI backend running commands over a host connection."""

    def __init__(self, connection: Connection, timeout: float = 120.0):
        self.connection = connection
        self.timeout = timeout

    def _docker(self, stage: str, *args: str) -> CommandResult:
        command = shlex.join(["docker", *args])
        try:
            return self.connection.run(command, timeout=self.timeout)
        except CommandTimeout as e:
            raise DeployError(str(e), stage=stage) from e

    def status(self, name: str) -> str | None:
        result = self._docker("inspect", "inspect", "--format", "{{.State.Status}}", name)
        if result.ok:
            return result.stdout.strip() or None
        if _missing(result):
            return None
        raise DeployError(
            f"Cannot inspect container {name}: {result.get_output().strip()}", stage="inspect"
        )

    def stop(self, name: str) -> bool:
        result = self._docker("stop", "stop", name)
        if not result.ok:
            logger.debug(f"docker stop {name}: {result.get_output().strip()}")
        return result.ok

    def remove(self, name: str) -> None:
        result = self._docker("remove", "rm", name)
        if result.ok or _missing(result):
            return
        raise DeployError(
            f"Cannot remove container {name}: {result.get_output().strip()}", stage="remove"
        )

    def pull(self, image: str) -> None:
        result = self._docker("pull", "pull", image)
        if not result.ok:
            raise DeployError(
                f"Cannot pull image {image}: {result.get_output().strip()}", stage="pull"
            )

    def create(self, image: str, name: str) -> str:
        result = self._docker("create", "create", "--name", name, image)
        if not result.ok:
            raise DeployError(
                f"Cannot create container {name} from {image}: {result.get_output().strip()}",
                stage="create",
            )
        return result.stdout.strip()

    def start(self, name: str) -> None:
        result = self._docker("start", "start", name)
        if not result.ok:
            raise DeployError(
                f"Container {name} created but failed to start: {result.get_output().strip()}",
                stage="start",
            )


class ContainerDeployer:
    """
    Deploy the configured container to one host.

    Example:
        >>> deployer = ContainerDeployer(timeout=120, verify_attempts=10, verify_backoff=2)
        >>> deployed = deployer.deploy(connection, image_spec)
        >>> print(deployed.status)
    """

    def __init__(
        self,
        timeout: float = 120.0,
        verify_attempts: int = 10,
        verify_backoff: float = 2.0,
        verify_timeout: float = 60.0,
        runtime_factory=None,
    ):
        """Initialize the deployer.

        Args:
            timeout: Timeout for each runtime command
            verify_attempts: Status polls before giving up
            verify_backoff: Fixed delay between polls
            verify_timeout: Overall bound on the verify stage
            runtime_factory: Callable(connection) -> ContainerRuntime (default: docker CLI)
        """
        if verify_attempts <= 0:
            raise ValueError("verify_attempts must be positive")
        self.timeout = timeout
        self.verify_attempts = verify_attempts
        self.verify_backoff = verify_backoff
        self.verify_timeout = verify_timeout
        self.runtime_factory = runtime_factory or (
            lambda connection: DockerCliRuntime(connection, timeout=self.timeout)
        )

    def deploy(
        self,
        connection: Connection,
        spec: ImageSpec,
        cancel_event: threading.Event | None = None,
    ) -> Deployed:
        """
        Replace, start and verify spec.container_name on the connected host.

        Raises:
            DeployError: With the failing stage
        """
        address = connection.address
        runtime = self.runtime_factory(connection)
        name = spec.container_name

        existing = runtime.status(name)
        replaced = existing is not None
        if replaced:
            logger.info(f"[{address}] Replacing existing container {name} ({existing})")
            if not runtime.stop(name):
                # Already stopped containers refuse to stop; removal decides
                logger.warning(f"[{address}] Could not stop {name}, removing anyway")
            runtime.remove(name)

        if spec.pull:
            logger.info(f"[{address}] Pulling {spec.image_name}...")
            runtime.pull(spec.image_name)

        container_id = runtime.create(spec.image_name, name)
        logger.info(f"[{address}] Created container {name}")

        runtime.start(name)
        status = self.verify(runtime, name, cancel_event)

        logger.info(f"[{address}] Container '{name}' is running")
        return Deployed(
            container_name=name,
            image_name=spec.image_name,
            status=status,
            replaced=replaced,
            container_id=container_id or None,
        )

    def verify(
        self,
        runtime: ContainerRuntime,
        name: str,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """Poll the container status until it is running.

        Raises:
            DeployError: stage="verify" with the last observed status
        """
        deadline = time.monotonic() + self.verify_timeout
        last_status: str | None = None

        for attempt in range(1, self.verify_attempts + 1):
            try:
                last_status = runtime.status(name)
            except DeployError as e:
                raise DeployError(str(e), stage="verify", last_status=last_status) from e
            if last_status == RUNNING:
                logger.debug(f"{name} running after {attempt} attempt(s)")
                return last_status

            if attempt == self.verify_attempts or time.monotonic() >= deadline:
                break

            logger.debug(f"{name} is {last_status}, retrying in {self.verify_backoff}s")
            if cancel_event is not None:
                if cancel_event.wait(self.verify_backoff):
                    break
            else:
                time.sleep(self.verify_backoff)

        raise DeployError(
            f"Container {name} not running after {attempt} attempt(s) (status: {last_status})",
            stage="verify",
            last_status=last_status,
        )


__all__ = [
    "ContainerDeployer",
    "ContainerRuntime",
    "DeployError",
    "Deployed",
    "DockerCliRuntime",
]
