"""Image build module.

Builds the game-server image with the docker CLI and shares the result with
every deployment target of the run.

Philosophy:
- The build itself is a black box: exit code and error stream decide
- Single-flight: concurrent requests for the same image share one build
- A failed build is final for the run (no retries)

Public API (the "studs"):
    ImageBuilder: Build (and optionally push) an image, at most once per key
    SingleFlight: Coalesce concurrent identical calls into one execution
    BuildArtifact: Reference to the built image
    BuildError: Build failure carrying the build log
"""

import logging
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any

from maestro.config_manager import ImageSpec
from maestro.modules.host_connector import CommandTimeout, Connection
from maestro.modules.subprocess_helper import run_process, terminate_process

logger = logging.getLogger(__name__)

WAIT_SLICE = 0.2


class BuildError(Exception):
    """Raised when the image build (or push) fails."""

    def __init__(self, message: str, log: str = ""):
        super().__init__(message)
        self.log = log


class FlightCancelled(Exception):
    """Raised to a waiter whose cancellation event fired before the result arrived."""

    pass


@dataclass(frozen=True)
class BuildArtifact:
    """Reference to an image ready for deployment."""

    image_name: str
    image_id: str | None = None
    built: bool = True


class SingleFlight:
    """Coalesce concurrent calls with the same key into one execution.

    The first caller for a key runs the function; every other caller waits on
    the same Future and gets the same result or exception. Results are kept,
    so later callers in the same run reuse them without running again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._flights: dict[str, Future] = {}

    def do(
        self,
        key: str,
        fn: Callable[[], Any],
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Any:
        """Run fn once for key and return its result to every caller.

        Raises:
            The exception raised by fn, for every caller
            TimeoutError: If a waiter gives up after timeout seconds
            FlightCancelled: If cancel_event is set while waiting
        """
        with self._lock:
            future = self._flights.get(key)
            leader = future is None
            if leader:
                future = Future()
                future.set_running_or_notify_cancel()
                self._flights[key] = future

        if leader:
            try:
                future.set_result(fn())
            except BaseException as e:
                future.set_exception(e)
            return future.result()

        logger.debug(f"Waiting for in-flight build of {key}")
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise FlightCancelled(f"Stopped waiting for {key}")
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"Timed out waiting for {key}")
            slice_ = WAIT_SLICE if remaining is None else min(WAIT_SLICE, remaining)
            try:
                return future.result(timeout=slice_)
            except FutureTimeoutError:
                continue

    def calls(self) -> list[str]:
        """Keys that have been (or are being) executed."""
        with self._lock:
            return list(self._flights)


class ImageBuilder:
    """Build the deployment image once per run and share the result."""

    def __init__(self, timeout: float = 1800.0, enabled: bool = True):
        self.timeout = timeout
        self.enabled = enabled
        self._flight = SingleFlight()
        self._processes: set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._interrupted = False

    def build(
        self,
        spec: ImageSpec,
        connection: Connection | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BuildArtifact:
        """
        Build spec.image_name, coalescing concurrent requests.

        Args:
            spec: Image to build
            connection: Build on this host instead of locally (per-host builds)
            cancel_event: Run-level cancellation signal for waiters

        Returns:
            BuildArtifact shared by every caller with the same key

        Raises:
            BuildError: If the build fails or times out
        """
        if not self.enabled:
            logger.info(f"Image build disabled; deploying existing image {spec.image_name}")
            return BuildArtifact(image_name=spec.image_name, built=False)

        key = spec.image_name
        if connection is not None:
            key = f"{spec.image_name}@{connection.address}"

        try:
            return self._flight.do(
                key,
                lambda: self._build_once(spec, connection),
                timeout=self.timeout,
                cancel_event=cancel_event,
            )
        except TimeoutError as e:
            raise BuildError(f"Timed out waiting for build of {spec.image_name}") from e

    def build_keys(self) -> list[str]:
        """Keys built (or building) during this run."""
        return self._flight.calls()

    def interrupt(self) -> None:
        """Kill in-flight local build processes."""
        with self._lock:
            self._interrupted = True
            processes = list(self._processes)
        for process in processes:
            terminate_process(process, grace=2.0)

    @staticmethod
    def build_command(spec: ImageSpec) -> list[str]:
        return [
            "docker",
            "build",
            "--quiet",
            "-t",
            spec.image_name,
            "-f",
            spec.dockerfile_path,
            spec.build_context,
        ]

    def _track(self, process: subprocess.Popen) -> None:
        with self._lock:
            if self._interrupted:
                terminate_process(process, grace=1.0)
                return
            self._processes.add(process)

    def _run(self, cmd: list[str], connection: Connection | None) -> tuple[int, str, str]:
        if connection is not None:
            try:
                result = connection.run(shlex.join(cmd), timeout=self.timeout)
            except CommandTimeout as e:
                raise BuildError(str(e), log="") from e
            return result.exit_code, result.stdout, result.stderr

        result = run_process(cmd, timeout=self.timeout, on_start=self._track)
        if result.timed_out:
            raise BuildError(
                f"{' '.join(cmd[:2])} timed out after {self.timeout}s", log=result.stderr
            )
        return result.returncode, result.stdout, result.stderr

    def _build_once(self, spec: ImageSpec, connection: Connection | None) -> BuildArtifact:
        where = connection.address if connection is not None else "local"
        logger.info(f"Building image {spec.image_name} ({where})...")
        start_time = time.time()

        exit_code, stdout, stderr = self._run(self.build_command(spec), connection)
        if exit_code != 0 or stderr.strip():
            raise BuildError(
                f"Image build failed for {spec.image_name} (exit code {exit_code})",
                log=stderr or stdout,
            )

        image_id = stdout.strip().splitlines()[-1] if stdout.strip() else None
        logger.info(f"Built {spec.image_name} in {time.time() - start_time:.1f}s")

        if spec.push:
            logger.info(f"Pushing {spec.image_name}...")
            exit_code, stdout, stderr = self._run(["docker", "push", spec.image_name], connection)
            if exit_code != 0:
                raise BuildError(f"Image push failed for {spec.image_name}", log=stderr or stdout)

        return BuildArtifact(image_name=spec.image_name, image_id=image_id, built=True)


__all__ = ["BuildArtifact", "BuildError", "FlightCancelled", "ImageBuilder", "SingleFlight"]
