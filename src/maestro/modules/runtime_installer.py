"""
Runtime Installer Module

Make sure the Docker runtime is present on a host before deploying to it.

Two explicit steps instead of trusting installer exit codes:
1. Detect: `docker --version` reports a version -> ready, nothing else runs
2. Install and reconfirm: run the platform install sequence once, detect again

Security Requirements:
- sudo passwords are passed on stdin (`sudo -S`), never on the command line
- Hosts without a password use `sudo -n` so a prompt can never hang a run
- A root shell runs the install script directly, without sudo
- Install runs at most once per host per run
"""

import logging
import re
import threading
from dataclasses import dataclass

from maestro.modules.host_connector import CommandTimeout, Connection

logger = logging.getLogger(__name__)

DETECT_COMMAND = "docker --version"
PLATFORM_COMMAND = "uname -s"
USER_ID_COMMAND = "id -u"
INSTALL_SCRIPT_URL = "https://get.docker.com"
VERSION_PATTERN = re.compile(r"version\s+([0-9][\w.\-+]*)", re.IGNORECASE)


class InstallError(Exception):
    """Raised when the container runtime cannot be installed or confirmed."""

    def __init__(self, message: str, stage: str, exit_code: int | None = None):
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code


@dataclass
class RuntimeReady:
    """Container runtime confirmed on a host."""

    address: str
    version: str
    installed: bool = False


class RuntimeInstaller:
    """
    Detect Docker on a host and install it when missing.

    One instance is used per deployment run; it remembers which hosts it has
    already run the install sequence on.

    Example:
        >>> installer = RuntimeInstaller(timeout=600)
        >>> ready = installer.ensure_runtime(connection)
        >>> print(ready.version)
    """

    def __init__(self, timeout: float = 600.0, detect_timeout: float = 30.0):
        self.timeout = timeout
        self.detect_timeout = detect_timeout
        self._attempted: set[str] = set()
        self._lock = threading.Lock()

    def detect(self, connection: Connection) -> str | None:
        """Return the runtime version reported by the host, or None if absent."""
        try:
            result = connection.run(DETECT_COMMAND, timeout=self.detect_timeout)
        except CommandTimeout as e:
            raise InstallError(str(e), stage="detect") from e

        if not result.ok:
            logger.debug(f"[{connection.address}] docker not detected: {result.get_output()}")
            return None

        match = VERSION_PATTERN.search(result.stdout)
        if not match:
            logger.debug(f"[{connection.address}] unexpected version output: {result.stdout!r}")
            return None
        return match.group(1).rstrip(",")

    def ensure_runtime(self, connection: Connection) -> RuntimeReady:
        """
        Ensure Docker is installed on the host behind connection.

        Args:
            connection: Open host connection

        Returns:
            RuntimeReady with the detected version

        Raises:
            InstallError: If installation fails or the runtime is still missing afterwards
        """
        address = connection.address
        version = self.detect(connection)
        if version:
            logger.info(f"Docker {version} already installed on {address}")
            return RuntimeReady(address=address, version=version)

        with self._lock:
            already_attempted = address in self._attempted
            self._attempted.add(address)

        if already_attempted:
            raise InstallError(
                f"Docker still missing on {address} after an earlier install attempt",
                stage="confirm",
            )

        logger.warning(f"Docker is not installed on {address}. Attempting to install...")
        self._install(connection)

        version = self.detect(connection)
        if not version:
            raise InstallError(
                f"Docker installation on {address} finished but docker is not available",
                stage="confirm",
            )

        logger.info(f"Docker {version} installed successfully on {address}")
        return RuntimeReady(address=address, version=version, installed=True)

    def _install(self, connection: Connection) -> None:
        platform_name = self._detect_platform(connection)
        if platform_name != "linux":
            raise InstallError(
                f"Automatic Docker installation is not supported on {platform_name} "
                f"({connection.address})",
                stage="platform",
            )

        command, stdin_data = self.build_install_command(
            connection.sudo_password, as_root=self._is_root(connection)
        )
        try:
            result = connection.run(command, timeout=self.timeout, stdin_data=stdin_data)
        except CommandTimeout as e:
            raise InstallError(
                f"Docker installation timed out after {self.timeout}s on {connection.address}",
                stage="install",
            ) from e

        if not result.ok:
            raise InstallError(
                f"Docker installation failed on {connection.address}: "
                f"{result.stderr.strip() or result.stdout.strip()}",
                stage="install",
                exit_code=result.exit_code,
            )

    def _detect_platform(self, connection: Connection) -> str:
        try:
            result = connection.run(PLATFORM_COMMAND, timeout=self.detect_timeout)
        except CommandTimeout as e:
            raise InstallError(str(e), stage="platform") from e
        if not result.ok:
            return "unknown"

        system = result.stdout.strip().lower()
        if system == "darwin":
            return "macos"
        if system == "linux":
            return "linux"
        return system or "unknown"

    def _is_root(self, connection: Connection) -> bool:
        try:
            result = connection.run(USER_ID_COMMAND, timeout=self.detect_timeout)
        except CommandTimeout as e:
            raise InstallError(str(e), stage="platform") from e
        return result.ok and result.stdout.strip() == "0"

    @staticmethod
    def build_install_command(
        sudo_password: str | None, as_root: bool = False
    ) -> tuple[str, str | None]:
        """
        Build the Linux install sequence and the stdin it needs.

        Args:
            sudo_password: Password fed to `sudo -S`, or None for `sudo -n`
            as_root: The shell is already root; run the script directly

        Returns:
            (command, stdin_data); stdin_data carries the sudo password once per sudo call
        """
        download = f"curl -fsSL {INSTALL_SCRIPT_URL} -o /tmp/get-docker.sh"
        if as_root:
            return f"{download} && sh /tmp/get-docker.sh", None

        if sudo_password is None:
            sudo = "sudo -n"
            stdin_data = None
        else:
            sudo = "sudo -S -p ''"
            stdin_data = f"{sudo_password}\n" * 2

        command = (
            f"{download} && "
            f"{sudo} sh /tmp/get-docker.sh && "
            f'{sudo} usermod -aG docker "$USER"'
        )
        return command, stdin_data


__all__ = ["InstallError", "RuntimeInstaller", "RuntimeReady"]
