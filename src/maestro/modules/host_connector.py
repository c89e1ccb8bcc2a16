"""
Host Connector Module

Open a command-execution channel to one deployment host: a local shell for
the machine maestro runs on, or an SSH session (paramiko) for remote hosts.

Security Requirements:
- Password or key authentication, exactly as declared per host
- Passwords are only sent to sshd or to `sudo -S` stdin, never logged
- Timeout enforcement on connect and on every command
- Every handle is closed on every exit path (context manager)
"""

import ipaddress
import logging
import os
import socket
import subprocess
import threading
import time
from dataclasses import dataclass

import paramiko
from paramiko import UnknownKeyType
from paramiko.ssh_exception import NoValidConnectionsError

from maestro.config_manager import ConfigError, HostDescriptor, KeyAuth, PasswordAuth
from maestro.modules.subprocess_helper import run_process, terminate_process

logger = logging.getLogger(__name__)

LOCAL_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost"}
READ_CHUNK = 32768
POLL_INTERVAL = 0.05


class HostConnectionError(Exception):
    """Raised when a command channel to a host cannot be used."""

    pass


class AuthenticationError(HostConnectionError):
    """Raised when the host rejects the configured credentials."""

    pass


class UnreachableHostError(HostConnectionError):
    """Raised on connection timeout, refusal or name resolution failure."""

    pass


class CommandTimeout(HostConnectionError):
    """Raised when a single command exceeds its timeout."""

    pass


@dataclass
class CommandResult:
    """Result from one command on a host."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def get_output(self) -> str:
        """Get combined output."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def is_local_address(address: str) -> bool:
    """Return True if address names the machine maestro is running on."""
    name = address.strip().lower()
    if name in LOCAL_NAMES:
        return True

    try:
        return ipaddress.ip_address(name).is_loopback
    except ValueError:
        pass

    if name in {socket.gethostname().lower(), socket.getfqdn().lower()}:
        return True

    try:
        resolved = socket.gethostbyname(name)
    except OSError:
        return False
    return ipaddress.ip_address(resolved).is_loopback


class LocalConnection:
    """Command channel to the local machine (no network authentication)."""

    is_local = True
    sudo_password: str | None = None

    def __init__(self, host: HostDescriptor):
        self.host = host
        self.address = host.address
        self._closed = False
        self._processes: set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def _track(self, process: subprocess.Popen) -> None:
        with self._lock:
            if self._closed:
                terminate_process(process, grace=1.0)
                return
            self._processes.add(process)

    def run(
        self, command: str, timeout: float = 60, stdin_data: str | None = None
    ) -> CommandResult:
        """Run a shell command locally.

        Raises:
            CommandTimeout: If the command exceeds timeout
            HostConnectionError: If the connection was closed
        """
        if self._closed:
            raise HostConnectionError(f"Connection to {self.address} is closed")

        logger.debug(f"[{self.address}] $ {command}")
        result = run_process(
            ["sh", "-c", command], timeout=timeout, stdin_data=stdin_data, on_start=self._track
        )
        with self._lock:
            self._processes = {p for p in self._processes if p.poll() is None}

        if self._closed:
            raise HostConnectionError(f"Connection to {self.address} was closed during command")
        if result.timed_out:
            raise CommandTimeout(f"Command timed out after {timeout}s on {self.address}")

        return CommandResult(
            exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr
        )

    def close(self) -> None:
        """Close the handle, killing any command still running."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            processes = list(self._processes)
            self._processes.clear()
        for process in processes:
            terminate_process(process, grace=1.0)

    def __enter__(self) -> "LocalConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SSHConnection:
    """Command channel to a remote host over a paramiko SSH session."""

    is_local = False

    def __init__(self, host: HostDescriptor, client: paramiko.SSHClient):
        self.host = host
        self.address = host.address
        self._client = client
        self._closed = False
        self._lock = threading.Lock()

    @property
    def sudo_password(self) -> str | None:
        if isinstance(self.host.auth, PasswordAuth):
            return self.host.auth.secret
        return None

    def run(
        self, command: str, timeout: float = 60, stdin_data: str | None = None
    ) -> CommandResult:
        """Run a command on the remote host.

        Raises:
            CommandTimeout: If the command exceeds timeout
            HostConnectionError: If the session is closed or the channel fails
        """
        if self._closed:
            raise HostConnectionError(f"Connection to {self.address} is closed")

        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise HostConnectionError(f"SSH session to {self.address} is not active")

        logger.debug(f"[{self.address}] $ {command}")
        try:
            channel = transport.open_session(timeout=timeout)
            channel.exec_command(command)
            if stdin_data is not None:
                channel.sendall(stdin_data.encode("utf-8"))
                channel.shutdown_write()
            return self._collect(channel, timeout)
        except CommandTimeout:
            raise
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise HostConnectionError(f"Command failed on {self.address}: {e}") from e

    def _collect(self, channel: paramiko.Channel, timeout: float) -> CommandResult:
        stdout: list[bytes] = []
        stderr: list[bytes] = []
        deadline = time.monotonic() + timeout

        try:
            while True:
                if channel.recv_ready():
                    stdout.append(channel.recv(READ_CHUNK))
                elif channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(READ_CHUNK))
                elif channel.exit_status_ready():
                    break
                elif self._closed or channel.closed:
                    raise HostConnectionError(
                        f"Connection to {self.address} was closed during command"
                    )
                elif time.monotonic() > deadline:
                    raise CommandTimeout(f"Command timed out after {timeout}s on {self.address}")
                else:
                    time.sleep(POLL_INTERVAL)

            # Drain what arrived together with the exit status
            while channel.recv_ready():
                stdout.append(channel.recv(READ_CHUNK))
            while channel.recv_stderr_ready():
                stderr.append(channel.recv_stderr(READ_CHUNK))

            exit_code = channel.recv_exit_status()
        finally:
            channel.close()

        return CommandResult(
            exit_code=exit_code,
            stdout=b"".join(stdout).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr).decode("utf-8", errors="replace"),
        )

    def close(self) -> None:
        """Close the SSH session; interrupts a command running in another thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._client.close()
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"Error closing SSH session to {self.address}: {e}")

    def __enter__(self) -> "SSHConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


Connection = LocalConnection | SSHConnection


class HostConnector:
    """
    Establish command channels to deployment hosts.

    Each connect() call returns an independent handle; nothing is shared
    between handles for the same host.
    """

    def __init__(self, connect_timeout: float = 30.0):
        self.connect_timeout = connect_timeout

    def connect(self, host: HostDescriptor) -> Connection:
        """
        Open a command channel to host.

        Args:
            host: Host to connect to

        Returns:
            LocalConnection or SSHConnection

        Raises:
            AuthenticationError: If credentials are rejected
            UnreachableHostError: On timeout, refusal or DNS failure
            ConfigError: If the key file cannot be read or parsed

        Example:
            >>> with HostConnector().connect(host) as conn:
            ...     conn.run("docker --version")
        """
        if is_local_address(host.address):
            logger.info(f"Using local execution for {host.address}")
            return LocalConnection(host)

        credentials: dict = {"allow_agent": False, "look_for_keys": False}
        if isinstance(host.auth, KeyAuth):
            credentials["pkey"] = self._load_key(host.auth)
        else:
            credentials["password"] = host.auth.secret

        client = paramiko.SSHClient()
        try:
            client.load_system_host_keys()
        except OSError as e:
            logger.debug(f"System host keys not loaded: {e}")
        # Fleet hosts are often freshly provisioned; unknown host keys are accepted
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())  # nosec B507

        logger.info(f"Connecting to {host.username}@{host.address}:{host.ssh_port}...")
        try:
            client.connect(
                hostname=host.address,
                port=host.ssh_port,
                username=host.username,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                **credentials,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationError(
                f"Authentication failed for {host.username}@{host.address}: {e}"
            ) from e
        except (NoValidConnectionsError, TimeoutError, OSError, paramiko.SSHException) as e:
            client.close()
            raise UnreachableHostError(f"Cannot reach {host.address}:{host.ssh_port}: {e}") from e

        return SSHConnection(host, client)

    @staticmethod
    def _load_key(auth: KeyAuth) -> paramiko.PKey:
        key_path = auth.path.expanduser()
        if not key_path.is_file() or not os.access(key_path, os.R_OK):
            raise ConfigError(f"SSH key not readable: {key_path}")
        try:
            return paramiko.PKey.from_path(key_path)
        except (OSError, ValueError, UnknownKeyType, paramiko.SSHException) as e:
            raise ConfigError(f"Cannot load SSH key {key_path}: {e}") from e


__all__ = [
    "AuthenticationError",
    "CommandResult",
    "CommandTimeout",
    "Connection",
    "HostConnectionError",
    "HostConnector",
    "LocalConnection",
    "SSHConnection",
    "UnreachableHostError",
    "is_local_address",
]
