"""
Shared test fixtures and configuration for maestro tests.

This module provides common fixtures used across all test types:
- Host descriptors and image specs
- A scripted fake connection standing in for SSH and local shells
- A sample configuration document
"""

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from maestro.config_manager import HostDescriptor, ImageSpec, KeyAuth, PasswordAuth
from maestro.modules.host_connector import CommandResult, HostConnectionError

# ============================================================================
# FAKES
# ============================================================================


class FakeConnection:
    """Connection double that answers commands from a list of (prefix, reply) rules.

    A reply is a CommandResult, an exception instance to raise, or a callable
    taking the command and returning either. The first matching prefix wins;
    unmatched commands succeed with empty output.
    """

    def __init__(self, address: str = "10.0.0.1", is_local: bool = False, sudo_password=None):
        self.address = address
        self.is_local = is_local
        self.sudo_password = sudo_password
        self.commands: list[str] = []
        self.stdin: list[str | None] = []
        self.rules: list[tuple[str, object]] = []
        self.closed = False
        self.close_count = 0
        self.closed_event = threading.Event()
        self._lock = threading.Lock()

    def on(self, prefix: str, reply) -> "FakeConnection":
        self.rules.append((prefix, reply))
        return self

    def run(
        self, command: str, timeout: float = 60, stdin_data: str | None = None
    ) -> CommandResult:
        if self.closed:
            raise HostConnectionError(f"Connection to {self.address} is closed")
        with self._lock:
            self.commands.append(command)
            self.stdin.append(stdin_data)
        for prefix, reply in self.rules:
            if command.startswith(prefix):
                if callable(reply) and not isinstance(reply, CommandResult):
                    reply = reply(command)
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return CommandResult(exit_code=0, stdout="", stderr="")

    def close(self) -> None:
        self.close_count += 1
        self.closed = True
        self.closed_event.set()

    def __enter__(self) -> "FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout, stderr="")


def fail(stderr: str = "error", exit_code: int = 1) -> CommandResult:
    return CommandResult(exit_code=exit_code, stdout="", stderr=stderr)


# ============================================================================
# MODEL FIXTURES
# ============================================================================


@pytest.fixture
def make_host() -> Callable[..., HostDescriptor]:
    """Factory for password-authenticated host descriptors."""

    def factory(address: str = "10.0.0.1", username: str = "ops", **kwargs) -> HostDescriptor:
        kwargs.setdefault("auth", PasswordAuth(secret="hunter2"))  # noqa: S106 - test fixture
        return HostDescriptor(address=address, username=username, **kwargs)

    return factory


@pytest.fixture
def key_host(tmp_path) -> HostDescriptor:
    """Host authenticated by a (fake) key file that exists on disk."""
    key_path = tmp_path / "id_ed25519"
    key_path.write_text("not a real key")
    return HostDescriptor(address="10.0.0.9", username="ops", auth=KeyAuth(path=key_path))


@pytest.fixture
def image_spec() -> ImageSpec:
    return ImageSpec(image_name="horizon-server", container_name="horizon")


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


# ============================================================================
# CONFIG FIXTURES
# ============================================================================

SAMPLE_CONFIG = """
[npm]
dashboard_path = "Horizon-Dashboard"

[deployment]
max_workers = 4
hosts = [
  { address = "localhost", username = "me", auth_method = { Key = "~/.ssh/id_ed25519" } },
  { address = "10.0.0.5", username = "ops", auth_method = { Password = "s3cret" }, ssh_port = 2222 },
]

[docker]
base_url = "http://localhost:2375"
image_name = "horizon-server"
container_name = "horizon"

[dockerfile]
path = "Dockerfile"
build_context = "."

[timeouts]
build = 900
"""


@pytest.fixture
def sample_config_file(tmp_path) -> Path:
    """Write the sample configuration with owner-only permissions."""
    config_path = tmp_path / "config.toml"
    config_path.write_text(SAMPLE_CONFIG)
    config_path.chmod(0o600)
    return config_path
