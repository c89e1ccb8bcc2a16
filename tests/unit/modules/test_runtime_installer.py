"""Unit tests for runtime_installer module."""

import pytest

from maestro.modules.host_connector import CommandTimeout
from maestro.modules.runtime_installer import InstallError, RuntimeInstaller
from tests.conftest import FakeConnection, fail, ok

VERSION_OUTPUT = "Docker version 24.0.7, build afdd53b\n"


def docker_after_install(connection: FakeConnection):
    """docker --version fails until the install command has run."""

    def reply(command):
        installed = any(c.startswith("curl") for c in connection.commands)
        return ok(VERSION_OUTPUT) if installed else fail("sh: docker: not found", 127)

    return reply


class TestDetect:
    """Test runtime detection."""

    def test_version_parsed(self, fake_connection):
        fake_connection.on("docker --version", ok(VERSION_OUTPUT))
        assert RuntimeInstaller().detect(fake_connection) == "24.0.7"

    def test_absent(self, fake_connection):
        fake_connection.on("docker --version", fail("not found", 127))
        assert RuntimeInstaller().detect(fake_connection) is None

    def test_garbage_output(self, fake_connection):
        fake_connection.on("docker --version", ok("hello"))
        assert RuntimeInstaller().detect(fake_connection) is None

    def test_timeout(self, fake_connection):
        fake_connection.on("docker --version", CommandTimeout("slow"))
        with pytest.raises(InstallError) as exc_info:
            RuntimeInstaller().detect(fake_connection)
        assert exc_info.value.stage == "detect"


class TestEnsureRuntime:
    """Test detect-install-confirm."""

    def test_already_installed(self, fake_connection):
        """Test a host with docker runs nothing but the detect command."""
        fake_connection.on("docker --version", ok(VERSION_OUTPUT))

        ready = RuntimeInstaller().ensure_runtime(fake_connection)

        assert ready.version == "24.0.7"
        assert not ready.installed
        assert fake_connection.commands == ["docker --version"]

    def test_idempotent(self, fake_connection):
        """Test calling twice on a ready host does not install anything."""
        fake_connection.on("docker --version", ok(VERSION_OUTPUT))
        installer = RuntimeInstaller()

        installer.ensure_runtime(fake_connection)
        installer.ensure_runtime(fake_connection)

        assert fake_connection.commands == ["docker --version", "docker --version"]

    def test_installs_and_confirms(self):
        """Test a missing runtime is installed, then detected again."""
        connection = FakeConnection(sudo_password="pw")
        connection.on("docker --version", docker_after_install(connection))
        connection.on("uname -s", ok("Linux\n"))

        ready = RuntimeInstaller().ensure_runtime(connection)

        assert ready.installed
        assert ready.version == "24.0.7"
        install = [c for c in connection.commands if c.startswith("curl")]
        assert len(install) == 1
        assert "get.docker.com" in install[0]
        assert "sudo -S" in install[0]
        assert "pw" not in install[0]
        assert connection.stdin[connection.commands.index(install[0])] == "pw\npw\n"

    def test_install_failure(self, fake_connection):
        """Test a failing installer reports stage and exit code."""
        fake_connection.on("docker --version", fail("not found", 127))
        fake_connection.on("uname -s", ok("Linux\n"))
        fake_connection.on("curl", fail("E: Unable to locate package", 100))

        with pytest.raises(InstallError) as exc_info:
            RuntimeInstaller().ensure_runtime(fake_connection)

        assert exc_info.value.stage == "install"
        assert exc_info.value.exit_code == 100
        assert "Unable to locate package" in str(exc_info.value)

    def test_install_reports_success_but_still_missing(self, fake_connection):
        """Test a zero exit status is not trusted without detection."""
        fake_connection.on("docker --version", fail("not found", 127))
        fake_connection.on("uname -s", ok("Linux\n"))

        with pytest.raises(InstallError) as exc_info:
            RuntimeInstaller().ensure_runtime(fake_connection)
        assert exc_info.value.stage == "confirm"

    def test_install_attempted_once_per_host(self, fake_connection):
        """Test a second call after a failed install does not reinstall."""
        fake_connection.on("docker --version", fail("not found", 127))
        fake_connection.on("uname -s", ok("Linux\n"))
        installer = RuntimeInstaller()

        with pytest.raises(InstallError):
            installer.ensure_runtime(fake_connection)
        with pytest.raises(InstallError, match="earlier install attempt"):
            installer.ensure_runtime(fake_connection)

        assert sum(c.startswith("curl") for c in fake_connection.commands) == 1

    def test_install_timeout(self, fake_connection):
        fake_connection.on("docker --version", fail("not found", 127))
        fake_connection.on("uname -s", ok("Linux\n"))
        fake_connection.on("curl", CommandTimeout("too slow"))

        with pytest.raises(InstallError) as exc_info:
            RuntimeInstaller(timeout=5).ensure_runtime(fake_connection)
        assert exc_info.value.stage == "install"
        assert exc_info.value.exit_code is None

    @pytest.mark.parametrize("system", ["Darwin", "FreeBSD"])
    def test_unsupported_platform(self, fake_connection, system):
        fake_connection.on("docker --version", fail("not found", 127))
        fake_connection.on("uname -s", ok(f"{system}\n"))

        with pytest.raises(InstallError) as exc_info:
            RuntimeInstaller().ensure_runtime(fake_connection)

        assert exc_info.value.stage == "platform"
        assert not any(c.startswith("curl") for c in fake_connection.commands)


class TestBuildInstallCommand:
    def test_without_password(self):
        command, stdin_data = RuntimeInstaller.build_install_command(None)
        assert "sudo -n sh /tmp/get-docker.sh" in command
        assert "usermod -aG docker" in command
        assert stdin_data is None

    def test_with_password(self):
        command, stdin_data = RuntimeInstaller.build_install_command("s3cret")
        assert "s3cret" not in command
        assert stdin_data == "s3cret\ns3cret\n"

    def test_as_root(self):
        command, stdin_data = RuntimeInstaller.build_install_command("s3cret", as_root=True)
        assert "sudo" not in command
        assert "usermod" not in command
        assert command.endswith("sh /tmp/get-docker.sh")
        assert stdin_data is None


class TestRootShell:
    """Test hosts whose shell is already root."""

    def test_root_installs_without_sudo(self, fake_connection):
        """Test a root shell without sudo installed can still install docker."""
        fake_connection.on("docker --version", docker_after_install(fake_connection))
        fake_connection.on("uname -s", ok("Linux\n"))
        fake_connection.on("id -u", ok("0\n"))
        fake_connection.on("sudo", fail("sh: sudo: not found", 127))

        ready = RuntimeInstaller().ensure_runtime(fake_connection)

        assert ready.installed
        install = [c for c in fake_connection.commands if c.startswith("curl")]
        assert len(install) == 1
        assert "sudo" not in install[0]

    def test_non_root_keeps_sudo(self, fake_connection):
        fake_connection.on("docker --version", docker_after_install(fake_connection))
        fake_connection.on("uname -s", ok("Linux\n"))
        fake_connection.on("id -u", ok("1000\n"))

        RuntimeInstaller().ensure_runtime(fake_connection)

        install = [c for c in fake_connection.commands if c.startswith("curl")]
        assert "sudo -n sh /tmp/get-docker.sh" in install[0]
