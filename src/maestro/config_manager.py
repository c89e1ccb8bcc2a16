"""Configuration management module.

This module loads the fleet configuration document (TOML) into immutable
dataclasses: the host list with its authentication methods, the image to
build and deploy, stage timeouts and side-channel settings.

Security:
- Password secrets are hidden from repr and never logged
- Key paths are expanded but only read by the host connector
- Config file permissions are checked when secrets are present
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config.toml")


class ConfigError(Exception):
    """Raised when the configuration is missing, malformed or inconsistent."""

    pass


@dataclass(frozen=True)
class PasswordAuth:
    """Password-based SSH authentication."""

    secret: str = field(repr=False)


@dataclass(frozen=True)
class KeyAuth:
    """Private-key SSH authentication."""

    path: Path


AuthMethod = PasswordAuth | KeyAuth


@dataclass(frozen=True)
class HostDescriptor:
    """One deployment host as declared in the configuration."""

    address: str
    username: str
    auth: AuthMethod
    ssh_port: int = 22


@dataclass(frozen=True)
class ImageSpec:
    """Image to build and container to run on every host."""

    image_name: str
    container_name: str
    dockerfile_path: str = "Dockerfile"
    build_context: str = "."
    pull: bool = False
    push: bool = False


@dataclass(frozen=True)
class Timeouts:
    """Per-stage timeouts in seconds."""

    connect: float = 30.0
    install: float = 600.0
    build: float = 1800.0
    deploy: float = 120.0
    verify: float = 60.0


@dataclass(frozen=True)
class BuildSettings:
    """Image build toggles."""

    enabled: bool = True
    per_host: bool = False


@dataclass(frozen=True)
class IPCSettings:
    """Side channel between orchestrator and dashboard."""

    host: str = "127.0.0.1"
    event_port: int = 3010
    control_port: int = 3011
    buffer_size: int = 256


@dataclass(frozen=True)
class DashboardSettings:
    """Dashboard process settings (the [npm] table)."""

    dashboard_path: Path | None = None
    start_command: tuple[str, ...] = ("npm", "run", "start")
    build_first: bool = False


@dataclass(frozen=True)
class MaestroConfig:
    """Complete, validated fleet configuration."""

    hosts: tuple[HostDescriptor, ...]
    image: ImageSpec
    docker_base_url: str | None = None
    max_workers: int = 10
    verify_attempts: int = 10
    verify_backoff: float = 2.0
    timeouts: Timeouts = field(default_factory=Timeouts)
    build: BuildSettings = field(default_factory=BuildSettings)
    ipc: IPCSettings = field(default_factory=IPCSettings)
    dashboard: DashboardSettings = field(default_factory=DashboardSettings)


AUTH_VARIANTS = ("password", "key")


def _lookup(table: dict[str, Any], *names: str, default: Any = None) -> Any:
    """Return the first key present in table among names (snake_case, camelCase)."""
    for name in names:
        if name in table:
            return table[name]
    return default


def _require(table: dict[str, Any], context: str, *names: str) -> Any:
    value = _lookup(table, *names)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigError(f"Missing required field: {context}.{names[0]}")
    return value


def _table(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _positive(value: Any, name: str, kind: type = float) -> Any:
    try:
        number = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return number


def _port(value: Any, name: str) -> int:
    port = _positive(value, name, int)
    if port > 65535:
        raise ConfigError(f"{name} is not a valid port: {value!r}")
    return port


def parse_auth_method(raw: Any, context: str) -> AuthMethod:
    """Parse the externally tagged auth table: { Password = "..." } or { Key = "path" }.

    Raises:
        ConfigError: If the table is missing, empty, ambiguous or names an unknown variant
    """
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"{context}.auth_method must be a table with Password or Key")

    unknown = [k for k in raw if k.lower() not in AUTH_VARIANTS]
    if unknown:
        raise ConfigError(f"{context}.auth_method has unknown variant(s): {', '.join(unknown)}")
    if len(raw) != 1:
        raise ConfigError(f"{context}.auth_method must name exactly one of Password or Key")

    variant, value = next(iter(raw.items()))
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{context}.auth_method.{variant} must be a non-empty string")

    if variant.lower() == "password":
        return PasswordAuth(secret=value)
    return KeyAuth(path=Path(value).expanduser())


def parse_hosts(raw_hosts: Any) -> tuple[HostDescriptor, ...]:
    """Parse deployment.hosts, rejecting duplicate addresses."""
    if not isinstance(raw_hosts, list):
        raise ConfigError("Missing required field: deployment.hosts")

    hosts: list[HostDescriptor] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_hosts):
        context = f"deployment.hosts[{index}]"
        if not isinstance(raw, dict):
            raise ConfigError(f"{context} must be a table")

        address = str(_require(raw, context, "address")).strip()
        username = str(_require(raw, context, "username")).strip()
        auth = parse_auth_method(_lookup(raw, "auth_method", "authMethod"), context)
        ssh_port = _port(_lookup(raw, "ssh_port", "sshPort", default=22), f"{context}.ssh_port")

        if address in seen:
            raise ConfigError(f"Duplicate host address: {address}")
        seen.add(address)

        hosts.append(
            HostDescriptor(address=address, username=username, auth=auth, ssh_port=ssh_port)
        )

    return tuple(hosts)


class ConfigManager:
    """Load and validate the maestro configuration document."""

    @classmethod
    def get_config_path(cls, custom_path: str | Path | None = None) -> Path:
        """Resolve the configuration path (default: ./config.toml)."""
        if custom_path:
            return Path(custom_path).expanduser()
        return DEFAULT_CONFIG_FILE

    @classmethod
    def load_config(cls, custom_path: str | Path | None = None) -> MaestroConfig:
        """Load configuration from file.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            MaestroConfig

        Raises:
            ConfigError: If the file cannot be read or fails validation
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(config_path, "rb") as f:
                data = tomli.load(f)
        except (OSError, tomli.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

        config = cls.from_dict(data, base_dir=config_path.parent)

        if any(isinstance(h.auth, PasswordAuth) for h in config.hosts):
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file {config_path} contains passwords and is readable by "
                    f"other users ({oct(mode)}). Consider chmod 600."
                )

        logger.debug(f"Loaded config from: {config_path} ({len(config.hosts)} hosts)")
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> MaestroConfig:
        """Build a validated MaestroConfig from a parsed document.

        Raises:
            ConfigError: On missing fields, unknown auth variants or duplicate hosts
        """
        deployment = _table(data, "deployment")
        docker = _table(data, "docker")
        dockerfile = _table(data, "dockerfile")
        npm = _table(data, "npm")
        build = _table(data, "build")
        timeouts = _table(data, "timeouts")
        ipc = _table(data, "ipc")

        hosts = parse_hosts(deployment.get("hosts"))

        image = ImageSpec(
            image_name=str(_require(docker, "docker", "image_name", "imageName")),
            container_name=str(_require(docker, "docker", "container_name", "containerName")),
            dockerfile_path=str(_lookup(dockerfile, "path", default="Dockerfile")),
            build_context=str(_lookup(dockerfile, "build_context", "buildContext", default=".")),
            pull=bool(docker.get("pull", False)),
            push=bool(docker.get("push", False)),
        )

        dashboard_path = _lookup(npm, "dashboard_path", "dashboardPath")
        if dashboard_path:
            dashboard_path = Path(dashboard_path).expanduser()
            if base_dir is not None and not dashboard_path.is_absolute():
                dashboard_path = base_dir / dashboard_path

        start_command = npm.get("start_command", ["npm", "run", "start"])
        if isinstance(start_command, str):
            start_command = start_command.split()
        if not start_command:
            raise ConfigError("npm.start_command cannot be empty")

        defaults = Timeouts()
        return MaestroConfig(
            hosts=hosts,
            image=image,
            docker_base_url=_lookup(docker, "base_url", "baseUrl"),
            max_workers=_positive(deployment.get("max_workers", 10), "deployment.max_workers", int),
            verify_attempts=_positive(
                deployment.get("verify_attempts", 10), "deployment.verify_attempts", int
            ),
            verify_backoff=_positive(
                deployment.get("verify_backoff", 2.0), "deployment.verify_backoff"
            ),
            timeouts=Timeouts(
                **{
                    stage: _positive(
                        timeouts.get(stage, getattr(defaults, stage)), f"timeouts.{stage}"
                    )
                    for stage in ("connect", "install", "build", "deploy", "verify")
                }
            ),
            build=BuildSettings(
                enabled=bool(build.get("enabled", True)),
                per_host=bool(build.get("per_host", False)),
            ),
            ipc=IPCSettings(
                host=str(ipc.get("host", "127.0.0.1")),
                event_port=_port(ipc.get("event_port", 3010), "ipc.event_port"),
                control_port=_port(ipc.get("control_port", 3011), "ipc.control_port"),
                buffer_size=_positive(ipc.get("buffer_size", 256), "ipc.buffer_size", int),
            ),
            dashboard=DashboardSettings(
                dashboard_path=dashboard_path,
                start_command=tuple(str(part) for part in start_command),
                build_first=bool(npm.get("build_first", False)),
            ),
        )

