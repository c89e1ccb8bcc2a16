"""CLI entry point for maestro.

This module wires the whole orchestrator together:
- Load and validate the fleet configuration
- Start the side channel and the dashboard process
- Deploy the image to every host concurrently
- Print the ordered summary and exit with a status reflecting it

Usage:
    maestro                          # Deploy using ./config.toml
    maestro --config fleet.toml      # Deploy using another configuration
    maestro --serve                  # Keep serving dashboard control messages

Exit codes:
    0    every host succeeded
    1    at least one host failed
    2    configuration error
    130  run cancelled
"""

import dataclasses
import logging
import sys
import threading
import time
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from maestro import __version__
from maestro.config_manager import ConfigError, ConfigManager, MaestroConfig
from maestro.fleet_coordinator import DeploymentCoordinator
from maestro.models import DeploymentSummary
from maestro.modules.dashboard_launcher import DashboardLauncher
from maestro.modules.notifier import REDEPLOY_HOST, SCALE_REQUEST, NotifierServer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def exit_code_for(summary: DeploymentSummary) -> int:
    if summary.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if summary.all_succeeded else EXIT_FAILED


def apply_overrides(
    config: MaestroConfig, skip_build: bool = False, max_workers: int | None = None
) -> MaestroConfig:
    """Apply command-line overrides on top of the loaded configuration."""
    if skip_build:
        config = dataclasses.replace(
            config, build=dataclasses.replace(config.build, enabled=False)
        )
    if max_workers is not None:
        if max_workers <= 0:
            raise ConfigError("--max-workers must be positive")
        config = dataclasses.replace(config, max_workers=max_workers)
    return config


def register_control_handlers(
    notifier: NotifierServer, coordinator: DeploymentCoordinator, config: MaestroConfig
) -> None:
    """Route dashboard control messages to the coordinator."""
    hosts = {host.address: host for host in config.hosts}

    def redeploy(payload: dict[str, Any]) -> tuple[bool, str | None]:
        host = hosts.get(payload["address"])
        if host is None:
            return False, f"Unknown host {payload['address']}"
        if coordinator.is_active(host.address):
            return False, f"Deployment to {host.address} already in progress"

        def worker() -> None:
            try:
                summary = coordinator.redeploy(host, config.image)
            except Exception as e:
                logger.error(f"Redeploy of {host.address} failed: {e}")
                return
            notifier.publish_summary(summary)

        # Control handlers run on the client's reader thread
        threading.Thread(target=worker, name=f"redeploy-{host.address}", daemon=True).start()
        return True, None

    def scale(payload: dict[str, Any]) -> tuple[bool, str | None]:
        logger.info(f"Ignoring scale request to {payload['count']} host(s)")
        return False, "Scaling is not supported"

    notifier.on_control(REDEPLOY_HOST, redeploy)
    notifier.on_control(SCALE_REQUEST, scale)


def start_dashboard(config: MaestroConfig, event_port: int) -> DashboardLauncher | None:
    """Launch the dashboard if one is configured. Never fatal."""
    settings = config.dashboard
    if settings.dashboard_path is None:
        logger.debug("No dashboard configured")
        return None

    launcher = DashboardLauncher(
        settings.dashboard_path,
        start_command=settings.start_command,
        build_first=settings.build_first,
        env={
            "MAESTRO_EVENT_PORT": str(event_port),
            "MAESTRO_CONTROL_PORT": str(config.ipc.control_port),
        },
    )
    if not launcher.start():
        logger.warning("Continuing without dashboard")
        return None
    return launcher


def display_summary(summary: DeploymentSummary, console: Console | None = None) -> None:
    """Print the per-host outcome table in configuration order."""
    console = console or Console()

    table = Table(title="Deployment Summary", show_header=True)
    table.add_column("Host", style="cyan", no_wrap=True)
    table.add_column("Result")
    table.add_column("Stage", style="yellow")
    table.add_column("Error", style="magenta")
    table.add_column("Reason", style="white")

    failures = {failure.address: failure for failure in summary.failed}
    addresses = summary.addresses or (*summary.succeeded, *failures)
    for address in addresses:
        failure = failures.get(address)
        if failure is None:
            table.add_row(address, "[green]succeeded[/green]", "", "", "")
        else:
            table.add_row(
                address, "[red]failed[/red]", failure.stage, failure.error_type, failure.reason
            )

    console.print(table)
    status = "[yellow]cancelled[/yellow] " if summary.cancelled else ""
    console.print(f"{status}[bold]{summary.format_summary()}[/bold]")


def serve_forever(host: str, port: int) -> None:
    """Keep the side channel alive until Ctrl+C."""
    click.echo(f"Serving dashboard control messages on {host}:{port}. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "config_path",
    help="Config file path (default: ./config.toml)",
    type=click.Path(),
    envvar="MAESTRO_CONFIG",
)
@click.option("--skip-build", help="Deploy the existing image without building", is_flag=True)
@click.option("--no-dashboard", help="Do not launch the dashboard process", is_flag=True)
@click.option("--serve", help="Keep serving control messages after the run", is_flag=True)
@click.option("--max-workers", help="Maximum hosts deployed in parallel", type=int)
@click.option("--verbose", "-v", help="Show command traces", is_flag=True)
@click.version_option(version=__version__)
def main(
    config_path: str | None,
    skip_build: bool,
    no_dashboard: bool,
    serve: bool,
    max_workers: int | None,
    verbose: bool,
) -> None:
    """Build a container image and deploy it to every configured host."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    if not verbose:
        logging.getLogger("paramiko").setLevel(logging.WARNING)

    try:
        config = ConfigManager.load_config(config_path)
        config = apply_overrides(config, skip_build=skip_build, max_workers=max_workers)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG)

    notifier = NotifierServer(
        host=config.ipc.host, port=config.ipc.event_port, buffer_size=config.ipc.buffer_size
    )
    notifier.start()
    coordinator = DeploymentCoordinator.from_config(
        config, progress_callback=notifier.publish_state_change
    )
    register_control_handlers(notifier, coordinator, config)

    launcher = None if no_dashboard else start_dashboard(config, notifier.port)

    try:
        summary = coordinator.run(config.hosts, config.image)
        notifier.publish_summary(summary)
        display_summary(summary)

        if serve and not summary.cancelled:
            serve_forever(config.ipc.host, notifier.port)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        click.echo("\nCancelled by user", err=True)
        coordinator.cancel()
        sys.exit(EXIT_CANCELLED)
    finally:
        notifier.stop()
        if launcher is not None:
            launcher.stop()

    sys.exit(exit_code_for(summary))


__all__ = ["main"]
