"""
Dashboard Launcher Module

Run the monitoring dashboard next to the orchestrator and forward its output.

The dashboard is an opaque npm project: maestro only installs it, builds it
once if asked to, and keeps its start command running. Nothing the dashboard
does (or fails to do) affects fleet deployment.
"""

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path

from maestro.modules.subprocess_helper import run_process, terminate_process

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("maestro.dashboard")

BUILT_INDICATOR = ".dashboard_built"


class DashboardLauncher:
    """
    Launch and supervise the dashboard process.

    Example:
        >>> launcher = DashboardLauncher(Path("Horizon-Dashboard"))
        >>> if launcher.start():
        ...     print("dashboard starting")
    """

    def __init__(
        self,
        dashboard_path: Path,
        start_command: tuple[str, ...] = ("npm", "run", "start"),
        build_first: bool = False,
        env: dict[str, str] | None = None,
        setup_timeout: float = 900.0,
    ):
        self.dashboard_path = Path(dashboard_path)
        self.start_command = tuple(start_command)
        self.build_first = build_first
        self.env = env or {}
        self.setup_timeout = setup_timeout
        self.process: subprocess.Popen | None = None
        self.exit_code: int | None = None
        self._exited = threading.Event()
        self._forwarders: list[threading.Thread] = []

    def _check(self) -> bool:
        if not self.dashboard_path.is_dir():
            logger.error(f"Dashboard directory not found at {self.dashboard_path}")
            return False
        if shutil.which(self.start_command[0]) is None:
            logger.error(
                f"{self.start_command[0]} is not available. Install it to run the dashboard."
            )
            return False
        return True

    def prepare(self) -> bool:
        """Install dependencies and build once (marked by .dashboard_built)."""
        logger.info("Installing dashboard dependencies...")
        result = run_process(
            ["npm", "install"], cwd=self.dashboard_path, timeout=self.setup_timeout
        )
        if result.returncode != 0:
            logger.error(f"npm install failed: {result.stderr.strip()}")
            return False

        built_indicator = self.dashboard_path / BUILT_INDICATOR
        if built_indicator.exists():
            return True

        logger.info("Building dashboard for the first time...")
        result = run_process(
            ["npm", "run", "build"], cwd=self.dashboard_path, timeout=self.setup_timeout
        )
        if result.returncode != 0:
            logger.error(f"Dashboard build failed: {result.stderr.strip()}")
            return False
        built_indicator.touch()
        logger.info("Dashboard built successfully")
        return True

    def start(self) -> bool:
        """
        Launch the long-lived start command.

        Returns:
            True if the process was started; False (logged) otherwise
        """
        if not self._check():
            return False
        if self.build_first and not self.prepare():
            return False

        env = {**os.environ, **self.env}
        try:
            self.process = subprocess.Popen(
                list(self.start_command),
                cwd=self.dashboard_path,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                env=env,
            )
        except OSError as e:
            logger.error(f"Failed to start dashboard: {e}")
            return False

        logger.info(f"Dashboard starting: {' '.join(self.start_command)} (pid {self.process.pid})")
        self._forwarders = [
            threading.Thread(
                target=self._forward, args=(self.process.stdout, logging.INFO), daemon=True
            ),
            threading.Thread(
                target=self._forward, args=(self.process.stderr, logging.WARNING), daemon=True
            ),
        ]
        for thread in self._forwarders:
            thread.start()
        threading.Thread(target=self._watch, daemon=True).start()
        return True

    @staticmethod
    def _forward(pipe, level: int) -> None:
        try:
            for raw in iter(pipe.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    output_logger.log(level, line)
        except (OSError, ValueError):
            # Pipe closed while the process was being stopped
            pass

    def _watch(self) -> None:
        self.exit_code = self.process.wait()
        for thread in self._forwarders:
            thread.join(timeout=1)
        if self.exit_code == 0:
            logger.info("Dashboard process exited")
        else:
            logger.warning(f"Dashboard process exited with code {self.exit_code}")
        self._exited.set()

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the dashboard to exit; returns its exit code or None."""
        if self.process is None:
            return None
        self._exited.wait(timeout)
        return self.exit_code

    def stop(self) -> None:
        if self.process is not None and self.process.poll() is None:
            logger.info("Stopping dashboard...")
            terminate_process(self.process)


__all__ = ["BUILT_INDICATOR", "DashboardLauncher"]
