"""Safe subprocess execution with pipe deadlock prevention.

Philosophy:
- Single responsibility: Execute subprocess safely
- Standard library only (no external dependencies)
- Interruptible: callers may register the live process and kill it

Public API (the "studs"):
    ProcessResult: Result dataclass
    run_process: Main execution function
    terminate_process: Terminate then kill a live process
"""

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Result of subprocess execution."""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


def terminate_process(process: subprocess.Popen, grace: float = 5.0) -> None:
    """Terminate a process, killing it if it ignores SIGTERM."""
    if process.poll() is not None:
        return
    try:
        process.terminate()
        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            process.kill()
    except OSError as e:
        logger.debug(f"Failed to terminate process {process.pid}: {e}")


def run_process(
    cmd: list[str],
    cwd: Path | str | None = None,
    timeout: float | None = 30,
    env: dict | None = None,
    stdin_data: str | None = None,
    on_start: Callable[[subprocess.Popen], None] | None = None,
) -> ProcessResult:
    """
    Execute subprocess with pipe deadlock prevention.

    Uses background threads to drain stdout/stderr pipes,
    preventing buffer overflow that causes deadlocks.

    Args:
        cmd: Command and arguments
        cwd: Working directory
        timeout: Timeout in seconds (None = no timeout)
        env: Environment variables
        stdin_data: Text written to the process stdin before it is closed
        on_start: Called with the live process right after it starts

    Returns:
        ProcessResult with output and exit code

    Example:
        >>> result = run_process(["echo", "hello"])
        >>> assert result.returncode == 0
        >>> assert "hello" in result.stdout.lower()
    """
    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError:
        # Command not found - return standard exit code 127
        return ProcessResult(
            returncode=127,
            stdout="",
            stderr=f"Command not found: {cmd[0] if cmd else 'unknown'}",
        )
    except (PermissionError, OSError) as e:
        return ProcessResult(returncode=1, stdout="", stderr=f"Error executing command: {e!s}")

    if on_start is not None:
        on_start(process)

    stdout_data: list[bytes] = []
    stderr_data: list[bytes] = []

    def drain_pipe(pipe, storage):
        """Read from pipe until EOF, store in list."""
        try:
            data = pipe.read()
            if data:
                storage.append(data)
        except (OSError, ValueError):
            # Pipe closed - normal during process termination
            pass

    stdout_thread = threading.Thread(target=drain_pipe, args=(process.stdout, stdout_data))
    stderr_thread = threading.Thread(target=drain_pipe, args=(process.stderr, stderr_data))
    stdout_thread.daemon = True
    stderr_thread.daemon = True
    stdout_thread.start()
    stderr_thread.start()

    if stdin_data is not None and process.stdin is not None:
        try:
            process.stdin.write(stdin_data.encode("utf-8"))
            process.stdin.close()
        except (BrokenPipeError, OSError):
            # Process exited before reading its input
            pass

    timed_out = False
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        terminate_process(process)

    stdout_thread.join(timeout=1)
    stderr_thread.join(timeout=1)

    returncode = process.returncode if process.returncode is not None else -1

    stdout = stdout_data[0].decode("utf-8", errors="replace") if stdout_data else ""
    stderr = stderr_data[0].decode("utf-8", errors="replace") if stderr_data else ""

    return ProcessResult(
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
    )


__all__ = ["ProcessResult", "run_process", "terminate_process"]
