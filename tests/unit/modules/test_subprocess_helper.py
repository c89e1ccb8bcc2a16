"""Tests for subprocess_helper module."""

import sys

from maestro.modules.subprocess_helper import run_process


class TestRunProcess:
    """Test run_process."""

    def test_captures_output(self):
        result = run_process(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert result.returncode == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert not result.timed_out

    def test_large_output_does_not_deadlock(self):
        """Test output larger than the pipe buffer is drained."""
        script = "import sys; sys.stdout.write('x' * 200000)"
        result = run_process([sys.executable, "-c", script], timeout=10)
        assert result.returncode == 0
        assert len(result.stdout) == 200000

    def test_command_not_found(self):
        result = run_process(["definitely-not-a-command-xyz"])
        assert result.returncode == 127
        assert "Command not found" in result.stderr

    def test_timeout(self):
        result = run_process(["sleep", "5"], timeout=0.2)
        assert result.timed_out
        assert result.returncode != 0

    def test_stdin_data(self):
        result = run_process(["cat"], stdin_data="hello\n")
        assert result.stdout == "hello\n"

    def test_on_start_receives_process(self):
        seen = []
        run_process(["true"], on_start=seen.append)
        assert len(seen) == 1
        assert seen[0].pid > 0
