"""
Tests for the command runner.
"""
import sys

from nextcloud_upgrade.process import CommandRunner, DryRunRunner


class TestCommandRunner:
    """Tests for subprocess execution."""

    def test_captures_output(self):
        """stdout and stderr are captured as text."""
        result = CommandRunner().run(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"]
        )

        assert result.returncode == 0
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    def test_input_and_env(self):
        """stdin and the child environment are passed through."""
        result = CommandRunner().run(
            [sys.executable, "-c", "import os, sys; print(sys.stdin.read() + os.environ['CHILD_VALUE'])"],
            input="value-",
            env={"CHILD_VALUE": "set"},
        )

        assert result.stdout == "value-set\n"

    def test_stdout_to_file(self, tmp_path):
        """stdout can be sent to an open file."""
        target = tmp_path / "out.txt"
        with open(target, "w") as f:
            CommandRunner().run([sys.executable, "-c", "print('dumped')"], stdout=f)

        assert target.read_text() == "dumped\n"

    def test_missing_program(self):
        """A missing program is reported as exit status 127."""
        result = CommandRunner().run(["definitely-not-a-real-program-xyz"])

        assert result.returncode == 127

    def test_failure_not_raised(self):
        """Non-zero exits are returned, not raised."""
        result = CommandRunner().run([sys.executable, "-c", "raise SystemExit(3)"])

        assert result.returncode == 3

    def test_which(self):
        """which finds programs on PATH."""
        assert CommandRunner().which("definitely-not-a-real-program-xyz") is None


class TestDryRunRunner:
    """Tests for printing commands instead of running them."""

    def test_changing_command_echoed(self, tmp_path):
        """A changing command is echoed, reported as successful and never executed."""
        marker = tmp_path / "ran"
        echoed = []

        result = DryRunRunner(echo=echoed.append).run(
            [sys.executable, "-c", f"open({str(marker)!r}, 'w')", "two words"]
        )

        assert result.returncode == 0
        assert result.stdout == ""
        assert not marker.exists()
        assert len(echoed) == 1
        assert echoed[0].endswith("'two words'")

    def test_read_only_command_runs(self):
        """Read-only queries still execute so the plan reflects the real system."""
        echoed = []

        result = DryRunRunner(echo=echoed.append).run([sys.executable, "-c", "print('live')"], mutates=False)

        assert result.stdout == "live\n"
        assert echoed == []
