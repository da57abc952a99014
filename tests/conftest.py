"""
Shared test fixtures for nextcloud-upgrade tests.

Provides fixtures for:
- Settings pointing at temporary directories
- A recording command runner standing in for subprocesses
- A status reporter writing to memory
- Sample installation snapshots and credentials
"""
import io
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional

import pytest
from rich.console import Console

# Ensure src/ is on sys.path for direct pytest runs
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from nextcloud_upgrade.config import Settings
from nextcloud_upgrade.models import DatabaseCredentials, InstallationState
from nextcloud_upgrade.process import CommandRunner
from nextcloud_upgrade.reporting import StatusReporter


def completed(argv, returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    """Build the result a handler returns for a fake command"""
    return subprocess.CompletedProcess(list(argv), returncode, stdout, stderr)


class FakeRunner(CommandRunner):
    """
    Command runner that records calls instead of spawning processes

    handler(argv, input=..., env=..., stdout=...) may return a
    CompletedProcess; returning None means success with empty output.
    """

    def __init__(self, handler: Optional[Callable] = None, missing: Optional[List[str]] = None):
        self.handler = handler
        self.missing = set(missing or [])
        self.calls: List[SimpleNamespace] = []

    def run(self, argv, *, input=None, env=None, stdout=subprocess.PIPE, cwd=None, mutates=True):
        argv = list(argv)
        self.calls.append(SimpleNamespace(argv=argv, input=input, env=env, stdout=stdout, mutates=mutates))
        if self.handler is not None:
            result = self.handler(argv, input=input, env=env, stdout=stdout)
            if result is not None:
                return result
        return completed(argv)

    def which(self, program: str) -> Optional[str]:
        if program in self.missing:
            return None
        return f"/usr/bin/{program}"

    def argvs(self) -> List[List[str]]:
        return [call.argv for call in self.calls]


@pytest.fixture
def fake_runner():
    """Recording runner where every command succeeds."""
    return FakeRunner()


@pytest.fixture
def console_output():
    """In-memory buffer receiving status lines."""
    return io.StringIO()


@pytest.fixture
def reporter(console_output):
    """Status reporter writing to memory and never sleeping."""
    console = Console(file=console_output, width=200, force_terminal=False, color_system=None)
    return StatusReporter(console=console, sleep=lambda seconds: None)


@pytest.fixture
def install_dir(tmp_path):
    """A minimal Nextcloud installation tree."""
    root = tmp_path / "www" / "nextcloud"
    (root / "config").mkdir(parents=True)
    (root / "config" / "config.php").write_text("<?php $CONFIG = array('instanceid' => 'live');\n")
    (root / "version.php").write_text(
        "<?php\n"
        "$OC_Version = array(29,0,0,19);\n"
        "$OC_VersionString = '29.0.0';\n"
        "$OC_Channel = 'stable';\n"
        "$OC_Build = '2024-04-24T13:02:36+00:00 a1b2c3';\n"
    )
    (root / "occ").write_text("<?php\n")
    return root


@pytest.fixture
def settings(tmp_path, install_dir):
    """Settings confined to the temporary directory."""
    backups = tmp_path / "backups"
    backups.mkdir()
    return Settings(
        _env_file=None,
        nextcloud_path=install_dir,
        backup_path=backups,
        download_dir=tmp_path / "downloads",
        upgrade_log_path=tmp_path / "logs" / "nextcloud_upgrade.log",
        wait_before_backup=0,
        wait_after_server_start=0,
        min_free_space_mb=0,
    )


@pytest.fixture
def installation(install_dir):
    """Snapshot of an installation running 29.0.0."""
    return InstallationState(
        path=install_dir,
        current_version="29.0.0",
        channel="stable",
        build_id="2024-04-24T13:02:36+00:00 a1b2c3",
    )


@pytest.fixture
def mysql_credentials():
    return DatabaseCredentials(
        type="mysql",
        host="localhost",
        name="nextcloud",
        user="ncuser",
        password='s3cr"et\\pw',
        utf8mb4=True,
    )
