"""
Pre-flight checks run before an upgrade touches anything
"""
import os
from typing import Callable, List, Optional

import structlog

from nextcloud_upgrade.config import Settings
from nextcloud_upgrade.errors import PreflightError
from nextcloud_upgrade.process import CommandRunner

logger = structlog.get_logger(__name__)

REQUIRED_PROGRAMS = ["php", "sudo", "crontab"]


def run_preflight(
    settings: Settings,
    service_program: str,
    runner: Optional[CommandRunner] = None,
    geteuid: Callable[[], int] = os.geteuid,
) -> None:
    """
    Check privileges, tools and paths

    Raises:
        PreflightError: On the first missing requirement
    """
    runner = runner or CommandRunner()

    if geteuid() != 0:
        raise PreflightError("Please run as root")

    missing: List[str] = [
        program for program in REQUIRED_PROGRAMS + [service_program] if not runner.which(program)
    ]
    if missing:
        raise PreflightError(f"Required programs not found: {', '.join(missing)}")

    if not settings.nextcloud_path.is_dir():
        raise PreflightError(f"Nextcloud path '{settings.nextcloud_path}' does not exist")
    if not settings.config_file.is_file():
        raise PreflightError(f"Nextcloud is not installed in '{settings.nextcloud_path}' (no config/config.php)")
    if not settings.skip_backup and not settings.backup_path.is_dir():
        raise PreflightError(f"Backup path '{settings.backup_path}' does not exist")
    if not settings.backup_path.is_absolute():
        raise PreflightError(f"Backup path '{settings.backup_path}' must be absolute")

    settings.download_dir.mkdir(parents=True, exist_ok=True)
    logger.info("preflight_passed", nextcloud_path=str(settings.nextcloud_path))
