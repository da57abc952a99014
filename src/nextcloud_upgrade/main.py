"""
Nextcloud Upgrade - Command line entry point
"""
from pathlib import Path
from typing import Optional

import structlog
import typer
from pydantic import ValidationError
from rich.table import Table

from nextcloud_upgrade import __version__
from nextcloud_upgrade.config import Settings, get_settings
from nextcloud_upgrade.errors import UpgradeError
from nextcloud_upgrade.logging_config import setup_logging
from nextcloud_upgrade.models import ArchiveFormat, DigestAlgorithm
from nextcloud_upgrade.preflight import run_preflight
from nextcloud_upgrade.reporting import StatusReporter
from nextcloud_upgrade.services.orchestrator import UpgradeOrchestrator, runner_for
from nextcloud_upgrade.services.service_control import create_controller, required_program

logger = structlog.get_logger(__name__)

app = typer.Typer(
    add_completion=False,
    help="Upgrade a Nextcloud installation to the latest or a given version.",
)


def build_settings(overrides: dict) -> Settings:
    """Settings from the environment with command line overrides on top"""
    if not overrides:
        return get_settings()
    return Settings(**overrides)


def show_settings(reporter: StatusReporter, settings: Settings) -> None:
    table = Table(title="Effective settings")
    table.add_column("Setting")
    table.add_column("Value")
    for name, value in settings.model_dump(mode="json").items():
        table.add_row(name, str(value))
    reporter.console.print(table)


@app.command()
def upgrade(
    version: Optional[str] = typer.Argument(None, help="Version to install (default: what the update server offers)"),
    install_dir: Optional[Path] = typer.Option(None, "--install-dir", "-i", help="Nextcloud install directory"),
    backup_dir: Optional[Path] = typer.Option(None, "--backup-dir", "-b", help="Directory receiving backups"),
    web_user: Optional[str] = typer.Option(None, "--web-user", "-u", help="Account owning the installation"),
    web_service: Optional[str] = typer.Option(None, "--web-service", "-s", help="Web service to stop and start"),
    service_manager: Optional[str] = typer.Option(
        None, "--service-manager", help="monit, systemd, sysv or command"
    ),
    archive_format: Optional[ArchiveFormat] = typer.Option(None, "--format", help="Release archive format"),
    checksum: Optional[DigestAlgorithm] = typer.Option(None, "--checksum", help="Digest algorithm to verify with"),
    force_download: bool = typer.Option(False, "--force-download", "-f", help="Download even if the archive exists"),
    no_cleanup: bool = typer.Option(False, "--no-cleanup", help="Keep downloaded archives"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip database and config backups"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the commands that would run and change nothing"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    show_config: bool = typer.Option(False, "--show-config", "--debug", help="Print settings and exit"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Structured log level"),
) -> None:
    """Upgrade Nextcloud in place, with backups taken first."""
    reporter = StatusReporter()

    overrides = {
        "nextcloud_path": install_dir,
        "backup_path": backup_dir,
        "web_user": web_user,
        "web_service": web_service,
        "service_manager": service_manager,
        "download_format": archive_format,
        "checksum_type": checksum,
        "log_level": log_level.upper() if log_level else None,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if force_download:
        overrides["force_download"] = True
    if no_cleanup:
        overrides["cleanup"] = False
    if no_backup:
        overrides["skip_backup"] = True
    if dry_run:
        overrides["dry_run"] = True

    try:
        settings = build_settings(overrides)
    except ValidationError as e:
        reporter.error(f"Invalid settings: {e}")
        raise typer.Exit(code=1)

    if show_config:
        show_settings(reporter, settings)
        raise typer.Exit(code=0)

    setup_logging(settings.log_level, settings.json_logs, settings.log_file or None)
    reporter.banner(f"Nextcloud Upgrade Script {__version__}")

    runner = runner_for(settings, reporter)
    if settings.dry_run:
        reporter.plan("Dry run: commands that change the system are printed, not run")
    try:
        controller = create_controller(settings, runner)
        run_preflight(settings, required_program(controller), runner)
        orchestrator = UpgradeOrchestrator.from_settings(
            settings,
            reporter=reporter,
            confirm=(lambda current, new: True) if yes else None,
            runner=runner,
        )
    except UpgradeError as e:
        logger.error("preflight_failed", error=str(e))
        reporter.error(str(e))
        raise typer.Exit(code=1)

    try:
        result = orchestrator.run(version)
    except KeyboardInterrupt:
        reporter.error("Upgrade interrupted")
        raise typer.Exit(code=1)

    raise typer.Exit(code=result.exit_code)


def main() -> None:
    """Entry point for the console script"""
    app()


if __name__ == "__main__":
    main()
