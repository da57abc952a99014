"""
Upgrade Orchestrator - Moves an installation to a new release

Coordinates the entire upgrade workflow:
- Resolving the target version and fetching the verified archive
- Confirming with the operator
- Maintenance mode, backups, service stop and cron suspension
- Swapping the installation tree and fixing permissions
- Restarting the service, running occ upgrade and restoring cron

States only move forward. A fatal error halts the run in the state it
occurred in. There is no automatic rollback: once maintenance mode is on,
nothing is reverted after a failure so the operator can inspect the
installation as it was left.
"""
import shlex
import signal
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import structlog

from nextcloud_upgrade.config import Settings
from nextcloud_upgrade.errors import SEVERITY_CRITICAL, MigrationError, ServiceControlError, UpgradeError
from nextcloud_upgrade.logging_config import bind_run_context, clear_run_context
from nextcloud_upgrade.models import (
    Artifact,
    BackupRecord,
    DatabaseCredentials,
    DatabaseType,
    InstallationState,
    UpgradeOutcome,
    UpgradeResult,
    UpgradeState,
    UPGRADE_SEQUENCE,
)
from nextcloud_upgrade.occ import NextcloudOcc
from nextcloud_upgrade.process import CommandRunner, DryRunRunner
from nextcloud_upgrade.reporting import StatusReporter
from nextcloud_upgrade.services.artifact_fetcher import ArtifactFetcher, archive_url, digest_url
from nextcloud_upgrade.services.backup_coordinator import BackupCoordinator, make_label
from nextcloud_upgrade.services.crontab import CrontabStore, default_job_line
from nextcloud_upgrade.services.installation_swapper import InstallationSwapper
from nextcloud_upgrade.services.service_control import ServiceController, create_controller
from nextcloud_upgrade.services.version_resolver import (
    STATUS_NO_UPDATE,
    VersionResolver,
)

logger = structlog.get_logger(__name__)

ConfirmCallback = Callable[[str, str], bool]


@contextmanager
def interrupts_as_keyboard_interrupt() -> Iterator[None]:
    """
    Turn SIGTERM into KeyboardInterrupt for the duration of the block

    Scoped resources (credential files, extraction directories) are released
    by finally blocks, which only run if the signal surfaces as an exception.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _raise(signum, frame):
        raise KeyboardInterrupt(f"received {signal.Signals(signum).name}")

    previous = signal.signal(signal.SIGTERM, _raise)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def runner_for(settings: Settings, reporter: StatusReporter) -> CommandRunner:
    """The command runner for a run; a dry run prints changing commands"""
    if settings.dry_run:
        return DryRunRunner(echo=lambda command: reporter.plan(f"Would run: {command}"))
    return CommandRunner()


class UpgradeOrchestrator:
    """
    Runs one upgrade of one installation

    Collaborators are injected so each can be replaced in tests; use
    from_settings() to build the production wiring.
    """

    def __init__(
        self,
        settings: Settings,
        occ: NextcloudOcc,
        resolver: VersionResolver,
        fetcher: ArtifactFetcher,
        backups: BackupCoordinator,
        swapper: InstallationSwapper,
        controller: ServiceController,
        crontab: CrontabStore,
        reporter: Optional[StatusReporter] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.settings = settings
        self.occ = occ
        self.resolver = resolver
        self.fetcher = fetcher
        self.backups = backups
        self.swapper = swapper
        self.controller = controller
        self.crontab = crontab
        self.reporter = reporter or StatusReporter()
        self.confirm = confirm or self._ask_operator
        self.state = UpgradeState.IDLE
        self._from_version: Optional[str] = None
        self._to_version: Optional[str] = None
        self._backup: Optional[BackupRecord] = None
        self.dry_run = settings.dry_run

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        reporter: Optional[StatusReporter] = None,
        confirm: Optional[ConfirmCallback] = None,
        runner: Optional[CommandRunner] = None,
    ) -> "UpgradeOrchestrator":
        """Wire the production collaborators from settings"""
        reporter = reporter or StatusReporter()
        runner = runner or runner_for(settings, reporter)
        occ = NextcloudOcc(settings.nextcloud_path, settings.web_user, runner)
        return cls(
            settings=settings,
            occ=occ,
            resolver=VersionResolver(settings.update_server_url, runtime=occ.runtime_version()),
            fetcher=ArtifactFetcher(
                settings.release_base_url,
                settings.download_dir,
                force_download=settings.force_download,
            ),
            backups=BackupCoordinator(runner, min_free_space_mb=settings.min_free_space_mb),
            swapper=InstallationSwapper(),
            controller=create_controller(settings, runner),
            crontab=CrontabStore(settings.web_user, runner),
            reporter=reporter,
            confirm=confirm,
        )

    def _ask_operator(self, current_version: str, new_version: str) -> bool:
        return self.reporter.confirm("Do you want to proceed with the upgrade?")

    def _enter(self, state: UpgradeState) -> None:
        if UPGRADE_SEQUENCE.index(state) <= UPGRADE_SEQUENCE.index(self.state):
            raise RuntimeError(f"Illegal transition {self.state.value} -> {state.value}")
        self.state = state
        logger.info("state_entered", state=state.value)

    def run(self, explicit_version: Optional[str] = None) -> UpgradeResult:
        """
        Run the upgrade

        Args:
            explicit_version: Version to install instead of asking the update server

        Returns:
            UpgradeResult; fatal errors are reported through it, not raised
        """
        self.state = UpgradeState.IDLE
        self._from_version = None
        self._to_version = None
        self._backup = None

        bind_run_context(nextcloud_path=str(self.settings.nextcloud_path))
        try:
            with interrupts_as_keyboard_interrupt():
                return self._run(explicit_version)
        except UpgradeError as e:
            return self._fail(e)
        except KeyboardInterrupt:
            logger.error("upgrade_interrupted", state=self.state.value)
            self.reporter.error(f"Upgrade interrupted during '{self.state.value}'")
            raise
        except Exception as e:
            logger.exception("upgrade_unexpected_error", state=self.state.value)
            error = UpgradeError(f"Unexpected error: {e}")
            error.__cause__ = e
            return self._fail(error)
        finally:
            clear_run_context()

    def _fail(self, error: UpgradeError) -> UpgradeResult:
        if error.state is None:
            error.state = self.state
        failed_state = error.state

        log = logger.critical if error.severity == SEVERITY_CRITICAL else logger.error
        log(
            "upgrade_failed",
            state=failed_state.value,
            error_type=type(error).__name__,
            error=str(error),
        )
        self.reporter.error(f"{error} (failed during '{failed_state.value}')")
        if isinstance(error, MigrationError) and error.log_path:
            self.reporter.error(f"Could not upgrade Nextcloud, check {error.log_path} for more information")
        if UPGRADE_SEQUENCE.index(failed_state) >= UPGRADE_SEQUENCE.index(UpgradeState.MAINTENANCE_ON):
            self.reporter.warning("Maintenance mode is still on; inspect the installation before turning it off")
        self.reporter.error("Upgrade failed")

        self.state = UpgradeState.ABORTED
        return UpgradeResult(
            outcome=UpgradeOutcome.FAILED,
            state=UpgradeState.ABORTED,
            from_version=self._from_version,
            to_version=self._to_version,
            backup=self._backup,
            error=error,
        )

    def _run(self, explicit_version: Optional[str]) -> UpgradeResult:
        settings = self.settings

        # Resolving
        self._enter(UpgradeState.RESOLVING)
        self.reporter.info("Checking for updates")
        installation = self.occ.installation_state()
        self._from_version = installation.current_version
        resolution = self.resolver.resolve(installation, explicit_version)

        if not resolution.should_upgrade:
            if resolution.status == STATUS_NO_UPDATE:
                self.reporter.warning("No update available at this time")
                outcome = UpgradeOutcome.NO_UPDATE
            else:
                self.reporter.success("You are already on the latest version")
                outcome = UpgradeOutcome.UP_TO_DATE
            return UpgradeResult(
                outcome=outcome,
                state=self.state,
                from_version=installation.current_version,
                to_version=installation.current_version,
            )

        target = resolution.target
        self._to_version = target.resolved_version
        bind_run_context(target_version=target.resolved_version)
        self.reporter.success(f"New version '{target.resolved_version}' available")

        # Fetching
        self._enter(UpgradeState.FETCHING)
        if self.dry_run:
            artifact = self.fetcher.plan(target, settings.download_format, settings.checksum_type)
            url = archive_url(self.fetcher.release_base_url, target.download_version, artifact.format)
            self.reporter.plan(
                f"Would download {url} and verify it against {digest_url(url, artifact.digest_algorithm)}"
            )
        else:
            self.reporter.info(f"Downloading Nextcloud '{target.resolved_version}'")
            artifact = self.fetcher.fetch(target, settings.download_format, settings.checksum_type)
            self.reporter.success(f"Verified {settings.checksum_type.value} checksum of {artifact.archive_path.name}")

        # Confirming with the operator
        self._enter(UpgradeState.CONFIRMING_WITH_USER)
        self.reporter.info(f"Current version: {installation.current_version}")
        self.reporter.info(f"New version available: {target.resolved_version}")
        if self.dry_run:
            self.reporter.plan("Would ask whether to proceed")
        elif not self.confirm(installation.current_version, target.resolved_version):
            self.reporter.info("Upgrade aborted by user.")
            logger.info("upgrade_declined", state=self.state.value)
            self.state = UpgradeState.ABORTED
            return UpgradeResult(
                outcome=UpgradeOutcome.DECLINED,
                state=UpgradeState.ABORTED,
                from_version=installation.current_version,
                to_version=target.resolved_version,
            )
        else:
            self.reporter.info("Proceeding with upgrade.")
        creds = None if settings.skip_backup else self.occ.database_credentials()
        # nothing has changed yet; a missing dump utility must fail here
        if creds is not None:
            self.backups.check_tools(creds)

        # Maintenance mode on
        self._enter(UpgradeState.MAINTENANCE_ON)
        self.reporter.info("Enabling maintenance mode")
        if not self.occ.maintenance(True):
            raise ServiceControlError("Could not enable maintenance mode")
        self._settle(settings.wait_before_backup)

        # Backing up
        self._enter(UpgradeState.BACKING_UP)
        self._backup = self._take_backup(installation, creds)

        # Service stopped
        self._enter(UpgradeState.SERVICE_STOPPED)
        self.reporter.info("Stopping web server")
        if not self.controller.stop():
            raise ServiceControlError(
                f"Failed to stop web server using command: {' '.join(self.controller.stop_command())}. Aborting upgrade."
            )

        # Cron suspended
        self._enter(UpgradeState.CRON_SUSPENDED)
        self.reporter.info("Disabling cron job")
        cron_snapshot = self.crontab.suspend()

        # Swapped
        self._enter(UpgradeState.SWAPPED)
        if self.dry_run:
            self.reporter.plan(
                f"Would move '{settings.nextcloud_path}' to '{settings.old_install_path}', install "
                f"{artifact.archive_path.name} in its place and restore '{settings.config_file}'"
            )
        else:
            self.reporter.info(
                f"Replacing '{settings.nextcloud_path}' (previous tree kept at '{settings.old_install_path}')"
            )
            self.swapper.swap(artifact, settings.nextcloud_path, settings.config_file)

        # Permissions fixed
        self._enter(UpgradeState.PERMISSIONS_FIXED)
        if self.dry_run:
            self.reporter.plan(
                f"Would hand '{settings.nextcloud_path}' to {settings.web_user}:{settings.owner_group} "
                "(directories 0750, files 0640)"
            )
        else:
            self.reporter.info("Fixing permissions")
            self.swapper.fix_permissions(settings.nextcloud_path, settings.web_user, settings.owner_group)

        # Service started
        self._enter(UpgradeState.SERVICE_STARTED)
        self.reporter.info("Starting web server")
        if not self.controller.start():
            logger.warning("service_start_failed", service=self.controller.service)
            self.reporter.warning(
                f"Failed to start web server using command: {' '.join(self.controller.start_command())}. "
                "Please start the web server manually."
            )
        self._settle(settings.wait_after_server_start)

        # Migrating
        self._enter(UpgradeState.MIGRATING)
        if self.dry_run:
            self.reporter.plan(
                f"Would run: {shlex.join(self.occ.upgrade_command())} > {settings.upgrade_log_path}"
            )
        else:
            self.reporter.info("Upgrading Nextcloud")
            self.occ.upgrade(settings.upgrade_log_path)

        # Cron restored
        self._enter(UpgradeState.CRON_RESTORED)
        self.reporter.info("Re-enabling cron job")
        self.crontab.restore(
            default_job_line(str(settings.nextcloud_path), settings.cron_interval_minutes),
            snapshot=cron_snapshot,
        )

        # Maintenance mode off
        self._enter(UpgradeState.MAINTENANCE_OFF)
        if not self.occ.maintenance(False):
            raise ServiceControlError("Could not disable maintenance mode")

        self._cleanup(artifact)

        self._enter(UpgradeState.DONE)
        if self.dry_run:
            logger.info("dry_run_complete", from_version=installation.current_version, to_version=target.resolved_version)
            self.reporter.success("Dry run complete; nothing was changed")
            return UpgradeResult(
                outcome=UpgradeOutcome.DRY_RUN,
                state=self.state,
                from_version=installation.current_version,
                to_version=target.resolved_version,
            )
        logger.info("upgrade_complete", from_version=installation.current_version, to_version=target.resolved_version)
        self.reporter.info("Please check the Nextcloud web interface to make sure everything is working correctly")
        self.reporter.success("Upgrade complete")
        return UpgradeResult(
            outcome=UpgradeOutcome.UPGRADED,
            state=self.state,
            from_version=installation.current_version,
            to_version=target.resolved_version,
            backup=self._backup,
        )

    def _take_backup(
        self,
        installation: InstallationState,
        creds: Optional[DatabaseCredentials],
    ) -> Optional[BackupRecord]:
        settings = self.settings
        if creds is None:
            logger.warning("backup_skipped")
            self.reporter.warning("Skipping database and config backup")
            return None

        self.backups.check_space(settings.backup_path)
        label = make_label(installation.current_version)
        data_dir = self.occ.data_directory() if DatabaseType.parse(creds.type) is DatabaseType.SQLITE else None

        if self.dry_run:
            planned = self.backups.plan(settings.backup_path, label)
            self.reporter.plan(
                f"Would dump the {creds.type} database '{creds.name}' to '{planned.database_dump_path}'"
            )
            self.reporter.plan(f"Would copy '{settings.config_dir}' to '{planned.config_dir_copy_path}'")
            return None

        self.reporter.info("Backing up database and config folder")
        record = self.backups.backup(
            creds,
            settings.config_dir,
            settings.backup_path,
            label,
            data_dir=data_dir,
        )
        self.reporter.success(f"Database backup written to '{record.database_dump_path}'")
        self.reporter.success(f"Config folder copied to '{record.config_dir_copy_path}'")
        return record

    def _settle(self, seconds: int) -> None:
        if not self.dry_run:
            self.reporter.countdown(seconds)
        elif seconds > 0:
            self.reporter.plan(f"Would wait {seconds} seconds")

    def _cleanup(self, artifact: Artifact) -> None:
        if self.dry_run:
            if self.settings.cleanup:
                self.reporter.plan(f"Would delete {artifact.archive_path.name} and its digest")
            return
        if self.settings.cleanup:
            self.fetcher.discard(artifact)
        else:
            logger.info("artifact_kept", archive=str(artifact.archive_path))
