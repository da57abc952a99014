"""
Nextcloud Adapter - Reads live configuration and drives occ

Wraps ``sudo -u <web user> php <install>/occ`` for configuration lookups,
maintenance mode and the in-place upgrade, and parses ``version.php`` for the
release channel and build token.
"""
import re
from pathlib import Path
from typing import Optional, Tuple

import structlog

from nextcloud_upgrade.errors import ConfigError, MigrationError
from nextcloud_upgrade.models import DatabaseCredentials, InstallationState
from nextcloud_upgrade.process import CommandRunner

logger = structlog.get_logger(__name__)

_MISSING = object()

VERSION_PHP_PATTERN = re.compile(r"^\s*\$(OC_\w+)\s*=\s*'([^']*)'\s*;", re.MULTILINE)
TRUE_VALUES = ("true", "1", "yes", "on")


class NextcloudOcc:
    """
    Access to a Nextcloud installation through its occ console

    Args:
        install_path: Installation directory containing occ
        web_user: Account occ runs as
        runner: Command runner used for every invocation
    """

    def __init__(self, install_path: Path, web_user: str, runner: Optional[CommandRunner] = None):
        self.install_path = Path(install_path)
        self.web_user = web_user
        self.runner = runner or CommandRunner()

    def _occ(self, *args: str) -> list:
        return ["sudo", "-u", self.web_user, "php", str(self.install_path / "occ"), *args]

    def get(self, key: str, default=_MISSING) -> str:
        """
        Read a system configuration value

        Raises:
            ConfigError: If the key is unset and no default was given
        """
        result = self.runner.run(self._occ("config:system:get", key), mutates=False)
        value = (result.stdout or "").strip()
        if result.returncode != 0 or value == "":
            if default is not _MISSING:
                return default
            raise ConfigError(f"Could not read config value '{key}' from {self.install_path}")
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default="")
        if value == "":
            return default
        return value.lower() in TRUE_VALUES

    def database_credentials(self) -> DatabaseCredentials:
        """Collect the database settings needed for a dump"""
        return DatabaseCredentials(
            type=self.get("dbtype"),
            host=self.get("dbhost", default="localhost"),
            name=self.get("dbname"),
            user=self.get("dbuser", default=""),
            password=self.get("dbpassword", default=""),
            utf8mb4=self.get_bool("mysql.utf8mb4"),
        )

    def data_directory(self) -> Path:
        return Path(self.get("datadirectory", default=str(self.install_path / "data")))

    def read_version_info(self) -> Tuple[str, str]:
        """
        Parse release channel and build token from version.php

        Returns:
            (channel, build) tuple

        Raises:
            ConfigError: If version.php is unreadable
        """
        version_file = self.install_path / "version.php"
        try:
            text = version_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Could not read {version_file}: {e}") from e

        values = dict(VERSION_PHP_PATTERN.findall(text))
        return values.get("OC_Channel", "stable"), values.get("OC_Build", "")

    def installation_state(self) -> InstallationState:
        """Take the snapshot a run works from"""
        channel, build = self.read_version_info()
        state = InstallationState(
            path=self.install_path,
            current_version=self.get("version"),
            channel=channel,
            build_id=build,
        )
        logger.info(
            "installation_state_read",
            path=str(state.path),
            version=state.current_version,
            channel=state.channel,
        )
        return state

    def runtime_version(self) -> Optional[Tuple[int, int, int]]:
        """Return the PHP (major, minor, release) triple, or None if php is unusable"""
        result = self.runner.run(
            ["php", "-r", 'echo PHP_MAJOR_VERSION.".".PHP_MINOR_VERSION.".".PHP_RELEASE_VERSION;'],
            mutates=False,
        )
        if result.returncode != 0:
            return None
        match = re.fullmatch(r"(\d+)\.(\d+)\.(\d+)", (result.stdout or "").strip())
        if not match:
            return None
        return int(match.group(1)), int(match.group(2)), int(match.group(3))

    def maintenance(self, enabled: bool) -> bool:
        """Switch maintenance mode; returns True on success"""
        result = self.runner.run(self._occ("maintenance:mode", "--on" if enabled else "--off"))
        logger.info("maintenance_mode_set", enabled=enabled, returncode=result.returncode)
        return result.returncode == 0

    def upgrade_command(self) -> list:
        return self._occ("upgrade")

    def upgrade(self, log_path: Path) -> None:
        """
        Run occ upgrade, capturing its output to log_path

        Raises:
            MigrationError: If occ upgrade exits non-zero
        """
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "w", encoding="utf-8") as log:
            result = self.runner.run(self.upgrade_command(), stdout=log)
            if result.stderr:
                log.write(result.stderr)

        if result.returncode != 0:
            raise MigrationError(
                f"occ upgrade exited with status {result.returncode}",
                log_path=str(log_path),
            )
        logger.info("occ_upgrade_complete", log_path=str(log_path))
