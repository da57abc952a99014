"""
Backup Coordinator - Captures database and configuration before an upgrade

Manages the backups taken before any destructive step, including:
- Dumping MySQL/MariaDB, PostgreSQL or SQLite databases
- Compressing the dump in place
- Copying the configuration directory
- Keeping database secrets off command lines and out of the parent environment

Nothing here touches the live installation, so a backup can be retried.
"""
import gzip
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

import structlog

from nextcloud_upgrade.errors import BackupError
from nextcloud_upgrade.models import BackupRecord, DatabaseCredentials, DatabaseType
from nextcloud_upgrade.process import CommandRunner

logger = structlog.get_logger(__name__)

DEFAULT_MIN_FREE_SPACE_MB = 500
DUMP_PREFIX = "nextcloud-sqlbkp"
CONFIG_PREFIX = "nextcloud-dirbkp"
DUMP_PROGRAMS = {DatabaseType.MYSQL: "mysqldump", DatabaseType.PGSQL: "pg_dump"}


def make_label(version: str, now: Optional[datetime] = None) -> str:
    """Build the label that names every file of one backup"""
    timestamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    safe_version = version.replace("/", "_").replace("\\", "_")
    return f"{safe_version}_{timestamp}"


def _option_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@contextmanager
def credentials_file(creds: DatabaseCredentials, directory: Optional[Path] = None) -> Iterator[Path]:
    """
    Write a MySQL client option file readable only by the owner

    The file is removed when the block exits, whether it completes, raises
    or is interrupted.
    """
    fd, name = tempfile.mkstemp(prefix="nc-upgrade-", suffix=".cnf", dir=directory)
    path = Path(name)
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write("[client]\n")
            f.write(f"user={_option_value(creds.user)}\n")
            f.write(f"password={_option_value(creds.password)}\n")
            f.write(f"host={_option_value(creds.host)}\n")
        yield path
    finally:
        path.unlink(missing_ok=True)


@contextmanager
def password_environment(password: str) -> Iterator[Dict[str, str]]:
    """
    Build a child-process environment carrying PGPASSWORD

    The parent environment is never modified; the mapping holding the
    password is emptied when the block exits.
    """
    env = dict(os.environ)
    env["PGPASSWORD"] = password
    try:
        yield env
    finally:
        env.pop("PGPASSWORD", None)
        env.clear()


class BackupCoordinator:
    """
    Takes the database dump and configuration copy for a run

    Args:
        runner: Command runner for the dump utilities
        min_free_space_mb: Free space required in the backup directory
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        min_free_space_mb: int = DEFAULT_MIN_FREE_SPACE_MB,
    ):
        self.runner = runner or CommandRunner()
        self.min_free_space_mb = min_free_space_mb

    def _get_free_space_mb(self, path: Path) -> int:
        try:
            stat = os.statvfs(path)
            return (stat.f_bavail * stat.f_frsize) // (1024 * 1024)
        except OSError:
            return 0

    def check_space(self, backup_root: Path) -> None:
        """
        Raises:
            BackupError: If backup_root has less than min_free_space_mb free
        """
        free_space = self._get_free_space_mb(Path(backup_root))
        if free_space < self.min_free_space_mb:
            raise BackupError(
                f"Insufficient disk space in {backup_root}: {free_space}MB free, "
                f"need at least {self.min_free_space_mb}MB"
            )

    def _require(self, program: str) -> None:
        if not self.runner.which(program):
            raise BackupError(f"'{program}' is required but not found")

    def check_tools(self, creds: DatabaseCredentials) -> None:
        """
        Make sure the dump utility for the database type is installed

        Unknown types pass here and are refused by dump_database.

        Raises:
            BackupError: If the dump utility is not on PATH
        """
        program = DUMP_PROGRAMS.get(DatabaseType.parse(creds.type))
        if program:
            self._require(program)

    def _dump_mysql(self, creds: DatabaseCredentials, output: Path) -> None:
        self._require(DUMP_PROGRAMS[DatabaseType.MYSQL])
        with credentials_file(creds) as defaults_file:
            argv = [
                "mysqldump",
                f"--defaults-extra-file={defaults_file}",
                "--single-transaction",
            ]
            if creds.utf8mb4:
                argv.append("--default-character-set=utf8mb4")
            argv.append(creds.name)
            with open(output, "w", encoding="utf-8") as out:
                result = self.runner.run(argv, stdout=out)
        if result.returncode != 0:
            raise BackupError(f"MySQL backup failed: {(result.stderr or '').strip()}")

    def _dump_pgsql(self, creds: DatabaseCredentials, output: Path) -> None:
        self._require(DUMP_PROGRAMS[DatabaseType.PGSQL])
        with password_environment(creds.password) as env:
            result = self.runner.run(
                ["pg_dump", creds.name, "-h", creds.host, "-U", creds.user, "-f", str(output)],
                env=env,
            )
        if result.returncode != 0:
            raise BackupError(f"PostgreSQL backup failed: {(result.stderr or '').strip()}")

    def _dump_sqlite(self, creds: DatabaseCredentials, output: Path, data_dir: Optional[Path]) -> None:
        if data_dir is None:
            raise BackupError("SQLite backup needs the Nextcloud data directory")
        source = Path(data_dir) / f"{creds.name}.db"
        try:
            shutil.copy2(source, output)
        except OSError as e:
            raise BackupError(f"SQLite backup of {source} failed: {e}") from e

    def dump_database(
        self,
        creds: DatabaseCredentials,
        backup_root: Path,
        label: str,
        data_dir: Optional[Path] = None,
    ) -> Path:
        """
        Dump and gzip the database

        The dump is written under a temporary name and only renamed once
        complete; a failed dump leaves neither a .bak nor a .gz behind.

        Returns:
            Path of the compressed dump

        Raises:
            BackupError: If the database type is unsupported or the dump fails
        """
        db_type = DatabaseType.parse(creds.type)
        if db_type is None:
            raise BackupError(f"Unsupported database type: {creds.type}")

        backup_root = Path(backup_root)
        dump_path = backup_root / f"{DUMP_PREFIX}_{label}.bak"
        partial = dump_path.with_name(dump_path.name + ".part")
        logger.info("dumping_database", type=db_type.value, name=creds.name, output=str(dump_path))

        try:
            if db_type is DatabaseType.MYSQL:
                self._dump_mysql(creds, partial)
            elif db_type is DatabaseType.PGSQL:
                self._dump_pgsql(creds, partial)
            else:
                self._dump_sqlite(creds, partial, data_dir)
            partial.replace(dump_path)
        except OSError as e:
            raise BackupError(f"Database backup failed: {e}") from e
        finally:
            partial.unlink(missing_ok=True)

        return self._compress(dump_path)

    def _compress(self, dump_path: Path) -> Path:
        compressed = dump_path.with_name(dump_path.name + ".gz")
        partial = compressed.with_name(compressed.name + ".part")
        logger.info("compressing_dump", path=str(dump_path))
        try:
            with open(dump_path, "rb") as src, gzip.open(partial, "wb") as dst:
                shutil.copyfileobj(src, dst)
            partial.replace(compressed)
            dump_path.unlink()
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise BackupError(f"Could not compress {dump_path}: {e}") from e
        return compressed

    def copy_config(self, config_dir: Path, backup_root: Path, label: str) -> Path:
        """
        Copy the configuration directory under backup_root

        Raises:
            BackupError: If the copy fails
        """
        destination = Path(backup_root) / f"{CONFIG_PREFIX}_{label}"
        staging = destination.with_name(destination.name + ".part")
        logger.info("copying_config", source=str(config_dir), destination=str(destination))
        try:
            shutil.rmtree(staging, ignore_errors=True)
            shutil.copytree(config_dir, staging, symlinks=True)
            if destination.exists():
                shutil.rmtree(destination)
            staging.rename(destination)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Config backup of {config_dir} failed: {e}") from e
        return destination

    def unique_label(self, backup_root: Path, label: str) -> str:
        """
        Return label, suffixed with -1, -2, ... while files of an earlier
        backup already use it
        """
        backup_root = Path(backup_root)
        candidate = label
        counter = 0
        while any(
            path.exists()
            for path in (
                backup_root / f"{DUMP_PREFIX}_{candidate}.bak",
                backup_root / f"{DUMP_PREFIX}_{candidate}.bak.gz",
                backup_root / f"{CONFIG_PREFIX}_{candidate}",
            )
        ):
            counter += 1
            candidate = f"{label}-{counter}"
        if candidate != label:
            logger.info("backup_label_taken", label=label, using=candidate)
        return candidate

    def plan(self, backup_root: Path, label: str) -> BackupRecord:
        """Return the record backup() would produce, without writing anything"""
        backup_root = Path(backup_root)
        label = self.unique_label(backup_root, label)
        return BackupRecord(
            database_dump_path=backup_root / f"{DUMP_PREFIX}_{label}.bak.gz",
            config_dir_copy_path=backup_root / f"{CONFIG_PREFIX}_{label}",
            timestamp_label=label,
        )

    def backup(
        self,
        creds: DatabaseCredentials,
        config_dir: Path,
        backup_root: Path,
        label: str,
        data_dir: Optional[Path] = None,
    ) -> BackupRecord:
        """
        Back up database and configuration

        Args:
            creds: Live database credentials
            config_dir: Nextcloud config directory
            backup_root: Directory receiving backups
            label: Label shared by every file of this backup; an earlier
                backup with the same label is kept and this one gets a suffix
            data_dir: Nextcloud data directory (SQLite only)

        Returns:
            BackupRecord of the files written

        Raises:
            BackupError: If any part of the backup fails
        """
        label = self.unique_label(backup_root, label)
        dump = self.dump_database(creds, backup_root, label, data_dir=data_dir)
        config_copy = self.copy_config(config_dir, backup_root, label)

        logger.info("backup_created", dump=str(dump), config=str(config_copy), label=label)
        return BackupRecord(
            database_dump_path=dump,
            config_dir_copy_path=config_copy,
            timestamp_label=label,
        )
