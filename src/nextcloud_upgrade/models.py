"""
Upgrade Models - Value types shared by the upgrade components

Snapshots of the installation, the release being installed, the downloaded
artifact and the backups taken before any destructive step.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class ArchiveFormat(str, Enum):
    """Release archive formats published on the download server"""

    TAR_BZ2 = "tar.bz2"
    ZIP = "zip"


class DigestAlgorithm(str, Enum):
    """Digest files published next to each archive"""

    SHA256 = "sha256"
    MD5 = "md5"
    SHA512 = "sha512"


class DatabaseType(str, Enum):
    """Database backends a Nextcloud installation can run on"""

    MYSQL = "mysql"
    PGSQL = "pgsql"
    SQLITE = "sqlite"

    @classmethod
    def parse(cls, value: str) -> Optional["DatabaseType"]:
        """Map a dbtype config value to a member, or None if unsupported"""
        value = (value or "").strip().lower()
        if value in ("mysql", "mariadb"):
            return cls.MYSQL
        if value in ("pgsql", "postgres", "postgresql"):
            return cls.PGSQL
        if value in ("sqlite", "sqlite3"):
            return cls.SQLITE
        return None


class UpgradeState(str, Enum):
    """Orchestrator states, in the order they are entered"""

    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    CONFIRMING_WITH_USER = "confirming_with_user"
    MAINTENANCE_ON = "maintenance_on"
    BACKING_UP = "backing_up"
    SERVICE_STOPPED = "service_stopped"
    CRON_SUSPENDED = "cron_suspended"
    SWAPPED = "swapped"
    PERMISSIONS_FIXED = "permissions_fixed"
    SERVICE_STARTED = "service_started"
    MIGRATING = "migrating"
    CRON_RESTORED = "cron_restored"
    MAINTENANCE_OFF = "maintenance_off"
    DONE = "done"
    ABORTED = "aborted"


# Forward-only sequence; ABORTED may be entered from any non-terminal state
UPGRADE_SEQUENCE = [
    UpgradeState.IDLE,
    UpgradeState.RESOLVING,
    UpgradeState.FETCHING,
    UpgradeState.CONFIRMING_WITH_USER,
    UpgradeState.MAINTENANCE_ON,
    UpgradeState.BACKING_UP,
    UpgradeState.SERVICE_STOPPED,
    UpgradeState.CRON_SUSPENDED,
    UpgradeState.SWAPPED,
    UpgradeState.PERMISSIONS_FIXED,
    UpgradeState.SERVICE_STARTED,
    UpgradeState.MIGRATING,
    UpgradeState.CRON_RESTORED,
    UpgradeState.MAINTENANCE_OFF,
    UpgradeState.DONE,
]

TERMINAL_STATES = {UpgradeState.DONE, UpgradeState.ABORTED}


class UpgradeOutcome(str, Enum):
    """How a run ended"""

    UPGRADED = "upgraded"
    UP_TO_DATE = "up_to_date"
    NO_UPDATE = "no_update"
    DECLINED = "declined"
    DRY_RUN = "dry_run"
    FAILED = "failed"


def strip_build_revision(version: str) -> str:
    """
    Drop the build revision from a four component version

    The update server reports versions like "30.0.6.2" while the release
    archives are named after the first three components only.
    """
    parts = version.split(".")
    if len(parts) == 4:
        return ".".join(parts[:3])
    return version


@dataclass(frozen=True)
class InstallationState:
    """Snapshot of the installation taken once at the start of a run"""

    path: Path
    current_version: str
    channel: str
    build_id: str


@dataclass(frozen=True)
class ReleaseTarget:
    """The release a run upgrades to"""

    requested_version: Optional[str]
    resolved_version: str
    download_version: str

    @classmethod
    def from_resolved(cls, resolved_version: str, requested_version: Optional[str] = None) -> "ReleaseTarget":
        return cls(
            requested_version=requested_version,
            resolved_version=resolved_version,
            download_version=strip_build_revision(resolved_version),
        )


@dataclass(frozen=True)
class Artifact:
    """A downloaded and verified release archive"""

    archive_path: Path
    digest_path: Path
    format: ArchiveFormat
    digest_algorithm: DigestAlgorithm


@dataclass(frozen=True)
class DatabaseCredentials:
    """Database connection settings read from the live configuration"""

    type: str
    host: str
    name: str
    user: str
    password: str = field(repr=False)
    utf8mb4: bool = False


@dataclass(frozen=True)
class BackupRecord:
    """Locations of the backups taken before the swap"""

    database_dump_path: Optional[Path]
    config_dir_copy_path: Optional[Path]
    timestamp_label: str


@dataclass
class UpgradeResult:
    """Final report of an orchestrator run"""

    outcome: UpgradeOutcome
    state: UpgradeState
    from_version: Optional[str] = None
    to_version: Optional[str] = None
    backup: Optional[BackupRecord] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.outcome != UpgradeOutcome.FAILED

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1
