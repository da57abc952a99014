"""
Nextcloud Upgrade Configuration Management

Settings are read once from the environment (names match the historic
upgrade script, e.g. NEXTCLOUD_PATH, BACKUP_PATH, WEB_SERVICE) and frozen.
Components receive the instance explicitly; none of them read the
environment themselves.
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from nextcloud_upgrade.models import ArchiveFormat, DigestAlgorithm

DEFAULT_UPDATE_SERVER_URL = "https://updates.nextcloud.com/updater_server/"
DEFAULT_RELEASE_BASE_URL = "https://download.nextcloud.com/server/releases"


class Settings(BaseSettings):
    """Upgrade settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
    )

    # Installation
    nextcloud_path: Path = Field(
        default=Path("/var/www/nextcloud"), description="Nextcloud installation directory"
    )
    backup_path: Path = Field(
        default=Path("/var/backups/nextcloud"), description="Absolute directory receiving backups"
    )
    web_user: str = Field(default="www-data", description="Account owning the installation")
    web_group: str = Field(default="", description="Group owning the installation (defaults to web_user)")

    # Service control
    web_service: str = Field(default="nginx", description="Web service stopped during the swap")
    service_manager: Literal["monit", "systemd", "sysv", "command"] = Field(
        default="monit", description="Adapter used to stop and start the web service"
    )
    stop_service_cmd: List[str] = Field(
        default_factory=list, description="Stop command when service_manager is 'command'"
    )
    start_service_cmd: List[str] = Field(
        default_factory=list, description="Start command when service_manager is 'command'"
    )

    # Settle delays
    wait_before_backup: int = Field(
        default=60, ge=0, description="Seconds to wait after enabling maintenance mode"
    )
    wait_after_server_start: int = Field(
        default=20, ge=0, description="Seconds to wait after starting the web service"
    )

    # Release download
    download_format: ArchiveFormat = Field(default=ArchiveFormat.TAR_BZ2, description="Archive format")
    checksum_type: DigestAlgorithm = Field(default=DigestAlgorithm.SHA256, description="Digest algorithm")
    update_server_url: str = Field(default=DEFAULT_UPDATE_SERVER_URL, description="Update discovery endpoint")
    release_base_url: str = Field(default=DEFAULT_RELEASE_BASE_URL, description="Release archive base URL")
    download_dir: Path = Field(
        default=Path("/var/tmp/nextcloud-upgrade"), description="Directory receiving downloaded archives"
    )
    force_download: bool = Field(default=False, description="Download even if the archive is present")
    cleanup: bool = Field(default=True, description="Delete downloaded archives after a successful swap")

    # Run mode
    dry_run: bool = Field(default=False, description="Print changing commands instead of running them")

    # Backup
    skip_backup: bool = Field(default=False, description="Skip database and config backups")
    min_free_space_mb: int = Field(default=500, ge=0, description="Free space required in backup_path")

    # Scheduled tasks
    cron_interval_minutes: int = Field(
        default=5, ge=1, le=59, description="Interval of the cron line appended when none is found"
    )

    # Migration
    upgrade_log_path: Path = Field(
        default=Path("/tmp/nextcloud_upgrade.log"), description="Captured output of occ upgrade"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING", description="Logging level for structured events"
    )
    json_logs: bool = Field(default=False, description="Render structured events as JSON")
    log_file: str = Field(default="", description="Optional JSON log file for the run")

    @property
    def owner_group(self) -> str:
        return self.web_group or self.web_user

    @property
    def config_dir(self) -> Path:
        return self.nextcloud_path / "config"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.php"

    @property
    def old_install_path(self) -> Path:
        return self.nextcloud_path.with_name(self.nextcloud_path.name + ".old")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
