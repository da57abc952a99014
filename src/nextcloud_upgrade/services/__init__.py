"""
Nextcloud Upgrade - Service Layer

This package contains the upgrade components and the orchestrator that
sequences them.
"""

from nextcloud_upgrade.services.artifact_fetcher import ArtifactFetcher
from nextcloud_upgrade.services.backup_coordinator import BackupCoordinator
from nextcloud_upgrade.services.crontab import CronTable, CrontabStore
from nextcloud_upgrade.services.installation_swapper import InstallationSwapper
from nextcloud_upgrade.services.orchestrator import UpgradeOrchestrator
from nextcloud_upgrade.services.service_control import ServiceController, create_controller
from nextcloud_upgrade.services.version_resolver import ResolveResult, VersionResolver

__all__ = [
    "ArtifactFetcher",
    "BackupCoordinator",
    "CronTable",
    "CrontabStore",
    "InstallationSwapper",
    "UpgradeOrchestrator",
    "ServiceController",
    "create_controller",
    "ResolveResult",
    "VersionResolver",
]
