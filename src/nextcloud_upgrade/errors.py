"""
Upgrade Errors - Exception hierarchy for the upgrade workflow

Every fatal condition is an UpgradeError subclass. The orchestrator is the
only place these are caught; it records the state the run halted in.
"""
from typing import Optional

from nextcloud_upgrade.models import UpgradeState

# Reporting severities, highest last
SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"


class UpgradeError(Exception):
    """Base exception for upgrade errors"""

    severity = SEVERITY_ERROR

    def __init__(self, message: str, state: Optional[UpgradeState] = None):
        super().__init__(message)
        self.state = state


class ConfigError(UpgradeError):
    """Raised when a setting is missing or unreadable"""

    pass


class PreflightError(ConfigError):
    """Raised when a required tool, path or privilege is missing"""

    pass


class NetworkError(UpgradeError):
    """Raised when the update server cannot be reached"""

    pass


class DownloadError(NetworkError):
    """Raised when a release archive or digest cannot be downloaded"""

    pass


class ParseError(UpgradeError):
    """Raised when the update server response carries no version"""

    pass


class ChecksumMismatch(UpgradeError):
    """Raised when artifact digest verification fails"""

    pass


class BackupError(UpgradeError):
    """Raised when the database dump or config copy fails"""

    pass


class ExtractError(UpgradeError):
    """Raised when the release archive cannot be extracted"""

    severity = SEVERITY_CRITICAL


class SwapError(UpgradeError):
    """Raised when moving the installation trees fails - requires manual intervention"""

    severity = SEVERITY_CRITICAL


class ServiceControlError(UpgradeError):
    """Raised when the web service cannot be stopped"""

    pass


class CrontabError(UpgradeError):
    """Raised when the scheduled-task table cannot be installed"""

    pass


class MigrationError(UpgradeError):
    """Raised when occ upgrade fails; maintenance mode stays on"""

    def __init__(self, message: str, log_path: Optional[str] = None, state: Optional[UpgradeState] = None):
        super().__init__(message, state=state)
        self.log_path = log_path
