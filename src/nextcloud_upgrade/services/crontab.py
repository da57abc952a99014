"""
Scheduled Tasks - Suspends and restores the Nextcloud background job

CronTable is a plain list-of-lines value with match, comment, uncomment and
append operations; CrontabStore reads and installs it for one account.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Tuple, Union

import structlog

from nextcloud_upgrade.errors import CrontabError
from nextcloud_upgrade.process import CommandRunner

logger = structlog.get_logger(__name__)

NEXTCLOUD_JOB = re.compile(r"php\s+-f\s+\S*cron\.php")
COMMENT = "#"


def _compile(pattern: Union[str, Pattern]) -> Pattern:
    return re.compile(pattern) if isinstance(pattern, str) else pattern


def default_job_line(install_path: str, interval_minutes: int = 5) -> str:
    return f"*/{interval_minutes} * * * * php -f {install_path}/cron.php"


@dataclass(frozen=True)
class CronTable:
    """An ordered, immutable set of crontab lines"""

    lines: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "CronTable":
        return cls(tuple(text.splitlines()))

    def render(self) -> str:
        if not self.lines:
            return ""
        return "\n".join(self.lines) + "\n"

    @staticmethod
    def is_comment(line: str) -> bool:
        return line.lstrip().startswith(COMMENT)

    def active(self, pattern: Union[str, Pattern] = NEXTCLOUD_JOB) -> List[str]:
        """Uncommented lines matching pattern"""
        regex = _compile(pattern)
        return [line for line in self.lines if not self.is_comment(line) and regex.search(line)]

    def suspended(self, pattern: Union[str, Pattern] = NEXTCLOUD_JOB) -> List[str]:
        """Commented lines matching pattern"""
        regex = _compile(pattern)
        return [line for line in self.lines if self.is_comment(line) and regex.search(line)]

    def comment_out(self, pattern: Union[str, Pattern] = NEXTCLOUD_JOB) -> "CronTable":
        regex = _compile(pattern)
        return CronTable(
            tuple(
                COMMENT + line if not self.is_comment(line) and regex.search(line) else line
                for line in self.lines
            )
        )

    def uncomment(self, pattern: Union[str, Pattern] = NEXTCLOUD_JOB) -> "CronTable":
        regex = _compile(pattern)
        restored = []
        for line in self.lines:
            if self.is_comment(line) and regex.search(line):
                stripped = line.lstrip()
                line = stripped[len(COMMENT):]
            restored.append(line)
        return CronTable(tuple(restored))

    def reenable(self, jobs: Iterable[str]) -> "CronTable":
        """Uncomment the lines comment_out produced from jobs, leaving other comments alone"""
        wanted = {COMMENT + job for job in jobs}
        return CronTable(tuple(line[len(COMMENT):] if line in wanted else line for line in self.lines))

    def ensure(self, default_line: str, pattern: Union[str, Pattern] = NEXTCLOUD_JOB) -> "CronTable":
        """Append default_line unless an active line already matches"""
        if self.active(pattern):
            return self
        return CronTable(self.lines + (default_line,))


class CrontabStore:
    """
    Reads and installs the crontab of one account

    Args:
        user: Account whose table is edited
        runner: Command runner for crontab(1)
    """

    def __init__(self, user: str, runner: Optional[CommandRunner] = None):
        self.user = user
        self.runner = runner or CommandRunner()

    def read(self) -> CronTable:
        """Read the table; an account without one reads as empty"""
        result = self.runner.run(["crontab", "-u", self.user, "-l"], mutates=False)
        if result.returncode != 0:
            logger.info("crontab_empty", user=self.user, stderr=(result.stderr or "").strip())
            return CronTable()
        return CronTable.parse(result.stdout or "")

    def write(self, table: CronTable) -> None:
        """
        Replace the whole table

        Raises:
            CrontabError: If crontab(1) rejects the table
        """
        result = self.runner.run(["crontab", "-u", self.user, "-"], input=table.render())
        if result.returncode != 0:
            raise CrontabError(
                f"Could not install crontab for {self.user}: {(result.stderr or '').strip()}"
            )
        logger.info("crontab_installed", user=self.user, lines=len(table.lines))

    def suspend(self, pattern: Union[str, Pattern] = NEXTCLOUD_JOB) -> CronTable:
        """
        Comment out matching jobs

        Returns:
            The table as it was before suspension
        """
        snapshot = self.read()
        self.write(snapshot.comment_out(pattern))
        logger.info("cron_suspended", user=self.user, jobs=len(snapshot.active(pattern)))
        return snapshot

    def restore(
        self,
        default_line: str,
        pattern: Union[str, Pattern] = NEXTCLOUD_JOB,
        snapshot: Optional[CronTable] = None,
    ) -> CronTable:
        """
        Re-enable the jobs suspend() disabled

        With a snapshot, only the jobs active in it are uncommented, and
        default_line is appended only if the snapshot had no matching job at
        all. Without one, every matching job is uncommented and default_line
        appended if none is left.

        Returns:
            The table that was installed
        """
        current = self.read()
        if snapshot is None:
            table = current.uncomment(pattern).ensure(default_line, pattern)
        else:
            table = current.reenable(snapshot.active(pattern))
            if not snapshot.active(pattern) and not snapshot.suspended(pattern):
                table = table.ensure(default_line, pattern)
        self.write(table)
        logger.info("cron_restored", user=self.user, jobs=len(table.active(pattern)))
        return table
