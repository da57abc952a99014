"""
Unit tests for scheduled task suspension and restoration.
"""
import pytest

from conftest import FakeRunner, completed
from nextcloud_upgrade.errors import CrontabError
from nextcloud_upgrade.services.crontab import CronTable, CrontabStore, default_job_line

JOB = "*/15 * * * * php -f /var/www/nextcloud/cron.php"
OTHER = "0 3 * * * /usr/local/bin/other-job"
DEFAULT = default_job_line("/var/www/nextcloud")


class CrontabServer:
    """Holds one user's crontab and answers crontab(1) invocations."""

    def __init__(self, text=None):
        self.text = text

    def __call__(self, argv, input=None, env=None, stdout=None):
        if argv[-1] == "-l":
            if self.text is None:
                return completed(argv, returncode=1, stderr="no crontab for www-data")
            return completed(argv, stdout=self.text)
        if argv[-1] == "-":
            self.text = input
        return None


class TestCronTable:
    """Tests for table transformations."""

    def test_default_job_line(self):
        """The default line runs cron.php of the installation."""
        assert DEFAULT == "*/5 * * * * php -f /var/www/nextcloud/cron.php"
        assert default_job_line("/srv/nc", 15).startswith("*/15 ")

    def test_comment_out_only_matching(self):
        """Only Nextcloud jobs are commented out."""
        table = CronTable((JOB, OTHER)).comment_out()

        assert table.lines == ("#" + JOB, OTHER)
        assert table.active() == []
        assert table.suspended() == ["#" + JOB]

    def test_comment_out_is_idempotent(self):
        """Already commented lines are not commented twice."""
        table = CronTable(("#" + JOB,)).comment_out()

        assert table.lines == ("#" + JOB,)

    def test_uncomment(self):
        """Commented Nextcloud jobs are restored verbatim."""
        table = CronTable(("#" + JOB, "# " + OTHER)).uncomment()

        assert table.lines == (JOB, "# " + OTHER)

    def test_ensure_appends_when_missing(self):
        """The default line is appended when no active job exists."""
        table = CronTable((OTHER,)).ensure(DEFAULT)

        assert table.lines == (OTHER, DEFAULT)

    def test_ensure_keeps_existing(self):
        """An active job means nothing is appended."""
        table = CronTable((JOB,))

        assert table.ensure(DEFAULT) is table

    def test_parse_and_render(self):
        """Parsing and rendering preserve line order."""
        table = CronTable.parse(f"{OTHER}\n{JOB}\n")

        assert table.lines == (OTHER, JOB)
        assert table.render() == f"{OTHER}\n{JOB}\n"
        assert CronTable().render() == ""

    def test_reenable_only_named_jobs(self):
        """Only the commented copies of the given jobs are uncommented."""
        table = CronTable(("#" + JOB, "#" + OTHER, "# " + JOB)).reenable([JOB])

        assert table.lines == (JOB, "#" + OTHER, "# " + JOB)

    def test_custom_pattern(self):
        """A custom pattern selects other jobs."""
        table = CronTable((JOB, OTHER)).comment_out(r"other-job")

        assert table.lines == (JOB, "#" + OTHER)


class TestCrontabStore:
    """Tests for reading and installing crontabs."""

    def test_suspend_then_restore(self):
        """Suspending and restoring gives back the original job."""
        server = CrontabServer(f"{OTHER}\n{JOB}\n")
        store = CrontabStore("www-data", FakeRunner(server))

        snapshot = store.suspend()
        assert snapshot.lines == (OTHER, JOB)
        assert server.text == f"{OTHER}\n#{JOB}\n"

        store.restore(DEFAULT)
        assert server.text == f"{OTHER}\n{JOB}\n"

    def test_restore_appends_default(self):
        """Restoring a table without any Nextcloud job appends the default."""
        server = CrontabServer(f"{OTHER}\n")
        store = CrontabStore("www-data", FakeRunner(server))

        table = store.restore(DEFAULT)

        assert table.lines == (OTHER, DEFAULT)
        assert server.text == f"{OTHER}\n{DEFAULT}\n"

    def test_missing_crontab_reads_empty(self):
        """An account without a crontab reads as an empty table."""
        store = CrontabStore("www-data", FakeRunner(CrontabServer()))

        assert store.read().lines == ()

    def test_commands_target_user(self):
        """crontab is always invoked for the configured account."""
        runner = FakeRunner(CrontabServer(JOB + "\n"))
        CrontabStore("nginx", runner).suspend()

        assert runner.argvs() == [["crontab", "-u", "nginx", "-l"], ["crontab", "-u", "nginx", "-"]]
        assert runner.calls[1].input == f"#{JOB}\n"

    def test_write_failure(self):
        """A rejected table raises CrontabError."""

        def handler(argv, input=None, env=None, stdout=None):
            if argv[-1] == "-":
                return completed(argv, returncode=1, stderr="bad minute")
            return completed(argv, stdout=JOB + "\n")

        store = CrontabStore("www-data", FakeRunner(handler))

        with pytest.raises(CrontabError, match="bad minute"):
            store.suspend()

    def test_restore_keeps_operator_disabled_job(self):
        """A job that was already commented out before suspension stays disabled."""
        disabled = "#*/10 * * * * php -f /srv/other/cron.php"
        server = CrontabServer(f"{JOB}\n{disabled}\n")
        store = CrontabStore("www-data", FakeRunner(server))

        snapshot = store.suspend()
        table = store.restore(DEFAULT, snapshot=snapshot)

        assert table.lines == (JOB, disabled)
        assert server.text == f"{JOB}\n{disabled}\n"

    def test_restore_with_all_jobs_disabled(self):
        """With only disabled jobs in the snapshot, no default line is added."""
        server = CrontabServer(f"#{JOB}\n")
        store = CrontabStore("www-data", FakeRunner(server))

        snapshot = store.suspend()
        table = store.restore(DEFAULT, snapshot=snapshot)

        assert table.lines == ("#" + JOB,)

    def test_restore_snapshot_without_jobs_appends_default(self):
        """A snapshot without any Nextcloud job still gets the default line."""
        server = CrontabServer(f"{OTHER}\n")
        store = CrontabStore("www-data", FakeRunner(server))

        snapshot = store.suspend()
        table = store.restore(DEFAULT, snapshot=snapshot)

        assert table.lines == (OTHER, DEFAULT)
