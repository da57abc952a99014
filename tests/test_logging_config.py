"""
Tests for logging configuration.
"""
import json
import logging

import pytest
import structlog

from nextcloud_upgrade.logging_config import bind_run_context, clear_run_context, get_file_handler, setup_logging


@pytest.fixture
def restore_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    clear_run_context()
    structlog.reset_defaults()


class TestFileHandler:
    """Tests for the JSON file handler."""

    def test_writes_json_lines(self, tmp_path):
        """Each record is one JSON object."""
        log_file = tmp_path / "logs" / "run.log"
        handler = get_file_handler(str(log_file), "INFO")
        logger = logging.getLogger("nextcloud_upgrade.test")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            logger.info("backup_created")
        finally:
            logger.removeHandler(handler)
            handler.close()

        record = json.loads(log_file.read_text().splitlines()[0])
        assert record["message"] == "backup_created"
        assert record["levelname"] == "INFO"

    def test_level_filter(self, tmp_path):
        """Records below the handler level are dropped."""
        handler = get_file_handler(str(tmp_path / "run.log"), "ERROR")

        assert handler.level == logging.ERROR


class TestSetupLogging:
    """Tests for structlog configuration."""

    def test_events_reach_file(self, tmp_path, restore_logging):
        """structlog events are written to the run log file."""
        log_file = tmp_path / "run.log"
        setup_logging("INFO", json_logs=True, log_file=str(log_file))

        structlog.get_logger("nextcloud_upgrade.test").info("state_entered", state="resolving")

        assert "state_entered" in log_file.read_text()

    def test_run_context_attached(self, tmp_path, restore_logging):
        """Bound run context appears on every later event."""
        log_file = tmp_path / "run.log"
        setup_logging("INFO", json_logs=True, log_file=str(log_file))

        bind_run_context(nextcloud_path="/var/www/nextcloud", target_version="29.0.5")
        structlog.get_logger("nextcloud_upgrade.test").info("download_complete")

        record = json.loads(log_file.read_text().splitlines()[-1])
        event = json.loads(record["message"])
        assert event["event"] == "download_complete"
        assert event["nextcloud_path"] == "/var/www/nextcloud"
        assert event["target_version"] == "29.0.5"
