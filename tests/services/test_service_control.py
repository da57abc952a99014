"""
Unit tests for web service control adapters.
"""
import pytest

from conftest import FakeRunner, completed
from nextcloud_upgrade.config import Settings
from nextcloud_upgrade.errors import ConfigError
from nextcloud_upgrade.services.service_control import (
    CommandController,
    MonitController,
    SystemdController,
    SysVController,
    create_controller,
    required_program,
)


class TestControllers:
    """Tests for the command each adapter runs."""

    @pytest.mark.parametrize(
        "controller_class,stop,start",
        [
            (MonitController, ["monit", "stop", "nginx"], ["monit", "start", "nginx"]),
            (SystemdController, ["systemctl", "stop", "nginx"], ["systemctl", "start", "nginx"]),
            (SysVController, ["service", "nginx", "stop"], ["service", "nginx", "start"]),
        ],
    )
    def test_commands(self, controller_class, stop, start):
        """Each adapter runs its service manager's stop and start commands."""
        runner = FakeRunner()
        controller = controller_class("nginx", runner)

        assert controller.stop() is True
        assert controller.start() is True
        assert runner.argvs() == [stop, start]

    def test_failure_reported(self):
        """A non-zero exit is reported as False, not raised."""
        runner = FakeRunner(lambda argv, **kwargs: completed(argv, returncode=1))

        assert MonitController("apache2", runner).stop() is False

    def test_command_controller(self):
        """Operator commands are run verbatim."""
        runner = FakeRunner()
        controller = CommandController(
            "php-fpm", ["/usr/local/bin/web", "down"], ["/usr/local/bin/web", "up"], runner
        )

        controller.stop()
        controller.start()

        assert runner.argvs() == [["/usr/local/bin/web", "down"], ["/usr/local/bin/web", "up"]]
        assert required_program(controller) == "/usr/local/bin/web"

    def test_command_controller_needs_both(self):
        """Both commands must be configured."""
        with pytest.raises(ConfigError):
            CommandController("nginx", ["stop-web"], [])


class TestCreateController:
    """Tests for adapter selection from settings."""

    @pytest.mark.parametrize(
        "manager,controller_class",
        [("monit", MonitController), ("systemd", SystemdController), ("sysv", SysVController)],
    )
    def test_selection(self, manager, controller_class):
        """service_manager selects the adapter."""
        settings = Settings(_env_file=None, service_manager=manager, web_service="apache2")

        controller = create_controller(settings, FakeRunner())

        assert isinstance(controller, controller_class)
        assert controller.service == "apache2"

    def test_command_selection(self):
        """The command adapter takes its commands from settings."""
        settings = Settings(
            _env_file=None,
            service_manager="command",
            stop_service_cmd=["supervisorctl", "stop", "web"],
            start_service_cmd=["supervisorctl", "start", "web"],
        )

        controller = create_controller(settings, FakeRunner())

        assert controller.stop_command() == ["supervisorctl", "stop", "web"]
        assert required_program(controller) == "supervisorctl"

    def test_default_is_monit(self):
        """monit is the default service manager."""
        controller = create_controller(Settings(_env_file=None), FakeRunner())

        assert isinstance(controller, MonitController)
        assert required_program(controller) == "monit"
