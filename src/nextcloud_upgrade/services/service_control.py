"""
Service Control - Stops and starts the web service around the swap

Defines the interface every service manager adapter implements, so monit,
systemd, SysV init scripts or operator-supplied commands can be swapped
through configuration.
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import structlog

from nextcloud_upgrade.config import Settings
from nextcloud_upgrade.errors import ConfigError
from nextcloud_upgrade.process import CommandRunner

logger = structlog.get_logger(__name__)


class ServiceController(ABC):
    """Base class for web service adapters"""

    def __init__(self, service: str, runner: Optional[CommandRunner] = None):
        """
        Initialize service controller

        Args:
            service: Name of the web service
            runner: Command runner used to invoke the service manager
        """
        self.service = service
        self.runner = runner or CommandRunner()

    @abstractmethod
    def stop_command(self) -> List[str]:
        pass

    @abstractmethod
    def start_command(self) -> List[str]:
        pass

    def _invoke(self, action: str, argv: Sequence[str]) -> bool:
        result = self.runner.run(argv)
        ok = result.returncode == 0
        logger.info(f"service_{action}", service=self.service, ok=ok, command=" ".join(argv))
        return ok

    def stop(self) -> bool:
        """
        Stop the web service

        Returns:
            True if the service manager reported success
        """
        return self._invoke("stop", self.stop_command())

    def start(self) -> bool:
        """
        Start the web service

        Returns:
            True if the service manager reported success
        """
        return self._invoke("start", self.start_command())


class MonitController(ServiceController):
    """Controls the service through monit"""

    def stop_command(self) -> List[str]:
        return ["monit", "stop", self.service]

    def start_command(self) -> List[str]:
        return ["monit", "start", self.service]


class SystemdController(ServiceController):
    """Controls the service through systemctl"""

    def stop_command(self) -> List[str]:
        return ["systemctl", "stop", self.service]

    def start_command(self) -> List[str]:
        return ["systemctl", "start", self.service]


class SysVController(ServiceController):
    """Controls the service through the service(8) wrapper"""

    def stop_command(self) -> List[str]:
        return ["service", self.service, "stop"]

    def start_command(self) -> List[str]:
        return ["service", self.service, "start"]


class CommandController(ServiceController):
    """Runs operator-supplied stop and start commands"""

    def __init__(
        self,
        service: str,
        stop_cmd: Sequence[str],
        start_cmd: Sequence[str],
        runner: Optional[CommandRunner] = None,
    ):
        super().__init__(service, runner)
        if not stop_cmd or not start_cmd:
            raise ConfigError("service_manager 'command' needs both stop_service_cmd and start_service_cmd")
        self._stop_cmd = list(stop_cmd)
        self._start_cmd = list(start_cmd)

    def stop_command(self) -> List[str]:
        return list(self._stop_cmd)

    def start_command(self) -> List[str]:
        return list(self._start_cmd)


CONTROLLERS = {
    "monit": MonitController,
    "systemd": SystemdController,
    "sysv": SysVController,
}


def create_controller(settings: Settings, runner: Optional[CommandRunner] = None) -> ServiceController:
    """Build the adapter selected by settings.service_manager"""
    if settings.service_manager == "command":
        return CommandController(
            settings.web_service,
            stop_cmd=settings.stop_service_cmd,
            start_cmd=settings.start_service_cmd,
            runner=runner,
        )
    try:
        controller_class = CONTROLLERS[settings.service_manager]
    except KeyError:
        raise ConfigError(f"Unknown service manager: {settings.service_manager}")
    return controller_class(settings.web_service, runner)


def required_program(controller: ServiceController) -> str:
    """The executable a controller needs on PATH"""
    return controller.stop_command()[0]
