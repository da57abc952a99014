"""
Operator-facing status lines

Colored one-line messages for each step of a run, plus the countdown shown
during settle delays.
"""
import time
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape

LEVEL_STYLES = {
    "info": ("[i]", "bold cyan"),
    "success": ("[✓]", "bold green"),
    "warning": ("[!]", "bold yellow"),
    "error": ("[x]", "bold red"),
    "plan": ("[~]", "bold blue"),
}


class StatusReporter:
    """Prints status lines to the operator's terminal"""

    def __init__(self, console: Optional[Console] = None, sleep: Callable[[float], None] = time.sleep):
        self.console = console or Console(highlight=False)
        self.sleep = sleep

    def _line(self, level: str, message: str) -> None:
        marker, style = LEVEL_STYLES[level]
        self.console.print(f"[{style}]{escape(marker)}[/{style}] {escape(message)}", soft_wrap=True)

    def banner(self, title: str) -> None:
        self.console.print(f"[bold magenta]*** {title} ***[/bold magenta]")

    def info(self, message: str) -> None:
        self._line("info", message)

    def success(self, message: str) -> None:
        self._line("success", message)

    def warning(self, message: str) -> None:
        self._line("warning", message)

    def error(self, message: str) -> None:
        self._line("error", message)

    def plan(self, message: str) -> None:
        """A step a dry run skips"""
        self._line("plan", message)

    def confirm(self, question: str) -> bool:
        """
        Ask a yes/no question; empty input means yes

        Any answer starting with "n" or "N" declines.
        """
        answer = self.console.input(escape(f"{question} [Y/n]: "))
        return not answer.strip().lower().startswith("n")

    def countdown(self, seconds: int) -> None:
        """Wait seconds, showing the time left"""
        if seconds <= 0:
            return
        with self.console.status(f"Continue in {seconds:02d} seconds") as status:
            for remaining in range(seconds, 0, -1):
                status.update(f"Continue in {remaining:02d} seconds")
                self.sleep(1)
        self.info(f"Waited {seconds} seconds")
