"""
Command Runner - Blocking subprocess execution for external tools

All external programs (occ, dump utilities, crontab, service managers) are
invoked through CommandRunner so that tests can substitute a single seam.
DryRunRunner only executes read-only queries and prints everything else.
"""
import shlex
import shutil
import subprocess
from typing import IO, Callable, Mapping, Optional, Sequence, Union

import structlog

logger = structlog.get_logger(__name__)


class CommandRunner:
    """Runs external commands synchronously and logs each invocation"""

    def run(
        self,
        argv: Sequence[str],
        *,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        stdout: Union[int, IO, None] = subprocess.PIPE,
        cwd: Optional[str] = None,
        mutates: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a command to completion

        Args:
            argv: Program and arguments; must never contain secrets
            input: Text fed to the command's stdin
            env: Complete environment for the child process (None inherits)
            stdout: Where stdout goes (captured by default, or an open file)
            cwd: Working directory
            mutates: False for read-only queries, which a dry run still executes

        Returns:
            CompletedProcess with text stdout/stderr; the caller checks returncode
        """
        logger.debug("running_command", argv=list(argv))
        try:
            result = subprocess.run(
                list(argv),
                input=input,
                env=dict(env) if env is not None else None,
                stdout=stdout,
                stderr=subprocess.PIPE,
                cwd=cwd,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            logger.error("command_not_found", program=argv[0])
            return subprocess.CompletedProcess(list(argv), 127, "", str(e))

        if result.returncode != 0:
            logger.warning(
                "command_failed",
                program=argv[0],
                returncode=result.returncode,
                stderr=(result.stderr or "").strip()[:500],
            )
        return result

    def which(self, program: str) -> Optional[str]:
        """Return the absolute path of a program on PATH, or None"""
        return shutil.which(program)


class DryRunRunner(CommandRunner):
    """
    Prints commands that would change the system instead of running them

    Read-only queries (mutates=False) still run, so a dry run plans against
    the real installation. Every other command reports success.

    Args:
        echo: Receives the shell-quoted form of each skipped command
    """

    def __init__(self, echo: Optional[Callable[[str], None]] = None):
        self.echo = echo

    def run(
        self,
        argv: Sequence[str],
        *,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        stdout: Union[int, IO, None] = subprocess.PIPE,
        cwd: Optional[str] = None,
        mutates: bool = True,
    ) -> subprocess.CompletedProcess:
        if not mutates:
            return super().run(argv, input=input, env=env, stdout=stdout, cwd=cwd, mutates=False)

        command = shlex.join(list(argv))
        logger.info("dry_run_command", argv=list(argv))
        if self.echo:
            self.echo(command)
        return subprocess.CompletedProcess(list(argv), 0, "", "")
