"""
External command execution for the upgrade procedure.

git, docker and the toolkit's docker-compose wrapper are run as child
processes. A missing executable, a timeout or (for check_command) a non-zero
exit status is reported as a CollaboratorError carrying the command's own
output unchanged.
"""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import NamedTuple

from toolkit_upgrade.errors import CollaboratorError
from toolkit_upgrade.logging import get_logger

logger = get_logger(__name__)


class CommandResult(NamedTuple):
    """Outcome of an external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """stdout and stderr combined, in that order."""
        return self.stdout + self.stderr


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """
    Run an external command and capture its output.

    Args:
        *args: Program and arguments.
        cwd: Working directory for the command.
        timeout: Optional timeout in seconds. None waits indefinitely.

    Returns:
        CommandResult with return code, stdout and stderr.

    Raises:
        CollaboratorError: If the program is not available or times out.
    """
    command = shlex.join(args)
    logger.debug("Running command", extra={"command": command, "cwd": str(cwd)})

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )

    except FileNotFoundError as exc:
        raise CollaboratorError(
            f"Command not found: {args[0]}",
            details={"command": command},
        ) from exc
    except TimeoutError as exc:
        raise CollaboratorError(
            f"Command timed out after {timeout}s: {command}",
            details={"command": command},
        ) from exc

    # Changelogs and compose output are not guaranteed to be UTF-8
    result = CommandResult(
        proc.returncode or 0,
        stdout.decode(errors="replace") if stdout else "",
        stderr.decode(errors="replace") if stderr else "",
    )
    logger.debug(
        "Command finished",
        extra={"command": command, "returncode": result.returncode},
    )
    return result


async def check_command(
    *args: str,
    cwd: Path | str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """
    Run an external command and require it to succeed.

    Raises:
        CollaboratorError: If the command fails; the message carries the
            command's stderr (or stdout when stderr is empty) verbatim.
    """
    result = await run_command(*args, cwd=cwd, timeout=timeout)

    if result.returncode != 0:
        command = shlex.join(args)
        output = (result.stderr or result.stdout).strip()
        logger.error(
            "Command failed",
            extra={"command": command, "returncode": result.returncode},
        )
        raise CollaboratorError(
            f"Command '{command}' failed with exit status {result.returncode}: {output}",
            details={
                "command": command,
                "returncode": result.returncode,
                "stderr": result.stderr,
            },
        )

    return result
