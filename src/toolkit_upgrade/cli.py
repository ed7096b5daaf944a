"""
Command-line entry point for the toolkit upgrade.

Usage:
    toolkit-upgrade [help] [--help] [--skip-git-update] [--toolkit-root PATH]

When the code update check pulls new toolkit code, the process replaces
itself with a fresh run of the updated code, passing --skip-git-update so the
new run resumes at the version check.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable, Mapping, Sequence

from toolkit_upgrade.config import build_arg_parser, load_config
from toolkit_upgrade.console import Console, TerminalConsole
from toolkit_upgrade.errors import ConfigError
from toolkit_upgrade.logging import get_logger, setup_logging
from toolkit_upgrade.updates.state_machine import (
    UpgradeOrchestrator,
    UpgradeOutcome,
    UpgradeStage,
)

logger = get_logger(__name__)

SKIP_GIT_UPDATE_FLAG = "--skip-git-update"


def relaunch_command(argv: Sequence[str]) -> list[str]:
    """Build the command line for a run that resumes after a code update."""
    args = [arg for arg in argv if arg != SKIP_GIT_UPDATE_FLAG]
    return [sys.executable, "-m", "toolkit_upgrade", *args, SKIP_GIT_UPDATE_FLAG]


def main(
    argv: Sequence[str] | None = None,
    *,
    console: Console | None = None,
    environ: Mapping[str, str] | None = None,
    exec_func: Callable[[str, list[str]], object] = os.execv,
) -> int:
    """
    Run the upgrade command.

    Args:
        argv: Command-line arguments (without the program name).
            Defaults to sys.argv[1:].
        console: Operator console. Defaults to the terminal.
        environ: Environment mapping. Defaults to os.environ.
        exec_func: Process replacement used for the relaunch.

    Returns:
        Process exit status: 0 for success or an operator decline, 1 for
        a fatal error.
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.command == "help":
        parser.print_help()
        return 0

    try:
        config = load_config(environ=environ, cli_args=args)
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    setup_logging(config.logging)
    console = console if console is not None else TerminalConsole()

    resume_at = (
        UpgradeStage.READ_VERSIONS if args.skip_git_update else UpgradeStage.SYNC
    )
    logger.info(
        "Starting upgrade",
        extra={"toolkit_root": str(config.toolkit_root), "resume_at": resume_at.value},
    )

    orchestrator = UpgradeOrchestrator(config, console)
    result = asyncio.run(orchestrator.run(resume_at=resume_at))

    if result.outcome == UpgradeOutcome.RELAUNCH:
        command = relaunch_command(argv)
        logger.info("Relaunching after code update", extra={"command": command})
        sys.stdout.flush()
        sys.stderr.flush()
        exec_func(command[0], command)
        # Only reached when exec_func returns (tests)
        return 0

    if result.outcome != UpgradeOutcome.FATAL:
        console.echo("Done")

    return result.exit_code


def run() -> None:
    """Console script entry point."""
    sys.exit(main())
