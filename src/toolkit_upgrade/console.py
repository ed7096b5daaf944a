"""
Operator interaction for the upgrade procedure.

Every component that talks to the operator does so through a Console, so the
whole procedure can be driven by a scripted console in tests.
"""

from __future__ import annotations

import sys
from typing import Protocol, TextIO

from toolkit_upgrade.logging import get_logger

logger = get_logger(__name__)

AFFIRMATIVE_ANSWERS = frozenset({"y", "yes"})


class Console(Protocol):
    """Operator-facing output and yes/no questions."""

    def echo(self, message: str = "") -> None:
        """Show a line of text to the operator."""
        ...

    def confirm(self, question: str) -> bool:
        """Ask a yes/no question; True only on an explicit yes."""
        ...


def is_affirmative(answer: str | None) -> bool:
    """
    Interpret an operator answer.

    Only an explicit "y" or "yes" (any case, surrounding whitespace ignored)
    counts as agreement. Empty answers, EOF and anything ambiguous are declines.
    """
    if answer is None:
        return False
    return answer.strip().lower() in AFFIRMATIVE_ANSWERS


class TerminalConsole:
    """
    Console backed by the interactive terminal.

    Attributes:
        stdin: Stream answers are read from.
        stdout: Stream messages and prompts are written to.
    """

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout

    def echo(self, message: str = "") -> None:
        self._stdout.write(message + "\n")
        self._stdout.flush()

    def confirm(self, question: str) -> bool:
        self._stdout.write(f"{question} [y/n] ")
        self._stdout.flush()

        line = self._stdin.readline()
        if not line:
            # EOF: nobody is there to say yes
            self._stdout.write("\n")
            answer = None
        else:
            answer = line.rstrip("\n")

        agreed = is_affirmative(answer)
        logger.info(
            "Operator answered prompt",
            extra={"question": question, "answer": answer, "agreed": agreed},
        )
        return agreed
