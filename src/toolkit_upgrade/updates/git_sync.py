"""
Toolkit code synchronization with the upstream git remote.

States:
- check: query the remote without changing anything
- up_to_date: nothing to do (terminal)
- update_available: the remote branch advanced; fetch it
- show_diff: show the changelog delta between local and remote
- prompt: ask the operator whether to apply the update
- continue_unchanged: operator declined (terminal)
- apply: merge the remote branch into the working copy
- relaunch: the upgrade must restart from the top with the new code (terminal)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from toolkit_upgrade.errors import CollaboratorError, InternalError
from toolkit_upgrade.logging import get_logger
from toolkit_upgrade.process import check_command, run_command

if TYPE_CHECKING:
    from toolkit_upgrade.config import ToolkitConfig
    from toolkit_upgrade.console import Console

logger = get_logger(__name__)

NO_CHANGELOG_MESSAGE = "No changelog available"


class SyncState(str, Enum):
    """States of the code synchronization."""

    CHECK = "check"
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    SHOW_DIFF = "show_diff"
    PROMPT = "prompt"
    CONTINUE_UNCHANGED = "continue_unchanged"
    APPLY = "apply"
    RELAUNCH = "relaunch"


TERMINAL_STATES = frozenset(
    {SyncState.UP_TO_DATE, SyncState.CONTINUE_UNCHANGED, SyncState.RELAUNCH}
)


class SyncResult(BaseModel):
    """Where the synchronization ended."""

    state: SyncState = Field(..., description="Terminal state reached")
    branch: str = Field(..., description="Branch of the toolkit checkout")
    commit: str | None = Field(default=None, description="Commit before syncing")
    updated_commit: str | None = Field(
        default=None,
        description="Commit after applying the update",
    )

    @property
    def relaunch_requested(self) -> bool:
        return self.state == SyncState.RELAUNCH


def filter_changelog_diff(diff: str) -> str:
    """
    Keep only added and removed lines of a unified diff.

    File headers (``+++``/``---``), hunk headers and context lines are dropped.
    """
    kept = [
        line
        for line in diff.splitlines()
        if line[:1] in ("+", "-") and not line.startswith(("+++", "---"))
    ]
    return "\n".join(kept)


class GitSyncController:
    """
    Checks for and applies toolkit code updates.

    Attributes:
        config: Toolkit configuration (root, remote, expected branch).
        state: Current synchronization state.
    """

    def __init__(self, config: ToolkitConfig, console: Console) -> None:
        self.config = config
        self._console = console
        self.state = SyncState.CHECK

    @property
    def remote(self) -> str:
        return self.config.upgrade.remote

    def _transition_to(self, new_state: SyncState) -> None:
        logger.info(
            f"Code sync: {self.state.value} -> {new_state.value}",
            extra={"old_state": self.state.value, "new_state": new_state.value},
        )
        self.state = new_state

    async def _git(self, *args: str) -> str:
        result = await check_command(
            "git", "-C", str(self.config.toolkit_root), *args
        )
        return result.stdout

    async def current_branch(self) -> str:
        return (await self._git("rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def current_commit(self) -> str:
        return (await self._git("rev-parse", "--short", "HEAD")).strip()

    async def update_available(self, branch: str) -> bool:
        """Ask the remote for new commits without fetching anything."""
        result = await check_command(
            "git",
            "-C",
            str(self.config.toolkit_root),
            "fetch",
            "--dry-run",
            self.remote,
            branch,
        )
        # git reports ref updates on stderr
        return f"-> {self.remote}/{branch}" in result.output

    async def differs_from_remote(self, branch: str) -> bool:
        """
        Compare the local branch with the fetched remote branch.

        Raises:
            CollaboratorError: If git diff fails (exit status other than 0/1).
        """
        result = await run_command(
            "git",
            "-C",
            str(self.config.toolkit_root),
            "diff",
            "--quiet",
            branch,
            f"{self.remote}/{branch}",
        )
        if result.returncode not in (0, 1):
            raise CollaboratorError(
                f"git diff failed with exit status {result.returncode}: "
                f"{result.stderr.strip()}",
                details={"branch": branch, "stderr": result.stderr},
            )
        return result.returncode == 1

    async def changelog_delta(self, branch: str) -> str:
        diff = await self._git(
            "diff",
            branch,
            f"{self.remote}/{branch}",
            "--",
            self.config.changelog_file,
        )
        return filter_changelog_diff(diff)

    async def sync(self) -> SyncResult:
        """
        Run the synchronization state machine to a terminal state.

        Returns:
            SyncResult; ``relaunch_requested`` is True when new code was
            merged and the upgrade must start over with it.

        Raises:
            CollaboratorError: If a git command fails.
        """
        self.state = SyncState.CHECK

        branch = await self.current_branch()
        if branch != self.config.upgrade.default_branch:
            self._console.echo(
                f"Warning: current branch is not {self.config.upgrade.default_branch}, "
                f"'{branch}' instead"
            )
            logger.warning(
                "Toolkit checkout is not on the default branch",
                extra={
                    "branch": branch,
                    "default_branch": self.config.upgrade.default_branch,
                },
            )

        commit = await self.current_commit()

        self._console.echo("Checking for code update...")
        if not await self.update_available(branch):
            self._console.echo("No code update available for download")
            self._transition_to(SyncState.UP_TO_DATE)
            return self._result(branch, commit)

        self._transition_to(SyncState.UPDATE_AVAILABLE)
        self._console.echo("Code update available for download!")
        await self._git("fetch", self.remote, branch)

        if not await self.differs_from_remote(branch):
            self._console.echo("No code update available")
            self._transition_to(SyncState.UP_TO_DATE)
            return self._result(branch, commit)

        self._transition_to(SyncState.SHOW_DIFF)
        self._console.echo(f"Code update available! (current commit is {commit})")
        self._console.echo("Changes:")
        delta = await self.changelog_delta(branch)
        self._console.echo(delta if delta else NO_CHANGELOG_MESSAGE)

        self._transition_to(SyncState.PROMPT)
        if not self._console.confirm("Perform code update?"):
            self._console.echo("Continuing without updating code")
            self._transition_to(SyncState.CONTINUE_UNCHANGED)
            return self._result(branch, commit)

        self._transition_to(SyncState.APPLY)
        self._console.echo("Pulling new code...")
        await self._git("pull", self.remote, branch)
        updated = await self.current_commit()
        self._console.echo(f"Code updated from {commit} to {updated}")

        self._transition_to(SyncState.RELAUNCH)
        return self._result(branch, commit, updated)

    def _result(
        self, branch: str, commit: str, updated: str | None = None
    ) -> SyncResult:
        """
        Build the result for the state the synchronization ended in.

        Raises:
            InternalError: If the current state is not a terminal one.
        """
        if self.state not in TERMINAL_STATES:
            raise InternalError(
                f"Code sync cannot end in state {self.state.value}",
                details={"state": self.state.value},
            )
        return SyncResult(
            state=self.state,
            branch=branch,
            commit=commit,
            updated_commit=updated,
        )
