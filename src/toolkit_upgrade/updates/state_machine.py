"""
Upgrade orchestration for the toolkit deployment.

This module implements the UpgradeOrchestrator, which decides whether and how
to move the deployment's persisted version to the one shipped with the
toolkit.

Stages run strictly in order and any of them may end the run:
- sync: check for toolkit code updates (skipped when resuming)
- read_versions: parse candidate and current version records
- decide: stop if the candidate is not newer
- major_warning: advise about breaking changes on a major bump
- confirm_upgrade: ask to upgrade; on decline, check the current version
  against the retracted releases and stop
- custom_image_warning: warn when the compose override sets custom images
- retraction_check: require recovery acknowledgement for a retracted version
- pull_images: pull the new application (and git-bridge) images
- stop_services: stop running services, or stop the run if refused
- backup_reminder: advise taking a backup
- final_confirm: last chance to stop before anything is written
- commit: back up and overwrite the version record
- rebrand: rename deprecated environment variables on the 4 -> 5 boundary
- restart_services: offer to start services the run itself stopped
- done
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field

from toolkit_upgrade.errors import InternalError, UpgradeError
from toolkit_upgrade.logging import get_logger
from toolkit_upgrade.updates.git_sync import GitSyncController
from toolkit_upgrade.updates.images import (
    git_bridge_image_name,
    pull_image,
    server_image_name,
)
from toolkit_upgrade.updates.rebrand import EnvRebrander
from toolkit_upgrade.updates.retraction import RetractionGuard
from toolkit_upgrade.updates.services import ServiceCoordinator
from toolkit_upgrade.updates.version import (
    Version,
    VersionRecord,
    is_newer,
    major_version,
)

if TYPE_CHECKING:
    from toolkit_upgrade.config import ToolkitConfig
    from toolkit_upgrade.console import Console

logger = get_logger(__name__)

RELEASE_NOTES_URL = "https://github.com/overleaf/overleaf/wiki#release-notes"
BACKUP_DOCS_URL = "https://github.com/overleaf/overleaf/wiki/Data-and-Backups"

# Environment variables were renamed when crossing into this major version
REBRAND_MAJOR_VERSION = 5
REBRAND_OLD_PREFIX = "SHARELATEX_"
REBRAND_NEW_PREFIX = "OVERLEAF_"


class UpgradeStage(str, Enum):
    """Stages of an upgrade run, in execution order."""

    SYNC = "sync"
    READ_VERSIONS = "read_versions"
    DECIDE = "decide"
    MAJOR_WARNING = "major_warning"
    CONFIRM_UPGRADE = "confirm_upgrade"
    CUSTOM_IMAGE_WARNING = "custom_image_warning"
    RETRACTION_CHECK = "retraction_check"
    PULL_IMAGES = "pull_images"
    STOP_SERVICES = "stop_services"
    BACKUP_REMINDER = "backup_reminder"
    FINAL_CONFIRM = "final_confirm"
    COMMIT = "commit"
    REBRAND = "rebrand"
    RESTART_SERVICES = "restart_services"
    DONE = "done"


_STAGE_ORDER: list[UpgradeStage] = list(UpgradeStage)

# A run may start from the top or resume right after a code update
RESUMABLE_STAGES = frozenset({UpgradeStage.SYNC, UpgradeStage.READ_VERSIONS})


class UpgradeOutcome(str, Enum):
    """How an upgrade run ended."""

    SUCCESS = "success"
    DECLINED = "declined"
    FATAL = "fatal"
    RELAUNCH = "relaunch"


class UpgradeSession(BaseModel):
    """
    In-memory state of a single run. Never persisted.
    """

    stage: UpgradeStage | None = Field(
        default=None,
        description="Stage currently executing",
    )
    current_version: str | None = Field(
        default=None,
        description="Version from the persisted record",
    )
    candidate_version: str | None = Field(
        default=None,
        description="Version shipped with the toolkit",
    )
    current_branch: str | None = Field(
        default=None,
        description="Branch of the toolkit checkout",
    )
    services_were_running: bool = Field(
        default=False,
        description="Services were stopped by this run",
    )
    restart_offered: bool = Field(
        default=False,
        description="Operator was already asked to start services again",
    )
    upgrade_confirmed: bool = Field(
        default=False,
        description="Operator agreed to upgrade",
    )
    pull_before_upgrade: bool = Field(
        default=True,
        description="Pull new images before switching versions",
    )


class UpgradeResult(BaseModel):
    """Result of an upgrade run."""

    outcome: UpgradeOutcome
    stage: UpgradeStage | None = None
    current_version: str | None = None
    candidate_version: str | None = None
    message: str | None = None
    error: dict[str, Any] | None = None

    @property
    def exit_code(self) -> int:
        """Process exit status: non-zero only for fatal runs."""
        return 1 if self.outcome == UpgradeOutcome.FATAL else 0


class UpgradeOrchestrator:
    """
    Runs the upgrade decision sequence.

    Collaborators default to the real implementations built from the
    configuration; tests inject doubles.

    Attributes:
        config: Toolkit configuration, fixed for the whole run.
        session: State of the current (or last) run.
    """

    def __init__(
        self,
        config: ToolkitConfig,
        console: Console,
        *,
        git_sync: GitSyncController | None = None,
        services: ServiceCoordinator | None = None,
        rebrander: EnvRebrander | None = None,
        guard: RetractionGuard | None = None,
        version_record: VersionRecord | None = None,
        image_puller: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config
        self._console = console
        self._git_sync = git_sync or GitSyncController(config, console)
        self._services = services or ServiceCoordinator(config)
        self._rebrander = rebrander or EnvRebrander(console)
        self._guard = guard or RetractionGuard(
            console, skip_version=config.upgrade.skip_retracted_version_check
        )
        self._version_record = version_record or VersionRecord(
            version_file=config.version_file,
            seed_file=config.seed_version_file,
            backup_file=config.version_backup_file,
        )
        self._pull_image = image_puller or pull_image
        self.session = UpgradeSession()

    def _enter(self, stage: UpgradeStage) -> None:
        """
        Move to the next stage.

        Raises:
            InternalError: If the stage does not come after the current one.
        """
        current = self.session.stage
        if current is not None and _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(
            current
        ):
            raise InternalError(
                f"Invalid stage transition from {current.value} to {stage.value}",
                details={"current_stage": current.value, "target_stage": stage.value},
            )

        logger.info(
            f"Stage: {current.value if current else 'start'} -> {stage.value}",
            extra={
                "old_stage": current.value if current else None,
                "new_stage": stage.value,
                "current_version": self.session.current_version,
                "candidate_version": self.session.candidate_version,
            },
        )
        self.session.stage = stage

    def _finish(
        self,
        outcome: UpgradeOutcome,
        message: str | None = None,
        error: UpgradeError | None = None,
    ) -> UpgradeResult:
        result = UpgradeResult(
            outcome=outcome,
            stage=self.session.stage,
            current_version=self.session.current_version,
            candidate_version=self.session.candidate_version,
            message=message,
            error=error.to_dict() if error else None,
        )
        logger.info(
            f"Upgrade run finished: {outcome.value}",
            extra={
                "outcome": outcome.value,
                "stage": result.stage.value if result.stage else None,
            },
        )
        return result

    async def run(self, resume_at: UpgradeStage = UpgradeStage.SYNC) -> UpgradeResult:
        """
        Run the upgrade from the given stage to completion.

        Args:
            resume_at: SYNC for a fresh run, READ_VERSIONS to skip the code
                update check (used after a relaunch).

        Returns:
            UpgradeResult. RELAUNCH means new toolkit code was pulled and the
            caller must start a new run with resume_at=READ_VERSIONS.

        Raises:
            InternalError: If resume_at is not a resumable stage.
        """
        if resume_at not in RESUMABLE_STAGES:
            raise InternalError(
                f"Cannot resume an upgrade at stage {resume_at.value}",
                details={"valid_stages": sorted(s.value for s in RESUMABLE_STAGES)},
            )

        self.session = UpgradeSession(
            pull_before_upgrade=self.config.upgrade.pull_before_upgrade
        )

        try:
            return await self._run_stages(resume_at)
        except UpgradeError as e:
            logger.error(
                "Upgrade aborted",
                extra={
                    "error_code": e.error_code,
                    "error": e.message,
                    "stage": self.session.stage.value if self.session.stage else None,
                },
            )
            self._console.echo(f"Error: {e.message}")
            await self._offer_restart_after_failure()
            return self._finish(UpgradeOutcome.FATAL, e.message, error=e)

    async def _run_stages(self, resume_at: UpgradeStage) -> UpgradeResult:
        session = self.session

        if resume_at == UpgradeStage.SYNC:
            self._enter(UpgradeStage.SYNC)
            sync_result = await self._git_sync.sync()
            session.current_branch = sync_result.branch
            if sync_result.relaunch_requested:
                self._console.echo("Relaunching upgrade after code update")
                return self._finish(UpgradeOutcome.RELAUNCH, "Toolkit code updated")
        else:
            self._console.echo("Skipping code update check")

        self._enter(UpgradeStage.READ_VERSIONS)
        candidate = self._version_record.read_candidate()
        session.candidate_version = str(candidate)
        current = self._version_record.read_current()
        session.current_version = str(current)

        self._enter(UpgradeStage.DECIDE)
        if not is_newer(candidate, current):
            self._console.echo("No change to docker image version")
            return self._finish(UpgradeOutcome.SUCCESS, "No change to image version")

        self._console.echo(f"New docker image version available ({candidate})")
        self._console.echo(
            f"Current image version is '{current}' (from config/version)"
        )

        self._enter(UpgradeStage.MAJOR_WARNING)
        if major_version(candidate) > major_version(current):
            self._console.echo(
                "WARNING: this is a major version update, please check the "
                "release notes for breaking changes before proceeding:"
            )
            self._console.echo(f"* {RELEASE_NOTES_URL}")

        self._enter(UpgradeStage.CONFIRM_UPGRADE)
        if not self._console.confirm("Upgrade image?"):
            self._console.echo(f"Keeping image version '{current}'")
            self._guard.check(current)
            return self._finish(UpgradeOutcome.DECLINED, "Upgrade declined")
        session.upgrade_confirmed = True
        self._console.echo(
            f"Upgrading config/version from {current} to {candidate}"
        )

        self._enter(UpgradeStage.CUSTOM_IMAGE_WARNING)
        if self._uses_custom_image():
            self._console.echo(
                "WARNING: you are using a customized docker image, the server "
                "may not work as expected after the upgrade."
            )

        self._enter(UpgradeStage.RETRACTION_CHECK)
        self._guard.check(current)

        self._enter(UpgradeStage.PULL_IMAGES)
        if session.pull_before_upgrade:
            await self._pull_images(candidate)
        else:
            self._console.echo("Skipping image pull (PULL_BEFORE_UPGRADE is false)")

        self._enter(UpgradeStage.STOP_SERVICES)
        if await self._services.is_running():
            self._console.echo("Docker services are up, stop them now?")
            if not self._console.confirm("Stop docker services?"):
                self._console.echo("Exiting without stopping services")
                return self._finish(
                    UpgradeOutcome.DECLINED, "Services must be stopped to upgrade"
                )
            self._console.echo("Stopping docker services")
            await self._services.stop()
            session.services_were_running = True

        self._enter(UpgradeStage.BACKUP_REMINDER)
        self._console.echo(
            f"Please take a backup of your data before proceeding, see {BACKUP_DOCS_URL}"
        )

        self._enter(UpgradeStage.FINAL_CONFIRM)
        if not self._console.confirm("Are you ready to continue?"):
            self._console.echo("Not proceeding with upgrade")
            await self._offer_restart()
            return self._finish(UpgradeOutcome.DECLINED, "Upgrade not confirmed")

        self._enter(UpgradeStage.COMMIT)
        self._console.echo(
            f"Backing up old version file to {self.config.version_backup_file.name}"
        )
        self._console.echo(f"Over-writing config/version with {candidate}")
        self._version_record.commit(candidate)

        self._enter(UpgradeStage.REBRAND)
        if self._crosses_rebrand_boundary(current, candidate):
            self._rebrander.rebrand(
                self.config.variables_env_file,
                REBRAND_OLD_PREFIX,
                REBRAND_NEW_PREFIX,
                silent_if_no_match=True,
            )

        self._enter(UpgradeStage.RESTART_SERVICES)
        await self._offer_restart()

        self._enter(UpgradeStage.DONE)
        return self._finish(UpgradeOutcome.SUCCESS, f"Upgraded to {candidate}")

    @staticmethod
    def _crosses_rebrand_boundary(current: Version, candidate: Version) -> bool:
        return current.major < REBRAND_MAJOR_VERSION <= candidate.major

    def _uses_custom_image(self) -> bool:
        """Check whether the compose override file sets any service image."""
        path = self.config.compose_override_file
        if not path.exists():
            return False

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, UnicodeDecodeError, OSError) as e:
            logger.warning(
                "Cannot parse compose override file",
                extra={"path": str(path), "error": str(e)},
            )
            self._console.echo(
                f"Warning: could not parse {path.name}, assuming it customizes images"
            )
            return True

        services = data.get("services") if isinstance(data, dict) else None
        if not isinstance(services, dict):
            return False
        return any(
            isinstance(service, dict) and "image" in service
            for service in services.values()
        )

    async def _pull_images(self, candidate: Version) -> None:
        upgrade = self.config.upgrade

        self._console.echo("Pulling new images")
        await self._pull_image(server_image_name(upgrade, candidate))

        if not upgrade.git_bridge_enabled:
            return

        image = git_bridge_image_name(upgrade, candidate)
        if upgrade.git_bridge_image:
            self._console.echo(
                f"WARNING: you are using a custom git-bridge image ({upgrade.git_bridge_image})"
            )
            if not self._console.confirm(f"Pull {image}?"):
                self._console.echo("Skipping git-bridge image pull")
                return
        await self._pull_image(image)

    async def _offer_restart(self) -> None:
        """Offer to start services once, and only if this run stopped them."""
        if not self.session.services_were_running or self.session.restart_offered:
            return
        self.session.restart_offered = True
        if self._console.confirm("Start docker services again?"):
            self._console.echo("Starting docker services")
            await self._services.start()
        else:
            self._console.echo("Leaving docker services stopped")

    async def _offer_restart_after_failure(self) -> None:
        """Offer the restart on the fatal path without masking the original error."""
        try:
            await self._offer_restart()
        except UpgradeError as e:
            logger.error(
                "Restart after failure did not succeed",
                extra={"error_code": e.error_code, "error": e.message},
            )
            self._console.echo(f"Error: {e.message}")
