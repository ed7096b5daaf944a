"""
Tests for the upgrade orchestrator.

Tests cover:
- Stage ordering and resumption
- Decline paths at every prompt
- The confirmed upgrade path (commit, rebrand, restart)
- Retracted version acknowledgement
- Image pulls and custom image warnings
- Collaborator failures
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from toolkit_upgrade.config import ToolkitConfig, UpgradeConfig
from toolkit_upgrade.errors import CollaboratorError, InternalError
from toolkit_upgrade.updates.git_sync import SyncResult, SyncState
from toolkit_upgrade.updates.images import COMMUNITY_IMAGE, GIT_BRIDGE_IMAGE
from toolkit_upgrade.updates.retraction import RETRACTED_VERSIONS
from toolkit_upgrade.updates.state_machine import (
    RESUMABLE_STAGES,
    UpgradeOrchestrator,
    UpgradeOutcome,
    UpgradeResult,
    UpgradeStage,
)

# =============================================================================
# Fixtures
# =============================================================================


def _git_sync(state: SyncState = SyncState.UP_TO_DATE) -> MagicMock:
    git_sync = MagicMock()
    git_sync.sync = AsyncMock(
        return_value=SyncResult(state=state, branch="master", commit="abc1234")
    )
    return git_sync


def _services(running: bool = False) -> MagicMock:
    services = MagicMock()
    services.is_running = AsyncMock(return_value=running)
    services.stop = AsyncMock()
    services.start = AsyncMock()
    return services


@pytest.fixture
def make_orchestrator(
    toolkit_config: ToolkitConfig,
) -> Callable[..., UpgradeOrchestrator]:
    """Factory for orchestrators with doubled git, services and image pulls."""

    def _make(
        console,
        *,
        config: ToolkitConfig | None = None,
        sync_state: SyncState = SyncState.UP_TO_DATE,
        running: bool = False,
        image_puller: AsyncMock | None = None,
    ) -> UpgradeOrchestrator:
        return UpgradeOrchestrator(
            config or toolkit_config,
            console,
            git_sync=_git_sync(sync_state),
            services=_services(running),
            image_puller=image_puller or AsyncMock(),
        )

    return _make


def _read(path: Path) -> str:
    return path.read_text().strip()


# =============================================================================
# Result Tests
# =============================================================================


class TestUpgradeResult:
    """Tests for UpgradeResult."""

    def test_exit_codes(self) -> None:
        """Test that only fatal outcomes exit non-zero."""
        assert UpgradeResult(outcome=UpgradeOutcome.SUCCESS).exit_code == 0
        assert UpgradeResult(outcome=UpgradeOutcome.DECLINED).exit_code == 0
        assert UpgradeResult(outcome=UpgradeOutcome.RELAUNCH).exit_code == 0
        assert UpgradeResult(outcome=UpgradeOutcome.FATAL).exit_code == 1

    def test_stage_values(self) -> None:
        """Test stage string values."""
        assert UpgradeStage.SYNC.value == "sync"
        assert UpgradeStage.RETRACTION_CHECK.value == "retraction_check"
        assert UpgradeStage.DONE.value == "done"
        assert RESUMABLE_STAGES == {UpgradeStage.SYNC, UpgradeStage.READ_VERSIONS}


# =============================================================================
# No-op and Decline Paths
# =============================================================================


class TestNoUpgrade:
    """Tests for runs where the version does not change."""

    @pytest.mark.asyncio
    async def test_same_version(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that an equal candidate ends the run successfully."""
        write_versions("4.2.0", "4.2.0")
        console = make_console()

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert result.exit_code == 0
        assert result.stage == UpgradeStage.DECIDE
        assert console.questions == []
        assert "No change to docker image version" in console.messages
        assert _read(toolkit_config.version_file) == "4.2.0"
        assert not toolkit_config.version_backup_file.exists()

    @pytest.mark.asyncio
    async def test_older_candidate(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that an older candidate is never offered."""
        write_versions("5.0.1", "4.2.0")
        console = make_console()

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert console.questions == []

    @pytest.mark.asyncio
    async def test_decline_upgrade(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that declining the upgrade keeps the current version."""
        write_versions("4.2.0", "5.0.0")
        console = make_console(False)
        orchestrator = make_orchestrator(console)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.DECLINED
        assert result.exit_code == 0
        assert result.stage == UpgradeStage.CONFIRM_UPGRADE
        assert "Keeping image version '4.2.0'" in console.messages
        assert _read(toolkit_config.version_file) == "4.2.0"
        orchestrator._services.is_running.assert_not_awaited()
        orchestrator._pull_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_services_running_and_stop_declined(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that refusing to stop services ends the run untouched."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, False)
        orchestrator = make_orchestrator(console, running=True)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.DECLINED
        assert result.exit_code == 0
        assert result.stage == UpgradeStage.STOP_SERVICES
        assert console.questions == ["Upgrade image?", "Stop docker services?"]
        assert _read(toolkit_config.version_file) == "4.2.0"
        orchestrator._services.stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_final_confirm_declined_offers_restart(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that stopped services are offered a restart after a late decline."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, True, False, True)
        orchestrator = make_orchestrator(console, running=True)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.DECLINED
        assert result.stage == UpgradeStage.FINAL_CONFIRM
        assert console.questions[-1] == "Start docker services again?"
        assert "Not proceeding with upgrade" in console.messages
        assert _read(toolkit_config.version_file) == "4.2.0"
        orchestrator._services.stop.assert_awaited_once()
        orchestrator._services.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_final_confirm_declined_without_stopped_services(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that no restart is offered when nothing was stopped."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, False)
        orchestrator = make_orchestrator(console, running=False)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.DECLINED
        assert console.questions == ["Upgrade image?", "Are you ready to continue?"]
        orchestrator._services.start.assert_not_awaited()


# =============================================================================
# Confirmed Upgrade Path
# =============================================================================


class TestConfirmedUpgrade:
    """Tests for the full upgrade path."""

    @pytest.mark.asyncio
    async def test_major_upgrade(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test a confirmed 4 -> 5 upgrade with running services."""
        write_versions("4.2.0", "5.0.0")
        toolkit_config.variables_env_file.write_text(
            "SHARELATEX_APP_NAME=Overleaf\nOTHER=1\n"
        )
        console = make_console(True, True, True, True)
        orchestrator = make_orchestrator(console, running=True)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert result.stage == UpgradeStage.DONE
        assert result.current_version == "4.2.0"
        assert result.candidate_version == "5.0.0"
        assert console.questions == [
            "Upgrade image?",
            "Stop docker services?",
            "Are you ready to continue?",
            "Start docker services again?",
        ]
        assert _read(toolkit_config.version_file) == "5.0.0"
        assert _read(toolkit_config.version_backup_file) == "4.2.0"
        assert toolkit_config.variables_env_file.read_text() == (
            "OVERLEAF_APP_NAME=Overleaf\nOTHER=1\n"
        )
        assert "major version update" in console.output
        orchestrator._services.stop.assert_awaited_once()
        orchestrator._services.start.assert_awaited_once()
        orchestrator._pull_image.assert_awaited_once_with(f"{COMMUNITY_IMAGE}:5.0.0")

    @pytest.mark.asyncio
    async def test_minor_upgrade_skips_rebrand_and_warning(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a minor upgrade neither warns nor renames variables."""
        write_versions("5.0.0", "5.1.0")
        toolkit_config.variables_env_file.write_text("SHARELATEX_APP_NAME=x\n")
        console = make_console(True, True)

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert _read(toolkit_config.version_file) == "5.1.0"
        assert "major version update" not in console.output
        assert toolkit_config.variables_env_file.read_text() == "SHARELATEX_APP_NAME=x\n"

    @pytest.mark.asyncio
    async def test_restart_declined(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that services stay stopped when the restart is refused."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, True, True, False)
        orchestrator = make_orchestrator(console, running=True)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert _read(toolkit_config.version_file) == "4.2.1"
        assert "Leaving docker services stopped" in console.messages
        orchestrator._services.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pull_disabled(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_root: Path,
    ) -> None:
        """Test that no image is pulled when pulling is disabled."""
        config = ToolkitConfig(
            toolkit_root=toolkit_root,
            upgrade=UpgradeConfig(pull_before_upgrade=False),
        )
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, True)
        orchestrator = make_orchestrator(console, config=config)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        orchestrator._pull_image.assert_not_awaited()
        assert "Skipping image pull" in console.output


# =============================================================================
# Retracted Version Tests
# =============================================================================


class TestRetractedVersion:
    """Tests for the retracted version acknowledgement."""

    @pytest.mark.asyncio
    async def test_keep_retracted_version_unacknowledged(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that staying on a retracted version without recovery is fatal."""
        write_versions("5.0.1", "5.0.3")
        console = make_console(False, False)
        orchestrator = make_orchestrator(console)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.exit_code == 1
        assert result.error is not None
        assert result.error["error_code"] == "unacknowledged_risk"
        assert RETRACTED_VERSIONS["5.0.1"] in console.output
        assert _read(toolkit_config.version_file) == "5.0.1"
        assert not toolkit_config.version_backup_file.exists()
        orchestrator._pull_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_keep_retracted_version_acknowledged(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that an acknowledged retracted version ends as a decline."""
        write_versions("5.0.1", "5.0.3")
        console = make_console(False, True)

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.DECLINED

    @pytest.mark.asyncio
    async def test_upgrade_from_retracted_unacknowledged(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that upgrading away still requires the recovery acknowledgement."""
        write_versions("5.0.1", "5.0.3")
        console = make_console(True, False)
        orchestrator = make_orchestrator(console)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.stage == UpgradeStage.RETRACTION_CHECK
        assert _read(toolkit_config.version_file) == "5.0.1"
        orchestrator._pull_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_override_skips_acknowledgement(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_root: Path,
    ) -> None:
        """Test that the skip override removes the recovery prompt."""
        config = ToolkitConfig(
            toolkit_root=toolkit_root,
            upgrade=UpgradeConfig(skip_retracted_version_check="5.0.1"),
        )
        write_versions("5.0.1", "5.0.3")
        console = make_console(True, True)

        result = await make_orchestrator(console, config=config).run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert "Have you completed the recovery process?" not in console.questions


# =============================================================================
# Image Tests
# =============================================================================


class TestImages:
    """Tests for custom image warnings and git-bridge pulls."""

    @pytest.mark.asyncio
    async def test_custom_image_warning(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test the warning when the override file sets an image."""
        write_versions("4.2.0", "4.2.1")
        toolkit_config.compose_override_file.write_text(
            "services:\n  sharelatex:\n    image: my/sharelatex:custom\n"
        )
        console = make_console(True, True)

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert "customized docker image" in console.output

    @pytest.mark.asyncio
    async def test_override_without_image(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that other overrides do not trigger the warning."""
        write_versions("4.2.0", "4.2.1")
        toolkit_config.compose_override_file.write_text(
            "services:\n  sharelatex:\n    environment:\n      A: b\n"
        )
        console = make_console(True, True)

        await make_orchestrator(console).run()

        assert "customized docker image" not in console.output

    @pytest.mark.asyncio
    async def test_unparseable_override_assumed_custom(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a broken override file is treated as customized."""
        write_versions("4.2.0", "4.2.1")
        toolkit_config.compose_override_file.write_text("services: [unclosed\n")
        console = make_console(True, True)

        await make_orchestrator(console).run()

        assert "could not parse" in console.output
        assert "customized docker image" in console.output

    @pytest.mark.asyncio
    async def test_git_bridge_pull(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_root: Path,
    ) -> None:
        """Test that the git-bridge image is pulled when enabled."""
        config = ToolkitConfig(
            toolkit_root=toolkit_root,
            upgrade=UpgradeConfig(server_pro=True, git_bridge_enabled=True),
        )
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, True)
        orchestrator = make_orchestrator(console, config=config)

        await orchestrator.run()

        pulled = [call.args[0] for call in orchestrator._pull_image.await_args_list]
        assert pulled[-1] == f"{GIT_BRIDGE_IMAGE}:4.2.1"
        assert len(pulled) == 2

    @pytest.mark.asyncio
    async def test_custom_git_bridge_pull_declined(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_root: Path,
    ) -> None:
        """Test that declining the custom git-bridge pull skips only that pull."""
        config = ToolkitConfig(
            toolkit_root=toolkit_root,
            upgrade=UpgradeConfig(
                git_bridge_enabled=True, git_bridge_image="my/git-bridge"
            ),
        )
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, False, True)
        orchestrator = make_orchestrator(console, config=config)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert console.questions[1] == "Pull my/git-bridge:4.2.1?"
        orchestrator._pull_image.assert_awaited_once_with(f"{COMMUNITY_IMAGE}:4.2.1")

    @pytest.mark.asyncio
    async def test_pull_failure_is_fatal(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a failed pull aborts before anything is written."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True)
        puller = AsyncMock(side_effect=CollaboratorError("pull access denied"))
        orchestrator = make_orchestrator(console, image_puller=puller)

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.stage == UpgradeStage.PULL_IMAGES
        assert "Error: pull access denied" in console.messages
        assert _read(toolkit_config.version_file) == "4.2.0"

    @pytest.mark.asyncio
    async def test_non_utf8_override_assumed_custom(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that an override file in another encoding does not abort the run."""
        write_versions("4.2.0", "4.2.1")
        toolkit_config.compose_override_file.write_bytes(
            b"services:\n  sharelatex:\n    environment:\n      NAME: caf\xe9\n"
        )
        console = make_console(True, True)

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.SUCCESS
        assert "could not parse" in console.output
        assert _read(toolkit_config.version_file) == "4.2.1"


# =============================================================================
# File Failure Tests
# =============================================================================


class TestFileFailures:
    """Tests for failures while reading or writing deployment files."""

    @pytest.mark.asyncio
    async def test_undecodable_version_record_is_fatal(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a binary version record ends the run with a diagnostic."""
        write_versions("4.2.0", "4.2.1")
        toolkit_config.version_file.write_bytes(b"\xff\xfe5.0.0\n")
        console = make_console()

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.error["error_code"] == "invalid_config"
        assert any(
            m.startswith("Error:") and str(toolkit_config.version_file) in m
            for m in console.messages
        )

    @pytest.mark.asyncio
    async def test_commit_failure_offers_restart(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that services stopped by the run are offered a restart on failure."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, True, True, True)
        orchestrator = make_orchestrator(console, running=True)

        with patch(
            "toolkit_upgrade.updates.version.shutil.copyfile",
            side_effect=PermissionError(13, "Permission denied"),
        ):
            result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.stage == UpgradeStage.COMMIT
        assert "Permission denied" in result.message
        assert console.questions[-1] == "Start docker services again?"
        orchestrator._services.start.assert_awaited_once()
        assert _read(toolkit_config.version_file) == "4.2.0"

    @pytest.mark.asyncio
    async def test_failure_without_stopped_services_offers_nothing(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that no restart is offered when the run stopped nothing."""
        write_versions("4.2.0", "4.2.1")
        console = make_console(True, True)
        orchestrator = make_orchestrator(console, running=False)

        with patch(
            "toolkit_upgrade.updates.version.shutil.copyfile",
            side_effect=PermissionError(13, "Permission denied"),
        ):
            result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert "Start docker services again?" not in console.questions
        orchestrator._services.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rebrand_failure_reports_original_error(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a failing restart does not hide the rebrand failure."""
        write_versions("4.2.0", "5.0.0")
        toolkit_config.variables_env_file.write_text("SHARELATEX_APP_NAME=x\n")
        console = make_console(True, True, True, True)
        orchestrator = make_orchestrator(console, running=True)
        orchestrator._services.start.side_effect = CollaboratorError(
            "Cannot connect to the Docker daemon"
        )

        with patch(
            "toolkit_upgrade.updates.rebrand.os.replace",
            side_effect=OSError(28, "No space left on device"),
        ):
            result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.stage == UpgradeStage.REBRAND
        assert "No space left on device" in result.message
        assert "Error: Cannot connect to the Docker daemon" in console.messages
        assert toolkit_config.variables_env_file.read_text() == "SHARELATEX_APP_NAME=x\n"
        assert _read(toolkit_config.version_file) == "5.0.0"

    @pytest.mark.asyncio
    async def test_failed_restart_is_offered_once(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a failing final restart is not offered a second time."""
        write_versions("4.2.0", "4.3.0")
        console = make_console(True, True, True, True)
        orchestrator = make_orchestrator(console, running=True)
        orchestrator._services.start.side_effect = CollaboratorError(
            "Cannot connect to the Docker daemon"
        )

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.stage == UpgradeStage.RESTART_SERVICES
        assert console.questions.count("Start docker services again?") == 1
        orchestrator._services.start.assert_awaited_once()
        assert _read(toolkit_config.version_file) == "4.3.0"


# =============================================================================
# Sync and Resume Tests
# =============================================================================


class TestSyncAndResume:
    """Tests for code sync handling and resumption."""

    @pytest.mark.asyncio
    async def test_relaunch_after_code_update(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that pulled code ends the run with a relaunch request."""
        write_versions("4.2.0", "5.0.0")
        console = make_console()

        result = await make_orchestrator(console, sync_state=SyncState.RELAUNCH).run()

        assert result.outcome == UpgradeOutcome.RELAUNCH
        assert result.stage == UpgradeStage.SYNC
        assert result.candidate_version is None
        assert console.questions == []

    @pytest.mark.asyncio
    async def test_resume_skips_sync(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that resuming at read_versions never checks for code updates."""
        write_versions("4.2.0", "4.2.0")
        console = make_console()
        orchestrator = make_orchestrator(console, sync_state=SyncState.RELAUNCH)

        result = await orchestrator.run(resume_at=UpgradeStage.READ_VERSIONS)

        assert result.outcome == UpgradeOutcome.SUCCESS
        orchestrator._git_sync.sync.assert_not_awaited()
        assert "Skipping code update check" in console.messages

    @pytest.mark.asyncio
    async def test_invalid_resume_stage(
        self, make_orchestrator: Callable, make_console: Callable
    ) -> None:
        """Test that only the resumable stages are accepted."""
        orchestrator = make_orchestrator(make_console())
        with pytest.raises(InternalError):
            await orchestrator.run(resume_at=UpgradeStage.COMMIT)

    @pytest.mark.asyncio
    async def test_sync_failure_is_fatal(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
    ) -> None:
        """Test that a git failure ends the run as fatal."""
        orchestrator = make_orchestrator(make_console())
        orchestrator._git_sync.sync.side_effect = CollaboratorError(
            "fatal: unable to access remote"
        )

        result = await orchestrator.run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.error["error_code"] == "collaborator_failed"

    @pytest.mark.asyncio
    async def test_missing_version_record_is_fatal(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        toolkit_config: ToolkitConfig,
    ) -> None:
        """Test that a missing seed version is reported as configuration error."""
        (toolkit_config.version_file).write_text("4.2.0\n")
        console = make_console()

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert result.stage == UpgradeStage.READ_VERSIONS
        assert result.error["error_code"] == "invalid_config"

    @pytest.mark.asyncio
    async def test_invalid_version_is_fatal(
        self,
        make_orchestrator: Callable,
        make_console: Callable,
        write_versions: Callable,
    ) -> None:
        """Test that a malformed version aborts with the offending text."""
        write_versions("4.2", "5.0.0")
        console = make_console()

        result = await make_orchestrator(console).run()

        assert result.outcome == UpgradeOutcome.FATAL
        assert "'4.2'" in result.message


# =============================================================================
# Stage Transition Tests
# =============================================================================


class TestStageTransitions:
    """Tests for stage ordering."""

    def test_backwards_transition_rejected(
        self, make_orchestrator: Callable, make_console: Callable
    ) -> None:
        """Test that stages only move forward."""
        orchestrator = make_orchestrator(make_console())
        orchestrator._enter(UpgradeStage.DECIDE)

        with pytest.raises(InternalError) as exc_info:
            orchestrator._enter(UpgradeStage.SYNC)
        assert exc_info.value.details["current_stage"] == "decide"

    def test_repeated_stage_rejected(
        self, make_orchestrator: Callable, make_console: Callable
    ) -> None:
        """Test that a stage cannot be entered twice."""
        orchestrator = make_orchestrator(make_console())
        orchestrator._enter(UpgradeStage.COMMIT)

        with pytest.raises(InternalError):
            orchestrator._enter(UpgradeStage.COMMIT)

    def test_skipping_forward_allowed(
        self, make_orchestrator: Callable, make_console: Callable
    ) -> None:
        """Test that later stages may be entered directly."""
        orchestrator = make_orchestrator(make_console())
        orchestrator._enter(UpgradeStage.READ_VERSIONS)
        orchestrator._enter(UpgradeStage.DONE)
        assert orchestrator.session.stage == UpgradeStage.DONE
