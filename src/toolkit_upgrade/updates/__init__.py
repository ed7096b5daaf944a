"""
Upgrade procedure for the toolkit deployment.

This package implements:
- Version parsing, comparison and the persisted version record
- Guard against staying on retracted releases
- Renaming of deprecated environment variable prefixes
- Toolkit code synchronization with the git remote
- Managed service control and image pulls
- The orchestrator running the upgrade stages
"""

from toolkit_upgrade.updates.git_sync import GitSyncController, SyncResult, SyncState
from toolkit_upgrade.updates.images import (
    git_bridge_image_name,
    pull_image,
    server_image_name,
)
from toolkit_upgrade.updates.rebrand import EnvRebrander, RebrandResult
from toolkit_upgrade.updates.retraction import RETRACTED_VERSIONS, RetractionGuard
from toolkit_upgrade.updates.services import ServiceCoordinator
from toolkit_upgrade.updates.state_machine import (
    UpgradeOrchestrator,
    UpgradeOutcome,
    UpgradeResult,
    UpgradeSession,
    UpgradeStage,
)
from toolkit_upgrade.updates.version import (
    Comparison,
    Version,
    VersionRecord,
    compare_versions,
    is_newer,
    major_version,
    parse_version,
)

__all__ = [
    # Versions
    "Version",
    "VersionRecord",
    "Comparison",
    "parse_version",
    "compare_versions",
    "is_newer",
    "major_version",
    # Retraction
    "RetractionGuard",
    "RETRACTED_VERSIONS",
    # Rebrand
    "EnvRebrander",
    "RebrandResult",
    # Code sync
    "GitSyncController",
    "SyncResult",
    "SyncState",
    # Services and images
    "ServiceCoordinator",
    "server_image_name",
    "git_bridge_image_name",
    "pull_image",
    # Orchestration
    "UpgradeOrchestrator",
    "UpgradeOutcome",
    "UpgradeResult",
    "UpgradeSession",
    "UpgradeStage",
]
