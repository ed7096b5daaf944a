"""
Container image names and pulls.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolkit_upgrade.logging import get_logger
from toolkit_upgrade.process import check_command

if TYPE_CHECKING:
    from toolkit_upgrade.config import UpgradeConfig
    from toolkit_upgrade.updates.version import Version

logger = get_logger(__name__)

COMMUNITY_IMAGE = "sharelatex/sharelatex"
SERVER_PRO_IMAGE = "quay.io/sharelatex/sharelatex-pro"
GIT_BRIDGE_IMAGE = "quay.io/sharelatex/git-bridge"


def server_image_name(config: UpgradeConfig, version: Version | str) -> str:
    """
    Build the application image reference for a version.

    A custom image name takes precedence, then Server Pro, then the
    community image.
    """
    if config.image_name:
        name = config.image_name
    elif config.server_pro:
        name = SERVER_PRO_IMAGE
    else:
        name = COMMUNITY_IMAGE
    return f"{name}:{version}"


def git_bridge_image_name(config: UpgradeConfig, version: Version | str) -> str:
    """Build the git-bridge image reference for a version."""
    name = config.git_bridge_image or GIT_BRIDGE_IMAGE
    return f"{name}:{version}"


async def pull_image(image: str) -> None:
    """
    Pull an image with docker.

    Raises:
        CollaboratorError: If the pull fails.
    """
    logger.info("Pulling image", extra={"image": image})
    await check_command("docker", "pull", image)
    logger.info("Pulled image", extra={"image": image})
