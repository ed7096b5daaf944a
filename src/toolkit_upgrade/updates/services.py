"""
Managed service control for the upgrade procedure.

The deployment's containers are controlled as a unit through the toolkit's
docker-compose wrapper. This module only issues the commands; when to stop
and restart is decided by the orchestrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolkit_upgrade.logging import get_logger
from toolkit_upgrade.process import check_command

if TYPE_CHECKING:
    from toolkit_upgrade.config import ToolkitConfig

logger = get_logger(__name__)


class ServiceCoordinator:
    """
    Queries, stops and starts the managed services.

    Attributes:
        compose_command: Command prefix for docker-compose invocations.
        cwd: Working directory the commands run in (the toolkit root).
    """

    def __init__(self, config: ToolkitConfig) -> None:
        self.compose_command = config.compose_command
        self.cwd = config.toolkit_root

    async def _compose(self, *args: str) -> str:
        result = await check_command(*self.compose_command, *args, cwd=self.cwd)
        return result.stdout

    async def is_running(self) -> bool:
        """
        Check whether any managed service is running.

        Returns:
            True if ``docker-compose top`` lists any process.

        Raises:
            CollaboratorError: If docker-compose fails.
        """
        output = await self._compose("top")
        running = bool(output.strip())
        logger.debug("Queried managed services", extra={"running": running})
        return running

    async def stop(self) -> None:
        """Stop the managed services."""
        logger.info("Stopping managed services")
        await self._compose("stop")
        logger.info("Managed services stopped")

    async def start(self) -> None:
        """Start the managed services in the background."""
        logger.info("Starting managed services")
        await self._compose("up", "-d")
        logger.info("Managed services started")
