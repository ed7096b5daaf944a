"""
Guard against staying on a retracted release.

A retracted release shipped with a critical data-loss defect. Operators still
running one must confirm they completed the documented recovery procedure
before the upgrade procedure carries on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolkit_upgrade.errors import UnacknowledgedRiskError
from toolkit_upgrade.logging import get_logger
from toolkit_upgrade.updates.version import Version

if TYPE_CHECKING:
    from toolkit_upgrade.console import Console

logger = get_logger(__name__)

# Exact version text -> recovery procedure
RETRACTED_VERSIONS: dict[str, str] = {
    "5.0.1": "https://github.com/overleaf/overleaf/wiki/Doc-version-recovery",
}


class RetractionGuard:
    """
    Checks a version against the retracted releases.

    Attributes:
        skip_version: Retracted version the operator already acknowledged
            (SKIP_RETRACTED_VERSION_CHECK); the guard is silent for it only.
        retracted: Mapping of retracted version text to recovery reference.
    """

    def __init__(
        self,
        console: Console,
        skip_version: str | None = None,
        retracted: dict[str, str] | None = None,
    ) -> None:
        self._console = console
        self.skip_version = skip_version.strip() if skip_version else None
        self.retracted = dict(RETRACTED_VERSIONS if retracted is None else retracted)

    def should_warn(self, version: Version | str) -> bool:
        """Return True if the version is retracted and not explicitly skipped."""
        text = str(version).strip()
        if text not in self.retracted:
            return False
        if self.skip_version == text:
            logger.info(
                "Retracted version warning suppressed",
                extra={"version": text},
            )
            return False
        return True

    def check(self, version: Version | str) -> None:
        """
        Require acknowledgement of the recovery procedure for a retracted version.

        Args:
            version: The version the deployment is (still) running.

        Raises:
            UnacknowledgedRiskError: If the operator does not explicitly
                confirm the recovery procedure was completed.
        """
        if not self.should_warn(version):
            return

        text = str(version).strip()
        recovery = self.retracted[text]

        self._console.echo("-------------------  WARNING  ----------------------")
        self._console.echo(f"  You are currently using version {text}.")
        self._console.echo(
            f"  Version {text} has been retracted due to a critical bug that"
        )
        self._console.echo("  can cause data loss.")
        self._console.echo("  Please follow the recovery procedure at:")
        self._console.echo(f"  {recovery}")
        self._console.echo("----------------------------------------------------")

        logger.warning(
            "Deployment is on a retracted version",
            extra={"version": text, "recovery": recovery},
        )

        if not self._console.confirm("Have you completed the recovery process?"):
            raise UnacknowledgedRiskError(
                f"Recovery for retracted version {text} was not confirmed; "
                f"see {recovery}",
                details={"version": text, "recovery": recovery},
            )

        logger.info("Retracted version acknowledged", extra={"version": text})
