"""
Version parsing, comparison and the persisted version record.

This module implements:
- The canonical version grammar MAJOR.MINOR.PATCH[-RCn][-variant]
- Structured numeric comparison (never string comparison)
- Reading the current and candidate version records
- Backup-then-overwrite of the current version record

Ordering of versions with equal MAJOR.MINOR.PATCH:
- a final release sorts after any release candidate of it
- release candidates order by number; a bare "RC" sorts before "RC0"
- a version without variant sorts before the same version with one
- variants order lexicographically
"""

from __future__ import annotations

import os
import re
import shutil
from enum import IntEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from toolkit_upgrade.errors import ConfigError
from toolkit_upgrade.logging import get_logger

logger = get_logger(__name__)

# Accepts: 5.0.0, 10.2.13, 5.0.0-RC, 5.0.0-RC2, 4.2.1-with-texlive-full,
# 5.1.0-RC1-with-texlive-full
VERSION_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>RC(?:0|[1-9]\d*)?))?"
    r"(?:-(?P<variant>(?![Rr][Cc]\d*$)[a-z][a-z0-9]*(?:-[a-z0-9]+)*))?$"
)

VERSION_FORMAT = "MAJOR.MINOR.PATCH[-RCn][-variant]"


class Comparison(IntEnum):
    """Result of comparing two versions."""

    LESS = -1
    EQUAL = 0
    GREATER = 1


class Version(BaseModel):
    """
    A parsed, immutable application version.

    Attributes:
        major: Major version number.
        minor: Minor version number.
        patch: Patch version number.
        prerelease: Release-candidate tag ("RC" or "RC<n>"), if any.
        variant: Build-flavour suffix (e.g., "with-texlive-full"), if any.
    """

    model_config = ConfigDict(frozen=True)

    major: int = Field(..., ge=0)
    minor: int = Field(..., ge=0)
    patch: int = Field(..., ge=0)
    prerelease: str | None = None
    variant: str | None = None

    @property
    def rc_number(self) -> int | None:
        """Release-candidate number; None for a bare "RC" or a final release."""
        if self.prerelease is None or self.prerelease == "RC":
            return None
        return int(self.prerelease[2:])

    def sort_key(self) -> tuple[int, int, int, int, int, int, str]:
        """Key implementing the ordering described in the module docstring."""
        if self.prerelease is None:
            release_rank, rc_rank = 1, 0
        else:
            rc_number = self.rc_number
            release_rank, rc_rank = 0, -1 if rc_number is None else rc_number
        return (
            self.major,
            self.minor,
            self.patch,
            release_rank,
            rc_rank,
            0 if self.variant is None else 1,
            self.variant or "",
        )

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease is not None:
            text += f"-{self.prerelease}"
        if self.variant is not None:
            text += f"-{self.variant}"
        return text


def parse_version(text: str) -> Version:
    """
    Parse and validate a version string.

    Args:
        text: Version text; surrounding whitespace is ignored.

    Returns:
        The parsed Version.

    Raises:
        ConfigError: If the text does not match the canonical grammar.
    """
    if text is None or not text.strip():
        raise ConfigError(
            "Version string cannot be empty",
            details={"version": text, "format": VERSION_FORMAT},
        )

    candidate = text.strip()
    match = VERSION_PATTERN.match(candidate)
    if not match:
        raise ConfigError(
            f"Invalid version: '{candidate}'",
            details={
                "version": candidate,
                "format": VERSION_FORMAT,
                "examples": ["5.0.3", "5.1.0-RC2", "4.2.8-with-texlive-full"],
            },
        )

    return Version(
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=match.group("prerelease"),
        variant=match.group("variant"),
    )


def _as_version(value: Version | str) -> Version:
    return value if isinstance(value, Version) else parse_version(value)


def compare_versions(a: Version | str, b: Version | str) -> Comparison:
    """
    Compare two versions.

    Args:
        a: First version (parsed or text).
        b: Second version (parsed or text).

    Returns:
        Comparison.LESS, Comparison.EQUAL or Comparison.GREATER.

    Raises:
        ConfigError: If either version text is invalid.
    """
    key_a = _as_version(a).sort_key()
    key_b = _as_version(b).sort_key()

    if key_a < key_b:
        return Comparison.LESS
    if key_a > key_b:
        return Comparison.GREATER
    return Comparison.EQUAL


def is_newer(candidate: Version | str, current: Version | str) -> bool:
    """Return True if candidate is strictly newer than current."""
    return compare_versions(candidate, current) == Comparison.GREATER


def major_version(version: Version | str) -> int:
    """Return the major component of a version."""
    return _as_version(version).major


# =============================================================================
# Version Record
# =============================================================================


class VersionRecord:
    """
    The deployment's persisted version files.

    Attributes:
        version_file: Current version record (e.g., config/version).
        seed_file: Candidate version shipped with the toolkit
            (e.g., lib/config-seed/version).
        backup_file: Where the current record is copied before being
            overwritten (e.g., config/__old-version).
    """

    def __init__(
        self,
        version_file: Path | str,
        seed_file: Path | str,
        backup_file: Path | str,
    ) -> None:
        self.version_file = Path(version_file)
        self.seed_file = Path(seed_file)
        self.backup_file = Path(backup_file)

    @staticmethod
    def _read_first_line(path: Path) -> str:
        """
        Read the first line of a version file.

        Raises:
            ConfigError: If the file is missing, unreadable, not text or empty.
        """
        try:
            with open(path, encoding="utf-8") as f:
                line = f.readline().strip()
        except OSError as e:
            raise ConfigError(
                f"Cannot read version file {path}: {e.strerror or e}",
                details={"path": str(path)},
            ) from e
        except UnicodeDecodeError as e:
            raise ConfigError(
                f"Version file {path} is not valid UTF-8 text",
                details={"path": str(path), "position": e.start},
            ) from e

        if not line:
            raise ConfigError(
                f"Version file {path} is empty",
                details={"path": str(path)},
            )
        return line

    def read_current(self) -> Version:
        """Read and parse the current version record."""
        version = parse_version(self._read_first_line(self.version_file))
        logger.debug(
            "Read current version",
            extra={"path": str(self.version_file), "version": str(version)},
        )
        return version

    def read_candidate(self) -> Version:
        """Read and parse the candidate (seed) version record."""
        version = parse_version(self._read_first_line(self.seed_file))
        logger.debug(
            "Read candidate version",
            extra={"path": str(self.seed_file), "version": str(version)},
        )
        return version

    def commit(self, candidate: Version) -> None:
        """
        Replace the current version record with the candidate.

        The current record is copied to backup_file first, then the record is
        overwritten with an atomic write (temp file, fsync, rename), so a
        failed overwrite always leaves either the old record or its backup.

        Args:
            candidate: The version to persist.

        Raises:
            ConfigError: If the backup or the overwrite fails; the record is
                left as it was.
        """
        try:
            shutil.copyfile(self.version_file, self.backup_file)
        except OSError as e:
            raise ConfigError(
                f"Cannot back up version file {self.version_file} to "
                f"{self.backup_file}: {e.strerror or e}",
                details={"path": str(self.version_file), "backup": str(self.backup_file)},
            ) from e
        logger.info(
            "Backed up version record",
            extra={"path": str(self.version_file), "backup": str(self.backup_file)},
        )

        temp_path = self.version_file.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                f.write(f"{candidate}\n")
                f.flush()
                os.fsync(f.fileno())

            temp_path.rename(self.version_file)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ConfigError(
                f"Cannot write version file {self.version_file}: {e.strerror or e}",
                details={"path": str(self.version_file)},
            ) from e

        logger.info(
            "Version record updated",
            extra={"path": str(self.version_file), "new_version": str(candidate)},
        )
