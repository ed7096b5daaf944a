"""
Renaming of deprecated environment variable prefixes.

Rewrites keys of a KEY=VALUE environment file from an old prefix to a new one
(e.g., SHARELATEX_ to OVERLEAF_). Values, comments, blank lines and line order
are preserved. A copy of the original is kept as ``__old-<name>.<timestamp>``
and the file itself is replaced atomically.
"""

from __future__ import annotations

import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from toolkit_upgrade.errors import ConfigError
from toolkit_upgrade.logging import get_logger

if TYPE_CHECKING:
    from toolkit_upgrade.console import Console

logger = get_logger(__name__)

# Optional "export", the key, and everything from "=" on
_KEY_LINE = re.compile(r"^(?P<lead>\s*(?:export\s+)?)(?P<key>[^=\s#]+)(?P<rest>\s*=.*)$", re.S)


class RebrandResult(BaseModel):
    """Outcome of a rebrand pass."""

    path: str = Field(..., description="Environment file that was scanned")
    changed_lines: int = Field(default=0, description="Number of keys renamed")
    backup_path: str | None = Field(
        default=None,
        description="Copy of the original file, when it was rewritten",
    )


def rebrand_line(line: str, old_prefix: str, new_prefix: str) -> str:
    """
    Rename the key of a single line if it starts with old_prefix.

    Lines that are not KEY=VALUE pairs are returned unchanged.
    """
    match = _KEY_LINE.match(line)
    if not match or not match.group("key").startswith(old_prefix):
        return line
    key = new_prefix + match.group("key")[len(old_prefix) :]
    return f"{match.group('lead')}{key}{match.group('rest')}"


class EnvRebrander:
    """Rewrites deprecated key prefixes in environment files."""

    def __init__(self, console: Console) -> None:
        self._console = console

    def rebrand(
        self,
        path: Path | str,
        old_prefix: str,
        new_prefix: str,
        silent_if_no_match: bool = False,
    ) -> RebrandResult:
        """
        Rename keys starting with old_prefix to start with new_prefix.

        Running it again after a successful pass finds nothing to rename and
        leaves the file untouched.

        Args:
            path: Environment file to rewrite in place.
            old_prefix: Deprecated key prefix.
            new_prefix: Replacement key prefix.
            silent_if_no_match: Suppress the notice when no key matches.

        Returns:
            RebrandResult describing what changed.

        Raises:
            ConfigError: If the file cannot be read, backed up or rewritten.
        """
        path = Path(path)
        result = RebrandResult(path=str(path))

        lines: list[str] = []
        try:
            if path.exists():
                # surrogateescape keeps bytes that are not UTF-8 as they were
                with open(path, encoding="utf-8", errors="surrogateescape") as f:
                    lines = f.readlines()
        except OSError as e:
            raise ConfigError(
                f"Cannot read {path}: {e.strerror or e}",
                details={"path": str(path)},
            ) from e

        rewritten = [rebrand_line(line, old_prefix, new_prefix) for line in lines]
        changed = sum(1 for old, new in zip(lines, rewritten) if old != new)

        if changed == 0:
            logger.debug(
                "No deprecated keys found",
                extra={"path": str(path), "old_prefix": old_prefix},
            )
            if not silent_if_no_match:
                self._console.echo(f"Renaming {old_prefix} variables to {new_prefix}")
                self._console.echo(f"  No '{old_prefix}' keys found in {path.name}")
            return result

        timestamp = datetime.now().strftime("%Y.%m.%d-%H.%M.%S")
        backup_path = path.with_name(f"__old-{path.name}.{timestamp}")

        self._console.echo(f"Renaming {old_prefix} variables to {new_prefix}")
        self._console.echo(f"  Found {changed} lines with {old_prefix} keys in {path.name}")
        self._console.echo(f"  Copying {path.name} to {backup_path.name}")
        try:
            shutil.copy2(path, backup_path)
        except OSError as e:
            raise ConfigError(
                f"Cannot back up {path} to {backup_path}: {e.strerror or e}",
                details={"path": str(path), "backup": str(backup_path)},
            ) from e

        self._replace(path, rewritten)

        self._console.echo(f"  Updated {changed} lines in {path.name}")
        logger.info(
            "Renamed deprecated environment keys",
            extra={
                "path": str(path),
                "backup": str(backup_path),
                "changed_lines": changed,
                "old_prefix": old_prefix,
                "new_prefix": new_prefix,
            },
        )

        result.changed_lines = changed
        result.backup_path = str(backup_path)
        return result

    @staticmethod
    def _replace(path: Path, lines: list[str]) -> None:
        """
        Atomically replace path with the given lines.

        Raises:
            ConfigError: If the write fails; path keeps its old content.
        """
        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(temp_path, "w", encoding="utf-8", errors="surrogateescape") as f:
                f.writelines(lines)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ConfigError(
                f"Cannot write {path}: {e.strerror or e}",
                details={"path": str(path)},
            ) from e
