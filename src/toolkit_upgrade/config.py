"""
Configuration management for the toolkit upgrade procedure.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. The deployment rc file (config/overleaf.rc, KEY=VALUE lines)
3. Deployment environment variables (PULL_BEFORE_UPGRADE, SERVER_PRO, ...)
4. Prefixed environment variables (TOOLKIT_UPGRADE_* prefix, __ for nesting)
5. Command-line arguments (highest precedence)

The resulting ToolkitConfig is built once and handed to the orchestrator; no
component reads the environment on its own during a run.
"""

from __future__ import annotations

import argparse
import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from toolkit_upgrade.errors import ConfigError

ENV_PREFIX = "TOOLKIT_UPGRADE_"

# Deployment variables shared with the rest of the toolkit, mapped to their
# location in ToolkitConfig
DEPLOYMENT_VARIABLES: dict[str, tuple[str, str]] = {
    "PULL_BEFORE_UPGRADE": ("upgrade", "pull_before_upgrade"),
    "SERVER_PRO": ("upgrade", "server_pro"),
    "GIT_BRIDGE_ENABLED": ("upgrade", "git_bridge_enabled"),
    "GIT_BRIDGE_IMAGE": ("upgrade", "git_bridge_image"),
    "OVERLEAF_IMAGE_NAME": ("upgrade", "image_name"),
    "SKIP_RETRACTED_VERSION_CHECK": ("upgrade", "skip_retracted_version_check"),
}


# =============================================================================
# Upgrade Configuration
# =============================================================================


class UpgradeConfig(BaseModel):
    """Deployment-wide toggles that influence upgrade decisions.

    Attributes:
        pull_before_upgrade: Pull the new images before switching versions.
        server_pro: Whether the deployment runs the Server Pro image.
        git_bridge_enabled: Whether the git-bridge component is deployed.
        git_bridge_image: Custom git-bridge image name (without tag).
        image_name: Custom application image name (without tag).
        skip_retracted_version_check: Retracted version the operator has
            already acknowledged; the guard stays silent for that version only.
        default_branch: Branch the toolkit checkout is expected to track.
        remote: Git remote to synchronize with.
        compose_command: Command used to drive the managed services.
            Defaults to ``<toolkit_root>/bin/docker-compose``.
    """

    pull_before_upgrade: bool = Field(
        default=True,
        description="Pull new images before upgrading",
    )
    server_pro: bool = Field(
        default=False,
        description="Deployment uses the Server Pro image",
    )
    git_bridge_enabled: bool = Field(
        default=False,
        description="Git-bridge component is enabled",
    )
    git_bridge_image: str | None = Field(
        default=None,
        description="Custom git-bridge image name",
    )
    image_name: str | None = Field(
        default=None,
        description="Custom application image name",
    )
    skip_retracted_version_check: str | None = Field(
        default=None,
        description="Retracted version already acknowledged by the operator",
    )
    default_branch: str = Field(
        default="master",
        description="Expected branch of the toolkit checkout",
    )
    remote: str = Field(
        default="origin",
        description="Git remote used for code updates",
    )
    compose_command: list[str] | None = Field(
        default=None,
        description="Command used to control the managed services",
    )

    @field_validator("git_bridge_image", "image_name", "skip_retracted_version_check")
    @classmethod
    def empty_as_unset(cls, v: str | None) -> str | None:
        """Treat empty strings (``VAR=`` in the rc file) as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator(
        "pull_before_upgrade", "server_pro", "git_bridge_enabled", mode="before"
    )
    @classmethod
    def empty_as_default(cls, v: Any, info: ValidationInfo) -> Any:
        """Treat an empty toggle (``VAR=``) as not set."""
        if isinstance(v, str) and not v.strip():
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("compose_command", mode="before")
    @classmethod
    def split_compose_command(cls, v: Any) -> Any:
        """Accept a shell-style command string from the environment."""
        if isinstance(v, str):
            return shlex.split(v) or None
        return v


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Diagnostic logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
    """

    level: str = Field(
        default="warning",
        description="Log level: debug, info, warning, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit JSON-formatted log lines",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Configuration
# =============================================================================


class ToolkitConfig(BaseModel):
    """
    Main configuration model.

    Attributes:
        toolkit_root: Root directory of the toolkit checkout.
        upgrade: Upgrade toggles.
        logging: Logging configuration.
    """

    toolkit_root: Path = Field(
        default_factory=Path.cwd,
        description="Root directory of the toolkit checkout",
    )
    upgrade: UpgradeConfig = Field(
        default_factory=UpgradeConfig,
        description="Upgrade toggles",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )

    @property
    def config_dir(self) -> Path:
        return self.toolkit_root / "config"

    @property
    def version_file(self) -> Path:
        """Persisted current version record."""
        return self.config_dir / "version"

    @property
    def version_backup_file(self) -> Path:
        """Copy of the version record taken before it is overwritten."""
        return self.config_dir / "__old-version"

    @property
    def seed_version_file(self) -> Path:
        """Candidate version shipped with the toolkit distribution."""
        return self.toolkit_root / "lib" / "config-seed" / "version"

    @property
    def variables_env_file(self) -> Path:
        return self.config_dir / "variables.env"

    @property
    def compose_override_file(self) -> Path:
        return self.config_dir / "docker-compose.override.yml"

    @property
    def rc_file(self) -> Path:
        return self.config_dir / "overleaf.rc"

    @property
    def changelog_file(self) -> str:
        """Changelog path relative to the toolkit root, as git expects it."""
        return "CHANGELOG.md"

    @property
    def compose_command(self) -> list[str]:
        if self.upgrade.compose_command:
            return list(self.upgrade.compose_command)
        return [str(self.toolkit_root / "bin" / "docker-compose")]


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_rc_file(rc_path: Path) -> dict[str, str]:
    """
    Parse a shell-style KEY=VALUE rc file.

    Comments, blank lines and lines without ``=`` are ignored; an ``export``
    keyword and surrounding quotes are stripped.

    Args:
        rc_path: Path to the rc file.

    Returns:
        Mapping of variable names to raw string values. Empty if the file
        does not exist.
    """
    if not rc_path.exists():
        return {}

    values: dict[str, str] = {}
    with open(rc_path, encoding="utf-8", errors="replace") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export ") :].strip()
            values[key] = _unquote(value)
    return values


def _deployment_values(source: Mapping[str, str]) -> dict[str, Any]:
    """Map known deployment variables onto the ToolkitConfig structure."""
    result: dict[str, Any] = {}
    for variable, (section, field) in DEPLOYMENT_VARIABLES.items():
        if variable in source:
            result.setdefault(section, {})[field] = source[variable]
    return result


def _load_env_config(
    environ: Mapping[str, str],
    prefix: str = ENV_PREFIX,
) -> dict[str, Any]:
    """
    Load configuration from prefixed environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: TOOLKIT_UPGRADE_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: TOOLKIT_UPGRADE_LOGGING__LEVEL=debug

    Values stay strings; Pydantic coerces them to the field types.

    Args:
        environ: Environment mapping to read from.
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = value

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the upgrade command."""
    parser = argparse.ArgumentParser(
        prog="toolkit-upgrade",
        description=(
            "Check for toolkit code updates and upgrade the deployment's "
            "application version."
        ),
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["help"],
        help="Print this help message and exit",
    )
    parser.add_argument(
        "--skip-git-update",
        action="store_true",
        help="Skip the toolkit code update check and go straight to the image upgrade",
    )
    parser.add_argument(
        "--toolkit-root",
        type=str,
        help="Root directory of the toolkit checkout (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def _cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """Convert parsed CLI arguments into a config override dictionary."""
    result: dict[str, Any] = {}

    if parsed.toolkit_root:
        result["toolkit_root"] = parsed.toolkit_root

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    toolkit_root: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
    cli_args: argparse.Namespace | None = None,
    env_prefix: str = ENV_PREFIX,
) -> ToolkitConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        toolkit_root: Toolkit checkout root. CLI ``--toolkit-root`` wins over
            this value; the current directory is used when neither is given.
        environ: Environment mapping. Defaults to os.environ.
        cli_args: Parsed command-line arguments.
        env_prefix: Prefix for TOOLKIT_UPGRADE_* variables.

    Returns:
        Fully configured ToolkitConfig instance.

    Raises:
        ConfigError: If the merged configuration is invalid.

    Example:
        >>> config = load_config("/srv/overleaf-toolkit", environ={})
        >>> config.version_file
        PosixPath('/srv/overleaf-toolkit/config/version')
    """
    if environ is None:
        environ = os.environ

    cli_config = _cli_overrides(cli_args) if cli_args is not None else {}
    env_config = _load_env_config(environ, env_prefix)

    root: Path | str | None = cli_config.get("toolkit_root") or env_config.get(
        "toolkit_root"
    )
    if root is None:
        root = toolkit_root if toolkit_root is not None else Path.cwd()
    root = Path(root)

    config_dict: dict[str, Any] = {"toolkit_root": root}

    # rc file, then the same variables taken from the environment
    rc_values = parse_rc_file(root / "config" / "overleaf.rc")
    config_dict = _deep_merge(config_dict, _deployment_values(rc_values))
    config_dict = _deep_merge(config_dict, _deployment_values(environ))

    config_dict = _deep_merge(config_dict, env_config)
    config_dict = _deep_merge(config_dict, cli_config)
    config_dict["toolkit_root"] = root

    try:
        return ToolkitConfig(**config_dict)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration: {e}",
            details={"toolkit_root": str(root)},
        ) from e
