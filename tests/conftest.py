"""
Pytest configuration for the toolkit upgrade tests.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from toolkit_upgrade.config import ToolkitConfig, UpgradeConfig


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class ScriptedConsole:
    """
    Console double answering prompts from a script.

    Attributes:
        answers: Remaining answers, consumed in order by confirm().
        messages: Every echoed line.
        questions: Every question asked.
    """

    def __init__(self, answers: list[bool] | None = None) -> None:
        self.answers = list(answers or [])
        self.messages: list[str] = []
        self.questions: list[str] = []

    def echo(self, message: str = "") -> None:
        self.messages.append(message)

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {question!r}")
        return self.answers.pop(0)

    @property
    def output(self) -> str:
        return "\n".join(self.messages)


@pytest.fixture
def make_console() -> Callable[..., ScriptedConsole]:
    """Factory for scripted consoles."""

    def _make(*answers: bool) -> ScriptedConsole:
        return ScriptedConsole(list(answers))

    return _make


@pytest.fixture
def toolkit_root(tmp_path: Path) -> Path:
    """Create a minimal toolkit checkout layout."""
    (tmp_path / "config").mkdir()
    (tmp_path / "lib" / "config-seed").mkdir(parents=True)
    (tmp_path / "bin").mkdir()
    return tmp_path


@pytest.fixture
def write_versions(toolkit_root: Path) -> Callable[[str, str], None]:
    """Write the current and candidate version records."""

    def _write(current: str, candidate: str) -> None:
        (toolkit_root / "config" / "version").write_text(f"{current}\n")
        (toolkit_root / "lib" / "config-seed" / "version").write_text(f"{candidate}\n")

    return _write


@pytest.fixture
def toolkit_config(toolkit_root: Path) -> ToolkitConfig:
    """Configuration pointing at the temporary toolkit checkout."""
    return ToolkitConfig(toolkit_root=toolkit_root, upgrade=UpgradeConfig())
