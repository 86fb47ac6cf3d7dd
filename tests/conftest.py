"""Shared pytest fixtures for the projinit test suite.

Provides reusable fixtures for:
- Template directories built from a ``{relative_path: content}`` mapping
- Global ``.pi.toml`` files
- Isolated ``Settings`` pointing at a temporary home directory
- Deterministic timestamps and prompters
"""

from __future__ import annotations

import textwrap
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytest

from projinit.config import Settings


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------

@pytest.fixture
def home_dir(tmp_path: Path) -> Path:
    """Temporary home directory with an empty ``.pi_templates``."""
    home = tmp_path / "home"
    (home / ".pi_templates").mkdir(parents=True)
    return home


@pytest.fixture
def settings(home_dir: Path) -> Settings:
    """Settings isolated from the real home directory."""
    return Settings(home=home_dir)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Directory standing in for the current working directory."""
    cwd = tmp_path / "work"
    cwd.mkdir()
    return cwd


@pytest.fixture
def make_template(tmp_path: Path) -> Callable[..., Path]:
    """Factory creating a template directory.

    Usage::

        root = make_template({"README.md": "# {{ project }}"}, toml="...")
    """
    counter = {"n": 0}

    def _make(
        files: dict[str, str | bytes] | None = None,
        toml: str | None = None,
        *,
        parent: Path | None = None,
        name: str | None = None,
    ) -> Path:
        counter["n"] += 1
        root = (parent or tmp_path / "templates") / (name or f"template{counter['n']}")
        root.mkdir(parents=True)
        for rel, content in (files or {}).items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
        if toml is not None:
            (root / "template.toml").write_text(textwrap.dedent(toml), encoding="utf-8")
        return root

    return _make


@pytest.fixture
def write_global_config(home_dir: Path) -> Callable[[str], Path]:
    """Write ``~/.pi.toml`` in the temporary home directory."""

    def _write(content: str) -> Path:
        path = home_dir / ".pi.toml"
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return path

    return _write


# ---------------------------------------------------------------------------
# Determinism helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def fixed_now() -> datetime:
    """A pinned timestamp for ``year``/``date`` keys."""
    return datetime(2024, 3, 5, 14, 30, 0)


class RecordingPrompter:
    """Answers prompts from a mapping of question -> answer and records them."""

    def __init__(self, answers: dict[str, str] | None = None) -> None:
        self.answers = answers or {}
        self.questions: list[str] = []

    def __call__(self, question: str) -> str:
        self.questions.append(question)
        return self.answers.get(question, "")


@pytest.fixture
def make_prompter() -> Callable[..., RecordingPrompter]:
    """Factory for prompters answering from a question -> answer mapping."""
    return RecordingPrompter


@pytest.fixture
def list_tree() -> Callable[[Path], list[str]]:
    """Sorted relative POSIX paths of everything under a directory."""

    def _list(root: Path) -> list[str]:
        return sorted(p.relative_to(root).as_posix() for p in root.rglob("*"))

    return _list
