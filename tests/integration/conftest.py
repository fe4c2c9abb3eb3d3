"""Fixtures for integration tests: throwaway origin repositories on disk."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from git import Actor, Repo

from prwatch.core.isolation import IsolationManager

ACTOR = Actor("Test Author", "author@example.com")


class OriginRepo:
    """A local repository standing in for the hosted upstream."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.repo = Repo.init(path)
        with self.repo.config_writer() as writer:
            # Lets clones fetch unadvertised commits by SHA, like a PR head
            writer.set_value("uploadpack", "allowAnySHA1InWant", "true")

    def commit(self, filename: str, content: str, message: str = "update") -> str:
        (self.path / filename).write_text(content)
        self.repo.index.add([filename])
        return self.repo.index.commit(message, author=ACTOR, committer=ACTOR).hexsha


@pytest.fixture
def origin_root(tmp_path: Path) -> Path:
    return tmp_path / "origin"


@pytest.fixture
def origin(origin_root: Path) -> OriginRepo:
    """`acme/widgets` upstream with one commit."""
    upstream = OriginRepo(origin_root / "acme" / "widgets")
    upstream.commit("README.md", "first\n", "initial")
    return upstream


@pytest.fixture
def hosting() -> MagicMock:
    host = MagicMock()
    host.head_revision = AsyncMock()
    return host


@pytest.fixture
def isolation(work_paths, hosting, origin_root) -> IsolationManager:
    return IsolationManager(work_paths, hosting, str(origin_root) + "/{repo}")
