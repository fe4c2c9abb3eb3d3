"""Base clones and per-item worktrees.

One durable clone per repository lives under `repos/<owner_name>`. Each item
being processed gets a detached worktree of that clone under
`worktrees/<owner_name>/pr-<N>`, pinned to the item's head revision and
removed again when processing ends.

Git calls are blocking GitPython calls; the async methods run them in a
worker thread.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from structlog import get_logger

from prwatch.config import WorkPaths
from prwatch.constants import ITEM_DIR_PREFIX
from prwatch.core.errors import HostingError, IsolationError
from prwatch.core.identity import ItemIdentity, repo_dir_name, repo_from_dir_name

logger = get_logger(__name__)


class RevisionLookup(Protocol):
    async def head_revision(self, identity: ItemIdentity) -> str: ...


@dataclass(frozen=True)
class Worktree:
    """A checked-out isolation directory."""

    identity: ItemIdentity
    path: Path
    revision: str


@dataclass(frozen=True)
class BaseClone:
    repo: str
    path: Path
    mtime: float


def _has_git_dir(path: Path) -> bool:
    return (path / ".git").exists()


def _has_commit(repo: Repo, revision: str) -> bool:
    try:
        repo.git.cat_file("-e", f"{revision}^{{commit}}")
    except GitCommandError:
        return False
    return True


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Failed to remove directory", path=str(path), error=str(exc))


class IsolationManager:
    """Owns the `repos/` and `worktrees/` directories."""

    def __init__(self, paths: WorkPaths, hosting: RevisionLookup, clone_url_template: str) -> None:
        self.paths = paths
        self.hosting = hosting
        self.clone_url_template = clone_url_template

    def clone_path(self, repo: str) -> Path:
        return self.paths.repos_dir / repo_dir_name(repo)

    def worktree_path(self, identity: ItemIdentity) -> Path:
        return self.paths.worktrees_dir / identity.repo_dir / identity.item_dir

    def clone_url(self, repo: str) -> str:
        return self.clone_url_template.format(repo=repo)

    # ------------------------------------------------------------------
    # Base clones
    # ------------------------------------------------------------------

    async def ensure_base_clone(self, repo: str) -> Path:
        """Clone `repo` if missing, otherwise fetch. Returns the clone path.

        Raises:
            IsolationError: If the clone or fetch fails.
        """
        return await asyncio.to_thread(self._ensure_base_clone_sync, repo)

    def _ensure_base_clone_sync(self, repo: str) -> Path:
        path = self.clone_path(repo)
        try:
            if _has_git_dir(path):
                logger.debug("Fetching updates", repo=repo)
                Repo(path).git.fetch("--all", "--prune")
            else:
                if path.exists():
                    # Leftover of an interrupted clone
                    _remove_tree(path)
                path.parent.mkdir(parents=True, exist_ok=True)
                logger.info("Cloning repository", repo=repo)
                Repo.clone_from(self.clone_url(repo), path)
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise IsolationError(f"Failed to prepare base clone for {repo}: {exc}") from exc

        # mtime tracks last use for the collector
        os.utime(path)
        return path

    def list_base_clones(self) -> list[BaseClone]:
        clones: list[BaseClone] = []
        if not self.paths.repos_dir.is_dir():
            return clones
        for entry in sorted(self.paths.repos_dir.iterdir()):
            if not entry.is_dir() or not _has_git_dir(entry):
                continue
            repo = repo_from_dir_name(entry.name)
            if repo is None:
                continue
            try:
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            clones.append(BaseClone(repo=repo, path=entry, mtime=mtime))
        return clones

    async def delete_base_clone(self, repo: str) -> None:
        """Remove a base clone together with every worktree of the repository."""
        await self.release_all_for_repo(repo)
        path = self.clone_path(repo)
        await asyncio.to_thread(_remove_tree, path)
        logger.info("Deleted base clone", repo=repo)

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    async def acquire_worktree(self, identity: ItemIdentity, fallback_revision: str | None = None) -> Worktree:
        """Create a fresh worktree pinned to the item's current head revision.

        The revision comes from the hosting service. `fallback_revision` is
        only used when that lookup fails.

        Raises:
            IsolationError: If no revision is known or git fails.
        """
        path = self.worktree_path(identity)
        if path.exists():
            logger.info("Cleaning up existing worktree", pr=identity.key)
            await self.release_worktree(identity)

        try:
            revision = await self.hosting.head_revision(identity)
        except HostingError as exc:
            if not fallback_revision:
                raise IsolationError(f"Could not resolve head revision for {identity.key}: {exc}") from exc
            logger.warning("Head lookup failed, using discovered revision", pr=identity.key, error=str(exc))
            revision = fallback_revision

        await asyncio.to_thread(self._add_worktree_sync, identity, revision)
        logger.info("Created worktree", pr=identity.key, sha=revision[:7])
        return Worktree(identity=identity, path=path, revision=revision)

    def _add_worktree_sync(self, identity: ItemIdentity, revision: str) -> None:
        base = self.clone_path(identity.repo)
        if not _has_git_dir(base):
            raise IsolationError(f"No base clone for {identity.repo}")
        path = self.worktree_path(identity)
        try:
            repo = Repo(base)
            self._fetch_revision(repo, identity, revision)
            # Drop registrations whose directory is gone, or `add` refuses the path
            repo.git.worktree("prune")
            path.parent.mkdir(parents=True, exist_ok=True)
            repo.git.worktree("add", "--detach", str(path), revision)
        except (GitCommandError, InvalidGitRepositoryError) as exc:
            raise IsolationError(f"Failed to create worktree for {identity.key}: {exc}") from exc

    @staticmethod
    def _fetch_revision(repo: Repo, identity: ItemIdentity, revision: str) -> None:
        if _has_commit(repo, revision):
            return
        try:
            repo.git.fetch("origin", revision)
        except GitCommandError:
            logger.debug("Fetch by SHA failed, trying pull ref", pr=identity.key)
            repo.git.fetch("origin", f"pull/{identity.number}/head")

    async def release_worktree(self, identity: ItemIdentity) -> bool:
        """Remove the item's worktree if present. Never raises.

        Returns:
            True if a directory was removed.
        """
        return await asyncio.to_thread(self._release_worktree_sync, identity)

    def _release_worktree_sync(self, identity: ItemIdentity) -> bool:
        path = self.worktree_path(identity)
        if not path.exists():
            return False
        base = self.clone_path(identity.repo)
        if _has_git_dir(base):
            try:
                Repo(base).git.worktree("remove", "--force", str(path))
            except (GitCommandError, InvalidGitRepositoryError) as exc:
                logger.warning("git worktree remove failed, deleting directory", pr=identity.key, error=str(exc))
        if path.exists():
            _remove_tree(path)
            self._prune_sync(identity.repo)
        logger.debug("Released worktree", pr=identity.key)
        return True

    def _prune_sync(self, repo: str) -> None:
        base = self.clone_path(repo)
        if not _has_git_dir(base):
            return
        try:
            Repo(base).git.worktree("prune")
        except (GitCommandError, InvalidGitRepositoryError) as exc:
            logger.warning("git worktree prune failed", repo=repo, error=str(exc))

    async def release_all_for_repo(self, repo: str) -> None:
        """Drop every worktree of `repo`."""

        def _release_all() -> None:
            repo_dir = self.paths.worktrees_dir / repo_dir_name(repo)
            _remove_tree(repo_dir)
            self._prune_sync(repo)

        await asyncio.to_thread(_release_all)

    def list_worktrees(self) -> list[tuple[Path, ItemIdentity | None]]:
        """Item directories under `worktrees/` with their identity (None if unparseable)."""
        found: list[tuple[Path, ItemIdentity | None]] = []
        if not self.paths.worktrees_dir.is_dir():
            return found
        for repo_dir in sorted(self.paths.worktrees_dir.iterdir()):
            if not repo_dir.is_dir():
                continue
            for item_dir in sorted(repo_dir.iterdir()):
                if item_dir.is_dir() and item_dir.name.startswith(ITEM_DIR_PREFIX):
                    found.append((item_dir, ItemIdentity.from_dirs(repo_dir.name, item_dir.name)))
        return found

    async def sweep_orphans(self, active: set[ItemIdentity]) -> int:
        """Release worktrees whose identity is not in `active`.

        Returns:
            Number of worktrees removed.
        """
        removed = 0
        for path, identity in self.list_worktrees():
            if identity is not None and identity in active:
                continue
            if identity is None:
                await asyncio.to_thread(_remove_tree, path)
                repo = repo_from_dir_name(path.parent.name)
                if repo is not None:
                    await asyncio.to_thread(self._prune_sync, repo)
            else:
                await self.release_worktree(identity)
            logger.info("Removed orphan worktree", path=str(path))
            removed += 1

        if self.paths.worktrees_dir.is_dir():
            for repo_dir in self.paths.worktrees_dir.iterdir():
                if repo_dir.is_dir() and not any(repo_dir.iterdir()):
                    repo_dir.rmdir()
        return removed
