"""Candidate discovery and filtering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from structlog import get_logger

from prwatch.config.schema import Settings, is_regex_pattern
from prwatch.config.settings_store import SettingsStore
from prwatch.core.identity import ItemIdentity, repo_parts
from prwatch.core.models import Candidate, ItemDetails

logger = get_logger(__name__)


class HostingQueries(Protocol):
    """The hosting calls discovery depends on."""

    async def list_repo_items(self, repo: str) -> list[Candidate]: ...

    async def search_involving_me(self) -> list[ItemIdentity]: ...

    async def view_item(self, identity: ItemIdentity) -> ItemDetails | None: ...


@dataclass(frozen=True)
class RepoPatterns:
    """Repository patterns split into exact names and compiled regexes."""

    exact: tuple[str, ...] = ()
    regexes: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def parse(cls, patterns: list[str]) -> RepoPatterns:
        exact: list[str] = []
        regexes: list[re.Pattern[str]] = []
        for pattern in patterns:
            pattern = pattern.strip()
            if not pattern:
                continue
            if is_regex_pattern(pattern):
                try:
                    regexes.append(re.compile(pattern[1:-1]))
                except re.error as exc:
                    logger.error("Invalid regex pattern %s: %s", pattern, exc)
            elif repo_parts(pattern) is None:
                logger.error("Invalid repository pattern %s, expected owner/name", pattern)
            elif pattern not in exact:
                exact.append(pattern)
        return cls(tuple(exact), tuple(regexes))

    @property
    def empty(self) -> bool:
        return not self.exact and not self.regexes

    @property
    def needs_search(self) -> bool:
        """The "involving me" search runs for regex patterns or when nothing is configured."""
        return bool(self.regexes) or self.empty

    def matches(self, repo: str) -> bool:
        if self.empty:
            return True
        if repo in self.exact:
            return True
        return any(regex.search(repo) for regex in self.regexes)


def should_process(author: str, settings: Settings) -> bool:
    """Authorship rule: whether an item by `author` gets reviewed."""
    username = settings.github_username
    is_own = bool(username) and author == username
    if settings.only_own_prs:
        return is_own
    if is_own:
        return settings.review_own_prs
    return True


class CandidateDiscovery:
    """Turns hosting query results into a de-duplicated candidate list."""

    def __init__(self, hosting: HostingQueries, settings_store: SettingsStore) -> None:
        self.hosting = hosting
        self.settings_store = settings_store

    async def list_candidates(self) -> list[Candidate]:
        """Open items across all configured repositories, in discovery order."""
        patterns = RepoPatterns.parse(self.settings_store.current.repo_patterns)
        candidates: list[Candidate] = []
        seen: set[ItemIdentity] = set()

        for repo in patterns.exact:
            for candidate in await self.hosting.list_repo_items(repo):
                if candidate.identity in seen:
                    continue
                seen.add(candidate.identity)
                candidates.append(candidate)

        if patterns.needs_search:
            for identity in await self.hosting.search_involving_me():
                if identity in seen or not patterns.matches(identity.repo):
                    continue
                seen.add(identity)
                details = await self.hosting.view_item(identity)
                if details is None:
                    continue
                candidate = details.as_candidate()
                if candidate is None:
                    logger.warning("No commit SHA available, skipping", pr=identity.key)
                    continue
                candidates.append(candidate)

        logger.debug("Discovered %d candidates", len(candidates))
        return candidates
