"""Data models shared by the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from typing_extensions import TypedDict

from prwatch.core.identity import ItemIdentity


class ItemState(str, Enum):
    """Upstream state of an item as reported by the hosting service."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"
    UNKNOWN = "UNKNOWN"  # Query failed; callers must not act on it


class ReviewStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class Candidate:
    """An open item discovered upstream."""

    identity: ItemIdentity
    title: str
    author: str
    head_revision: str
    head_branch: str | None = None
    updated_at: str | None = None

    @property
    def repo(self) -> str:
        return self.identity.repo

    @property
    def number(self) -> int:
        return self.identity.number


@dataclass(frozen=True)
class ItemDetails:
    """Full item metadata used to build the review prompt."""

    identity: ItemIdentity
    title: str
    author: str
    head_revision: str | None
    head_branch: str | None = None
    base_branch: str | None = None
    description: str = ""
    url: str | None = None
    state: ItemState = ItemState.UNKNOWN

    @property
    def canonical_url(self) -> str:
        return self.url or f"https://github.com/{self.identity.repo}/pull/{self.identity.number}"

    def as_candidate(self) -> Candidate | None:
        if not self.head_revision:
            return None
        return Candidate(
            identity=self.identity,
            title=self.title,
            author=self.author,
            head_revision=self.head_revision,
            head_branch=self.head_branch,
        )


class ReviewMetaDict(TypedDict):
    """Serialized item metadata (`meta.json`)."""

    title: str
    repo: str
    number: int
    author: str
    url: str
    createdAt: str


@dataclass
class ReviewMeta:
    """Per-item metadata stored beside the review versions."""

    title: str
    repo: str
    number: int
    author: str
    url: str
    created_at: str

    def to_dict(self) -> ReviewMetaDict:
        return {
            "title": self.title,
            "repo": self.repo,
            "number": self.number,
            "author": self.author,
            "url": self.url,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ReviewMeta:
        number = data.get("number")
        return cls(
            title=str(data.get("title") or "Untitled"),
            repo=str(data.get("repo") or ""),
            number=number if isinstance(number, int) else 0,
            author=str(data.get("author") or "unknown"),
            url=str(data.get("url") or ""),
            created_at=str(data.get("createdAt") or ""),
        )


@dataclass(frozen=True)
class ReviewVersion:
    """One stored review artifact (the text is read separately)."""

    identity: ItemIdentity
    filename: str
    timestamp: datetime
    revision: str
    status: ReviewStatus = ReviewStatus.SUCCESS
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status is ReviewStatus.FAILED


@dataclass(frozen=True)
class PendingItem:
    """Pending-list row: an open item and whether it needs a review."""

    repo: str
    number: int
    title: str
    author: str
    has_changes: bool


@dataclass
class CollectorReport:
    """Counts from one garbage-collection run."""

    closed_items: int = 0
    stale_clones: int = 0
    pruned_items: int = 0
    orphan_worktrees: int = 0
    errors: list[str] = field(default_factory=list)
