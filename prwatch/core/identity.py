"""Item identity value type.

An item is a pull request addressed by `(repo, number)`. The identity is the
unit of dedup, the ledger key and the source of every per-item path.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from prwatch.constants import ITEM_DIR_PREFIX

_KEY_RE = re.compile(r"^(?P<repo>[^/#\s]+/[^/#\s]+)#(?P<number>\d+)$")


@dataclass(frozen=True, order=True)
class ItemIdentity:
    """Stable `(repo, number)` key for a pull request."""

    repo: str
    number: int

    def __post_init__(self) -> None:
        if repo_parts(self.repo) is None:
            raise ValueError(f"Invalid repository name: {self.repo!r}")
        if self.number < 1:
            raise ValueError(f"Invalid item number: {self.number}")

    @property
    def key(self) -> str:
        """Canonical serialization, e.g. `acme/widgets#42`."""
        return f"{self.repo}#{self.number}"

    @property
    def repo_dir(self) -> str:
        return repo_dir_name(self.repo)

    @property
    def item_dir(self) -> str:
        return f"{ITEM_DIR_PREFIX}{self.number}"

    @classmethod
    def parse(cls, key: str) -> ItemIdentity:
        """Parse the canonical `owner/name#N` form.

        Raises:
            ValueError: If the key is not in canonical form.
        """
        match = _KEY_RE.match(key.strip())
        if not match:
            raise ValueError(f"Invalid item key: {key!r}")
        return cls(match.group("repo"), int(match.group("number")))

    @classmethod
    def from_dirs(cls, repo_dir: str, item_dir: str) -> ItemIdentity | None:
        """Rebuild an identity from its on-disk directory names, or None."""
        if not item_dir.startswith(ITEM_DIR_PREFIX):
            return None
        number = item_dir[len(ITEM_DIR_PREFIX) :]
        if not number.isdigit():
            return None
        repo = repo_from_dir_name(repo_dir)
        if repo is None:
            return None
        try:
            return cls(repo, int(number))
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.key


def repo_parts(repo: str) -> tuple[str, str] | None:
    """Split `owner/name`, or None when malformed."""
    owner, sep, name = repo.partition("/")
    if not sep or not owner or not name or "/" in name or "#" in repo:
        return None
    return owner, name


def repo_dir_name(repo: str) -> str:
    """`owner/name` -> `owner_name`. GitHub owners cannot contain `_`."""
    return repo.replace("/", "_", 1)


def repo_from_dir_name(dir_name: str) -> str | None:
    owner, sep, name = dir_name.partition("_")
    if not sep or not owner or not name:
        return None
    return f"{owner}/{name}"
