"""Work ledger - last successfully reviewed revision per item."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from structlog import get_logger

from prwatch.core.identity import ItemIdentity

logger = get_logger(__name__)


@dataclass
class WorkLedger:
    """Persisted `identity -> revision` map.

    The file is a flat JSON object keyed by the canonical `owner/name#N`
    form. A missing or unreadable file loads as an empty ledger.
    """

    path: Path
    entries: dict[ItemIdentity, str] = field(default_factory=dict)

    def load(self) -> WorkLedger:
        """Replace in-memory entries with the file contents (best effort)."""
        self.entries = {}
        if not self.path.exists():
            return self
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not load ledger, starting empty", path=str(self.path), error=str(exc))
            return self
        if not isinstance(data, dict):
            logger.error("Ledger file is not a JSON object, starting empty", path=str(self.path))
            return self

        for key, revision in data.items():
            try:
                identity = ItemIdentity.parse(key)
            except ValueError:
                logger.warning("Skipping malformed ledger key", key=key)
                continue
            if isinstance(revision, str) and revision:
                self.entries[identity] = revision
        logger.info("Loaded ledger", count=len(self.entries))
        return self

    def persist(self) -> None:
        """Write a full snapshot. Safe to call repeatedly."""
        data = {identity.key: revision for identity, revision in sorted(self.entries.items())}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("Could not save ledger", path=str(self.path), error=str(exc))

    def get(self, identity: ItemIdentity) -> str | None:
        return self.entries.get(identity)

    def set(self, identity: ItemIdentity, revision: str) -> None:
        self.entries[identity] = revision

    def delete(self, identity: ItemIdentity) -> bool:
        return self.entries.pop(identity, None) is not None

    def identities(self) -> list[ItemIdentity]:
        return list(self.entries)

    def repos(self) -> set[str]:
        """Repositories that still have at least one tracked item."""
        return {identity.repo for identity in self.entries}

    def __contains__(self, identity: object) -> bool:
        return identity in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ItemIdentity]:
        return iter(list(self.entries))
