"""Retention and garbage collection.

Runs on its own timer. Each sub-task is idempotent and isolated: an error in
one is logged and recorded in the report, and the remaining tasks still run.
"""

from __future__ import annotations

import time

from structlog import get_logger

from prwatch.config.settings_store import SettingsStore
from prwatch.core.hosting import GitHubHost
from prwatch.core.isolation import IsolationManager
from prwatch.core.ledger import WorkLedger
from prwatch.core.models import CollectorReport, ItemState
from prwatch.core.review_store import ReviewStore

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400


class GarbageCollector:
    """Reclaims closed items, stale clones, old versions and orphan worktrees."""

    def __init__(
        self,
        *,
        hosting: GitHubHost,
        ledger: WorkLedger,
        settings_store: SettingsStore,
        isolation: IsolationManager,
        review_store: ReviewStore,
    ) -> None:
        self.hosting = hosting
        self.ledger = ledger
        self.settings_store = settings_store
        self.isolation = isolation
        self.review_store = review_store

    async def reclaim_closed_items(self) -> int:
        """Drop ledger entries (and worktrees) of items closed or merged upstream."""
        removed = 0
        for identity in self.ledger.identities():
            state = await self.hosting.item_state(identity)
            if state is ItemState.UNKNOWN:
                logger.debug("State unknown, keeping entry", pr=identity.key)
                continue
            if state is ItemState.OPEN:
                continue
            self.ledger.delete(identity)
            await self.isolation.release_worktree(identity)
            logger.info("Removed closed PR from state", pr=identity.key, state=state.value)
            removed += 1
        if removed:
            self.ledger.persist()
        return removed

    async def reclaim_stale_clones(self, now: float | None = None) -> int:
        """Delete base clones unused for `cleanupAgeDays` whose repo has no tracked item."""
        max_age_s = self.settings_store.current.cleanup_age_days * SECONDS_PER_DAY
        now = time.time() if now is None else now
        active_repos = self.ledger.repos()
        removed = 0
        for clone in self.isolation.list_base_clones():
            if clone.repo in active_repos or now - clone.mtime <= max_age_s:
                continue
            logger.info("Removing stale repository", repo=clone.repo, age_days=int((now - clone.mtime) // SECONDS_PER_DAY))
            await self.isolation.delete_base_clone(clone.repo)
            removed += 1
        return removed

    def prune_versions(self) -> int:
        """Trim every item to the newest `maxReviewVersions` versions.

        Returns:
            Number of items that lost versions.
        """
        keep = self.settings_store.current.max_review_versions
        pruned = 0
        for identity in self.review_store.items():
            if self.review_store.prune(identity, keep):
                pruned += 1
        return pruned

    async def sweep_orphan_worktrees(self) -> int:
        return await self.isolation.sweep_orphans(set(self.ledger.identities()))

    async def run(self) -> CollectorReport:
        """Run all sub-tasks once."""
        logger.info("Running cleanup...")
        report = CollectorReport()

        try:
            report.closed_items = await self.reclaim_closed_items()
        except Exception as exc:  # noqa: BLE001 - sub-tasks are independent
            logger.error("Closed PR cleanup failed", error=str(exc), exc_info=True)
            report.errors.append(f"closed_items: {exc}")
        try:
            report.stale_clones = await self.reclaim_stale_clones()
        except Exception as exc:  # noqa: BLE001
            logger.error("Stale repository cleanup failed", error=str(exc), exc_info=True)
            report.errors.append(f"stale_clones: {exc}")
        try:
            report.pruned_items = self.prune_versions()
        except Exception as exc:  # noqa: BLE001
            logger.error("Review version pruning failed", error=str(exc), exc_info=True)
            report.errors.append(f"pruned_items: {exc}")
        try:
            report.orphan_worktrees = await self.sweep_orphan_worktrees()
        except Exception as exc:  # noqa: BLE001
            logger.error("Orphan worktree sweep failed", error=str(exc), exc_info=True)
            report.errors.append(f"orphan_worktrees: {exc}")

        logger.info(
            "Cleanup complete",
            closed=report.closed_items,
            stale_clones=report.stale_clones,
            pruned=report.pruned_items,
            orphans=report.orphan_worktrees,
        )
        return report
