"""Sync orchestrator: the discovery -> review -> ledger control loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, TypeVar

from structlog import get_logger

from prwatch.config.settings_store import SettingsStore
from prwatch.constants import ERROR_SNIPPET_CHARS
from prwatch.core.discovery import CandidateDiscovery, should_process
from prwatch.core.generator import ReviewGenerator, build_review_prompt, short_sha
from prwatch.core.hosting import GitHubHost
from prwatch.core.identity import ItemIdentity
from prwatch.core.isolation import IsolationManager
from prwatch.core.ledger import WorkLedger
from prwatch.core.models import Candidate, ItemDetails, ItemState, PendingItem, ReviewMeta, ReviewStatus
from prwatch.core.review_store import FAILED_REVIEW_BODY, ReviewStore

logger = get_logger(__name__)

T = TypeVar("T")


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    """Result of one cycle or manual sync."""

    status: SyncStatus
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    message: str = ""
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is SyncStatus.COMPLETED


BUSY_MESSAGE = "Sync already in progress"
CLEANUP_BUSY_MESSAGE = "Cleanup in progress, try again shortly"

_SYNC = "sync"
_CLEANUP = "cleanup"


def _details_from_candidate(candidate: Candidate) -> ItemDetails:
    return ItemDetails(
        identity=candidate.identity,
        title=candidate.title,
        author=candidate.author,
        head_revision=candidate.head_revision,
        head_branch=candidate.head_branch,
    )


class SyncOrchestrator:
    """Runs sync cycles. At most one cycle (automatic or manual) at a time."""

    def __init__(
        self,
        *,
        hosting: GitHubHost,
        discovery: CandidateDiscovery,
        ledger: WorkLedger,
        settings_store: SettingsStore,
        isolation: IsolationManager,
        review_store: ReviewStore,
        generator: ReviewGenerator,
    ) -> None:
        self.hosting = hosting
        self.discovery = discovery
        self.ledger = ledger
        self.settings_store = settings_store
        self.isolation = isolation
        self.review_store = review_store
        self.generator = generator
        self._active: str | None = None

    @property
    def syncing(self) -> bool:
        return self._active == _SYNC

    @property
    def cleaning(self) -> bool:
        return self._active == _CLEANUP

    @property
    def busy(self) -> bool:
        return self._active is not None

    def _try_begin(self, activity: str = _SYNC) -> bool:
        # No await between test and set
        if self._active is not None:
            return False
        self._active = activity
        return True

    def _busy_outcome(self) -> SyncOutcome:
        return SyncOutcome(SyncStatus.BUSY, message=CLEANUP_BUSY_MESSAGE if self.cleaning else BUSY_MESSAGE)

    async def run_exclusive(self, job: Callable[[], Awaitable[T]]) -> T | None:
        """Run a maintenance `job` under the cycle guard. Returns None without running it when busy."""
        if not self._try_begin(_CLEANUP):
            return None
        try:
            return await job()
        finally:
            self._active = None

    async def run_cycle(self, custom_prompt: str | None = None, force: bool = False) -> SyncOutcome:
        """Discover open items and review the ones whose head moved."""
        if not self._try_begin():
            logger.warning("Previous run still active, skipping this cycle", activity=self._active)
            return self._busy_outcome()
        try:
            logger.info("Checking for PR updates...")
            candidates = await self.discovery.list_candidates()
            return await self._process_candidates(candidates, custom_prompt, force)
        except Exception as e:  # noqa: BLE001 - cycle errors must not kill the poll loop
            logger.exception("Sync cycle failed")
            return SyncOutcome(SyncStatus.FAILED, message=str(e), errors=[str(e)])
        finally:
            self._active = None

    async def sync_selected(
        self,
        identities: Iterable[ItemIdentity],
        custom_prompt: str | None = None,
        force: bool = False,
    ) -> SyncOutcome:
        """Run the review pipeline for selected items only."""
        if not self._try_begin():
            return self._busy_outcome()
        try:
            selected = list(dict.fromkeys(identities))
            logger.info("Syncing selected PRs", count=len(selected), force=force)
            candidates: list[Candidate] = []
            details_map: dict[ItemIdentity, ItemDetails] = {}
            errors: list[str] = []
            for identity in selected:
                details = await self.hosting.view_item(identity)
                if details is None:
                    errors.append(f"{identity.key}: not found")
                    continue
                if details.state not in (ItemState.OPEN, ItemState.UNKNOWN):
                    errors.append(f"{identity.key}: not open ({details.state.value})")
                    continue
                candidate = details.as_candidate()
                if candidate is None:
                    errors.append(f"{identity.key}: no head revision")
                    continue
                candidates.append(candidate)
                details_map[identity] = details

            for error in errors:
                logger.warning("Skipping selected PR", error=error)
            outcome = await self._process_candidates(candidates, custom_prompt, force, details_map)
            outcome.failed += len(errors)
            outcome.errors = errors + outcome.errors
            outcome.message = self._summary(outcome)
            return outcome
        except Exception as e:  # noqa: BLE001
            logger.exception("Selected sync failed")
            return SyncOutcome(SyncStatus.FAILED, message=str(e), errors=[str(e)])
        finally:
            self._active = None

    async def list_pending(self) -> list[PendingItem]:
        """Open items passing the author filter, flagged when a review is due."""
        settings = self.settings_store.current
        pending: list[PendingItem] = []
        for candidate in await self.discovery.list_candidates():
            if not should_process(candidate.author, settings):
                continue
            pending.append(
                PendingItem(
                    repo=candidate.repo,
                    number=candidate.number,
                    title=candidate.title,
                    author=candidate.author,
                    has_changes=self.ledger.get(candidate.identity) != candidate.head_revision,
                )
            )
        return pending

    # ------------------------------------------------------------------
    # Cycle internals
    # ------------------------------------------------------------------

    async def _process_candidates(
        self,
        candidates: list[Candidate],
        custom_prompt: str | None,
        force: bool,
        details_map: dict[ItemIdentity, ItemDetails] | None = None,
    ) -> SyncOutcome:
        settings = self.settings_store.current
        outcome = SyncOutcome(SyncStatus.COMPLETED)

        due: list[Candidate] = []
        ledger_changed = False
        for candidate in candidates:
            last = self.ledger.get(candidate.identity)
            if last == candidate.head_revision and not force:
                continue
            if not should_process(candidate.author, settings):
                # Filtered items are marked seen so they are not rediscovered as new
                self.ledger.set(candidate.identity, candidate.head_revision)
                ledger_changed = True
                outcome.skipped += 1
                continue
            action = "New PR" if last is None else "PR Updated"
            logger.info(
                "%s detected",
                action,
                pr=candidate.identity.key,
                author=candidate.author,
                sha=short_sha(candidate.head_revision),
                previous_sha=short_sha(last) if last else None,
            )
            due.append(candidate)
        if ledger_changed:
            self.ledger.persist()

        partitions: dict[str, list[Candidate]] = {}
        for candidate in due:
            partitions.setdefault(candidate.repo, []).append(candidate)

        if partitions:
            logger.info("Processing PRs", count=len(due), repos=len(partitions), concurrency=settings.parallel_reviews)
            semaphore = asyncio.Semaphore(settings.parallel_reviews)

            async def run_partition(items: list[Candidate], results: list[bool]) -> None:
                async with semaphore:
                    for item in items:
                        details = details_map.get(item.identity) if details_map else None
                        results.append(await self._process_item(item, custom_prompt, details))

            groups = list(partitions.values())
            group_results: list[list[bool]] = [[] for _ in groups]
            errors = await asyncio.gather(
                *(run_partition(items, results) for items, results in zip(groups, group_results)),
                return_exceptions=True,
            )
            for items, results, error in zip(groups, group_results, errors):
                outcome.processed += sum(1 for ok in results if ok)
                outcome.failed += sum(1 for ok in results if not ok)
                if isinstance(error, BaseException):
                    # The failing item and the rest of its repository count as failed
                    logger.error("Repository worker failed", repo=items[0].repo, error=str(error))
                    outcome.errors.append(f"{items[0].repo}: {error}")
                    outcome.failed += len(items) - len(results)

        outcome.message = self._summary(outcome)
        if outcome.processed or outcome.failed:
            logger.info("Sync complete", processed=outcome.processed, failed=outcome.failed, skipped=outcome.skipped)
        return outcome

    @staticmethod
    def _summary(outcome: SyncOutcome) -> str:
        if not (outcome.processed or outcome.failed or outcome.skipped):
            return "No PRs needed review"
        return f"Reviewed {outcome.processed} PR(s), {outcome.failed} failed, {outcome.skipped} skipped"

    async def _process_item(
        self,
        candidate: Candidate,
        custom_prompt: str | None,
        details: ItemDetails | None = None,
    ) -> bool:
        """Review one item in its own worktree. Returns True on success."""
        identity = candidate.identity
        settings = self.settings_store.current
        revision = candidate.head_revision
        try:
            await self.isolation.ensure_base_clone(identity.repo)
            worktree = await self.isolation.acquire_worktree(identity, fallback_revision=candidate.head_revision)
            revision = worktree.revision

            if details is None:
                details = await self.hosting.view_item(identity) or _details_from_candidate(candidate)
            changed_files = await self.hosting.changed_files(identity)
            logger.info("Changed files", pr=identity.key, files=changed_files[:5], total=len(changed_files))

            prior = self.review_store.recent_successful(identity, settings.context_versions)
            prompt = build_review_prompt(details, changed_files, prior, custom_prompt, revision)
            result = await self.generator.generate(worktree.path, prompt)
            if not result.ok:
                raise _GeneratorFailed(result.error or result.status.value)

            self._record_meta(identity, details)
            self.review_store.append_version(identity, revision, result.output)
        except Exception as e:  # noqa: BLE001 - one item's failure must not abort the cycle
            error = str(e)[:ERROR_SNIPPET_CHARS]
            if isinstance(e, _GeneratorFailed):
                logger.warning("Review failed, will retry on next poll", pr=identity.key, error=error)
            else:
                logger.error("Error processing PR", pr=identity.key, error=error, exc_info=True)
            self._record_failure(identity, details or _details_from_candidate(candidate), revision, error)
            return False
        finally:
            await self.isolation.release_worktree(identity)

        self.ledger.set(identity, revision)
        self.ledger.persist()
        return True

    def _record_meta(self, identity: ItemIdentity, details: ItemDetails) -> None:
        existing = self.review_store.read_meta(identity)
        created_at = existing.created_at if existing else datetime.now(timezone.utc).isoformat()
        self.review_store.write_meta(
            identity,
            ReviewMeta(
                title=details.title or "Untitled",
                repo=identity.repo,
                number=identity.number,
                author=details.author or "unknown",
                url=details.canonical_url,
                created_at=created_at,
            ),
        )

    def _record_failure(self, identity: ItemIdentity, details: ItemDetails, revision: str, error: str) -> None:
        try:
            self._record_meta(identity, details)
            self.review_store.append_version(
                identity,
                revision,
                FAILED_REVIEW_BODY,
                status=ReviewStatus.FAILED,
                error=error,
            )
        except OSError:
            logger.exception("Could not record failed review", pr=identity.key)


class _GeneratorFailed(Exception):
    """Generator returned a non-success result."""
