"""Full sync cycles: discovery -> worktree -> review command -> store -> ledger."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from prwatch.core.generator import ReviewGenerator
from prwatch.core.identity import ItemIdentity
from prwatch.core.ledger import WorkLedger
from prwatch.core.models import Candidate, ItemDetails, ItemState
from prwatch.core.orchestrator import SyncOrchestrator, SyncStatus
from prwatch.core.review_store import ReviewStore

ITEM = ItemIdentity("acme/widgets", 7)

# Reads the prompt, then reports what is checked out in its working directory
REVIEW_SCRIPT = 'cat >/dev/null; echo "Reviewed: $(cat README.md)"'


def _candidate(revision: str) -> Candidate:
    return Candidate(identity=ITEM, title="Improve docs", author="octocat", head_revision=revision)


@pytest.fixture
def discovery():
    return MagicMock(list_candidates=AsyncMock(return_value=[]))


@pytest.fixture
def orchestrator(hosting, discovery, work_paths, settings_store, isolation):
    hosting.changed_files = AsyncMock(return_value=["README.md"])
    hosting.view_item = AsyncMock(
        side_effect=lambda identity: ItemDetails(
            identity=identity,
            title="Improve docs",
            author="octocat",
            head_revision=hosting.head_revision.return_value,
            state=ItemState.OPEN,
        )
    )
    return SyncOrchestrator(
        hosting=hosting,
        discovery=discovery,
        ledger=WorkLedger(work_paths.ledger_file),
        settings_store=settings_store,
        isolation=isolation,
        review_store=ReviewStore(work_paths.reviews_dir),
        generator=ReviewGenerator(["sh", "-c", REVIEW_SCRIPT], timeout_s=5),
    )


@pytest.mark.asyncio
async def test_review_runs_in_isolated_checkout_of_head(orchestrator, origin, hosting, discovery, isolation):
    first = origin.repo.head.commit.hexsha
    hosting.head_revision.return_value = first
    discovery.list_candidates.return_value = [_candidate(first)]

    outcome = await orchestrator.run_cycle()

    assert outcome.status is SyncStatus.COMPLETED
    assert outcome.processed == 1
    (version,) = orchestrator.review_store.list_versions(ITEM)
    assert version.revision == first
    assert "Reviewed: first" in orchestrator.review_store.read_version(ITEM, version)
    assert orchestrator.ledger.get(ITEM) == first
    assert not isolation.worktree_path(ITEM).exists()
    assert orchestrator.review_store.read_meta(ITEM).title == "Improve docs"

    # Unchanged head: nothing to do
    outcome = await orchestrator.run_cycle()
    assert outcome.processed == 0
    assert len(orchestrator.review_store.list_versions(ITEM)) == 1

    # New head: reviewed again from the new revision
    second = origin.commit("README.md", "second\n")
    hosting.head_revision.return_value = second
    discovery.list_candidates.return_value = [_candidate(second)]

    outcome = await orchestrator.run_cycle()

    assert outcome.processed == 1
    newest, oldest = orchestrator.review_store.list_versions(ITEM)
    assert newest.revision == second
    assert "Reviewed: second" in orchestrator.review_store.read_version(ITEM, newest)
    assert orchestrator.ledger.get(ITEM) == second
    assert WorkLedger(orchestrator.ledger.path).load().get(ITEM) == second


@pytest.mark.asyncio
async def test_failed_review_is_recorded_and_retried(orchestrator, origin, hosting, discovery, isolation):
    first = origin.repo.head.commit.hexsha
    hosting.head_revision.return_value = first
    discovery.list_candidates.return_value = [_candidate(first)]
    working = orchestrator.generator
    orchestrator.generator = ReviewGenerator(["sh", "-c", "cat >/dev/null; echo nope >&2; exit 2"], timeout_s=5)

    outcome = await orchestrator.run_cycle()

    assert outcome.failed == 1
    (failed,) = orchestrator.review_store.list_versions(ITEM)
    assert failed.failed
    assert "exited with code 2" in failed.error
    assert orchestrator.ledger.get(ITEM) is None
    assert not isolation.worktree_path(ITEM).exists()

    orchestrator.generator = working
    outcome = await orchestrator.run_cycle()

    assert outcome.processed == 1
    assert orchestrator.ledger.get(ITEM) == first
    assert [v.failed for v in orchestrator.review_store.list_versions(ITEM)] == [False, True]
