"""Unit tests for API server endpoints."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from prwatch.api_server import APIServer
from prwatch.core.identity import ItemIdentity
from prwatch.core.models import PendingItem, ReviewMeta, ReviewStatus
from prwatch.core.orchestrator import CLEANUP_BUSY_MESSAGE, SyncOutcome, SyncStatus
from prwatch.core.review_store import ReviewStore

ITEM = ItemIdentity("acme/widgets", 42)
T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_orchestrator():  # type: ignore[explicit-any, unused-ignore]
    """Create mock SyncOrchestrator."""
    orchestrator = MagicMock()
    orchestrator.syncing = False
    orchestrator.cleaning = False
    orchestrator.run_cycle = AsyncMock(
        return_value=SyncOutcome(SyncStatus.COMPLETED, processed=2, message="Synced 2 PRs")
    )
    orchestrator.sync_selected = AsyncMock(
        return_value=SyncOutcome(SyncStatus.COMPLETED, processed=1, message="Synced 1 PR")
    )
    orchestrator.list_pending = AsyncMock(return_value=[])
    return orchestrator


@pytest.fixture
def review_store(work_paths):
    return ReviewStore(work_paths.reviews_dir)


@pytest.fixture
def test_client(mock_orchestrator, settings_store, review_store):  # type: ignore[explicit-any, unused-ignore]
    """Create TestClient for API server."""
    server = APIServer(orchestrator=mock_orchestrator, settings_store=settings_store, review_store=review_store)
    return TestClient(server.app)


def test_health(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_status_reports_mode_and_syncing(test_client, mock_orchestrator, settings_store):
    settings_store.update({"syncMode": "manual"})
    mock_orchestrator.syncing = True

    response = test_client.get("/api/status")

    assert response.json() == {"syncing": True, "cleaning": False, "mode": "manual"}


def test_sync_runs_full_cycle(test_client, mock_orchestrator):
    response = test_client.post("/api/sync")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["processed"] == 2
    assert data["error"] is None
    mock_orchestrator.run_cycle.assert_awaited_once_with(None, False)


def test_sync_selected_items(test_client, mock_orchestrator):
    response = test_client.post(
        "/api/sync",
        json={"selected": [{"repo": "acme/widgets", "number": 42}], "customPrompt": "Be brief", "force": True},
    )

    assert response.status_code == 200
    mock_orchestrator.sync_selected.assert_awaited_once_with([ITEM], "Be brief", True)
    mock_orchestrator.run_cycle.assert_not_awaited()


def test_sync_rejects_malformed_selection(test_client):
    response = test_client.post("/api/sync", json={"selected": [{"repo": "nope", "number": 0}]})

    assert response.status_code == 422


def test_sync_conflict_when_busy(test_client, mock_orchestrator):
    mock_orchestrator.run_cycle.return_value = SyncOutcome(SyncStatus.BUSY, message=CLEANUP_BUSY_MESSAGE)

    response = test_client.post("/api/sync")

    assert response.status_code == 409
    assert response.json()["status"] == "busy"
    assert response.json()["message"] == CLEANUP_BUSY_MESSAGE


def test_sync_failure_is_500(test_client, mock_orchestrator):
    mock_orchestrator.run_cycle.return_value = SyncOutcome(SyncStatus.FAILED, message="gh offline")

    response = test_client.post("/api/sync")

    assert response.status_code == 500
    assert response.json()["error"] == "gh offline"


def test_pending_uses_camel_case(test_client, mock_orchestrator):
    mock_orchestrator.list_pending.return_value = [
        PendingItem(repo="acme/widgets", number=42, title="Fix", author="octocat", has_changes=True)
    ]

    response = test_client.get("/api/pending")

    assert response.status_code == 200
    assert response.json() == [
        {"repo": "acme/widgets", "number": 42, "title": "Fix", "author": "octocat", "hasChanges": True}
    ]


def test_pending_error_is_500(test_client, mock_orchestrator):
    mock_orchestrator.list_pending.side_effect = RuntimeError("boom")

    response = test_client.get("/api/pending")

    assert response.status_code == 500


def test_settings_patch_and_reset(test_client, settings_store):
    response = test_client.patch("/api/settings", json={"pollInterval": 120, "repoPatterns": ["acme/.*"]})

    assert response.status_code == 200
    assert response.json()["pollInterval"] == 120
    assert settings_store.current.repo_patterns == ["acme/.*"]

    response = test_client.post("/api/settings/reset")

    assert response.status_code == 200
    assert response.json()["pollInterval"] == 60
    assert test_client.get("/api/settings").json()["repoPatterns"] == []


def test_settings_patch_reports_field_errors(test_client, settings_store):
    response = test_client.patch("/api/settings", json={"pollInterval": 1})

    assert response.status_code == 400
    errors = response.json()["errors"]
    assert errors[0]["field"] == "pollInterval"
    assert settings_store.current.poll_interval == 60


def test_settings_patch_rejects_invalid_json(test_client):
    response = test_client.patch(
        "/api/settings", content=b"{not json", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "settings"


def test_reviews_list_detail_and_delete(test_client, review_store):
    review_store.write_meta(
        ITEM,
        ReviewMeta(title="Fix", repo=ITEM.repo, number=42, author="octocat", url="u", created_at=T0.isoformat()),
    )
    review_store.append_version(ITEM, "sha1", "First pass.", created_at=T0)
    review_store.append_version(ITEM, "sha2", "", status=ReviewStatus.FAILED, error="timed out")

    listing = test_client.get("/api/reviews").json()

    assert len(listing) == 1
    assert listing[0]["repo"] == "acme/widgets"
    summary = listing[0]["items"][0]
    assert summary["versionCount"] == 2
    assert summary["latest"]["status"] == "failed"

    detail = test_client.get("/api/reviews/acme/widgets/42")
    assert detail.status_code == 200
    body = detail.json()
    assert body["createdAt"] == T0.isoformat()
    assert [v["revision"] for v in body["versions"]] == ["sha2", "sha1"]
    assert "First pass." in body["versions"][1]["content"]

    deleted = test_client.delete("/api/reviews/acme/widgets/42")
    assert deleted.json() == {"deleted": True, "repo": "acme/widgets", "number": 42}
    assert test_client.get("/api/reviews/acme/widgets/42").status_code == 404
    assert test_client.delete("/api/reviews/acme/widgets/42").status_code == 404


def test_review_without_meta_uses_fallback(test_client, review_store):
    review_store.append_version(ITEM, "sha1", "Text", created_at=T0)

    body = test_client.get("/api/reviews/acme/widgets/42").json()

    assert body["title"] == "Untitled"
    assert body["url"] == "https://github.com/acme/widgets/pull/42"
