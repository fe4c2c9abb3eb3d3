"""Unit tests for daemon startup, locking and timer loops."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from prwatch.config import load_app_config
from prwatch.core.models import CollectorReport
from prwatch.daemon import CLEANUP_RETRY_S, DaemonLockError, DaemonStartupError, PRWatchDaemon


@pytest.fixture
def daemon(tmp_path):
    config = load_app_config({"WORK_DIR": str(tmp_path / "work"), "REVIEW_COMMAND": "cat"})
    return PRWatchDaemon(config)


def test_second_instance_cannot_take_lock(daemon, tmp_path):
    other = PRWatchDaemon(daemon.config)
    daemon._acquire_lock()
    try:
        with pytest.raises(DaemonLockError):
            other._acquire_lock()
        assert daemon.pid_file.read_text().strip().isdigit()
    finally:
        daemon._release_lock()

    assert not daemon.pid_file.exists()
    other._acquire_lock()
    other._release_lock()


@pytest.mark.asyncio
async def test_start_fails_without_gh_auth(daemon):
    daemon.api_server.start = AsyncMock()

    with patch.object(daemon.hosting, "check_auth", new=AsyncMock(return_value=False)):
        with pytest.raises(DaemonStartupError):
            await daemon.start()

    daemon.api_server.start.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_loads_state_and_stop_persists_ledger(daemon):
    paths = daemon.config.paths
    legacy = paths.reviews_dir / "acme_widgets" / "pr-review-7.md"
    legacy.parent.mkdir(parents=True)
    legacy.write_text("# PR Review: Old\n\n**Author:** me\n\n---\n\n## Review @ 2024-01-01T00:00:00Z\n**Commit:** `abc`\n\nFine.\n")
    daemon.api_server.start = AsyncMock()
    daemon.api_server.stop = AsyncMock()
    daemon.orchestrator.run_cycle = AsyncMock()
    daemon.orchestrator.run_exclusive = AsyncMock(return_value=CollectorReport())

    with patch.object(daemon.hosting, "check_auth", new=AsyncMock(return_value=True)):
        await daemon.start()
    await daemon.stop()

    daemon.api_server.start.assert_awaited_once()
    daemon.api_server.stop.assert_awaited_once()
    assert not legacy.exists()
    assert paths.ledger_file.exists()


@pytest.mark.asyncio
@pytest.mark.parametrize(("mode", "expected_calls"), [("auto", 1), ("manual", 0)])
async def test_poll_loop_respects_sync_mode(daemon, mode, expected_calls):
    daemon.settings_store.update({"syncMode": mode})
    daemon.orchestrator.run_cycle = AsyncMock()

    with patch("prwatch.daemon.asyncio.sleep", new=AsyncMock(side_effect=asyncio.CancelledError)) as sleep:
        await daemon._poll_loop()

    assert daemon.orchestrator.run_cycle.await_count == expected_calls
    sleep.assert_awaited_once_with(daemon.settings_store.current.poll_interval)


@pytest.mark.asyncio
async def test_cleanup_loop_retries_while_sync_running(daemon):
    daemon.orchestrator.run_exclusive = AsyncMock(return_value=None)

    with patch("prwatch.daemon.asyncio.sleep", new=AsyncMock(side_effect=asyncio.CancelledError)) as sleep:
        await daemon._cleanup_loop()

    sleep.assert_awaited_once_with(CLEANUP_RETRY_S)


@pytest.mark.asyncio
async def test_cleanup_loop_sleeps_full_interval_after_run(daemon):
    daemon.settings_store.update({"cleanupIntervalHours": 2})
    daemon.orchestrator.run_exclusive = AsyncMock(return_value=CollectorReport())

    with patch("prwatch.daemon.asyncio.sleep", new=AsyncMock(side_effect=asyncio.CancelledError)) as sleep:
        await daemon._cleanup_loop()

    daemon.orchestrator.run_exclusive.assert_awaited_once_with(daemon.collector.run)
    sleep.assert_awaited_once_with(2 * 3600)
