"""prwatch daemon: wires the components and runs the poll and cleanup timers."""

from __future__ import annotations

import asyncio
import atexit
import fcntl
import os
import signal
import sys
from typing import TextIO

from structlog import get_logger

from prwatch.api_server import APIServer
from prwatch.config import AppConfig, load_app_config, load_env
from prwatch.config.settings_store import SettingsStore
from prwatch.core.collector import GarbageCollector
from prwatch.core.discovery import CandidateDiscovery
from prwatch.core.generator import ReviewGenerator
from prwatch.core.hosting import GitHubHost
from prwatch.core.isolation import IsolationManager
from prwatch.core.ledger import WorkLedger
from prwatch.core.orchestrator import SyncOrchestrator
from prwatch.core.review_store import ReviewStore
from prwatch.logging_config import setup_logging

logger = get_logger(__name__)

CLEANUP_RETRY_S = 60.0  # Cleanup found a sync running
LOOP_ERROR_BACKOFF_S = 10.0


class DaemonLockError(Exception):
    """Raised when another daemon instance is already running."""


class DaemonStartupError(Exception):
    """Raised when a startup check fails."""


class PRWatchDaemon:  # pylint: disable=too-many-instance-attributes  # Daemon coordinator needs multiple components
    """Owns every component and the background loops."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        paths = config.paths

        self.hosting = GitHubHost()
        self.settings_store = SettingsStore(paths.settings_file, config.defaults)
        self.ledger = WorkLedger(paths.ledger_file)
        self.review_store = ReviewStore(paths.reviews_dir)
        self.isolation = IsolationManager(paths, self.hosting, config.clone_url_template)
        self.generator = ReviewGenerator(config.review_command, config.review_timeout_s)
        self.discovery = CandidateDiscovery(self.hosting, self.settings_store)
        self.orchestrator = SyncOrchestrator(
            hosting=self.hosting,
            discovery=self.discovery,
            ledger=self.ledger,
            settings_store=self.settings_store,
            isolation=self.isolation,
            review_store=self.review_store,
            generator=self.generator,
        )
        self.collector = GarbageCollector(
            hosting=self.hosting,
            ledger=self.ledger,
            settings_store=self.settings_store,
            isolation=self.isolation,
            review_store=self.review_store,
        )
        self.api_server = APIServer(
            self.orchestrator,
            self.settings_store,
            self.review_store,
            host=config.api_host,
            port=config.api_port,
        )

        self.shutdown_event = asyncio.Event()
        self.pid_file = paths.lock_file
        self.pid_file_handle: TextIO | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Run startup checks, load state and start the loops.

        Raises:
            DaemonStartupError: If gh is not authenticated.
        """
        logger.info("Starting prwatch daemon", work_dir=str(self.config.paths.root))
        self.config.paths.ensure()

        if not await self.hosting.check_auth():
            raise DaemonStartupError("GitHub CLI not authenticated. Run: gh auth login")

        settings = self.settings_store.load()
        self.ledger.load()
        migrated = await asyncio.to_thread(self.review_store.migrate_legacy)
        if migrated:
            logger.info("Converted %d legacy review files", migrated)

        logger.info(
            "Configuration",
            user=settings.github_username or "(not set)",
            repos=settings.repo_patterns or "(all involving me)",
            mode=settings.sync_mode,
            poll_interval=settings.poll_interval,
            parallel_reviews=settings.parallel_reviews,
        )

        await self.api_server.start()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("prwatch daemon started")

    async def stop(self) -> None:
        logger.info("Stopping prwatch daemon...")
        for task in (self._poll_task, self._cleanup_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.api_server.stop()
        self.ledger.persist()
        logger.info("prwatch daemon stopped")

    async def _poll_loop(self) -> None:
        """Run a cycle every `pollInterval` seconds while in auto mode.

        Mode and interval are re-read every iteration so settings changes
        apply without a restart.
        """
        while True:
            try:
                settings = self.settings_store.current
                if settings.sync_mode == "auto":
                    await self.orchestrator.run_cycle()
                else:
                    logger.debug("Manual sync mode, skipping automatic cycle")
                await asyncio.sleep(self.settings_store.current.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in poll loop: %s", e, exc_info=True)
                await asyncio.sleep(LOOP_ERROR_BACKOFF_S)

    async def _cleanup_loop(self) -> None:
        """Run the collector every `cleanupIntervalHours`, never during a sync."""
        while True:
            try:
                report = await self.orchestrator.run_exclusive(self.collector.run)
                if report is None:
                    logger.debug("Sync in progress, postponing cleanup")
                    await asyncio.sleep(CLEANUP_RETRY_S)
                    continue
                await asyncio.sleep(self.settings_store.current.cleanup_interval_hours * 3600)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in periodic cleanup: %s", e, exc_info=True)
                await asyncio.sleep(LOOP_ERROR_BACKOFF_S)

    def _acquire_lock(self) -> None:
        """Acquire the work-dir lock with fcntl advisory locking.

        Raises:
            DaemonLockError: If another daemon uses the same work dir.
        """
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            # "a+" keeps the inode so the lock stays effective
            self.pid_file_handle = open(self.pid_file, "a+", encoding="utf-8")
            try:
                fcntl.flock(self.pid_file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                self.pid_file_handle.close()
                self.pid_file_handle = None
                try:
                    existing_pid = self.pid_file.read_text(encoding="utf-8").strip()
                except OSError:
                    existing_pid = "unknown"
                raise DaemonLockError(
                    f"Another daemon instance is already running (PID: {existing_pid}). "
                    f"Stop it first or remove {self.pid_file} if it's stale."
                ) from exc

            self.pid_file_handle.seek(0)
            self.pid_file_handle.truncate()
            self.pid_file_handle.write(str(os.getpid()))
            self.pid_file_handle.flush()
            logger.debug("Acquired daemon lock (PID: %s)", os.getpid())
            atexit.register(self._release_lock)
        except OSError as e:
            if self.pid_file_handle:
                self.pid_file_handle.close()
                self.pid_file_handle = None
            raise DaemonLockError(f"Failed to acquire lock: {e}") from e

    def _release_lock(self) -> None:
        try:
            if self.pid_file_handle:
                self.pid_file_handle.close()
                self.pid_file_handle = None
                logger.debug("Released daemon lock")
                if self.pid_file.exists():
                    self.pid_file.unlink()
        except OSError as e:
            logger.error("Failed to release lock: %s", e)


async def main() -> None:
    """Main entry point."""
    load_env()
    config = load_app_config()
    setup_logging(level=config.log_level)

    daemon = PRWatchDaemon(config)

    def signal_handler(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s signal...", sig_name)
        daemon.shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    started = False
    try:
        daemon._acquire_lock()
        await daemon.start()
        started = True
        await daemon.shutdown_event.wait()
    except DaemonLockError as e:
        logger.error(str(e))
        sys.exit(1)
    except DaemonStartupError as e:
        logger.error("Daemon startup failed: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
    finally:
        try:
            if started:
                await daemon.stop()
        except Exception as e:
            logger.error("Error during daemon stop: %s", e)
        finally:
            daemon._release_lock()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
