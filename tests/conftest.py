"""Pytest configuration for prwatch tests."""

import logging
from pathlib import Path

import pytest
import structlog

from prwatch.config import WorkPaths
from prwatch.config.schema import Settings
from prwatch.config.settings_store import SettingsStore

# Keep test output quiet; tests assert on behavior, not log lines.
structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


@pytest.fixture
def work_paths(tmp_path: Path) -> WorkPaths:
    paths = WorkPaths(tmp_path / "work")
    paths.ensure()
    return paths


@pytest.fixture
def settings_store(work_paths: WorkPaths) -> SettingsStore:
    return SettingsStore(work_paths.settings_file, Settings())
