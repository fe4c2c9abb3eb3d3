"""Static configuration.

Values here come from the environment (optionally via a `.env` file) and need
a restart to change. The editable settings live in `schema.py` and are managed
at runtime by `SettingsStore`; the environment only supplies their defaults.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv
from structlog import get_logger

from prwatch.config.schema import Settings, sanitize
from prwatch.constants import (
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_CLONE_URL,
    DEFAULT_LOG_LEVEL,
    DEFAULT_REVIEW_COMMAND,
    DEFAULT_REVIEW_TIMEOUT_S,
    LEDGER_FILENAME,
    LOCK_FILENAME,
    REPOS_DIRNAME,
    REVIEWS_DIRNAME,
    SETTINGS_FILENAME,
    WORKTREES_DIRNAME,
)

logger = get_logger(__name__)

_project_root = Path(__file__).resolve().parent.parent.parent


@dataclass(frozen=True)
class WorkPaths:
    """Filesystem layout under the work dir."""

    root: Path

    @property
    def ledger_file(self) -> Path:
        return self.root / LEDGER_FILENAME

    @property
    def settings_file(self) -> Path:
        return self.root / SETTINGS_FILENAME

    @property
    def lock_file(self) -> Path:
        return self.root / LOCK_FILENAME

    @property
    def repos_dir(self) -> Path:
        return self.root / REPOS_DIRNAME

    @property
    def worktrees_dir(self) -> Path:
        return self.root / WORKTREES_DIRNAME

    @property
    def reviews_dir(self) -> Path:
        return self.root / REVIEWS_DIRNAME

    def ensure(self) -> None:
        for directory in (self.root, self.repos_dir, self.worktrees_dir, self.reviews_dir):
            directory.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class AppConfig:
    # pylint: disable=too-many-instance-attributes  # Config classes naturally have many fields
    paths: WorkPaths
    api_host: str
    api_port: int
    review_command: tuple[str, ...]
    review_timeout_s: float
    clone_url_template: str
    log_level: str
    defaults: Settings


def load_env() -> None:
    """Load `.env` (path overridable with PRWATCH_ENV_PATH) without overriding the real environment."""
    env_path = os.getenv("PRWATCH_ENV_PATH")
    dotenv_path = Path(env_path).expanduser() if env_path else _project_root / ".env"
    if not dotenv_path.is_absolute():
        dotenv_path = (_project_root / dotenv_path).resolve()
    load_dotenv(dotenv_path)


def _env_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer environment value", name=name, value=raw)
        return None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric environment value", name=name, value=raw)
        return default


def env_default_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build the settings defaults from environment variables.

    Unset variables keep the schema defaults; invalid ones are logged and
    ignored individually.
    """
    env = os.environ if env is None else env
    raw: dict[str, object] = {}

    if env.get("GITHUB_USERNAME"):
        raw["githubUsername"] = env["GITHUB_USERNAME"]
    if env.get("REPOS"):
        raw["repoPatterns"] = [s.strip() for s in env["REPOS"].split(",") if s.strip()]
    if env.get("SYNC_MODE"):
        raw["syncMode"] = env["SYNC_MODE"].strip().lower()
    if "ONLY_OWN_PRS" in env:
        raw["onlyOwnPRs"] = env["ONLY_OWN_PRS"].strip().lower() == "true"
    if "REVIEW_OWN_PRS" in env:
        raw["reviewOwnPRs"] = env["REVIEW_OWN_PRS"].strip().lower() == "true"

    int_fields = {
        "POLL_INTERVAL": "pollInterval",
        "PARALLEL_REVIEWS": "parallelReviews",
        "MAX_REVIEW_VERSIONS": "maxReviewVersions",
        "CONTEXT_VERSIONS": "contextVersions",
        "CLEANUP_INTERVAL_HOURS": "cleanupIntervalHours",
        "CLEANUP_AGE_DAYS": "cleanupAgeDays",
    }
    for env_name, field in int_fields.items():
        value = _env_int(env, env_name)
        if value is not None:
            raw[field] = value

    settings, errors = sanitize(Settings(), raw)
    for error in errors:
        logger.warning("Invalid environment default ignored", field=error.field, error=error.message)
    return settings


def load_app_config(env: Mapping[str, str] | None = None) -> AppConfig:
    """Assemble the static configuration from the environment."""
    env = os.environ if env is None else env

    work_dir = Path(env.get("WORK_DIR") or _project_root).expanduser().resolve()
    command = shlex.split(env.get("REVIEW_COMMAND") or DEFAULT_REVIEW_COMMAND)
    if not command:
        command = shlex.split(DEFAULT_REVIEW_COMMAND)

    return AppConfig(
        paths=WorkPaths(work_dir),
        api_host=env.get("WEB_HOST") or DEFAULT_API_HOST,
        api_port=_env_int(env, "WEB_PORT") or DEFAULT_API_PORT,
        review_command=tuple(command),
        review_timeout_s=_env_float(env, "REVIEW_TIMEOUT", DEFAULT_REVIEW_TIMEOUT_S),
        clone_url_template=env.get("GIT_CLONE_URL") or DEFAULT_CLONE_URL,
        log_level=env.get("PRWATCH_LOG_LEVEL") or DEFAULT_LOG_LEVEL,
        defaults=env_default_settings(env),
    )
