"""Mutable settings with validated updates and JSON persistence."""

from __future__ import annotations

import json
from pathlib import Path

from structlog import get_logger

from prwatch.config.schema import FieldError, Settings, sanitize, validate_update

logger = get_logger(__name__)


class SettingsStore:
    """In-memory settings layer backed by `.pr-settings.json`.

    Updates are validated as a whole: if any field is invalid nothing changes.
    The file only ever holds a full, valid snapshot.
    """

    def __init__(self, path: Path, defaults: Settings) -> None:
        self._path = path
        self._defaults = defaults
        self._current = defaults

    @property
    def current(self) -> Settings:
        """Return the current settings (immutable snapshot)."""
        return self._current

    @property
    def defaults(self) -> Settings:
        return self._defaults

    def load(self) -> Settings:
        """Load saved settings over the defaults.

        A missing or corrupt file leaves the defaults in place. Invalid saved
        fields are dropped one by one.
        """
        self._current = self._defaults
        if not self._path.exists():
            return self._current
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read settings file, using defaults", path=str(self._path), error=str(exc))
            return self._current
        if not isinstance(raw, dict):
            logger.error("Settings file is not a JSON object, using defaults", path=str(self._path))
            return self._current

        self._current, errors = sanitize(self._defaults, raw)
        for error in errors:
            logger.warning("Ignoring saved setting", field=error.field, error=error.message)
        logger.info("Loaded settings", path=str(self._path))
        return self._current

    def update(self, updates: object) -> list[FieldError]:
        """Apply a partial update.

        Returns:
            An empty list when applied, otherwise one error per rejected field
            (and nothing is applied).
        """
        new_settings, errors = validate_update(self._current, updates)
        if errors or new_settings is None:
            logger.info("Rejected settings update", fields=[e.field for e in errors])
            return errors
        self._current = new_settings
        self.save()
        logger.info("Settings updated", keys=sorted(updates) if isinstance(updates, dict) else [])
        return []

    def reset(self) -> Settings:
        """Restore the environment defaults and persist them."""
        self._current = self._defaults
        self.save()
        logger.info("Settings reset to defaults")
        return self._current

    def save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(self._current.to_public_dict(), indent=2), encoding="utf-8")
        except OSError:
            logger.exception("Failed to save settings", path=str(self._path))
