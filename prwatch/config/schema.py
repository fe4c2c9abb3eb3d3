"""Editable settings schema.

The field set is fixed; every field has an explicit camelCase alias, which is
the key used in the settings file and the API.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from prwatch.core.identity import repo_parts


@dataclass(frozen=True)
class FieldError:
    """One rejected settings field."""

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


def is_regex_pattern(pattern: str) -> bool:
    """Repo patterns written as `/.../` are regular expressions."""
    return len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/")


class Settings(BaseModel):
    """Mutable daemon settings."""

    model_config = ConfigDict(extra="forbid", frozen=True, strict=True, populate_by_name=True)

    github_username: str = Field(default="", alias="githubUsername")
    repo_patterns: list[str] = Field(default_factory=list, alias="repoPatterns")
    poll_interval: int = Field(default=60, ge=10, le=3600, alias="pollInterval")
    sync_mode: Literal["auto", "manual"] = Field(default="auto", alias="syncMode")
    only_own_prs: bool = Field(default=False, alias="onlyOwnPRs")
    review_own_prs: bool = Field(default=False, alias="reviewOwnPRs")
    parallel_reviews: int = Field(default=3, ge=1, le=10, alias="parallelReviews")
    max_review_versions: int = Field(default=10, ge=1, le=100, alias="maxReviewVersions")
    context_versions: int = Field(default=2, ge=0, le=10, alias="contextVersions")
    cleanup_interval_hours: int = Field(default=24, ge=1, alias="cleanupIntervalHours")
    cleanup_age_days: int = Field(default=7, ge=1, alias="cleanupAgeDays")

    @field_validator("github_username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()

    @field_validator("repo_patterns")
    @classmethod
    def validate_repo_patterns(cls, v: list[str]) -> list[str]:
        """Drop blanks; `/regex/` entries must compile, the rest must be `owner/name`."""
        patterns = [p.strip() for p in v if p.strip()]
        for pattern in patterns:
            if is_regex_pattern(pattern):
                try:
                    re.compile(pattern[1:-1])
                except re.error as exc:
                    raise ValueError(f"Invalid regex pattern: {pattern} ({exc})") from exc
            elif repo_parts(pattern) is None:
                raise ValueError(f"Invalid repository name: {pattern} (expected owner/name)")
        return patterns

    def to_public_dict(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


_ALIASES: dict[str, str] = {name: info.alias or name for name, info in Settings.model_fields.items()}


def _normalize_keys(raw: dict[str, object]) -> dict[str, object]:
    """Accept snake_case field names as well as the camelCase aliases."""
    return {_ALIASES.get(key, key): value for key, value in raw.items()}


def _field_errors(exc: ValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    seen: set[str] = set()
    for err in exc.errors():
        loc = err.get("loc") or ()
        field = str(loc[0]) if loc else "settings"
        field = _ALIASES.get(field, field)
        if field in seen:
            continue
        seen.add(field)
        if err.get("type") == "extra_forbidden":
            message = f"Unknown setting: {field}"
        else:
            message = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        errors.append(FieldError(field=field, message=message))
    return errors


def validate_update(current: Settings, updates: object) -> tuple[Settings | None, list[FieldError]]:
    """Validate a partial update against the current settings.

    Returns:
        `(new_settings, [])` when every field is valid, otherwise
        `(None, errors)` with one error per offending field.
    """
    if not isinstance(updates, dict):
        return None, [FieldError(field="settings", message="Expected a JSON object")]

    merged = current.model_dump(by_alias=True)
    merged.update(_normalize_keys(updates))
    try:
        return Settings.model_validate(merged), []
    except ValidationError as exc:
        return None, _field_errors(exc)


def sanitize(base: Settings, raw: dict[str, object]) -> tuple[Settings, list[FieldError]]:
    """Apply the valid fields of `raw` on top of `base`, dropping the rest.

    Used for values that come from disk or the environment, where a bad field
    falls back to its default instead of discarding everything.
    """
    candidate = _normalize_keys(raw)
    settings, errors = validate_update(base, candidate)
    if settings is not None:
        return settings, []
    rejected = {error.field for error in errors}
    kept = {key: value for key, value in candidate.items() if key not in rejected}
    settings, _ = validate_update(base, kept)
    return settings or base, errors
