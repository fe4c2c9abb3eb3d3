"""API request/response models for the control surface.

JSON field names are camelCase (via aliases) to match the settings file.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from prwatch.core.models import PendingItem, ReviewMeta, ReviewVersion
from prwatch.core.orchestrator import SyncOutcome


class SelectedItemRequest(BaseModel):  # type: ignore[explicit-any]
    """One item picked for a manual sync."""

    model_config = ConfigDict(frozen=True)

    repo: str = Field(..., min_length=3, pattern=r"^[^/#\s]+/[^/#\s]+$")
    number: int = Field(..., ge=1)


class SyncRequest(BaseModel):  # type: ignore[explicit-any]
    """Manual sync trigger. Without `selected` a full cycle runs."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    selected: list[SelectedItemRequest] | None = None
    custom_prompt: str | None = Field(default=None, alias="customPrompt")
    force: bool = False


class SyncResponseDTO(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    success: bool
    status: Literal["completed", "busy", "failed"]
    message: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> "SyncResponseDTO":
        return cls(
            success=outcome.success,
            status=outcome.status.value,
            message=outcome.message,
            processed=outcome.processed,
            failed=outcome.failed,
            skipped=outcome.skipped,
            error=None if outcome.success else outcome.message,
            errors=outcome.errors,
        )


class StatusDTO(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    syncing: bool
    cleaning: bool = False
    mode: Literal["auto", "manual"]


class PendingItemDTO(BaseModel):  # type: ignore[explicit-any]
    """Open item as shown in the pending list."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    repo: str
    number: int
    title: str
    author: str
    has_changes: bool = Field(..., alias="hasChanges")

    @classmethod
    def from_item(cls, item: PendingItem) -> "PendingItemDTO":
        return cls(
            repo=item.repo,
            number=item.number,
            title=item.title,
            author=item.author,
            has_changes=item.has_changes,
        )


class FieldErrorDTO(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class ReviewVersionDTO(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    filename: str
    timestamp: str
    revision: str
    status: Literal["success", "failed"]
    error: str | None = None
    content: str | None = None

    @classmethod
    def from_version(cls, version: ReviewVersion, content: str | None = None) -> "ReviewVersionDTO":
        return cls(
            filename=version.filename,
            timestamp=version.timestamp.isoformat(),
            revision=version.revision,
            status=version.status.value,
            error=version.error,
            content=content,
        )


class ReviewItemSummaryDTO(BaseModel):  # type: ignore[explicit-any]
    """Reviewed item in the per-repository listing."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    number: int
    title: str
    author: str
    url: str
    version_count: int = Field(..., alias="versionCount")
    latest: ReviewVersionDTO | None = None


class RepoReviewsDTO(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    repo: str
    items: list[ReviewItemSummaryDTO]


class ReviewDetailDTO(BaseModel):  # type: ignore[explicit-any]
    """One item's metadata with every stored version (newest first)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    repo: str
    number: int
    title: str
    author: str
    url: str
    created_at: str = Field(..., alias="createdAt")
    versions: list[ReviewVersionDTO]

    @classmethod
    def build(cls, meta: ReviewMeta, versions: list[ReviewVersionDTO]) -> "ReviewDetailDTO":
        return cls(
            repo=meta.repo,
            number=meta.number,
            title=meta.title,
            author=meta.author,
            url=meta.url,
            created_at=meta.created_at,
            versions=versions,
        )
