"""Versioned review artifacts.

Layout under the reviews dir::

    <owner_name>/pr-<N>/meta.json
    <owner_name>/pr-<N>/v-<YYYYMMDDTHHMMSSffffffZ>.md

Each version is a Markdown file with a YAML front-matter header. Versions are
never rewritten; the stamp in the filename sorts in creation order.
"""

from __future__ import annotations

import json
import os
import re
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

import frontmatter
import yaml
from structlog import get_logger

from prwatch.constants import (
    LEGACY_REVIEW_PREFIX,
    META_FILENAME,
    VERSION_PREFIX,
    VERSION_STAMP_FORMAT,
    VERSION_SUFFIX,
)
from prwatch.core.identity import ItemIdentity, repo_from_dir_name
from prwatch.core.models import ReviewMeta, ReviewStatus, ReviewVersion

logger = get_logger(__name__)

FAILED_REVIEW_BODY = "The automated review could not be completed. Will retry on next poll."

_LEGACY_ENTRY_RE = re.compile(r"^## Review @ (?P<ts>\S+)(?P<failed> \(FAILED\))?[ \t]*$", re.MULTILINE)
_LEGACY_FIELD_RE = re.compile(r"^\*\*(?P<name>[A-Za-z]+):\*\*[ \t]*(?P<value>.*)$", re.MULTILINE)
_LEGACY_TITLE_RE = re.compile(r"^# PR Review:[ \t]*(?P<title>.*)$", re.MULTILINE)


def version_filename(timestamp: datetime) -> str:
    stamp = timestamp.astimezone(timezone.utc).strftime(VERSION_STAMP_FORMAT)
    return f"{VERSION_PREFIX}{stamp}{VERSION_SUFFIX}"


def parse_version_filename(filename: str) -> datetime | None:
    if not (filename.startswith(VERSION_PREFIX) and filename.endswith(VERSION_SUFFIX)):
        return None
    stamp = filename[len(VERSION_PREFIX) : -len(VERSION_SUFFIX)]
    try:
        return datetime.strptime(stamp, VERSION_STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_timestamp(raw: object) -> datetime | None:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, str) and raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _split_legacy_entry(body: str) -> tuple[dict[str, str], str]:
    """Leading `**Commit:**` / `**Error:**` lines, then the review text."""
    fields: dict[str, str] = {}
    lines = body.strip("\n").splitlines()
    index = 0
    while index < len(lines):
        match = _LEGACY_FIELD_RE.match(lines[index])
        if not match or match.group("name").lower() not in ("commit", "error"):
            break
        fields[match.group("name").lower()] = match.group("value").strip()
        index += 1
    text = "\n".join(lines[index:]).strip()
    # Entries are separated by a horizontal rule
    return fields, text.removesuffix("---").strip()


class ReviewStore:
    """Append-only review versions plus per-item metadata."""

    def __init__(self, reviews_dir: Path) -> None:
        self.reviews_dir = reviews_dir

    def item_dir(self, identity: ItemIdentity) -> Path:
        return self.reviews_dir / identity.repo_dir / identity.item_dir

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def write_meta(self, identity: ItemIdentity, meta: ReviewMeta) -> None:
        path = self.item_dir(identity) / META_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(json.dumps(meta.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def read_meta(self, identity: ItemIdentity) -> ReviewMeta | None:
        path = self.item_dir(identity) / META_FILENAME
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable review metadata", pr=identity.key, error=str(exc))
            return None
        if not isinstance(data, dict):
            return None
        return ReviewMeta.from_dict(data)

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def append_version(
        self,
        identity: ItemIdentity,
        revision: str,
        text: str,
        status: ReviewStatus = ReviewStatus.SUCCESS,
        error: str | None = None,
        created_at: datetime | None = None,
    ) -> ReviewVersion:
        """Store a new version. Never overwrites an existing one."""
        timestamp = (created_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
        directory = self.item_dir(identity)
        directory.mkdir(parents=True, exist_ok=True)

        # Same-microsecond stamps get nudged forward
        while (directory / version_filename(timestamp)).exists():
            timestamp += timedelta(microseconds=1)
        filename = version_filename(timestamp)

        metadata: dict[str, object] = {
            "timestamp": timestamp.isoformat(),
            "revision": revision,
            "status": status.value,
        }
        if error:
            metadata["error"] = error
        post = frontmatter.Post(text.strip() + "\n", **metadata)

        path = directory / filename
        tmp_path = directory / f".{filename}.tmp"
        tmp_path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
        logger.info("Review saved", pr=identity.key, version=filename, status=status.value)
        return ReviewVersion(
            identity=identity,
            filename=filename,
            timestamp=timestamp,
            revision=revision,
            status=status,
            error=error,
        )

    def _version_files(self, identity: ItemIdentity) -> list[Path]:
        """Version files, newest first."""
        directory = self.item_dir(identity)
        if not directory.is_dir():
            return []
        files = [p for p in directory.iterdir() if p.is_file() and parse_version_filename(p.name) is not None]
        return sorted(files, key=lambda p: p.name, reverse=True)

    def _load_post(self, path: Path) -> frontmatter.Post | None:
        try:
            return frontmatter.load(path)
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            logger.warning("Unreadable review version", path=str(path), error=str(exc))
            return None

    def _to_version(self, identity: ItemIdentity, path: Path, post: frontmatter.Post) -> ReviewVersion:
        stamp = parse_version_filename(path.name)
        timestamp = _parse_timestamp(post.metadata.get("timestamp")) or stamp
        try:
            status = ReviewStatus(str(post.metadata.get("status", ReviewStatus.SUCCESS.value)))
        except ValueError:
            status = ReviewStatus.SUCCESS
        error = post.metadata.get("error")
        return ReviewVersion(
            identity=identity,
            filename=path.name,
            timestamp=timestamp,  # type: ignore[arg-type]
            revision=str(post.metadata.get("revision") or ""),
            status=status,
            error=str(error) if error else None,
        )

    def list_versions(self, identity: ItemIdentity) -> list[ReviewVersion]:
        """All readable versions, newest first."""
        versions: list[ReviewVersion] = []
        for path in self._version_files(identity):
            post = self._load_post(path)
            if post is not None:
                versions.append(self._to_version(identity, path, post))
        return versions

    def read_version(self, identity: ItemIdentity, version: ReviewVersion | str) -> str | None:
        """Review text of one version, or None if missing or unreadable."""
        filename = version.filename if isinstance(version, ReviewVersion) else version
        if parse_version_filename(filename) is None:
            return None
        path = self.item_dir(identity) / filename
        if not path.is_file():
            return None
        post = self._load_post(path)
        return post.content if post is not None else None

    def recent_successful(self, identity: ItemIdentity, limit: int) -> list[tuple[ReviewVersion, str]]:
        """Newest successful versions with their text, at most `limit`."""
        if limit <= 0:
            return []
        found: list[tuple[ReviewVersion, str]] = []
        for path in self._version_files(identity):
            post = self._load_post(path)
            if post is None:
                continue
            version = self._to_version(identity, path, post)
            if version.failed:
                continue
            found.append((version, post.content))
            if len(found) >= limit:
                break
        return found

    def prune(self, identity: ItemIdentity, keep: int) -> int:
        """Delete the oldest versions beyond `keep`. Returns how many were removed."""
        excess = self._version_files(identity)[max(keep, 0) :]
        removed = 0
        for path in excess:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Pruned old review versions", pr=identity.key, removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def items(self) -> list[ItemIdentity]:
        identities: list[ItemIdentity] = []
        if not self.reviews_dir.is_dir():
            return identities
        for repo_dir in sorted(self.reviews_dir.iterdir()):
            if not repo_dir.is_dir():
                continue
            for item_dir in sorted(repo_dir.iterdir()):
                if not item_dir.is_dir():
                    continue
                identity = ItemIdentity.from_dirs(repo_dir.name, item_dir.name)
                if identity is not None:
                    identities.append(identity)
        return sorted(identities)

    def repos(self) -> list[str]:
        return sorted({identity.repo for identity in self.items()})

    def delete_item(self, identity: ItemIdentity) -> bool:
        """Remove every stored version and the metadata of one item."""
        directory = self.item_dir(identity)
        if not directory.is_dir():
            return False
        shutil.rmtree(directory)
        repo_dir = directory.parent
        if repo_dir.is_dir() and not any(repo_dir.iterdir()):
            repo_dir.rmdir()
        logger.info("Deleted stored reviews", pr=identity.key)
        return True

    # ------------------------------------------------------------------
    # Legacy single-file reviews
    # ------------------------------------------------------------------

    def migrate_legacy(self) -> int:
        """Convert `pr-review-<N>.md` files into the versioned layout.

        Returns:
            Number of legacy files converted. Converted files are removed, so
            a second run finds nothing.
        """
        if not self.reviews_dir.is_dir():
            return 0
        migrated = 0
        for repo_dir in sorted(self.reviews_dir.iterdir()):
            if not repo_dir.is_dir() or repo_from_dir_name(repo_dir.name) is None:
                continue
            for legacy in sorted(repo_dir.glob(f"{LEGACY_REVIEW_PREFIX}*.md")):
                number = legacy.name[len(LEGACY_REVIEW_PREFIX) : -len(".md")]
                identity = ItemIdentity.from_dirs(repo_dir.name, f"pr-{number}")
                if identity is None:
                    logger.warning("Skipping unrecognised legacy review", path=str(legacy))
                    continue
                try:
                    self._migrate_file(identity, legacy)
                except (OSError, UnicodeDecodeError) as exc:
                    logger.error("Legacy review migration failed", path=str(legacy), error=str(exc))
                    continue
                migrated += 1
        if migrated:
            logger.info("Migrated %d legacy review files", migrated)
        return migrated

    def _migrate_file(self, identity: ItemIdentity, legacy: Path) -> None:
        content = legacy.read_text(encoding="utf-8")
        entries = list(_LEGACY_ENTRY_RE.finditer(content))

        header = content[: entries[0].start()] if entries else content
        fields = {m.group("name").lower(): m.group("value").strip() for m in _LEGACY_FIELD_RE.finditer(header)}
        title_match = _LEGACY_TITLE_RE.search(header)

        fallback_time = datetime.fromtimestamp(legacy.stat().st_mtime, tz=timezone.utc)
        first_time = _parse_timestamp(entries[0].group("ts")) if entries else None
        created_at = _parse_timestamp(fields.get("created")) or first_time or fallback_time

        if self.read_meta(identity) is None:
            self.write_meta(
                identity,
                ReviewMeta(
                    title=title_match.group("title").strip() if title_match else "Untitled",
                    repo=identity.repo,
                    number=identity.number,
                    author=fields.get("author") or "unknown",
                    url=fields.get("url") or f"https://github.com/{identity.repo}/pull/{identity.number}",
                    created_at=created_at.isoformat(),
                ),
            )

        for index, entry in enumerate(entries):
            end = entries[index + 1].start() if index + 1 < len(entries) else len(content)
            entry_fields, text = _split_legacy_entry(content[entry.end() : end])
            failed = entry.group("failed") is not None
            self.append_version(
                identity,
                revision=entry_fields.get("commit", "").strip("`"),
                text=text,
                status=ReviewStatus.FAILED if failed else ReviewStatus.SUCCESS,
                error=entry_fields.get("error") if failed else None,
                created_at=_parse_timestamp(entry.group("ts")) or fallback_time,
            )

        legacy.unlink()
        logger.info("Migrated legacy review", pr=identity.key, versions=len(entries))
