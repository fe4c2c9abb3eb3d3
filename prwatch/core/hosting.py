"""GitHub access through the `gh` CLI.

Query helpers log and degrade to empty/unknown results on failure so that a
flaky hosting call never aborts a cycle. `head_revision` is the exception: the
worktree cannot be created without it, so it raises `HostingError`.
"""

from __future__ import annotations

import asyncio
import json

from structlog import get_logger

from prwatch.constants import GH_DIFF_TIMEOUT_S, GH_TIMEOUT_S, REPO_LIST_LIMIT, SEARCH_LIMIT
from prwatch.core.errors import HostingError
from prwatch.core.identity import ItemIdentity
from prwatch.core.models import Candidate, ItemDetails, ItemState

logger = get_logger(__name__)

LIST_FIELDS = "number,title,headRefName,headRefOid,author,updatedAt"
SEARCH_FIELDS = "repository,number,title,author,updatedAt"
VIEW_FIELDS = "number,title,headRefName,headRefOid,author,updatedAt,body,baseRefName,url,state"


def author_login(raw: object) -> str:
    """`author` is `{"login": ...}` in most gh output but a bare string in some."""
    if isinstance(raw, dict):
        login = raw.get("login")
        return login if isinstance(login, str) and login else "unknown"
    if isinstance(raw, str) and raw:
        return raw
    return "unknown"


def _repository_name(raw: object) -> str | None:
    if isinstance(raw, dict):
        name = raw.get("nameWithOwner") or raw.get("name")
        return name if isinstance(name, str) and name else None
    if isinstance(raw, str) and raw:
        return raw
    return None


def _opt_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _parse_state(raw: object) -> ItemState:
    if isinstance(raw, str):
        try:
            return ItemState(raw.upper())
        except ValueError:
            pass
    return ItemState.UNKNOWN


class GitHubHost:
    """Thin async wrapper around the gh CLI."""

    def __init__(self, gh_binary: str = "gh", timeout_s: float = GH_TIMEOUT_S) -> None:
        self._gh = gh_binary
        self._timeout_s = timeout_s

    async def _run(self, args: list[str], timeout_s: float | None = None) -> str:
        """Run gh and return stripped stdout.

        Raises:
            HostingError: On spawn failure, timeout or non-zero exit.
        """
        command = " ".join(args)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._gh,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise HostingError(f"Could not start gh ({command}): {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s or self._timeout_s)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise HostingError(f"gh {command} timed out") from exc

        if proc.returncode != 0:
            stderr_msg = stderr.decode("utf-8", errors="replace").strip() or "(no stderr)"
            raise HostingError(f"gh {command} failed ({proc.returncode}): {stderr_msg}")
        return stdout.decode("utf-8", errors="replace").strip()

    async def _run_json(self, args: list[str]) -> object:
        output = await self._run(args)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise HostingError(f"gh {' '.join(args)} returned invalid JSON: {exc}") from exc

    async def check_auth(self) -> bool:
        try:
            await self._run(["auth", "status"])
        except HostingError as exc:
            logger.error("gh auth check failed", error=str(exc))
            return False
        return True

    async def list_repo_items(self, repo: str, limit: int = REPO_LIST_LIMIT) -> list[Candidate]:
        """Open PRs of one repository. Entries without a head revision are dropped."""
        try:
            data = await self._run_json(
                ["pr", "list", "--repo", repo, "--state", "open", "--json", LIST_FIELDS, "--limit", str(limit)]
            )
        except HostingError as exc:
            logger.error("Listing pull requests failed", repo=repo, error=str(exc))
            return []
        if not isinstance(data, list):
            return []

        candidates: list[Candidate] = []
        for entry in data:
            if not isinstance(entry, dict) or not isinstance(entry.get("number"), int):
                continue
            try:
                identity = ItemIdentity(repo, entry["number"])
            except ValueError as exc:
                logger.warning("Skipping pull request with invalid identity", repo=repo, error=str(exc))
                continue
            head = _opt_str(entry.get("headRefOid"))
            if not head:
                logger.warning("No commit SHA available, skipping", pr=identity.key)
                continue
            candidates.append(
                Candidate(
                    identity=identity,
                    title=str(entry.get("title") or ""),
                    author=author_login(entry.get("author")),
                    head_revision=head,
                    head_branch=_opt_str(entry.get("headRefName")),
                    updated_at=_opt_str(entry.get("updatedAt")),
                )
            )
        return candidates

    async def search_involving_me(self, limit: int = SEARCH_LIMIT) -> list[ItemIdentity]:
        """Identities of open PRs involving the authenticated user."""
        try:
            data = await self._run_json(
                ["search", "prs", "--state=open", "--involves=@me", "--json", SEARCH_FIELDS, "--limit", str(limit)]
            )
        except HostingError as exc:
            logger.error("Searching pull requests failed", error=str(exc))
            return []
        if not isinstance(data, list):
            return []

        identities: list[ItemIdentity] = []
        for entry in data:
            if not isinstance(entry, dict) or not isinstance(entry.get("number"), int):
                continue
            repo = _repository_name(entry.get("repository"))
            if not repo:
                continue
            try:
                identities.append(ItemIdentity(repo, entry["number"]))
            except ValueError:
                logger.warning("Skipping search result with malformed repository", repo=repo)
        return identities

    async def view_item(self, identity: ItemIdentity) -> ItemDetails | None:
        """Full metadata for one item, or None when the query fails."""
        try:
            data = await self._run_json(
                ["pr", "view", str(identity.number), "--repo", identity.repo, "--json", VIEW_FIELDS]
            )
        except HostingError as exc:
            logger.warning("Fetching pull request details failed", pr=identity.key, error=str(exc))
            return None
        if not isinstance(data, dict):
            return None
        return ItemDetails(
            identity=identity,
            title=str(data.get("title") or ""),
            author=author_login(data.get("author")),
            head_revision=_opt_str(data.get("headRefOid")),
            head_branch=_opt_str(data.get("headRefName")),
            base_branch=_opt_str(data.get("baseRefName")),
            description=str(data.get("body") or ""),
            url=_opt_str(data.get("url")),
            state=_parse_state(data.get("state")),
        )

    async def changed_files(self, identity: ItemIdentity) -> list[str]:
        try:
            output = await self._run(
                ["pr", "diff", str(identity.number), "--repo", identity.repo, "--name-only"],
                timeout_s=GH_DIFF_TIMEOUT_S,
            )
        except HostingError as exc:
            logger.warning("Listing changed files failed", pr=identity.key, error=str(exc))
            return []
        return [line for line in output.splitlines() if line.strip()]

    async def item_state(self, identity: ItemIdentity) -> ItemState:
        """OPEN/CLOSED/MERGED, or UNKNOWN when the query fails."""
        try:
            data = await self._run_json(["pr", "view", str(identity.number), "--repo", identity.repo, "--json", "state"])
        except HostingError as exc:
            logger.debug("State query failed", pr=identity.key, error=str(exc))
            return ItemState.UNKNOWN
        if not isinstance(data, dict):
            return ItemState.UNKNOWN
        return _parse_state(data.get("state"))

    async def head_revision(self, identity: ItemIdentity) -> str:
        """Current head commit of the item.

        Raises:
            HostingError: If the lookup fails or returns nothing.
        """
        output = await self._run(
            ["pr", "view", str(identity.number), "--repo", identity.repo, "--json", "headRefOid", "--jq", ".headRefOid"]
        )
        if not output:
            raise HostingError(f"No head revision reported for {identity.key}")
        return output
