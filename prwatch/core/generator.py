"""Review prompt construction and the external review process."""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence

from structlog import get_logger

from prwatch.constants import DEFAULT_REVIEW_TIMEOUT_S, ERROR_SNIPPET_CHARS, SHORT_SHA_CHARS
from prwatch.core.models import ItemDetails, ReviewVersion

logger = get_logger(__name__)

_TASK_SECTION = """## Your Task
1. Read and analyze each changed file in this repository
2. Review the code changes for:
   - Code quality and best practices
   - Potential bugs or edge cases
   - Security concerns
   - Performance implications
   - Test coverage (if applicable)
3. Provide specific, actionable feedback with file paths and line references
4. If there were previous reviews, note which issues have been addressed and which remain
5. Summarize your overall assessment (approve, request changes, or needs discussion)

Start by reading the changed files, then provide your review."""

_CONTEXT_INTRO = """## Previous Reviews (for context)
The following are your previous reviews of this PR. Use them to:
- Track what issues were raised before
- Note if previous concerns have been addressed
- Avoid repeating the same feedback if already fixed
- Reference previous review points if still relevant"""


class GeneratorStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class GeneratorResult:
    """Tagged outcome of one generator run."""

    status: GeneratorStatus
    output: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is GeneratorStatus.SUCCESS


def short_sha(revision: str | None) -> str:
    return revision[:SHORT_SHA_CHARS] if revision else "unknown"


def build_review_prompt(
    details: ItemDetails,
    changed_files: Sequence[str],
    prior_versions: Sequence[tuple[ReviewVersion, str]] = (),
    custom_prompt: str | None = None,
    revision: str | None = None,
) -> str:
    """Render the review prompt for one item.

    Args:
        details: Item metadata.
        changed_files: Paths touched by the item.
        prior_versions: Earlier successful reviews, newest first.
        custom_prompt: Extra operator instructions.
        revision: Revision being reviewed; defaults to the details' head.
    """
    identity = details.identity
    sections = [
        "You are reviewing a Pull Request. Analyze the changes and provide a thorough code review.",
        "\n".join(
            [
                f"## PR #{identity.number}: {details.title}",
                f"**Repository:** {identity.repo}",
                f"**Author:** {details.author or 'unknown'}",
                f"**Branch:** {details.head_branch or 'unknown'} -> {details.base_branch or 'main'}",
                f"**URL:** {details.canonical_url}",
                f"**Commit:** {short_sha(revision or details.head_revision)}",
            ]
        ),
        f"## PR Description\n{details.description.strip() or '(No description provided)'}",
        f"## Changed Files ({len(changed_files)})\n" + "\n".join(f"- {path}" for path in changed_files),
    ]

    if prior_versions:
        # Oldest first reads as a history
        previous = "\n\n".join(
            f"### Review @ {version.timestamp.isoformat()} (commit {short_sha(version.revision)})\n{text.strip()}"
            for version, text in reversed(prior_versions)
        )
        sections.append(f"{_CONTEXT_INTRO}\n\n<previous_reviews>\n{previous}\n</previous_reviews>")

    if custom_prompt and custom_prompt.strip():
        sections.append(f"## Additional Instructions\n{custom_prompt.strip()}")

    sections.append(_TASK_SECTION)
    return "\n\n".join(sections)


def _snippet(text: str) -> str:
    return text.strip()[:ERROR_SNIPPET_CHARS]


class ReviewGenerator:
    """Runs the review command with the prompt on stdin."""

    def __init__(self, command: Sequence[str], timeout_s: float = DEFAULT_REVIEW_TIMEOUT_S) -> None:
        if not command:
            raise ValueError("Review command must not be empty")
        self.command = tuple(command)
        self.timeout_s = timeout_s

    async def generate(self, cwd: Path, prompt: str) -> GeneratorResult:
        """Run one review. Never raises for process failures."""
        logger.info("Running review generator", cwd=str(cwd), command=self.command[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Could not start review generator", error=str(exc))
            return GeneratorResult(GeneratorStatus.FAILED, error=_snippet(f"Failed to start {self.command[0]}: {exc}"))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(prompt.encode("utf-8")), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            await self._kill_group(proc)
            logger.error("Review generator timed out", timeout_s=self.timeout_s)
            return GeneratorResult(GeneratorStatus.TIMEOUT, error=f"Review timed out after {self.timeout_s:g}s")

        output = stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            stderr_msg = stderr.decode("utf-8", errors="replace")
            error = _snippet(f"{self.command[0]} exited with code {proc.returncode}: {stderr_msg}")
            logger.error("Review generator failed", error=error)
            return GeneratorResult(GeneratorStatus.FAILED, output=output, error=error)
        if not output.strip():
            logger.error("Review generator produced no output")
            return GeneratorResult(GeneratorStatus.FAILED, error="Review generator produced no output")
        return GeneratorResult(GeneratorStatus.SUCCESS, output=output)

    @staticmethod
    async def _kill_group(proc: asyncio.subprocess.Process) -> None:
        """Kill the generator and anything it spawned, then reap it."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        await proc.wait()
