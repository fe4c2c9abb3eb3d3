"""HTTP control surface (FastAPI on uvicorn)."""

from __future__ import annotations

import asyncio
import json

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from structlog import get_logger

from prwatch import __version__
from prwatch.api_models import (
    FieldErrorDTO,
    PendingItemDTO,
    RepoReviewsDTO,
    ReviewDetailDTO,
    ReviewItemSummaryDTO,
    ReviewVersionDTO,
    StatusDTO,
    SyncRequest,
    SyncResponseDTO,
)
from prwatch.config.schema import FieldError
from prwatch.config.settings_store import SettingsStore
from prwatch.core.identity import ItemIdentity
from prwatch.core.models import ReviewMeta
from prwatch.core.orchestrator import SyncOrchestrator, SyncStatus
from prwatch.core.review_store import ReviewStore

logger = get_logger(__name__)

API_STOP_TIMEOUT_S = 5.0
API_STARTUP_RETRIES = 50


def _errors_response(errors: list[FieldError]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"errors": [FieldErrorDTO(field=e.field, message=e.message).model_dump() for e in errors]},
    )


def _identity_or_400(owner: str, name: str, number: int) -> ItemIdentity:
    try:
        return ItemIdentity(f"{owner}/{name}", number)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _fallback_meta(identity: ItemIdentity) -> ReviewMeta:
    return ReviewMeta(
        title="Untitled",
        repo=identity.repo,
        number=identity.number,
        author="unknown",
        url=f"https://github.com/{identity.repo}/pull/{identity.number}",
        created_at="",
    )


class APIServer:
    """JSON API for status, manual syncs, settings and stored reviews."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        settings_store: SettingsStore,
        review_store: ReviewStore,
        host: str = "127.0.0.1",
        port: int = 3456,
    ) -> None:
        self.orchestrator = orchestrator
        self.settings_store = settings_store
        self.review_store = review_store
        self.host = host
        self.port = port
        self.app = FastAPI(title="prwatch API", version=__version__)
        self._setup_routes()
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None

    def _setup_routes(self) -> None:
        """Register all routes on the FastAPI app."""

        @self.app.get("/health")
        async def health() -> dict[str, str]:  # pyright: ignore
            return {"status": "ok"}

        @self.app.get("/api/status")
        async def status() -> StatusDTO:  # pyright: ignore
            return StatusDTO(
                syncing=self.orchestrator.syncing,
                cleaning=self.orchestrator.cleaning,
                mode=self.settings_store.current.sync_mode,
            )

        @self.app.post("/api/sync", response_model=SyncResponseDTO)
        async def sync(request: SyncRequest | None = Body(default=None)) -> JSONResponse | SyncResponseDTO:  # pyright: ignore
            request = request or SyncRequest()
            if request.selected is not None:
                identities = [ItemIdentity(item.repo, item.number) for item in request.selected]
                outcome = await self.orchestrator.sync_selected(identities, request.custom_prompt, request.force)
            else:
                outcome = await self.orchestrator.run_cycle(request.custom_prompt, request.force)

            dto = SyncResponseDTO.from_outcome(outcome)
            if outcome.status is SyncStatus.BUSY:
                return JSONResponse(status_code=409, content=dto.model_dump())
            if outcome.status is SyncStatus.FAILED:
                return JSONResponse(status_code=500, content=dto.model_dump())
            return dto

        @self.app.get("/api/pending")
        async def pending() -> list[PendingItemDTO]:  # pyright: ignore
            try:
                items = await self.orchestrator.list_pending()
            except Exception as e:
                logger.error("list pending failed: %s", e, exc_info=True)
                raise HTTPException(status_code=500, detail=f"Failed to list pending PRs: {e}") from e
            return [PendingItemDTO.from_item(item) for item in items]

        @self.app.get("/api/settings")
        async def get_settings() -> dict[str, object]:  # pyright: ignore
            return self.settings_store.current.to_public_dict()

        @self.app.patch("/api/settings", response_model=None)
        async def patch_settings(request: Request) -> JSONResponse | dict[str, object]:  # pyright: ignore
            try:
                payload = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                return _errors_response([FieldError(field="settings", message="Invalid JSON body")])
            errors = self.settings_store.update(payload)
            if errors:
                return _errors_response(errors)
            return self.settings_store.current.to_public_dict()

        @self.app.post("/api/settings/reset")
        async def reset_settings() -> dict[str, object]:  # pyright: ignore
            return self.settings_store.reset().to_public_dict()

        @self.app.get("/api/reviews")
        async def list_reviews() -> list[RepoReviewsDTO]:  # pyright: ignore
            grouped: dict[str, list[ReviewItemSummaryDTO]] = {}
            for identity in self.review_store.items():
                meta = self.review_store.read_meta(identity) or _fallback_meta(identity)
                versions = self.review_store.list_versions(identity)
                grouped.setdefault(identity.repo, []).append(
                    ReviewItemSummaryDTO(
                        number=identity.number,
                        title=meta.title,
                        author=meta.author,
                        url=meta.url,
                        version_count=len(versions),
                        latest=ReviewVersionDTO.from_version(versions[0]) if versions else None,
                    )
                )
            return [RepoReviewsDTO(repo=repo, items=items) for repo, items in sorted(grouped.items())]

        @self.app.get("/api/reviews/{owner}/{name}/{number}")
        async def get_review(owner: str, name: str, number: int) -> ReviewDetailDTO:  # pyright: ignore
            identity = _identity_or_400(owner, name, number)
            if not self.review_store.item_dir(identity).is_dir():
                raise HTTPException(status_code=404, detail="Review not found")
            meta = self.review_store.read_meta(identity) or _fallback_meta(identity)
            versions = [
                ReviewVersionDTO.from_version(version, self.review_store.read_version(identity, version))
                for version in self.review_store.list_versions(identity)
            ]
            return ReviewDetailDTO.build(meta, versions)

        @self.app.delete("/api/reviews/{owner}/{name}/{number}")
        async def delete_review(owner: str, name: str, number: int) -> dict[str, object]:  # pyright: ignore
            identity = _identity_or_400(owner, name, number)
            if not self.review_store.delete_item(identity):
                raise HTTPException(status_code=404, detail="Review not found")
            return {"deleted": True, "repo": identity.repo, "number": identity.number}

    async def start(self) -> None:
        """Start uvicorn inside the running event loop."""
        if self.server_task and not self.server_task.done():
            logger.warning("API server already running; skipping start")
            return

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self.server = uvicorn.Server(config)
        server = self.server
        self.server_task = asyncio.create_task(server.serve())

        for _ in range(API_STARTUP_RETRIES):
            if server.started:
                break
            if self.server_task.done():
                exc = self.server_task.exception()
                logger.error("API server exited during startup: %s", exc)
                return
            await asyncio.sleep(0.1)

        if server.started:
            logger.info("API server listening on %s:%d", self.host, self.port)
        else:
            logger.error("API server failed to start within timeout")

    async def stop(self) -> None:
        server = self.server
        if server:
            if server.started:
                server.should_exit = True
            elif self.server_task:
                self.server_task.cancel()

        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=API_STOP_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timed out stopping API server; cancelling task")
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Error during server shutdown: %s", e)
        logger.info("API server stopped")
