from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from mdimg_backend.answers import MAX_IMAGE_URLS, AnswerProvider, FastGPTClient
from mdimg_backend.config import Settings, configure_logging, load_settings
from mdimg_backend.errors import (
    AnswerProviderError,
    ConfigurationError,
    InvalidRequestError,
    MdImgError,
    RenderError,
    SessionNotFoundError,
    StorageError,
    describe_error,
)
from mdimg_backend.fonts import FontResolver
from mdimg_backend.janitor import JanitorTask
from mdimg_backend.pipeline import AnswerPipeline, AnswerResult
from mdimg_backend.render import Renderer, RenderInvoker, build_renderer
from mdimg_backend.security import is_safe_basename, normalize_owner_id, normalize_session_id, safe_join
from mdimg_backend.transcode import MarkdownTranscoder
from mdimg_backend.workspace import FileSessionStore, Session, SessionSummary

logger = logging.getLogger("mdimg.server")

ALLOWED_IMAGE_EXTS = {".png", ".jpg", ".jpeg"}
HISTORY_LIMIT = 10
STATS_DETAIL_LIMIT = 15

HELP_TEXT = """# Markdown answer bot

**POST /api/ask** `{owner_id, question, image_urls?, session_id?}`
Ask the AI a question and receive the answer rendered as a PNG image.
Up to three image URLs may be attached for visual questions. Pass the
`session_id` from the `X-Session-Id` header to continue a conversation.

**POST /api/render** `{owner_id, markdown, question?, session_id?}`
Render an answer you already have.

**GET /api/sessions?owner_id=...** - your recent sessions, newest first.

**GET /api/sessions/stats?owner_id=...&detailed=true** - storage statistics.

Sessions are private to their owner and are deleted after a period of
inactivity.
"""


class AskRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    question: str = Field(min_length=1)
    image_urls: List[str] = Field(default_factory=list, max_length=MAX_IMAGE_URLS)
    session_id: Optional[str] = None


class RenderRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    markdown: str
    question: str = ""
    session_id: Optional[str] = None


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _summary_dict(summary: SessionSummary) -> dict:
    return {
        "session_id": summary.id,
        "input_preview": summary.input_preview,
        "turns": summary.turn_count,
        "images": summary.image_count,
        "created_at": _iso(summary.created_at),
        "last_accessed_at": _iso(summary.last_accessed_at),
    }


def _session_dict(session: Session) -> dict:
    return {
        "session_id": session.id,
        "owner_id": session.owner_id,
        "created_at": _iso(session.created_at),
        "last_accessed_at": _iso(session.last_accessed_at),
        "turns": [
            {
                "index": turn.index,
                "input": turn.input_text,
                "response_markdown": turn.response_markdown,
                "image": turn.image_reference.name if turn.image_reference else None,
                "created_at": _iso(turn.created_at),
            }
            for turn in session.turns
        ],
    }


def _status_for(exc: MdImgError) -> int:
    if isinstance(exc, InvalidRequestError):
        return 400
    if isinstance(exc, SessionNotFoundError):
        return 404
    if isinstance(exc, (RenderError, AnswerProviderError)):
        return 502
    if isinstance(exc, (StorageError, ConfigurationError)):
        return 503
    return 500


def _require_owner(owner_id: str) -> str:
    try:
        return normalize_owner_id(owner_id)
    except ValueError:
        raise InvalidRequestError(f"Invalid owner id: {owner_id!r}") from None


def _image_response(result: AnswerResult) -> FileResponse:
    if result.image_path is None or not result.image_path.is_file():
        raise RenderError("Rendered image is missing")
    headers = {
        "X-Session-Id": result.session_id,
        "X-Turn-Index": str(result.turn.index),
        "Cache-Control": "no-store",
    }
    return FileResponse(result.image_path, media_type="image/png", headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    *,
    renderer: Optional[Renderer] = None,
    answers: Optional[AnswerProvider] = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        # Both checks raise ConfigurationError, which aborts startup before any request is served.
        font_path = FontResolver(settings.font_paths).resolve()
        active_renderer = renderer or build_renderer(settings)
        await active_renderer.check_available()

        settings.sessions_dir.mkdir(parents=True, exist_ok=True)
        settings.temp_dir.mkdir(parents=True, exist_ok=True)

        store = FileSessionStore(settings.sessions_dir)
        invoker = RenderInvoker(
            active_renderer,
            settings.temp_dir,
            timeout=settings.render_timeout_seconds,
            max_concurrency=settings.render_concurrency,
        )
        owned_client: Optional[FastGPTClient] = None
        provider = answers
        if provider is None and settings.answer_api_url:
            owned_client = provider = FastGPTClient(
                settings.answer_api_url,
                settings.answer_api_token,
                timeout=settings.answer_timeout_seconds,
                max_concurrency=settings.answer_concurrency,
            )
        elif provider is None:
            logger.warning("FASTGPT_API_URL is not set; /api/ask is disabled")

        janitor = JanitorTask(
            store,
            settings.temp_dir,
            expiry_seconds=settings.session_expiry_seconds,
            interval_seconds=settings.cleanup_interval_seconds,
            temp_grace_seconds=settings.temp_grace_seconds,
        )

        app.state.settings = settings
        app.state.store = store
        app.state.invoker = invoker
        app.state.pipeline = AnswerPipeline(
            store,
            MarkdownTranscoder.from_settings(settings, font_path),
            invoker,
            provider,
        )
        logger.info(
            "Ready: renderer=%s font=%s data=%s expiry=%ss",
            active_renderer.name,
            font_path,
            settings.data_dir,
            settings.session_expiry_seconds,
        )

        # The loop's first sweep runs immediately, reclaiming whatever a previous run left.
        janitor.start()
        try:
            yield
        finally:
            await janitor.stop()
            if owned_client is not None:
                await owned_client.aclose()

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(MdImgError)
    async def _typed_error(request: Request, exc: MdImgError) -> JSONResponse:
        described = describe_error(exc.code)
        return JSONResponse(
            status_code=_status_for(exc),
            content={
                "error_code": exc.code,
                "message": described["message"],
                "hint": described["hint"],
                "retryable": exc.retryable,
            },
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error_code": "INTERNAL_SERVER_ERROR", "message": "internal server error", "retryable": False},
        )

    @app.post("/api/ask")
    async def ask(payload: AskRequest, request: Request) -> FileResponse:
        owner = _require_owner(payload.owner_id)
        logger.info("Question from %s: %.30s", owner, payload.question)
        result = await request.app.state.pipeline.ask(
            owner,
            payload.question,
            image_urls=payload.image_urls,
            session_id=payload.session_id,
        )
        return _image_response(result)

    @app.post("/api/render")
    async def render(payload: RenderRequest, request: Request) -> FileResponse:
        owner = _require_owner(payload.owner_id)
        result = await request.app.state.pipeline.render_answer(
            owner,
            payload.question,
            payload.markdown,
            session_id=payload.session_id,
        )
        return _image_response(result)

    @app.get("/api/sessions")
    async def list_sessions(
        request: Request,
        owner_id: str = Query(...),
        limit: int = Query(HISTORY_LIMIT, ge=1, le=100),
    ) -> JSONResponse:
        owner = _require_owner(owner_id)
        summaries = await asyncio.to_thread(request.app.state.store.list_sessions, owner)
        return JSONResponse(
            {
                "total": len(summaries),
                "sessions": [_summary_dict(s) for s in summaries[:limit]],
            }
        )

    @app.get("/api/sessions/stats")
    async def storage_stats(
        request: Request,
        owner_id: str = Query(...),
        detailed: bool = False,
    ) -> JSONResponse:
        owner = _require_owner(owner_id)
        summaries = await asyncio.to_thread(request.app.state.store.list_sessions, owner)
        payload = {
            "total_sessions": len(summaries),
            "total_images": sum(s.image_count for s in summaries),
            "expiry_seconds": request.app.state.settings.session_expiry_seconds,
        }
        if detailed:
            payload["sessions"] = [_summary_dict(s) for s in summaries[:STATS_DETAIL_LIMIT]]
            payload["truncated"] = max(0, len(summaries) - STATS_DETAIL_LIMIT)
        return JSONResponse(payload)

    async def _owned_session(request: Request, session_id: str, owner_id: str) -> Session:
        owner = _require_owner(owner_id)
        session = await asyncio.to_thread(request.app.state.store.get_session, session_id)
        if session is None or session.owner_id != owner:
            raise SessionNotFoundError(session_id)
        return session

    @app.get("/api/session/{session_id}")
    async def session_detail(request: Request, session_id: str, owner_id: str = Query(...)) -> JSONResponse:
        session = await _owned_session(request, session_id, owner_id)
        await asyncio.to_thread(request.app.state.store.touch, session.id)
        return JSONResponse(_session_dict(session))

    @app.post("/api/session/{session_id}/touch")
    async def touch(request: Request, session_id: str, owner_id: str = Query(...)) -> JSONResponse:
        session = await _owned_session(request, session_id, owner_id)
        await asyncio.to_thread(request.app.state.store.touch, session.id)
        return JSONResponse({"ok": True})

    @app.post("/api/session/{session_id}/delete")
    async def delete_session(request: Request, session_id: str, owner_id: str = Query(...)) -> JSONResponse:
        try:
            session = await _owned_session(request, session_id, owner_id)
        except SessionNotFoundError:
            # Idempotent: deleting a missing session is treated as success.
            return JSONResponse({"ok": True, "deleted": False})
        deleted = await asyncio.to_thread(request.app.state.store.delete_session, session.id)
        return JSONResponse({"ok": True, "deleted": deleted})

    @app.get("/s/{session_id}/images/{filename}")
    async def get_session_image(request: Request, session_id: str, filename: str) -> FileResponse:
        """Serve a session image.

        No owner is asked for: the session id is the capability. The id must
        be a strict UUID and the filename a plain basename with an image
        extension; safe_join keeps the result inside the session.
        """
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            raise HTTPException(status_code=404, detail="Not found")
        if not is_safe_basename(filename) or Path(filename).suffix.lower() not in ALLOWED_IMAGE_EXTS:
            raise HTTPException(status_code=404, detail="Not found")

        store: FileSessionStore = request.app.state.store
        try:
            path = safe_join(store.session_dir(sid), filename)
        except ValueError:
            raise HTTPException(status_code=404, detail="Not found")
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Not found")

        await asyncio.to_thread(store.touch, sid)
        return FileResponse(path, headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"})

    @app.get("/api/help")
    async def help_text() -> JSONResponse:
        return JSONResponse({"help": HELP_TEXT})

    @app.get("/api/health")
    async def health(request: Request) -> JSONResponse:
        invoker: RenderInvoker = request.app.state.invoker
        return JSONResponse(
            {
                "ok": True,
                "renderer": invoker.renderer.name,
                "active_renders": invoker.active,
                "max_renders": invoker.max_concurrency,
            }
        )

    return app


load_dotenv()
app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
