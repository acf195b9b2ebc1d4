import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .adapters import ChatAdapter
from .anthropic_client import AnthropicClient
from .config import AppSettings, load_settings
from .db import Database, format_timestamp
from .gemini import GeminiClient
from .orchestrator import ChatDeps, run_chat
from .perplexity import PerplexityClient
from .schemas import ChatRequest, StreamEvent
from .search import SearchCascade
from .tavily import TavilyClient
from .usage import UsageLedger, summarize_usage

logger = logging.getLogger("uvicorn.error")

DONE_FRAME = "data: [DONE]\n\n"
# Frames buffered between the turn and a slow client before the turn waits.
SSE_QUEUE_MAXSIZE = 64


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_chat_deps(request: Request) -> ChatDeps:
    state = request.app.state
    return ChatDeps(settings=state.settings, adapters=state.adapters, cascade=state.cascade, ledger=state.ledger)


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def build_adapters(settings: AppSettings) -> Dict[str, ChatAdapter]:
    endpoints = settings.endpoints
    return {
        "anthropic": AnthropicClient(
            settings.anthropic_api_key,
            endpoints.anthropic,
            timeout=settings.request_timeout_s,
            search_model=settings.standard_search_model,
        ),
        "gemini": GeminiClient(settings.gemini_api_key, endpoints.gemini, timeout=settings.request_timeout_s),
        "perplexity": PerplexityClient(
            settings.perplexity_api_key,
            endpoints.perplexity,
            timeout=settings.request_timeout_s,
            search_model=settings.high_precision_search_model,
        ),
    }


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/usage")
async def get_usage(db: Database = Depends(get_db), settings: AppSettings = Depends(get_settings)):
    now = datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    start = min(now - timedelta(days=settings.usage_window_days), month_start)
    records = await db.query_usage_records(format_timestamp(start), format_timestamp(now))
    return summarize_usage(records, now, settings.monthly_budget_usd).model_dump()


@router.post("/api/chat")
async def chat(payload: ChatRequest, deps: ChatDeps = Depends(get_chat_deps)):
    if not payload.messages:
        raise HTTPException(status_code=400, detail="messages is required")
    queue: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_MAXSIZE)
    stop_event = asyncio.Event()

    async def emit(event: StreamEvent) -> None:
        await queue.put(event)

    async def run_and_close() -> None:
        try:
            await run_chat(payload, deps, emit, stop_event)
        except Exception:
            logger.exception("Unhandled error while streaming chat")
            await queue.put(StreamEvent(type="error", text="応答の生成中にエラーが発生しました。"))
        finally:
            if not stop_event.is_set():
                await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run_and_close())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield sse_format(event.to_frame())
            yield DONE_FRAME
        finally:
            if not task.done():
                # Client went away: stop the turn and close upstream streams.
                stop_event.set()
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    adapters: Optional[Dict[str, ChatAdapter]] = None,
    tavily_client: Optional[TavilyClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            for adapter in app.state.adapters.values():
                await adapter.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="chatrelay", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.adapters = adapters if adapters is not None else build_adapters(settings)
    app.state.tavily_client = tavily_client or TavilyClient(
        settings.tavily_api_key, settings.endpoints.tavily, timeout=settings.search_timeout_s
    )
    app.state.ledger = UsageLedger(app.state.db)
    app.state.cascade = SearchCascade(
        settings,
        high_precision=app.state.adapters["perplexity"],
        standard=app.state.adapters["anthropic"],
        eco=app.state.tavily_client,
        ledger=app.state.ledger,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CHATRELAY_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "chatrelay.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
