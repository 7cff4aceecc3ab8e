import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, CONFIG_PATH, MASKED_SECRET, load_settings, save_settings
from .db import Database
from .errors import InvalidInput, RunNotFound
from .evaluator import Evaluator
from .llm import ProviderClient
from .orchestrator import EventBus, RunCoordinator
from .repository import SqliteNodeRepository
from .schemas import RunQueryRequest

logger = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: AppSettings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_coordinator(request: Request) -> RunCoordinator:
    return request.app.state.coordinator


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    if body.get("provider_api_key") == MASKED_SECRET:
        # Echoed back from GET /settings; keep the stored key.
        body.pop("provider_api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False))
    save_settings(new_settings, config_path=request.app.state.config_path)
    request.app.state.settings = new_settings
    provider = request.app.state.provider
    if isinstance(provider, ProviderClient):
        provider.base_url = new_settings.provider_base_url.rstrip("/")
        provider.model = new_settings.provider_model
        provider.max_output_tokens = new_settings.provider_max_tokens
        provider.set_api_key(new_settings.provider_api_key)
    request.app.state.coordinator.apply_settings(new_settings)
    return {"settings": new_settings.to_safe_dict()}


@router.post("/api/run")
async def start_run(
    payload: RunQueryRequest,
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    try:
        return await coordinator.run_query(
            payload.project_id,
            payload.query,
            max_steps=payload.max_steps,
            focus_document_id=payload.focus_document_id,
        )
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=exc.message)


@router.get("/api/runs")
async def list_runs(project_id: Optional[str] = None, limit: int = 50, db: Database = Depends(get_db)):
    return {"runs": await db.list_runs(project_id, limit=max(1, min(limit, 200)))}


@router.get("/api/run/{run_id}")
async def get_run(run_id: str, coordinator: RunCoordinator = Depends(get_coordinator)):
    try:
        return await coordinator.get_run(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@router.get("/api/run/{run_id}/events")
async def list_run_events(run_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    run = await db.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    events = await db.list_events(run_id, after_seq=after_seq)
    last_seq = events[-1]["seq"] if events else after_seq
    return {"events": events, "last_seq": last_seq}


@router.post("/api/run/{run_id}/cancel")
async def cancel_run(run_id: str, coordinator: RunCoordinator = Depends(get_coordinator)):
    try:
        return await coordinator.cancel(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Subscribe first so nothing emitted during the replay is lost.
    async def event_generator():
        queue = await bus.subscribe(run_id)
        try:
            past = await db.list_events(run_id)
            last_seq = 0
            for ev in past:
                last_seq = ev["seq"]
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    provider: Optional[Any] = None,
    repository: Optional[Any] = None,
    evaluator: Optional[Evaluator] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if isinstance(app.state.repository, SqliteNodeRepository):
            await app.state.repository.init()
        orphaned = await app.state.db.fail_orphaned_runs()
        if orphaned:
            logger.warning("marked %d interrupted run(s) as failed", orphaned)
        try:
            yield
        finally:
            await app.state.coordinator.shutdown()
            await app.state.provider.close()

    app = FastAPI(title="Reasoner", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.provider = provider or ProviderClient(
        settings.provider_base_url,
        settings.provider_model,
        api_key=settings.provider_api_key,
        timeout_s=max(settings.planner_timeout_s, settings.synthesis_timeout_s),
        max_output_tokens=settings.provider_max_tokens,
    )
    app.state.repository = repository or SqliteNodeRepository(settings.database_path)
    app.state.bus = EventBus(app.state.db)
    app.state.coordinator = RunCoordinator(
        app.state.db,
        app.state.bus,
        app.state.provider,
        app.state.repository,
        settings,
        evaluator=evaluator,
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("REASONER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "reasoner.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
