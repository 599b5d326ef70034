# rasp_parser/main.py
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request

from .core.cache_service import CacheStore
from .core.client import AsyncPageClient
from .core.config import load_config
from .core.service import ParserService
from .models.api_models import FamilyHealth, ForceParseResponse, LogLine, LogsResponse, ParserHealth

log = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='[%(asctime)s] %(levelname)s - %(name)s - %(message)s',
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    configure_logging(config.log_level)
    log.info("Lifespan: Application startup sequence initiated.")

    store = CacheStore(config.cache_dir).load()
    retry = config.v2.fetch_retry
    client = AsyncPageClient(
        max_retries=retry.count,
        backoff=retry.backoff,
        retry_status_codes=retry.status_codes,
        retry_error_codes=retry.error_codes,
        user_agent=config.user_agent,
    )
    service = ParserService(config, store, client)
    app.state.parser_service = service

    loop_task = None
    if config.enabled:
        loop_task = asyncio.create_task(service.run_loop())
        log.info("Lifespan startup: parser loop scheduled.")
    else:
        log.info("Lifespan startup: parser is DISABLED, loop not started.")

    yield

    log.info("Lifespan: Application shutdown sequence initiated.")
    if loop_task is not None:
        loop_task.cancel()
        try:
            await loop_task
        except asyncio.CancelledError:
            log.info("Lifespan shutdown: parser loop cancelled.")
    await client.close()
    await store.save()


app = FastAPI(
    title="Rasp Parser",
    description="Timetable extraction and change detection service.",
    version="0.3.0",
    lifespan=lifespan,
)


def _service(request: Request) -> ParserService:
    service = getattr(request.app.state, "parser_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Parser service is not running")
    return service


@app.get("/parser-health", response_model=ParserHealth, response_model_by_alias=True)
async def parser_health(request: Request) -> ParserHealth:
    service = _service(request)
    store = service.store
    return ParserHealth(
        ok=not service.is_has_errors(),
        last_success_update=service.last_success_update,
        groups=FamilyHealth(
            update=store.groups.last_update, changed=store.groups.last_changed, hash=store.groups.content_hash
        ),
        teachers=FamilyHealth(
            update=store.teachers.last_update, changed=store.teachers.last_changed, hash=store.teachers.content_hash
        ),
        metrics=service.metrics,
    )


@app.post("/parser/force", response_model=ForceParseResponse, response_model_by_alias=True)
async def force_parse(request: Request, clear_keys: bool = Query(False, alias="clearKeys")) -> ForceParseResponse:
    service = _service(request)
    service.force_loop_parse(clear_keys=clear_keys)
    log.info(f"Forced parse requested (clear_keys={clear_keys})")
    return ForceParseResponse(scheduled=True, clear_keys=clear_keys)


@app.get("/parser/logs", response_model=LogsResponse)
async def parser_logs(request: Request) -> LogsResponse:
    service = _service(request)
    return LogsResponse(
        logs=[LogLine(date=entry.date, error=entry.is_error, message=entry.message) for entry in service.logs]
    )


if __name__ == "__main__":
    uvicorn.run("rasp_parser.main:app", host="0.0.0.0", port=8000)
