"""Crawl orchestration micro-service.

This FastAPI app exposes:
- POST /tasks/timeline and /tasks/channel to submit crawl tasks
- GET  /tasks, GET/DELETE /tasks/{task_id} to poll or cancel
- GET  /executor/status and POST /executor/zombies/cleanup
- GET/DELETE /auth-state to inspect or drop the persisted login
- /stats, /metrics for Prometheus and /healthz for liveness

Tasks run under a bounded scheduler, each in its own browser context.
"""

from __future__ import annotations

import datetime
import logging
import pathlib
import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .auth_state import AuthStateStore
from .config import get_config
from .jobs import TaskStatus
from .manager import UnifiedTaskManager
from .metrics import CrawlMetrics
from .reliability.errors import DuplicateActiveTask, ValidationError
from .runtime import BrowserSessionManager
from .storage import StorageService, create_storage
from .workers import TaskScheduler

config = get_config()

# ----------------------------------------------------------------------------
# Logging
# ----------------------------------------------------------------------------


def init_service_logger() -> logging.Logger:
    """Service logger writing to a dated file and the console."""
    today = datetime.date.today().isoformat()
    base_dir = pathlib.Path(config.system.log_root) / "service"
    base_dir.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(base_dir / f"{today}.log"),
        logging.StreamHandler(),
    ]

    logger = logging.getLogger("crawlcore")
    if not logger.handlers:
        logger.setLevel(getattr(logging, config.system.log_level, logging.INFO))
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        for h in handlers:
            h.setFormatter(formatter)
            logger.addHandler(h)

    return logger


service_logger = init_service_logger()
metrics = CrawlMetrics()

# ----------------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------------


class TimelineTaskRequest(BaseModel):
    target_id: str
    max_items: Optional[int] = None


class ChannelTaskRequest(BaseModel):
    target_id: str
    max_items: Optional[int] = None
    stop_on_duplicate_count: Optional[int] = None


# ----------------------------------------------------------------------------
# App + global components
# ----------------------------------------------------------------------------

app = FastAPI(title="Crawl Orchestration Service", version="1.0.0")

storage: StorageService | None = None
auth_store: AuthStateStore | None = None
session_manager: BrowserSessionManager | None = None
scheduler: TaskScheduler | None = None
task_manager: UnifiedTaskManager | None = None
startup_time: datetime.datetime | None = None


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Collect Prometheus metrics for each request."""
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    metrics.record_http_request(request.method, endpoint, response.status_code, time.perf_counter() - started)
    return response


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": exc.reason.value, "detail": exc.message})


@app.exception_handler(DuplicateActiveTask)
async def duplicate_task_handler(request: Request, exc: DuplicateActiveTask):
    return JSONResponse(
        status_code=409,
        content={"error": exc.reason.value, "detail": exc.message, "active_task_id": exc.active_task_id},
    )


def require_api_key(request: Request) -> None:
    if config.security.api_key_required:
        api_key_header = request.headers.get("x-api-key")
        if not api_key_header or api_key_header != config.security.api_key:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_manager() -> UnifiedTaskManager:
    if not task_manager:
        raise HTTPException(status_code=503, detail="Task manager not initialized")
    return task_manager


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    """Liveness probe with component status."""
    components = {
        "scheduler": "ok" if scheduler else "error",
        "storage": "ok" if storage else "error",
        "browser": "idle",
    }
    if session_manager and session_manager.health_check()["browser_running"]:
        components["browser"] = "ok"

    healthy = components["scheduler"] == "ok" and components["storage"] == "ok"
    return {"status": "ok" if healthy else "degraded", "components": components}


@app.get("/metrics")
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    return Response(content=metrics.render(), media_type=metrics.content_type)


@app.get("/stats", dependencies=[Depends(require_api_key)])
async def get_stats(manager: UnifiedTaskManager = Depends(get_manager)):
    stats = await manager.get_stats()
    uptime_seconds = (datetime.datetime.now(datetime.timezone.utc) - startup_time).total_seconds() if startup_time else 0
    stats["service"] = {"version": app.version, "uptime_seconds": uptime_seconds}
    stats["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return stats


@app.post("/tasks/timeline", dependencies=[Depends(require_api_key)])
async def submit_timeline_task(body: TimelineTaskRequest, manager: UnifiedTaskManager = Depends(get_manager)):
    task_id = await manager.submit_timeline_task(body.target_id, body.max_items)
    return {"task_id": task_id}


@app.post("/tasks/channel", dependencies=[Depends(require_api_key)])
async def submit_channel_task(body: ChannelTaskRequest, manager: UnifiedTaskManager = Depends(get_manager)):
    task_id = await manager.submit_channel_task(body.target_id, body.max_items, body.stop_on_duplicate_count)
    return {"task_id": task_id}


@app.get("/tasks", dependencies=[Depends(require_api_key)])
async def list_tasks(status: Optional[TaskStatus] = None, limit: int = 100,
                     manager: UnifiedTaskManager = Depends(get_manager)):
    records = await manager.list_tasks(status=status, limit=limit)
    return {"tasks": [r.to_api() for r in records], "count": len(records)}


@app.post("/tasks/cleanup", dependencies=[Depends(require_api_key)])
async def cleanup_tasks(older_than_days: int = 30, manager: UnifiedTaskManager = Depends(get_manager)):
    removed = await manager.cleanup_old_tasks(older_than_days)
    return {"removed": removed}


@app.get("/tasks/{task_id}", dependencies=[Depends(require_api_key)])
async def get_task(task_id: str, manager: UnifiedTaskManager = Depends(get_manager)):
    record = await manager.get_task(task_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return record.to_api()


@app.delete("/tasks/{task_id}", dependencies=[Depends(require_api_key)])
async def cancel_task(task_id: str, manager: UnifiedTaskManager = Depends(get_manager)):
    try:
        record = await manager.cancel_task(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return record.to_api()


@app.post("/tasks/{task_id}/retry", dependencies=[Depends(require_api_key)])
async def retry_task(task_id: str, manager: UnifiedTaskManager = Depends(get_manager)):
    try:
        new_id = await manager.retry_task(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return {"task_id": new_id, "retry_of": task_id}


@app.get("/executor/status", dependencies=[Depends(require_api_key)])
async def executor_status(manager: UnifiedTaskManager = Depends(get_manager)):
    return manager.get_executor_status()


@app.post("/executor/zombies/cleanup", dependencies=[Depends(require_api_key)])
async def cleanup_zombies(manager: UnifiedTaskManager = Depends(get_manager)):
    return await manager.force_cleanup_zombie_tasks()


@app.get("/auth-state", dependencies=[Depends(require_api_key)])
async def get_auth_state(manager: UnifiedTaskManager = Depends(get_manager)):
    return manager.auth_store.status()


@app.delete("/auth-state", dependencies=[Depends(require_api_key)])
async def clear_auth_state(manager: UnifiedTaskManager = Depends(get_manager)):
    cleared = await manager.auth_store.clear()
    return {"cleared": cleared}


@app.on_event("startup")
async def on_startup() -> None:
    """Build storage, browser session manager and scheduler from configuration."""
    global storage, auth_store, session_manager, scheduler, task_manager, startup_time

    startup_time = datetime.datetime.now(datetime.timezone.utc)
    service_logger.info("Starting crawl orchestration service...")
    service_logger.info(f"Configuration: {config.get_configuration_summary()}")

    storage = create_storage(config.storage.backend, redis_url=config.storage.redis_url, logger=service_logger)
    await storage.connect()
    service_logger.info(f"Storage ready ({config.storage.backend})")

    auth_store = AuthStateStore(config.browser.auth_state_path, logger=service_logger.getChild("auth"))
    session_manager = BrowserSessionManager(config.browser, auth_store, logger=service_logger)

    scheduler = TaskScheduler(
        storage=storage,
        session=session_manager,
        config=config.scheduler,
        extraction_config=config.extraction,
        data_root=config.system.data_root,
        metrics=metrics,
        logger=service_logger,
    )
    await scheduler.start()

    task_manager = UnifiedTaskManager(
        scheduler=scheduler, storage=storage, auth_store=auth_store, logger=service_logger
    )
    service_logger.info("Service ready")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Stop components in reverse order."""
    service_logger.info("Shutting down crawl orchestration service...")

    if scheduler:
        await scheduler.stop()
    if session_manager:
        await session_manager.close()
        service_logger.info("Browser closed")
    if storage:
        await storage.close()


def run() -> None:
    uvicorn.run("crawlcore.main:app", host="0.0.0.0", port=config.system.service_port)


if __name__ == "__main__":
    run()
