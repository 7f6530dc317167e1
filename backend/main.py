from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.orm import Session
from sqlalchemy import text
import asyncio, logging, uvicorn

from hrflow.core.config import (
    APP_NAME, APP_VERSION, SCHEDULER_ENABLED, SLA_SWEEP_INTERVAL_SEC, SLA_WARNING_INTERVAL_SEC,
)
from hrflow.core.database import get_db, engine, Base, SessionLocal, utcnow
from hrflow.core.exceptions import WorkflowError
from hrflow.core.logging import configure_logging
from hrflow.metrics import init_metrics_zero
from hrflow.services import notifications as notify
from hrflow.services.scheduler import run_sweep, run_sla_warnings
from hrflow.utils.catalog import sync_workflow_types
from hrflow.api.requests import router as requests_router
from hrflow.api.admin import router as admin_router
import hrflow.models  # noqa: F401  (registers every table on Base)

configure_logging()
log = logging.getLogger("main")

_scheduler_tasks = []  # asyncio.Task

log.info("Database engine: %s (%s)", engine.url.render_as_string(hide_password=True), engine.name)

app = FastAPI(
    title="HR Workflow Engine API",
    description="Approval workflows for leave, on-duty, WFH and other HR requests",
    version=APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], allow_credentials=True,
    allow_methods=["*"], allow_headers=["*"],
)

app.include_router(requests_router)
app.include_router(admin_router)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        codes = sync_workflow_types(db)
    finally:
        db.close()
    init_metrics_zero(sorted(codes))
    log.info("[startup] %s %s ready; workflow types=%s", APP_NAME, APP_VERSION, sorted(codes))

    if SCHEDULER_ENABLED:
        log.info("[sla] scheduler enabled; sweep every %ss, warnings every %ss",
                 SLA_SWEEP_INTERVAL_SEC, SLA_WARNING_INTERVAL_SEC)
        loop = asyncio.get_event_loop()
        _scheduler_tasks.append(loop.create_task(_loop("sweep", _sweep_once, SLA_SWEEP_INTERVAL_SEC)))
        _scheduler_tasks.append(loop.create_task(_loop("warnings", _warnings_once, SLA_WARNING_INTERVAL_SEC)))
    else:
        log.info("[sla] scheduler disabled by SCHEDULER_ENABLED=0")


@app.on_event("shutdown")
def on_shutdown():
    while _scheduler_tasks:
        _scheduler_tasks.pop().cancel()
    notify.get_dispatcher().shutdown(wait=False)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected", "version": APP_VERSION,
                "scheduler": SCHEDULER_ENABLED, "timestamp": utcnow()}
    except Exception as e:
        log.warning("[health] database check failed: %s", e)
        return {"status": "unhealthy", "database": "disconnected", "error": str(e),
                "timestamp": utcnow()}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _sweep_once():
    db = SessionLocal()
    try:
        return run_sweep(db).as_dict()
    finally:
        db.close()


def _warnings_once():
    db = SessionLocal()
    try:
        return run_sla_warnings(db).as_dict()
    finally:
        db.close()


async def _loop(name, fn, interval):
    while True:
        try:
            await asyncio.to_thread(fn)
        except Exception:
            log.exception("[sla] %s pass error", name)
        await asyncio.sleep(interval)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
