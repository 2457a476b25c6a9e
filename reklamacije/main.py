from __future__ import annotations

from fastapi import FastAPI, HTTPException

from reklamacije.api.routers import cron, tasks
from reklamacije.infra.audit import AuditMiddleware
from reklamacije.infra.db import check_db_ready
from reklamacije.infra.logging_config import setup_logging
from reklamacije.infra.redis_state import check_redis_ready
from reklamacije.services.recurring_task_service import RECURRING_LOCK_BACKEND

setup_logging()

app = FastAPI(
    title="reklamacije",
    description="Hotel maintenance tasks with recurring schedules.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(cron.router, prefix="/api/cron", tags=["cron"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    ready = db_ok
    if RECURRING_LOCK_BACKEND == "redis":
        redis_ok = check_redis_ready()
        checks["redis"] = "ok" if redis_ok else "fail"
        ready = ready and redis_ok
    if not ready:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
