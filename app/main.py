from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import hierarchy, identity
from app.infra.audit import AuditMiddleware
from app.infra.db import AUTO_CREATE_SCHEMA, check_db_ready, create_schema
from app.infra.log import configure_logging

configure_logging()
if AUTO_CREATE_SCHEMA:
    create_schema()

app = FastAPI(
    title="gov-hierarchy",
    description="Organizational hierarchy, appointments, derived roles and channel membership.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(hierarchy.router, prefix="/api/hierarchy", tags=["hierarchy"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    checks = {"db": "ok" if check_db_ready() else "fail"}
    if checks["db"] != "ok":
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
