"""FastAPI application entrypoint for the DecisionLogr share service."""

from __future__ import annotations

from fastapi import FastAPI, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env_utils import load_dotenv_if_available
from core.logging import get_logger
from web import routers

load_dotenv_if_available()
logger = get_logger(__name__)

app = FastAPI(
    title="DecisionLogr Share API",
    description="Share links, passcode gating and client actions for decisions.",
    version="0.1.0",
)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    return {"status": "ok", "message": "DecisionLogr share API is running."}


@app.get("/healthz", include_in_schema=False)
def liveness_probe():
    db_ok, db_error = routers.health.ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(routers.health.router, prefix="/api/v1")
app.include_router(routers.share.router, prefix="/api/v1")
app.include_router(routers.public_share.router, prefix="/api/v1")
