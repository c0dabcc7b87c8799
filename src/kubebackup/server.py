from __future__ import annotations

from datetime import UTC, datetime
import logging
import threading

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from . import __version__
from .metrics import BackupMetrics
from .scheduler import BackupScheduler

logger = logging.getLogger(__name__)

_ENDPOINTS = {
    "metrics": "/metrics",
    "health": "/healthz",
    "status": "/status",
    "version": "/version",
    "backup": "/backup",
}


def create_app(scheduler: BackupScheduler, metrics: BackupMetrics) -> FastAPI:
    app = FastAPI(title="kubebackup", version=__version__, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        client_host = request.client.host if request.client else "unknown"
        logger.debug("Incoming request: %s %s from %s", request.method, request.url.path, client_host)
        return await call_next(request)

    @app.get("/")
    def index() -> dict[str, object]:
        return {"name": "kubebackup", "endpoints": _ENDPOINTS}

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/status")
    def status() -> dict[str, object]:
        run_status, running = scheduler.state.snapshot()
        return {**run_status.as_dict(), "running": running}

    @app.get("/version")
    def version() -> dict[str, str]:
        return {"version": __version__}

    @app.post("/backup")
    def trigger_backup() -> JSONResponse:
        if not scheduler.trigger():
            return JSONResponse(status_code=409, content={"detail": "Another task is already running"})
        triggered_at = datetime.now(tz=UTC).replace(microsecond=0).isoformat()
        return JSONResponse(status_code=202, content={"detail": f"Backup triggered successfully at {triggered_at}."})

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        return Response(content=metrics.render(), media_type=metrics.content_type)

    return app


class ControlServer:
    """Runs the control surface on a daemon thread."""

    def __init__(self, app: FastAPI, *, port: int, host: str = "0.0.0.0") -> None:
        self.server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
        self._thread = threading.Thread(target=self.server.run, name="kubebackup-http", daemon=True)

    def start(self) -> None:
        logger.info("HTTP server running on port %d", self.server.config.port)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self.server.should_exit = True
        self._thread.join(timeout)
