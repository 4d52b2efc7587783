"""
Masterchef Control Plane - FastAPI Application

Wires the converge pipeline components from settings, mounts the API
router and maps typed ControlPlaneErrors to HTTP responses.

Run:
    python -m control_plane.main
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__, SERVICE_NAME, COMPONENTS
from .api import router as pipeline_router
from .config import ControlPlaneSettings, load_settings
from .errors import ControlPlaneError
from .services import build_control_plane
from .timeutil import utc_now, format_ts
from .worker_pool import ConvergeExecutor

logger = logging.getLogger("control_plane")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def create_app(
    settings: Optional[ControlPlaneSettings] = None,
    executor: Optional[ConvergeExecutor] = None,
) -> FastAPI:
    """Build the application. Background threads start with the lifespan."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    plane = build_control_plane(settings, executor=executor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        plane.start()
        try:
            yield
        finally:
            plane.stop()

    app = FastAPI(
        title="Masterchef Control Plane",
        description="Converge request pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.control_plane = plane

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.http_status} {exc.kind.value}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/health")
    def health_check():
        """Liveness with component status."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": __version__,
            "timestamp": format_ts(utc_now()),
            "components": COMPONENTS,
            "control_plane": plane.status(),
        }

    app.include_router(pipeline_router)
    logger.info(f"{SERVICE_NAME} {__version__} initialized (data dir: {settings.data_dir})")
    return app


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "control_plane.main:create_app",
        factory=True,
        host=os.getenv("CONTROL_PLANE_HOST", "0.0.0.0"),
        port=int(os.getenv("CONTROL_PLANE_PORT", "8080")),
    )
