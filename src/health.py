"""
Health Probes - Liveness and readiness endpoints for the operator pod.
"""

import logging
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def create_app(ready: Callable[[], bool]) -> FastAPI:
    """
    Build the probe application.

    Args:
        ready: Returns True once the controller has started and capability
            detection has finished.
    """
    app = FastAPI(title="External Secrets Operator probes")

    @app.get("/healthz")
    async def healthz():
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        """Readiness probe."""
        if ready():
            return {"status": "ok"}
        return JSONResponse(status_code=503, content={"status": "not ready"})

    return app


class HealthServer:
    """Serves the probe application with uvicorn inside the operator loop."""

    def __init__(self, ready: Callable[[], bool], host: str = "0.0.0.0", port: int = 8081):
        self.host = host
        self.port = port
        self.app = create_app(ready)
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Starting health probes on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping health probes")
        if self.server:
            self.server.should_exit = True
