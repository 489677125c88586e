"""FastAPI adapter over the orchestrator's public API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import configure_logging, load_config
from .errors import (
    AlreadyLive,
    InvalidRotation,
    NoContent,
    NotAuthorized,
    NotFound,
    OrchestratorError,
    RotationActive,
    StreamLive,
)
from .models import RotationStatus
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    NotFound: 404,
    NotAuthorized: 403,
    AlreadyLive: 409,
    RotationActive: 409,
    StreamLive: 409,
    NoContent: 400,
    InvalidRotation: 400,
}


class StatusPayload(BaseModel):
    status: Literal["live", "offline"] = Field(..., description="Desired stream status.")


def _status_code(exc: OrchestratorError) -> int:
    for error_type, code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return 500


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    config = load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config.log_level)
        if app.state.orchestrator is None:
            app.state.orchestrator = Orchestrator.from_config(config)
        await app.state.orchestrator.init()
        logger.info("%s started.", config.project_name)
        try:
            yield
        finally:
            await app.state.orchestrator.graceful_shutdown()

    app = FastAPI(title=config.project_name, lifespan=lifespan)
    app.state.orchestrator = orchestrator

    def core(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        return JSONResponse(status_code=_status_code(exc), content={"success": False, "error": exc.message})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/streams/{stream_id}/status")
    async def update_stream_status(stream_id: str, payload: StatusPayload, request: Request) -> Dict[str, Any]:
        orchestrator = core(request)
        if payload.status == "live":
            await orchestrator.start_stream(stream_id)
        else:
            await orchestrator.stop_stream(stream_id)
        return {"success": True, "isActive": orchestrator.is_stream_active(stream_id)}

    @app.get("/streams/{stream_id}/logs")
    async def stream_logs(stream_id: str, request: Request) -> Dict[str, Any]:
        orchestrator = core(request)
        return {
            "success": True,
            "logs": orchestrator.get_stream_logs(stream_id),
            "isActive": orchestrator.is_stream_active(stream_id),
        }

    @app.delete("/streams/{stream_id}")
    async def delete_stream(stream_id: str, request: Request) -> Dict[str, Any]:
        core(request).delete_stream(stream_id)
        return {"success": True}

    @app.post("/rotations/{rotation_id}/activate")
    async def activate_rotation(rotation_id: str, request: Request) -> Dict[str, Any]:
        await core(request).activate_rotation(rotation_id)
        return {"success": True}

    @app.post("/rotations/{rotation_id}/pause")
    async def pause_rotation(rotation_id: str, request: Request) -> Dict[str, Any]:
        await core(request).pause_rotation(rotation_id)
        return {"success": True}

    @app.post("/rotations/{rotation_id}/stop")
    async def stop_rotation(rotation_id: str, request: Request) -> Dict[str, Any]:
        await core(request).stop_rotation(rotation_id)
        return {"success": True}

    @app.delete("/rotations/{rotation_id}")
    async def delete_rotation(rotation_id: str, request: Request) -> Dict[str, Any]:
        orchestrator = core(request)
        rotation = orchestrator.store.get_rotation(rotation_id)
        if rotation is not None and rotation.status == RotationStatus.ACTIVE:
            await orchestrator.stop_rotation(rotation_id)
        await orchestrator.delete_rotation(rotation_id)
        return {"success": True, "message": "Rotation deleted"}

    return app


app = create_app()
