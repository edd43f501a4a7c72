"""HTTP command surface and WebSocket observer channel for one orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..domain.models import PlanningMode
from ..errors import FeatureNotFound, FeatureRunnerError, InvalidTransition
from ..events.ws import stream_events
from ..orchestrator.service import Orchestrator


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateFeatureRequest(BaseModel):
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    dependencies: list[str] = Field(default_factory=list)
    model: Optional[str] = None
    thinking_level: Optional[str] = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    verify_command: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateFeatureRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    dependencies: Optional[list[str]] = None
    model: Optional[str] = None
    thinking_level: Optional[str] = None
    planning_mode: Optional[PlanningMode] = None
    require_plan_approval: Optional[bool] = None
    verify_command: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class VerifyRequest(BaseModel):
    passed: bool
    detail: Optional[str] = None


def error_status(exc: FeatureRunnerError) -> int:
    if isinstance(exc, FeatureNotFound):
        return 404
    if isinstance(exc, InvalidTransition):
        return 409
    return 400


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_router(orchestrator: Orchestrator) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["features"])

    @router.get("/features")
    async def list_features() -> dict[str, Any]:
        return {"features": orchestrator.snapshot(), "scheduling_error": orchestrator.scheduling_error}

    @router.post("/features", status_code=201)
    async def create_feature(body: CreateFeatureRequest) -> dict[str, Any]:
        data = body.model_dump(exclude_none=True, mode="json")
        feature = await orchestrator.create_feature(data)
        return {"feature": feature.to_dict()}

    @router.get("/features/{feature_id}")
    async def get_feature(feature_id: str) -> dict[str, Any]:
        return {"feature": orchestrator.get(feature_id).to_dict()}

    @router.patch("/features/{feature_id}")
    async def update_feature(feature_id: str, body: UpdateFeatureRequest) -> dict[str, Any]:
        changes = body.model_dump(exclude_unset=True, mode="json")
        feature = await orchestrator.update_feature(feature_id, changes)
        return {"feature": feature.to_dict()}

    @router.delete("/features/{feature_id}")
    async def delete_feature(feature_id: str) -> dict[str, Any]:
        await orchestrator.delete_feature(feature_id)
        return {"deleted": feature_id}

    @router.post("/features/{feature_id}/approve-plan")
    async def approve_plan(feature_id: str) -> dict[str, Any]:
        return {"feature": (await orchestrator.approve_plan(feature_id)).to_dict()}

    @router.post("/features/{feature_id}/reject-plan")
    async def reject_plan(feature_id: str) -> dict[str, Any]:
        return {"feature": (await orchestrator.reject_plan(feature_id)).to_dict()}

    @router.post("/features/{feature_id}/stop")
    async def stop(feature_id: str) -> dict[str, Any]:
        return {"feature": (await orchestrator.stop(feature_id)).to_dict()}

    @router.post("/features/{feature_id}/retry")
    async def retry(feature_id: str) -> dict[str, Any]:
        return {"feature": (await orchestrator.retry(feature_id)).to_dict()}

    @router.post("/features/{feature_id}/resume")
    async def resume(feature_id: str) -> dict[str, Any]:
        return {"feature": (await orchestrator.resume(feature_id)).to_dict()}

    @router.post("/features/{feature_id}/verify")
    async def verify(feature_id: str, body: VerifyRequest) -> dict[str, Any]:
        feature = await orchestrator.verify(feature_id, body.passed, detail=body.detail)
        return {"feature": feature.to_dict()}

    @router.post("/features/{feature_id}/discard-workspace")
    async def discard_workspace(feature_id: str) -> dict[str, Any]:
        return {"discarded": await orchestrator.discard_workspace(feature_id)}

    @router.get("/features/{feature_id}/diff")
    async def diff(feature_id: str) -> dict[str, Any]:
        return {"feature_id": feature_id, "diff": await orchestrator.diff(feature_id)}

    @router.get("/order")
    async def order() -> dict[str, Any]:
        return {"order": orchestrator.order()}

    @router.get("/blocked")
    async def blocked() -> dict[str, Any]:
        return {"blocked": orchestrator.blocked()}

    @router.post("/orchestrator/tick")
    async def tick() -> dict[str, Any]:
        admitted = await orchestrator.tick()
        return {"admitted": admitted, "active": orchestrator.active_count()}

    return router


def create_app(orchestrator: Orchestrator, *, manage_lifecycle: bool = True) -> FastAPI:
    """Create the FastAPI app.

    Args:
        orchestrator: The orchestrator every route acts on.
        manage_lifecycle: Start the orchestrator on startup and shut it down on exit.

    Returns:
        Configured FastAPI app.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await orchestrator.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await orchestrator.shutdown()

    app = FastAPI(title="Feature Runner", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.exception_handler(FeatureRunnerError)
    async def _runner_error(_: Request, exc: FeatureRunnerError) -> JSONResponse:
        status = error_status(exc)
        if status != 404:
            logger.info("Rejected request: {}", exc.describe())
        return JSONResponse(status_code=status, content={"code": exc.code, "detail": str(exc)})

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {"name": "Feature Runner", "project_id": orchestrator.project_id, "active": orchestrator.active_count()}

    app.include_router(create_router(orchestrator))

    @app.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket, feature_ids: Optional[list[str]] = Query(None)) -> None:
        await stream_events(websocket, orchestrator.bus, feature_ids)

    return app
