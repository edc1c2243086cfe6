"""
HTTP surface of the Execution Agent.

POST /execute accepts a request and runs the pipeline as a background
task; the outcome arrives later at the request's callback URL.
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, HTTPException
from loguru import logger
from pydantic import ValidationError

from taskpilot import __version__
from taskpilot.config_loader import TaskPilotConfig, load_config
from taskpilot.executor import ExecutionAgent, ExecutionNotFoundError
from taskpilot.models import ExecutionRequest, utc_now

REQUIRED_FIELDS = ("taskId", "repoUrl", "branchName", "prompt")


def create_app(config: TaskPilotConfig | None = None, agent: ExecutionAgent | None = None) -> FastAPI:
    config = config or load_config()
    agent = agent or ExecutionAgent(config)
    token = config.executor.token
    started = time.monotonic()

    if not token:
        logger.warning("[SERVER] No execution server token configured, authentication disabled")

    def authenticate(authorization: str | None = Header(default=None)) -> None:
        if not token:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Unauthorized: Missing or invalid Authorization header")
        if authorization[len("Bearer "):] != token:
            raise HTTPException(status_code=401, detail="Unauthorized: Invalid token")

    app = FastAPI(title="taskpilot-executor", version=__version__)
    app.state.config = config
    app.state.agent = agent

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": utc_now(),
            "uptime": round(time.monotonic() - started, 3),
            "workspace": config.executor.workspace_root,
        }

    @app.post("/execute", dependencies=[Depends(authenticate)])
    def execute(background: BackgroundTasks, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        if any(not payload.get(name) for name in REQUIRED_FIELDS):
            raise HTTPException(
                status_code=400,
                detail=f"Missing required fields: {', '.join(REQUIRED_FIELDS)}",
            )
        try:
            request = ExecutionRequest.model_validate(payload)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid execution request: {e}") from e

        logger.info(f"[SERVER] Received execution request for {request.task_id}")
        execution_id = app.state.agent.accept(request)
        background.add_task(app.state.agent.execute, request, execution_id)
        return {"executionId": execution_id, "message": "Execution started", "taskId": request.task_id}

    @app.get("/status/{execution_id}", dependencies=[Depends(authenticate)])
    def status(execution_id: str) -> dict[str, Any]:
        state = app.state.agent.get_status(execution_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return state.to_wire()

    @app.post("/cancel/{execution_id}", dependencies=[Depends(authenticate)])
    def cancel(execution_id: str) -> dict[str, Any]:
        try:
            app.state.agent.cancel(execution_id)
        except ExecutionNotFoundError as e:
            raise HTTPException(status_code=404, detail="Execution not found") from e
        return {"ok": True, "message": "Execution cancelled"}

    return app
