"""FastAPI server: JSON gateway over the workflow supervisor."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from meshdag.config import LOG_LEVEL, SERVER_HOST, SERVER_PORT, TASK_RUNNER
from meshdag.errors import DAGValidationError, InvalidTransitionError, NotFoundError
from meshdag.models import WorkflowTask
from meshdag.runners import create_default_registry, load_runner
from meshdag.supervisor import WorkflowSupervisor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / Response Models
# ---------------------------------------------------------------------------


class ResolveRequest(BaseModel):
    ids: list[str]
    workflow_id: str | None = None


class EventRequest(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ScheduleTaskRequest(BaseModel):
    id: str = ""
    name: str = ""
    type: str = "default"
    parameters: dict[str, Any] | None = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    timeout: float = 30.0
    retry_policy: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    workflow_id: str | None = None


class FailureReport(BaseModel):
    error: str


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(supervisor: WorkflowSupervisor | None = None) -> FastAPI:
    """Build the gateway around `supervisor` (a default one when omitted)."""
    supervisor = supervisor or WorkflowSupervisor()
    background: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await supervisor.initialize()
        yield
        await supervisor.shutdown()

    app = FastAPI(
        title="meshdag", version="1.0", description="DAG workflow orchestration engine", lifespan=lifespan,
    )
    app.state.supervisor = supervisor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # DAG management
    # -----------------------------------------------------------------------

    @app.post("/dags")
    async def create_dag(spec: dict[str, Any] = Body(...)) -> dict:
        """Validate and register a DAG."""
        try:
            instance = supervisor.create_dag(spec)
        except DAGValidationError as e:
            raise HTTPException(status_code=400, detail=e.validation.to_dict())
        return instance.to_dict()

    @app.put("/dags/{workflow_id}")
    async def update_dag(workflow_id: str, changes: dict[str, Any] = Body(...)) -> dict:
        try:
            instance = supervisor.update_dag(workflow_id, changes)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except DAGValidationError as e:
            raise HTTPException(status_code=400, detail=e.validation.to_dict())
        return instance.to_dict()

    @app.post("/dags/validate")
    async def validate_dag(spec: dict[str, Any] = Body(...)) -> dict:
        return supervisor.validate_dag(spec).to_dict()

    @app.post("/dependencies/resolve")
    async def resolve_dependencies(req: ResolveRequest) -> dict:
        try:
            return supervisor.resolve_dependencies(req.ids, workflow_id=req.workflow_id).to_dict()
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # -----------------------------------------------------------------------
    # Workflow lifecycle
    # -----------------------------------------------------------------------

    @app.post("/workflows")
    async def orchestrate_workflow(spec: dict[str, Any] = Body(...)) -> dict:
        """Create a DAG and run it to the end of scheduling."""
        result = await supervisor.orchestrate_workflow(spec)
        return result.to_dict()

    @app.post("/workflows/{workflow_id}/start")
    async def start_workflow(workflow_id: str) -> dict:
        """Start a created workflow in the background."""
        status = supervisor.get_workflow_status(workflow_id)
        if status.status == "not_found":
            raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
        if status.status != "created":
            raise HTTPException(status_code=409, detail=f"Workflow {workflow_id} is {status.status}")

        task = asyncio.create_task(supervisor.start_workflow(workflow_id))
        background.add(task)
        task.add_done_callback(background.discard)
        return {"status": "started", "workflow_id": workflow_id}

    @app.post("/workflows/{workflow_id}/pause")
    async def pause_workflow(workflow_id: str) -> dict:
        return {"workflow_id": workflow_id, "paused": supervisor.pause_workflow(workflow_id)}

    @app.post("/workflows/{workflow_id}/resume")
    async def resume_workflow(workflow_id: str) -> dict:
        return {"workflow_id": workflow_id, "resumed": supervisor.resume_workflow(workflow_id)}

    @app.post("/workflows/{workflow_id}/cancel")
    async def cancel_workflow(workflow_id: str) -> dict:
        return {"workflow_id": workflow_id, "cancelled": supervisor.cancel_workflow(workflow_id)}

    @app.get("/workflows/{workflow_id}")
    async def get_workflow_status(workflow_id: str) -> dict:
        return supervisor.get_workflow_status(workflow_id).to_dict()

    # -----------------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------------

    @app.post("/tasks")
    async def schedule_task(req: ScheduleTaskRequest) -> dict:
        task_id = supervisor.schedule_task(WorkflowTask.from_dict(req.model_dump()))
        return {"status": "scheduled", "task_id": task_id}

    @app.post("/tasks/{task_id}/execute")
    async def execute_task(task_id: str) -> dict:
        try:
            result = await supervisor.execute_task(task_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return result.to_dict()

    @app.post("/tasks/{task_id}/failure")
    async def report_failure(task_id: str, req: FailureReport) -> dict:
        try:
            plan = await supervisor.handle_task_failure(task_id, RuntimeError(req.error))
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return plan.to_dict()

    @app.get("/tasks/{task_id}")
    async def get_task_status(task_id: str) -> dict:
        return supervisor.get_task_status(task_id).to_dict()

    # -----------------------------------------------------------------------
    # Events, metrics and trace
    # -----------------------------------------------------------------------

    @app.post("/events")
    async def post_event(req: EventRequest) -> dict:
        """Dispatch an inbound event."""
        try:
            result = await supervisor.handle_event(req.type, req.payload)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (ValueError, InvalidTransitionError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {"event": req.type, "result": result}

    @app.get("/metrics")
    async def get_metrics() -> dict:
        return supervisor.get_system_metrics().to_dict()

    @app.get("/breakers")
    async def get_breakers() -> dict:
        return {task_type: status.to_dict() for task_type, status in supervisor.breaker.snapshot().items()}

    @app.get("/failures/patterns")
    async def get_failure_patterns() -> dict:
        return supervisor.analyzer.patterns()

    @app.get("/trace")
    async def get_trace(limit: int = 50, offset: int = 0) -> list[dict]:
        """Recent trace records (polling fallback)."""
        return [e.to_dict() for e in supervisor.event_bus.recent(limit=limit, offset=offset)]

    @app.websocket("/trace/stream")
    async def trace_stream(websocket: WebSocket):
        """Real-time trace stream."""
        await websocket.accept()
        queue = supervisor.event_bus.subscribe()
        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event.to_dict())
        except WebSocketDisconnect:
            pass
        finally:
            supervisor.event_bus.unsubscribe(queue)

    return app


def configured_supervisor(runner_path: str = TASK_RUNNER) -> WorkflowSupervisor:
    """Supervisor whose task types all run the callable at `runner_path`."""
    return WorkflowSupervisor(registry=create_default_registry(load_runner(runner_path)))


# Served by `uvicorn meshdag.server:app`; honours MESHDAG_TASK_RUNNER like main().
app = create_app(configured_supervisor())


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the meshdag gateway with the configured task runner."""
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    gateway = create_app(configured_supervisor())
    logger.info(f"Starting meshdag gateway on {SERVER_HOST}:{SERVER_PORT}")
    uvicorn.run(gateway, host=SERVER_HOST, port=SERVER_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
