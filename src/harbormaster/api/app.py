from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import psutil
import psycopg
from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, StrictInt, ValidationError
from starlette.concurrency import run_in_threadpool

from harbormaster import __version__
from harbormaster.config import Settings, get_settings
from harbormaster.core.context import OperationContext
from harbormaster.core.errors import (
    EngineError,
    EngineNotFoundError,
    EngineUnavailableError,
    InvalidSpecError,
    NotFoundError,
    OperationCancelledError,
    OrchestratorError,
    ProjectBusyError,
    SpecUnavailableError,
)
from harbormaster.core.gateway import EngineGateway
from harbormaster.core.models import (
    ChangeEvent,
    InstanceStatus,
    OperationResult,
    ProjectDescriptor,
    ResultStatus,
    ServiceSpec,
)
from harbormaster.core.orchestrator import ProjectOrchestrator
from harbormaster.storage.event_store import EventStore
from harbormaster.utils.logger import logger

_WS_QUEUE_SIZE = 256
_LOG_POLL_SECONDS = 0.5
_DISCONNECT_POLL_SECONDS = 0.2

# Most specific first.
_ERROR_STATUS = [
    (NotFoundError, 404),
    (EngineNotFoundError, 404),
    (ProjectBusyError, 409),
    (SpecUnavailableError, 422),
    (InvalidSpecError, 422),
    (EngineUnavailableError, 503),
    (OperationCancelledError, 504),
    (EngineError, 502),
]


# -------- request bodies --------

class UpBody(BaseModel):
    services: List[ServiceSpec] = Field(default_factory=list)


class ScaleBody(BaseModel):
    replicas: StrictInt = Field(..., ge=0)


# -------- helpers --------

def _status_for(exc: OrchestratorError) -> int:
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


def _result_response(result: OperationResult) -> JSONResponse:
    code = 200 if result.status is ResultStatus.APPLIED else 207
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


def get_orchestrator(request: Request) -> ProjectOrchestrator:
    return request.app.state.orchestrator


def get_event_store(request: Request) -> EventStore:
    return request.app.state.event_store


def get_context(request: Request) -> OperationContext:
    """Per-request context with the configured deadline."""
    settings: Settings = request.app.state.settings
    return OperationContext(timeout=settings.request_timeout)


async def run_cancellable(
    request: Request, ctx: OperationContext, fn: Callable[..., Any], /, *args: Any, **kwargs: Any
) -> Any:
    """
    Run a blocking orchestrator call in the threadpool.

    The call keeps running until it returns, but ``ctx`` is cancelled as soon as
    the client disconnects so no further engine calls are issued.
    """
    call = asyncio.ensure_future(run_in_threadpool(fn, *args, **kwargs))
    try:
        while not call.done():
            done, _ = await asyncio.wait({call}, timeout=_DISCONNECT_POLL_SECONDS)
            if not done and not ctx.cancelled and await request.is_disconnected():
                logger.warning(f"Client left {request.method} {request.url.path}; cancelling engine work")
                ctx.cancel()
    except asyncio.CancelledError:
        ctx.cancel()
        raise
    return call.result()


async def validate_startup(orchestrator: ProjectOrchestrator, store: EventStore) -> Dict[str, Any]:
    """Validate all system components during startup"""
    validation: Dict[str, Any] = {"success": True, "errors": [], "warnings": []}

    try:
        await run_in_threadpool(orchestrator.gateway.connect)
        logger.info("[OK] Docker connection validated")
    except EngineUnavailableError as e:
        validation["success"] = False
        validation["errors"].append(f"Docker connection failed: {e}")
        logger.error(f"[FAIL] Docker connection failed: {e}")

    if validation["success"]:
        try:
            projects = await run_in_threadpool(orchestrator.list_projects)
            logger.info(f"[OK] Project discovery validated - {len(projects)} project(s) on engine")
        except OrchestratorError as e:
            validation["success"] = False
            validation["errors"].append(f"Project discovery failed: {e}")
            logger.error(f"[FAIL] Project discovery failed: {e}")

    if store.enabled:
        logger.info("[OK] PostgreSQL connection validated")
    else:
        validation["warnings"].append("PostgreSQL disabled - change events will not be persisted")
        logger.warning("[WARN] PostgreSQL disabled - change events will not be persisted")

    if validation["success"]:
        logger.info("[SUCCESS] All critical components validated successfully!")
    else:
        logger.error(f"[ERROR] Startup validation failed with {len(validation['errors'])} errors")
    return validation


def create_app(
    orchestrator: Optional[ProjectOrchestrator] = None,
    event_store: Optional[EventStore] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the API application.

    Missing collaborators are built by the lifespan hook, so importing this
    module never touches the engine or the database. Startup keeps serving
    when the engine is unreachable; calls then fail with 503 until the gateway
    reconnects.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Harbormaster API...")
        if app.state.orchestrator is None:
            app.state.orchestrator = ProjectOrchestrator(EngineGateway(settings), settings=settings)
            validate = True
        else:
            validate = False
        if app.state.event_store is None:
            app.state.event_store = await run_in_threadpool(EventStore, settings.postgres_url)

        orch: ProjectOrchestrator = app.state.orchestrator
        store: EventStore = app.state.event_store
        unsubscribe = orch.notifier.subscribe(store.record_event) if store.enabled else None
        if validate:
            await validate_startup(orch, store)

        yield

        if unsubscribe is not None:
            unsubscribe()
        logger.info("Harbormaster API stopped")

    app = FastAPI(title="Harbormaster API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.event_store = event_store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        started = time.monotonic()
        response = await call_next(request)
        elapsed = (time.monotonic() - started) * 1000
        response.headers["X-Request-ID"] = rid
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.1f}ms) [{rid}]")
        return response

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        code = _status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"error": type(exc).__name__, "detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "InvalidSpecError", "detail": exc.errors(include_url=False, include_context=False)},
        )

    @app.get("/health")
    def health():
        """Basic health check - just returns OK if the service is running"""
        return {"status": "OK"}

    @app.get("/health/detailed")
    def health_detailed(
        orch: ProjectOrchestrator = Depends(get_orchestrator),
        store: EventStore = Depends(get_event_store),
    ):
        """Detailed health check - validates all system components"""
        health_status: Dict[str, Any] = {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {},
        }

        try:
            orch.gateway.ping()
            health_status["components"]["docker"] = {"status": "OK", "message": "Connected"}
        except OrchestratorError as e:
            health_status["components"]["docker"] = {"status": "ERROR", "message": str(e)}
            health_status["status"] = "DEGRADED"

        if store.enabled:
            health_status["components"]["postgresql"] = {"status": "OK", "message": "Connected"}
        else:
            health_status["components"]["postgresql"] = {"status": "WARNING", "message": "Disabled"}

        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        health_status["components"]["system_resources"] = {
            "status": "OK",
            "cpu_usage": f"{cpu_percent:.1f}%",
            "memory_usage": f"{memory.percent:.1f}%",
        }
        return health_status

    router = APIRouter(prefix="/api")

    @router.get("/docker/info")
    def docker_info(orch: ProjectOrchestrator = Depends(get_orchestrator)):
        info = orch.gateway.info()
        return {
            "server_version": info.get("ServerVersion"),
            "containers": info.get("Containers"),
            "containers_running": info.get("ContainersRunning"),
            "images": info.get("Images"),
            "os": info.get("OperatingSystem"),
            "cpus": info.get("NCPU"),
            "memory": info.get("MemTotal"),
        }

    # -------- projects --------

    @router.get("/compose/projects")
    def list_projects(orch: ProjectOrchestrator = Depends(get_orchestrator)):
        return {"projects": [s.model_dump(mode="json") for s in orch.list_projects()]}

    @router.get("/compose/projects/{project}")
    def get_project(project: str, orch: ProjectOrchestrator = Depends(get_orchestrator)):
        return orch.get_project(project).model_dump(mode="json")

    @router.get("/compose/projects/{project}/services")
    def list_services(project: str, orch: ProjectOrchestrator = Depends(get_orchestrator)):
        view = orch.get_project(project)
        return {
            "project": project,
            "services": [
                {
                    "name": name,
                    "replicas": len(instances),
                    "running": sum(1 for i in instances if i.status is InstanceStatus.RUNNING),
                    "instances": [i.model_dump(mode="json", exclude={"labels"}) for i in instances],
                }
                for name, instances in view.services.items()
            ],
        }

    @router.post("/compose/projects/{project}/up")
    async def project_up(
        request: Request,
        project: str,
        body: UpBody,
        orch: ProjectOrchestrator = Depends(get_orchestrator),
        ctx: OperationContext = Depends(get_context),
    ):
        descriptor = ProjectDescriptor(name=project, services=body.services)
        return _result_response(await run_cancellable(request, ctx, orch.up, descriptor, ctx=ctx))

    @router.post("/compose/projects/{project}/down")
    async def project_down(
        request: Request,
        project: str,
        keep_volumes: bool = Query(False, description="Keep named volumes"),
        orch: ProjectOrchestrator = Depends(get_orchestrator),
        ctx: OperationContext = Depends(get_context),
    ):
        result = await run_cancellable(request, ctx, orch.down, project, keep_volumes=keep_volumes, ctx=ctx)
        return _result_response(result)

    @router.post("/compose/projects/{project}/services/{service}/scale")
    async def service_scale(
        request: Request,
        project: str,
        service: str,
        body: ScaleBody,
        orch: ProjectOrchestrator = Depends(get_orchestrator),
        ctx: OperationContext = Depends(get_context),
    ):
        result = await run_cancellable(request, ctx, orch.scale, project, service, body.replicas, ctx=ctx)
        return _result_response(result)

    @router.get("/compose/projects/{project}/logs")
    async def project_logs(
        request: Request,
        project: str,
        service: Optional[str] = None,
        tail: Optional[int] = Query(None, ge=0),
        since: Optional[datetime] = None,
        follow: bool = True,
        orch: ProjectOrchestrator = Depends(get_orchestrator),
    ):
        """Stream log lines as NDJSON until the streams end or the client goes away."""
        ctx = OperationContext()
        stream = await run_in_threadpool(
            orch.logs, project, service, follow=follow, tail=tail, since=since, ctx=ctx
        )

        async def ndjson():
            try:
                while True:
                    if await request.is_disconnected():
                        logger.info(f"Log client for '{project}' disconnected")
                        break
                    line = await run_in_threadpool(stream.poll, _LOG_POLL_SECONDS)
                    if line is None:
                        if stream.exhausted:
                            break
                        continue
                    yield line.model_dump_json() + "\n"
            finally:
                ctx.cancel()
                await run_in_threadpool(stream.close)

        return StreamingResponse(ndjson(), media_type="application/x-ndjson")

    # -------- change events --------

    @router.get("/events")
    def list_events(
        project: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        store: EventStore = Depends(get_event_store),
    ):
        try:
            events = store.list_events(project=project, limit=limit)
        except psycopg.Error as e:
            logger.error(f"Failed to read change events: {e}")
            return JSONResponse(status_code=503, content={"error": "EventStoreError", "detail": str(e)})
        return {"enabled": store.enabled, "events": events}

    @router.websocket("/ws/events")
    async def events_ws(websocket: WebSocket):
        orch: ProjectOrchestrator = websocket.app.state.orchestrator
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue(maxsize=_WS_QUEUE_SIZE)

        def offer(event: ChangeEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.type.value}/{event.action.value} event for slow websocket client")

        def forward(event: ChangeEvent) -> None:
            loop.call_soon_threadsafe(offer, event)

        unsubscribe = orch.notifier.subscribe(forward)
        await websocket.accept()

        async def pump() -> None:
            while True:
                event = await queue.get()
                await websocket.send_text(event.model_dump_json())

        sender = asyncio.create_task(pump())
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            unsubscribe()
            sender.cancel()
            logger.info("Change event websocket closed")

    app.include_router(router)
    return app


app = create_app()
