import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .agent import SalesCoachService
from .errors import BadRequestError, StorageError, WorkflowNotFoundError
from .services.llm import LanguageModelClient, build_language_model_client
from .services.redis import (
    RedisCrudService,
    close_redis_crud_service,
    get_redis_crud_service_async,
)
from .services.session_store import SessionStore, clear_session_store, get_session_store_async
from .settings import Settings, get_settings
from .workflows import FINALIZE_CALL, FinalizeCallWorkflow, WorkflowRunner

USAGE = "OK. Use POST /api/chat with JSON { sessionId, message }"


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger (console + rotating file) and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("salescoach")
    if not package_logger.handlers:
        package_logger.setLevel(level)
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        package_logger.addHandler(ch)

        fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
        fh.setFormatter(fmt)
        package_logger.addHandler(fh)

    return logging.getLogger("salescoach.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@dataclass
class CoachServices:
    """Everything the routes need, built once per process."""

    store: SessionStore
    coach: SalesCoachService
    runner: WorkflowRunner


def build_services(
    redis_crud: RedisCrudService,
    store: SessionStore,
    llm: LanguageModelClient,
    settings: Settings,
) -> CoachServices:
    runner = WorkflowRunner(redis_crud, ttl_seconds=settings.workflow_ttl_seconds)
    runner.register(FinalizeCallWorkflow(store, llm, settings))
    return CoachServices(
        store=store,
        coach=SalesCoachService(store, llm, settings),
        runner=runner,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect Redis, wire services and resume unfinished workflows; clean up on shutdown."""
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        LOGGER.info("Connecting session store...")
        store = await get_session_store_async()
        app.state.services = build_services(
            await get_redis_crud_service_async(),
            store,
            build_language_model_client(),
            settings,
        )
        LOGGER.info("Session store (Redis) ready")

    services: CoachServices = app.state.services
    try:
        resumed = await services.runner.resume_pending()
        if resumed:
            LOGGER.info("Resumed %d unfinished workflow(s)", resumed)
    except StorageError as e:
        LOGGER.warning("Could not resume workflows: %s", e)

    yield

    LOGGER.info("Shutting down...")
    await services.runner.shutdown()
    if owns_services:
        app.state.services = None
        clear_session_store()
        await close_redis_crud_service()


app = FastAPI(
    title="Sales Coach",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BadRequestError)
async def bad_request_handler(request: Request, exc: BadRequestError) -> PlainTextResponse:
    return PlainTextResponse(str(exc), status_code=400)


@app.exception_handler(WorkflowNotFoundError)
async def workflow_not_found_handler(
    request: Request, exc: WorkflowNotFoundError
) -> PlainTextResponse:
    return PlainTextResponse(f"Workflow not found: {exc}", status_code=404)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> PlainTextResponse:
    LOGGER.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return PlainTextResponse("Session storage unavailable", status_code=503)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> PlainTextResponse:
    # Unknown paths and unknown methods on known paths are both "Not found".
    if exc.status_code in (404, 405):
        return PlainTextResponse("Not found", status_code=404)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


def _services(request: Request) -> CoachServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise StorageError("services are not initialised")
    return services


async def _read_json_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequestError("Invalid JSON body")
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON body")
    return payload


def _required_str(payload: Dict[str, Any], key: str) -> str | None:
    """Return payload[key] unchanged if it is a non-blank string, else None."""
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


@app.get("/", response_class=PlainTextResponse)
async def usage() -> str:
    return USAGE


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/api/chat")
async def chat(request: Request) -> dict[str, Any]:
    """Run one coaching turn.

    Expected Input (JSON):
        {"sessionId": str, "message": str}

    Response:
        {"reply", "followUps", "dealMemory", "rollingSummary", "userTurnCount"}
    """
    payload = await _read_json_body(request)
    session_id = _required_str(payload, "sessionId")
    message = _required_str(payload, "message")
    if session_id is None or message is None:
        raise BadRequestError("Missing sessionId or message")

    result = await _services(request).coach.chat(session_id, message)
    return result.to_dict()


@app.get("/api/results")
async def results(request: Request, sessionId: str | None = None) -> dict[str, Any]:
    """Full session state, including ``final`` once finalization has finished."""
    if not sessionId or not sessionId.strip():
        raise BadRequestError("Missing sessionId")
    state = await _services(request).store.get_state(sessionId)
    return state.to_dict()


@app.post("/api/end-call")
async def end_call(request: Request) -> dict[str, Any]:
    """Start post-call finalization for the session; returns the workflow id immediately."""
    payload = await _read_json_body(request)
    session_id = _required_str(payload, "sessionId")
    if session_id is None:
        raise BadRequestError("Missing sessionId")

    instance = await _services(request).runner.create(
        FINALIZE_CALL, {"sessionId": session_id}
    )
    LOGGER.info("End call session_id=%s workflow_id=%s", session_id, instance.id)
    return {"ok": True, "workflowId": instance.id}


@app.post("/api/reset")
async def reset(request: Request) -> dict[str, Any]:
    payload = await _read_json_body(request)
    session_id = _required_str(payload, "sessionId")
    if session_id is None:
        raise BadRequestError("Missing sessionId")

    await _services(request).store.reset(session_id)
    return {"ok": True, "message": "State reset"}


@app.get("/api/workflows/{workflow_id}")
async def workflow_status(request: Request, workflow_id: str) -> dict[str, Any]:
    instance = await _services(request).runner.get(workflow_id)
    return instance.to_dict()


def run() -> None:
    """Serve the app with uvicorn using HOST / PORT from settings."""
    import uvicorn

    uvicorn.run(
        "salescoach.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
