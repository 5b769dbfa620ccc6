from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from .routers.cart import router as cart_router
from .routers.offline_queue import router as offline_queue_router
from .routers.sync import router as sync_router
from .cart import CartValidationError
from .config import Settings, settings as default_settings
from .deps import Agent, build_agent
from .logs import json_log
from .offline_queue import IllegalTransitionError, QueueEntryNotFound
from .register import CheckoutError

STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(settings: Settings, detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


def create_app(agent: Optional[Agent] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (agent.settings if agent else default_settings)
    app = FastAPI(title="POS Register Agent", version=settings.api_version)
    app.state.agent = agent
    app.state.settings = settings

    @app.exception_handler(CartValidationError)
    def _cart_validation_error(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(CheckoutError)
    def _checkout_error(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    def _model_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors(include_url=False)
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(QueueEntryNotFound)
    def _entry_not_found(_req: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(IllegalTransitionError)
    def _illegal_transition(_req: Request, exc: Exception):
        return JSONResponse(status_code=409, content=_error_content(settings, "conflict", exc))

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors()
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        content = _error_content(settings, "internal error", exc)
        content["request_id"] = rid
        return JSONResponse(status_code=500, content=content)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method
        try:
            response = await call_next(request)
        except Exception as exc:
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                duration_ms=int((time.time() - started) * 1000),
                error=str(exc),
            )
            raise
        response.headers["X-Request-Id"] = rid
        response.headers["X-Content-Type-Options"] = "nosniff"
        if path != "/health":
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=int((time.time() - started) * 1000),
            )
        return response

    # The register UI is served from another origin (browser shell or kiosk webview).
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(cart_router)
    app.include_router(offline_queue_router)
    app.include_router(sync_router)

    @app.on_event("startup")
    def _startup():
        if app.state.agent is None:
            app.state.agent = build_agent(settings)
        app.state.agent.start()
        json_log(
            "info",
            "startup.agent_started",
            env=settings.env,
            version=settings.api_version,
            db_path=settings.db_path,
            queue=app.state.agent.queue.summary(),
        )

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.agent is not None:
            app.state.agent.stop()
            json_log("info", "shutdown.agent_stopped")

    @app.get("/health")
    def health(req: Request):
        current = app.state.agent
        content = {
            "status": "ok" if current is not None else "starting",
            "env": settings.env,
            "service": "posagent",
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": _current_request_id(req),
        }
        if current is None:
            return JSONResponse(status_code=503, content=content)
        content["online"] = current.engine.online
        content["queue"] = current.queue.summary()
        return content

    @app.get("/config")
    def config():
        current = app.state.agent
        return (current.settings if current is not None else settings).public()

    return app


app = create_app()
