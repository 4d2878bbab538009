"""
RoboClub API entry point.

``create_app`` wires settings, database, optional session store and the auth
services into one FastAPI application with a single lifespan.
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from roboclub.base_microservice import BaseMicroservice, Database, MCPResponse
from roboclub.config import Settings
from roboclub.notifications import EmailNotifier
from roboclub.services import Services
from roboclub.auth.admin_router import role_approvals_router, users_router
from roboclub.auth.errors import AuthServiceError
from roboclub.auth.router import router as auth_router
from roboclub.auth.session_store import SessionStore, connect_session_store

base_service = BaseMicroservice("main")


def _validation_message(exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": field, "message": message})
    summary = "; ".join(
        f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors
    )
    return summary or "Validation failed", errors


def register_exception_handlers(app: FastAPI) -> None:
    """Render every error in the response envelope with a stable ``kind``."""

    @app.exception_handler(AuthServiceError)
    async def auth_service_error_handler(request: Request, exc: AuthServiceError):
        return MCPResponse(
            data={"kind": exc.kind},
            message=exc.message,
            status="error",
            status_code=exc.status_code,
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        message, errors = _validation_message(exc)
        return MCPResponse(
            data={"kind": "validation_error", "errors": errors},
            message=message,
            status="error",
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        kind = "not_found" if exc.status_code == 404 else "http_error"
        return MCPResponse(
            data={"kind": kind},
            message=str(exc.detail),
            status="error",
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        base_service.logger.exception(
            f"Unhandled error on {request.method} {request.url.path} "
            f"request_id={getattr(request.state, 'request_id', None)}"
        )
        return MCPResponse(
            data={"kind": "server_error"},
            message="Internal server error",
            status="error",
            status_code=500,
        )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    session_store: Optional[SessionStore] = None,
    notifier: Optional[EmailNotifier] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Runtime settings, read from the environment when omitted
        database: Database handle, built from ``settings.database_url`` when omitted
        session_store: Session store to use; when omitted the lifespan connects
            the configured one (or runs stateless)
        notifier: Email notifier, defaults to one without a transport

    Returns:
        FastAPI application with ``app.state.services`` populated
    """
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_url)
    services = Services.build(settings, database, session_store=session_store, notifier=notifier)
    base_service.feature_flags = settings.feature_flags
    logging.getLogger("roboclub").setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for FastAPI.
        Handles startup and shutdown events.
        """
        base_service.log_event("service.startup", {"service": "main"})
        await database.create_all()
        owns_store = services.session_store is None
        if owns_store:
            services.attach_session_store(await connect_session_store(settings))
        base_service.log_event("service.ready", {
            "session_store": "enabled" if services.tokens.stateful else "stateless",
        })
        try:
            yield
        finally:
            base_service.log_event("service.shutdown", {"service": "main"})
            if owns_store and services.session_store is not None:
                await services.session_store.close()
            await database.dispose()

    app = FastAPI(
        title="RoboClub API",
        description="Role-gated authentication and authorization core",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Id"] = request_id
        base_service.logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({elapsed_ms:.1f} ms) request_id={request_id}"
        )
        return response

    register_exception_handlers(app)

    # Include routers with prefixes
    app.include_router(auth_router, prefix="/auth", tags=["auth"])
    app.include_router(users_router, prefix="/users", tags=["users"])
    app.include_router(role_approvals_router, prefix="/role-approvals", tags=["role-approvals"])

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint returning API information."""
        return {
            "name": "RoboClub API",
            "version": "0.1.0",
            "services": ["auth", "users", "role-approvals"],
            "feature_flags": settings.feature_flags,
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Overall system health check."""
        store = services.session_store
        store_status = "disabled"
        if store is not None:
            try:
                store_status = "online" if await store.ping() else "offline"
            except Exception as e:
                base_service.log_error(e, context="Session store health check")
                store_status = "offline"
        return {
            "status": "ok",
            "services": {
                "auth": "online",
                "session_store": store_status,
            },
        }

    return app


app = create_app()

# For running directly with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("roboclub.main:app", host="0.0.0.0", port=8000, reload=True)
