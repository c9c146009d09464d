"""
HubQueue - Main FastAPI Application
Combines all modules: auth, queue, system, realtime
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import CORS_ORIGINS, LOG_LEVEL
from .core.errors import HubQueueError, RequestInvalid, error_for_status
from .core.security import pwd_context
from .core.services import Services, build_services

# Import routers
from .modules.auth.router import router as auth_router, users_router
from .modules.queue.router import router as queue_router, assets_router
from .modules.system.router import router as system_router
from .modules.realtime.router import router as realtime_router

# Setup logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application; tests pass their own `services`"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("HubQueue starting up...")
        app.state.services = services if services is not None else build_services(pwd_context)

        migrated = app.state.services.users.migrate_legacy_records()
        if migrated:
            logger.info(f"Migrated {migrated} legacy user record(s)")

        yield

        logger.info("HubQueue shutting down...")
        app.state.services.close()

    app = FastAPI(
        title="HubQueue API",
        description="""
        Multi-user claim-and-complete image queue

        ## Modules:
        - **Auth**: registration, login (JWT), roles
        - **Queue**: upload, claim, release, complete, delete, history
        - **System**: maintenance mode, lock administration, repair
        - **Realtime**: change notifications over websocket
        """,
        version=VERSION,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def failure(status_code: int, error_type: type, message: str, retryable: bool, headers=None) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                "error": message,
                "retryable": retryable,
                "code": error_type.__name__,
            },
            headers=headers,
        )

    @app.exception_handler(HubQueueError)
    async def hubqueue_error_handler(request: Request, exc: HubQueueError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        return failure(exc.status_code, type(exc), exc.message, exc.retryable)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        error_type = error_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else error_type.default_message
        return failure(exc.status_code, error_type, message, error_type.retryable, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return failure(422, RequestInvalid, problems or RequestInvalid.default_message, False)

    # Include routers
    app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
    app.include_router(users_router, prefix="/api/users", tags=["Users"])
    app.include_router(queue_router, prefix="/api/queue", tags=["Queue"])
    app.include_router(assets_router, prefix="/api/assets", tags=["Queue"])
    app.include_router(system_router, prefix="/api/system", tags=["System"])
    app.include_router(realtime_router, prefix="/api/realtime", tags=["Realtime"])

    # ============ HEALTH CHECK ============
    @app.get("/api/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "ok",
            "message": "HubQueue API is running",
            "version": VERSION
        }

    @app.get("/")
    def root():
        """Root endpoint - API info"""
        return {
            "name": "HubQueue API",
            "version": VERSION,
            "docs": "/docs",
            "modules": ["auth", "queue", "system", "realtime"]
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
