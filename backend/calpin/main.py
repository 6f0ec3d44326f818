import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .core.security import JwtPrincipalVerifier, PrincipalVerifier
from .errors import CalPinError, ValidationError
from .moderation.classifier import build_classifier
from .moderation.pipeline import ModerationPipeline
from .persistence.failover import build_store
from .persistence.gateway import HelpStore
from .services.coordinator import RequestCoordinator


def configure_logging(debug: bool = False) -> None:
    # Ensure logs directory exists
    logs_dir = Path(__file__).parent.parent / "logs"
    logs_dir.mkdir(exist_ok=True)

    # Configure both file and console logging
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(logs_dir / "calpin.log", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )


logger = logging.getLogger(__name__)


def _wire(app: FastAPI, store: HelpStore, pipeline: ModerationPipeline, settings: Settings) -> None:
    app.state.coordinator = RequestCoordinator(store, pipeline, settings)
    logger.info("Request store mode: %s", store.mode)


def create_app(
    store: Optional[HelpStore] = None,
    pipeline: Optional[ModerationPipeline] = None,
    verifier: Optional[PrincipalVerifier] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API.

    Components passed in are used as-is and left open on shutdown; anything
    omitted is built from settings. The store is only built in the lifespan,
    since choosing it probes the database.
    """
    settings = settings or get_settings()
    owns_pipeline = pipeline is None
    if pipeline is None:
        pipeline = ModerationPipeline(build_classifier(settings), timeout_s=settings.CLASSIFIER_TIMEOUT_S)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_store = None
        if app.state.coordinator is None:
            owned_store = build_store(settings)
            _wire(app, owned_store, pipeline, settings)
        try:
            yield
        finally:
            if owned_store is not None:
                try:
                    owned_store.close()
                except Exception as e:
                    logger.warning("Store shutdown failed: %s", e)
            if owns_pipeline:
                pipeline.close()

    app = FastAPI(
        title=f"{settings.PROJECT_NAME} API",
        description="Campus help requests: post, offer, accept, complete",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.verifier = verifier or JwtPrincipalVerifier(settings)
    app.state.coordinator = None
    if store is not None:
        _wire(app, store, pipeline, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .api.routers import ai, requests, users

    app.include_router(requests.router, prefix="/api")
    app.include_router(users.router, prefix="/api")
    app.include_router(ai.router, prefix="/api")

    @app.get("/health")
    def health_check(request: Request):
        coordinator: RequestCoordinator = request.app.state.coordinator
        if coordinator is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "starting"},
            )
        store = coordinator.store
        return {
            "status": "healthy",
            "service": f"{settings.PROJECT_NAME} API",
            "store": store.mode,
            "database": "connected" if store.ping() else "disconnected",
            "activeRequests": coordinator.count_active(),
        }

    @app.get("/")
    def root():
        return {"message": f"Welcome to {settings.PROJECT_NAME} API", "docs": "/api/docs", "version": settings.VERSION}

    @app.exception_handler(CalPinError)
    async def calpin_exception_handler(request: Request, exc: CalPinError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Bodies are parsed by the coordinator; only undecodable JSON gets here
        fields = {}
        for error in exc.errors():
            loc = [part for part in error.get("loc", ()) if isinstance(part, str) and part != "body"]
            fields[".".join(loc) or "body"] = error.get("msg", "Invalid value")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ValidationError(fields).to_payload(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return app


configure_logging(get_settings().DEBUG)
app = create_app()
