from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from gatekeeper.core import config
from gatekeeper.core.database.engine import init_db
from gatekeeper.core.exceptions import (
    GatekeeperError,
    InvalidSignatureError,
    LoginLockedError,
    RevokedError,
)
from gatekeeper.core.maintenance import MaintenanceTask
from gatekeeper.core.rate_limit import limiter
from gatekeeper.features.permissions.routes import router as permission_router
from gatekeeper.features.roles.routes import router as role_router
from gatekeeper.features.sessions.routes import router as auth_router
from gatekeeper.features.users.routes import router as user_router
from gatekeeper.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Gatekeeper",
    description="Role-based access control with hierarchical roles and JWT sessions",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter
maintenance = MaintenanceTask()


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.gatekeeper.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(GatekeeperError)
async def gatekeeper_exception_handler(_request: Request, exc: GatekeeperError) -> Response:
    if isinstance(exc, (InvalidSignatureError, RevokedError)):
        # Token failures share one outward shape
        return JSONResponse(
            {"detail": "Not authenticated"},
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
    headers = None
    if isinstance(exc, LoginLockedError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        log.error(f"{type(exc).__name__}: {exc.message} {exc.context}")
    return JSONResponse(
        jsonable_encoder({"detail": exc.message, **exc.context}),
        status_code=exc.status_code,
        headers=headers,
    )


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")
    maintenance.start()


@app.on_event("shutdown")
async def shutdown():
    await maintenance.stop()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Gatekeeper API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "public_endpoints": ["/auth/login", "/auth/refresh", "/health"],
        },
        "authorization_mode": config.AUTHZ_MODE,
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(user_router, prefix="/users", tags=["users"])
app.include_router(role_router, prefix="/roles", tags=["roles"])
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
