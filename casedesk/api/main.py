"""
Casedesk API - multi-tenant case management for agent-submitted outputs.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..core.config import CORS_ORIGINS, VERSION, debug_enabled, validate_config
from ..core.db import health_check, init_db
from ..core.errors import CasedeskError, RateLimited
from ..util.logging import logger
from .cases import router as cases_router
from .schemas import HealthResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    for issue in validate_config():
        logger.warning(f"Config issue: {issue}")
    yield


# Initialize the FastAPI application
app = FastAPI(
    title="Casedesk API",
    version=VERSION,
    description="Case management API where agents submit cited, auditable outputs",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

# Add CORS middleware to allow frontend connections
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(cases_router, prefix="/api", tags=["cases"])


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        config_issues=validate_config(),
        timestamp=datetime.now(timezone.utc),
    )


@app.exception_handler(CasedeskError)
async def casedesk_error_handler(request: Request, exc: CasedeskError):
    """Render pipeline rejections with the error envelope."""
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Unparseable bodies are caller errors, reported like any other invalid body."""
    content = {"success": False, "error": "invalid_body", "message": "Request body could not be parsed"}
    if debug_enabled():
        content["debug"] = [str(err.get("msg")) for err in exc.errors()]
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions. Storage failures land here and are safe to retry."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    content = {"success": False, "error": "server_error", "message": "Internal server error, retry with the same requestId"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)
