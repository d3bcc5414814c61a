from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from reqflow.config import settings
from reqflow.database import init_db, close_db, get_db
from reqflow.errors import WorkflowError, SequenceLockTimeout
from reqflow.logging_config import setup_logging
from reqflow.middleware.correlation import CorrelationIdMiddleware
from reqflow.services.email_service import close_http_client

# Register every model with Base.metadata
import reqflow.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_reqflow", env=settings.ENVIRONMENT)
    await init_db()
    yield
    await close_http_client()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Every error leaves as {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    headers = {}
    if isinstance(exc, SequenceLockTimeout):
        headers["Retry-After"] = str(settings.SEQUENCE_RETRY_AFTER_SECONDS)

    log = logger.warning if exc.http_status < 500 else logger.error
    log("workflow_error", code=exc.code, path=request.url.path, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_detail(), headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            }
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # Decimal/UUID inputs can end up in "input"/"ctx"
    return [
        {key: (value if isinstance(value, (str, int, float, bool, list, tuple, type(None))) else str(value))
         for key, value in error.items()}
        for error in exc.errors()
    ]


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Organization-ID", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from reqflow.routes.requisitions import router as requisitions_router  # noqa: E402
from reqflow.routes.projects import router as projects_router  # noqa: E402
from reqflow.routes.notifications import router as notifications_router  # noqa: E402
from reqflow.jobs.scheduled import router as jobs_router  # noqa: E402

app.include_router(requisitions_router, prefix="/api/v1/requisitions", tags=["Requisitions"])
app.include_router(projects_router, prefix="/api/v1/projects", tags=["Projects"])
app.include_router(notifications_router, prefix="/api/v1/notifications", tags=["Notifications"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
