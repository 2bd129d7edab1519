from collections import defaultdict
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import select
from sqlalchemy.engine import make_url
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import (
    auth,
    claim_history,
    claims,
    collaborators,
    dashboard,
    flags,
    friends,
    invites,
    items,
    notifications,
    profile,
    split_claims,
    visibility,
    wishlists,
    ws,
)
from app.core.config import settings
from app.core.logger import configure_logging
from app.core.parse_cache import parse_cache
from app.core.storage import get_media_root
from app.core.view_cache import view_cache
from app.db.session import async_session_factory, ensure_schema_ready


logger = configure_logging()

app = FastAPI(
    title=settings.app_name,
    description="Social gift wishlists shared among friends",
    version="0.1.0",
)

metrics = {
    "requests_total": 0,
    "errors_total": 0,
    "latency_total_ms": 0.0,
    "by_path": defaultdict(
        lambda: {"count": 0, "errors": 0, "latency_total_ms": 0.0}
    ),
}


cors_origins = settings.backend_cors_origins
if settings.frontend_url and settings.frontend_url not in cors_origins:
    cors_origins = [*cors_origins, settings.frontend_url]

logger.info("CORS origins parsed=%s", cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


def _record(path: str, duration_ms: float, failed: bool) -> None:
    metrics["requests_total"] += 1
    metrics["latency_total_ms"] += duration_ms
    path_metrics = metrics["by_path"][path]
    path_metrics["count"] += 1
    path_metrics["latency_total_ms"] += duration_ms
    if failed:
        metrics["errors_total"] += 1
        path_metrics["errors"] += 1


@app.middleware("http")
async def tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    start = perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (perf_counter() - start) * 1000.0
        _record(request.url.path, duration_ms, failed=True)
        logger.exception(
            "Request failed id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (perf_counter() - start) * 1000.0
    _record(request.url.path, duration_ms, failed=response.status_code >= 500)
    logger.info(
        "Request completed id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    response.headers["X-Request-Id"] = request_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.on_event("startup")
async def on_startup() -> None:
    settings.validate_secrets()
    try:
        db_url = make_url(settings.postgres_dsn)
        logger.info(
            "DB config driver=%s host=%s database=%s",
            db_url.get_backend_name(),
            db_url.host,
            db_url.database,
        )
    except Exception:
        logger.warning("DB config parse failed", exc_info=True)

    await ensure_schema_ready()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    # pydantic prefixes messages raised from validators
    message = message.removeprefix("Value error, ")
    return JSONResponse(status_code=422, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


app.include_router(auth.router)
app.include_router(profile.router)
app.include_router(wishlists.router)
app.include_router(visibility.router)
app.include_router(items.router)
app.include_router(claims.router)
app.include_router(split_claims.router)
app.include_router(claim_history.router)
app.include_router(flags.router)
app.include_router(friends.router)
app.include_router(invites.router)
app.include_router(collaborators.router)
app.include_router(notifications.router)
app.include_router(dashboard.router)
app.include_router(ws.router)

app.mount(settings.media_path, StaticFiles(directory=get_media_root(), check_dir=False), name="media")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def get_metrics() -> dict[str, object]:
    by_path = {
        path: {
            "count": data["count"],
            "errors": data["errors"],
            "avg_latency_ms": (
                data["latency_total_ms"] / data["count"] if data["count"] else 0.0
            ),
        }
        for path, data in metrics["by_path"].items()
    }
    return {
        "requests_total": metrics["requests_total"],
        "errors_total": metrics["errors_total"],
        "avg_latency_ms": (
            metrics["latency_total_ms"] / metrics["requests_total"]
            if metrics["requests_total"]
            else 0.0
        ),
        "by_path": by_path,
        "view_cache": view_cache.get_stats(),
        "link_metadata_cache": parse_cache.get_stats(),
    }


@app.get("/health/db")
async def health_db():
    try:
        async with async_session_factory() as session:
            result = await session.execute(select(1))
            return {"status": "ok", "database": str(result.scalar())}
    except Exception as e:
        logger.exception("DB health check failed")
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})
