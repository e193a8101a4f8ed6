"""
Home Services Admin Backend - FastAPI Application.

This is the main entry point for the admin backend. It serves the bulk
operations REST API consumed by the admin dashboard.
"""
import gzip
import logging
import os
import shutil
import sys
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from homeadmin.backend.api.v2 import bulk_operations
from homeadmin.backend.core.bulk.service import BulkOperationService, build_bulk_service
from homeadmin.backend.core.config import get_web_settings
from homeadmin.backend.core.rate_limit import limiter
from homeadmin.backend.schemas.common import HealthResponse

__version__ = "0.1.0"


# ── Logging setup (structlog) ────────────────────────────────────

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5
_LOG_DIR = Path(os.environ.get("WEB_LOG_DIR", "/app/logs"))

# Short names for noisy or long logger names
_LOGGER_NAME_MAP = {
    "uvicorn.error": "uvicorn",
    "uvicorn.access": "uvicorn",
    "homeadmin.backend.api": "api",
    "homeadmin.backend.core.bulk": "bulk",
    "homeadmin.shared": "shared",
    "httpx": "http",
    "httpcore": "http",
    "asyncpg": "db",
}


class _CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzips rotated files."""

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        for i in range(self.backupCount - 1, 0, -1):
            sfn = self.rotation_filename(f"{self.baseFilename}.{i}.gz")
            dfn = self.rotation_filename(f"{self.baseFilename}.{i + 1}.gz")
            if os.path.exists(sfn):
                if os.path.exists(dfn):
                    os.remove(dfn)
                os.rename(sfn, dfn)

        dfn = self.rotation_filename(f"{self.baseFilename}.1.gz")
        if os.path.exists(dfn):
            os.remove(dfn)
        if os.path.exists(self.baseFilename):
            with open(self.baseFilename, "rb") as f_in:
                with gzip.open(dfn, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
            with open(self.baseFilename, "w"):
                pass

        if not self.delay:
            self.stream = self._open()


def _shorten_logger_name(logger_name: str, event_dict: dict) -> dict:
    """structlog processor: shortens logger names."""
    name = event_dict.get("logger", logger_name or "")
    for prefix, short in _LOGGER_NAME_MAP.items():
        if name == prefix or name.startswith(prefix + "."):
            event_dict["logger"] = short
            return event_dict
    if "." in name:
        event_dict["logger"] = name.rsplit(".", 1)[-1]
    return event_dict


def _setup_web_logging():
    """Configure structlog-formatted logging for the backend."""
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    console_level_name = os.environ.get("WEB_LOG_LEVEL", "INFO").upper()
    console_level = getattr(logging, console_level_name, logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    # Console: colored output
    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _shorten_logger_name,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        foreign_pre_chain=shared_processors,
    ))
    root.addHandler(console)

    # File: JSON lines
    try:
        _LOG_DIR.mkdir(parents=True, exist_ok=True)

        json_formatter = structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _shorten_logger_name,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=shared_processors,
        )

        backend_h = _CompressedRotatingFileHandler(
            str(_LOG_DIR / "backend.log"),
            maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8",
        )
        backend_h.setLevel(logging.INFO)
        backend_h.setFormatter(json_formatter)
        root.addHandler(backend_h)
    except OSError as exc:
        root.warning("Cannot create log files (%s), logging to console only", exc)

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


_setup_web_logging()
logger = logging.getLogger("web")


# ── FastAPI app ───────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_web_settings()
    logger.info("Admin API starting on %s:%s", settings.host, settings.port)

    from homeadmin.shared.database import db_service

    # Connect to database if configured; bulk state moves to PostgreSQL
    database_url = os.environ.get("DATABASE_URL") or settings.database_url
    if database_url and not app.state.bulk_service_injected:
        try:
            connected = await db_service.connect(database_url=database_url)
            if connected:
                logger.info("Database connected")
                app.state.bulk_service = build_bulk_service(settings, db=db_service)
            else:
                logger.warning("Database connection failed, bulk operations kept in memory")
        except Exception as e:
            logger.error("Database error: %s", e)
    else:
        logger.info("No DATABASE_URL, running without database")

    service: BulkOperationService = app.state.bulk_service
    await service.start()

    yield

    # Shutdown
    await service.stop()
    if db_service.is_connected:
        await db_service.disconnect()
    logger.info("Admin API stopped")


def create_app(bulk_service: Optional[BulkOperationService] = None) -> FastAPI:
    """Create and configure FastAPI application.

    ``bulk_service`` replaces the default in-memory service; the lifespan
    handler keeps an injected service even when a database is configured.
    """
    settings = get_web_settings()

    app = FastAPI(
        title="Home Services Admin API",
        description="Bulk operations API for the home services admin dashboard",
        version=__version__,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    app.state.bulk_service_injected = bulk_service is not None
    app.state.bulk_service = bulk_service or build_bulk_service(settings)

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS middleware (restricted methods and headers)
    # Prevent insecure "*" with allow_credentials=True
    cors_origins = [o for o in settings.cors_origins if o != "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # Security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'"
        return response

    app.include_router(bulk_operations.router, prefix="/api/v2/bulk-operations", tags=["bulk-operations"])

    @app.get("/api/v2/health", tags=["health"], response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        from homeadmin.shared.database import db_service

        return {
            "status": "ok",
            "version": __version__,
            "services": {
                "database": db_service.is_connected,
                "running_bulk_operations": len(app.state.bulk_service.executor.running),
            },
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_web_settings()
    uvicorn.run(
        "homeadmin.backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
