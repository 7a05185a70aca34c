import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import configure_mappers
from datetime import datetime, timezone

from customs.core.config import settings
from customs.core.database import engine
from customs.api.v1 import audit, compliance, declarations, edi
from customs.services.edi import connection_monitor
from customs.services.edi.error_mapping import verify_mappings

logger = logging.getLogger(__name__)


def verify_orm_mappings() -> None:
    """
    Verify all SQLAlchemy ORM mappings are valid at startup.

    Catches relationship configuration errors before any request is served.
    """
    from customs.models import (  # noqa: F401
        Declaration, DeclarationItem, SupportingDocument,
        QueueItem, IncomingMessage, ArchiveEntry,
        AuditLog,
    )

    configure_mappers()
    logger.info("ORM mapper configuration verified successfully")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.

    Startup:
    - Verify ORM mappings and the CEISA error tables, failing fast if broken
    - Start the background CEISA connection monitor when enabled

    Shutdown:
    - Stop the connection monitor
    """
    try:
        verify_orm_mappings()
        verify_mappings()
    except Exception as e:
        logger.critical(f"Startup verification failed: {e}")
        raise RuntimeError(f"Application cannot start: {e}") from e

    if settings.CEISA_HEALTH_CHECK_ENABLED:
        connection_monitor.start()
    else:
        logger.info("CEISA connection monitor disabled (CEISA_HEALTH_CHECK_ENABLED=false)")

    yield

    await connection_monitor.stop()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Added first so error responses carry CORS headers too
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Return JSON for unhandled exceptions.

    HTTPException never reaches this handler; FastAPI's default handler keeps
    its status code.
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
        },
    )

# API v1 router
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(declarations.router, prefix="/declarations", tags=["declarations"])
api_v1_router.include_router(compliance.router, prefix="/compliance", tags=["compliance"])
api_v1_router.include_router(edi.router, prefix="/edi", tags=["ceisa-edi"])
api_v1_router.include_router(audit.router, prefix="/audit", tags=["audit"])

app.include_router(api_v1_router)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Verifies database connectivity and reports the last CEISA connection
    check. CEISA being unreachable does not make the service unhealthy;
    declarations can still be prepared offline.
    """
    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "database": {"status": "unknown", "message": None},
            "ceisa": {"status": "unknown", "message": None},
        }
    }

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        health["components"]["database"]["status"] = "healthy"
        health["components"]["database"]["message"] = "Connected"
    except Exception as e:
        health["components"]["database"]["status"] = "unhealthy"
        health["components"]["database"]["message"] = str(e)
        health["status"] = "unhealthy"

    ceisa = connection_monitor.status
    if not ceisa.configured:
        health["components"]["ceisa"]["status"] = "disabled"
        health["components"]["ceisa"]["message"] = "CEISA not configured (CEISA_API_KEY not set)"
    elif ceisa.checked_at is None:
        health["components"]["ceisa"]["message"] = "Not checked yet"
    else:
        health["components"]["ceisa"]["status"] = "healthy" if ceisa.connected else "unhealthy"
        health["components"]["ceisa"]["message"] = ceisa.error or f"Reachable in {ceisa.latency_ms} ms"

    return health


@app.get("/")
async def root():
    return {
        "message": "Customs Declaration Core API",
        "version": "1.0.0",
        "docs": "/docs",
    }
