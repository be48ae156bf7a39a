import os

import structlog
from fastapi import Depends, FastAPI
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.certificates.routes import verification
from app.core.config import get_settings
from app.core.exceptions import register_exception_handlers
from app.core.log_config import RequestLoggingMiddleware, setup_logging
from app.db.session import get_db

settings = get_settings()
setup_logging(settings)
logger = structlog.get_logger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    debug=settings.DEBUG,
    description="Public verification of issued course certificates",
    version="1.0.0",
)

register_exception_handlers(app, debug=settings.DEBUG)
app.add_middleware(RequestLoggingMiddleware)

if settings.STORAGE_BACKEND == "local":
    # LocalStorage download URLs point here
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

app.include_router(verification.router, prefix=settings.API_V1_PREFIX, tags=["certificates"])


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": settings.PROJECT_NAME, "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health_check(db: Session = Depends(get_db)) -> dict[str, str]:
    db_status = "unknown"
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        logger.warning("health_check_database_failed", error=str(e))
        db_status = "unhealthy"

    overall = "healthy" if db_status == "healthy" else "degraded"
    return {"status": overall, "database": db_status}
