"""
FastAPI application entrypoint.

Run locally:  uvicorn medrecords.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from medrecords.api.routes import router
from medrecords.config import settings
from medrecords.errors import RecordsError
from medrecords.models import record  # noqa: F401  registers the tables
from medrecords.models.database import Base, engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Medical Records API",
    description=(
        "Versioned clinical records with grant-based sharing, an append-only "
        "audit trail and emergency access profiles."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.exception_handler(RecordsError)
def handle_records_error(request: Request, exc: RecordsError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "errors": exc.errors},
    )


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
