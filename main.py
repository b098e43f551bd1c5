from fastapi import FastAPI, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

# Internal imports
from config import config
from data.database import create_tables, get_db
from api.test_routes import test_router
from api.results_routes import results_router, assignments_router
from services.cache import get_cache_client, CacheClient
from services.errors import (
    ABTestingError, ValidationError, InvalidTransition, NotFound, TestNotActive,
    InsufficientData, InvalidSubject, StorageError,
)

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema on startup."""
    try:
        logger.info("Application starting up: initializing database schema (%r)", config)
        create_tables()
        logger.info("Database tables initialized successfully.")
    except SQLAlchemyError as e:
        logger.error("Failed to initialize database tables: %s", e)
        raise

    yield

    logger.info("Application shutting down.")

# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="A/B Testing Service",
    version="1.0.0",
    description="Experiment definitions, sticky variant assignment, result recording and significance testing."
)

app.add_middleware(middleware.RequestIDMiddleware)

app.include_router(test_router)
app.include_router(results_router)
app.include_router(assignments_router)

# --- Error mapping ---

# Most specific first: the first matching entry wins
ERROR_STATUS = [
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidSubject, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (TestNotActive, status.HTTP_409_CONFLICT),
    (InsufficientData, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
]

@app.exception_handler(ABTestingError)
async def ab_testing_error_handler(request: Request, exc: ABTestingError):
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)),
                       status.HTTP_500_INTERNAL_SERVER_ERROR)
    content = {"error": type(exc).__name__, "detail": exc.message}
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(content=content, status_code=status_code)

# --- API Endpoints ---

@app.get("/health")
def health_check(db: Session = Depends(get_db), cache: CacheClient = Depends(get_cache_client)):
    """Database and cache connectivity. The cache is optional, so only the database decides the status."""
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.error("health check: database unavailable: %s", e)
        database = "disconnected"

    healthy = database == "connected"
    return JSONResponse(
        content={
            "status": "healthy" if healthy else "unhealthy",
            "database": database,
            "cache": "connected" if cache.ping() else "disconnected",
        },
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )
