from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Any

from config import config
from models.assignments import Subject, SubjectAssignment
from models.results import ResultCreate, ResultResponse
from services import registry, results
from services.cache import CacheClient
from api.depends import CLIENT_AUTH, DB_DEPENDENCY, CACHE_CLIENT

# Import the Celery task
from celery_tasks.result_tasks import insert_result_to_db
import logging

logger = logging.getLogger(__name__)

results_router = APIRouter(
    prefix="/results",
    tags=["results"],
    dependencies=[CLIENT_AUTH]
)

assignments_router = APIRouter(
    prefix="/assignments",
    tags=["assignments"],
    dependencies=[CLIENT_AUTH]
)

def _subject(result_data: ResultCreate) -> Subject | None:
    if result_data.user_id or result_data.session_id:
        return Subject.resolve(user_id=result_data.user_id, session_id=result_data.session_id)
    return None


@results_router.post("", response_model=ResultResponse, status_code=status.HTTP_201_CREATED)
def record_result_route(
    result_data: ResultCreate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """Record a metric observation (conversion, revenue, ...) for a variant."""
    return results.record_result(
        db, cache,
        test_name=result_data.test_name,
        variant_name=result_data.variant_name,
        subject=_subject(result_data),
        metric_name=result_data.metric_name,
        metric_value=result_data.metric_value,
        metric_type=result_data.metric_type,
        event_data=result_data.event_data,
        timeout=config.operation_timeout_seconds,
    )


@results_router.post("/async", status_code=status.HTTP_202_ACCEPTED)
def record_result_async_route(result_data: ResultCreate):
    """
    Queue the observation on a celery worker and return immediately.
    Unknown tests/variants are only reported in the worker log.
    """
    task_payload: dict[str, Any] = result_data.model_dump()

    task = insert_result_to_db.delay(task_payload)
    logger.debug("insert_result_to_db task queued: %s", task.id)

    return JSONResponse(content={"status": "queued", "task_id": task.id}, status_code=status.HTTP_202_ACCEPTED)


@assignments_router.get("", response_model=list[SubjectAssignment])
def list_subject_assignments_route(
    user_id: str | None = None,
    session_id: str | None = None,
    db: Session = DB_DEPENDENCY,
):
    """All active-test assignments of a user or session."""
    subject = Subject.resolve(user_id=user_id, session_id=session_id)
    return registry.get_subject_assignments(db, subject)
