from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
import json
import logging

from data.database import ResultEvent, utcnow
from models.assignments import Subject
from services import registry
from services.audit import AuditLogger
from services.cache import CacheClient
from services.errors import VariantNotFound, TestNotActive, StorageError
from services.timeouts import bounded

logger = logging.getLogger(__name__)

@bounded
def record_result(
    db: Session,
    cache: CacheClient | None,
    test_name: str,
    variant_name: str,
    subject: Subject | None,
    metric_name: str,
    metric_value: float,
    metric_type: str = "conversion",
    event_data: dict | None = None,
    audit: AuditLogger | None = None,
) -> ResultEvent:
    """
    Append one metric observation for a variant of a running test.

    The value is stored as given: no range check, and a continuous metric is
    never reclassified. The entry is also pushed onto the recent-results list in
    the cache for live dashboards; that push is best effort.
    """
    test = registry.get_test(db, test_name)
    variant = next((v for v in test.variants if v.name == variant_name), None)
    if variant is None:
        raise VariantNotFound(test_name, variant_name)
    if test.status != "active":
        raise TestNotActive(test.name, test.status)

    db_result = ResultEvent(
        test_id=test.id,
        variant_id=variant.id,
        subject_kind=subject.kind if subject else None,
        subject_id=subject.identifier if subject else None,
        metric_name=metric_name,
        metric_value=float(metric_value),
        metric_type=metric_type,
        event_data_json=json.dumps(event_data) if event_data else None,
        recorded_at=utcnow(),
    )
    try:
        db.add(db_result)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to record %s for test %s / %s", metric_name, test_name, variant_name)
        raise StorageError(f"unable to record result for test {test_name}: {e}") from e
    db.refresh(db_result)

    logger.debug("recorded %s=%s (%s) for %s/%s", metric_name, metric_value, metric_type, test_name, variant_name)

    if cache:
        cache.push_recent_result(test.name, variant.name, metric_name, {
            "value": db_result.metric_value,
            "subject_kind": db_result.subject_kind,
            "subject_id": db_result.subject_id,
            "timestamp": db_result.recorded_at.isoformat(),
        })
    if audit:
        audit.log("ab_test_result", actor=db_result.subject_id, resource_id=test.id,
                  details={"variant": variant.name, "metric": metric_name, "value": db_result.metric_value})
    return db_result

def get_recent_results(cache: CacheClient, test_name: str, variant_name: str, metric_name: str,
                       limit: int = 100) -> list[dict]:
    """Newest-first entries of the recent-results buffer (at most RECENT_RESULTS_LIMIT are kept)."""
    limit = max(1, min(limit, cache.recent_results_limit))
    return cache.get_recent_results(test_name, variant_name, metric_name, limit)
