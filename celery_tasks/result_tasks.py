from celery_config import celery_app
from sqlalchemy.exc import OperationalError
from data.database import SessionLocal
from models.assignments import Subject
from services import registry, results, significance
from services.cache import get_cache_client
from services.errors import ABTestingError, InsufficientData, StorageError
from typing import Any
import logging

logger = logging.getLogger(__name__)

def get_db_session():
    """Provides a fresh database session for asynchronous task execution."""
    return SessionLocal()

# ignore result as nobody waits on it and it would bloat the result backend
@celery_app.task(bind=True, max_retries=3, default_retry_delay=30, ignore_result=True)
def insert_result_to_db(self, result_data: dict[str, Any]):
    """
    Asynchronously record a metric observation queued by POST /results/async.
    Transient storage failures are retried; unknown tests/variants or an
    inactive test are logged and dropped, retrying would not change the answer.
    """
    db = get_db_session()
    try:
        subject = None
        if result_data.get('user_id') or result_data.get('session_id'):
            subject = Subject.resolve(user_id=result_data.get('user_id'), session_id=result_data.get('session_id'))

        db_result = results.record_result(
            db, get_cache_client(),
            test_name=result_data['test_name'],
            variant_name=result_data['variant_name'],
            subject=subject,
            metric_name=result_data.get('metric_name', 'conversion'),
            metric_value=result_data['metric_value'],
            metric_type=result_data.get('metric_type', 'conversion'),
            event_data=result_data.get('event_data'),
        )
        logger.info("Task %s[%s]: recorded result %d for %s/%s.", self.name, self.request.id,
                    db_result.id, result_data['test_name'], result_data['variant_name'])
        return db_result.id

    except (StorageError, OperationalError) as exc:
        logger.error("Storage failure recording result for %s, retrying: %s", result_data.get('test_name'), exc)
        raise self.retry(exc=exc)

    except ABTestingError as exc:
        logger.warning("Dropping result for %s: %s", result_data.get('test_name'), exc.message)
        return None

    finally:
        db.close()

@celery_app.task
def snapshot_significance():
    """
    Periodic report: significance of the primary success metric of every active
    test, written to the log. Tests without enough data yet are skipped.
    """
    db = get_db_session()
    try:
        reports = {}
        for test in registry.get_active_tests(db, get_cache_client()):
            metric = test.success_metrics.get("primary", "conversion")
            try:
                report = significance.calculate_significance(db, test.name, metric_name=metric)
            except InsufficientData as exc:
                logger.info("snapshot %s skipped: %s", test.name, exc.message)
                continue

            reports[test.name] = [r.variant_name for r in report.statistical_analysis if r.is_significant]
            for result in report.statistical_analysis:
                logger.info("snapshot %s/%s %s: lift=%.2f%% z=%.3f p=%.4f significant=%s",
                            test.name, result.variant_name, metric, result.lift_percentage,
                            result.z_score, result.p_value, result.is_significant)
        return reports
    finally:
        db.close()
