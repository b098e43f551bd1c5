from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from dataclasses import dataclass
from datetime import datetime
import math
import logging

from data.database import ABTest, Variant, ResultEvent, utcnow, as_utc
from models.results import ResultsReport, VariantResults, MetricStatistics, DateRange
from services import registry
from services.errors import StorageError

logger = logging.getLogger(__name__)


@dataclass
class ConversionCounts:
    variant: Variant
    sample_size: int
    conversions: int

    @property
    def rate(self) -> float:
        return self.conversions / self.sample_size if self.sample_size else 0.0


def _conversions():
    # metric values above zero count as conversions
    return func.sum(case((ResultEvent.metric_value > 0, 1), else_=0))

def _date_filters(query, start_date: datetime | None, end_date: datetime | None):
    if start_date:
        query = query.filter(ResultEvent.recorded_at >= as_utc(start_date))
    if end_date:
        query = query.filter(ResultEvent.recorded_at <= as_utc(end_date))
    return query

def _statistics(row) -> MetricStatistics:
    sample_size = int(row.sample_size)
    conversions = int(row.conversions or 0)
    return MetricStatistics(
        metric_type=row.metric_type,
        sample_size=sample_size,
        mean_value=float(row.mean_value or 0.0),
        std_dev=math.sqrt(max(float(row.variance or 0.0), 0.0)),
        min_value=float(row.min_value or 0.0),
        max_value=float(row.max_value or 0.0),
        conversions=conversions,
        total_events=sample_size,
        conversion_rate=conversions / sample_size * 100 if sample_size else 0.0,
    )

def get_results(db: Session, test_name: str, start_date: datetime | None = None,
                end_date: datetime | None = None) -> ResultsReport:
    """
    Per-variant, per-metric roll-up of recorded results, optionally bounded by
    recorded_at. Every variant is listed (control first); a metric appears under
    a variant only if at least one event was recorded for it.

    std_dev is the population standard deviation: the mean squared deviation
    from the group mean, taken in a second pass over the events.
    """
    test = registry.get_test(db, test_name)
    group_keys = (ResultEvent.variant_id, ResultEvent.metric_name, ResultEvent.metric_type)

    means = _date_filters(
        db.query(*group_keys, func.avg(ResultEvent.metric_value).label("mean_value"))
        .filter(ResultEvent.test_id == test.id),
        start_date, end_date,
    ).group_by(*group_keys).subquery()

    deviation = ResultEvent.metric_value - means.c.mean_value
    query = db.query(
        *group_keys,
        func.count(ResultEvent.id).label("sample_size"),
        means.c.mean_value,
        func.avg(deviation * deviation).label("variance"),
        func.min(ResultEvent.metric_value).label("min_value"),
        func.max(ResultEvent.metric_value).label("max_value"),
        _conversions().label("conversions"),
    ).join(means, and_(
        ResultEvent.variant_id == means.c.variant_id,
        ResultEvent.metric_name == means.c.metric_name,
        ResultEvent.metric_type == means.c.metric_type,
    )).filter(ResultEvent.test_id == test.id)
    query = _date_filters(query, start_date, end_date)

    try:
        rows = query.group_by(*group_keys, means.c.mean_value).order_by(
            ResultEvent.metric_name, ResultEvent.metric_type
        ).all()
    except SQLAlchemyError as e:
        logger.exception("Failed to aggregate results of test %s", test_name)
        raise StorageError(f"unable to aggregate results of test {test_name}: {e}") from e

    by_variant: dict[int, VariantResults] = {}
    for variant in sorted(test.variants, key=lambda v: (not v.is_control, v.name)):
        by_variant[variant.id] = VariantResults(
            variant_name=variant.name,
            variant_display_name=variant.display_name,
            is_control=variant.is_control,
        )

    for row in rows:
        metrics = by_variant[row.variant_id].metrics
        key = row.metric_name
        if key in metrics:
            # same metric name recorded under more than one type
            key = f"{row.metric_name}:{row.metric_type}"
        metrics[key] = _statistics(row)

    logger.debug("get_results %s: %d groups", test_name, len(rows))
    return ResultsReport(
        test_name=test.name,
        report_generated_at=utcnow(),
        date_range=DateRange(start=start_date, end=end_date),
        results=list(by_variant.values()),
    )

def conversion_counts(db: Session, test: ABTest, metric_name: str) -> list[ConversionCounts]:
    """Sample size and conversions of metric_name for every variant that has any."""
    try:
        rows = db.query(
            ResultEvent.variant_id,
            func.count(ResultEvent.id).label("sample_size"),
            _conversions().label("conversions"),
        ).filter(
            ResultEvent.test_id == test.id,
            ResultEvent.metric_name == metric_name,
        ).group_by(ResultEvent.variant_id).all()
    except SQLAlchemyError as e:
        logger.exception("Failed to count conversions of %s for test %s", metric_name, test.name)
        raise StorageError(str(e)) from e

    variants = {v.id: v for v in test.variants}
    return [
        ConversionCounts(variant=variants[row.variant_id], sample_size=int(row.sample_size),
                         conversions=int(row.conversions or 0))
        for row in rows
        if row.sample_size
    ]
