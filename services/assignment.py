from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime
import hashlib
import random
import logging

from config import config
from data.database import ABTest, Variant, Assignment, utcnow, as_utc
from models.assignments import AssignmentResult, Subject
from services import registry
from services.cache import CacheClient
from services.errors import InvalidSubject, NotFound, TestNotActive, StorageError
from services.timeouts import bounded

logger = logging.getLogger(__name__)

# Define the maximum number of times to retry the insert
MAX_RETRIES = 3

# 13 hex digits = 52 bits, exactly representable as a float
_BUCKET_HEX_DIGITS = 13
_BUCKET_SPACE = float(16 ** _BUCKET_HEX_DIGITS)

EXCLUDED_BY_TRAFFIC = "traffic_allocation"
FEATURE_DISABLED = "feature_disabled"
FALLBACK_CONTROL = "fallback_control"

# --- Bucketing ---

def bucket(*parts) -> float:
    """Stable position in [0, 100) for the given key parts (sha256, process independent)."""
    digest = hashlib.sha256(":".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return int(digest[:_BUCKET_HEX_DIGITS], 16) / _BUCKET_SPACE * 100

def select_variant(variants: list[Variant], bucket_value: float) -> Variant:
    """
    Walk the variants in creation order, accumulating traffic weights, and pick
    the first one whose cumulative weight exceeds the bucket. Changing weights
    moves the boundaries, so it only affects subjects assigned afterwards.
    """
    ordered = sorted(variants, key=lambda v: v.id)
    cumulative = 0.0
    for variant in ordered:
        cumulative += variant.traffic_weight
        if cumulative > bucket_value:
            return variant

    # weights may sum to 100 - 0.01
    return next(v for v in reversed(ordered) if v.traffic_weight > 0)

def traffic_value(test: ABTest, subject: Subject, rng=None, sticky: bool = True) -> float:
    """
    Position of the subject for the traffic-allocation gate, in [0, 100).

    Sticky mode hashes the subject with a salt independent of the variant bucket,
    so exclusion is stable across calls and uncorrelated with variant choice.
    Otherwise every call draws afresh from rng.
    """
    if sticky:
        return bucket("traffic", test.id, subject.kind, subject.identifier)
    return (rng or random).random() * 100

def _result_for(test: ABTest, variant: Variant) -> AssignmentResult:
    return AssignmentResult(
        test_id=test.id,
        test_name=test.name,
        variant_id=variant.id,
        variant_name=variant.name,
        is_control=bool(variant.is_control),
        configuration=variant.configuration,
        excluded=False,
    )

# --- Persistence ---

def get_existing_assignment(db: Session, test: ABTest, subject: Subject) -> AssignmentResult | None:
    """Persisted assignment of the subject, if any."""
    try:
        existing = db.query(Assignment).filter(
            Assignment.test_id == test.id,
            Assignment.subject_kind == subject.kind,
            Assignment.subject_id == subject.identifier,
        ).first()
        if existing is None:
            return None

        variant = next((v for v in test.variants if v.id == existing.variant_id), None)
        if variant is None:
            variant = db.query(Variant).filter(Variant.id == existing.variant_id).one()
    except SQLAlchemyError as e:
        logger.exception("Failed to read assignment of %s on test %s", subject.identifier, test.name)
        raise StorageError(f"unable to read assignment: {e}") from e

    return _result_for(test, variant)

def persist_assignment(db: Session, test: ABTest, variant: Variant, subject: Subject) -> AssignmentResult:
    """
    Insert the assignment row. The unique (test, subject) constraint settles
    concurrent first assignments: the loser rolls back, re-reads and adopts the
    winner's row.
    """
    for attempt in range(MAX_RETRIES):
        try:
            db.add(Assignment(
                test_id=test.id,
                variant_id=variant.id,
                subject_kind=subject.kind,
                subject_id=subject.identifier,
            ))
            db.commit()  # This is where the database constraint check happens
            logger.info("SUCCESS: %s %s newly assigned to %s (test %s) on attempt %d.",
                        subject.kind, subject.identifier, variant.name, test.name, attempt + 1)
            return _result_for(test, variant)

        except IntegrityError:
            db.rollback()
            logger.warning("RACE DETECTED: IntegrityError on %s %s (test %s). Attempt %d/%d.",
                           subject.kind, subject.identifier, test.name, attempt + 1, MAX_RETRIES)

            existing = get_existing_assignment(db, test, subject)
            if existing:
                return existing

        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Unexpected storage error assigning %s on test %s.", subject.identifier, test.name)
            raise StorageError(f"unable to create assignment for test {test.name}: {e}") from e

    logger.warning("Failed to create assignment for %s after %d attempts.", subject.identifier, MAX_RETRIES)
    raise StorageError(f"unable to create assignment for test {test.name}")

# --- Assignment ---

@bounded
def assign(db: Session, cache: CacheClient, test_name: str, subject: Subject,
           rng=None, now: datetime | None = None, sticky_exclusion: bool | None = None) -> AssignmentResult:
    """
    Decide whether the subject takes part in the test and which variant it sees.

    Cached assignment -> running test check -> persisted assignment -> traffic
    gate -> hash bucket -> insert (first write wins) -> cache.
    Excluded subjects are neither persisted nor cached.
    """
    if subject is None or not subject.identifier:
        raise InvalidSubject()

    cached = cache.get_assignment(test_name, subject)
    if cached:
        logger.debug("assign %s/%s cache hit", test_name, subject.identifier)
        return cached

    now = as_utc(now) or utcnow()
    test = registry.get_test_cached(db, cache, test_name)
    if not test.is_running(now):
        raise TestNotActive(test.name, test.status)

    existing = get_existing_assignment(db, test, subject)
    if existing:
        logger.info("Found persistent assignment for %s on test %s: %s",
                    subject.identifier, test.name, existing.variant_name)
        cache.set_assignment(subject, existing)
        return existing

    if sticky_exclusion is None:
        sticky_exclusion = config.sticky_traffic_exclusion
    if traffic_value(test, subject, rng=rng, sticky=sticky_exclusion) >= test.traffic_allocation:
        logger.debug("%s %s excluded from %s by traffic allocation %.2f",
                     subject.kind, subject.identifier, test.name, test.traffic_allocation)
        return AssignmentResult(test_id=test.id, test_name=test.name, excluded=True, reason=EXCLUDED_BY_TRAFFIC)

    variant = select_variant(test.variants, bucket(test.id, subject.kind, subject.identifier))
    result = persist_assignment(db, test, variant, subject)
    cache.set_assignment(subject, result)
    return result

def control_fallback(cache: CacheClient, test_name: str) -> AssignmentResult:
    """Control variant from the cached definition. Without one there is nothing to render, so the subject is excluded."""
    test = cache.get_test(test_name)
    control = test.control_variant if test else None
    if control is None:
        return AssignmentResult(test_name=test_name, excluded=True, reason=FALLBACK_CONTROL)

    result = _result_for(test, control)
    result.reason = FALLBACK_CONTROL
    return result

def assign_or_default(db: Session, cache: CacheClient, test_name: str, subject: Subject, **kwargs) -> AssignmentResult:
    """
    Assignment for request handlers that must never break the page:
    an unknown or inactive test renders the default experience, any other
    failure (storage outage, timeout) fails open to the control variant, or to
    an exclusion when no definition is cached.
    """
    try:
        return assign(db, cache, test_name, subject, **kwargs)
    except InvalidSubject:
        raise
    except (NotFound, TestNotActive) as e:
        logger.info("%s Rendering default experience.", e.message)
        return AssignmentResult(test_name=test_name, excluded=True, reason=FEATURE_DISABLED)
    except Exception:
        logger.exception("Assignment for %s failed, falling back to control.", test_name)
        return control_fallback(cache, test_name)
