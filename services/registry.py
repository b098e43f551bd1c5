from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime
import json
import logging
import re

from data.database import ABTest, Variant, Assignment, utcnow, as_utc
from models.ab_tests import ABTestCreate
from models.assignments import Subject, SubjectAssignment
from services.audit import AuditLogger
from services.cache import CacheClient
from services.errors import ValidationError, InvalidTransition, TestNotFound, StorageError
from services.timeouts import bounded

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
WEIGHT_TOLERANCE = 0.01

# action -> (statuses it may be applied from, resulting status)
TRANSITIONS = {
    "activate": ({"draft"}, "active"),
    "pause": ({"active"}, "paused"),
    "resume": ({"paused"}, "active"),
    "complete": ({"active", "paused"}, "completed"),
    "archive": ({"draft", "active", "paused"}, "archived"),
}

# --- Lookups ---

@bounded
def get_active_tests(db: Session, cache: CacheClient | None = None, now: datetime | None = None) -> list[ABTest]:
    """
    Tests with status 'active' whose optional start/end window contains now,
    newest first. The status-filtered list is cached; the window is applied on
    every call so a cached list never serves a test outside its window.
    """
    now = as_utc(now) or utcnow()

    tests = cache.get_active_tests() if cache else None
    if tests is None:
        try:
            tests = (
                db.query(ABTest)
                .options(selectinload(ABTest.variants))
                .filter(ABTest.status == "active")
                .order_by(ABTest.created_at.desc(), ABTest.id.desc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.exception("Failed to load active tests")
            raise StorageError(f"unable to load active tests: {e}") from e

        if cache:
            cache.set_active_tests(tests)
        logger.debug("get_active_tests cache miss, %d active", len(tests))

    return [t for t in tests if t.is_running(now)]

@bounded
def get_test(db: Session, name_or_id: str | int) -> ABTest:
    """Look a test up by numeric id (int or digits-only string) or by name."""
    query = db.query(ABTest).options(selectinload(ABTest.variants))
    try:
        if isinstance(name_or_id, int) or str(name_or_id).isdigit():
            test = query.filter(ABTest.id == int(name_or_id)).one_or_none()
        else:
            test = query.filter(ABTest.name == name_or_id).one_or_none()
    except SQLAlchemyError as e:
        logger.exception("Failed to load test %s", name_or_id)
        raise StorageError(f"unable to load test {name_or_id}: {e}") from e

    if test is None:
        raise TestNotFound(name_or_id)
    return test

def get_test_cached(db: Session, cache: CacheClient, test_name: str) -> ABTest:
    """Test definition through the cache; used on the assignment hot path."""
    test = cache.get_test(test_name)
    if test is None:
        test = get_test(db, test_name)
        cache.set_test(test)
        logger.debug("get_test_cached %s cache miss", test_name)
    return test

def get_subject_assignments(db: Session, subject: Subject) -> list[SubjectAssignment]:
    """Every assignment the subject holds in currently active tests, newest first."""
    try:
        rows = (
            db.query(Assignment, ABTest, Variant)
            .join(ABTest, Assignment.test_id == ABTest.id)
            .join(Variant, Assignment.variant_id == Variant.id)
            .filter(
                Assignment.subject_kind == subject.kind,
                Assignment.subject_id == subject.identifier,
                ABTest.status == "active",
            )
            .order_by(Assignment.assigned_at.desc(), Assignment.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        logger.exception("Failed to load assignments for %s %s", subject.kind, subject.identifier)
        raise StorageError(str(e)) from e

    return [
        SubjectAssignment(
            test_name=test.name,
            test_display_name=test.display_name,
            variant_name=variant.name,
            variant_display_name=variant.display_name,
            is_control=variant.is_control,
            configuration=variant.configuration,
            assigned_at=assignment.assigned_at,
        )
        for assignment, test, variant in rows
    ]

# --- Test Creation ---

def validate_definition(definition: ABTestCreate) -> list[str]:
    """Return every violated constraint of a test definition (empty when valid)."""
    errors = []

    if not definition.name or not definition.name.strip():
        errors.append("name is required")
    elif not SLUG_PATTERN.match(definition.name):
        errors.append(f"name '{definition.name}' must be a lowercase slug (letters, digits, '_' or '-')")
    if not definition.display_name or not definition.display_name.strip():
        errors.append("display_name is required")
    if not definition.success_metrics:
        errors.append("success_metrics is required")

    variants = definition.variants
    if len(variants) < 2:
        errors.append("at least 2 variants are required")

    names = [v.name for v in variants]
    for name in names:
        if not SLUG_PATTERN.match(name or ""):
            errors.append(f"variant name '{name}' must be a lowercase slug")
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        errors.append(f"variant names must be unique: {', '.join(duplicates)}")

    if variants:
        total_weight = sum(v.traffic_weight for v in variants)
        if abs(total_weight - 100) > WEIGHT_TOLERANCE:
            errors.append(f"variant traffic weights must sum to 100 (got {total_weight:g})")

        controls = sum(1 for v in variants if v.is_control)
        if controls != 1:
            errors.append(f"exactly one control variant is required (got {controls})")

    if definition.start_date and definition.end_date and as_utc(definition.end_date) <= as_utc(definition.start_date):
        errors.append("end_date must be after start_date")

    return errors

def create_test(db: Session, definition: ABTestCreate, created_by: str | None,
                cache: CacheClient | None = None, audit: AuditLogger | None = None) -> int:
    """
    Validate and persist a test with all of its variants in one transaction.
    New tests start in 'draft'; they take traffic once activated.
    """
    errors = validate_definition(definition)
    if definition.name and db.query(ABTest.id).filter(ABTest.name == definition.name).first():
        errors.append(f"a test named '{definition.name}' already exists")
    if errors:
        logger.info("rejected test definition %s: %s", definition.name, errors)
        raise ValidationError(errors)

    try:
        db_test = ABTest(
            name=definition.name,
            display_name=definition.display_name,
            description=definition.description,
            hypothesis=definition.hypothesis,
            test_type=definition.test_type,
            traffic_allocation=definition.traffic_allocation,
            success_metrics_json=json.dumps(definition.success_metrics),
            statistical_significance=definition.statistical_significance,
            minimum_sample_size=definition.minimum_sample_size,
            start_date=as_utc(definition.start_date),
            end_date=as_utc(definition.end_date),
            created_by=created_by,
            status="draft",
        )
        db.add(db_test)
        db.flush()  # Flush to get the test ID before adding variants

        for v in definition.variants:
            db.add(Variant(
                test_id=db_test.id,
                name=v.name,
                display_name=v.display_name,
                description=v.description,
                is_control=v.is_control,
                traffic_weight=v.traffic_weight,
                configuration_json=json.dumps(v.configuration or {}),
            ))

        db.commit()
    except IntegrityError:
        # a concurrent create won the unique name
        db.rollback()
        raise ValidationError(f"a test named '{definition.name}' already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to create test %s", definition.name)
        raise StorageError(f"unable to create test {definition.name}: {e}") from e

    db.refresh(db_test)
    logger.info("create new test %s success with test id: %d", definition.name, db_test.id)

    if cache:
        cache.invalidate_test(db_test.name)
    if audit:
        audit.log("ab_test_create", actor=created_by, resource_id=db_test.id,
                  details={"name": db_test.name, "display_name": db_test.display_name})
    return db_test.id

# --- Lifecycle ---

def _save(db: Session, test: ABTest, what: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to %s test %s", what, test.name)
        raise StorageError(f"unable to {what} test {test.name}: {e}") from e
    db.refresh(test)

def transition_test(db: Session, cache: CacheClient | None, test_name: str, action: str,
                    actor: str | None = None, audit: AuditLogger | None = None) -> ABTest:
    """
    Apply a lifecycle action:
    draft -activate-> active -pause-> paused -resume-> active;
    active|paused -complete-> completed; draft|active|paused -archive-> archived.
    """
    if action not in TRANSITIONS:
        raise ValidationError(f"unknown action '{action}', expected one of {', '.join(TRANSITIONS)}")

    test = get_test(db, test_name)
    allowed_from, target = TRANSITIONS[action]
    if test.status not in allowed_from:
        raise InvalidTransition(f"cannot {action} test {test.name} while it is {test.status}")

    previous = test.status
    test.status = target
    _save(db, test, action)
    logger.info("test %s: %s -> %s", test.name, previous, target)

    if cache:
        cache.invalidate_test(test.name)
    if audit:
        audit.log(f"ab_test_{action}", actor=actor, resource_id=test.id,
                  details={"name": test.name, "from": previous, "to": target})
    return test

def update_success_metrics(db: Session, cache: CacheClient | None, test_name: str, success_metrics: dict,
                           actor: str | None = None, audit: AuditLogger | None = None) -> ABTest:
    if not success_metrics:
        raise ValidationError("success_metrics is required")

    test = get_test(db, test_name)
    test.success_metrics_json = json.dumps(success_metrics)
    _save(db, test, "update metrics of")

    if cache:
        cache.invalidate_test(test.name)
    if audit:
        audit.log("ab_test_metrics_update", actor=actor, resource_id=test.id,
                  details={"name": test.name, "success_metrics": success_metrics})
    return test
