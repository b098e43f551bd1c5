import json
import logging
import functools
from typing import Any, Callable

from sqlalchemy.orm import Session

from data.database import AuditEvent, SessionLocal

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Fire-and-forget audit trail. Each event is written through its own session so
    it never joins (or breaks) the caller's transaction; failures are only logged.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def log(self, event_type: str, actor: str | None = None, resource_id: Any = None,
            details: dict | None = None, resource_type: str = "ab_testing"):
        db = None
        try:
            db = self.session_factory()
            db.add(AuditEvent(
                event_type=event_type,
                actor=actor,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                details_json=json.dumps(details, default=str) if details else None,
            ))
            db.commit()
            logger.info("audit %s by %s on %s", event_type, actor, resource_id)
        except Exception:
            logger.exception("Failed to write audit event %s", event_type)
            if db is not None:
                db.rollback()
        finally:
            if db is not None:
                db.close()


@functools.lru_cache(maxsize=1)
def get_audit_logger() -> AuditLogger:
    return AuditLogger()
