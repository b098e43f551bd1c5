import contextvars
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from sqlalchemy import event
from sqlalchemy.orm import Session

from services.errors import OperationTimeout

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="abtest-op")


def _run_isolated(func, caller_db: Session, deadline_passed: threading.Event, args, kwargs):
    """
    Run func on a session of its own, bound to the caller's engine. The caller's
    session never crosses threads, and once the deadline has passed the worker
    can no longer commit.
    """
    db = Session(bind=caller_db.get_bind(), autoflush=False)

    def refuse_late_commit(session):
        if deadline_passed.is_set():
            raise OperationTimeout(f"{func.__name__} passed its deadline, commit refused")

    event.listen(db, "before_commit", refuse_late_commit)
    try:
        return func(db, *args, **kwargs)
    finally:
        db.close()


def _log_abandoned(name: str):
    def done(future):
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("abandoned %s finished with %s: %s", name, type(exc).__name__, exc)
    return done


def bounded(func):
    """
    Give an operation an optional ``timeout=`` keyword (seconds).

    Without a timeout the function runs inline. With one, it runs on a worker
    thread (carrying the caller's context vars, so log lines keep their request
    id) and OperationTimeout is raised once the deadline passes. When the first
    argument is a Session the worker gets its own session on the same engine and
    any commit it attempts after the deadline raises OperationTimeout and is
    rolled back, so a timed-out write never lands after the caller gave up.
    """

    @functools.wraps(func)
    def wrapper(*args, timeout: float | None = None, **kwargs):
        if not timeout:
            return func(*args, **kwargs)

        ctx = contextvars.copy_context()
        deadline_passed = threading.Event()
        if args and isinstance(args[0], Session):
            future = _executor.submit(ctx.run, _run_isolated, func, args[0], deadline_passed, args[1:], kwargs)
        else:
            future = _executor.submit(ctx.run, func, *args, **kwargs)

        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            deadline_passed.set()
            if not future.cancel():
                future.add_done_callback(_log_abandoned(func.__name__))
            logger.warning("%s exceeded its %.2fs timeout", func.__name__, timeout)
            raise OperationTimeout(f"{func.__name__} timed out after {timeout}s")

    return wrapper
