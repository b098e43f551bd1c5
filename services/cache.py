import functools
import json
import logging
import threading
import time
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from config import config
from data.database import ABTest
from models.assignments import AssignmentResult, Subject
from services.errors import CacheError

logger = logging.getLogger(__name__)

ACTIVE_TESTS_KEY = "ab_tests:active"

# --- Valkey/Redis Backend Implementations ---

class InMemoryValkeyBackend:
    """
    Process-local stand-in for a Valkey/Redis server with the same expiry
    semantics. Used when VALKEY_HOST is unset and in tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}
        self._lock = threading.Lock()

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data[key] if self._alive(key) else None

    def set(self, key: str, value: str, ex: int | None = None):
        with self._lock:
            self._data[key] = value
            if ex:
                self._expires[key] = self._clock() + ex
            else:
                self._expires.pop(key, None)

    def delete(self, *keys: str):
        with self._lock:
            for key in keys:
                self._data.pop(key, None)
                self._expires.pop(key, None)

    def lpush(self, key: str, value: str):
        with self._lock:
            if not self._alive(key):
                self._data[key] = []
            self._data[key].insert(0, value)

    def ltrim(self, key: str, start: int, stop: int):
        with self._lock:
            if self._alive(key):
                self._data[key] = self._data[key][start:stop + 1]

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        with self._lock:
            if not self._alive(key):
                return []
            items = self._data[key]
            return list(items[start:] if stop == -1 else items[start:stop + 1])

    def expire(self, key: str, seconds: int):
        with self._lock:
            if self._alive(key):
                self._expires[key] = self._clock() + seconds

    def flush(self):
        with self._lock:
            self._data.clear()
            self._expires.clear()

class RealValkeyBackend:
    """redis-py client (compatible with Valkey). Every failure surfaces as CacheError."""

    def __init__(self, host: str, port: int, db: int = 0, password: str | None = None):
        import redis

        self._errors = (redis.RedisError,)
        try:
            self.client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                socket_timeout=2.0
            )
            self.client.ping()
        except redis.RedisError as e:
            logger.error("Failed to connect to Valkey/Redis at %s:%d: %s", host, port, e)
            raise CacheError(f"cannot connect to valkey: {e}") from e

    def _call(self, op: str, *args, **kwargs):
        try:
            return getattr(self.client, op)(*args, **kwargs)
        except self._errors as e:
            raise CacheError(f"valkey {op} failed: {e}") from e

    def ping(self) -> bool:
        return bool(self._call("ping"))

    def get(self, key: str) -> str | None:
        return self._call("get", key)

    def set(self, key: str, value: str, ex: int | None = None):
        self._call("set", key, value, ex=ex)

    def delete(self, *keys: str):
        self._call("delete", *keys)

    def lpush(self, key: str, value: str):
        self._call("lpush", key, value)

    def ltrim(self, key: str, start: int, stop: int):
        self._call("ltrim", key, start, stop)

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return self._call("lrange", key, start, stop)

    def expire(self, key: str, seconds: int):
        self._call("expire", key, seconds)


# --- Dedicated Cache Client Class ---

class CacheClient:
    """
    High-level cache operations for the A/B testing services.

    The cache is strictly best effort: a backend failure is logged and reported
    as a miss, callers then fall back to the database.
    """

    def __init__(self, backend, assignment_ttl: int = 86400, test_ttl: int = 600,
                 recent_results_limit: int = 1000, recent_results_ttl: int = 86400 * 7):
        self.backend = backend
        self.assignment_ttl = assignment_ttl
        self.test_ttl = test_ttl
        self.recent_results_limit = recent_results_limit
        self.recent_results_ttl = recent_results_ttl
        logger.debug("CacheClient backend: %s", self.backend)

    def _safe(self, op: str, *args, default=None, **kwargs):
        try:
            return getattr(self.backend, op)(*args, **kwargs)
        except CacheError as e:
            logger.warning("cache %s degraded to miss: %s", op, e)
            return default

    def ping(self) -> bool:
        return bool(self._safe("ping", default=False))

    # --- Assignment Caching ---

    @staticmethod
    def assignment_key(test_name: str, subject: Subject) -> str:
        return f"test_assignment:{test_name}:{subject.kind}:{subject.identifier}"

    def get_assignment(self, test_name: str, subject: Subject) -> AssignmentResult | None:
        json_str = self._safe("get", self.assignment_key(test_name, subject))
        if not json_str:
            return None
        try:
            return AssignmentResult.model_validate_json(json_str)
        except PydanticValidationError:
            logger.warning("Discarding malformed cached assignment for %s on %s", subject.identifier, test_name)
            self.delete_assignment(test_name, subject)
            return None

    def set_assignment(self, subject: Subject, assignment: AssignmentResult):
        key = self.assignment_key(assignment.test_name, subject)
        self._safe("set", key, assignment.model_dump_json(), ex=self.assignment_ttl)
        logger.debug("Assignment for %s %s (test %s) cached.", subject.kind, subject.identifier, assignment.test_name)

    def delete_assignment(self, test_name: str, subject: Subject):
        self._safe("delete", self.assignment_key(test_name, subject))

    # --- Test Definition Caching ---

    def get_test(self, test_name: str) -> ABTest | None:
        json_str = self._safe("get", f"ab_test:{test_name}")
        if json_str:
            logger.debug("cache hit for test %s", test_name)
            return ABTest.from_json(json_str)
        return None

    def set_test(self, test: ABTest):
        json_str = test.to_json(exclude_relationships_key=["assignments"])
        self._safe("set", f"ab_test:{test.name}", json_str, ex=self.test_ttl)

    def get_active_tests(self) -> list[ABTest] | None:
        json_str = self._safe("get", ACTIVE_TESTS_KEY)
        if json_str is None:
            return None
        return [ABTest.from_dict(item) for item in json.loads(json_str)]

    def set_active_tests(self, tests: list[ABTest]):
        payload = json.dumps([t.to_dict(exclude_relationships_key=["assignments"]) for t in tests])
        self._safe("set", ACTIVE_TESTS_KEY, payload, ex=self.test_ttl)

    def invalidate_test(self, test_name: str):
        self._safe("delete", f"ab_test:{test_name}", ACTIVE_TESTS_KEY)

    # --- Recent Results Buffer ---

    @staticmethod
    def recent_results_key(test_name: str, variant_name: str, metric_name: str) -> str:
        return f"test_results:{test_name}:{variant_name}:{metric_name}"

    def push_recent_result(self, test_name: str, variant_name: str, metric_name: str, entry: dict):
        key = self.recent_results_key(test_name, variant_name, metric_name)
        self._safe("lpush", key, json.dumps(entry, default=str))
        self._safe("ltrim", key, 0, self.recent_results_limit - 1)
        self._safe("expire", key, self.recent_results_ttl)

    def get_recent_results(self, test_name: str, variant_name: str, metric_name: str, limit: int) -> list[dict]:
        key = self.recent_results_key(test_name, variant_name, metric_name)
        raw = self._safe("lrange", key, 0, limit - 1, default=[])
        return [json.loads(item) for item in raw]


# --- Initialize Backend and Default Client ---

def build_backend():
    if config.valkey_host:
        try:
            return RealValkeyBackend(host=config.valkey_host, port=config.valkey_port, password=config.valkey_password)
        except CacheError:
            logger.info("Falling back to in-memory cache backend due to connection failure.")
    else:
        logger.info("VALKEY_HOST not set. Using in-memory cache backend.")
    return InMemoryValkeyBackend()

def make_cache_client(backend) -> CacheClient:
    return CacheClient(
        backend=backend,
        assignment_ttl=config.assignment_cache_ttl,
        test_ttl=config.test_cache_ttl,
        recent_results_limit=config.recent_results_limit,
        recent_results_ttl=config.recent_results_ttl,
    )

@functools.lru_cache(maxsize=1)
def get_cache_client() -> CacheClient:
    return make_cache_client(build_backend())

def get_in_memory_cache_client() -> CacheClient:
    return make_cache_client(InMemoryValkeyBackend())
