import os
import log
from dotenv import load_dotenv

# Load .env file into environment
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    def __init__(self):
        self.valkey_host = os.getenv("VALKEY_HOST", "")
        self.valkey_port = int(os.getenv("VALKEY_PORT", 6379))
        self.valkey_password = os.getenv("VALKEY_PASSWORD") or None
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./ab_testing.db")
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.log_file = os.getenv("LOG_FILE", default="ab_testing_service.log")
        self.valid_tokens = [t.strip() for t in os.getenv("VALID_TOKENS", "").split(",") if t.strip()]
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1")

        # Cache lifetimes, in seconds
        self.assignment_cache_ttl = int(os.getenv("ASSIGNMENT_CACHE_TTL", 86400))
        self.test_cache_ttl = int(os.getenv("TEST_CACHE_TTL", 600))
        self.recent_results_limit = int(os.getenv("RECENT_RESULTS_LIMIT", 1000))
        self.recent_results_ttl = int(os.getenv("RECENT_RESULTS_TTL", 86400 * 7))

        # 0 disables the per-operation timeout
        self.operation_timeout_seconds = float(os.getenv("OPERATION_TIMEOUT_SECONDS", 5.0)) or None
        self.sticky_traffic_exclusion = _env_bool("STICKY_TRAFFIC_EXCLUSION", True)
        self.significance_snapshot_interval = int(os.getenv("SIGNIFICANCE_SNAPSHOT_INTERVAL", 3600))

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level, self.log_file)

    def __repr__(self):
        return (
            f"<Settings valkey={self.valkey_host}:{self.valkey_port} loglevel={self.log_level}, "
            f"broker_url:{self.celery_broker_url}, backend_url:{self.celery_backend_url}, "
            f"sticky_exclusion:{self.sticky_traffic_exclusion}>"
        )

config = Config()
