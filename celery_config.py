from celery import Celery
from config import config

# A broker (Redis/Valkey or RabbitMQ) must be running for workers and .delay()
BROKER_URL = config.celery_broker_url
BACKEND_URL = config.celery_backend_url

celery_app = Celery(
    "ab_testing_tasks",
    broker=BROKER_URL,
    backend=BACKEND_URL,
    # This ensures the tasks are loaded when the worker starts
    include=["celery_tasks.result_tasks"]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Producer-side retries, for when the API cannot reach the broker
    task_publish_retry=True,
    task_publish_retry_policy={
        'max_retries': 10,
        'interval_start': 0.5,
        'interval_step': 0.5,
        'interval_max': 5,
    },
)

celery_app.conf.task_routes = {
    'celery_tasks.result_tasks.insert_result_to_db': {'queue': 'default'},
    # reporting work never competes with result ingestion
    'celery_tasks.result_tasks.snapshot_significance': {'queue': 'reports'},
}

# celery -A celery_config beat
celery_app.conf.beat_schedule = {
    'snapshot-significance': {
        'task': 'celery_tasks.result_tasks.snapshot_significance',
        'schedule': float(config.significance_snapshot_interval),
    },
}
