import os
from celery import Celery

BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URI", "redis://localhost:6379/0"))
BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", os.getenv("REDIS_URI", "redis://localhost:6379/0"))
BATCH_INTERVAL_SECONDS = int(os.getenv("ANALYTICS_BATCH_INTERVAL_SECONDS", "60"))

celery = Celery(
    "trustgate",
    broker=BROKER_URL,
    backend=BACKEND_URL,
    include=[
        "trustgate.services.tasks",
    ],
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # alerts are fire-and-forget
    task_ignore_result=True,
)

# Requires a running celery beat
celery.conf.beat_schedule = {
    "process-security-event-batch": {
        "task": "process_security_event_batch",
        "schedule": BATCH_INTERVAL_SECONDS,
    },
}
