import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging
from kombu import Exchange, Queue

from .config import settings


def configure_logging(level: str = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()


celery_app = Celery(
    "reminders",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND or None,
)

exchange = Exchange("reminders", type="direct", durable=True)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    timezone="UTC",
    enable_utc=True,
    task_default_queue=settings.QUEUE_NAME,
    task_default_exchange="reminders",
    task_default_routing_key=settings.QUEUE_NAME,
    include=["cadence.reminders.tasks"],
    task_queues=(
        Queue(settings.QUEUE_NAME, exchange=exchange, routing_key=settings.QUEUE_NAME, durable=True),
        Queue(settings.DISPATCH_QUEUE_NAME, exchange=exchange, routing_key=settings.DISPATCH_QUEUE_NAME, durable=True),
    ),
    task_routes={
        "reminders.dispatch_due": {"queue": settings.DISPATCH_QUEUE_NAME, "routing_key": settings.DISPATCH_QUEUE_NAME},
    },
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "daily-rebuild": {
        "task": "reminders.daily_rebuild",
        "schedule": crontab(hour=0, minute=0),
    },
    "dispatch-due": {
        "task": "reminders.dispatch_due",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    },
}
