# coursepay/celery_app.py

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_prerun, task_postrun, task_failure

from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)

celery_app = Celery(
    "coursepay",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "coursepay.orders.tasks",
        "coursepay.refunds.tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,
    task_time_limit=120,
    task_soft_time_limit=100,
    broker_connection_retry_on_startup=True,

    result_expires=3600,

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=200,

    beat_schedule={
        "expire-stale-orders": {
            "task": "coursepay.orders.tasks.expire_stale_orders",
            "schedule": crontab(minute="*/5"),
        },
        "retry-pending-refunds": {
            "task": "coursepay.refunds.tasks.retry_pending_refunds",
            "schedule": crontab(minute="*/15"),
        },
    },
)


@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    """Log when task starts"""
    logger.info(f"Task started: {task.name} [ID: {task_id}]")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra):
    """Log when task completes"""
    logger.info(f"Task completed: {task.name} [ID: {task_id}] State: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, args=None, kwargs=None, traceback=None, **extra):
    """Log when task fails"""
    logger.error(f"Task failed: {sender.name} [ID: {task_id}] Error: {exception}")
