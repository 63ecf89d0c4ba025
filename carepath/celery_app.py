"""
CarePath - Celery Application Configuration
Runs the scheduling batch workers (outbox drain, expiry, rebalance, calibration)
"""

import logging
from celery import Celery
from celery.schedules import crontab
from carepath.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create Celery application
celery_app = Celery(
    "carepath",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "carepath.tasks.scheduling",
        "carepath.tasks.maintenance",
    ]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.task_time_limit,
    task_soft_time_limit=settings.task_soft_time_limit,
    worker_concurrency=settings.worker_concurrency,
    worker_prefetch_multiplier=settings.worker_prefetch_multiplier,
    worker_max_tasks_per_child=1000,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,
    task_always_eager=settings.celery_task_always_eager,
)

celery_app.conf.task_routes = {
    "carepath.tasks.scheduling.*": {"queue": "scheduling"},
    "carepath.tasks.maintenance.*": {"queue": "maintenance"},
}

# Periodic workers
celery_app.conf.beat_schedule = {
    "drain-scheduling-events": {
        "task": "carepath.tasks.scheduling.drain_scheduling_events",
        "schedule": float(settings.outbox_drain_interval_seconds),
    },
    "expire-appointment-holds": {
        "task": "carepath.tasks.maintenance.expire_holds",
        "schedule": float(settings.hold_expiry_interval_seconds),
    },
    "expire-slot-intents": {
        "task": "carepath.tasks.maintenance.expire_intents",
        "schedule": float(settings.intent_expiry_interval_seconds),
    },
    "rebalance-capacity-pools": {
        "task": "carepath.tasks.maintenance.rebalance_capacity_pools",
        "schedule": crontab(hour=settings.rebalance_hour_utc, minute=0),
    },
    "calibrate-pathway-analytics": {
        "task": "carepath.tasks.maintenance.calibrate_pathway_analytics",
        "schedule": crontab(hour=settings.calibration_hour_utc, minute=30),
    },
}

logger.info("Celery application configured successfully")
logger.info(f"Broker: {settings.celery_broker_url}")
logger.info(f"Backend: {settings.celery_result_backend}")

if __name__ == "__main__":
    celery_app.start()
