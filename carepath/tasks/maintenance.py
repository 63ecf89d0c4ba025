"""
CarePath - Maintenance Tasks
Periodic expiry, capacity rebalance and analytics calibration
"""

import logging
from typing import Optional

from carepath.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="carepath.tasks.maintenance.expire_holds", bind=True, max_retries=3)
def expire_holds_task(self) -> dict:
    """Cancel appointments whose confirmation hold lapsed"""
    try:
        from carepath.database import session_scope
        from carepath.services.expiry import run_hold_expiry

        with session_scope() as session:
            result = run_hold_expiry(session)
        return result.model_dump()

    except Exception as e:
        logger.error(f"Hold expiry failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="carepath.tasks.maintenance.expire_intents", bind=True, max_retries=3)
def expire_intents_task(self) -> dict:
    try:
        from carepath.database import session_scope
        from carepath.services.expiry import run_intent_expiry

        with session_scope() as session:
            expired = run_intent_expiry(session)
        return {"expired": expired}

    except Exception as e:
        logger.error(f"Intent expiry failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="carepath.tasks.maintenance.rebalance_capacity_pools", bind=True, max_retries=3)
def rebalance_capacity_pools_task(self, job_run_id: Optional[str] = None) -> dict:
    """
    Nightly capacity pool rebalance

    Args:
        job_run_id: Audit id stamped on every retag; defaults to the Celery task id
    """
    try:
        from carepath.database import session_scope
        from carepath.services.capacity_rebalancer import run_rebalance

        with session_scope() as session:
            result = run_rebalance(session, job_run_id=job_run_id or self.request.id)
        return result.model_dump()

    except Exception as e:
        logger.error(f"Capacity rebalance failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="carepath.tasks.maintenance.calibrate_pathway_analytics", bind=True, max_retries=3)
def calibrate_pathway_analytics_task(self) -> dict:
    try:
        from carepath.database import session_scope
        from carepath.services.pathway_analytics import calibrate_pathway_analytics

        with session_scope() as session:
            result = calibrate_pathway_analytics(session)
        return result.model_dump()

    except Exception as e:
        logger.error(f"Pathway analytics calibration failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
