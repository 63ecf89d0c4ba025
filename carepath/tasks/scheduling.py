"""
CarePath - Scheduling Tasks
Celery tasks that keep derived scheduling state in step with the outbox
"""

import logging
from typing import Optional

from carepath.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="carepath.tasks.scheduling.drain_scheduling_events", bind=True, max_retries=3)
def drain_scheduling_events_task(self, batch_size: Optional[int] = None) -> dict:
    """
    Drain one batch of scheduling events

    Per-episode failures are reported in the result and retried on the
    next run; only a failure of the whole batch triggers a Celery retry.
    """
    try:
        from carepath.database import session_scope
        from carepath.services.outbox import drain_scheduling_events

        with session_scope() as session:
            result = drain_scheduling_events(session, batch_size=batch_size)

        return result.model_dump()

    except Exception as e:
        logger.error(f"Outbox drain failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="carepath.tasks.scheduling.project_episode_intents", bind=True, max_retries=3)
def project_episode_intents_task(self, episode_id: str) -> dict:
    """Reproject one episode's slot intents immediately"""
    try:
        logger.info(f"Projecting intents for episode {episode_id}")
        from carepath.database import session_scope
        from carepath.services.slot_intent_projector import project_remaining_steps

        with session_scope() as session:
            result = project_remaining_steps(session, episode_id)
            session.commit()

        logger.info(f"✓ Projection complete: {result.projected} intents")
        return result.model_dump()

    except Exception as e:
        logger.error(f"Projection failed for episode {episode_id}: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
