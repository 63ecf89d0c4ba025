"""
CarePath - Intent Invalidation
Expires open slot intents when an episode's pathway, provider or status changes
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from carepath.models import SlotIntent
from carepath.schemas import EntityType, IntentState, InvalidationReason, SchedulingEventType
from carepath.services.scheduling_events import emit_scheduling_event

logger = logging.getLogger(__name__)


def _expire_open(session: Session, episode_ids: Sequence[str], now: datetime) -> int:
    result = session.execute(
        update(SlotIntent)
        .where(SlotIntent.episode_id.in_(list(episode_ids)), SlotIntent.state == IntentState.OPEN.value)
        .values(state=IntentState.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def invalidate_intents_for_episode(
    session: Session,
    episode_id: str,
    reason: InvalidationReason,
    now: Optional[datetime] = None,
) -> int:
    """
    Expire all open intents of an episode. Idempotent.

    Unless the episode closed, a REPROJECT_INTENTS event is queued so the
    outbox worker projects fresh intents.
    """
    now = now or datetime.now(timezone.utc)
    reason = InvalidationReason(reason)
    count = _expire_open(session, [episode_id], now)
    if count and reason != InvalidationReason.EPISODE_CLOSED:
        emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.REPROJECT_INTENTS)
    logger.info(f"Invalidated {count} open intents for episode {episode_id} ({reason.value})")
    return count


def invalidate_intents_for_episodes(
    session: Session,
    episode_ids: Sequence[str],
    reason: InvalidationReason,
    now: Optional[datetime] = None,
) -> int:
    """Bulk variant (e.g. closing every open episode of a patient); emits no events"""
    if not episode_ids:
        return 0
    now = now or datetime.now(timezone.utc)
    count = _expire_open(session, episode_ids, now)
    logger.info(f"Invalidated {count} open intents for {len(episode_ids)} episodes ({InvalidationReason(reason).value})")
    return count
