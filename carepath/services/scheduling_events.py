"""
CarePath - Scheduling Event Outbox
Append-only change log written alongside the state change it describes
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session, aliased

from carepath.models import (
    Appointment, Episode, EpisodeBlock, EpisodeCareTeam, EpisodeStep, SchedulingEvent, StageEvent
)
from carepath.schemas import EntityType, SchedulingEventType

logger = logging.getLogger(__name__)


def emit_scheduling_event(
    session: Session,
    entity_type: EntityType,
    entity_id: str,
    event_type: SchedulingEventType = SchedulingEventType.EPISODE_UPDATED,
) -> SchedulingEvent:
    """Add an outbox row to the caller's transaction (committed with the change)"""
    event = SchedulingEvent(
        entity_type=EntityType(entity_type).value,
        entity_id=entity_id,
        event_type=SchedulingEventType(event_type).value,
    )
    session.add(event)
    logger.debug(f"Scheduling event queued: {event.entity_type}:{entity_id} {event.event_type}")
    return event


def fetch_pending_events(session: Session, batch_size: int) -> List[SchedulingEvent]:
    """Unprocessed events, oldest first"""
    return (
        session.query(SchedulingEvent)
        .filter(SchedulingEvent.processed_at.is_(None))
        .order_by(SchedulingEvent.created_at, SchedulingEvent.id)
        .limit(batch_size)
        .all()
    )


def resolve_event_episodes(session: Session, event_ids: Sequence[int]) -> Dict[int, Optional[str]]:
    """
    Owning episode per event in a single join query

    Events whose entity (or owning episode) no longer exists map to None.
    """
    if not event_ids:
        return {}

    ev = SchedulingEvent
    appt = aliased(Appointment)
    stage = aliased(StageEvent)
    block = aliased(EpisodeBlock)
    team = aliased(EpisodeCareTeam)
    step = aliased(EpisodeStep)
    owner = aliased(Episode)

    candidate = case(
        (ev.entity_type == EntityType.EPISODE.value, ev.entity_id),
        (ev.entity_type == EntityType.APPOINTMENT.value, appt.episode_id),
        (ev.entity_type == EntityType.STAGE.value, stage.episode_id),
        (ev.entity_type == EntityType.BLOCK.value, block.episode_id),
        (ev.entity_type == EntityType.TEAM.value, team.episode_id),
        (ev.entity_type == EntityType.EPISODE_STEP.value, step.episode_id),
        else_=None,
    )

    rows = (
        session.query(ev.id, owner.id)
        .outerjoin(appt, and_(ev.entity_type == EntityType.APPOINTMENT.value, appt.id == ev.entity_id))
        .outerjoin(stage, and_(ev.entity_type == EntityType.STAGE.value, stage.id == ev.entity_id))
        .outerjoin(block, and_(ev.entity_type == EntityType.BLOCK.value, block.id == ev.entity_id))
        .outerjoin(team, and_(ev.entity_type == EntityType.TEAM.value, team.id == ev.entity_id))
        .outerjoin(step, and_(ev.entity_type == EntityType.EPISODE_STEP.value, step.id == ev.entity_id))
        .outerjoin(owner, owner.id == candidate)
        .filter(ev.id.in_(list(event_ids)))
        .all()
    )
    return {event_id: episode_id for event_id, episode_id in rows}


def count_pending_events(session: Session) -> int:
    return session.query(func.count(SchedulingEvent.id)).filter(SchedulingEvent.processed_at.is_(None)).scalar()
