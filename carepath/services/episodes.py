"""
CarePath - Episode Lifecycle
Intake, step materialisation, step status changes, stage events, pathway changes and closing
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from carepath.database import upsert_insert
from carepath.errors import (
    EpisodeNotFoundError, InvalidStepTransitionError, SchedulingError, StageVersionConflictError
)
from carepath.models import CarePathway, Episode, EpisodePathway, EpisodeStep, Patient, StageEvent, new_id
from carepath.modules.pathway_resolver import default_offset, load_episode_steps, load_pathway_steps
from carepath.schemas import (
    EntityType, EpisodeStatus, InvalidationReason, SchedulingEventType, StageCode, StepStatus
)
from carepath.services.cache_service import get_cache_service
from carepath.services.intent_invalidation import invalidate_intents_for_episode, invalidate_intents_for_episodes
from carepath.services.recall_tasks import ensure_recall_tasks_for_episode
from carepath.services.scheduling_events import emit_scheduling_event

logger = logging.getLogger(__name__)

STEP_TRANSITIONS: Dict[str, Set[str]] = {
    StepStatus.PENDING.value: {StepStatus.SCHEDULED.value, StepStatus.COMPLETED.value, StepStatus.SKIPPED.value},
    StepStatus.SCHEDULED.value: {StepStatus.PENDING.value, StepStatus.COMPLETED.value, StepStatus.SKIPPED.value},
    StepStatus.SKIPPED.value: {StepStatus.PENDING.value},
    StepStatus.COMPLETED.value: set(),
}


def _get_episode(session: Session, episode_id: str) -> Episode:
    episode = session.get(Episode, episode_id)
    if episode is None:
        raise EpisodeNotFoundError(episode_id)
    return episode


def generate_episode_steps(session: Session, episode_id: str) -> List[EpisodeStep]:
    """
    Materialise the episode's pathway into episode_steps

    Idempotent: existing rows are returned untouched. Only open episodes
    can be materialised.
    """
    episode = _get_episode(session, episode_id)
    if episode.status != EpisodeStatus.OPEN.value:
        raise SchedulingError(f"Episode {episode_id} is {episode.status}; steps can only be generated while open")

    existing = load_episode_steps(session, episode_id)
    if existing:
        return existing

    steps, _ = load_pathway_steps(session, episode)
    if not steps:
        raise SchedulingError(f"Episode {episode_id} has no care pathway steps to generate")

    rows = [
        {
            "episode_id": episode_id,
            "step_code": step.step_code,
            "label": step.label,
            "pool": step.pool.value,
            "duration_minutes": step.duration_minutes,
            "default_days_offset": default_offset(step),
            "seq": seq,
            "status": StepStatus.PENDING.value,
        }
        for seq, step in enumerate(steps)
    ]
    # Concurrent generators race on (episode_id, seq); losers keep the winner's rows
    for row in rows:
        stmt = upsert_insert(session, EpisodeStep.__table__).values(id=new_id(), **row)
        session.execute(stmt.on_conflict_do_nothing(index_elements=["episode_id", "seq"]))

    emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.REPROJECT_INTENTS)
    generated = load_episode_steps(session, episode_id)
    logger.info(f"✓ Generated {len(generated)} steps for episode {episode_id}")
    return generated


def open_episode(
    session: Session,
    patient_id: str,
    care_pathway_id: Optional[str] = None,
    reason: Optional[str] = None,
    assigned_provider_id: Optional[str] = None,
    treatment_type_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Episode:
    """
    Open a new episode for a patient at intake

    Any episode the patient still has open is closed first and its open
    intents expire, so exactly one episode stays open per patient. The
    patient row is locked to serialise concurrent intakes. With a pathway
    the steps are materialised right away.
    """
    now = now or datetime.now(timezone.utc)
    patient = session.query(Patient).filter(Patient.id == patient_id).with_for_update().first()
    if patient is None:
        raise SchedulingError(f"Patient {patient_id} not found")

    closing_ids = [
        eid for (eid,) in session.query(Episode.id).filter(
            Episode.patient_id == patient_id, Episode.status == EpisodeStatus.OPEN.value
        )
    ]
    if closing_ids:
        invalidate_intents_for_episodes(session, closing_ids, InvalidationReason.EPISODE_CLOSED, now)
        session.execute(
            update(Episode)
            .where(Episode.id.in_(closing_ids), Episode.status == EpisodeStatus.OPEN.value)
            .values(status=EpisodeStatus.CLOSED.value, closed_at=now)
            .execution_options(synchronize_session="fetch")
        )
        for episode_id in closing_ids:
            emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.EPISODE_CLOSED)

    episode = Episode(
        id=new_id(),
        patient_id=patient_id,
        reason=reason,
        status=EpisodeStatus.OPEN.value,
        opened_at=now,
        assigned_provider_id=assigned_provider_id,
        care_pathway_id=care_pathway_id,
        treatment_type_id=treatment_type_id,
    )
    session.add(episode)
    session.flush()

    if care_pathway_id:
        generate_episode_steps(session, episode.id)
    else:
        emit_scheduling_event(session, EntityType.EPISODE, episode.id, SchedulingEventType.EPISODE_UPDATED)

    logger.info(f"✓ Episode {episode.id} opened for patient {patient_id}; closed {len(closing_ids)} previous")
    return episode


def set_episode_step_status(
    session: Session,
    step_id: str,
    new_status: StepStatus,
    appointment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EpisodeStep:
    """
    Move a materialised step along its lifecycle

    Raises:
        InvalidStepTransitionError: the transition is not allowed
    """
    now = now or datetime.now(timezone.utc)
    new_status = StepStatus(new_status).value
    step = session.get(EpisodeStep, step_id)
    if step is None:
        raise InvalidStepTransitionError(f"Episode step {step_id} not found")

    episode = _get_episode(session, step.episode_id)
    if episode.status != EpisodeStatus.OPEN.value:
        raise InvalidStepTransitionError(f"Episode {episode.id} is {episode.status}")
    if new_status not in STEP_TRANSITIONS.get(step.status, set()):
        raise InvalidStepTransitionError(f"Step {step.step_code}: {step.status} -> {new_status} not allowed")

    step.status = new_status
    if new_status in (StepStatus.COMPLETED.value, StepStatus.SKIPPED.value):
        step.completed_at = now
    else:
        step.completed_at = None
    if appointment_id is not None:
        step.appointment_id = appointment_id

    emit_scheduling_event(session, EntityType.EPISODE_STEP, step.id, SchedulingEventType.STEP_UPDATED)
    session.flush()
    logger.info(f"Episode {episode.id} step {step.seq} ({step.step_code}) -> {new_status}")
    return step


def record_stage_event(
    session: Session,
    episode_id: str,
    stage_code: StageCode,
    created_by: Optional[str] = None,
    expected_stage_version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> StageEvent:
    """
    Append a stage event and bump stage_version

    With expected_stage_version the bump only succeeds when nobody else
    changed the stage in between. Reaching STAGE_6 creates recall tasks.
    """
    now = now or datetime.now(timezone.utc)
    stage_code = StageCode(stage_code)
    episode = _get_episode(session, episode_id)

    guard = [Episode.id == episode_id]
    if expected_stage_version is not None:
        guard.append(Episode.stage_version == expected_stage_version)
    result = session.execute(
        update(Episode).where(*guard)
        .values(stage_version=Episode.stage_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.refresh(episode)
        raise StageVersionConflictError(episode_id, expected_stage_version, episode.stage_version)
    session.expire(episode, ["stage_version"])

    event = StageEvent(id=new_id(), episode_id=episode_id, stage_code=stage_code.value, at=now, created_by=created_by)
    session.add(event)
    emit_scheduling_event(session, EntityType.STAGE, event.id, SchedulingEventType.STAGE_CHANGED)

    if stage_code == StageCode.STAGE_6:
        ensure_recall_tasks_for_episode(session, episode_id, now)

    logger.info(f"Episode {episode_id} stage -> {stage_code.value}")
    return event


def close_episode(session: Session, episode_id: str, now: Optional[datetime] = None) -> Episode:
    """Close an episode and expire its open intents"""
    now = now or datetime.now(timezone.utc)
    episode = _get_episode(session, episode_id)
    if episode.status == EpisodeStatus.CLOSED.value:
        return episode

    episode.status = EpisodeStatus.CLOSED.value
    episode.closed_at = now
    invalidate_intents_for_episode(session, episode_id, InvalidationReason.EPISODE_CLOSED, now)
    emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.EPISODE_CLOSED)
    session.flush()
    logger.info(f"✓ Episode {episode_id} closed")
    return episode


def assign_provider(session: Session, episode_id: str, provider_id: Optional[str], now: Optional[datetime] = None) -> Episode:
    """Reassign the worklist owner; open intents are reprojected"""
    episode = _get_episode(session, episode_id)
    if episode.assigned_provider_id == provider_id:
        return episode
    episode.assigned_provider_id = provider_id
    invalidate_intents_for_episode(session, episode_id, InvalidationReason.PROVIDER_CHANGED, now)
    emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.EPISODE_UPDATED)
    session.flush()
    return episode


def attach_pathway_to_episode(
    session: Session,
    episode_id: str,
    care_pathway_id: str,
    ordinal: Optional[int] = None,
    now: Optional[datetime] = None,
) -> EpisodePathway:
    """Attach an additional pathway; steps merge after the existing ones unless an ordinal is given"""
    _get_episode(session, episode_id)
    link = (
        session.query(EpisodePathway)
        .filter(EpisodePathway.episode_id == episode_id, EpisodePathway.care_pathway_id == care_pathway_id)
        .first()
    )
    if link is not None:
        return link

    if ordinal is None:
        ordinal = session.query(EpisodePathway).filter(EpisodePathway.episode_id == episode_id).count()
    link = EpisodePathway(episode_id=episode_id, care_pathway_id=care_pathway_id, ordinal=ordinal)
    session.add(link)
    session.flush()

    count = invalidate_intents_for_episode(session, episode_id, InvalidationReason.PATHWAY_CHANGED, now)
    if not count:
        emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.REPROJECT_INTENTS)
    logger.info(f"Pathway {care_pathway_id} attached to episode {episode_id} at ordinal {ordinal}")
    return link


def update_care_pathway_steps(
    session: Session,
    care_pathway_id: str,
    steps_json: list,
    now: Optional[datetime] = None,
) -> CarePathway:
    """
    Replace a pathway's steps, bump its version and reproject every open
    episode that uses it

    Commits, then drops the cached steps so readers cannot re-cache the
    old version.
    """
    pathway = session.get(CarePathway, care_pathway_id)
    if pathway is None:
        raise SchedulingError(f"Care pathway {care_pathway_id} not found")

    pathway.steps_json = steps_json
    pathway.version += 1
    session.flush()

    linked = {eid for (eid,) in session.query(EpisodePathway.episode_id).filter(
        EpisodePathway.care_pathway_id == care_pathway_id
    )}
    legacy = {eid for (eid,) in session.query(Episode.id).filter(Episode.care_pathway_id == care_pathway_id)}
    open_ids = [
        eid for (eid,) in session.query(Episode.id).filter(
            Episode.id.in_(linked | legacy), Episode.status == EpisodeStatus.OPEN.value
        )
    ]
    for episode_id in open_ids:
        if not invalidate_intents_for_episode(session, episode_id, InvalidationReason.PATHWAY_CHANGED, now):
            emit_scheduling_event(session, EntityType.EPISODE, episode_id, SchedulingEventType.REPROJECT_INTENTS)
    session.commit()

    get_cache_service().invalidate_pathway(care_pathway_id)
    logger.info(f"✓ Pathway {care_pathway_id} updated to v{pathway.version}; {len(open_ids)} episodes reprojected")
    return pathway
