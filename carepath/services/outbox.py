"""
CarePath - Scheduling Events Worker
Drains the outbox and recomputes derived state for every touched episode
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.models import SchedulingEvent
from carepath.schemas import OutboxRunResult, SchedulingEventType
from carepath.services.cache_refresh import refresh_episode_forecast_cache, refresh_episode_next_step_cache
from carepath.services.scheduling_events import fetch_pending_events, resolve_event_episodes
from carepath.services.slot_intent_projector import project_remaining_steps
from carepath.services.stage_suggestion_service import compute_and_persist_suggestion

logger = logging.getLogger(__name__)


def _mark_processed(session: Session, event_ids: List[int], now: datetime) -> None:
    if not event_ids:
        return
    session.execute(
        update(SchedulingEvent)
        .where(SchedulingEvent.id.in_(event_ids), SchedulingEvent.processed_at.is_(None))
        .values(processed_at=now)
        .execution_options(synchronize_session=False)
    )


def process_episode(session: Session, episode_id: str, event_types: List[str], now: datetime) -> None:
    """Recompute everything derived from one episode (caller commits)"""
    refresh_episode_next_step_cache(session, episode_id, now)
    refresh_episode_forecast_cache(session, episode_id, now)
    if settings.outbox_compute_stage_suggestions:
        compute_and_persist_suggestion(session, episode_id, now)
    if SchedulingEventType.REPROJECT_INTENTS.value in event_types:
        project_remaining_steps(session, episode_id, now)


def drain_scheduling_events(
    session: Session,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> OutboxRunResult:
    """
    Process one batch of pending scheduling events, oldest first

    Events whose episode cannot be resolved are marked processed. Each
    episode is recomputed and its events marked processed in a single
    transaction; on failure that transaction is rolled back and the
    events stay pending for the next run.
    """
    now = now or datetime.now(timezone.utc)
    batch_size = batch_size or settings.outbox_batch_size

    events = fetch_pending_events(session, batch_size)
    result = OutboxRunResult(fetched=len(events))
    if not events:
        session.commit()
        return result

    owners = resolve_event_episodes(session, [e.id for e in events])
    by_episode: "OrderedDict[str, Dict[str, list]]" = OrderedDict()
    unresolved: List[int] = []
    for event in events:
        episode_id = owners.get(event.id)
        if episode_id is None:
            unresolved.append(event.id)
            continue
        group = by_episode.setdefault(episode_id, {"ids": [], "types": []})
        group["ids"].append(event.id)
        group["types"].append(event.event_type)

    if unresolved:
        _mark_processed(session, unresolved, now)
        result.unresolved = len(unresolved)
        result.processed += len(unresolved)
        logger.warning(f"Marked {len(unresolved)} unresolvable scheduling events processed")
    session.commit()

    for episode_id, group in by_episode.items():
        try:
            process_episode(session, episode_id, group["types"], now)
            _mark_processed(session, group["ids"], now)
            session.commit()
            result.processed += len(group["ids"])
            result.episodes_refreshed += 1
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to process scheduling events for episode {episode_id}: {e}", exc_info=True)
            result.episodes_failed += 1
            result.errors.append(f"episode {episode_id}: {e}")

    logger.info(
        f"✓ Outbox: {result.processed}/{result.fetched} events processed, "
        f"{result.episodes_refreshed} episodes refreshed, {result.episodes_failed} failed"
    )
    return result
