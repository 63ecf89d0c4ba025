"""
CarePath - Derived Cache Refresh
Recomputes the next-step and forecast cache rows of an episode from scratch
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from carepath.database import upsert_insert
from carepath.models import (
    Episode, EpisodeCareTeam, EpisodeForecastCache, EpisodeNextStepCache, TimeSlot
)
from carepath.modules.forecast import compute_episode_forecast
from carepath.modules.next_step_engine import next_required_step
from carepath.schemas import (
    BlockedCode, BlockedResult, NextStepCacheStatus, PoolType, SlotPurpose, SlotState
)

logger = logging.getLogger(__name__)

CAPACITY_BLOCKED_REASON = "No free work capacity in the booking window"


def has_free_slot_in_window(
    session: Session,
    pool: str,
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    At least one future free slot in [window_start, window_end] usable by the pool

    Usable = tagged for the pool, flexible, or untagged, and long enough
    (unknown slot durations are accepted).
    """
    now = now or datetime.now(timezone.utc)
    pool = PoolType(pool).value
    found = (
        session.query(TimeSlot.id)
        .filter(
            TimeSlot.state == SlotState.FREE.value,
            TimeSlot.start_time > now,
            TimeSlot.start_time >= window_start,
            TimeSlot.start_time <= window_end,
            or_(
                TimeSlot.slot_purpose == pool,
                TimeSlot.slot_purpose == SlotPurpose.FLEXIBLE.value,
                TimeSlot.slot_purpose.is_(None),
            ),
            or_(TimeSlot.duration_minutes.is_(None), TimeSlot.duration_minutes >= duration_minutes),
        )
        .first()
    )
    return found is not None


def resolve_worklist_provider(session: Session, episode: Episode) -> Optional[str]:
    """Assigned provider, else the primary care-team member"""
    if episode.assigned_provider_id:
        return episode.assigned_provider_id
    primary = (
        session.query(EpisodeCareTeam.provider_id)
        .filter(EpisodeCareTeam.episode_id == episode.id, EpisodeCareTeam.is_primary.is_(True))
        .first()
    )
    return primary[0] if primary else None


def _overdue_days(window_end: datetime, now: datetime) -> int:
    if window_end >= now:
        return 0
    return math.ceil((now - window_end) / timedelta(days=1))


def refresh_episode_next_step_cache(
    session: Session,
    episode_id: str,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    """
    Overwrite the next-step cache row for an episode

    Work-pool steps with no free capacity in their window are stored as
    blocked (BLOCKED_CAPACITY) while keeping the step and window. Returns
    the written values, or None when the episode no longer exists.
    """
    now = now or datetime.now(timezone.utc)
    episode = session.get(Episode, episode_id)
    if episode is None:
        session.query(EpisodeNextStepCache).filter(EpisodeNextStepCache.episode_id == episode_id).delete()
        return None

    result = next_required_step(session, episode_id, now)
    values = {
        "episode_id": episode_id,
        "provider_id": resolve_worklist_provider(session, episode),
        "pool": None,
        "step_code": None,
        "step_label": None,
        "duration_minutes": 0,
        "window_start": None,
        "window_end": None,
        "status": NextStepCacheStatus.BLOCKED.value,
        "blocked_code": None,
        "blocked_reason": None,
        "overdue_days": 0,
        "updated_at": now,
    }

    if isinstance(result, BlockedResult):
        values.update(blocked_code=result.code.value, blocked_reason=result.reason)
    else:
        values.update(
            pool=result.pool.value,
            step_code=result.step_code,
            step_label=result.label,
            duration_minutes=result.duration_minutes,
            window_start=result.window_start,
            window_end=result.window_end,
        )
        if result.pathway_complete:
            values["status"] = NextStepCacheStatus.COMPLETE.value
        elif result.pool == PoolType.WORK and not has_free_slot_in_window(
            session, result.pool.value, result.window_start, result.window_end, result.duration_minutes, now
        ):
            values.update(
                blocked_code=BlockedCode.BLOCKED_CAPACITY.value,
                blocked_reason=CAPACITY_BLOCKED_REASON,
            )
        else:
            values.update(
                status=NextStepCacheStatus.READY.value,
                overdue_days=_overdue_days(result.window_end, now),
            )

    stmt = upsert_insert(session, EpisodeNextStepCache.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["episode_id"],
        set_={k: stmt.excluded[k] for k in values if k != "episode_id"},
    )
    session.execute(stmt)
    logger.debug(f"Next-step cache for episode {episode_id}: {values['status']} {values['step_code']}")
    return values


def refresh_episode_forecast_cache(
    session: Session,
    episode_id: str,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    """Overwrite the forecast cache row for an episode"""
    now = now or datetime.now(timezone.utc)
    if session.get(Episode, episode_id) is None:
        session.query(EpisodeForecastCache).filter(EpisodeForecastCache.episode_id == episode_id).delete()
        return None

    forecast = compute_episode_forecast(session, episode_id, now)
    values = {
        "episode_id": episode_id,
        "status": forecast.status,
        "next_step": forecast.next_step,
        "remaining_visits_p50": forecast.remaining_visits_p50,
        "remaining_visits_p80": forecast.remaining_visits_p80,
        "completion_end_p50": forecast.completion_end_p50,
        "completion_end_p80": forecast.completion_end_p80,
        "assumptions": forecast.assumptions,
        "inputs_hash": forecast.inputs_hash,
        "computed_at": now,
    }

    stmt = upsert_insert(session, EpisodeForecastCache.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["episode_id"],
        set_={k: stmt.excluded[k] for k in values if k != "episode_id"},
    )
    session.execute(stmt)
    return values
