"""
CarePath - Read Queries
Cache and intent lookups backing worklists, episode pages and forecasts
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from carepath.models import Episode, EpisodeForecastCache, EpisodeNextStepCache, SlotIntent
from carepath.schemas import ForecastCacheOut, IntentState, NextStepCacheOut, SlotIntentOut


def _day_bounds(range_start: date, range_end: date):
    start = datetime.combine(range_start, time.min, tzinfo=timezone.utc)
    end = datetime.combine(range_end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def get_next_step_cache(session: Session, episode_id: str) -> Optional[NextStepCacheOut]:
    row = session.get(EpisodeNextStepCache, episode_id)
    return NextStepCacheOut.model_validate(row) if row else None


def list_next_step_cache(
    session: Session,
    provider_id: Optional[str] = None,
    range_start: Optional[date] = None,
    range_end: Optional[date] = None,
    status: Optional[str] = None,
) -> List[NextStepCacheOut]:
    """Worklist rows, optionally for one provider and windows overlapping a UTC date range"""
    query = session.query(EpisodeNextStepCache)
    if provider_id:
        query = query.filter(EpisodeNextStepCache.provider_id == provider_id)
    if status:
        query = query.filter(EpisodeNextStepCache.status == status)
    if range_start and range_end:
        start, end = _day_bounds(range_start, range_end)
        query = query.filter(
            EpisodeNextStepCache.window_end >= start,
            EpisodeNextStepCache.window_start < end,
        )
    rows = query.order_by(EpisodeNextStepCache.window_start, EpisodeNextStepCache.episode_id).all()
    return [NextStepCacheOut.model_validate(row) for row in rows]


def get_forecast_cache(session: Session, episode_id: str) -> Optional[ForecastCacheOut]:
    row = session.get(EpisodeForecastCache, episode_id)
    return ForecastCacheOut.model_validate(row) if row else None


def list_slot_intents(
    session: Session,
    episode_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    range_start: Optional[date] = None,
    range_end: Optional[date] = None,
    states: Optional[List[IntentState]] = None,
) -> List[SlotIntentOut]:
    """
    Intents of one episode, or of a provider's episodes within a date range

    Defaults to open intents only when listing by provider.
    """
    if not episode_id and not provider_id:
        raise ValueError("episode_id or provider_id is required")

    query = session.query(SlotIntent)
    if episode_id:
        query = query.filter(SlotIntent.episode_id == episode_id)
    else:
        query = query.join(Episode, Episode.id == SlotIntent.episode_id).filter(
            Episode.assigned_provider_id == provider_id
        )
        states = states or [IntentState.OPEN]
    if states:
        query = query.filter(SlotIntent.state.in_([IntentState(s).value for s in states]))
    if range_start and range_end:
        start, end = _day_bounds(range_start, range_end)
        query = query.filter(SlotIntent.window_end >= start, SlotIntent.window_start < end)

    rows = query.order_by(SlotIntent.window_start, SlotIntent.episode_id, SlotIntent.step_seq).all()
    return [SlotIntentOut.model_validate(row) for row in rows]
