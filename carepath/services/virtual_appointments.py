"""
CarePath - Virtual Appointment Feed
Read-only worklist items derived from the next-step cache for calendar and Gantt views
"""

import hashlib
import logging
import time
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import List

from dateutil import tz
from sqlalchemy.orm import Session, aliased

from carepath.config import settings
from carepath.models import Episode, EpisodeNextStepCache, Patient, Provider
from carepath.modules.step_window import window_dates
from carepath.schemas import NextStepCacheStatus, VirtualAppointment, VirtualFeedParams, VirtualFeedResult

logger = logging.getLogger(__name__)

FEED_STATUSES = (NextStepCacheStatus.READY.value, NextStepCacheStatus.BLOCKED.value)


def compute_virtual_key(episode_id: str, step_code: str, start_date: str, end_date: str, pool: str) -> str:
    """Stable content key so clients can diff successive feeds"""
    raw = f"{episode_id}|{step_code}|{start_date}|{end_date}|{pool}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def fetch_virtual_appointments(session: Session, params: VirtualFeedParams) -> VirtualFeedResult:
    """
    Cached next steps whose window overlaps [range_start, range_end]

    Window dates are clinic-local and inclusive. Items sort by window,
    patient name, step code and episode id, and are capped at
    virtual_feed_item_cap.
    """
    started = time.monotonic()
    clinic_tz = tz.gettz(settings.clinic_timezone)

    # UTC prefilter widened by a day either side; exact overlap is decided on local dates
    lower = datetime.combine(params.range_start, dt_time.min, tzinfo=timezone.utc) - timedelta(days=1)
    upper = datetime.combine(params.range_end, dt_time.max, tzinfo=timezone.utc) + timedelta(days=1)

    statuses = (NextStepCacheStatus.READY.value,) if params.ready_only else FEED_STATUSES
    owner = aliased(Provider)
    query = (
        session.query(EpisodeNextStepCache, Episode.patient_id, Patient.name, owner.name)
        .join(Episode, Episode.id == EpisodeNextStepCache.episode_id)
        .join(Patient, Patient.id == Episode.patient_id)
        .outerjoin(owner, owner.id == EpisodeNextStepCache.provider_id)
        .filter(
            EpisodeNextStepCache.status.in_(statuses),
            EpisodeNextStepCache.step_code.isnot(None),
            EpisodeNextStepCache.window_start.isnot(None),
            EpisodeNextStepCache.window_end.isnot(None),
            EpisodeNextStepCache.window_end >= lower,
            EpisodeNextStepCache.window_start <= upper,
        )
    )
    if params.provider_id:
        query = query.filter(EpisodeNextStepCache.provider_id == params.provider_id)
    if params.pool:
        query = query.filter(EpisodeNextStepCache.pool == params.pool.value)
    rows = query.all()
    db_ms = int((time.monotonic() - started) * 1000)

    candidates = []
    for cache, patient_id, patient_name, provider_name in rows:
        start_date, end_date = window_dates(cache.window_start, cache.window_end, clinic_tz)
        if end_date < start_date:
            continue
        if end_date < params.range_start or start_date > params.range_end:
            continue
        candidates.append((cache, patient_id, patient_name, provider_name, start_date, end_date))

    candidates.sort(key=lambda c: (
        c[0].window_start, c[0].window_end, c[2] or "", c[0].step_code, c[0].episode_id
    ))

    items: List[VirtualAppointment] = []
    for cache, patient_id, patient_name, provider_name, start_date, end_date in candidates:
        if len(items) >= settings.virtual_feed_item_cap:
            break
        pool = cache.pool or "work"
        items.append(VirtualAppointment(
            virtual_key=compute_virtual_key(
                cache.episode_id, cache.step_code, start_date.isoformat(), end_date.isoformat(), pool
            ),
            episode_id=cache.episode_id,
            patient_id=patient_id,
            patient_name=patient_name,
            provider_id=cache.provider_id,
            provider_name=provider_name,
            step_code=cache.step_code,
            step_label=cache.step_label or cache.step_code,
            pool=pool,
            duration_minutes=cache.duration_minutes or settings.default_step_duration_minutes,
            window_start_date=start_date,
            window_end_date=end_date,
            status=cache.status,
            overdue_days=cache.overdue_days,
            blocked_code=cache.blocked_code,
            blocked_reason=cache.blocked_reason,
        ))

    meta = {
        "items_before_filter": len(rows),
        "items_after_filter": len(items),
        "db_ms": db_ms,
        "compute_ms": int((time.monotonic() - started) * 1000),
        "limit_applied": settings.virtual_feed_item_cap if len(candidates) > len(items) else None,
    }
    logger.debug(f"Virtual feed {params.range_start}..{params.range_end}: {meta}")
    return VirtualFeedResult(items=items, meta=meta)
