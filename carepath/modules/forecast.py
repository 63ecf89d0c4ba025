"""
CarePath - Episode Forecast
Remaining-visit estimates and completion window for an episode
"""

import hashlib
import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.models import Appointment, CarePathwayAnalytics, Episode, EpisodePathway, StageEvent
from carepath.modules.next_step_engine import fetch_episode_contexts, resolve_next_step
from carepath.schemas import (
    AppointmentStatus, BlockedResult, EpisodeForecast, PoolType
)

logger = logging.getLogger(__name__)

FALLBACK_WORK_STEPS = 4
NO_PATHWAY_P50 = 4
NO_PATHWAY_P80 = 6
P50_WORK_FACTOR = 0.6
P80_WORK_FACTOR = 0.9

CANCELLED_STATUSES = (
    AppointmentStatus.CANCELLED_BY_DOCTOR.value,
    AppointmentStatus.CANCELLED_BY_PATIENT.value,
)


def primary_pathway_id(session: Session, episode: Episode) -> Optional[str]:
    """First attached pathway by ordinal, else the legacy pathway"""
    first = (
        session.query(EpisodePathway.care_pathway_id)
        .filter(EpisodePathway.episode_id == episode.id)
        .order_by(EpisodePathway.ordinal)
        .first()
    )
    return first[0] if first else episode.care_pathway_id


def estimate_forecast(
    episode_id: str,
    next_step,
    pathway_steps: list,
    analytics: Optional[CarePathwayAnalytics],
) -> EpisodeForecast:
    """
    Pure forecast from a next-step answer, the pathway and optional analytics

    Calibrated analytics win; otherwise the work-step count drives a
    heuristic and the cadence falls back to the default.
    """
    if isinstance(next_step, BlockedResult):
        return EpisodeForecast(
            episode_id=episode_id,
            status="blocked",
            assumptions=[f"BLOCKED_{next_step.code.value}"],
        )

    if next_step.pathway_complete:
        return EpisodeForecast(
            episode_id=episode_id,
            status="complete",
            next_step=next_step.step_code,
            remaining_visits_p50=0,
            remaining_visits_p80=0,
            assumptions=["PATHWAY_COMPLETE"],
        )

    cadence = settings.analytics_default_cadence_days
    if analytics is not None and analytics.median_visits is not None and analytics.p80_visits is not None:
        p50 = max(1, math.ceil(analytics.median_visits))
        p80 = max(p50, math.ceil(analytics.p80_visits))
        if analytics.median_cadence_days is not None:
            cadence = float(analytics.median_cadence_days)
        assumptions = ["calibrated-pathway", "cadence-from-analytics"]
    elif pathway_steps:
        work_steps = sum(1 for s in pathway_steps if s.pool == PoolType.WORK) or FALLBACK_WORK_STEPS
        p50 = max(1, math.ceil(work_steps * P50_WORK_FACTOR))
        p80 = max(p50, math.ceil(work_steps * P80_WORK_FACTOR))
        assumptions = ["NO_ANALYTICS_FALLBACK", "CADENCE_DEFAULTED"]
    else:
        p50, p80 = NO_PATHWAY_P50, NO_PATHWAY_P80
        assumptions = ["NO_ANALYTICS_FALLBACK", "CADENCE_DEFAULTED"]

    return EpisodeForecast(
        episode_id=episode_id,
        status="ready",
        next_step=next_step.step_code,
        remaining_visits_p50=p50,
        remaining_visits_p80=p80,
        completion_window_start=next_step.window_start + timedelta(days=p50 * cadence),
        completion_end_p50=next_step.window_start + timedelta(days=p50 * cadence),
        completion_end_p80=next_step.window_end + timedelta(days=p80 * cadence),
        assumptions=assumptions,
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def compute_inputs_hash(
    session: Session,
    episode_id: str,
    pathway_hash: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    sha256 over a deterministic payload of everything the forecast reads

    Never includes computed_at; `now` only splits past from future visits.
    """
    now = now or datetime.now(timezone.utc)
    episode = session.get(Episode, episode_id)

    stage = (
        session.query(StageEvent)
        .filter(StageEvent.episode_id == episode_id)
        .order_by(StageEvent.at.desc(), StageEvent.id.desc())
        .first()
    )

    active = or_(Appointment.appointment_status.is_(None), Appointment.appointment_status.notin_(CANCELLED_STATUSES))
    completed_count, last_completed_at = (
        session.query(func.count(Appointment.id), func.max(func.coalesce(Appointment.start_time, Appointment.created_at)))
        .filter(
            Appointment.episode_id == episode_id,
            Appointment.appointment_status == AppointmentStatus.COMPLETED.value,
        )
        .one()
    )
    future_count, next_booked_at = (
        session.query(func.count(Appointment.id), func.min(Appointment.start_time))
        .filter(Appointment.episode_id == episode_id, Appointment.start_time > now, active)
        .one()
    )

    analytics = None
    pathway_id = primary_pathway_id(session, episode) if episode else None
    if pathway_id:
        analytics = session.get(CarePathwayAnalytics, pathway_id)

    payload = {
        "episode_id": episode_id,
        "care_pathway_id": episode.care_pathway_id if episode else None,
        "treatment_type_id": episode.treatment_type_id if episode else None,
        "pathway_hash": pathway_hash,
        "stage": {
            "stage_code": stage.stage_code,
            "event_id": stage.id,
            "at": _iso(stage.at),
        } if stage else None,
        "appointments": {
            "completed_count": completed_count,
            "future_active_count": future_count,
            "last_completed_at": _iso(last_completed_at),
            "next_booked_at": _iso(next_booked_at),
        },
        "analytics": {
            "median_visits": analytics.median_visits,
            "p80_visits": analytics.p80_visits,
            "median_cadence_days": analytics.median_cadence_days,
            "recorded_at": _iso(analytics.recorded_at),
        } if analytics else None,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def compute_episode_forecast(session: Session, episode_id: str, now: Optional[datetime] = None) -> EpisodeForecast:
    """Forecast for one episode, including its inputs hash"""
    contexts = fetch_episode_contexts(session, [episode_id], now)
    ctx = contexts.get(episode_id)
    next_step = resolve_next_step(ctx)

    analytics = None
    steps: list = []
    pathway_hash = None
    if ctx is not None:
        steps = ctx.pathway_steps
        pathway_hash = ctx.pathway_hash
        pathway_id = primary_pathway_id(session, ctx.episode)
        if pathway_id:
            analytics = session.get(CarePathwayAnalytics, pathway_id)

    forecast = estimate_forecast(episode_id, next_step, steps, analytics)
    if ctx is not None:
        forecast.inputs_hash = compute_inputs_hash(session, episode_id, pathway_hash, now)
    return forecast
