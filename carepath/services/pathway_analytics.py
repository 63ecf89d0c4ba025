"""
CarePath - Pathway Analytics Calibration
Nightly visit-count and cadence statistics per care pathway from finished episodes
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.database import upsert_insert
from carepath.models import Appointment, CarePathway, CarePathwayAnalytics, Episode
from carepath.modules.pathway_resolver import current_stages
from carepath.schemas import AppointmentStatus, CalibrationResult, EpisodeStatus, StageCode

logger = logging.getLogger(__name__)


def _completed_visits(session: Session, episode_ids: List[str]) -> Dict[str, List[datetime]]:
    """Completed appointment start times per episode, ascending"""
    visits: Dict[str, List[datetime]] = {eid: [] for eid in episode_ids}
    if not episode_ids:
        return visits
    rows = (
        session.query(Appointment.episode_id, Appointment.start_time, Appointment.created_at)
        .filter(
            Appointment.episode_id.in_(episode_ids),
            Appointment.appointment_status == AppointmentStatus.COMPLETED.value,
        )
        .order_by(Appointment.episode_id, Appointment.start_time)
        .all()
    )
    for episode_id, start_time, created_at in rows:
        visits[episode_id].append(start_time or created_at)
    for times in visits.values():
        times.sort()
    return visits


def _finished_episode_ids(session: Session, care_pathway_id: str) -> List[str]:
    """Closed episodes of a pathway whose latest stage is delivery"""
    closed = [
        eid for (eid,) in session.query(Episode.id).filter(
            Episode.care_pathway_id == care_pathway_id,
            Episode.status == EpisodeStatus.CLOSED.value,
        )
    ]
    stages = current_stages(session, closed)
    return [eid for eid in closed if stages.get(eid) == StageCode.STAGE_6.value]


def compute_pathway_statistics(visits: Dict[str, List[datetime]]) -> Dict[str, Optional[float]]:
    """
    Median/p80 visit counts and cadence (days between consecutive visits)

    Episodes without completed visits are ignored. Cadence falls back to
    the configured defaults when no episode has two visits.
    """
    counts = [len(times) for times in visits.values() if times]
    gaps = [
        (later - earlier).total_seconds() / 86400
        for times in visits.values()
        for earlier, later in zip(times, times[1:])
    ]

    stats: Dict[str, Optional[float]] = {
        "n_episodes": len(counts),
        "median_visits": None,
        "p80_visits": None,
        "median_cadence_days": settings.analytics_default_cadence_days,
        "p80_cadence_days": settings.analytics_default_p80_cadence_days,
    }
    if counts:
        stats["median_visits"] = float(np.median(counts))
        stats["p80_visits"] = float(np.percentile(counts, 80))
    if gaps:
        stats["median_cadence_days"] = round(float(np.median(gaps)), 2)
        stats["p80_cadence_days"] = round(float(np.percentile(gaps, 80)), 2)
    return stats


def _upsert_analytics(session: Session, care_pathway_id: str, stats: Dict, insufficient: bool, now: datetime) -> None:
    values = {
        "care_pathway_id": care_pathway_id,
        "n_episodes": int(stats["n_episodes"]),
        "median_visits": None if insufficient else stats["median_visits"],
        "p80_visits": None if insufficient else stats["p80_visits"],
        "median_cadence_days": settings.analytics_default_cadence_days if insufficient else stats["median_cadence_days"],
        "p80_cadence_days": settings.analytics_default_p80_cadence_days if insufficient else stats["p80_cadence_days"],
        "is_insufficient_sample": insufficient,
        "recorded_at": now,
    }
    stmt = upsert_insert(session, CarePathwayAnalytics.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["care_pathway_id"],
        set_={k: stmt.excluded[k] for k in values if k != "care_pathway_id"},
    )
    session.execute(stmt)


def calibrate_pathway_analytics(session: Session, now: Optional[datetime] = None) -> CalibrationResult:
    """
    Recompute care_pathway_analytics for every pathway

    Pathways with fewer than analytics_min_episodes finished episodes are
    stored as insufficient samples (visit stats NULL, default cadence).
    Each pathway is committed on its own.
    """
    now = now or datetime.now(timezone.utc)
    pathway_ids = [pid for (pid,) in session.query(CarePathway.id).order_by(CarePathway.id)]
    result = CalibrationResult(pathways=len(pathway_ids))

    for pathway_id in pathway_ids:
        try:
            finished = _finished_episode_ids(session, pathway_id)
            stats = compute_pathway_statistics(_completed_visits(session, finished))
            insufficient = stats["n_episodes"] < settings.analytics_min_episodes
            _upsert_analytics(session, pathway_id, stats, insufficient, now)
            session.commit()
            if insufficient:
                result.insufficient += 1
            else:
                result.calibrated += 1
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to calibrate pathway {pathway_id}: {e}", exc_info=True)
            result.errors.append(f"pathway {pathway_id}: {e}")

    logger.info(
        f"✓ Calibration: {result.calibrated} calibrated, {result.insufficient} insufficient, "
        f"{len(result.errors)} errors"
    )
    return result
