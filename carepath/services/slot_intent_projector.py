"""
CarePath - Slot-Intent Projector
Projects an episode's remaining pathway steps as persisted demand intents
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.database import upsert_insert
from carepath.models import Appointment, Episode, SlotIntent, new_id
from carepath.modules.pathway_resolver import default_offset, load_pathway_steps
from carepath.modules.step_window import compute_step_window
from carepath.schemas import AppointmentStatus, IntentState, ProjectionResult
from carepath.services.locks import episode_lock

logger = logging.getLogger(__name__)

REPROJECTABLE_STATES = (IntentState.OPEN.value, IntentState.EXPIRED.value)


def project_remaining_steps(session: Session, episode_id: str, now: Optional[datetime] = None) -> ProjectionResult:
    """
    Upsert one intent per remaining, uncovered pathway step

    Runs under the per-episode lock and inside the caller's transaction
    (the caller commits). Completed step appointments anchor the chain;
    active ones cover their step. Open intents whose pathway hash drifted
    or whose step became covered are expired. Converted and cancelled
    intents are never touched. Re-running with unchanged inputs rewrites
    identical rows.
    """
    now = now or datetime.now(timezone.utc)
    with episode_lock(session, episode_id):
        episode = session.get(Episode, episode_id)
        if episode is None:
            return ProjectionResult(episode_id=episode_id, reason="NO_EPISODE")

        steps, pathway_hash = load_pathway_steps(session, episode)
        if not steps:
            return ProjectionResult(episode_id=episode_id, reason="NO_PATHWAY")

        appointments = (
            session.query(Appointment.step_seq, Appointment.start_time, Appointment.appointment_status)
            .filter(
                Appointment.episode_id == episode_id,
                Appointment.step_code.isnot(None),
                Appointment.step_seq.isnot(None),
                or_(
                    Appointment.appointment_status.is_(None),
                    Appointment.appointment_status == AppointmentStatus.COMPLETED.value,
                ),
            )
            .order_by(Appointment.step_seq)
            .all()
        )

        completed_by_seq: Dict[int, datetime] = {}
        pending_seqs: Set[int] = set()
        for step_seq, start_time, status in appointments:
            if status == AppointmentStatus.COMPLETED.value:
                completed_by_seq[step_seq] = start_time or episode.opened_at
            else:
                pending_seqs.add(step_seq)
        covered = set(completed_by_seq) | pending_seqs

        expire = (
            update(SlotIntent)
            .where(
                SlotIntent.episode_id == episode_id,
                SlotIntent.state == IntentState.OPEN.value,
                or_(
                    (SlotIntent.source_pathway_hash.isnot(None)) & (SlotIntent.source_pathway_hash != pathway_hash),
                    SlotIntent.step_seq.in_(sorted(covered)),
                ),
            )
            .values(state=IntentState.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        expired = session.execute(expire).rowcount or 0

        # Last hard anchor: completed appointment with the highest step seq
        anchor, anchor_seq = episode.opened_at, -1
        for seq, start_time in completed_by_seq.items():
            if seq > anchor_seq:
                anchor, anchor_seq = start_time, seq

        rows: List[dict] = []
        for i, step in enumerate(steps):
            if i in covered:
                continue
            cumulative = sum(
                default_offset(steps[j]) for j in range(anchor_seq + 1, i) if j not in completed_by_seq
            )
            window = compute_step_window(anchor + timedelta(days=cumulative), default_offset(step))
            rows.append({
                "id": new_id(),
                "episode_id": episode_id,
                "step_code": step.step_code,
                "step_seq": i,
                "pool": step.pool.value,
                "duration_minutes": step.duration_minutes,
                "window_start": window.window_start,
                "window_end": window.window_end,
                "state": IntentState.OPEN.value,
                "source_pathway_hash": pathway_hash,
                "expires_at": window.window_end + timedelta(days=settings.intent_expiry_grace_days),
                "created_at": now,
                "updated_at": now,
            })

        if rows:
            stmt = upsert_insert(session, SlotIntent.__table__).values(rows)
            table = SlotIntent.__table__
            stmt = stmt.on_conflict_do_update(
                index_elements=["episode_id", "step_code", "step_seq"],
                set_={
                    "pool": stmt.excluded.pool,
                    "duration_minutes": stmt.excluded.duration_minutes,
                    "window_start": stmt.excluded.window_start,
                    "window_end": stmt.excluded.window_end,
                    "source_pathway_hash": stmt.excluded.source_pathway_hash,
                    "expires_at": stmt.excluded.expires_at,
                    "state": IntentState.OPEN.value,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=table.c.state.in_(REPROJECTABLE_STATES),
            )
            session.execute(stmt)

    logger.info(
        f"Projected {len(rows)} intents for episode {episode_id} "
        f"(expired {expired}, pathway {pathway_hash[:12] if pathway_hash else '-'})"
    )
    return ProjectionResult(episode_id=episode_id, projected=len(rows), expired=expired, pathway_hash=pathway_hash)
