"""
CarePath - Capacity Pool Rebalancer
Nightly retagging of unclaimed free slots between consult, work and control pools
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.models import CapacityPoolConfig, Episode, EpisodeTask, SlotPurposeEvent, TimeSlot
from carepath.modules.pathway_resolver import current_stages
from carepath.schemas import EpisodeStatus, RebalanceResult, SlotPurpose, SlotState, StageCode
from carepath.services.recall_tasks import RECALL_TASK_TYPE

logger = logging.getLogger(__name__)

WIP_STAGES = {f"STAGE_{i}" for i in range(1, 7)}
REBALANCE_ORDER = (SlotPurpose.CONSULT, SlotPurpose.WORK, SlotPurpose.CONTROL)


def week_start(moment: datetime) -> date:
    """Monday of the ISO week containing moment"""
    day = moment.date()
    return day - timedelta(days=day.weekday())


def load_pool_config(session: Session, week: date) -> Dict[str, int]:
    """Weekly quotas, falling back to settings when the week has no row"""
    row = session.query(CapacityPoolConfig).filter(CapacityPoolConfig.week_start == week.isoformat()).first()
    if row is None:
        return {
            "consult_min": settings.pool_consult_min,
            "consult_target": settings.pool_consult_target,
            "work_target": settings.pool_work_target,
            "control_target": settings.pool_control_target,
            "flex_target": settings.pool_flex_target,
        }
    return {
        "consult_min": row.consult_min,
        "consult_target": row.consult_target,
        "work_target": row.work_target,
        "control_target": row.control_target,
        "flex_target": row.flex_target,
    }


def compute_demand(session: Session, now: datetime) -> Dict[str, int]:
    """Open WIP episodes, open consult-stage episodes and recalls due soon"""
    open_ids = [eid for (eid,) in session.query(Episode.id).filter(Episode.status == EpisodeStatus.OPEN.value)]
    stages = current_stages(session, open_ids)

    wip = sum(1 for eid in open_ids if stages.get(eid) is None or stages[eid] in WIP_STAGES)
    consult = sum(1 for eid in open_ids if stages.get(eid) == StageCode.STAGE_0.value)
    recall = (
        session.query(func.count(EpisodeTask.id))
        .filter(
            EpisodeTask.task_type == RECALL_TASK_TYPE,
            EpisodeTask.completed_at.is_(None),
            EpisodeTask.due_at <= now + timedelta(days=settings.rebalance_recall_window_days),
        )
        .scalar()
    )
    return {"wip": wip, "consult": consult, "recall": recall or 0}


def compute_goals(config: Dict[str, int], demand: Dict[str, int]) -> Dict[str, int]:
    """Target when there is demand, else the floor; consult never drops below its minimum"""
    return {
        SlotPurpose.CONSULT.value: max(
            config["consult_min"],
            config["consult_target"] if demand["consult"] > 0 else config["consult_min"],
        ),
        SlotPurpose.WORK.value: config["work_target"] if demand["wip"] > 0 else 0,
        SlotPurpose.CONTROL.value: config["control_target"] if demand["recall"] > 0 else 0,
    }


def _free_counts(session: Session, start: datetime, end: datetime) -> Dict[str, int]:
    counts = {p.value: 0 for p in SlotPurpose}
    rows = (
        session.query(TimeSlot.slot_purpose, func.count(TimeSlot.id))
        .filter(
            TimeSlot.state == SlotState.FREE.value,
            TimeSlot.start_time >= start,
            TimeSlot.start_time <= end,
        )
        .group_by(TimeSlot.slot_purpose)
        .all()
    )
    for purpose, count in rows:
        key = purpose or SlotPurpose.FLEXIBLE.value
        counts[key] = counts.get(key, 0) + count
    return counts


def _retag_slot(session: Session, slot_id: str, old_purpose: Optional[str], new_purpose: str,
                reason: str, job_run_id: str, now: datetime) -> bool:
    """Guarded retag: only while the slot is still free and untagged/flexible"""
    result = session.execute(
        update(TimeSlot)
        .where(
            TimeSlot.id == slot_id,
            TimeSlot.state == SlotState.FREE.value,
            or_(TimeSlot.slot_purpose.is_(None), TimeSlot.slot_purpose == SlotPurpose.FLEXIBLE.value),
        )
        .values(slot_purpose=new_purpose, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    session.add(SlotPurposeEvent(
        slot_id=slot_id,
        old_purpose=old_purpose,
        new_purpose=new_purpose,
        reason=reason,
        job_run_id=job_run_id,
        created_at=now,
    ))
    session.commit()
    return True


def run_rebalance(session: Session, job_run_id: Optional[str] = None, now: Optional[datetime] = None) -> RebalanceResult:
    """
    Retag flexible/untagged free slots to close pool deficits

    Scope is (now + freeze, now + horizon]. A pool is only topped up when
    its deficit reaches the hysteresis threshold. Each slot is committed on
    its own; per-slot failures are collected and do not stop the run.
    """
    now = now or datetime.now(timezone.utc)
    job_run_id = job_run_id or f"rebalance-{int(now.timestamp() * 1000)}"
    freeze_end = now + timedelta(hours=settings.rebalance_freeze_hours)
    horizon_end = now + timedelta(days=settings.rebalance_horizon_days)
    week = week_start(now)

    config = load_pool_config(session, week)
    demand = compute_demand(session, now)
    goals = compute_goals(config, demand)
    counts = _free_counts(session, freeze_end, horizon_end)

    candidates = (
        session.query(TimeSlot.id, TimeSlot.slot_purpose)
        .filter(
            TimeSlot.state == SlotState.FREE.value,
            TimeSlot.start_time >= freeze_end,
            TimeSlot.start_time <= horizon_end,
            or_(TimeSlot.slot_purpose.is_(None), TimeSlot.slot_purpose == SlotPurpose.FLEXIBLE.value),
        )
        .order_by(TimeSlot.start_time, TimeSlot.id)
        .all()
    )
    session.commit()

    logger.info(
        f"Rebalance {job_run_id}: week {week.isoformat()} demand={demand} goals={goals} "
        f"free={counts} flexible_candidates={len(candidates)}"
    )

    errors: List[str] = []
    retagged = 0
    cursor = 0
    for purpose in REBALANCE_ORDER:
        pool = purpose.value
        deficit = max(0, goals[pool] - counts.get(pool, 0))
        if deficit < settings.rebalance_hysteresis_slots:
            continue

        done = 0
        while done < deficit and cursor < len(candidates):
            slot_id, old_purpose = candidates[cursor]
            cursor += 1
            try:
                if _retag_slot(session, slot_id, old_purpose, pool, f"{pool} deficit {deficit}", job_run_id, now):
                    done += 1
                else:
                    logger.info(f"Slot {slot_id} no longer eligible for retagging, skipped")
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to retag slot {slot_id} to {pool}: {e}", exc_info=True)
                errors.append(f"{pool} {slot_id}: {e}")
        retagged += done

    final_counts = _free_counts(session, freeze_end, horizon_end)
    session.commit()

    logger.info(f"✓ Rebalance {job_run_id} complete: {retagged} slots retagged, {len(errors)} errors")
    return RebalanceResult(
        job_run_id=job_run_id,
        week_start=week.isoformat(),
        demand=demand,
        goals=goals,
        final_counts=final_counts,
        retagged=retagged,
        errors=errors,
    )
