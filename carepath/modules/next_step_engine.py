"""
CarePath - Next-Step Engine
Deterministic next required step (and full look-ahead) for care episodes
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.models import Appointment, Episode, EpisodeBlock, EpisodeStep
from carepath.modules.pathway_resolver import (
    current_stages, default_offset, first_consult_step, resolve_pathways
)
from carepath.modules.step_window import compute_step_window, window_dates
from carepath.schemas import (
    AppointmentStatus, BlockedCode, BlockedResult, NextStep, NextStepResult,
    PathwayStep, StageCode, StepStatus
)

logger = logging.getLogger(__name__)

RESOLVED_STEP_STATUSES = (StepStatus.COMPLETED.value, StepStatus.SKIPPED.value)
REMAINING_STEP_STATUSES = (StepStatus.PENDING.value, StepStatus.SCHEDULED.value)

PendingStepsResult = Union[List[NextStep], BlockedResult]


# =============================================================================
# Episode Context (pre-fetched inputs)
# =============================================================================

@dataclass
class EpisodeContext:
    """Everything the engine reads for one episode"""
    episode: Episode
    pathway_steps: List[PathwayStep] = field(default_factory=list)
    pathway_hash: Optional[str] = None
    episode_steps: List[EpisodeStep] = field(default_factory=list)
    block_keys: List[str] = field(default_factory=list)
    completed_count: int = 0
    last_completed_at: Optional[datetime] = None
    current_stage: Optional[str] = None


def fetch_episode_contexts(
    session: Session,
    episode_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> Dict[str, EpisodeContext]:
    """
    Load engine inputs for many episodes with a fixed number of queries

    Unknown episode ids are absent from the result. `now` only decides
    which blocks are still active.
    """
    now = now or datetime.now(timezone.utc)
    ids = list(dict.fromkeys(episode_ids))
    if not ids:
        return {}

    episodes = session.query(Episode).filter(Episode.id.in_(ids)).all()
    contexts = {e.id: EpisodeContext(episode=e) for e in episodes}
    if not contexts:
        return {}
    found = list(contexts)

    for episode_id, (steps, pathway_hash) in resolve_pathways(session, episodes).items():
        contexts[episode_id].pathway_steps = steps
        contexts[episode_id].pathway_hash = pathway_hash

    step_rows = (
        session.query(EpisodeStep)
        .filter(EpisodeStep.episode_id.in_(found))
        .order_by(EpisodeStep.episode_id, EpisodeStep.seq)
        .all()
    )
    for row in step_rows:
        contexts[row.episode_id].episode_steps.append(row)

    block_rows = (
        session.query(EpisodeBlock.episode_id, EpisodeBlock.key)
        .filter(
            EpisodeBlock.episode_id.in_(found),
            EpisodeBlock.active.is_(True),
            EpisodeBlock.expires_at > now,
        )
        .order_by(EpisodeBlock.episode_id, EpisodeBlock.key)
        .all()
    )
    for episode_id, key in block_rows:
        contexts[episode_id].block_keys.append(key)

    stats = (
        session.query(
            Appointment.episode_id,
            func.count(Appointment.id),
            func.max(func.coalesce(Appointment.start_time, Appointment.created_at)),
        )
        .filter(
            Appointment.episode_id.in_(found),
            Appointment.appointment_status == AppointmentStatus.COMPLETED.value,
        )
        .group_by(Appointment.episode_id)
        .all()
    )
    for episode_id, count, last_completed_at in stats:
        contexts[episode_id].completed_count = count
        contexts[episode_id].last_completed_at = _as_utc(last_completed_at)

    for episode_id, stage in current_stages(session, found).items():
        contexts[episode_id].current_stage = stage

    return contexts


def _as_utc(value) -> Optional[datetime]:
    # Aggregates can come back untyped on SQLite
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Pure Resolution
# =============================================================================

def _blocked(ctx: Optional[EpisodeContext]) -> Optional[BlockedResult]:
    if ctx is None:
        return BlockedResult(
            code=BlockedCode.EPISODE_NOT_FOUND,
            reason="Episode not found",
            required_prereq_keys=["episode"],
        )
    if ctx.block_keys:
        return BlockedResult(
            code=BlockedCode.EPISODE_BLOCKED,
            reason=f"Episode blocked: {', '.join(ctx.block_keys)}",
            required_prereq_keys=list(ctx.block_keys),
            block_keys=list(ctx.block_keys),
        )
    if not ctx.episode_steps and not ctx.pathway_steps:
        return BlockedResult(
            code=BlockedCode.NO_CARE_PATHWAY,
            reason="No care pathway assigned",
            required_prereq_keys=["care_pathway"],
        )
    return None


def resolve_anchor(ctx: EpisodeContext) -> Tuple[datetime, str]:
    """Latest resolved step completion, else latest completed visit, else opened_at"""
    resolved = [
        s.completed_at for s in ctx.episode_steps
        if s.status in RESOLVED_STEP_STATUSES and s.completed_at is not None
    ]
    if resolved:
        return max(resolved), "episode_step"
    if ctx.last_completed_at is not None:
        return ctx.last_completed_at, "completed_appointment"
    return ctx.episode.opened_at, "opened_at"


def _precommit_for(ctx: EpisodeContext, step_code: str) -> bool:
    for step in ctx.pathway_steps:
        if step.step_code == step_code:
            return step.requires_precommit
    return False


def _build(
    *,
    step_code: str,
    label: Optional[str],
    pool,
    duration_minutes: int,
    offset: int,
    anchor: datetime,
    reason: str,
    seq: Optional[int],
    requires_precommit: bool,
    inputs_used: dict,
    pathway_complete: bool = False,
) -> NextStep:
    window = compute_step_window(anchor, offset)
    earliest, latest = window_dates(window.window_start, window.window_end)
    return NextStep(
        step_code=step_code,
        label=label,
        pool=pool,
        duration_minutes=duration_minutes,
        window_start=window.window_start,
        window_end=window.window_end,
        earliest_date=earliest,
        latest_date=latest,
        reason=reason,
        anchor=anchor,
        seq=seq,
        requires_precommit=requires_precommit,
        pathway_complete=pathway_complete,
        inputs_used=inputs_used,
    )


def _from_episode_step(ctx, row: EpisodeStep, anchor, reason, inputs_used, pathway_complete=False) -> NextStep:
    return _build(
        step_code=row.step_code,
        label=row.label,
        pool=row.pool,
        duration_minutes=row.duration_minutes,
        offset=row.default_days_offset,
        anchor=anchor,
        reason=reason,
        seq=row.seq,
        requires_precommit=_precommit_for(ctx, row.step_code),
        inputs_used=inputs_used,
        pathway_complete=pathway_complete,
    )


def _from_pathway_step(step: PathwayStep, index: int, offset: int, anchor, reason, inputs_used,
                       pathway_complete=False) -> NextStep:
    return _build(
        step_code=step.step_code,
        label=step.label,
        pool=step.pool,
        duration_minutes=step.duration_minutes,
        offset=offset,
        anchor=anchor,
        reason=reason,
        seq=index,
        requires_precommit=step.requires_precommit,
        inputs_used=inputs_used,
        pathway_complete=pathway_complete,
    )


def _legacy_start(ctx: EpisodeContext) -> Tuple[int, Optional[int]]:
    """Start index for counting mode and, in STAGE_0, the consult offset override"""
    if ctx.current_stage == StageCode.STAGE_0.value:
        consult = first_consult_step(ctx.pathway_steps)
        if consult is not None:
            index, step = consult
            offset = step.default_days_offset
            return index, offset if offset is not None else settings.default_consult_offset_days
    return ctx.completed_count, None


def resolve_next_step(ctx: Optional[EpisodeContext]) -> NextStepResult:
    """Next required step from pre-fetched inputs. Pure."""
    blocked = _blocked(ctx)
    if blocked is not None:
        return blocked

    anchor, anchor_source = resolve_anchor(ctx)
    inputs_used = {
        "anchor_source": anchor_source,
        "completed_count": ctx.completed_count,
        "last_completed_at": ctx.last_completed_at.isoformat() if ctx.last_completed_at else None,
        "stage": ctx.current_stage,
    }

    if ctx.episode_steps:
        inputs_used["source"] = "episode_steps"
        remaining = [s for s in ctx.episode_steps if s.status in REMAINING_STEP_STATUSES]
        if not remaining:
            return _from_episode_step(
                ctx, ctx.episode_steps[-1], anchor, "Pathway complete", inputs_used, pathway_complete=True
            )
        row = remaining[0]
        inputs_used["step_seq"] = row.seq
        return _from_episode_step(ctx, row, anchor, f"Pathway step {row.step_code}", inputs_used)

    inputs_used["source"] = "legacy_count"
    steps = ctx.pathway_steps
    start, consult_offset = _legacy_start(ctx)
    if consult_offset is not None:
        step = steps[start]
        inputs_used["step_index"] = start
        return _from_pathway_step(step, start, consult_offset, anchor, "First consultation", inputs_used)

    index = min(start, len(steps) - 1)
    step = steps[index]
    inputs_used["step_index"] = start
    complete = start >= len(steps)
    reason = "Pathway complete" if complete else f"Pathway step {step.step_code}"
    return _from_pathway_step(step, index, default_offset(step), anchor, reason, inputs_used,
                              pathway_complete=complete)


def resolve_pending_steps(ctx: Optional[EpisodeContext]) -> PendingStepsResult:
    """
    Every remaining step with chained windows. Pure.

    Step i+1 is anchored at step i's window end, so windows never overlap
    backwards. A completed pathway yields an empty list.
    """
    blocked = _blocked(ctx)
    if blocked is not None:
        return blocked

    anchor, anchor_source = resolve_anchor(ctx)
    results: List[NextStep] = []

    if ctx.episode_steps:
        for row in ctx.episode_steps:
            if row.status not in REMAINING_STEP_STATUSES:
                continue
            item = _from_episode_step(
                ctx, row, anchor, f"Pathway step {row.step_code}",
                {"source": "episode_steps", "anchor_source": anchor_source, "step_seq": row.seq},
            )
            results.append(item)
            anchor, anchor_source = item.window_end, "previous_window_end"
        return results

    steps = ctx.pathway_steps
    start, consult_offset = _legacy_start(ctx)
    for index in range(start, len(steps)):
        step = steps[index]
        offset = consult_offset if (index == start and consult_offset is not None) else default_offset(step)
        item = _from_pathway_step(
            step, index, offset, anchor, f"Pathway step {step.step_code}",
            {"source": "legacy_count", "anchor_source": anchor_source, "step_index": index},
        )
        results.append(item)
        anchor, anchor_source = item.window_end, "previous_window_end"
    return results


# =============================================================================
# Public API
# =============================================================================

def next_required_step(session: Session, episode_id: str, now: Optional[datetime] = None) -> NextStepResult:
    """
    Compute the next required step for an episode

    Returns:
        NextStep when ready, BlockedResult otherwise (never raises for
        blocked episodes)
    """
    contexts = fetch_episode_contexts(session, [episode_id], now)
    return resolve_next_step(contexts.get(episode_id))


def next_required_steps_batch(
    session: Session,
    episode_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> Dict[str, NextStepResult]:
    contexts = fetch_episode_contexts(session, episode_ids, now)
    return {eid: resolve_next_step(contexts.get(eid)) for eid in dict.fromkeys(episode_ids)}


def all_pending_steps(session: Session, episode_id: str, now: Optional[datetime] = None) -> PendingStepsResult:
    contexts = fetch_episode_contexts(session, [episode_id], now)
    return resolve_pending_steps(contexts.get(episode_id))


def all_pending_steps_batch(
    session: Session,
    episode_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> Dict[str, PendingStepsResult]:
    """Look-ahead for many episodes sharing one pre-fetch"""
    contexts = fetch_episode_contexts(session, episode_ids, now)
    results = {eid: resolve_pending_steps(contexts.get(eid)) for eid in dict.fromkeys(episode_ids)}
    logger.debug(f"Expanded pending steps for {len(results)} episodes")
    return results
