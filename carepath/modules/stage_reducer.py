"""
CarePath - Stage Reducer
Evaluates the published stage transition rule set against an episode fact snapshot
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.errors import RuleSetNotFoundError
from carepath.models import (
    Appointment, Episode, EpisodeStep, PatientDocument, PatientMilestone, StageRuleSet
)
from carepath.modules.pathway_resolver import current_stage
from carepath.schemas import (
    AppointmentStatus, EpisodeSnapshot, EpisodeStatus, MilestoneCode, PoolType,
    ReducerResult, RuleSetStatus, StageCode, StageRule, StepStatus
)
from carepath.services.cache_service import get_cache_service

logger = logging.getLogger(__name__)


# =============================================================================
# Condition Registry
# =============================================================================

ConditionFn = Callable[[EpisodeSnapshot], bool]
CONDITIONS: Dict[str, ConditionFn] = {}


def condition(name: str):
    """Register a named rule condition"""
    def decorator(fn: ConditionFn) -> ConditionFn:
        CONDITIONS[name] = fn
        return fn
    return decorator


@condition("has_completed_appointment_consult")
def _has_completed_consult(s: EpisodeSnapshot) -> bool:
    return s.has_completed_consult


@condition("has_treatment_plan")
def _has_treatment_plan(s: EpisodeSnapshot) -> bool:
    return s.has_treatment_plan


@condition("has_offer")
def _has_offer(s: EpisodeSnapshot) -> bool:
    return s.has_offer


@condition("offer_accepted")
def _offer_accepted(s: EpisodeSnapshot) -> bool:
    return s.offer_accepted


@condition("has_surgical_appointment_completed")
def _has_surgical_appointment_completed(s: EpisodeSnapshot) -> bool:
    return s.has_surgical_appointment_completed


@condition("has_prosthetic_appointment_started")
def _has_prosthetic_appointment_started(s: EpisodeSnapshot) -> bool:
    return s.has_prosthetic_appointment_started


@condition("no_surgical_phase")
def _no_surgical_phase(s: EpisodeSnapshot) -> bool:
    return s.no_surgical_phase


@condition("has_delivery_completed")
def _has_delivery_completed(s: EpisodeSnapshot) -> bool:
    return s.has_delivery_completed


@condition("delivery_older_than_30_days")
def _delivery_older_than_30_days(s: EpisodeSnapshot) -> bool:
    return s.delivery_older_than_30_days


def evaluate_condition(name: str, snapshot: EpisodeSnapshot) -> bool:
    """Unknown condition names evaluate false"""
    fn = CONDITIONS.get(name)
    if fn is None:
        logger.warning(f"Unknown stage rule condition: {name}")
        return False
    return bool(fn(snapshot))


# =============================================================================
# Snapshot
# =============================================================================

def _is_delivery_step(step_code: Optional[str]) -> bool:
    if not step_code:
        return False
    return any(step_code.endswith(suffix) for suffix in settings.delivery_step_suffixes)


def build_snapshot(session: Session, episode_id: str, now: Optional[datetime] = None) -> Optional[EpisodeSnapshot]:
    """
    Gather reducer facts strictly from the episode's own data

    Returns None when the episode is missing or not open.
    """
    now = now or datetime.now(timezone.utc)
    episode = session.get(Episode, episode_id)
    if episode is None or episode.status != EpisodeStatus.OPEN.value:
        return None

    completed = (
        session.query(Appointment.pool, Appointment.step_code, Appointment.start_time)
        .filter(
            Appointment.episode_id == episode_id,
            Appointment.appointment_status == AppointmentStatus.COMPLETED.value,
        )
        .all()
    )
    has_consult = any(pool == PoolType.CONSULT.value for pool, _, _ in completed)
    has_prosthetic = any(pool == PoolType.WORK.value for pool, _, _ in completed)

    milestones = {
        code for (code,) in session.query(PatientMilestone.code)
        .filter(PatientMilestone.episode_id == episode_id)
        .all()
    }

    delivery_dates = [start for _, code, start in completed if _is_delivery_step(code) and start]
    delivery_dates += [
        done_at for code, done_at in session.query(EpisodeStep.step_code, EpisodeStep.completed_at)
        .filter(
            EpisodeStep.episode_id == episode_id,
            EpisodeStep.status == StepStatus.COMPLETED.value,
        )
        .all()
        if _is_delivery_step(code) and done_at
    ]
    delivery_date = max(delivery_dates) if delivery_dates else None
    milestone_delivery = MilestoneCode.DELIVERY_DONE.value in milestones

    if milestone_delivery:
        # Recorded milestone counts as old enough
        delivery_old = True
    elif delivery_date is not None:
        delivery_old = now - delivery_date > timedelta(days=settings.delivery_age_threshold_days)
    else:
        delivery_old = False

    tag_rows = session.query(PatientDocument.tags).filter(PatientDocument.patient_id == episode.patient_id).all()
    has_offer = any("offer" in (tags or []) for (tags,) in tag_rows)

    return EpisodeSnapshot(
        episode_id=episode.id,
        patient_id=episode.patient_id,
        current_stage=current_stage(session, episode_id) or StageCode.STAGE_0.value,
        stage_version=episode.stage_version or 0,
        snapshot_version=episode.snapshot_version or 0,
        treatment_type_id=episode.treatment_type_id,
        care_pathway_id=episode.care_pathway_id,
        has_completed_consult=has_consult,
        has_treatment_plan=bool(episode.treatment_type_id or episode.care_pathway_id),
        has_offer=has_offer,
        offer_accepted=MilestoneCode.OFFER_ACCEPTED.value in milestones,
        has_surgical_appointment_completed=MilestoneCode.SURG_IMPLANT_PLACED.value in milestones,
        has_prosthetic_appointment_started=has_prosthetic,
        no_surgical_phase=MilestoneCode.NO_SURGICAL_PHASE.value in milestones,
        has_delivery_completed=milestone_delivery or delivery_date is not None,
        delivery_older_than_30_days=delivery_old,
    )


# =============================================================================
# Rule Set
# =============================================================================

@dataclass
class PublishedRuleSet:
    version: int
    rules: List[StageRule]


def load_published_rule_set(session: Session) -> Optional[PublishedRuleSet]:
    """The single PUBLISHED rule set (drafts are invisible), read through Redis"""
    cache = get_cache_service()
    cached = cache.get_cached_published_rule_set()
    if cached is not None:
        return PublishedRuleSet(
            version=cached["version"],
            rules=[StageRule.model_validate(r) for r in cached["rules"]],
        )

    row = (
        session.query(StageRuleSet)
        .filter(StageRuleSet.status == RuleSetStatus.PUBLISHED.value)
        .order_by(StageRuleSet.version.desc())
        .first()
    )
    if row is None:
        return None
    rules = [StageRule.model_validate(r) for r in (row.rules or [])]
    cache.cache_published_rule_set(row.version, [r.model_dump() for r in rules])
    return PublishedRuleSet(version=row.version, rules=rules)


def publish_rule_set(session: Session, version: int, now: Optional[datetime] = None) -> StageRuleSet:
    """
    Publish a rule set version, archiving the previously published one

    Commits, then drops the cached copy so reducers pick up the new rules.
    """
    now = now or datetime.now(timezone.utc)
    target = session.query(StageRuleSet).filter(StageRuleSet.version == version).first()
    if target is None:
        raise RuleSetNotFoundError(f"Stage rule set version {version} not found")

    for rs in session.query(StageRuleSet).filter(
        StageRuleSet.status == RuleSetStatus.PUBLISHED.value,
        StageRuleSet.id != target.id,
    ):
        rs.status = RuleSetStatus.ARCHIVED.value

    # Validate before it becomes visible
    for raw in target.rules or []:
        StageRule.model_validate(raw)

    target.status = RuleSetStatus.PUBLISHED.value
    target.published_at = now
    session.commit()

    get_cache_service().invalidate_rule_set()
    logger.info(f"✓ Published stage rule set v{version}")
    return target


# =============================================================================
# Reducer
# =============================================================================

def compute_dedupe_key(episode_id: str, ruleset_version: int, from_stage: str, to_stage: str,
                       conditions: List[str]) -> str:
    raw = f"{episode_id}:{ruleset_version}:{from_stage}:{to_stage}:{','.join(sorted(conditions))}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def reduce(
    session: Session,
    snapshot: EpisodeSnapshot,
    rule_set: Optional[PublishedRuleSet] = None,
) -> Optional[ReducerResult]:
    """
    First rule (in set order) from the current stage whose conditions all hold

    No published rule set or no match is not an error; it yields None.
    """
    rule_set = rule_set or load_published_rule_set(session)
    if rule_set is None:
        return None

    for rule in rule_set.rules:
        if rule.from_stage != snapshot.current_stage:
            continue
        if all(evaluate_condition(c, snapshot) for c in rule.conditions):
            return ReducerResult(
                episode_id=snapshot.episode_id,
                from_stage=snapshot.current_stage,
                to_stage=rule.to_stage,
                rule_ids=[rule.id],
                ruleset_version=rule_set.version,
                snapshot_version=snapshot.snapshot_version,
                dedupe_key=compute_dedupe_key(
                    snapshot.episode_id, rule_set.version, snapshot.current_stage,
                    rule.to_stage, rule.conditions,
                ),
            )
    return None


def compute_stage_suggestion(session: Session, episode_id: str, now: Optional[datetime] = None) -> Optional[ReducerResult]:
    """Snapshot + reduce; never writes"""
    snapshot = build_snapshot(session, episode_id, now)
    if snapshot is None:
        return None
    return reduce(session, snapshot)
