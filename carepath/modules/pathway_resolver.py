"""
CarePath - Pathway Step Resolver
Loads an episode's ordered pathway steps, materialised step rows and current stage
"""

import hashlib
import json
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.errors import PathwayResolutionError
from carepath.models import CarePathway, Episode, EpisodePathway, EpisodeStep, StageEvent
from carepath.schemas import PathwayStep, PoolType
from carepath.services.cache_service import get_cache_service

logger = logging.getLogger(__name__)


def default_offset(step: PathwayStep) -> int:
    if step.default_days_offset is not None:
        return step.default_days_offset
    return settings.default_step_offset_days


def parse_pathway_steps(pathway_id: str, steps_json) -> List[PathwayStep]:
    """
    Validate a pathway's raw step list

    Raises:
        PathwayResolutionError: steps_json is not a list or holds a malformed step
    """
    if steps_json is None:
        return []
    if not isinstance(steps_json, list):
        raise PathwayResolutionError(pathway_id, f"steps_json is {type(steps_json).__name__}, expected list")
    try:
        return [PathwayStep.model_validate(raw) for raw in steps_json]
    except ValidationError as e:
        raise PathwayResolutionError(pathway_id, str(e)) from e


def compute_pathway_hash(step_lists: Sequence[list]) -> str:
    """sha256 over the canonical JSON of the merged raw step lists"""
    canonical = json.dumps(list(step_lists), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _raw_steps_by_pathway(session: Session, pathway_ids: Iterable[str]) -> Dict[str, Optional[list]]:
    """Raw steps_json per pathway id, read through the Redis cache"""
    cache = get_cache_service()
    result: Dict[str, Optional[list]] = {}
    misses = []
    for pathway_id in set(pathway_ids):
        cached = cache.get_cached_pathway_steps(pathway_id)
        if cached is not None:
            result[pathway_id] = cached.get("steps")
        else:
            misses.append(pathway_id)

    if misses:
        rows = session.query(CarePathway.id, CarePathway.steps_json).filter(CarePathway.id.in_(misses)).all()
        for pathway_id, steps_json in rows:
            result[pathway_id] = steps_json
            cache.cache_pathway_steps(pathway_id, steps_json)
    return result


def resolve_pathways(
    session: Session,
    episodes: Sequence[Episode],
) -> Dict[str, Tuple[List[PathwayStep], Optional[str]]]:
    """
    Merged pathway steps and content hash for many episodes in two queries

    Attached pathways (episode_pathways, by ordinal) win over the legacy
    care_pathway_id. Episodes with nothing resolvable map to ([], None).
    """
    episode_ids = [e.id for e in episodes]
    links: Dict[str, List[str]] = {}
    if episode_ids:
        rows = (
            session.query(EpisodePathway.episode_id, EpisodePathway.care_pathway_id)
            .filter(EpisodePathway.episode_id.in_(episode_ids))
            .order_by(EpisodePathway.episode_id, EpisodePathway.ordinal)
            .all()
        )
        for episode_id, pathway_id in rows:
            links.setdefault(episode_id, []).append(pathway_id)

    wanted = [pid for pids in links.values() for pid in pids]
    wanted += [e.care_pathway_id for e in episodes if e.care_pathway_id]
    raw = _raw_steps_by_pathway(session, wanted)

    resolved: Dict[str, Tuple[List[PathwayStep], Optional[str]]] = {}
    for episode in episodes:
        steps: List[PathwayStep] = []
        step_lists: List[list] = []
        for pathway_id in links.get(episode.id, []):
            parsed = parse_pathway_steps(pathway_id, raw.get(pathway_id))
            if parsed:
                steps.extend(parsed)
                step_lists.append(raw[pathway_id])

        if not steps and episode.care_pathway_id:
            legacy = raw.get(episode.care_pathway_id)
            steps = parse_pathway_steps(episode.care_pathway_id, legacy)
            step_lists = [legacy] if steps else []

        resolved[episode.id] = (steps, compute_pathway_hash(step_lists) if steps else None)
    return resolved


def load_pathway_steps(session: Session, episode: Episode) -> Tuple[List[PathwayStep], Optional[str]]:
    """Merged steps and pathway hash for one episode"""
    return resolve_pathways(session, [episode])[episode.id]


def load_episode_steps(session: Session, episode_id: str) -> List[EpisodeStep]:
    """Materialised step rows in seq order"""
    return (
        session.query(EpisodeStep)
        .filter(EpisodeStep.episode_id == episode_id)
        .order_by(EpisodeStep.seq)
        .all()
    )


def current_stages(session: Session, episode_ids: Sequence[str]) -> Dict[str, str]:
    """Latest stage event per episode; episodes without events are absent"""
    if not episode_ids:
        return {}
    rows = (
        session.query(StageEvent.episode_id, StageEvent.stage_code)
        .filter(StageEvent.episode_id.in_(list(episode_ids)))
        .order_by(StageEvent.at, StageEvent.id)
        .all()
    )
    stages: Dict[str, str] = {}
    for episode_id, stage_code in rows:
        stages[episode_id] = stage_code
    return stages


def current_stage(session: Session, episode_id: str) -> Optional[str]:
    return current_stages(session, [episode_id]).get(episode_id)


def first_consult_step(steps: Sequence[PathwayStep]) -> Optional[Tuple[int, PathwayStep]]:
    for index, step in enumerate(steps):
        if step.pool == PoolType.CONSULT:
            return index, step
    return None
