"""
CarePath - Recall Tasks
Creates follow-up recall tasks once an episode reaches delivery (STAGE_6)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.models import Episode, EpisodeTask
from carepath.modules.pathway_resolver import default_offset, load_pathway_steps
from carepath.schemas import PoolType

logger = logging.getLogger(__name__)

RECALL_TASK_TYPE = "recall_due"
MAX_RECALLS = 2


def recall_offsets(session: Session, episode: Episode) -> List[int]:
    """Offsets of the first two control steps, else the configured defaults"""
    steps, _ = load_pathway_steps(session, episode)
    control = sorted(
        (default_offset(step) for step in steps if step.pool == PoolType.CONTROL),
    )
    if control:
        return control[:MAX_RECALLS]
    return list(settings.recall_default_days)


def ensure_recall_tasks_for_episode(session: Session, episode_id: str, now: Optional[datetime] = None) -> int:
    """
    Add recall_due tasks for an episode unless it already has any

    Returns the number of tasks created. Recalls book into the control pool.
    """
    now = now or datetime.now(timezone.utc)
    episode = session.get(Episode, episode_id)
    if episode is None:
        return 0

    existing = (
        session.query(EpisodeTask.id)
        .filter(EpisodeTask.episode_id == episode_id, EpisodeTask.task_type == RECALL_TASK_TYPE)
        .first()
    )
    if existing is not None:
        return 0

    created = 0
    for days in recall_offsets(session, episode):
        session.add(EpisodeTask(
            episode_id=episode_id,
            task_type=RECALL_TASK_TYPE,
            due_at=now + timedelta(days=days),
        ))
        created += 1
    session.flush()
    logger.info(f"Created {created} recall tasks for episode {episode_id}")
    return created
