"""
CarePath - Stage Suggestion Service
Persists reducer output with dedupe keys and time-limited dismissal
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.database import upsert_insert
from carepath.errors import EpisodeNotFoundError
from carepath.models import DismissedStageSuggestion, Episode, StageSuggestion, StageSuggestionLog
from carepath.modules.stage_reducer import compute_stage_suggestion
from carepath.schemas import StageSuggestionOut

logger = logging.getLogger(__name__)


def is_dismissed(session: Session, episode_id: str, dedupe_key: str, now: Optional[datetime] = None) -> bool:
    """Dedupe key suppressed by an unexpired dismissal"""
    now = now or datetime.now(timezone.utc)
    row = (
        session.query(DismissedStageSuggestion.id)
        .filter(
            DismissedStageSuggestion.episode_id == episode_id,
            DismissedStageSuggestion.dedupe_key == dedupe_key,
            DismissedStageSuggestion.expires_at > now,
        )
        .first()
    )
    return row is not None


def compute_and_persist_suggestion(
    session: Session,
    episode_id: str,
    now: Optional[datetime] = None,
) -> Optional[StageSuggestionOut]:
    """
    Run the reducer and persist its suggestion

    Returns None when there is no suggestion or its dedupe key is
    dismissed. The live row and audit log are only written when the
    dedupe key changes, so replays do not grow the log.
    """
    now = now or datetime.now(timezone.utc)
    result = compute_stage_suggestion(session, episode_id, now)
    if result is None:
        return None

    if is_dismissed(session, episode_id, result.dedupe_key, now):
        logger.debug(f"Suggestion {result.dedupe_key[:12]} for episode {episode_id} is dismissed")
        return None

    live = session.query(StageSuggestion).filter(StageSuggestion.episode_id == episode_id).first()
    if live is not None and live.dedupe_key == result.dedupe_key:
        return StageSuggestionOut.model_validate(live)

    values = {
        "episode_id": episode_id,
        "suggested_stage": result.to_stage,
        "from_stage": result.from_stage,
        "ruleset_version": result.ruleset_version,
        "snapshot_version": result.snapshot_version,
        "dedupe_key": result.dedupe_key,
        "rule_ids": result.rule_ids,
        "computed_at": now,
    }
    stmt = upsert_insert(session, StageSuggestion.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["episode_id"],
        set_={k: stmt.excluded[k] for k in values if k != "episode_id"},
    )
    session.execute(stmt)
    if live is not None:
        session.expire(live)

    session.add(StageSuggestionLog(
        episode_id=episode_id,
        suggested_stage=result.to_stage,
        from_stage=result.from_stage,
        ruleset_version=result.ruleset_version,
        snapshot_version=result.snapshot_version,
        dedupe_key=result.dedupe_key,
        rule_ids=result.rule_ids,
        created_at=now,
    ))
    session.flush()
    logger.info(f"Stage suggestion for episode {episode_id}: {result.from_stage} -> {result.to_stage}")
    return StageSuggestionOut(**values)


def get_current_suggestion(session: Session, episode_id: str, now: Optional[datetime] = None) -> Optional[StageSuggestionOut]:
    """Live suggestion for an episode, hidden while its dedupe key is dismissed"""
    live = session.query(StageSuggestion).filter(StageSuggestion.episode_id == episode_id).first()
    if live is None or is_dismissed(session, episode_id, live.dedupe_key, now):
        return None
    return StageSuggestionOut.model_validate(live)


def dismiss_suggestion(
    session: Session,
    episode_id: str,
    dedupe_key: str,
    dismissed_by: str,
    ttl_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Suppress a dedupe key for ttl_days

    Dismissing an already dismissed key renews the expiry. Returns the
    new expiry timestamp.
    """
    now = now or datetime.now(timezone.utc)
    ttl_days = ttl_days if ttl_days is not None else settings.suggestion_dismiss_ttl_days
    expires_at = now + timedelta(days=ttl_days)
    stmt = upsert_insert(session, DismissedStageSuggestion.__table__).values(
        episode_id=episode_id,
        dedupe_key=dedupe_key,
        dismissed_by=dismissed_by,
        dismissed_at=now,
        expires_at=expires_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["episode_id", "dedupe_key"],
        set_={
            "dismissed_by": stmt.excluded.dismissed_by,
            "dismissed_at": stmt.excluded.dismissed_at,
            "expires_at": stmt.excluded.expires_at,
        },
    )
    session.execute(stmt)
    logger.info(f"Suggestion {dedupe_key[:12]} dismissed for episode {episode_id} until {expires_at.isoformat()}")
    return expires_at


def clear_suggestion(session: Session, episode_id: str) -> int:
    """Delete the live suggestion (after the transition was accepted)"""
    return session.query(StageSuggestion).filter(StageSuggestion.episode_id == episode_id).delete()


def bump_snapshot_version(session: Session, episode_id: str) -> int:
    """Increment the fact snapshot version of an episode"""
    session.execute(
        update(Episode)
        .where(Episode.id == episode_id)
        .values(snapshot_version=Episode.snapshot_version + 1)
    )
    version = session.query(Episode.snapshot_version).filter(Episode.id == episode_id).scalar()
    if version is None:
        raise EpisodeNotFoundError(episode_id)
    return version
