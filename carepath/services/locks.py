"""
CarePath - Per-Episode Locks
Mutual exclusion for projector runs on the same episode
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
# key -> [lock, holders and waiters]; entries are evicted when the count drops to zero
_episode_locks: Dict[str, List] = {}


@contextmanager
def _local_lock(key: str) -> Iterator[None]:
    with _registry_lock:
        entry = _episode_locks.setdefault(key, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _registry_lock:
            entry[1] -= 1
            if entry[1] == 0:
                del _episode_locks[key]


@contextmanager
def episode_lock(session: Session, episode_id: str) -> Iterator[None]:
    """
    Exclusive lock scoped to one episode

    PostgreSQL: transaction-scoped advisory lock, released when the caller
    commits or rolls back. Other backends: keyed in-process mutex held for
    the duration of the block.
    """
    key = f"episode:{episode_id}"
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})
        yield
        return

    with _local_lock(key):
        yield
