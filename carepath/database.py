"""
CarePath Database Access
Engine/session management shared by services, Celery tasks and scripts
"""

import logging
import time
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from carepath.config import settings

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD = 1.0


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create the process-wide engine on first use"""
    url = settings.get_database_url()
    kwargs = {"echo": settings.database_echo, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
        )
    engine = create_engine(url, **kwargs)
    _install_slow_query_logging(engine)
    logger.info(f"Database engine created ({engine.dialect.name})")
    return engine


def _install_slow_query_logging(engine: Engine) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        total = time.time() - conn.info["query_start_time"].pop(-1)
        if total > SLOW_QUERY_THRESHOLD:
            logger.warning(f"Slow query ({total:.2f}s): {statement[:200]}...")


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for a batch job; the job owns its commits"""
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(settings.database_connect_retries),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)
def wait_for_database() -> None:
    """Block until the database accepts connections (worker start-up)"""
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("✓ Database reachable")


def upsert_insert(session: Session, table):
    """
    Dialect-specific INSERT supporting ON CONFLICT clauses

    Both PostgreSQL and SQLite expose the same on_conflict_do_update /
    on_conflict_do_nothing API.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")
